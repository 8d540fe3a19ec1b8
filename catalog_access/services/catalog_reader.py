from __future__ import annotations

from collections.abc import Iterable, Sequence

from catalog_access.config import Settings, settings as default_settings
from catalog_access.db import QuerySession
from catalog_access.entities import Record, entity_info
from catalog_access.services import blob_service, fetch_service, pagination_service
from catalog_access.services.blob_service import BlobMetadata
from catalog_access.services.monitor_service import (
    OperationLog,
    OperationResult,
    measure,
    operation_log as default_operation_log,
)
from catalog_access.services.pagination_service import Page, PageRequest
from catalog_access.services.plan_registry import PlanRegistry, get_default_registry


class CatalogReader:
    """Entry point for callers: entity graphs, pages and binary payloads.

    Holds no per-request state. Every call takes the ``QuerySession`` of the
    caller's read-only transaction and is recorded in the operation log.
    """

    def __init__(
        self,
        registry: PlanRegistry | None = None,
        settings: Settings | None = None,
        operation_log: OperationLog | None = None,
    ) -> None:
        self.registry = registry or get_default_registry()
        self.settings = settings or default_settings
        self.operation_log = operation_log or default_operation_log

    def slowest_operations(self, limit: int = 10) -> list[OperationResult]:
        return self.operation_log.slowest(limit)

    def log_operation_summary(self) -> None:
        self.operation_log.log_summary()

    def _measure(self, operation: str, entity, qs: QuerySession):
        return measure(f'{operation}:{entity_info(entity).name}', qs, log=self.operation_log)

    def get_by_key(self, qs: QuerySession, entity, key, plan=None) -> Record | None:
        with self._measure('get_by_key', entity, qs):
            return fetch_service.get_by_key(qs, entity, key, plan, registry=self.registry)

    def require_by_key(self, qs: QuerySession, entity, key, plan=None) -> Record:
        with self._measure('get_by_key', entity, qs):
            return fetch_service.require_by_key(qs, entity, key, plan, registry=self.registry)

    def find(self, qs: QuerySession, entity, where=None, plan=None, *, order_by: Sequence[str] = ()) -> list[Record]:
        with self._measure('find', entity, qs):
            return fetch_service.find(qs, entity, where, plan, order_by=order_by, registry=self.registry)

    def get_page(self, qs: QuerySession, entity, where=None, plan=None, request: PageRequest | None = None) -> Page:
        with self._measure('get_page', entity, qs):
            return pagination_service.get_page(
                qs,
                entity,
                where,
                plan,
                request,
                registry=self.registry,
                max_page_size=self.settings.max_page_size,
                default_page_size=self.settings.default_page_size,
            )

    def blob_exists(self, qs: QuerySession, entity, entity_id, field: str | None = None) -> bool:
        with self._measure('blob_exists', entity, qs):
            return blob_service.exists(qs, entity, entity_id, field)

    def blob_metadata(self, qs: QuerySession, entity, entity_id, field: str | None = None) -> BlobMetadata:
        with self._measure('blob_metadata', entity, qs):
            return blob_service.metadata(qs, entity, entity_id, field)

    def blob_metadata_many(self, qs: QuerySession, entity, entity_ids: Iterable, field: str | None = None) -> dict:
        with self._measure('blob_metadata_many', entity, qs):
            return blob_service.metadata_many(qs, entity, entity_ids, field)

    def blob_fetch(self, qs: QuerySession, entity, entity_id, field: str | None = None) -> bytes | None:
        with self._measure('blob_fetch', entity, qs):
            return blob_service.fetch(qs, entity, entity_id, field)
