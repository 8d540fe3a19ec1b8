from __future__ import annotations

from collections.abc import Iterable
from dataclasses import dataclass

from sqlalchemy import Column, exists as sql_exists, func, select

from catalog_access.db import QuerySession
from catalog_access.entities import EntityInfo, entity_info
from catalog_access.errors import UnknownField
from catalog_access.logger import get_logger

logger = get_logger(__name__)


@dataclass(frozen=True)
class BlobMetadata:
    present: bool
    size_bytes: int


def _blob_column(info: EntityInfo, field: str | None) -> Column:
    if field is None:
        if len(info.binary_columns) != 1:
            raise UnknownField(f'{info.name} has {len(info.binary_columns)} binary fields; name the one to read')
        return next(iter(info.binary_columns.values()))
    column = info.binary_columns.get(field)
    if column is None:
        raise UnknownField(f'{info.name} has no binary field {field!r}')
    return column


def _size(column: Column):
    return func.coalesce(func.length(column), 0)


def exists(qs: QuerySession, entity, entity_id, field: str | None = None) -> bool:
    """Whether the row holds a non-empty payload, checked by the database."""
    info = entity_info(entity)
    column = _blob_column(info, field)
    stmt = select(sql_exists().where(info.pk_column == entity_id, column.is_not(None), func.length(column) > 0))
    return bool(qs.scalar(stmt))


def metadata(qs: QuerySession, entity, entity_id, field: str | None = None) -> BlobMetadata:
    info = entity_info(entity)
    column = _blob_column(info, field)
    size = qs.scalar(select(_size(column)).where(info.pk_column == entity_id))
    return BlobMetadata(present=bool(size), size_bytes=int(size or 0))


def metadata_many(qs: QuerySession, entity, entity_ids: Iterable, field: str | None = None) -> dict:
    info = entity_info(entity)
    column = _blob_column(info, field)
    ids = list(dict.fromkeys(entity_ids))
    if not ids:
        return {}
    rows = qs.rows(
        select(info.pk_column.label('id'), _size(column).label('size_bytes')).where(info.pk_column.in_(ids))
    )
    sizes = {row['id']: int(row['size_bytes']) for row in rows}
    return {
        entity_id: BlobMetadata(present=sizes.get(entity_id, 0) > 0, size_bytes=sizes.get(entity_id, 0))
        for entity_id in ids
    }


def fetch(qs: QuerySession, entity, entity_id, field: str | None = None) -> bytes | None:
    """Transfer one payload. The only read in the core that selects a binary column."""
    info = entity_info(entity)
    column = _blob_column(info, field)
    data = qs.scalar(select(column).where(info.pk_column == entity_id))
    if not data:
        logger.debug('No %s payload for %s %r', column.name, info.name, entity_id)
        return None
    logger.info('Fetched %d bytes of %s for %s %r', len(data), column.name, info.name, entity_id)
    return bytes(data)
