from __future__ import annotations

from collections import defaultdict
from collections.abc import Mapping, Sequence
from dataclasses import dataclass
from typing import Any

from sqlalchemy import Column, Select, select
from sqlalchemy.engine import RowMapping

from catalog_access.db import QuerySession
from catalog_access.entities import EntityInfo, Loaded, Record, RelationInfo, entity_info, new_record
from catalog_access.errors import InvalidSort, NotFound, UnknownField
from catalog_access.logger import get_logger
from catalog_access.services.plan_registry import FetchPlan, PlanNode, PlanRegistry, get_default_registry

logger = get_logger(__name__)


@dataclass(frozen=True)
class SortKey:
    field: str
    column: Column
    descending: bool = False

    @property
    def token(self) -> str:
        return f'-{self.field}' if self.descending else self.field

    def expression(self):
        return self.column.desc() if self.descending else self.column.asc()


def parse_sort(info: EntityInfo, fields: Sequence[str] = ()) -> list[SortKey]:
    """Sort keys for ``fields``, always ending on the primary key."""
    keys: list[SortKey] = []
    seen: set[str] = set()
    for raw in fields:
        text = str(raw).strip()
        descending = text.startswith('-')
        field = text.lstrip('+-')
        column = info.columns.get(field)
        if column is None:
            raise InvalidSort(f'Cannot sort {info.name} by {field!r}')
        if field in seen:
            continue
        seen.add(field)
        keys.append(SortKey(field=field, column=column, descending=descending))
    if info.primary_key not in seen:
        descending = keys[-1].descending if keys else False
        keys.append(SortKey(field=info.primary_key, column=info.pk_column, descending=descending))
    return keys


def where_clauses(info: EntityInfo, where) -> list:
    if where is None:
        return []
    if isinstance(where, Mapping):
        clauses = []
        for field, value in where.items():
            column = info.columns.get(field)
            if column is None:
                raise UnknownField(f'{info.name} has no filterable field {field!r}')
            if isinstance(value, (list, tuple, set, frozenset)):
                clauses.append(column.in_(list(value)))
            elif value is None:
                clauses.append(column.is_(None))
            else:
                clauses.append(column == value)
        return clauses
    if isinstance(where, (list, tuple)):
        return list(where)
    return [where]


@dataclass(frozen=True)
class _JoinedEntity:
    path: tuple[str, ...]
    info: EntityInfo
    labels: dict[str, str]


@dataclass(frozen=True)
class _DeferredRelation:
    owner_path: tuple[str, ...]
    relation: RelationInfo
    node: PlanNode


class LevelQuery:
    """One statement: an entity table plus every to-one chain of the plan.

    To-one relations are LEFT OUTER joined under one alias per relation
    path, so the row count stays equal to the root row count. A to-many
    relation stops the walk and is recorded as deferred; it is loaded by a
    separate batched statement in ``load_deferred``. Binary columns are never
    part of the projection.
    """

    def __init__(self, info: EntityInfo, nodes: tuple[PlanNode, ...] = ()) -> None:
        self.info = info
        self.joined: list[_JoinedEntity] = []
        self.deferred: list[_DeferredRelation] = []
        self._columns: list = []
        self._from = info.table
        self._project(info, info.table, ())
        self._walk(info, info.table, (), nodes)

    def _project(self, info: EntityInfo, source, path: tuple[str, ...]) -> None:
        prefix = f'j{len(self.joined)}' if path else 'r'
        labels = {}
        for key, column in info.columns.items():
            label = f'{prefix}__{key}'
            self._columns.append(source.c[column.key].label(label))
            labels[key] = label
        self.joined.append(_JoinedEntity(path=path, info=info, labels=labels))

    def _walk(self, info: EntityInfo, source, path: tuple[str, ...], nodes: tuple[PlanNode, ...]) -> None:
        for node in nodes:
            relation = info.relations[node.relation]
            if relation.to_many:
                self.deferred.append(_DeferredRelation(owner_path=path, relation=relation, node=node))
                continue
            target = relation.target
            alias = target.table.alias(f'j{len(self.joined)}_{target.table.name}')
            onclause = alias.c[target.columns[relation.remote_key].key] == source.c[info.columns[relation.local_key].key]
            self._from = self._from.outerjoin(alias, onclause)
            child_path = (*path, node.relation)
            self._project(target, alias, child_path)
            self._walk(target, alias, child_path, node.children)

    def select(self) -> Select:
        return select(*self._columns).select_from(self._from)

    def hydrate(self, rows: Sequence[RowMapping]) -> list[dict[tuple[str, ...], Record | None]]:
        hydrated = []
        for row in rows:
            records: dict[tuple[str, ...], Record | None] = {}
            for joined in self.joined:
                values = {key: row[label] for key, label in joined.labels.items()}
                if not joined.path:
                    records[()] = new_record(joined.info, values)
                    continue
                owner = records.get(joined.path[:-1])
                if owner is None:
                    records[joined.path] = None
                    continue
                record = None if values[joined.info.primary_key] is None else new_record(joined.info, values)
                owner.relations[joined.path[-1]] = Loaded(record)
                records[joined.path] = record
            hydrated.append(records)
        return hydrated


def load_deferred(qs: QuerySession, level: LevelQuery, hydrated: list[dict[tuple[str, ...], Record | None]]) -> None:
    """Load every to-many relation of ``level`` with one statement each."""
    for deferred in level.deferred:
        relation = deferred.relation
        owners = [records[deferred.owner_path] for records in hydrated if records.get(deferred.owner_path) is not None]
        if not owners:
            continue
        owner_keys = list(dict.fromkeys(owner.values[relation.local_key] for owner in owners))
        target = relation.target
        foreign_key = target.columns[relation.remote_key]
        children = load_records(
            qs,
            target,
            deferred.node.children,
            clauses=[foreign_key.in_(owner_keys)],
            order_by=[*relation.order_by, target.pk_column.asc()],
        )
        grouped: dict[Any, list[Record]] = defaultdict(list)
        for child in children:
            grouped[child.values[relation.remote_key]].append(child)
        for owner in owners:
            owner.relations[relation.key] = Loaded(tuple(grouped.get(owner.values[relation.local_key], ())))
        logger.debug(
            'Batched %s.%s: %d rows for %d owners', level.info.name, relation.key, len(children), len(owner_keys)
        )


def load_records(
    qs: QuerySession,
    info: EntityInfo,
    nodes: tuple[PlanNode, ...] = (),
    *,
    clauses: Sequence = (),
    order_by: Sequence = (),
    limit: int | None = None,
    offset: int | None = None,
) -> list[Record]:
    level = LevelQuery(info, nodes)
    stmt = level.select().where(*clauses).order_by(*order_by)
    if offset:
        stmt = stmt.offset(offset)
    if limit is not None:
        stmt = stmt.limit(limit)
    hydrated = level.hydrate(qs.rows(stmt))
    load_deferred(qs, level, hydrated)
    return [records[()] for records in hydrated]


def _key_clauses(info: EntityInfo, key) -> list:
    if isinstance(key, Mapping):
        for field in key:
            if field not in info.unique_keys:
                raise UnknownField(f'{field!r} is not a unique key of {info.name}')
        return where_clauses(info, key)
    return [info.pk_column == key]


def plan_nodes(info: EntityInfo, plan, registry: PlanRegistry | None) -> tuple[PlanNode, ...]:
    resolved: FetchPlan | None = (registry or get_default_registry()).plan_for(info, plan)
    return resolved.nodes if resolved else ()


def get_by_key(
    qs: QuerySession,
    entity,
    key,
    plan=None,
    *,
    registry: PlanRegistry | None = None,
) -> Record | None:
    """Load one entity graph by primary key, or by a mapping on unique columns.

    Returns ``None`` when nothing matches.
    """
    info = entity_info(entity)
    nodes = plan_nodes(info, plan, registry)
    clauses = _key_clauses(info, key)
    records = load_records(qs, info, nodes, clauses=clauses, order_by=[info.pk_column.asc()])
    if not records:
        logger.debug('%s %r not found', info.name, key)
        return None
    return records[0]


def require_by_key(qs: QuerySession, entity, key, plan=None, *, registry: PlanRegistry | None = None) -> Record:
    record = get_by_key(qs, entity, key, plan, registry=registry)
    if record is None:
        raise NotFound(entity_info(entity).name, key)
    return record


def find(
    qs: QuerySession,
    entity,
    where=None,
    plan=None,
    *,
    order_by: Sequence[str] = (),
    registry: PlanRegistry | None = None,
) -> list[Record]:
    info = entity_info(entity)
    nodes = plan_nodes(info, plan, registry)
    clauses = where_clauses(info, where)
    sort = parse_sort(info, order_by)
    records = load_records(qs, info, nodes, clauses=clauses, order_by=[key.expression() for key in sort])
    logger.debug('Loaded %d %s records', len(records), info.name)
    return records
