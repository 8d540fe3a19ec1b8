from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from functools import lru_cache
from typing import Any

from sqlalchemy import Column, LargeBinary, Table, inspect
from sqlalchemy.exc import NoInspectionAvailable
from sqlalchemy.orm import RelationshipDirection

from catalog_access.errors import RelationNotLoaded, UnknownEntity
from catalog_access.models import Base


class RelationKind(str, Enum):
    TO_ONE = 'TO_ONE'
    TO_MANY = 'TO_MANY'


@dataclass(frozen=True)
class RelationInfo:
    key: str
    kind: RelationKind
    target_model: type
    # TO_ONE: local is the owner's foreign key, remote the target's key.
    # TO_MANY: local is the owner's key, remote the target's foreign key.
    local_key: str
    remote_key: str
    nullable: bool
    order_by: tuple

    @property
    def target(self) -> EntityInfo:
        return entity_info(self.target_model)

    @property
    def to_many(self) -> bool:
        return self.kind == RelationKind.TO_MANY


@dataclass(frozen=True)
class EntityInfo:
    name: str
    model: type
    table: Table
    primary_key: str
    columns: dict[str, Column]
    binary_columns: dict[str, Column]
    relations: dict[str, RelationInfo]
    unique_keys: frozenset[str]

    @property
    def pk_column(self) -> Column:
        return self.columns[self.primary_key]

    def column(self, key: str) -> Column | None:
        return self.columns.get(key)


def _relation_info(mapper, rel) -> RelationInfo | None:
    if rel.direction == RelationshipDirection.MANYTOONE:
        kind = RelationKind.TO_ONE
    elif rel.direction == RelationshipDirection.ONETOMANY and rel.uselist:
        kind = RelationKind.TO_MANY
    else:
        return None
    local_column, remote_column = rel.local_remote_pairs[0]
    target_mapper = rel.mapper
    if rel.order_by:
        order_by = tuple(rel.order_by)
    else:
        order_by = tuple(column.asc() for column in target_mapper.primary_key)
    return RelationInfo(
        key=rel.key,
        kind=kind,
        target_model=target_mapper.class_,
        local_key=mapper.get_property_by_column(local_column).key,
        remote_key=target_mapper.get_property_by_column(remote_column).key,
        nullable=kind == RelationKind.TO_MANY or bool(local_column.nullable),
        order_by=order_by,
    )


@lru_cache(maxsize=None)
def _build_info(model: type) -> EntityInfo:
    mapper = inspect(model)
    columns: dict[str, Column] = {}
    binary_columns: dict[str, Column] = {}
    for attr in mapper.column_attrs:
        column = attr.columns[0]
        if isinstance(column.type, LargeBinary):
            binary_columns[attr.key] = column
        else:
            columns[attr.key] = column

    unique_keys = {key for key, column in columns.items() if column.primary_key or column.unique}
    relations = {}
    for rel in mapper.relationships:
        info = _relation_info(mapper, rel)
        if info is not None:
            relations[rel.key] = info

    return EntityInfo(
        name=model.__name__,
        model=model,
        table=mapper.local_table,
        primary_key=mapper.get_property_by_column(mapper.primary_key[0]).key,
        columns=columns,
        binary_columns=binary_columns,
        relations=relations,
        unique_keys=frozenset(unique_keys),
    )


def entity_info(entity: type | str | EntityInfo) -> EntityInfo:
    if isinstance(entity, EntityInfo):
        return entity
    if isinstance(entity, str):
        wanted = entity.strip().lower()
        for mapper in Base.registry.mappers:
            if wanted in {mapper.class_.__name__.lower(), mapper.local_table.name.lower()}:
                return _build_info(mapper.class_)
        raise UnknownEntity(f'Unknown entity {entity!r}')
    try:
        inspect(entity)
    except NoInspectionAvailable as exc:
        raise UnknownEntity(f'{entity!r} is not a mapped entity') from exc
    return _build_info(entity)


class NotLoaded:
    """Marker for a relation the fetch plan did not include."""

    _instance: NotLoaded | None = None

    def __new__(cls) -> NotLoaded:
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    loaded = False

    def get(self):
        raise RelationNotLoaded()

    def __repr__(self) -> str:
        return 'NOT_LOADED'


NOT_LOADED = NotLoaded()


@dataclass(frozen=True)
class Loaded:
    value: Any
    loaded = True

    def get(self):
        return self.value


Relation = Loaded | NotLoaded


class Record:
    """One hydrated row of an entity with its relations.

    Column values are plain attributes. Relations dereference through their
    ``Loaded`` wrapper; a relation left ``NOT_LOADED`` raises
    ``RelationNotLoaded`` instead of querying.
    """

    __slots__ = ('entity', 'values', 'relations')

    def __init__(self, entity: str, values: dict[str, Any], relations: dict[str, Relation]) -> None:
        self.entity = entity
        self.values = values
        self.relations = relations

    def __getattr__(self, name: str):
        if name.startswith('__'):
            raise AttributeError(name)
        try:
            values = object.__getattribute__(self, 'values')
            relations = object.__getattribute__(self, 'relations')
        except AttributeError:
            raise AttributeError(name) from None
        if name in values:
            return values[name]
        if name in relations:
            relation = relations[name]
            if not relation.loaded:
                raise RelationNotLoaded(self.entity, name)
            return relation.value
        raise AttributeError(f'{self.entity} has no attribute {name!r}')

    def relation(self, name: str) -> Relation:
        return self.relations[name]

    def is_loaded(self, name: str) -> bool:
        return self.relations[name].loaded

    def to_dict(self) -> dict[str, Any]:
        data = dict(self.values)
        for name, relation in self.relations.items():
            if not relation.loaded:
                continue
            value = relation.value
            if value is None:
                data[name] = None
            elif isinstance(value, tuple):
                data[name] = [item.to_dict() for item in value]
            else:
                data[name] = value.to_dict()
        return data

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, Record):
            return NotImplemented
        return self.entity == other.entity and self.to_dict() == other.to_dict()

    __hash__ = None

    def __repr__(self) -> str:
        return f'<{self.entity} {self.values!r}>'


def new_record(info: EntityInfo, values: dict[str, Any]) -> Record:
    return Record(info.name, values, {name: NOT_LOADED for name in info.relations})
