from __future__ import annotations

import base64
import binascii
import json
import math
from dataclasses import dataclass, replace
from datetime import date, datetime
from decimal import Decimal, InvalidOperation
from enum import Enum

from sqlalchemy import Enum as SQLEnum, func, literal, select, tuple_

from catalog_access.config import settings
from catalog_access.db import QuerySession
from catalog_access.entities import EntityInfo, Record, entity_info
from catalog_access.errors import InvalidCursor, InvalidPageRequest, InvalidPageSize, InvalidSort
from catalog_access.logger import get_logger
from catalog_access.services.fetch_service import (
    LevelQuery,
    SortKey,
    load_deferred,
    parse_sort,
    plan_nodes,
    where_clauses,
)
from catalog_access.services.plan_registry import PlanRegistry

logger = get_logger(__name__)


class PageMode(str, Enum):
    OFFSET = 'OFFSET'
    CURSOR = 'CURSOR'


@dataclass(frozen=True)
class PageRequest:
    mode: PageMode = PageMode.OFFSET
    page_size: int | None = None
    page_index: int = 0
    last_key: str | None = None
    sort: tuple[str, ...] = ()

    @classmethod
    def offset(cls, page_index: int = 0, page_size: int | None = None, sort=()) -> PageRequest:
        return cls(mode=PageMode.OFFSET, page_size=page_size, page_index=page_index, sort=tuple(sort))

    @classmethod
    def cursor(cls, last_key: str | None = None, page_size: int | None = None, sort=()) -> PageRequest:
        return cls(mode=PageMode.CURSOR, page_size=page_size, last_key=last_key, sort=tuple(sort))


@dataclass(frozen=True)
class PageMetadata:
    element_count: int
    has_next: bool
    page_size: int
    page_index: int | None = None
    last_key: str | None = None
    total_elements: int | None = None
    total_pages: int | None = None
    next_cursor: str | None = None


@dataclass(frozen=True)
class Page:
    items: list[Record]
    metadata: PageMetadata


def _encode_value(value) -> list:
    if value is None:
        return ['n', None]
    if isinstance(value, bool):
        return ['b', value]
    if isinstance(value, Enum):
        return ['e', value.value]
    if isinstance(value, int):
        return ['i', value]
    if isinstance(value, Decimal):
        return ['d', str(value)]
    if isinstance(value, datetime):
        return ['t', value.isoformat()]
    if isinstance(value, date):
        return ['D', value.isoformat()]
    if isinstance(value, float):
        return ['f', value]
    return ['s', str(value)]


def _decode_value(item):
    if not isinstance(item, list) or len(item) != 2:
        raise InvalidCursor('Malformed cursor value')
    tag, raw = item
    try:
        if tag == 'n':
            return None
        if tag in {'b', 'i', 'f', 's', 'e'}:
            return raw
        if tag == 'd':
            return Decimal(raw)
        if tag == 't':
            return datetime.fromisoformat(raw)
        if tag == 'D':
            return date.fromisoformat(raw)
    except (TypeError, ValueError, InvalidOperation) as exc:
        raise InvalidCursor('Malformed cursor value') from exc
    raise InvalidCursor(f'Unknown cursor value type {tag!r}')


def encode_cursor(sort_tokens: list[str], values: list) -> str:
    payload = {'s': sort_tokens, 'k': [_encode_value(value) for value in values]}
    raw = json.dumps(payload, separators=(',', ':')).encode('utf-8')
    return base64.urlsafe_b64encode(raw).decode('ascii')


def decode_cursor(token: str, sort_tokens: list[str]) -> list:
    if not isinstance(token, str) or not token:
        raise InvalidCursor('Cursor must be a non-empty string')
    try:
        payload = json.loads(base64.urlsafe_b64decode(token.encode('ascii')))
    except (ValueError, binascii.Error) as exc:
        raise InvalidCursor('Malformed cursor') from exc
    if not isinstance(payload, dict):
        raise InvalidCursor('Malformed cursor')
    if payload.get('s') != sort_tokens:
        raise InvalidCursor('Cursor was issued for a different sort order')
    values = payload.get('k')
    if not isinstance(values, list) or len(values) != len(sort_tokens):
        raise InvalidCursor('Cursor does not match the sort keys')
    return [_decode_value(item) for item in values]


def _coerce(key: SortKey, value):
    """Check a decoded cursor value against the sort column before it reaches SQL."""
    column_type = key.column.type
    if isinstance(column_type, SQLEnum) and column_type.enum_class is not None and isinstance(value, str):
        try:
            value = column_type.enum_class(value)
        except ValueError as exc:
            raise InvalidCursor(f'Invalid cursor value for {key.field}') from exc
    try:
        expected = column_type.python_type
    except NotImplementedError:
        return value
    if expected is float and isinstance(value, int) and not isinstance(value, bool):
        return float(value)
    if (isinstance(value, bool) and expected is not bool) or not isinstance(value, expected):
        raise InvalidCursor(f'Cursor value for {key.field} must be {expected.__name__}, got {type(value).__name__}')
    return value


def validate_request(request: PageRequest, max_page_size: int, default_page_size: int | None = None) -> PageRequest:
    size = (default_page_size or settings.default_page_size) if request.page_size is None else request.page_size
    if isinstance(size, bool) or not isinstance(size, int) or size < 1 or size > max_page_size:
        raise InvalidPageSize(f'Page size must be between 1 and {max_page_size}, got {size!r}')
    index = request.page_index
    if isinstance(index, bool) or not isinstance(index, int) or index < 0:
        raise InvalidPageRequest(f'Page index must be a non-negative integer, got {index!r}')
    if request.mode == PageMode.OFFSET and request.last_key is not None:
        raise InvalidPageRequest('Offset pagination does not take a cursor')
    if request.mode == PageMode.CURSOR and index != 0:
        raise InvalidPageRequest('Cursor pagination does not take a page index')
    return replace(request, page_size=size)


def _cursor_sort(info: EntityInfo, fields) -> list[SortKey]:
    keys = parse_sort(info, fields)
    if len({key.descending for key in keys}) > 1:
        raise InvalidSort('Cursor pagination needs every sort field in the same direction')
    for key in keys:
        if key.column.nullable and not key.column.primary_key:
            raise InvalidSort(f'Cursor pagination cannot sort by nullable field {key.field!r}')
    return keys


def _after(keys: list[SortKey], values: list):
    descending = keys[0].descending
    if len(keys) == 1:
        column, value = keys[0].column, values[0]
        return column < value if descending else column > value
    left = tuple_(*[key.column for key in keys])
    right = tuple_(*[literal(value, key.column.type) for key, value in zip(keys, values)])
    return left < right if descending else left > right


def _offset_page(qs: QuerySession, info: EntityInfo, level: LevelQuery, clauses: list, request: PageRequest) -> Page:
    size = request.page_size
    offset = request.page_index * size
    keys = parse_sort(info, request.sort)
    if offset >= settings.deep_offset_warning_rows:
        logger.warning(
            'Offset %d on %s makes the database skip that many rows; prefer cursor pagination for deep pages',
            offset,
            info.name,
        )

    total = qs.scalar(select(func.count()).select_from(info.table).where(*clauses)) or 0
    hydrated = []
    if offset < total:
        stmt = level.select().where(*clauses).order_by(*[key.expression() for key in keys]).offset(offset).limit(size)
        hydrated = level.hydrate(qs.rows(stmt))
        load_deferred(qs, level, hydrated)

    items = [records[()] for records in hydrated]
    metadata = PageMetadata(
        element_count=len(items),
        has_next=offset + len(items) < total,
        page_size=size,
        page_index=request.page_index,
        total_elements=total,
        total_pages=math.ceil(total / size),
    )
    logger.debug('%s page %d: %d of %d rows', info.name, request.page_index, len(items), total)
    return Page(items=items, metadata=metadata)


def _cursor_page(qs: QuerySession, info: EntityInfo, level: LevelQuery, clauses: list, request: PageRequest) -> Page:
    size = request.page_size
    keys = _cursor_sort(info, request.sort)
    tokens = [key.token for key in keys]
    clauses = list(clauses)
    if request.last_key is not None:
        values = [_coerce(key, value) for key, value in zip(keys, decode_cursor(request.last_key, tokens))]
        clauses.append(_after(keys, values))

    stmt = level.select().where(*clauses).order_by(*[key.expression() for key in keys]).limit(size + 1)
    hydrated = level.hydrate(qs.rows(stmt))
    has_next = len(hydrated) > size
    hydrated = hydrated[:size]
    load_deferred(qs, level, hydrated)

    items = [records[()] for records in hydrated]
    next_cursor = None
    if has_next:
        next_cursor = encode_cursor(tokens, [items[-1].values[key.field] for key in keys])
    metadata = PageMetadata(
        element_count=len(items),
        has_next=has_next,
        page_size=size,
        last_key=request.last_key,
        next_cursor=next_cursor,
    )
    logger.debug('%s cursor page: %d rows, has_next=%s', info.name, len(items), has_next)
    return Page(items=items, metadata=metadata)


def get_page(
    qs: QuerySession,
    entity,
    where=None,
    plan=None,
    request: PageRequest | None = None,
    *,
    registry: PlanRegistry | None = None,
    max_page_size: int | None = None,
    default_page_size: int | None = None,
) -> Page:
    """Load one bounded page of entity graphs.

    Offset mode runs ``COUNT(*)`` plus ``OFFSET/LIMIT``; its cost grows with
    ``page_index * page_size`` because the database still walks the skipped
    rows, and a concurrent write between two requests can shift rows across
    page boundaries. Cursor mode continues strictly after the last key of the
    previous page, so its cost does not depend on position and it never
    reports totals. In both modes to-many relations of the plan are loaded
    for the ids of this page only.
    """
    info = entity_info(entity)
    request = validate_request(request or PageRequest(), max_page_size or settings.max_page_size, default_page_size)
    nodes = plan_nodes(info, plan, registry)
    clauses = where_clauses(info, where)
    level = LevelQuery(info, nodes)
    if request.mode == PageMode.CURSOR:
        return _cursor_page(qs, info, level, clauses, request)
    return _offset_page(qs, info, level, clauses, request)
