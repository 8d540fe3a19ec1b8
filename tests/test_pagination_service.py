from __future__ import annotations

import unittest
from datetime import datetime
from decimal import Decimal

from sqlalchemy import insert
from sqlalchemy.orm import Session

from catalog_access.errors import InvalidCursor, InvalidPageRequest, InvalidPageSize, InvalidSort
from catalog_access.models import Department, Order, User
from catalog_access.services.pagination_service import (
    Page,
    PageMode,
    PageRequest,
    decode_cursor,
    encode_cursor,
    get_page,
    validate_request,
)
from catalog_fixtures import QuerySessionScope, make_engine, seed_catalog


class OffsetPaginationTests(unittest.TestCase):
    def setUp(self) -> None:
        self.engine = make_engine()
        self.ids = seed_catalog(self.engine)
        self.scope = QuerySessionScope(self.engine)
        self.qs = self.scope.open()

    def tearDown(self) -> None:
        self.scope.close()
        self.engine.dispose()

    def test_users_of_one_department_in_pages_of_two(self) -> None:
        in_sales = User.department.has(Department.name == 'Sales')

        first = get_page(self.qs, User, in_sales, 'with_department', PageRequest.offset(0, 2))
        second = get_page(self.qs, User, in_sales, 'with_department', PageRequest.offset(1, 2))

        self.assertEqual([user.name for user in first.items], ['Alice', 'Bob'])
        self.assertEqual({user.department.name for user in first.items}, {'Sales'})
        self.assertTrue(first.metadata.has_next)
        self.assertEqual(first.metadata.total_elements, 3)
        self.assertEqual(first.metadata.total_pages, 2)
        self.assertEqual([user.name for user in second.items], ['Carol'])
        self.assertFalse(second.metadata.has_next)
        self.assertEqual(second.metadata.element_count, 1)

    def test_page_past_the_end_is_empty_and_skips_the_page_query(self) -> None:
        page = get_page(self.qs, User, request=PageRequest.offset(5, 2))

        self.assertEqual(page.items, [])
        self.assertFalse(page.metadata.has_next)
        self.assertEqual(page.metadata.total_elements, 5)
        self.assertEqual(self.qs.queries, 1)

    def test_to_many_relations_are_loaded_for_the_page_only(self) -> None:
        page = get_page(self.qs, User, plan=['department', 'orders'], request=PageRequest.offset(0, 1))

        self.assertEqual([order.order_number for order in page.items[0].orders], ['ORD-1', 'ORD-2'])
        self.assertEqual(self.qs.queries, 3)

    def test_sort_fields(self) -> None:
        page = get_page(self.qs, Order, request=PageRequest.offset(0, 10, sort=['-total_amount']))

        self.assertEqual([order.order_number for order in page.items], ['ORD-1', 'ORD-2', 'ORD-3'])

    def test_invalid_page_size_runs_no_query(self) -> None:
        for size in (0, 101, -1):
            with self.subTest(size=size):
                with self.assertRaises(InvalidPageSize):
                    get_page(self.qs, User, request=PageRequest.offset(0, size))
        self.assertEqual(self.qs.queries, 0)

    def test_deep_offset_logs_a_warning(self) -> None:
        with self.assertLogs('catalog_access.services.pagination_service', level='WARNING') as captured:
            page = get_page(self.qs, User, request=PageRequest.offset(200, 50))

        self.assertEqual(page.items, [])
        self.assertIn('prefer cursor pagination', captured.output[0])


class CursorPaginationTests(unittest.TestCase):
    def setUp(self) -> None:
        self.engine = make_engine()
        self.ids = seed_catalog(self.engine)
        self.scope = QuerySessionScope(self.engine)
        self.qs = self.scope.open()

    def tearDown(self) -> None:
        self.scope.close()
        self.engine.dispose()

    def _walk(self, entity, size: int, sort=(), where=None) -> list[Page]:
        pages = []
        cursor = None
        while True:
            page = get_page(self.qs, entity, where, request=PageRequest.cursor(cursor, size, sort=sort))
            pages.append(page)
            if not page.metadata.has_next:
                return pages
            cursor = page.metadata.next_cursor

    def test_walk_by_primary_key(self) -> None:
        pages = self._walk(User, 2)

        self.assertEqual([[user.name for user in page.items] for page in pages], [['Alice', 'Bob'], ['Carol', 'Dave'], ['Erin']])
        self.assertIsNone(pages[-1].metadata.next_cursor)
        self.assertIsNone(pages[0].metadata.total_elements)

    def test_walk_descending(self) -> None:
        pages = self._walk(Order, 1, sort=['-order_date'])

        self.assertEqual([page.items[0].order_number for page in pages], ['ORD-3', 'ORD-2', 'ORD-1'])

    def test_walk_by_name_descending(self) -> None:
        pages = self._walk(User, 2, sort=['-name'])

        names = [user.name for page in pages for user in page.items]
        self.assertEqual(names, ['Erin', 'Dave', 'Carol', 'Bob', 'Alice'])

    def test_same_cursor_gives_same_page(self) -> None:
        first = get_page(self.qs, User, request=PageRequest.cursor(None, 2))
        cursor = first.metadata.next_cursor

        again = get_page(self.qs, User, request=PageRequest.cursor(cursor, 2))
        once_more = get_page(self.qs, User, request=PageRequest.cursor(cursor, 2))

        self.assertEqual(again.items, once_more.items)
        self.assertEqual(again.metadata.last_key, cursor)

    def test_exact_multiple_has_no_trailing_empty_page(self) -> None:
        pages = self._walk(Order, 3)

        self.assertEqual(len(pages), 1)
        self.assertEqual(pages[0].metadata.element_count, 3)

    def test_garbage_cursor(self) -> None:
        for token in ('not-a-cursor', '', encode_cursor(['id'], ['x', 'y'])):
            with self.subTest(token=token):
                with self.assertRaises(InvalidCursor):
                    get_page(self.qs, User, request=PageRequest.cursor(token, 2))

    def test_cursor_values_must_match_the_column_type(self) -> None:
        tokens = {
            'text for an integer key': (encode_cursor(['id'], ['abc']), ()),
            'bool for an integer key': (encode_cursor(['id'], [True]), ()),
            'number for a text key': (encode_cursor(['name', 'id'], [5, 1]), ['name']),
            'null for a required key': (encode_cursor(['name', 'id'], [None, 1]), ['name']),
            'text for a date key': (encode_cursor(['-order_date', '-id'], ['2024-02-03', 1]), ['-order_date']),
        }
        for label, (token, sort) in tokens.items():
            with self.subTest(label):
                entity = Order if sort == ['-order_date'] else User
                with self.assertRaises(InvalidCursor):
                    get_page(self.qs, entity, request=PageRequest.cursor(token, 2, sort=sort))
        self.assertEqual(self.qs.queries, 0)

    def test_cursor_with_enum_sort_key(self) -> None:
        first = get_page(self.qs, Order, request=PageRequest.cursor(None, 1, sort=['status']))
        second = get_page(self.qs, Order, request=PageRequest.cursor(first.metadata.next_cursor, 1, sort=['status']))

        self.assertNotEqual(first.items[0].id, second.items[0].id)
        with self.assertRaises(InvalidCursor):
            get_page(self.qs, Order, request=PageRequest.cursor(encode_cursor(['status', 'id'], ['LOST', 1]), 1, sort=['status']))

    def test_cursor_is_bound_to_its_sort(self) -> None:
        by_name = get_page(self.qs, User, request=PageRequest.cursor(None, 2, sort=['name']))

        with self.assertRaises(InvalidCursor):
            get_page(self.qs, User, request=PageRequest.cursor(by_name.metadata.next_cursor, 2))

    def test_mixed_directions_and_nullable_sorts_are_rejected(self) -> None:
        with self.assertRaises(InvalidSort):
            get_page(self.qs, User, request=PageRequest.cursor(None, 2, sort=['name', '-id']))
        with self.assertRaises(InvalidSort):
            get_page(self.qs, User, request=PageRequest.cursor(None, 2, sort=['department_id']))


class PaginationCompletenessTests(unittest.TestCase):
    user_count = 95

    def setUp(self) -> None:
        self.engine = make_engine()
        with Session(self.engine) as db:
            db.execute(
                insert(User),
                [{'name': f'user-{index % 7}', 'email': f'user-{index}@example.com'} for index in range(self.user_count)],
            )
            db.commit()
        self.scope = QuerySessionScope(self.engine)
        self.qs = self.scope.open()

    def tearDown(self) -> None:
        self.scope.close()
        self.engine.dispose()

    def test_offset_pages_cover_every_row_once(self) -> None:
        seen = []
        index = 0
        while True:
            page = get_page(self.qs, User, request=PageRequest.offset(index, 10, sort=['name']))
            seen.extend(user.id for user in page.items)
            if not page.metadata.has_next:
                break
            index += 1

        self.assertEqual(page.metadata.total_pages, 10)
        self.assertEqual(len(seen), self.user_count)
        self.assertEqual(len(set(seen)), self.user_count)

    def test_cursor_pages_cover_every_row_once_with_duplicate_sort_values(self) -> None:
        seen = []
        previous = None
        cursor = None
        while True:
            page = get_page(self.qs, User, request=PageRequest.cursor(cursor, 10, sort=['name']))
            for user in page.items:
                current = (user.name, user.id)
                if previous is not None:
                    self.assertLess(previous, current)
                previous = current
                seen.append(user.id)
            if not page.metadata.has_next:
                break
            cursor = page.metadata.next_cursor

        self.assertEqual(len(seen), self.user_count)
        self.assertEqual(len(set(seen)), self.user_count)


class PageRequestTests(unittest.TestCase):
    def test_default_page_size_is_applied(self) -> None:
        request = validate_request(PageRequest(), max_page_size=100, default_page_size=20)

        self.assertEqual(request.page_size, 20)
        self.assertEqual(request.mode, PageMode.OFFSET)

    def test_mode_specific_fields(self) -> None:
        with self.assertRaises(InvalidPageRequest):
            validate_request(PageRequest(mode=PageMode.OFFSET, page_size=5, last_key='abc'), max_page_size=100)
        with self.assertRaises(InvalidPageRequest):
            validate_request(PageRequest(mode=PageMode.CURSOR, page_size=5, page_index=2), max_page_size=100)
        with self.assertRaises(InvalidPageRequest):
            validate_request(PageRequest.offset(-1, 5), max_page_size=100)

    def test_cursor_token_roundtrip_keeps_types(self) -> None:
        values = [datetime(2024, 2, 3, 14, 30), Decimal('799.50'), 7]
        token = encode_cursor(['-order_date', '-total_amount', '-id'], values)

        self.assertEqual(decode_cursor(token, ['-order_date', '-total_amount', '-id']), values)


if __name__ == '__main__':
    unittest.main()
