from __future__ import annotations

import logging
import unittest
from datetime import datetime, timezone

from catalog_access.errors import ExecutionError, NotFound
from catalog_access.services.monitor_service import OperationLog, OperationResult, format_duration, measure


class FakeQuerySession:
    def __init__(self) -> None:
        self.queries = 0


class MonitorServiceTests(unittest.TestCase):
    def test_format_duration(self) -> None:
        self.assertEqual(format_duration(12.4), '12 ms')
        self.assertEqual(format_duration(1500), '1.50 s')
        self.assertEqual(format_duration(125000), '2 min 5 s')

    def test_measure_counts_statements_of_the_block(self) -> None:
        log = OperationLog()
        qs = FakeQuerySession()
        qs.queries = 4

        with measure('find:Order', qs, log=log) as measurement:
            qs.queries += 2

        self.assertEqual(measurement.result.queries, 2)
        self.assertFalse(measurement.result.failed)
        self.assertEqual([result.operation for result in log.results()], ['find:Order'])

    def test_failures_are_recorded_and_reraised(self) -> None:
        log = OperationLog()

        with self.assertRaises(KeyError):
            with measure('get_page:User', log=log):
                raise KeyError('boom')

        result = log.results()[0]
        self.assertTrue(result.failed)
        self.assertIn('KeyError', result.detail)
        self.assertTrue(str(result).startswith('FAILED get_page:User'))

    def test_unexpected_failures_are_logged_as_warnings(self) -> None:
        with self.assertLogs('catalog_access.services.monitor_service', level='INFO') as captured:
            with self.assertRaises(ExecutionError):
                with measure('find:Order', log=OperationLog()):
                    raise ExecutionError('connection lost')

        self.assertEqual(captured.records[0].levelno, logging.WARNING)
        self.assertIn('FAILED find:Order', captured.output[0])

    def test_not_found_is_logged_at_info(self) -> None:
        with self.assertLogs('catalog_access.services.monitor_service', level='INFO') as captured:
            with self.assertRaises(NotFound):
                with measure('get_by_key:Order', log=OperationLog()):
                    raise NotFound('Order', 42)

        self.assertEqual(captured.records[0].levelno, logging.INFO)

    def test_log_keeps_most_recent_and_sorts_slowest(self) -> None:
        log = OperationLog(max_entries=2)
        now = datetime.now(tz=timezone.utc)
        for name, duration in (('a', 5.0), ('b', 50.0), ('c', 20.0)):
            log.record(OperationResult(operation=name, duration_ms=duration, queries=1, finished_at=now))

        self.assertEqual([result.operation for result in log.results()], ['b', 'c'])
        self.assertEqual([result.operation for result in log.slowest(1)], ['b'])
        log.clear()
        self.assertEqual(log.results(), [])


if __name__ == '__main__':
    unittest.main()
