from __future__ import annotations

import time
from collections import deque
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime, timezone

from catalog_access.config import settings
from catalog_access.db import QuerySession
from catalog_access.errors import NotFound
from catalog_access.logger import get_logger

logger = get_logger(__name__)


@dataclass(frozen=True)
class OperationResult:
    operation: str
    duration_ms: float
    queries: int
    finished_at: datetime
    failed: bool = False
    detail: str = ''

    def __str__(self) -> str:
        status = 'FAILED ' if self.failed else ''
        return f'{status}{self.operation}: {format_duration(self.duration_ms)}, {self.queries} queries {self.detail}'.rstrip()


class OperationLog:
    """Most recent operation results of this process."""

    def __init__(self, max_entries: int = 200) -> None:
        self._results: deque[OperationResult] = deque(maxlen=max_entries)

    def record(self, result: OperationResult) -> None:
        self._results.append(result)

    def results(self) -> list[OperationResult]:
        return list(self._results)

    def slowest(self, limit: int = 10) -> list[OperationResult]:
        return sorted(self._results, key=lambda result: result.duration_ms, reverse=True)[:limit]

    def clear(self) -> None:
        self._results.clear()

    def log_summary(self) -> None:
        logger.info('Operation summary (%d recorded)', len(self._results))
        for result in self.slowest(len(self._results)):
            logger.info('  %s', result)


operation_log = OperationLog()


def format_duration(milliseconds: float) -> str:
    if milliseconds < 1000:
        return f'{milliseconds:.0f} ms'
    if milliseconds < 60000:
        return f'{milliseconds / 1000:.2f} s'
    minutes, rest = divmod(int(milliseconds), 60000)
    return f'{minutes} min {rest // 1000} s'


class Measurement:
    def __init__(self) -> None:
        self.result: OperationResult | None = None
        self.detail = ''


@contextmanager
def measure(
    operation: str,
    qs: QuerySession | None = None,
    *,
    log: OperationLog | None = None,
) -> Iterator[Measurement]:
    """Time ``operation`` and count the statements it issued through ``qs``."""
    measurement = Measurement()
    started = time.perf_counter()
    queries_before = qs.queries if qs is not None else 0
    failed = False
    expected_failure = False
    try:
        yield measurement
    except Exception as exc:
        failed = True
        expected_failure = isinstance(exc, NotFound)
        measurement.detail = f'{exc.__class__.__name__}: {exc}'
        raise
    finally:
        duration_ms = (time.perf_counter() - started) * 1000
        result = OperationResult(
            operation=operation,
            duration_ms=duration_ms,
            queries=(qs.queries - queries_before) if qs is not None else 0,
            finished_at=datetime.now(tz=timezone.utc),
            failed=failed,
            detail=measurement.detail,
        )
        measurement.result = result
        (log or operation_log).record(result)
        if failed and not expected_failure:
            logger.warning('%s', result)
        elif failed:
            logger.info('%s', result)
        elif duration_ms >= settings.slow_operation_ms:
            logger.warning('Slow operation %s', result)
        else:
            logger.debug('%s', result)
