from __future__ import annotations

import threading
from datetime import datetime, timezone

import pytest

from apps_monitoring.errors import QueryCancelledError, QueryExecutionError
from apps_monitoring.querying.query import Window
from apps_monitoring.querying.runner import QueryRunner

from conftest import FakeExecutor, trace_row

WINDOW = Window(datetime(2024, 1, 1, tzinfo=timezone.utc), datetime(2024, 1, 1, 23, 59, 30, tzinfo=timezone.utc))


def _runner(executor, attempts=3) -> QueryRunner:
    return QueryRunner(executor, max_attempts=attempts, retry_min_wait=0, retry_max_wait=0)


def test_run_sends_formatted_query(tenant, query) -> None:
    executor = FakeExecutor(rows=[trace_row()])
    rows = _runner(executor).run(tenant, query, WINDOW)
    assert len(rows) == 1
    ((called_tenant, text),) = executor.calls
    assert called_tenant == "skd"
    assert "2024-01-01T23:59:30.000000Z" in text


def test_transient_failures_are_retried(tenant, query) -> None:
    executor = FakeExecutor(rows=[trace_row()], failures=2)
    assert len(_runner(executor).run(tenant, query, WINDOW)) == 1
    assert len(executor.calls) == 3


def test_exhausted_retries_raise_execution_error(tenant, query) -> None:
    executor = FakeExecutor(failures=5)
    with pytest.raises(QueryExecutionError) as exc:
        _runner(executor, attempts=3).run(tenant, query, WINDOW)
    assert exc.value.attempts == 3
    assert exc.value.tenant == "skd"
    assert exc.value.retryable
    assert len(executor.calls) == 3


def test_cancelled_before_start_does_not_execute(tenant, query) -> None:
    executor = FakeExecutor(rows=[trace_row()])
    cancel = threading.Event()
    cancel.set()
    with pytest.raises(QueryCancelledError):
        _runner(executor).run(tenant, query, WINDOW, cancel=cancel)
    assert executor.calls == []


def test_cancellation_stops_further_attempts(tenant, query) -> None:
    cancel = threading.Event()

    class CancellingExecutor(FakeExecutor):
        def execute(self, tenant, query_text, kind):
            cancel.set()
            return super().execute(tenant, query_text, kind)

    executor = CancellingExecutor(failures=5)
    with pytest.raises(QueryCancelledError):
        _runner(executor).run(tenant, query, WINDOW, cancel=cancel)
    assert len(executor.calls) == 1
