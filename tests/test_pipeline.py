from __future__ import annotations

import threading
from contextlib import contextmanager
from datetime import datetime, timedelta, timezone

import pytest
from sqlalchemy import select

from apps_monitoring.errors import PersistenceError, QueryCancelledError, QueryExecutionError
from apps_monitoring.ingestion import pipeline as pipeline_module
from apps_monitoring.ingestion.ingestor import Ingestor
from apps_monitoring.ingestion.pipeline import QueryPipeline
from apps_monitoring.ingestion.windows import WindowTracker
from apps_monitoring.models.tables import TelemetryRecord
from apps_monitoring.querying.runner import QueryRunner

from conftest import FakeExecutor, trace_row


def _pipeline(session_factory, clock, executor, on_ingested=None):
    tracker = WindowTracker(session_factory, search_from_days=1, safety_lag=timedelta(seconds=30), clock=clock)
    runner = QueryRunner(executor, max_attempts=2, retry_min_wait=0, retry_max_wait=0)
    return QueryPipeline(tracker, runner, Ingestor(session_factory, clock=clock), on_ingested=on_ingested), tracker


def test_first_tick_scenario(session_factory, clock, tenant, query) -> None:
    Ingestor(session_factory).ingest(tenant, query, [trace_row("op-old", "1")], time_ingested=clock() - timedelta(days=3))
    executor = FakeExecutor(rows=[trace_row("op-old", "1"), trace_row("op-a", "1"), trace_row("op-b", "1")])
    notified = []
    pipeline, tracker = _pipeline(session_factory, clock, executor, on_ingested=notified.append)

    outcome = pipeline.process(tenant, query)

    assert outcome.window.start == datetime(2024, 1, 1, tzinfo=timezone.utc)
    assert outcome.window.end == datetime(2024, 1, 1, 23, 59, 30, tzinfo=timezone.utc)
    assert outcome.result.new == 2
    assert outcome.result.dupe_ext_ids == ["op-old-1"]
    with session_factory() as session:
        old = session.scalar(select(TelemetryRecord).where(TelemetryRecord.ext_id == "op-old-1"))
    assert old.dupe_count == 2
    assert tracker.get(tenant, query) == datetime(2024, 1, 1, 23, 59, 30, tzinfo=timezone.utc)
    assert outcome.queried_until == tracker.get(tenant, query)
    assert len(notified) == 1


def test_execution_failure_leaves_window_untouched(session_factory, clock, tenant, query) -> None:
    pipeline, tracker = _pipeline(session_factory, clock, FakeExecutor(failures=10))
    with pytest.raises(QueryExecutionError):
        pipeline.process(tenant, query)
    assert tracker.get(tenant, query) is None


def test_persistence_failure_leaves_window_untouched(engine, session_factory, clock, tenant, query) -> None:
    pipeline, tracker = _pipeline(session_factory, clock, FakeExecutor(rows=[trace_row()]))
    first = pipeline.process(tenant, query)
    clock.advance(hours=1)
    TelemetryRecord.__table__.drop(engine)
    with pytest.raises(PersistenceError):
        pipeline.process(tenant, query)
    assert tracker.get(tenant, query) == first.queried_until


def test_retry_after_failure_covers_same_range(session_factory, clock, tenant, query) -> None:
    executor = FakeExecutor(rows=[trace_row()], failures=2)
    pipeline, tracker = _pipeline(session_factory, clock, executor)
    with pytest.raises(QueryExecutionError):
        pipeline.process(tenant, query)
    outcome = pipeline.process(tenant, query)
    assert outcome.window.start == datetime(2024, 1, 1, tzinfo=timezone.utc)
    assert outcome.result.new == 1


def test_empty_window_skips_backend(session_factory, clock, tenant, query) -> None:
    executor = FakeExecutor(rows=[trace_row()])
    pipeline, tracker = _pipeline(session_factory, clock, executor)
    tracker.commit(tenant, query, clock())
    outcome = pipeline.process(tenant, query)
    assert outcome.skipped
    assert executor.calls == []


def test_cancel_before_start_raises_without_touching_store(session_factory, clock, tenant, query, monkeypatch) -> None:
    executor = FakeExecutor(rows=[trace_row()])
    pipeline, tracker = _pipeline(session_factory, clock, executor)
    opened = []
    monkeypatch.setattr(tracker, "open_window", lambda *a, **kw: opened.append(a))
    cancel = threading.Event()
    cancel.set()
    with pytest.raises(QueryCancelledError):
        pipeline.process(tenant, query, cancel=cancel)
    assert opened == []
    assert executor.calls == []


def test_pair_held_by_another_worker_is_skipped(session_factory, clock, tenant, query, monkeypatch) -> None:
    @contextmanager
    def held_elsewhere(_session_factory, name):
        assert name == f"pair:skd:{query.fingerprint}"
        yield False

    monkeypatch.setattr(pipeline_module, "try_advisory_lock", held_elsewhere)
    executor = FakeExecutor(rows=[trace_row()])
    pipeline, tracker = _pipeline(session_factory, clock, executor)
    outcome = pipeline.process(tenant, query)
    assert outcome.skipped
    assert outcome.window is None
    assert executor.calls == []
    assert tracker.get(tenant, query) is None


def test_no_notification_without_new_records(session_factory, clock, tenant, query) -> None:
    notified = []
    pipeline, _ = _pipeline(session_factory, clock, FakeExecutor(rows=[]), on_ingested=notified.append)
    outcome = pipeline.process(tenant, query)
    assert outcome.result.new == 0
    assert notified == []
