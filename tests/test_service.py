from __future__ import annotations

import json

import pytest

from apps_monitoring.config import Settings
from apps_monitoring.errors import ConfigurationError
from apps_monitoring.service import MonitoringService
from apps_monitoring.tasks import monitoring as tasks

from conftest import TRACE_TEMPLATE, FakeExecutor, FakeSink, trace_row

CATALOG = json.dumps([{"name": "Failed X", "kind": "traces", "template": TRACE_TEMPLATE}])


def _settings(**overrides) -> Settings:
    values = {
        "ALTINN_ENVIRONMENT": "at24",
        "TENANT_WORKSPACES": "skd:ws-skd",
        "QUERY_CATALOG": "json",
        "QUERY_CATALOG_JSON": CATALOG,
        "SEARCH_FROM_DAYS": 1,
        "WINDOW_SAFETY_LAG_SECONDS": 30,
        "QUERY_MAX_ATTEMPTS": 1,
        "DISABLE_SEEDER": True,
    }
    values.update(overrides)
    return Settings(**values)


@pytest.fixture
def service(session_factory):
    svc = MonitoringService(
        _settings(),
        session_factory=session_factory,
        executor=FakeExecutor(rows=[trace_row("a", "1"), trace_row("b", "1")]),
        sink=FakeSink(),
    )
    tasks.set_service(svc)
    yield svc
    tasks.set_service(None)
    svc.stop()


def test_unknown_environment_is_fatal(session_factory) -> None:
    with pytest.raises(ConfigurationError):
        MonitoringService(_settings(ALTINN_ENVIRONMENT="staging"), session_factory=session_factory,
                          executor=FakeExecutor(), sink=FakeSink())


def test_missing_tenants_is_fatal(session_factory) -> None:
    with pytest.raises(ConfigurationError):
        MonitoringService(_settings(TENANT_WORKSPACES=""), session_factory=session_factory,
                          executor=FakeExecutor(), sink=FakeSink())


def test_poll_then_alert_tasks(service) -> None:
    polled = tasks.poll_queries()
    assert polled == {"status": "ok", "pairs": 1, "completed": 1, "written": 2}
    alerted = tasks.deliver_alerts()
    assert alerted["sent"] == 2
    assert [p.ext_id for p in service.sink.delivered] == ["a-1", "b-1"]
    assert tasks.deliver_alerts()["sent"] == 0


def test_reset_query_window_task(service) -> None:
    tasks.poll_queries()
    query = service.queries[0]
    assert tasks.reset_query_window("skd", query.fingerprint) == {"status": "ok", "removed": True}
    assert service.tracker.get(service.tenants[0], query) is None


def test_seed_task_respects_switch(service) -> None:
    assert tasks.seed_telemetry() == {"status": "skipped", "reason": "seeder_disabled"}


def test_start_and_stop_background_components(session_factory) -> None:
    svc = MonitoringService(
        _settings(DISABLE_SCHEDULER=True),
        session_factory=session_factory,
        executor=FakeExecutor(),
        sink=FakeSink(),
    )
    svc.start()
    svc.stop()
    assert svc.scheduler.stopping


def test_beat_schedule_targets_monitoring_tasks() -> None:
    from apps_monitoring.infrastructure.celery_app import celery_app

    tasks_scheduled = {entry["task"] for entry in celery_app.conf.beat_schedule.values()}
    assert tasks_scheduled == {
        "apps_monitoring.tasks.monitoring.poll_queries",
        "apps_monitoring.tasks.monitoring.deliver_alerts",
    }
    assert celery_app.conf.beat_schedule["poll-queries"]["schedule"] == 600.0
