from __future__ import annotations

import os
from datetime import datetime, timedelta, timezone

import pytest

os.environ.setdefault("DATABASE_URL", "sqlite://")

from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

from apps_monitoring.alerting.base import AlertPayload, DeliveryResult, NotificationSink
from apps_monitoring.connectors.base import QueryExecutor
from apps_monitoring.domain import Tenant
from apps_monitoring.infrastructure.db import Base
from apps_monitoring.models import tables  # noqa: F401
from apps_monitoring.querying.query import QueryDefinition, QueryKind

TRACE_TEMPLATE = (
    "AppDependencies | where TimeGenerated >= todatetime('{searchFrom}') "
    "and TimeGenerated < todatetime('{searchTo}') | where Success == false"
)


class FakeClock:
    def __init__(self, now: datetime):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now = self.now + timedelta(**kwargs)


class FakeExecutor(QueryExecutor):
    name = "fake"

    def __init__(self, rows=None, failures: int = 0):
        self.rows = list(rows or [])
        self.failures = failures
        self.calls: list[tuple[str, str]] = []

    def execute(self, tenant, query_text, kind):
        self.calls.append((tenant.value, query_text))
        if self.failures > 0:
            self.failures -= 1
            raise ConnectionError("backend unavailable")
        return list(self.rows)


class FakeSink(NotificationSink):
    name = "fake"
    channel = "#apps-monitoring"

    def __init__(self, fail: bool = False):
        self.fail = fail
        self.delivered: list[AlertPayload] = []
        self.attempts = 0

    def deliver(self, payload: AlertPayload) -> DeliveryResult:
        self.attempts += 1
        if self.fail:
            return DeliveryResult(ok=False, error="channel_not_found")
        self.delivered.append(payload)
        return DeliveryResult(ok=True, ts=f"1700000000.{len(self.delivered):06d}")


def trace_row(operation_id: str = "op-1", span_id: str = "span-1", ts: str = "2024-01-01T10:00:00Z", **extra) -> dict:
    row = {
        "TimeGenerated": ts,
        "OperationId": operation_id,
        "Id": span_id,
        "AppRoleName": "skd-app",
        "AppVersion": "8.0.0",
        "Name": "POST /storage/api/v1/instances/50001337/0f2f7a5e-5f5c-4c5e-9a43-6b0a3e2c8d11/events",
        "OperationName": "PUT Process/NextElement",
        "Success": False,
        "ResultCode": "500",
        "DurationMs": 123.4,
        "Url": "https://skd.apps.at24.altinn.cloud/skd/app/instances/50001337/0f2f7a5e-5f5c-4c5e-9a43-6b0a3e2c8d11/process/next",
        "_table": 0,
    }
    row.update(extra)
    return row


@pytest.fixture
def engine(tmp_path):
    e = create_engine(f"sqlite:///{tmp_path / 'monitoring.db'}", connect_args={"check_same_thread": False})
    Base.metadata.create_all(e)
    yield e
    e.dispose()


@pytest.fixture
def session_factory(engine):
    return sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)


@pytest.fixture
def clock():
    return FakeClock(datetime(2024, 1, 2, tzinfo=timezone.utc))


@pytest.fixture
def tenant():
    return Tenant.parse("skd")


@pytest.fixture
def query():
    return QueryDefinition(name="Failed X", kind=QueryKind.TRACES, template=TRACE_TEMPLATE)
