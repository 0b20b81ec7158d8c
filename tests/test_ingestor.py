from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest
from sqlalchemy import func, select

from apps_monitoring.errors import PersistenceError
from apps_monitoring.ingestion.ingestor import Ingestor
from apps_monitoring.models.tables import IngestionDeadLetter, TelemetryRecord
from apps_monitoring.querying.query import QueryDefinition, QueryKind
from apps_monitoring.utils.timefmt import as_utc

from conftest import TRACE_TEMPLATE, trace_row

T0 = datetime(2024, 1, 2, tzinfo=timezone.utc)


def _records(session_factory) -> list[TelemetryRecord]:
    with session_factory() as session:
        return list(session.scalars(select(TelemetryRecord).order_by(TelemetryRecord.id)))


def test_new_rows_are_written_with_dupe_count_one(session_factory, tenant, query) -> None:
    result = Ingestor(session_factory).ingest(tenant, query, [trace_row("a", "1"), trace_row("b", "1")], time_ingested=T0)
    assert result.new == 2 and result.duplicates == 0 and result.poisoned == 0
    records = _records(session_factory)
    assert [r.ext_id for r in records] == ["a-1", "b-1"]
    assert all(r.dupe_count == 1 and not r.seeded for r in records)
    assert sorted(result.ids) == [r.id for r in records]


def test_reingesting_same_batch_is_idempotent(session_factory, tenant, query) -> None:
    ingestor = Ingestor(session_factory)
    rows = [trace_row("a", "1"), trace_row("b", "2")]
    ingestor.ingest(tenant, query, rows, time_ingested=T0)
    again = ingestor.ingest(tenant, query, rows, time_ingested=T0 + timedelta(minutes=10))
    assert again.new == 0
    assert sorted(again.dupe_ext_ids) == ["a-1", "b-2"]
    records = _records(session_factory)
    assert len(records) == 2
    assert all(r.dupe_count == 2 for r in records)
    assert all(as_utc(r.time_ingested) == T0 + timedelta(minutes=10) for r in records)


def test_first_write_wins_for_content(session_factory, tenant, query) -> None:
    ingestor = Ingestor(session_factory)
    ingestor.ingest(tenant, query, [trace_row("a", "1", ResultCode="500")], time_ingested=T0)
    ingestor.ingest(tenant, query, [trace_row("a", "1", ResultCode="503")], time_ingested=T0)
    (record,) = _records(session_factory)
    assert record.data["result"] == "500"


def test_time_ingested_never_moves_backwards(session_factory, tenant, query) -> None:
    ingestor = Ingestor(session_factory)
    ingestor.ingest(tenant, query, [trace_row("a", "1")], time_ingested=T0)
    ingestor.ingest(tenant, query, [trace_row("a", "1")], time_ingested=T0 - timedelta(days=1))
    (record,) = _records(session_factory)
    assert as_utc(record.time_ingested) == T0
    assert record.dupe_count == 2


def test_duplicate_within_one_batch_counts_once(session_factory, tenant, query) -> None:
    result = Ingestor(session_factory).ingest(tenant, query, [trace_row("a", "1"), trace_row("a", "1")], time_ingested=T0)
    assert result.new == 1
    assert result.dupe_ext_ids == ["a-1"]
    (record,) = _records(session_factory)
    assert record.dupe_count == 2


def test_same_ext_id_is_distinct_per_tenant(session_factory, query) -> None:
    from apps_monitoring.domain import Tenant

    ingestor = Ingestor(session_factory)
    ingestor.ingest(Tenant.parse("skd"), query, [trace_row("a", "1")], time_ingested=T0)
    result = ingestor.ingest(Tenant.parse("brg"), query, [trace_row("a", "1")], time_ingested=T0)
    assert result.new == 1
    assert len(_records(session_factory)) == 2


def test_malformed_rows_are_dead_lettered_and_batch_continues(session_factory, tenant, query) -> None:
    rows = [trace_row(f"op-{i}", "1") for i in range(9)]
    rows.insert(4, trace_row("", "1"))
    result = Ingestor(session_factory).ingest(tenant, query, rows, time_ingested=T0)
    assert result.new == 9
    assert result.poisoned == 1
    assert len(_records(session_factory)) == 9
    with session_factory() as session:
        (dead,) = list(session.scalars(select(IngestionDeadLetter)))
    assert dead.tenant == "skd"
    assert dead.query_name == query.name
    assert "OperationId" in dead.error
    assert dead.payload["Id"] == "1"


def test_trace_mapping_extracts_instance(session_factory, tenant, query) -> None:
    Ingestor(session_factory).ingest(tenant, query, [trace_row("a", "1")], time_ingested=T0)
    (record,) = _records(session_factory)
    assert record.kind == "traces"
    assert record.app_name == "skd-app"
    assert record.query_name == "Failed X"
    assert as_utc(record.time_generated) == datetime(2024, 1, 1, 10, tzinfo=timezone.utc)
    assert record.data["instance_owner_party_id"] == 50001337
    assert record.data["instance_id"] == "0f2f7a5e-5f5c-4c5e-9a43-6b0a3e2c8d11"
    assert record.data["trace_id"] == "a"
    assert record.data["duration_ms"] == pytest.approx(123.4)


def test_metric_rows_use_bucket_and_fingerprint_as_identity(session_factory, tenant) -> None:
    metrics = QueryDefinition("Roles API requests", QueryKind.METRICS, TRACE_TEMPLATE)
    row = {"TimeGenerated": "2024-01-01T00:00:00Z", "App": "skd-app", "AppVersion": "8.0.0",
           "Name": "GET Authorization/GetRolesForCurrentParty [app/org]", "Value": 12}
    ingestor = Ingestor(session_factory)
    ingestor.ingest(tenant, metrics, [row], time_ingested=T0)
    assert ingestor.ingest(tenant, metrics, [row], time_ingested=T0).new == 0
    (record,) = _records(session_factory)
    assert record.ext_id.startswith("skd-app-8.0.0-2024-01-01T00:00:00.000000Z-GET Authorization")
    assert record.ext_id.endswith(metrics.fingerprint)
    assert record.data["value"] == 12.0


def test_log_rows_are_keyed_by_item_id(session_factory, tenant) -> None:
    logs = QueryDefinition("Errors", QueryKind.LOGS, TRACE_TEMPLATE)
    row = {"TimeGenerated": "2024-01-01T00:00:00Z", "_ItemId": "item-1", "AppRoleName": "skd-app", "Message": "boom"}
    result = Ingestor(session_factory).ingest(tenant, logs, [row], time_ingested=T0)
    assert result.new == 1
    (record,) = _records(session_factory)
    assert record.ext_id == "item-1"
    assert record.data["message"] == "boom"


def test_store_failure_persists_nothing(engine, session_factory, tenant, query) -> None:
    TelemetryRecord.__table__.drop(engine)
    with pytest.raises(PersistenceError):
        Ingestor(session_factory).ingest(tenant, query, [trace_row("a", "1")], time_ingested=T0)
    with session_factory() as session:
        assert session.scalar(select(func.count()).select_from(IngestionDeadLetter)) == 0
