from __future__ import annotations

import re
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Dict, Optional

from apps_monitoring.errors import MalformedRowError
from apps_monitoring.querying.query import QueryDefinition, QueryKind
from apps_monitoring.utils.timefmt import as_utc, format_instant
from apps_monitoring.validation.rows import LogRow, MetricRow, TraceRow, validate_row

# <instanceOwnerPartyId>/<instanceGuid> inside storage and app URLs
_INSTANCE_RE = re.compile(
    r"(\d+)/([0-9a-fA-F]{8}-[0-9a-fA-F]{4}-[0-9a-fA-F]{4}-[0-9a-fA-F]{4}-[0-9a-fA-F]{12})"
)


@dataclass(frozen=True)
class TelemetryDraft:
    ext_id: str
    kind: str
    app_name: str
    app_version: str
    time_generated: datetime
    data: Dict[str, Any]


def parse_instance(url: Optional[str]) -> tuple[Optional[int], Optional[str]]:
    if not url:
        return None, None
    m = _INSTANCE_RE.search(url)
    if not m:
        return None, None
    return int(m.group(1)), m.group(2).lower()


def jsonable(value: Any) -> Any:
    if value is None or isinstance(value, (str, int, float, bool)):
        return value
    if isinstance(value, datetime):
        return format_instant(value)
    if isinstance(value, dict):
        return {str(k): jsonable(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [jsonable(v) for v in value]
    return str(value)


def _from_trace(row: TraceRow) -> TelemetryDraft:
    party_id, instance_id = parse_instance(row.url)
    return TelemetryDraft(
        ext_id=f"{row.operation_id}-{row.span_id}",
        kind=QueryKind.TRACES.value,
        app_name=row.app_name,
        app_version=row.app_version,
        time_generated=as_utc(row.time_generated),
        data={
            "kind": QueryKind.TRACES.value,
            "trace_id": row.operation_id,
            "span_id": row.span_id,
            "parent_span_id": row.parent_id,
            "span_name": row.name,
            "operation_name": row.operation_name,
            "target": row.target,
            "dependency_type": row.dependency_type,
            "data": row.data,
            "success": row.success,
            "result": None if row.result_code is None else str(row.result_code),
            "duration_ms": row.duration_ms,
            "url": row.url,
            "performance_bucket": row.performance_bucket,
            "instance_owner_party_id": party_id,
            "instance_id": instance_id,
            "properties": jsonable(row.properties),
            "table_index": row.table_index,
        },
    )


def _from_log(row: LogRow) -> TelemetryDraft:
    return TelemetryDraft(
        ext_id=row.item_id,
        kind=QueryKind.LOGS.value,
        app_name=row.app_name,
        app_version=row.app_version,
        time_generated=as_utc(row.time_generated),
        data={
            "kind": QueryKind.LOGS.value,
            "message": row.message,
            "severity_level": row.severity_level,
            "trace_id": row.operation_id,
            "properties": jsonable(row.properties),
            "table_index": row.table_index,
        },
    )


def _from_metric(row: MetricRow, query: QueryDefinition) -> TelemetryDraft:
    generated = as_utc(row.time_generated)
    # metric samples have no natural id; the bucket time and query fingerprint make one
    ext_id = f"{row.app}-{row.app_version}-{format_instant(generated)}-{row.name}-{query.fingerprint}"
    return TelemetryDraft(
        ext_id=ext_id,
        kind=QueryKind.METRICS.value,
        app_name=row.app,
        app_version=row.app_version,
        time_generated=generated,
        data={
            "kind": QueryKind.METRICS.value,
            "name": row.name,
            "value": row.value,
            "table_index": row.table_index,
        },
    )


def map_row(query: QueryDefinition, row: Dict[str, Any]) -> TelemetryDraft:
    """Map one backend row to a draft record, raising MalformedRowError when it cannot be identified."""
    model = validate_row(query.kind, row)
    if isinstance(model, TraceRow):
        return _from_trace(model)
    if isinstance(model, LogRow):
        return _from_log(model)
    if isinstance(model, MetricRow):
        return _from_metric(model, query)
    raise MalformedRowError(f"unsupported row model {type(model).__name__}", row)
