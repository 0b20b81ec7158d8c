from __future__ import annotations
from pydantic import BaseModel, ConfigDict, Field, ValidationError
from datetime import datetime
from typing import Any, Dict, Optional

from apps_monitoring.errors import MalformedRowError
from apps_monitoring.querying.query import QueryKind


class _Row(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="allow")

    time_generated: datetime = Field(alias="TimeGenerated")
    table_index: int = Field(0, alias="_table")


class TraceRow(_Row):
    """A failed dependency span joined with its parent request."""
    operation_id: str = Field(min_length=1, alias="OperationId")
    span_id: str = Field(min_length=1, alias="Id")
    app_name: str = Field(min_length=1, alias="AppRoleName")
    app_version: str = Field("", alias="AppVersion")
    name: str = Field("", alias="Name")
    operation_name: Optional[str] = Field(None, alias="OperationName")
    parent_id: Optional[str] = Field(None, alias="ParentId")
    target: Optional[str] = Field(None, alias="Target")
    dependency_type: Optional[str] = Field(None, alias="DependencyType")
    data: Optional[str] = Field(None, alias="Data")
    success: Optional[bool] = Field(None, alias="Success")
    result_code: Any = Field(None, alias="ResultCode")
    duration_ms: Optional[float] = Field(None, alias="DurationMs")
    url: Optional[str] = Field(None, alias="Url")
    performance_bucket: Optional[str] = Field(None, alias="PerformanceBucket")
    properties: Any = Field(None, alias="Properties")


class LogRow(_Row):
    item_id: str = Field(min_length=1, alias="_ItemId")
    app_name: str = Field("", alias="AppRoleName")
    app_version: str = Field("", alias="AppVersion")
    message: Optional[str] = Field(None, alias="Message")
    severity_level: Optional[int] = Field(None, alias="SeverityLevel")
    operation_id: Optional[str] = Field(None, alias="OperationId")
    properties: Any = Field(None, alias="Properties")


class MetricRow(_Row):
    app: str = Field(min_length=1, alias="App")
    app_version: str = Field("", alias="AppVersion")
    name: str = Field(min_length=1, alias="Name")
    value: float = Field(alias="Value")


ROW_MODELS: Dict[QueryKind, type[_Row]] = {
    QueryKind.TRACES: TraceRow,
    QueryKind.LOGS: LogRow,
    QueryKind.METRICS: MetricRow,
}


def validate_row(kind: QueryKind, row: Dict[str, Any]) -> _Row:
    model = ROW_MODELS.get(kind)
    if model is None:
        raise MalformedRowError(f"no row model for kind {kind}", row)
    try:
        return model.model_validate(row)
    except ValidationError as ve:
        err = ve.errors()[0]
        loc = ".".join(str(p) for p in err.get("loc", ()))
        raise MalformedRowError(f"validation_error:{loc}:{err.get('msg', 'invalid')}", row) from ve


class SeedRecord(BaseModel):
    """Historical failure exported to the seed database (table ``ErrorRecord``)."""
    model_config = ConfigDict(populate_by_name=True, extra="ignore", str_strip_whitespace=True)

    service_owner: str = Field(min_length=1, alias="ServiceOwner")
    app_name: str = Field(min_length=1, alias="AppRoleName")
    app_version: str = Field(min_length=1, alias="AppVersion")
    operation_id: str = Field(min_length=1, alias="OperationId")
    span_id: str = Field(min_length=1, alias="Id")
    operation_name: str = Field(min_length=1, alias="OperationName")
    name: str = Field(min_length=1, alias="Name")
    duration_ms: float = Field(alias="DurationMs")
    time_generated: datetime = Field(alias="TimeGenerated")
    time_ingested: datetime = Field(alias="TimeIngested")
    error_number: Optional[int] = Field(None, alias="ErrorNumber")
    instance_owner_party_id: Optional[int] = Field(None, alias="InstanceOwnerPartyId")
    instance_id: Any = Field(None, alias="InstanceId")
    parent_id: Optional[str] = Field(None, alias="ParentId")
    target: Optional[str] = Field(None, alias="Target")
    dependency_type: Optional[str] = Field(None, alias="DependencyType")
    data: Optional[str] = Field(None, alias="Data")
    success: Optional[bool] = Field(None, alias="Success")
    result_code: Any = Field(None, alias="ResultCode")
    performance_bucket: Optional[str] = Field(None, alias="PerformanceBucket")
    properties: Optional[str] = Field(None, alias="Properties")
