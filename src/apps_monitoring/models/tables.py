from __future__ import annotations
from datetime import datetime
from sqlalchemy import String, Integer, DateTime, JSON, ForeignKey, Boolean, Index, Text
from sqlalchemy.orm import Mapped, mapped_column
from apps_monitoring.infrastructure.db import Base
from apps_monitoring.utils.timefmt import utc_now


class TelemetryRecord(Base):
    """One deduplicated telemetry item (trace span, log line or metric sample)."""
    __tablename__ = "telemetry"
    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    ext_id: Mapped[str] = mapped_column(String(512))
    tenant: Mapped[str] = mapped_column(String(64), index=True)
    kind: Mapped[str] = mapped_column(String(16), index=True)
    query_name: Mapped[str | None] = mapped_column(String(256), default=None)
    app_name: Mapped[str] = mapped_column(String(256), default="")
    app_version: Mapped[str] = mapped_column(String(64), default="")
    time_generated: Mapped[datetime] = mapped_column(DateTime(timezone=True), index=True)
    time_ingested: Mapped[datetime] = mapped_column(DateTime(timezone=True), index=True)
    dupe_count: Mapped[int] = mapped_column(Integer, default=1)
    seeded: Mapped[bool] = mapped_column(Boolean, default=False, index=True)
    data: Mapped[dict] = mapped_column(JSON)

    __table_args__ = (
        Index("ix_telemetry_tenant_ext_id", "tenant", "ext_id", unique=True),
    )


class QueryState(Base):
    """Upper bound of the last successfully ingested window per (tenant, query fingerprint)."""
    __tablename__ = "query_state"
    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    tenant: Mapped[str] = mapped_column(String(64), index=True)
    query_name: Mapped[str] = mapped_column(String(256))
    fingerprint: Mapped[str] = mapped_column(String(64))
    queried_until: Mapped[datetime] = mapped_column(DateTime(timezone=True))
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utc_now)

    __table_args__ = (
        Index("ix_query_state_tenant_fingerprint", "tenant", "fingerprint", unique=True),
    )


class Alert(Base):
    __tablename__ = "alerts"
    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    telemetry_id: Mapped[int] = mapped_column(Integer, ForeignKey("telemetry.id"), unique=True)
    state: Mapped[str] = mapped_column(String(16), index=True)  # pending|alerted|mitigated|dropped
    attempts: Mapped[int] = mapped_column(Integer, default=0)
    channel: Mapped[str | None] = mapped_column(String(128), default=None)
    message: Mapped[str | None] = mapped_column(Text, default=None)
    thread_ts: Mapped[str | None] = mapped_column(String(64), default=None)
    last_error: Mapped[str | None] = mapped_column(String(512), default=None)
    claimed_until: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), default=None)  # delivery lease
    next_attempt_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), default=None, index=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utc_now)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utc_now)


class IngestionDeadLetter(Base):
    """Result rows that could not be mapped to a telemetry record."""
    __tablename__ = "ingestion_dead_letter"
    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    tenant: Mapped[str] = mapped_column(String(64), index=True)
    query_name: Mapped[str] = mapped_column(String(256))
    payload: Mapped[dict] = mapped_column(JSON)
    error: Mapped[str] = mapped_column(String(512))
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utc_now, index=True)
