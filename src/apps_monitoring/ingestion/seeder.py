from __future__ import annotations

import logging
import os
from typing import Any, Dict, List, Optional

from pydantic import ValidationError
from sqlalchemy import create_engine, select, text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import sessionmaker

from apps_monitoring.domain import Tenant
from apps_monitoring.errors import ConfigurationError, SeedError
from apps_monitoring.infrastructure.db import upsert_insert
from apps_monitoring.infrastructure.locking import try_advisory_lock
from apps_monitoring.models.tables import TelemetryRecord
from apps_monitoring.querying.query import QueryKind
from apps_monitoring.utils.timefmt import as_utc
from apps_monitoring.validation.rows import SeedRecord

logger = logging.getLogger(__name__)

SEED_TABLE = "ErrorRecord"


def _draft(record: SeedRecord) -> Dict[str, Any]:
    try:
        tenant = Tenant.parse(record.service_owner)
    except ConfigurationError as e:
        raise SeedError(str(e)) from e
    return {
        "ext_id": f"{record.operation_id}-{record.span_id}",
        "tenant": tenant.value,
        "kind": QueryKind.TRACES.value,
        "query_name": None,
        "app_name": record.app_name,
        "app_version": record.app_version,
        "time_generated": as_utc(record.time_generated),
        "time_ingested": as_utc(record.time_ingested),
        "dupe_count": 1,
        "seeded": True,
        "data": {
            "kind": QueryKind.TRACES.value,
            "altinn_error_id": record.error_number,
            "instance_owner_party_id": record.instance_owner_party_id,
            "instance_id": None if record.instance_id is None else str(record.instance_id).lower(),
            "trace_id": record.operation_id,
            "span_id": record.span_id,
            "parent_span_id": record.parent_id,
            "trace_name": record.operation_name,
            "span_name": record.name,
            "success": record.success,
            "result": None if record.result_code is None else str(record.result_code),
            "duration_ms": record.duration_ms,
            "target": record.target,
            "dependency_type": record.dependency_type,
            "data": record.data,
            "performance_bucket": record.performance_bucket,
            "properties": record.properties,
        },
    }


class Seeder:
    """One-off backfill of historical failures into an empty telemetry table.

    Seeded records are marked ``seeded`` and never alerted on.
    """

    def __init__(self, session_factory: sessionmaker, seed_db_path: Optional[str]):
        self.session_factory = session_factory
        self.seed_db_path = seed_db_path

    def has_any_telemetry(self) -> bool:
        with self.session_factory() as session:
            return session.scalar(select(TelemetryRecord.id).limit(1)) is not None

    def read_seed(self) -> List[Dict[str, Any]]:
        engine = create_engine(f"sqlite:///{self.seed_db_path}")
        try:
            with engine.connect() as conn:
                return [dict(r) for r in conn.execute(text(f"SELECT * FROM {SEED_TABLE}")).mappings()]
        finally:
            engine.dispose()

    def run(self) -> int:
        with try_advisory_lock(self.session_factory, "seeder") as held:
            if not held:
                logger.info("Another worker is seeding, skipping")
                return 0
            return self._seed()

    def _seed(self) -> int:
        if not self.seed_db_path or not os.path.exists(self.seed_db_path):
            logger.info("No seed data found")
            return 0
        if self.has_any_telemetry():
            logger.info("Database already has data, can only seed an empty database")
            return 0
        try:
            rows = self.read_seed()
        except SQLAlchemyError as e:
            raise SeedError(f"reading seed database {self.seed_db_path} failed: {e}") from e
        if not rows:
            raise SeedError("no records found in seed database")
        drafts = []
        for i, row in enumerate(rows):
            try:
                drafts.append(_draft(SeedRecord.model_validate(row)))
            except ValidationError as ve:
                err = ve.errors()[0]
                raise SeedError(f"seed record {i}: {'.'.join(str(p) for p in err.get('loc', ()))} {err.get('msg')}") from ve
        logger.info("Seeding database with %d trace records", len(drafts))
        seeded = 0
        with self.session_factory() as session:
            for values in drafts:
                stmt = upsert_insert(session, TelemetryRecord).values(**values)
                stmt = stmt.on_conflict_do_nothing(index_elements=["tenant", "ext_id"])
                seeded += len(session.execute(stmt.returning(TelemetryRecord.id)).all())
            session.commit()
        logger.info("Seeded %d of %d trace records", seeded, len(drafts))
        return seeded
