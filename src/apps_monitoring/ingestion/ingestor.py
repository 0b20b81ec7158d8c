from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable, Dict, Iterable, List, Optional

from prometheus_client import Counter, Histogram
from sqlalchemy import case
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import sessionmaker

from apps_monitoring.domain import Tenant
from apps_monitoring.errors import MalformedRowError, PersistenceError
from apps_monitoring.infrastructure.db import upsert_insert
from apps_monitoring.ingestion.mapping import jsonable, map_row
from apps_monitoring.models.tables import IngestionDeadLetter, TelemetryRecord
from apps_monitoring.querying.query import QueryDefinition
from apps_monitoring.utils.timefmt import as_utc, utc_now

INGEST_BATCH_LATENCY = Histogram('ingest_batch_latency_seconds', 'Latency to persist an ingestion batch', buckets=(0.01, 0.05, 0.1, 0.25, 0.5, 1, 2, 5, 10))
ROWS_RECEIVED = Counter('ingest_rows_received_total', 'Rows handed to the ingestor', ['tenant'])
ROWS_WRITTEN = Counter('ingest_rows_written_total', 'Rows stored as new telemetry records', ['tenant'])
ROWS_DUPLICATE = Counter('ingest_rows_duplicate_total', 'Rows matching an existing telemetry record', ['tenant'])
ROWS_DLQ = Counter('ingest_rows_dead_letter_total', 'Malformed rows routed to the dead letter table', ['tenant'])

logger = logging.getLogger(__name__)


@dataclass
class IngestResult:
    written: int = 0
    ids: List[int] = field(default_factory=list)
    dupe_ext_ids: List[str] = field(default_factory=list)
    poisoned: int = 0

    @property
    def new(self) -> int:
        return self.written

    @property
    def duplicates(self) -> int:
        return len(self.dupe_ext_ids)


class Ingestor:
    """Persists result rows as telemetry records, deduplicated on (tenant, ext_id).

    Every row is a single ``INSERT .. ON CONFLICT DO UPDATE`` that bumps
    ``dupe_count`` on conflict, so two writers racing on the same id yield one
    record. Content is first-write-wins; ``time_ingested`` keeps the latest
    observation. The batch commits once: either all well-formed rows are
    durable or none are.
    """

    def __init__(self, session_factory: sessionmaker, clock: Callable[[], datetime] = utc_now):
        self.session_factory = session_factory
        self.clock = clock

    def ingest(
        self,
        tenant: Tenant,
        query: QueryDefinition,
        rows: Iterable[Dict[str, Any]],
        time_ingested: Optional[datetime] = None,
    ) -> IngestResult:
        stamp = as_utc(time_ingested or self.clock())
        result = IngestResult()
        start = time.time()
        session = self.session_factory()
        try:
            for row in rows:
                ROWS_RECEIVED.labels(tenant.value).inc()
                try:
                    draft = map_row(query, row)
                except MalformedRowError as e:
                    result.poisoned += 1
                    ROWS_DLQ.labels(tenant.value).inc()
                    logger.warning("Dead-lettering row from %s/%s: %s", tenant, query.name, e)
                    session.add(IngestionDeadLetter(
                        tenant=tenant.value,
                        query_name=query.name,
                        payload=jsonable(row),
                        error=str(e)[:512],
                        created_at=stamp,
                    ))
                    continue
                stmt = upsert_insert(session, TelemetryRecord).values(
                    ext_id=draft.ext_id,
                    tenant=tenant.value,
                    kind=draft.kind,
                    query_name=query.name,
                    app_name=draft.app_name,
                    app_version=draft.app_version,
                    time_generated=draft.time_generated,
                    time_ingested=stamp,
                    dupe_count=1,
                    seeded=False,
                    data=draft.data,
                )
                stmt = stmt.on_conflict_do_update(
                    index_elements=["tenant", "ext_id"],
                    set_={
                        "dupe_count": TelemetryRecord.dupe_count + 1,
                        "time_ingested": case(
                            (stmt.excluded.time_ingested > TelemetryRecord.time_ingested, stmt.excluded.time_ingested),
                            else_=TelemetryRecord.time_ingested,
                        ),
                    },
                ).returning(TelemetryRecord.id, TelemetryRecord.dupe_count)
                record_id, dupe_count = session.execute(stmt).one()
                if dupe_count == 1:
                    result.written += 1
                    result.ids.append(record_id)
                else:
                    result.dupe_ext_ids.append(draft.ext_id)
            session.commit()
        except SQLAlchemyError as e:
            session.rollback()
            raise PersistenceError(f"persisting {query.name!r} rows for {tenant} failed: {e}") from e
        finally:
            session.close()
            INGEST_BATCH_LATENCY.observe(time.time() - start)
        ROWS_WRITTEN.labels(tenant.value).inc(result.written)
        ROWS_DUPLICATE.labels(tenant.value).inc(result.duplicates)
        logger.info(
            "Ingested %s/%s: %d new, %d duplicates, %d dead-lettered",
            tenant, query.name, result.written, result.duplicates, result.poisoned,
        )
        return result
