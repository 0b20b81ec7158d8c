from __future__ import annotations

import logging
import threading
from dataclasses import dataclass
from datetime import datetime
from typing import Callable, Optional

from apps_monitoring.domain import Tenant
from apps_monitoring.errors import QueryCancelledError
from apps_monitoring.infrastructure.locking import try_advisory_lock
from apps_monitoring.ingestion.ingestor import IngestResult, Ingestor
from apps_monitoring.ingestion.windows import WindowTracker
from apps_monitoring.querying.query import QueryDefinition, Window
from apps_monitoring.querying.runner import QueryRunner

logger = logging.getLogger(__name__)


@dataclass
class PairOutcome:
    tenant: Tenant
    query_name: str
    window: Optional[Window] = None
    skipped: bool = False
    result: Optional[IngestResult] = None
    queried_until: Optional[datetime] = None


class QueryPipeline:
    """One unit of work for a (tenant, query) pair.

    The window is only committed after the ingested rows are durable; a
    failure anywhere before that leaves the stored bound untouched so the next
    run re-covers the same range.
    """

    def __init__(
        self,
        tracker: WindowTracker,
        runner: QueryRunner,
        ingestor: Ingestor,
        on_ingested: Optional[Callable[[IngestResult], None]] = None,
    ):
        self.tracker = tracker
        self.runner = runner
        self.ingestor = ingestor
        self.on_ingested = on_ingested

    def process(
        self,
        tenant: Tenant,
        query: QueryDefinition,
        cancel: Optional[threading.Event] = None,
        now: Optional[datetime] = None,
    ) -> PairOutcome:
        if cancel is not None and cancel.is_set():
            raise QueryCancelledError(f"{tenant}/{query.name} cancelled before it started")
        # one run per pair across worker processes as well as within the scheduler
        with try_advisory_lock(self.tracker.session_factory, f"pair:{tenant.value}:{query.fingerprint}") as held:
            if not held:
                return PairOutcome(tenant, query.name, skipped=True)
            return self._process(tenant, query, cancel, now)

    def _process(self, tenant, query, cancel, now) -> PairOutcome:
        window = self.tracker.open_window(tenant, query, now=now)
        if window.is_empty:
            logger.debug("Empty window for %s/%s, nothing to do", tenant, query.name)
            return PairOutcome(tenant, query.name, window, skipped=True)

        logger.info("Querying %s/%s over [%s, %s)", tenant, query.name, window.start, window.end)
        rows = self.runner.run(tenant, query, window, cancel=cancel)
        result = self.ingestor.ingest(tenant, query, rows, time_ingested=now)
        # rows are durable from here on; advance even if shutdown was requested meanwhile
        until = self.tracker.commit(tenant, query, window.end)
        if result.written and self.on_ingested is not None:
            self.on_ingested(result)
        return PairOutcome(tenant, query.name, window, result=result, queried_until=until)
