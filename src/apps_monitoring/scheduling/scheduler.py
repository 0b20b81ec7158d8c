"""Periodic driver for (tenant, query) pairs.

Each pair is single-flight: while it is RUNNING no tick submits it again.
A failed pair waits in BACKOFF for ``min(base * 2**(failures - 1), ceiling)``
seconds; a success resets the failure count. Failures are logged and never
propagate out of the scheduler.
"""
from __future__ import annotations

import logging
import threading
from concurrent.futures import Future, ThreadPoolExecutor, wait as wait_for
from dataclasses import dataclass
from datetime import datetime, timedelta
from enum import Enum
from typing import Callable, Dict, Iterable, List, Optional, Tuple

from prometheus_client import Counter, Gauge

from apps_monitoring.domain import Tenant
from apps_monitoring.errors import QueryCancelledError
from apps_monitoring.ingestion.pipeline import PairOutcome
from apps_monitoring.querying.query import QueryDefinition
from apps_monitoring.utils.backoff import backoff_delay
from apps_monitoring.utils.timefmt import as_utc, utc_now

PAIRS_RUNNING = Gauge('scheduler_pairs_running', 'Pairs currently submitted or executing')
PAIR_RUNS = Counter('scheduler_pair_runs_total', 'Completed pair runs by outcome', ['tenant', 'query', 'outcome'])
PAIR_BACKOFF_SECONDS = Gauge('scheduler_pair_backoff_seconds', 'Current backoff delay per pair', ['tenant', 'query'])

logger = logging.getLogger(__name__)

PairKey = Tuple[str, str]
Work = Callable[..., PairOutcome]


class PairStatus(str, Enum):
    IDLE = "idle"
    RUNNING = "running"
    BACKOFF = "backoff"


@dataclass
class PairState:
    tenant: Tenant
    query: QueryDefinition
    status: PairStatus = PairStatus.IDLE
    failures: int = 0
    retry_at: Optional[datetime] = None
    last_error: Optional[str] = None

    def is_due(self, now: datetime) -> bool:
        if self.status is PairStatus.IDLE:
            return True
        if self.status is PairStatus.BACKOFF:
            return self.retry_at is None or now >= self.retry_at
        return False


class Scheduler:
    def __init__(
        self,
        tenants: Iterable[Tenant],
        queries: Iterable[QueryDefinition],
        work: Work,
        max_concurrency: int = 4,
        poll_interval_seconds: float = 600,
        backoff_base_seconds: float = 60,
        backoff_ceiling_seconds: float = 3600,
        clock: Callable[[], datetime] = utc_now,
    ):
        self.tenants = list(tenants)
        self.queries = list(queries)
        self.work = work
        self.max_concurrency = max(1, max_concurrency)
        self.poll_interval_seconds = poll_interval_seconds
        self.backoff_base_seconds = backoff_base_seconds
        self.backoff_ceiling_seconds = backoff_ceiling_seconds
        self.clock = clock
        self._states: Dict[PairKey, PairState] = {}
        self._lock = threading.Lock()
        self._stopping = threading.Event()
        self._pool = ThreadPoolExecutor(max_workers=self.max_concurrency, thread_name_prefix="pair")
        self._driver: Optional[threading.Thread] = None

    @property
    def stopping(self) -> bool:
        return self._stopping.is_set()

    def state(self, tenant: Tenant, query: QueryDefinition) -> Optional[PairState]:
        with self._lock:
            return self._states.get((tenant.value, query.fingerprint))

    def tick(self, now: Optional[datetime] = None) -> List[Future]:
        """Submit every due pair; pairs beyond the concurrency bound queue in the pool."""
        if self._stopping.is_set():
            return []
        now = as_utc(now or self.clock())
        submitted: List[Future] = []
        for tenant in self.tenants:
            for query in self.queries:
                key = (tenant.value, query.fingerprint)
                with self._lock:
                    state = self._states.get(key)
                    if state is None:
                        state = self._states[key] = PairState(tenant=tenant, query=query)
                    if not state.is_due(now):
                        continue
                    state.status = PairStatus.RUNNING
                PAIRS_RUNNING.inc()
                try:
                    future = self._pool.submit(self._run_pair, state, now)
                except RuntimeError:
                    # pool shut down between the stop check and submit
                    PAIRS_RUNNING.dec()
                    with self._lock:
                        state.status = PairStatus.IDLE
                    return submitted
                future.add_done_callback(lambda f, s=state: self._on_done(f, s))
                submitted.append(future)
        if submitted:
            logger.debug("Tick at %s submitted %d pairs", now, len(submitted))
        return submitted

    def run_once(self, now: Optional[datetime] = None) -> List[Optional[PairOutcome]]:
        futures = self.tick(now)
        wait_for(futures)
        return [None if f.cancelled() else f.result() for f in futures]

    def _run_pair(self, state: PairState, now: datetime) -> Optional[PairOutcome]:
        tenant, query = state.tenant, state.query
        try:
            outcome = self.work(tenant, query, cancel=self._stopping, now=now)
        except QueryCancelledError:
            logger.info("Pair %s/%s cancelled by shutdown", tenant, query.name)
            self._finish(state, error=None, cancelled=True)
            return None
        except Exception as e:  # noqa: BLE001
            self._finish(state, error=e)
            return None
        self._finish(state, error=None)
        return outcome

    def _on_done(self, future: Future, state: PairState):
        # queued pairs dropped by stop() never reach _run_pair
        if future.cancelled():
            logger.info("Pair %s/%s dropped from the queue by shutdown", state.tenant, state.query.name)
            self._finish(state, error=None, cancelled=True)

    def _finish(self, state: PairState, error: Optional[Exception], cancelled: bool = False):
        tenant, query = state.tenant, state.query
        PAIRS_RUNNING.dec()
        with self._lock:
            if error is None:
                state.status = PairStatus.IDLE
                state.retry_at = None
                if not cancelled:
                    state.failures = 0
                    state.last_error = None
                PAIR_BACKOFF_SECONDS.labels(tenant.value, query.name).set(0)
                PAIR_RUNS.labels(tenant.value, query.name, "cancelled" if cancelled else "ok").inc()
                return
            state.failures += 1
            delay = backoff_delay(state.failures, self.backoff_base_seconds, self.backoff_ceiling_seconds)
            state.status = PairStatus.BACKOFF
            state.retry_at = as_utc(self.clock()) + timedelta(seconds=delay)
            state.last_error = str(error)[:512]
            failures = state.failures
        PAIR_BACKOFF_SECONDS.labels(tenant.value, query.name).set(delay)
        PAIR_RUNS.labels(tenant.value, query.name, "failed").inc()
        logger.error(
            "Pair %s/%s failed (%d consecutive), retrying in %.0fs: %s",
            tenant, query.name, failures, delay, error,
        )

    def start(self):
        """Tick every poll interval on a background thread until ``stop``."""
        if self._driver is not None:
            return
        self._driver = threading.Thread(target=self._loop, name="scheduler", daemon=True)
        self._driver.start()
        logger.info(
            "Scheduler started: %d tenants x %d queries, interval %ss, concurrency %d",
            len(self.tenants), len(self.queries), self.poll_interval_seconds, self.max_concurrency,
        )

    def _loop(self):
        while not self._stopping.is_set():
            try:
                self.tick()
            except Exception as e:  # noqa: BLE001
                logger.exception("Scheduler tick failed: %s", e)
            self._stopping.wait(self.poll_interval_seconds)

    def stop(self, wait: bool = True):
        """Stop ticking and cancel queued work; in-flight pairs finish persisting."""
        self._stopping.set()
        if self._driver is not None:
            self._driver.join()
            self._driver = None
        self._pool.shutdown(wait=wait, cancel_futures=True)
        logger.info("Scheduler stopped")
