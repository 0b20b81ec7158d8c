from __future__ import annotations

import logging
import threading
from typing import List, Optional

from prometheus_client import Counter
from tenacity import (
    Retrying,
    retry_if_not_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from apps_monitoring.connectors.base import QueryExecutor, Row
from apps_monitoring.domain import Tenant
from apps_monitoring.errors import QueryCancelledError, QueryExecutionError
from apps_monitoring.querying.query import QueryDefinition, Window

QUERY_RUNS = Counter('query_runs_total', 'Query runs by outcome', ['query', 'outcome'])
QUERY_RETRIES = Counter('query_retries_total', 'Query attempts retried after a backend failure', ['query'])

logger = logging.getLogger(__name__)


class QueryRunner:
    """Formats a query for a window and executes it with bounded retries.

    A ``threading.Event`` passed as ``cancel`` is checked before every
    attempt and also interrupts the wait between attempts.
    """

    def __init__(
        self,
        executor: QueryExecutor,
        max_attempts: int = 3,
        retry_min_wait: float = 1.0,
        retry_max_wait: float = 30.0,
    ):
        self.executor = executor
        self.max_attempts = max(1, max_attempts)
        self.retry_min_wait = retry_min_wait
        self.retry_max_wait = retry_max_wait

    def run(self, tenant: Tenant, query: QueryDefinition, window: Window, cancel: Optional[threading.Event] = None) -> List[Row]:
        cancel = cancel or threading.Event()
        text = query.format_window(window)

        def _before_sleep(state):
            QUERY_RETRIES.labels(query.name).inc()
            logger.warning(
                "Query %r for %s failed (attempt %d/%d): %s",
                query.name, tenant, state.attempt_number, self.max_attempts, state.outcome.exception(),
            )

        retrying = Retrying(
            stop=stop_after_attempt(self.max_attempts),
            wait=wait_exponential(multiplier=self.retry_min_wait, min=self.retry_min_wait, max=self.retry_max_wait),
            retry=retry_if_not_exception_type(QueryCancelledError),
            sleep=cancel.wait,
            before_sleep=_before_sleep,
            reraise=True,
        )
        attempts = 0

        def _attempt() -> List[Row]:
            nonlocal attempts
            if cancel.is_set():
                raise QueryCancelledError(f"query {query.name!r} for {tenant} cancelled")
            attempts += 1
            return self.executor.instrumented_execute(tenant, text, query.kind)

        try:
            rows = retrying(_attempt)
        except QueryCancelledError:
            QUERY_RUNS.labels(query.name, "cancelled").inc()
            raise
        except Exception as e:
            QUERY_RUNS.labels(query.name, "failed").inc()
            raise QueryExecutionError(
                f"query {query.name!r} for {tenant} failed after {attempts} attempt(s): {e}",
                tenant=tenant.value,
                query_name=query.name,
                attempts=attempts,
            ) from e
        QUERY_RUNS.labels(query.name, "ok").inc()
        logger.info("Query %r for %s returned %d rows [%s, %s)", query.name, tenant, len(rows), window.start, window.end)
        return rows
