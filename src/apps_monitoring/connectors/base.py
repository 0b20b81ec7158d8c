from __future__ import annotations
from abc import ABC, abstractmethod
from typing import Dict, Any, List
import logging
import time
from prometheus_client import Counter, Histogram

from apps_monitoring.domain import Tenant
from apps_monitoring.querying.query import QueryKind

EXECUTOR_CALLS = Counter('query_executor_calls_total', 'Query executions sent to the analytics backend', ['executor', 'tenant'])
EXECUTOR_ROWS = Counter('query_executor_rows_total', 'Rows returned by the analytics backend', ['executor', 'tenant'])
EXECUTOR_ERRORS = Counter('query_executor_errors_total', 'Failed query executions', ['executor', 'tenant'])
EXECUTOR_LATENCY = Histogram('query_executor_latency_seconds', 'Latency of query executions', ['executor'], buckets=(0.1, 0.5, 1, 2, 5, 10, 30, 60, 120))

logger = logging.getLogger(__name__)

Row = Dict[str, Any]


class QueryExecutor(ABC):
    """Runs an already formatted query text for one tenant and returns flat rows."""

    name: str

    @abstractmethod
    def execute(self, tenant: Tenant, query_text: str, kind: QueryKind) -> List[Row]:
        ...

    def instrumented_execute(self, tenant: Tenant, query_text: str, kind: QueryKind) -> List[Row]:
        EXECUTOR_CALLS.labels(self.name, tenant.value).inc()
        start = time.time()
        try:
            rows = self.execute(tenant, query_text, kind)
        except Exception:
            EXECUTOR_ERRORS.labels(self.name, tenant.value).inc()
            raise
        finally:
            EXECUTOR_LATENCY.labels(self.name).observe(time.time() - start)
        EXECUTOR_ROWS.labels(self.name, tenant.value).inc(len(rows))
        return rows
