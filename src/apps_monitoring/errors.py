"""Error taxonomy shared by the monitoring components.

Only ``ConfigurationError`` is fatal to the worker; everything else is
handled per (tenant, query) pair or per alert.
"""
from __future__ import annotations


class MonitoringError(Exception):
    """Base class for monitoring failures."""


class ConfigurationError(MonitoringError):
    """Invalid environment, catalog, tenant or query definition."""


class QueryExecutionError(MonitoringError):
    """The analytics backend failed after the retry budget was spent."""

    retryable = True

    def __init__(self, message: str, tenant: str | None = None, query_name: str | None = None, attempts: int = 0):
        super().__init__(message)
        self.tenant = tenant
        self.query_name = query_name
        self.attempts = attempts


class QueryCancelledError(MonitoringError):
    """Cancellation was signalled before the query could run."""


class PersistenceError(MonitoringError):
    """The telemetry store rejected a write or read."""

    retryable = True


class MalformedRowError(MonitoringError):
    """A result row that cannot be turned into a telemetry record."""

    def __init__(self, message: str, row: dict | None = None):
        super().__init__(message)
        self.row = row or {}


class SeedError(MonitoringError):
    """Seed data is missing required fields."""
