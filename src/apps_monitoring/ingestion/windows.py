"""Per (tenant, query fingerprint) high-water marks.

The stored ``queried_until`` only moves forward: ``commit`` is a single
conditional upsert, so concurrent writers are linearized by the store and a
regression leaves the row untouched.
"""
from __future__ import annotations

import logging
from datetime import datetime, timedelta
from typing import Callable, Optional

from prometheus_client import Counter, Gauge
from sqlalchemy import delete, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker

from apps_monitoring.domain import Tenant
from apps_monitoring.errors import PersistenceError
from apps_monitoring.infrastructure.db import upsert_insert
from apps_monitoring.models.tables import QueryState
from apps_monitoring.querying.query import QueryDefinition, Window
from apps_monitoring.utils.timefmt import as_utc, utc_now

WINDOW_LAG = Gauge('query_window_lag_seconds', 'Lag between now and queried_until', ['tenant', 'query'])
WINDOW_REGRESSIONS = Counter('query_window_regressions_total', 'Rejected attempts to move a window backwards', ['tenant', 'query'])

logger = logging.getLogger(__name__)


class WindowTracker:
    def __init__(
        self,
        session_factory: sessionmaker,
        search_from_days: int = 90,
        safety_lag: timedelta = timedelta(minutes=10),
        clock: Callable[[], datetime] = utc_now,
    ):
        self.session_factory = session_factory
        self.search_from = timedelta(days=search_from_days)
        self.safety_lag = safety_lag
        self.clock = clock

    def get(self, tenant: Tenant, query: QueryDefinition) -> Optional[datetime]:
        try:
            with self.session_factory() as session:
                return self._stored(session, tenant, query.fingerprint)
        except SQLAlchemyError as e:
            raise PersistenceError(f"reading window for {tenant}/{query.name} failed: {e}") from e

    def open_window(self, tenant: Tenant, query: QueryDefinition, now: Optional[datetime] = None) -> Window:
        now = as_utc(now or self.clock())
        stored = self.get(tenant, query)
        start = stored if stored is not None else now - self.search_from
        window = Window(start=start, end=now - self.safety_lag)
        WINDOW_LAG.labels(tenant.value, query.name).set((now - start).total_seconds())
        return window

    def commit(self, tenant: Tenant, query: QueryDefinition, new_until: datetime) -> datetime:
        """Advance the stored bound to ``new_until`` unless it is already later.

        Returns the bound in effect after the call.
        """
        new_until = as_utc(new_until)
        try:
            with self.session_factory() as session:
                stmt = upsert_insert(session, QueryState).values(
                    tenant=tenant.value,
                    query_name=query.name,
                    fingerprint=query.fingerprint,
                    queried_until=new_until,
                    updated_at=utc_now(),
                )
                stmt = stmt.on_conflict_do_update(
                    index_elements=["tenant", "fingerprint"],
                    set_={
                        "query_name": stmt.excluded.query_name,
                        "queried_until": stmt.excluded.queried_until,
                        "updated_at": stmt.excluded.updated_at,
                    },
                    where=QueryState.queried_until < stmt.excluded.queried_until,
                )
                session.execute(stmt)
                session.commit()
                effective = self._stored(session, tenant, query.fingerprint)
        except SQLAlchemyError as e:
            raise PersistenceError(f"committing window for {tenant}/{query.name} failed: {e}") from e
        if effective is None:
            raise PersistenceError(f"window for {tenant}/{query.name} missing after commit")
        if effective > new_until:
            WINDOW_REGRESSIONS.labels(tenant.value, query.name).inc()
            logger.warning(
                "Rejected window regression for %s/%s: stored %s, attempted %s",
                tenant, query.name, effective, new_until,
            )
        else:
            logger.info("Window for %s/%s advanced to %s", tenant, query.name, effective)
        return effective

    def list_states(self, tenant: Optional[Tenant] = None) -> list[QueryState]:
        with self.session_factory() as session:
            stmt = select(QueryState).order_by(QueryState.tenant, QueryState.query_name)
            if tenant is not None:
                stmt = stmt.where(QueryState.tenant == tenant.value)
            return list(session.scalars(stmt))

    def reset(self, tenant: Tenant, fingerprint: str) -> bool:
        """Administrative reset: the next window for this pair starts at the bootstrap floor."""
        with self.session_factory() as session:
            res = session.execute(
                delete(QueryState).where(QueryState.tenant == tenant.value, QueryState.fingerprint == fingerprint)
            )
            session.commit()
        removed = bool(res.rowcount)
        logger.warning("Window reset for %s fingerprint %s (removed=%s)", tenant, fingerprint[:12], removed)
        return removed

    @staticmethod
    def _stored(session: Session, tenant: Tenant, fingerprint: str) -> Optional[datetime]:
        value = session.scalar(
            select(QueryState.queried_until).where(
                QueryState.tenant == tenant.value, QueryState.fingerprint == fingerprint
            )
        )
        return as_utc(value) if value is not None else None
