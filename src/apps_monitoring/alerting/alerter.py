"""Turns newly ingested failure records into notifications.

Before the sink is called an alert row is claimed: inserted as PENDING
(unique per telemetry record), then leased with a conditional update on
``claimed_until``. Only the worker whose update matched sends, so overlapping
alerters in different threads or processes never deliver the same record
twice. After delivery the row moves to ALERTED. A failed delivery stays
PENDING with ``next_attempt_at`` pushed out by a capped exponential delay,
and after ``max_attempts`` it is DROPPED.
"""
from __future__ import annotations

import logging
import threading
from dataclasses import dataclass
from datetime import datetime, timedelta
from enum import Enum
from typing import Callable, Iterable, List, Optional, Tuple

from prometheus_client import Counter
from sqlalchemy import or_, select, update
from sqlalchemy.orm import sessionmaker

from apps_monitoring.alerting.base import AlertPayload, NotificationSink
from apps_monitoring.infrastructure.db import upsert_insert
from apps_monitoring.models.tables import Alert, TelemetryRecord
from apps_monitoring.querying.query import QueryKind
from apps_monitoring.utils.backoff import backoff_delay
from apps_monitoring.utils.timefmt import as_utc, utc_now

ALERTS_SENT = Counter('alerts_sent_total', 'Alerts delivered', ['tenant'])
ALERTS_FAILED = Counter('alerts_failed_total', 'Failed alert delivery attempts', ['tenant'])
ALERTS_DROPPED = Counter('alerts_dropped_total', 'Alerts abandoned after the attempt limit', ['tenant'])

logger = logging.getLogger(__name__)


class AlertState(str, Enum):
    PENDING = "pending"
    ALERTED = "alerted"
    MITIGATED = "mitigated"
    DROPPED = "dropped"


@dataclass
class AlertRunSummary:
    considered: int = 0
    sent: int = 0
    failed: int = 0
    dropped: int = 0


def format_alert(record: TelemetryRecord) -> str:
    data = record.data or {}
    generated = as_utc(record.time_generated).strftime("%Y-%m-%d %H:%M:%S UTC")
    lines = [
        f":rotating_light: {record.query_name or 'Telemetry alert'}",
        f"Time: {generated}",
        f"App: {record.tenant}/{record.app_name} v{record.app_version or '?'}",
    ]
    if record.kind == QueryKind.TRACES.value:
        lines.append(f"Span: {data.get('span_name') or '-'}")
        lines.append(f"Result: {data.get('result') or '-'} ({data.get('duration_ms') or 0:.0f} ms)")
        if data.get("instance_id"):
            lines.append(f"Instance: {data.get('instance_owner_party_id')}/{data.get('instance_id')}")
        lines.append(f"Trace ID: {data.get('trace_id') or '-'}")
    elif record.kind == QueryKind.LOGS.value:
        lines.append(f"Message: {data.get('message') or '-'}")
        if data.get("trace_id"):
            lines.append(f"Trace ID: {data.get('trace_id')}")
    else:
        lines.append(f"{data.get('name')}: {data.get('value')}")
    return "\n".join(lines)


class Alerter:
    def __init__(
        self,
        session_factory: sessionmaker,
        sink: NotificationSink,
        max_attempts: int = 5,
        poll_interval_seconds: float = 300,
        alert_kinds: Iterable[str] = (QueryKind.TRACES.value,),
        batch_size: int = 100,
        formatter: Callable[[TelemetryRecord], str] = format_alert,
        retry_base_seconds: float = 60,
        retry_ceiling_seconds: float = 3600,
        claim_lease_seconds: float = 300,
        clock: Callable[[], datetime] = utc_now,
    ):
        self.session_factory = session_factory
        self.sink = sink
        self.max_attempts = max(1, max_attempts)
        self.poll_interval_seconds = poll_interval_seconds
        self.alert_kinds = [str(k) for k in alert_kinds]
        self.batch_size = batch_size
        self.formatter = formatter
        self.retry_base_seconds = retry_base_seconds
        self.retry_ceiling_seconds = retry_ceiling_seconds
        self.claim_lease = timedelta(seconds=claim_lease_seconds)
        self.clock = clock
        self._lock = threading.Lock()
        self._stopping = threading.Event()
        self._wake = threading.Event()
        self._thread: Optional[threading.Thread] = None

    def list_work_items(self) -> List[Tuple[TelemetryRecord, Optional[Alert]]]:
        now = self.clock()
        with self.session_factory() as session:
            stmt = (
                select(TelemetryRecord, Alert)
                .outerjoin(Alert, Alert.telemetry_id == TelemetryRecord.id)
                .where(TelemetryRecord.seeded.is_(False))
                .where(TelemetryRecord.kind.in_(self.alert_kinds))
                .where(or_(Alert.id.is_(None), Alert.state == AlertState.PENDING.value))
                .where(or_(Alert.next_attempt_at.is_(None), Alert.next_attempt_at <= now))
                .where(or_(Alert.claimed_until.is_(None), Alert.claimed_until < now))
                .order_by(TelemetryRecord.id)
                .limit(self.batch_size)
            )
            return [(rec, alert) for rec, alert in session.execute(stmt).all()]

    def run_once(self) -> AlertRunSummary:
        """One pass over due work; passes never overlap within a process."""
        summary = AlertRunSummary()
        with self._lock:
            for record, _ in self.list_work_items():
                outcome = self._process(record)
                if outcome is None:
                    continue
                summary.considered += 1
                if outcome == "sent":
                    summary.sent += 1
                elif outcome == "dropped":
                    summary.failed += 1
                    summary.dropped += 1
                elif outcome == "failed":
                    summary.failed += 1
        if summary.considered:
            logger.info(
                "Alert pass: %d considered, %d sent, %d failed, %d dropped",
                summary.considered, summary.sent, summary.failed, summary.dropped,
            )
        return summary

    def _claim(self, record: TelemetryRecord) -> Optional[Alert]:
        """Lease the alert for ``record``; None when it is settled, not yet due or leased elsewhere."""
        now = self.clock()
        with self.session_factory() as session:
            stmt = upsert_insert(session, Alert).values(
                telemetry_id=record.id,
                state=AlertState.PENDING.value,
                attempts=0,
                channel=self.sink.channel,
                created_at=now,
                updated_at=now,
            ).on_conflict_do_nothing(index_elements=["telemetry_id"])
            session.execute(stmt)
            leased = session.execute(
                update(Alert)
                .where(
                    Alert.telemetry_id == record.id,
                    Alert.state == AlertState.PENDING.value,
                    or_(Alert.claimed_until.is_(None), Alert.claimed_until < now),
                    or_(Alert.next_attempt_at.is_(None), Alert.next_attempt_at <= now),
                )
                .values(claimed_until=now + self.claim_lease, updated_at=now)
            )
            session.commit()
            if leased.rowcount != 1:
                return None
            return session.scalar(select(Alert).where(Alert.telemetry_id == record.id))

    def _process(self, record: TelemetryRecord) -> Optional[str]:
        alert = self._claim(record)
        if alert is None:
            return None
        text = self.formatter(record)
        result = self.sink.deliver(AlertPayload(
            tenant=record.tenant,
            query_name=record.query_name,
            telemetry_id=record.id,
            ext_id=record.ext_id,
            text=text,
        ))
        now = self.clock()
        with self.session_factory() as session:
            if result.ok:
                session.execute(
                    update(Alert)
                    .where(Alert.id == alert.id, Alert.state == AlertState.PENDING.value)
                    .values(state=AlertState.ALERTED.value, thread_ts=result.ts, message=text,
                            attempts=alert.attempts + 1, last_error=None, claimed_until=None,
                            next_attempt_at=None, updated_at=now)
                )
                session.commit()
                ALERTS_SENT.labels(record.tenant).inc()
                logger.info("Alerted telemetry %s (%s/%s)", record.id, record.tenant, record.ext_id)
                return "sent"
            ALERTS_FAILED.labels(record.tenant).inc()
            # rate limiting is the sink asking us to wait, not a failed attempt
            attempts = alert.attempts if result.retry_later else alert.attempts + 1
            dropped = attempts >= self.max_attempts
            delay = backoff_delay(max(attempts, 1), self.retry_base_seconds, self.retry_ceiling_seconds)
            session.execute(
                update(Alert)
                .where(Alert.id == alert.id, Alert.state == AlertState.PENDING.value)
                .values(
                    state=AlertState.DROPPED.value if dropped else AlertState.PENDING.value,
                    attempts=attempts,
                    message=text,
                    last_error=(result.error or "delivery failed")[:512],
                    claimed_until=None,
                    next_attempt_at=None if dropped else now + timedelta(seconds=delay),
                    updated_at=now,
                )
            )
            session.commit()
        if dropped:
            ALERTS_DROPPED.labels(record.tenant).inc()
            logger.error(
                "Dropping alert for telemetry %s (%s/%s) after %d attempts: %s",
                record.id, record.tenant, record.ext_id, attempts, result.error,
            )
            return "dropped"
        logger.warning(
            "Alert for telemetry %s failed (attempt %d/%d), retrying in %.0fs: %s",
            record.id, attempts, self.max_attempts, delay, result.error,
        )
        return "failed"

    def notify(self):
        """Wake the background loop early, e.g. after new records were ingested."""
        self._wake.set()

    def start(self):
        if self._thread is not None:
            return
        self._thread = threading.Thread(target=self._loop, name="alerter", daemon=True)
        self._thread.start()
        logger.info("Alerter started, interval %ss via %s", self.poll_interval_seconds, self.sink.name)

    def _loop(self):
        while not self._stopping.is_set():
            try:
                self.run_once()
            except Exception as e:  # noqa: BLE001
                logger.exception("Alert pass failed: %s", e)
            self._wake.wait(self.poll_interval_seconds)
            self._wake.clear()

    def stop(self):
        self._stopping.set()
        self._wake.set()
        if self._thread is not None:
            self._thread.join()
            self._thread = None
        logger.info("Alerter stopped")
