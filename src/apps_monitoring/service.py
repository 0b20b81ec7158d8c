"""Worker wiring: builds every component from Settings and runs them until a signal arrives."""
from __future__ import annotations

import logging
import signal
import threading
from datetime import timedelta
from typing import Optional

from sqlalchemy.orm import sessionmaker

from apps_monitoring.alerting.alerter import Alerter
from apps_monitoring.alerting.base import NotificationSink
from apps_monitoring.alerting.slack import SlackSink
from apps_monitoring.config import Settings, get_settings, parse_csv, parse_tenant_workspaces
from apps_monitoring.connectors.base import QueryExecutor
from apps_monitoring.connectors.log_analytics import LogAnalyticsExecutor
from apps_monitoring.domain import discover_tenants
from apps_monitoring.errors import ConfigurationError
from apps_monitoring.ingestion.ingestor import Ingestor
from apps_monitoring.ingestion.pipeline import QueryPipeline
from apps_monitoring.ingestion.seeder import Seeder
from apps_monitoring.ingestion.windows import WindowTracker
from apps_monitoring.querying.catalog import QueryCatalog
from apps_monitoring.querying.runner import QueryRunner
from apps_monitoring.scheduling.scheduler import Scheduler

logger = logging.getLogger(__name__)


class MonitoringService:
    def __init__(
        self,
        settings: Settings,
        session_factory: Optional[sessionmaker] = None,
        executor: Optional[QueryExecutor] = None,
        sink: Optional[NotificationSink] = None,
    ):
        self.settings = settings
        if session_factory is None:
            from apps_monitoring.infrastructure import db
            session_factory = db.SessionLocal
        self.session_factory = session_factory

        # configuration errors surface here, before anything starts
        self.tenants = discover_tenants(settings)
        if not self.tenants:
            raise ConfigurationError("TENANT_WORKSPACES does not list any tenant")
        self.queries = QueryCatalog.from_settings(settings).load(settings.environment)

        self.executor = executor or LogAnalyticsExecutor(
            workspaces=parse_tenant_workspaces(settings.tenant_workspaces),
            endpoint=settings.log_analytics_endpoint,
            timeout_seconds=settings.query_timeout_seconds,
        )
        self.sink = sink or SlackSink(
            token=settings.slack_bot_token,
            channel=settings.slack_channel,
            base_url=settings.slack_base_url,
            max_retries=settings.slack_max_retries,
            disabled=settings.disable_slack_alerts,
        )
        self.tracker = WindowTracker(
            session_factory,
            search_from_days=settings.search_from_days,
            safety_lag=timedelta(seconds=settings.window_safety_lag_seconds),
        )
        self.runner = QueryRunner(
            self.executor,
            max_attempts=settings.query_max_attempts,
            retry_max_wait=settings.query_retry_max_wait_seconds,
        )
        self.ingestor = Ingestor(session_factory)
        self.alerter = Alerter(
            session_factory,
            self.sink,
            max_attempts=settings.alert_max_attempts,
            poll_interval_seconds=settings.alert_poll_interval_seconds,
            alert_kinds=parse_csv(settings.alert_kinds),
            retry_base_seconds=settings.alert_retry_base_seconds,
            retry_ceiling_seconds=settings.alert_retry_ceiling_seconds,
            claim_lease_seconds=settings.alert_claim_lease_seconds,
        )
        self.pipeline = QueryPipeline(
            self.tracker, self.runner, self.ingestor,
            on_ingested=lambda _result: self.alerter.notify(),
        )
        self.scheduler = Scheduler(
            self.tenants,
            self.queries,
            self.pipeline.process,
            max_concurrency=settings.max_concurrent_queries,
            poll_interval_seconds=settings.poll_interval_seconds,
            backoff_base_seconds=settings.backoff_base_seconds,
            backoff_ceiling_seconds=settings.backoff_ceiling_seconds,
        )
        self.seeder = Seeder(session_factory, settings.seed_db_path)

    def start(self):
        if self.settings.disable_seeder:
            logger.info("Seeder disabled")
        else:
            self.seeder.run()
        if self.settings.disable_alerter:
            logger.info("Alerter disabled")
        else:
            self.alerter.start()
        if self.settings.disable_scheduler:
            logger.info("Scheduler disabled")
        else:
            self.scheduler.start()

    def stop(self):
        # scheduler first so in-flight pairs can still wake the alerter
        self.scheduler.stop(wait=True)
        self.alerter.stop()


def configure_logging(level: str):
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s [%(threadName)s] %(message)s",
    )


def main():
    settings = get_settings()
    configure_logging(settings.log_level)
    try:
        service = MonitoringService(settings)
    except ConfigurationError as e:
        logger.critical("Invalid configuration: %s", e)
        raise SystemExit(2) from e

    shutdown = threading.Event()

    def _handle(signum, _frame):
        logger.info("Received signal %s, shutting down", signum)
        shutdown.set()

    signal.signal(signal.SIGINT, _handle)
    signal.signal(signal.SIGTERM, _handle)
    service.start()
    logger.info("Monitoring %s in %s with %d queries", ", ".join(t.value for t in service.tenants), settings.environment, len(service.queries))
    shutdown.wait()
    service.stop()


if __name__ == "__main__":
    main()
