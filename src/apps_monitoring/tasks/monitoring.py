from __future__ import annotations

import logging
from typing import Any, Dict, Optional

from celery import shared_task

from apps_monitoring.config import get_settings
from apps_monitoring.domain import Tenant
from apps_monitoring.service import MonitoringService

logger = logging.getLogger(__name__)

_service: Optional[MonitoringService] = None


def get_service() -> MonitoringService:
    global _service
    if _service is None:
        _service = MonitoringService(get_settings())
    return _service


def set_service(service: Optional[MonitoringService]):  # test helper
    global _service
    _service = service


@shared_task
def poll_queries() -> Dict[str, Any]:
    """Run every due (tenant, query) pair once and wait for the results."""
    service = get_service()
    outcomes = service.scheduler.run_once()
    written = sum(o.result.written for o in outcomes if o is not None and o.result is not None)
    completed = sum(1 for o in outcomes if o is not None)
    return {"status": "ok", "pairs": len(outcomes), "completed": completed, "written": written}


@shared_task
def deliver_alerts() -> Dict[str, Any]:
    service = get_service()
    if service.settings.disable_alerter:
        return {"status": "skipped", "reason": "alerter_disabled"}
    summary = service.alerter.run_once()
    return {"status": "ok", "sent": summary.sent, "failed": summary.failed, "dropped": summary.dropped}


@shared_task
def seed_telemetry() -> Dict[str, Any]:
    service = get_service()
    if service.settings.disable_seeder:
        return {"status": "skipped", "reason": "seeder_disabled"}
    return {"status": "ok", "seeded": service.seeder.run()}


@shared_task
def reset_query_window(tenant: str, fingerprint: str) -> Dict[str, Any]:
    """Administrative reset: the pair restarts from the bootstrap floor on its next run."""
    service = get_service()
    removed = service.tracker.reset(Tenant.parse(tenant), fingerprint)
    return {"status": "ok", "removed": removed}
