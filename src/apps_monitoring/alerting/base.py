from __future__ import annotations
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Optional


@dataclass(frozen=True)
class AlertPayload:
    tenant: str
    query_name: Optional[str]
    telemetry_id: int
    ext_id: str
    text: str


@dataclass(frozen=True)
class DeliveryResult:
    ok: bool
    ts: Optional[str] = None
    error: Optional[str] = None
    retry_later: bool = False


class NotificationSink(ABC):
    """Delivers one alert message; failures are returned, not raised."""

    name: str
    channel: Optional[str] = None

    @abstractmethod
    def deliver(self, payload: AlertPayload) -> DeliveryResult:
        ...
