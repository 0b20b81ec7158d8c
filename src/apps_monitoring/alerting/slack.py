from __future__ import annotations
import logging
from typing import Optional

from slack_sdk import WebClient
from slack_sdk.errors import SlackApiError
from slack_sdk.http_retry.builtin_handlers import ConnectionErrorRetryHandler, RateLimitErrorRetryHandler

from .base import AlertPayload, DeliveryResult, NotificationSink

logger = logging.getLogger(__name__)


class SlackSink(NotificationSink):
    name = "slack"

    def __init__(
        self,
        token: Optional[str],
        channel: Optional[str],
        base_url: str = "https://slack.com/api/",
        max_retries: int = 3,
        disabled: bool = False,
        client: Optional[WebClient] = None,
    ):
        self.channel = channel
        self.disabled = disabled
        if client is not None:
            self._client = client
        elif disabled:
            self._client = None
        else:
            if not token or not channel:
                raise ValueError("SLACK_BOT_TOKEN and SLACK_CHANNEL are required unless Slack alerts are disabled")
            self._client = WebClient(
                token=token,
                base_url=base_url,
                retry_handlers=[
                    ConnectionErrorRetryHandler(max_retry_count=max_retries),
                    RateLimitErrorRetryHandler(max_retry_count=max_retries),
                ],
            )

    def deliver(self, payload: AlertPayload) -> DeliveryResult:
        if self.disabled:
            logger.info("Slack alerts disabled, would have sent for %s/%s:\n%s", payload.tenant, payload.ext_id, payload.text)
            return DeliveryResult(ok=True, ts="none")
        try:
            resp = self._client.chat_postMessage(channel=self.channel, text=payload.text, unfurl_links=False)
        except SlackApiError as e:
            error = e.response.get("error") if e.response is not None else str(e)
            retry_later = getattr(e.response, "status_code", None) == 429
            logger.warning("Slack rejected alert for telemetry %s: %s", payload.telemetry_id, error)
            return DeliveryResult(ok=False, error=str(error), retry_later=retry_later)
        except Exception as e:  # noqa: BLE001
            logger.warning("Slack delivery for telemetry %s failed: %s", payload.telemetry_id, e)
            return DeliveryResult(ok=False, error=str(e))
        return DeliveryResult(ok=True, ts=resp.get("ts"))
