"""
Alert Notifications - delivery of emitted alerts.

Every alert is logged; when a webhook URL is configured the alert is also
POSTed there as JSON.
"""

from typing import Any, Optional

import httpx
import structlog

from speichr.core.models import AlertSeverity
from speichr.core.schemas import AlertEvent

logger = structlog.get_logger()


class AlertNotifier:
    """
    Alert delivery service.

    Delivery failures are logged and never raised back into the operation
    that produced the alert.
    """

    def __init__(
        self,
        webhook_url: Optional[str] = None,
        timeout_seconds: float = 5.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.webhook_url = webhook_url
        self.timeout_seconds = timeout_seconds
        self._transport = transport

    async def notify(self, alert: AlertEvent) -> None:
        """
        Deliver an alert.

        Args:
            alert: Alert that was just stored
        """
        log = logger.warning if alert.severity != AlertSeverity.INFO else logger.info
        log(
            "alert_emitted",
            alert_id=alert.id,
            severity=alert.severity.value,
            source=alert.source.value,
            title=alert.title,
            connection_id=alert.connection_id,
        )

        if self.webhook_url:
            await self._send_webhook(self._payload(alert))

    @staticmethod
    def _payload(alert: AlertEvent) -> dict[str, Any]:
        return {
            "id": alert.id,
            "created_at": alert.created_at.isoformat(),
            "severity": alert.severity.value,
            "source": alert.source.value,
            "title": alert.title,
            "message": alert.message,
            "connection_id": alert.connection_id,
            "environment": alert.environment.value if alert.environment else None,
        }

    async def _send_webhook(self, payload: dict[str, Any]) -> None:
        """Send alert to the configured webhook."""
        try:
            async with httpx.AsyncClient(
                timeout=self.timeout_seconds,
                transport=self._transport,
            ) as client:
                response = await client.post(self.webhook_url, json=payload)
                if response.status_code >= 400:
                    logger.warning(
                        "alert_webhook_rejected",
                        status_code=response.status_code,
                        alert_id=payload["id"],
                    )
        except Exception as e:
            # InvalidURL is not an HTTPError
            logger.error(
                "alert_webhook_failed",
                error=str(e) or e.__class__.__name__,
                alert_id=payload["id"],
            )
