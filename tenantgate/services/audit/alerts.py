from __future__ import annotations

from collections import deque
from datetime import datetime, timezone
import logging
from typing import Any

import httpx

from tenantgate.core.config import get_settings
from tenantgate.services.audit.redaction import redact


# Dedicated logger so alert routing does not depend on the audit store.
alert_logger = logging.getLogger("tenantgate.alerts")
logger = logging.getLogger(__name__)


class AlertChannel:
    """Out-of-band alert sink used when the audit store itself may be failing.

    Alerts always go to the ``tenantgate.alerts`` logger at CRITICAL. When a
    webhook URL is configured the alert is also POSTed there; webhook failures
    are logged and never raised back into the caller.
    """

    def __init__(self, *, webhook_url: str | None = None, timeout_s: float | None = None) -> None:
        settings = get_settings()
        self._webhook_url = webhook_url if webhook_url is not None else settings.audit_alert_webhook_url
        self._timeout_s = timeout_s if timeout_s is not None else settings.ext_call_timeout_ms / 1000
        # Most recent alerts, kept for health checks.
        self.recent: deque[dict[str, Any]] = deque(maxlen=100)

    async def send(
        self,
        *,
        alert_type: str,
        severity: str,
        message: str,
        details: dict[str, Any] | None = None,
    ) -> None:
        payload = {
            "alert_type": alert_type,
            "severity": severity,
            "message": message,
            "details": redact(details or {}),
            "sent_at": datetime.now(timezone.utc).isoformat(),
        }
        self.recent.append(payload)
        alert_logger.critical(
            "security_alert alert_type=%s severity=%s message=%s",
            alert_type,
            severity,
            message,
        )
        if not self._webhook_url:
            return
        try:
            async with httpx.AsyncClient(timeout=self._timeout_s) as client:
                response = await client.post(self._webhook_url, json=payload)
            response.raise_for_status()
        except httpx.HTTPError as exc:
            logger.error("alert_webhook_failed alert_type=%s", alert_type, exc_info=exc)
