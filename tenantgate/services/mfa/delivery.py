from __future__ import annotations

from collections import deque
from dataclasses import dataclass
import logging
from typing import Protocol

import httpx

from tenantgate.core.config import Settings, get_settings
from tenantgate.core.errors import InfrastructureUnavailable


logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class DeliveredCode:
    method: str
    target: str
    code: str
    purpose: str


class CodeDelivery(Protocol):
    async def deliver(self, *, method: str, target: str, code: str, purpose: str) -> None: ...


def mask_target(target: str) -> str:
    if "@" in target:
        local, _, domain = target.partition("@")
        return f"{local[:1]}***@{domain}"
    return f"***{target[-4:]}" if len(target) > 4 else "***"


class OutboxCodeDelivery:
    # Local delivery: codes stay in an in-process outbox and only masked targets are logged.
    def __init__(self, *, max_items: int = 100) -> None:
        self.outbox: deque[DeliveredCode] = deque(maxlen=max_items)

    async def deliver(self, *, method: str, target: str, code: str, purpose: str) -> None:
        self.outbox.append(DeliveredCode(method=method, target=target, code=code, purpose=purpose))
        logger.info("mfa_code_queued method=%s target=%s purpose=%s", method, mask_target(target), purpose)

    def latest_for(self, target: str) -> DeliveredCode | None:
        for item in reversed(self.outbox):
            if item.target == target:
                return item
        return None


class WebhookCodeDelivery:
    """POSTs codes to an SMS/email relay. Relay failures surface as unavailable."""

    def __init__(self, webhook_url: str, *, timeout_s: float) -> None:
        self._webhook_url = webhook_url
        self._timeout_s = timeout_s

    async def deliver(self, *, method: str, target: str, code: str, purpose: str) -> None:
        payload = {"channel": method, "to": target, "code": code, "purpose": purpose}
        try:
            async with httpx.AsyncClient(timeout=self._timeout_s) as client:
                response = await client.post(self._webhook_url, json=payload)
            response.raise_for_status()
        except httpx.HTTPError as exc:
            logger.error("mfa_delivery_failed method=%s target=%s", method, mask_target(target), exc_info=exc)
            raise InfrastructureUnavailable("Code delivery unavailable") from exc
        logger.info("mfa_code_delivered method=%s target=%s purpose=%s", method, mask_target(target), purpose)


def build_delivery(settings: Settings | None = None) -> CodeDelivery:
    settings = settings or get_settings()
    if settings.mfa_delivery_webhook_url:
        return WebhookCodeDelivery(
            settings.mfa_delivery_webhook_url,
            timeout_s=settings.ext_call_timeout_ms / 1000,
        )
    return OutboxCodeDelivery()
