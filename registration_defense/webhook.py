from __future__ import annotations

import logging
import os
from typing import Any, Mapping, MutableMapping, Optional, Protocol

import httpx
from fastapi.encoders import jsonable_encoder

from .models import Alert

logger = logging.getLogger(__name__)


class AlertSink(Protocol):
    def send(self, alert: Alert) -> None: ...


def resolve_alert_webhook_url(default: Optional[str] = None) -> Optional[str]:
    """Return the operator alert webhook URL from environment or provided default."""
    return os.getenv("DEFENSE_ALERT_WEBHOOK_URL", default)


def build_alert_payload(alert: Alert, *, source: str = "registration_defense") -> MutableMapping[str, Any]:
    """Create a JSON-serializable payload describing an operator alert."""
    payload: MutableMapping[str, Any] = {
        "source": source,
        "severity": alert.severity,
        "kind": alert.kind,
        "title": alert.title,
        "message": alert.message,
        "created_at": alert.created_at,
        "details": alert.details,
    }
    return jsonable_encoder(payload)


def deliver_alert(
    webhook_url: Optional[str],
    payload: Mapping[str, Any],
    transport: Optional[httpx.BaseTransport] = None,
) -> bool:
    """Post the payload to the configured webhook endpoint if present."""
    if not webhook_url:
        return False

    try:
        with httpx.Client(timeout=5.0, transport=transport) as client:
            response = client.post(str(webhook_url), json=payload)
            response.raise_for_status()
    except httpx.HTTPError as exc:
        logger.warning("Failed to deliver defense alert to %s: %s", webhook_url, exc)
        return False
    return True


class LoggingAlertSink:
    def __init__(self) -> None:
        self.sent: list[Alert] = []

    def send(self, alert: Alert) -> None:
        self.sent.append(alert)
        logger.warning("[%s] %s: %s", alert.severity.upper(), alert.title, alert.message)


class WebhookAlertSink:
    """Delivers alerts synchronously; use the Celery sink on the request path."""

    def __init__(self, webhook_url: Optional[str] = None, transport: Optional[httpx.BaseTransport] = None):
        self.webhook_url = webhook_url or resolve_alert_webhook_url()
        self.transport = transport

    def send(self, alert: Alert) -> None:
        deliver_alert(self.webhook_url, build_alert_payload(alert), transport=self.transport)
