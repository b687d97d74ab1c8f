from __future__ import annotations

import logging
from dataclasses import asdict
from typing import Any, Mapping, MutableMapping, Optional

from celery import Celery
from kombu.exceptions import OperationalError

from .config import broker_url, config_from_env, result_backend
from .models import Alert
from .orchestrator import RegistrationOrchestrator, build_orchestrator
from .sweeper import Sweeper
from .webhook import build_alert_payload, deliver_alert, resolve_alert_webhook_url

logger = logging.getLogger(__name__)

SWEEP_TASK = "registration_defense.sweep"
ALERT_TASK = "registration_defense.deliver_alert"

celery_app = Celery("registration_defense", broker=broker_url(), backend=result_backend())
celery_app.conf.update(
    task_serializer="json",
    accept_content=["json"],
    result_serializer="json",
    timezone="UTC",
    enable_utc=True,
    beat_schedule={
        "registration-defense-sweep": {
            "task": SWEEP_TASK,
            "schedule": float(config_from_env().retention.sweep_interval_seconds),
        },
    },
)

_ORCHESTRATOR: Optional[RegistrationOrchestrator] = None


def _get_orchestrator() -> RegistrationOrchestrator:
    global _ORCHESTRATOR
    if _ORCHESTRATOR is None:
        _ORCHESTRATOR = build_orchestrator(alerts=CeleryAlertSink())
    return _ORCHESTRATOR


@celery_app.task(name=SWEEP_TASK)
def sweep() -> MutableMapping[str, Any]:
    report = Sweeper(_get_orchestrator()).run_once()
    return asdict(report)


@celery_app.task(name=ALERT_TASK, bind=True, max_retries=3, default_retry_delay=30)
def deliver_alert_task(self, payload: Mapping[str, Any], webhook_url: Optional[str] = None) -> bool:
    delivered = deliver_alert(webhook_url or resolve_alert_webhook_url(), payload)
    if not delivered and (webhook_url or resolve_alert_webhook_url()):
        raise self.retry()
    return delivered


def enqueue_alert(alert: Alert, webhook_url: Optional[str] = None) -> Optional[str]:
    payload = build_alert_payload(alert)
    try:
        result = deliver_alert_task.apply_async(args=[payload, webhook_url])
    except OperationalError as exc:
        logger.warning("Could not queue defense alert %r: %s", alert.title, exc)
        return None
    return result.id


class CeleryAlertSink:
    """Hands alerts to the worker pool so the request path never waits on the webhook."""

    def __init__(self, webhook_url: Optional[str] = None):
        self.webhook_url = webhook_url

    def send(self, alert: Alert) -> None:
        enqueue_alert(alert, self.webhook_url)
