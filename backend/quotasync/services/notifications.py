"""Boundary to the notification subsystem.

The engine only announces which patients newly need attention; delivery,
templating and retries belong to the notification service behind the webhook.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Sequence
from functools import lru_cache
from typing import Protocol

import requests

from quotasync.config import settings

logger = logging.getLogger("quotasync.notifications")


class NotificationTrigger(Protocol):
    async def notify(self, clinic_id: int, patient_ids: Sequence[int]) -> bool:
        """Announce patients whose case entered an alert state."""


class WebhookNotificationTrigger:
    """POSTs ``{"clinicId": ..., "patientIds": [...]}`` to the notification service."""

    def __init__(self, url: str, timeout_seconds: float = 10.0, token: str | None = None) -> None:
        self.url = url
        self.timeout_seconds = timeout_seconds
        self.token = token

    async def notify(self, clinic_id: int, patient_ids: Sequence[int]) -> bool:
        if not patient_ids:
            return False
        payload = {"clinicId": clinic_id, "patientIds": list(patient_ids)}
        headers = {"Content-Type": "application/json"}
        if self.token:
            headers["Authorization"] = f"Bearer {self.token}"

        def _post() -> bool:
            try:
                response = requests.post(
                    self.url,
                    json=payload,
                    headers=headers,
                    timeout=self.timeout_seconds,
                )
            except requests.RequestException:
                logger.exception("Notification webhook request failed for clinic=%s", clinic_id)
                return False
            if response.status_code >= 400:
                logger.warning(
                    "Notification webhook returned HTTP %s for clinic=%s",
                    response.status_code,
                    clinic_id,
                )
                return False
            return True

        return await asyncio.to_thread(_post)


class LoggingNotificationTrigger:
    """Used when no webhook is configured."""

    async def notify(self, clinic_id: int, patient_ids: Sequence[int]) -> bool:
        if patient_ids:
            logger.info(
                "Notification webhook not configured; %d alert(s) for clinic=%s not sent",
                len(patient_ids),
                clinic_id,
            )
        return False


@lru_cache(maxsize=1)
def get_notification_trigger() -> NotificationTrigger:
    if settings.notification_webhook_url:
        return WebhookNotificationTrigger(
            settings.notification_webhook_url,
            timeout_seconds=settings.notification_timeout_seconds,
            token=settings.sync_cron_secret,
        )
    return LoggingNotificationTrigger()
