"""Notification delivery to the external push/notification collaborator.

POSTs JSON to ``notification_webhook_url``:

    {"user_id": ..., "kind": ..., "payload": {...}}

with an ``Idempotency-Key`` header of ``"{engagement_id}:{status}"`` so the
consumer can drop duplicates. When no webhook is configured the notification
is only logged (local development).
"""

import asyncio
import logging

import httpx

from rendezvous.app.config import get_settings

logger = logging.getLogger(__name__)

# Statuses worth an immediate second try before handing back to the outbox
_TRANSIENT_STATUSES = {429, 502, 503, 504}


class NotificationService:
    """Send notifications to participants via the configured webhook."""

    def __init__(self, settings=None):
        self.settings = settings or get_settings()

    @property
    def _configured(self) -> bool:
        return bool(self.settings.notification_webhook_url)

    async def send_notification(
        self,
        user_id: str,
        kind: str,
        payload: dict,
        idempotency_key: str | None = None,
    ) -> dict:
        """Deliver one notification. Returns {"ok": bool, ...}; never raises."""
        if not self._configured:
            logger.info("Notification (log only) to %s: kind=%s payload=%s", user_id, kind, payload)
            return {"ok": True, "channel": "log"}

        headers = {"Accept": "application/json"}
        if idempotency_key:
            headers["Idempotency-Key"] = idempotency_key
        body = {"user_id": user_id, "kind": kind, "payload": payload}

        for attempt in range(2):
            try:
                async with httpx.AsyncClient(timeout=self.settings.notification_timeout_seconds) as client:
                    resp = await client.post(
                        self.settings.notification_webhook_url,
                        json=body,
                        headers=headers,
                    )

                if 200 <= resp.status_code < 300:
                    logger.info("Notification sent to %s (kind=%s, status=%d)", user_id, kind, resp.status_code)
                    return {"ok": True, "status": resp.status_code}

                if resp.status_code in _TRANSIENT_STATUSES and attempt == 0:
                    logger.warning(
                        "Notification webhook %d for %s, retrying once: %s",
                        resp.status_code, user_id, resp.text[:300],
                    )
                    await asyncio.sleep(1)
                    continue

                logger.error("Notification failed (%d) for %s: %s", resp.status_code, user_id, resp.text[:300])
                return {"ok": False, "error": f"http_{resp.status_code}", "status": resp.status_code}

            except httpx.TimeoutException:
                logger.error("Notification webhook timed out for %s", user_id)
                return {"ok": False, "error": "timeout"}
            except httpx.HTTPError as e:
                logger.error("Notification webhook error for %s: %s", user_id, e)
                return {"ok": False, "error": str(e)}

        return {"ok": False, "error": "max_retries"}
