"""Chat channel provisioning via the external chat collaborator.

With ``chat_service_url`` set, POSTs

    {"participants": [a, b], "engagement_id": ...}

and expects ``{"chat_ref": ...}`` back. Without it, the channel id is derived
from the engagement id, so each engagement maps to exactly one channel.
"""

import logging

import httpx

from rendezvous.app.config import get_settings

logger = logging.getLogger(__name__)


class ChatServiceError(Exception):
    """Raised when the chat collaborator cannot create a channel."""


class ChatService:
    """Create chat channels for engaged pairs."""

    def __init__(self, settings=None):
        self.settings = settings or get_settings()

    @property
    def _configured(self) -> bool:
        return bool(self.settings.chat_service_url)

    async def create_channel(self, engagement_id: str, participant_a: str, participant_b: str) -> str:
        """Return the chat reference for this pair's channel."""
        if not self._configured:
            chat_ref = f"chat_{engagement_id}"
            logger.info("Chat service not configured, using derived channel %s", chat_ref)
            return chat_ref

        body = {"participants": [participant_a, participant_b], "engagement_id": engagement_id}
        try:
            async with httpx.AsyncClient(timeout=10.0) as client:
                resp = await client.post(
                    self.settings.chat_service_url,
                    json=body,
                    headers={"Accept": "application/json", "Idempotency-Key": f"{engagement_id}:chat"},
                )
        except httpx.TimeoutException as e:
            logger.error("Chat service timed out for engagement %s", engagement_id)
            raise ChatServiceError("timeout") from e
        except httpx.HTTPError as e:
            logger.error("Chat service error for engagement %s: %s", engagement_id, e)
            raise ChatServiceError(str(e)) from e

        if not 200 <= resp.status_code < 300:
            logger.error("Chat channel creation failed (%d): %s", resp.status_code, resp.text[:300])
            raise ChatServiceError(f"http_{resp.status_code}")

        try:
            chat_ref = resp.json().get("chat_ref")
        except ValueError:
            chat_ref = None
        if not chat_ref:
            raise ChatServiceError("response carried no chat_ref")

        logger.info("Chat channel %s created for engagement %s", chat_ref, engagement_id)
        return chat_ref
