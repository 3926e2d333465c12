import logging

import httpx

from consultbook.config import settings
from consultbook.services.http import external_call

logger = logging.getLogger(__name__)

GRAPH_API_URL = "https://graph.facebook.com/v21.0"


class WhatsAppNotifier:
    """Outbound text messages via the Meta Cloud API."""

    def __init__(self, client: httpx.AsyncClient | None = None):
        self._client = client

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=settings.external_timeout_seconds)
        return self._client

    async def send(self, recipient: str, text: str) -> str:
        """Send a WhatsApp message. Returns message ID."""
        to = recipient.lstrip("+")
        url = f"{GRAPH_API_URL}/{settings.meta_phone_number_id}/messages"
        headers = {
            "Authorization": f"Bearer {settings.meta_access_token}",
            "Content-Type": "application/json",
        }
        payload = {
            "messaging_product": "whatsapp",
            "to": to,
            "type": "text",
            "text": {"body": text},
        }
        async with external_call("messaging", "send"):
            resp = await self._get_client().post(url, json=payload, headers=headers)
            resp.raise_for_status()
            data = resp.json()
        msg_id = data.get("messages", [{}])[0].get("id", "")

        logger.info("Sent WhatsApp to %s: %s", to, msg_id)
        return msg_id
