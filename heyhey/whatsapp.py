import asyncio
import logging
import re
from typing import Any, Dict, Optional

import httpx

from .config import (
    GRAPH_API_BASE,
    LOG_VERBOSE,
    WHATSAPP_API_VERSION,
    WHATSAPP_HTTP_CONNECT_TIMEOUT_SECONDS,
    WHATSAPP_HTTP_TIMEOUT_SECONDS,
)

log = logging.getLogger(__name__)

# Cap concurrent Graph API calls per instance
WA_MAX_CONCURRENCY = 4
wa_semaphore = asyncio.Semaphore(WA_MAX_CONCURRENCY)


def digits_only(value: str) -> str:
    return re.sub(r"\D", "", str(value or ""))


class WhatsAppAPIError(Exception):
    """Non-2xx answer (or transport failure) from the WhatsApp Cloud API."""

    def __init__(self, status_code: int, message: str, payload: Optional[dict] = None):
        super().__init__(message)
        self.status_code = status_code
        self.message = message
        self.payload = payload or {}


def build_message_payload(to: str, message: Any, message_type: str = "text") -> Dict[str, Any]:
    """Graph API body for a single outbound message.

    Text messages wrap the string as {"body": ...}; any other type passes the message
    object through untouched (e.g. {"link": ..., "caption": ...} for media).
    """
    message_type = (message_type or "text").strip() or "text"
    body = {"body": message} if message_type == "text" else message
    return {
        "messaging_product": "whatsapp",
        "recipient_type": "individual",
        "to": digits_only(to),
        "type": message_type,
        message_type: body,
    }


class WhatsAppMessenger:
    """Sends messages through the Graph API on behalf of a stored connection."""

    def __init__(self, api_version: str | None = None, base_url: str | None = None, transport: Optional[httpx.AsyncBaseTransport] = None):
        self.api_version = api_version or WHATSAPP_API_VERSION
        self.base_url = (base_url or GRAPH_API_BASE).rstrip("/")
        # Tests inject an httpx.MockTransport here.
        self.transport = transport

    def messages_url(self, phone_number_id: str) -> str:
        return f"{self.base_url}/{self.api_version}/{phone_number_id}/messages"

    def _client(self) -> httpx.AsyncClient:
        timeout = httpx.Timeout(WHATSAPP_HTTP_TIMEOUT_SECONDS, connect=WHATSAPP_HTTP_CONNECT_TIMEOUT_SECONDS)
        return httpx.AsyncClient(timeout=timeout, transport=self.transport)

    async def send_message(
        self,
        *,
        phone_number_id: str,
        access_token: str,
        to: str,
        message: Any,
        message_type: str = "text",
    ) -> dict:
        """Send one message and return the Graph API JSON; raises WhatsAppAPIError on failure."""
        url = self.messages_url(phone_number_id)
        payload = build_message_payload(to, message, message_type)
        headers = {
            "Authorization": f"Bearer {access_token}",
            "Content-Type": "application/json",
        }
        if LOG_VERBOSE:
            log.info("Sending WhatsApp %s message to %s via %s", payload["type"], payload["to"], phone_number_id)
        try:
            async with wa_semaphore:
                async with self._client() as client:
                    response = await client.post(url, json=payload, headers=headers)
        except httpx.HTTPError as exc:
            log.error("WhatsApp API request failed: %s", exc)
            raise WhatsAppAPIError(502, f"WhatsApp API unreachable: {exc}") from exc
        try:
            result = response.json()
        except ValueError:
            result = {}
        if response.status_code >= 400:
            error = (result or {}).get("error") or {}
            message_text = error.get("message") if isinstance(error, dict) else None
            log.warning("WhatsApp API error %s: %s", response.status_code, message_text or response.text[:200])
            raise WhatsAppAPIError(response.status_code, message_text or "Error sending message", result)
        if LOG_VERBOSE:
            log.info("WhatsApp API response: %s", result)
        return result


def first_message_id(result: dict) -> Optional[str]:
    try:
        return (result.get("messages") or [{}])[0].get("id")
    except (AttributeError, IndexError):
        return None
