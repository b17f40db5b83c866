import json
import logging
from datetime import datetime, timezone
from typing import Any, Optional

from .chatbot import ChatbotEngine, IncomingMessage
from .config import LOG_VERBOSE
from .db import to_iso, utcnow_iso
from .whatsapp import WhatsAppAPIError, WhatsAppMessenger, digits_only, first_message_id

log = logging.getLogger(__name__)

# WhatsApp delivery statuses in the order they can progress
_STATUS_RANK = {"sent": 1, "delivered": 2, "read": 3, "failed": 99}


def _message_time(raw_ts: Any) -> str:
    try:
        return to_iso(datetime.fromtimestamp(int(raw_ts), tz=timezone.utc))
    except (TypeError, ValueError, OverflowError, OSError):
        return utcnow_iso()


def inbound_content(message: dict) -> tuple[str, Optional[str]]:
    """Return (message_type, content) for a WhatsApp webhook message object."""
    msg_type = str(message.get("type") or "text")
    if msg_type == "text":
        return msg_type, str((message.get("text") or {}).get("body") or "")
    if msg_type == "button":
        return msg_type, str((message.get("button") or {}).get("text") or "")
    if msg_type == "interactive":
        inter = message.get("interactive") or {}
        reply = inter.get("button_reply") or inter.get("list_reply") or {}
        return msg_type, str(reply.get("title") or f"[{msg_type}]")
    media = message.get(msg_type) or {}
    caption = media.get("caption") if isinstance(media, dict) else None
    return msg_type, f"[{msg_type}] {caption}" if caption else f"[{msg_type}]"


class MessageProcessor:
    """Webhook payload handling and outbound sends, shared by the API and background workers."""

    def __init__(self, db_manager, redis_manager, messenger: WhatsAppMessenger, chatbot: ChatbotEngine):
        self.db_manager = db_manager
        self.redis_manager = redis_manager
        self.whatsapp_messenger = messenger
        self.chatbot = chatbot

    # ── outbound ───────────────────────────────────────────────────
    async def send_message(self, connection: dict, to: str, message: Any, message_type: str = "text") -> dict:
        """Send through the Graph API and log the outbound message.

        Raises WhatsAppAPIError when the API rejects the request.
        """
        if not connection.get("access_token"):
            raise WhatsAppAPIError(400, "Connection has no access token")
        result = await self.whatsapp_messenger.send_message(
            phone_number_id=connection["phone_number_id"],
            access_token=connection["access_token"],
            to=to,
            message=message,
            message_type=message_type,
        )
        wa_id = first_message_id(result)
        content = message if isinstance(message, str) else json.dumps(message)
        stored = await self.db_manager.create_message(
            connection_id=connection["id"],
            direction="outbound",
            from_number=connection.get("phone_number"),
            to_number=digits_only(to),
            content=content,
            message_type=message_type or "text",
            status="sent",
            whatsapp_message_id=wa_id,
        )
        return {"message": stored, "whatsapp_message_id": wa_id, "response": result}

    # ── inbound (webhook) ──────────────────────────────────────────
    async def process_incoming_message(self, data: dict) -> None:
        """Handle one webhook delivery from Meta."""
        if (data or {}).get("object") != "whatsapp_business_account":
            if LOG_VERBOSE:
                log.info("Ignoring webhook object=%s", (data or {}).get("object"))
            return
        for entry in data.get("entry") or []:
            waba_id = str(entry.get("id") or "")
            for change in entry.get("changes") or []:
                await self._process_change(waba_id, change)

    async def _resolve_connection(self, waba_id: str, value: dict) -> Optional[dict]:
        connection = await self.db_manager.get_connection_by_waba_id(waba_id) if waba_id else None
        if connection is None:
            phone_number_id = str(((value or {}).get("metadata") or {}).get("phone_number_id") or "")
            if phone_number_id:
                connection = await self.db_manager.get_connection_by_phone_number_id(phone_number_id)
        return connection

    async def _process_change(self, waba_id: str, change: dict) -> None:
        field = str(change.get("field") or "unknown")
        value = change.get("value") or {}
        connection = await self._resolve_connection(waba_id, value)
        log_id = await self.db_manager.create_webhook_log(
            connection_id=(connection or {}).get("id"),
            user_id=(connection or {}).get("user_id"),
            event_type=field,
            payload=value,
        )
        if field == "messages":
            if connection is None:
                log.warning("Webhook messages for unknown waba_id=%s", waba_id)
            else:
                for status in value.get("statuses") or []:
                    await self._apply_status(status)
                contact_names = {
                    str(c.get("wa_id") or ""): (c.get("profile") or {}).get("name")
                    for c in value.get("contacts") or []
                }
                for message in value.get("messages") or []:
                    await self._handle_inbound(connection, waba_id, message, contact_names)
        elif field == "message_template_status_update":
            await self._handle_template_status(connection, value)
        await self.db_manager.mark_webhook_log_processed(log_id)

    async def _apply_status(self, status: dict) -> None:
        wa_id = str(status.get("id") or "")
        new_status = str(status.get("status") or "")
        if not wa_id or new_status not in _STATUS_RANK:
            return
        existing = await self.db_manager.get_message_by_whatsapp_id(wa_id)
        if not existing:
            return
        # Webhooks can arrive out of order; never move a status backwards.
        if _STATUS_RANK.get(existing.get("status"), 0) >= _STATUS_RANK[new_status]:
            return
        await self.db_manager.update_message_status(wa_id, new_status)

    async def _handle_inbound(self, connection: dict, waba_id: str, message: dict, contact_names: dict) -> None:
        wa_id = str(message.get("id") or "")
        sender = digits_only(message.get("from") or "")
        if not sender:
            return
        if wa_id and not await self.redis_manager.mark_webhook_message_seen(wa_id):
            return
        msg_type, content = inbound_content(message)
        at = _message_time(message.get("timestamp"))
        # Meta retries deliveries; the unique whatsapp_message_id index decides which copy wins.
        stored = await self.db_manager.create_message(
            connection_id=connection["id"],
            direction="inbound",
            from_number=sender,
            to_number=connection.get("phone_number"),
            content=content,
            message_type=msg_type,
            status="received",
            whatsapp_message_id=wa_id or None,
            created_at=at,
            skip_duplicate=True,
        )
        if stored is None:
            return
        name = contact_names.get(sender) or None
        contact = await self.db_manager.record_inbound_contact(connection["user_id"], sender, name, at)
        await self.db_manager.create_notification(
            connection["user_id"],
            type="new_message",
            title=f"New message from {contact.get('name') or sender}",
            content=(content or "")[:200],
            link="/dashboard/messages",
        )
        if msg_type != "text" or not content:
            return
        if contact.get("is_blocked"):
            log.info("Skipping chatbot for blocked contact %s", sender)
            return
        result = await self.chatbot.process_message(
            IncomingMessage(from_phone=sender, text=content, connection_id=connection["id"], waba_id=waba_id)
        )
        if not result.should_respond or not result.response:
            return
        try:
            await self.send_message(connection, sender, result.response)
        except WhatsAppAPIError as exc:
            log.error("Chatbot reply to %s failed: %s", sender, exc.message)

    async def _handle_template_status(self, connection: Optional[dict], value: dict) -> None:
        event = str(value.get("event") or "")
        name = str(value.get("message_template_name") or value.get("message_template_id") or "")
        log.info("Template status update: template=%s event=%s", name, event)
        if connection is None:
            return
        reason = value.get("reason")
        content = f"Template {name} is now {event}"
        if reason and str(reason).upper() != "NONE":
            content += f" ({reason})"
        await self.db_manager.create_notification(
            connection["user_id"],
            type="template_status",
            title="Template status updated",
            content=content,
        )
