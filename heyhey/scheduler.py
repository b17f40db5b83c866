import asyncio
import logging
from datetime import datetime, timedelta, timezone

from .config import SCHEDULER_BATCH_SIZE, SCHEDULER_INTERVAL_SECONDS, SCHEDULER_STALE_SENDING_SECONDS
from .db import to_iso, utcnow_iso
from .observability.context import job_context
from .whatsapp import WhatsAppAPIError

log = logging.getLogger(__name__)

STALE_SENDING_ERROR = "Sending was interrupted"


def _outbound_payload(row: dict):
    """(message, message_type) for a scheduled row; media rows send the link with the text as caption."""
    message_type = (row.get("message_type") or "text").strip() or "text"
    if message_type == "text" or not row.get("media_url"):
        return row.get("content") or "", "text"
    media = {"link": row["media_url"]}
    if row.get("content") and message_type in ("image", "video", "document"):
        media["caption"] = row["content"]
    return media, message_type


class ScheduledMessageDispatcher:
    def __init__(self, db_manager, message_processor, stale_after_seconds: float | None = None):
        self.db_manager = db_manager
        self.message_processor = message_processor
        self.stale_after_seconds = (
            SCHEDULER_STALE_SENDING_SECONDS if stale_after_seconds is None else stale_after_seconds
        )

    async def dispatch_due(self, batch_size: int | None = None) -> int:
        """Send every due pending message once; returns how many were sent."""
        await self.fail_stale()
        rows = await self.db_manager.claim_due_scheduled_messages(
            utcnow_iso(), int(batch_size or SCHEDULER_BATCH_SIZE)
        )
        sent = 0
        for row in rows:
            with job_context("sched", row["user_id"]):
                try:
                    ok = await self._dispatch_one(row)
                except Exception as exc:
                    # The row is already claimed; it must not stay in 'sending'.
                    log.exception("Scheduled message %s crashed: %s", row["id"], exc)
                    await self._mark_failed(row, str(exc) or exc.__class__.__name__)
                    ok = False
                if ok:
                    sent += 1
        return sent

    async def fail_stale(self) -> int:
        cutoff = to_iso(datetime.now(timezone.utc) - timedelta(seconds=self.stale_after_seconds))
        rows = await self.db_manager.fail_stale_scheduled_messages(cutoff, STALE_SENDING_ERROR)
        for row in rows:
            log.warning("Scheduled message %s was stuck in sending; marked failed", row["id"])
            await self._notify_failed(row, STALE_SENDING_ERROR)
        return len(rows)

    async def _mark_failed(self, row: dict, error: str) -> None:
        if await self.db_manager.set_scheduled_status(row["id"], "failed", only_from="sending", error=error):
            await self._notify_failed(row, error)

    async def _notify_failed(self, row: dict, error: str) -> None:
        await self.db_manager.create_notification(
            row["user_id"],
            type="scheduled_failed",
            title="Scheduled message failed",
            content=f"Message to {row['recipient_phone']} could not be sent: {error}",
            link="/dashboard/scheduled",
        )

    async def _dispatch_one(self, row: dict) -> bool:
        connection = await self.db_manager.get_connection(row["connection_id"], row["user_id"])
        error = None
        result = None
        if connection is None:
            error = "Connection not found"
        else:
            message, message_type = _outbound_payload(row)
            try:
                result = await self.message_processor.send_message(
                    connection, row["recipient_phone"], message, message_type
                )
            except WhatsAppAPIError as exc:
                error = exc.message
        if error is not None:
            log.warning("Scheduled message %s failed: %s", row["id"], error)
            await self._mark_failed(row, error)
            return False
        await self.db_manager.set_scheduled_status(
            row["id"],
            "sent",
            only_from="sending",
            sent_at=utcnow_iso(),
            whatsapp_message_id=(result or {}).get("whatsapp_message_id"),
        )
        await self.db_manager.create_notification(
            row["user_id"],
            type="scheduled_sent",
            title="Scheduled message sent",
            content=f"Message to {row['recipient_phone']} was sent",
            link="/dashboard/scheduled",
        )
        return True

    async def run_forever(self) -> None:
        while True:
            try:
                await self.dispatch_due()
            except Exception as exc:
                log.exception("scheduled message loop error: %s", exc)
            await asyncio.sleep(max(1.0, float(SCHEDULER_INTERVAL_SECONDS)))
