import logging

from fastapi import APIRouter, Body, Depends, HTTPException, Query

from ..auth import get_current_user
from ..db import parse_iso, to_iso
from ..serializers import camelize, camelize_all
from ..whatsapp import digits_only
from .deps import require_fields
from .runtime import ApiRuntime

log = logging.getLogger(__name__)


def create_scheduled_router(rt: ApiRuntime) -> APIRouter:
    router = APIRouter(prefix="/api/scheduled-messages")

    @router.get("")
    async def list_scheduled(user: dict = Depends(get_current_user)):
        rows = await rt.db_manager.list_scheduled_messages(user["id"])
        return {"scheduledMessages": camelize_all(rows)}

    @router.post("", status_code=201)
    async def create_scheduled(payload: dict = Body(...), user: dict = Depends(get_current_user)):
        require_fields(payload, "connectionId", "recipientPhone", "content", "scheduledAt")
        scheduled_at = parse_iso(payload["scheduledAt"])
        if scheduled_at is None:
            raise HTTPException(status_code=400, detail="Invalid scheduledAt")
        recipient = digits_only(str(payload["recipientPhone"]))
        if not recipient:
            raise HTTPException(status_code=400, detail="Invalid recipientPhone")
        connection = await rt.db_manager.get_connection(str(payload["connectionId"]), user["id"])
        if not connection:
            raise HTTPException(status_code=404, detail="Connection not found")
        row = await rt.db_manager.create_scheduled_message(
            user["id"],
            connection_id=connection["id"],
            recipient_phone=recipient,
            content=str(payload["content"]),
            scheduled_at=to_iso(scheduled_at),
            message_type=str(payload.get("messageType") or "text"),
            media_url=payload.get("mediaUrl"),
        )
        log.info("Scheduled message %s for %s", row["id"], row["scheduled_at"])
        return {"scheduledMessage": camelize(row)}

    @router.delete("")
    async def cancel_scheduled(id: str = Query(...), user: dict = Depends(get_current_user)):
        row = await rt.db_manager.get_scheduled_message(id, user["id"])
        if not row:
            raise HTTPException(status_code=404, detail="Scheduled message not found")
        # Conditional on status, so a row the dispatcher claims meanwhile is refused too.
        if not await rt.db_manager.cancel_scheduled_message(id, user["id"]):
            raise HTTPException(status_code=400, detail="Cannot cancel a message that was already sent")
        return {"success": True}

    return router
