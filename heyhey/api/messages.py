import logging
from datetime import timedelta

from fastapi import APIRouter, Body, Depends, HTTPException, Query
from fastapi.responses import Response

from ..auth import get_current_user
from ..db import parse_iso, to_iso
from ..exports import CSV_MEDIA_TYPE, conversations_csv, conversations_json, export_filename
from ..serializers import camelize_all
from ..whatsapp import WhatsAppAPIError
from .deps import optional_rate_limit_send, require_fields, whatsapp_http_error
from .runtime import ApiRuntime

log = logging.getLogger(__name__)


def _date_bound(raw: str | None, name: str, end: bool = False) -> str | None:
    if not raw:
        return None
    dt = parse_iso(raw)
    if dt is None:
        raise HTTPException(status_code=400, detail=f"Invalid {name}")
    # A bare end date covers the whole day
    if end and len(raw.strip()) == 10:
        dt = dt + timedelta(days=1) - timedelta(milliseconds=1)
    return to_iso(dt)


def create_messages_router(rt: ApiRuntime) -> APIRouter:
    router = APIRouter()

    @router.post("/api/whatsapp/send", dependencies=[Depends(optional_rate_limit_send)])
    async def send_message(payload: dict = Body(...), user: dict = Depends(get_current_user)):
        require_fields(payload, "connectionId", "to", "message")
        connection = await rt.db_manager.get_connection(str(payload["connectionId"]), user["id"])
        if not connection:
            raise HTTPException(status_code=404, detail="Connection not found")
        if not connection.get("access_token"):
            raise HTTPException(status_code=400, detail="Connection has no access token")
        message_type = str(payload.get("messageType") or "text")
        try:
            result = await rt.message_processor.send_message(
                connection, str(payload["to"]), payload["message"], message_type
            )
        except WhatsAppAPIError as exc:
            log.warning("Send via connection %s failed (%s): %s", connection["id"], exc.status_code, exc.message)
            raise whatsapp_http_error(exc)
        return {
            "success": True,
            "messageId": result["whatsapp_message_id"],
            "data": result["response"],
        }

    @router.get("/api/whatsapp/send")
    async def list_messages(
        connectionId: str | None = Query(None),
        limit: int = Query(50, ge=1, le=500),
        offset: int = Query(0, ge=0),
        user: dict = Depends(get_current_user),
    ):
        if not connectionId:
            raise HTTPException(status_code=400, detail="connectionId is required")
        if not await rt.db_manager.get_connection(connectionId, user["id"]):
            raise HTTPException(status_code=404, detail="Connection not found")
        rows = await rt.db_manager.list_messages(connectionId, limit=limit, offset=offset)
        return {"messages": camelize_all(rows)}

    @router.get("/api/export/conversations")
    async def export_conversations(
        format: str = Query("csv"),
        connectionId: str | None = Query(None),
        startDate: str | None = Query(None),
        endDate: str | None = Query(None),
        user: dict = Depends(get_current_user),
    ):
        fmt = (format or "csv").lower()
        if fmt not in ("csv", "json"):
            raise HTTPException(status_code=400, detail="format must be csv or json")
        rows = await rt.db_manager.export_messages(
            user["id"],
            connection_id=connectionId,
            start=_date_bound(startDate, "startDate"),
            end=_date_bound(endDate, "endDate", end=True),
        )
        if fmt == "json":
            return conversations_json(rows)
        return Response(
            content=conversations_csv(rows),
            media_type=CSV_MEDIA_TYPE,
            headers={"Content-Disposition": f'attachment; filename="{export_filename("conversations", "csv")}"'},
        )

    return router
