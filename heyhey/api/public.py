"""Public REST API authenticated by ``Authorization: Bearer hh_...`` API keys."""

import logging

from fastapi import APIRouter, Body, Depends, HTTPException, Query, Request

from ..auth import api_key_from_request
from ..serializers import camelize_all
from ..whatsapp import WhatsAppAPIError
from .deps import optional_rate_limit_api, whatsapp_http_error
from .runtime import ApiRuntime

log = logging.getLogger(__name__)


def create_public_router(rt: ApiRuntime) -> APIRouter:
    router = APIRouter(prefix="/api/v1")

    async def api_key_owner(request: Request) -> dict:
        key = api_key_from_request(request)
        record = await rt.db_manager.get_api_key(key) if key else None
        if not record or not record.get("is_active"):
            raise HTTPException(status_code=401, detail="Invalid or missing API key")
        await rt.db_manager.touch_api_key(record["id"])
        return record

    def require_permission(record: dict, permission: str) -> None:
        if permission not in (record.get("permissions") or []):
            raise HTTPException(status_code=403, detail=f"API key lacks the {permission} permission")

    @router.post("/messages", dependencies=[Depends(optional_rate_limit_api)])
    async def send_message(payload: dict = Body(...), key: dict = Depends(api_key_owner)):
        require_permission(key, "send_messages")
        phone_number_id = payload.get("phoneNumberId")
        to = payload.get("to")
        message = payload.get("message")
        if not phone_number_id or not to or not message:
            raise HTTPException(status_code=400, detail="phoneNumberId, to and message are required")
        connection = await rt.db_manager.get_connection_by_phone_number_id(str(phone_number_id), key["user_id"])
        if not connection or not connection.get("access_token"):
            raise HTTPException(status_code=404, detail="Connection not found or missing access token")
        try:
            result = await rt.message_processor.send_message(
                connection, str(to), message, str(payload.get("messageType") or "text")
            )
        except WhatsAppAPIError as exc:
            log.warning("API key %s send failed (%s): %s", key["id"], exc.status_code, exc.message)
            raise whatsapp_http_error(exc)
        return {"success": True, "messageId": result["whatsapp_message_id"]}

    @router.get("/messages")
    async def list_messages(
        connectionId: str | None = Query(None),
        limit: int = Query(50, ge=1, le=500),
        offset: int = Query(0, ge=0),
        key: dict = Depends(api_key_owner),
    ):
        require_permission(key, "read_messages")
        rows = await rt.db_manager.list_user_messages(
            key["user_id"], connection_id=connectionId, limit=limit, offset=offset
        )
        return {"messages": camelize_all(rows)}

    return router
