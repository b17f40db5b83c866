import logging

from fastapi import APIRouter, Body, Depends, HTTPException, Query

from ..auth import get_current_user
from ..serializers import camelize, camelize_all
from .deps import require_fields
from .runtime import ApiRuntime

log = logging.getLogger(__name__)


def create_connections_router(rt: ApiRuntime) -> APIRouter:
    router = APIRouter(prefix="/api/whatsapp")

    @router.post("/connect")
    async def connect(payload: dict = Body(...), user: dict = Depends(get_current_user)):
        """Register (or refresh) a WhatsApp Business phone number for the current user."""
        require_fields(payload, "phoneNumberId", "wabaId")
        phone_number_id = str(payload["phoneNumberId"]).strip()
        existing = await rt.db_manager.get_connection_by_phone_number_id(phone_number_id)
        if existing and existing["user_id"] != user["id"]:
            raise HTTPException(status_code=403, detail="Phone number is connected to another account")
        connection = await rt.db_manager.upsert_connection(
            user["id"],
            phone_number=payload.get("phoneNumber"),
            phone_number_id=phone_number_id,
            waba_id=str(payload["wabaId"]).strip(),
            business_name=payload.get("businessName"),
            access_token=payload.get("accessToken"),
        )
        log.info("Connection %s %s", connection["id"], "updated" if existing else "created")
        return {
            "success": True,
            "message": "Connection updated" if existing else "Connection created",
            "connection": camelize(connection),
        }

    @router.get("/connect")
    async def list_connections(user: dict = Depends(get_current_user)):
        rows = await rt.db_manager.list_connections(user["id"])
        return {"connections": camelize_all(rows)}

    @router.delete("/connect")
    async def delete_connection(id: str = Query(...), user: dict = Depends(get_current_user)):
        if not await rt.db_manager.delete_connection(id, user["id"]):
            raise HTTPException(status_code=404, detail="Connection not found")
        log.info("Connection %s deleted", id)
        return {"message": "Connection deleted"}

    return router
