from fastapi import APIRouter, Body, Depends, HTTPException, Query

from ..auth import get_current_user
from ..config import NOTIFICATIONS_PAGE_SIZE
from ..serializers import as_bool, camelize, camelize_all
from .deps import require_fields
from .runtime import ApiRuntime


def create_notifications_router(rt: ApiRuntime) -> APIRouter:
    router = APIRouter(prefix="/api/notifications")

    @router.get("")
    async def list_notifications(user: dict = Depends(get_current_user)):
        rows, unread = await rt.db_manager.list_notifications(user["id"], NOTIFICATIONS_PAGE_SIZE)
        return {"notifications": camelize_all(rows), "unreadCount": unread}

    @router.post("", status_code=201)
    async def create_notification(payload: dict = Body(...), user: dict = Depends(get_current_user)):
        require_fields(payload, "type", "title", "content")
        row = await rt.db_manager.create_notification(
            user["id"],
            type=str(payload["type"]),
            title=str(payload["title"]),
            content=str(payload["content"]),
            link=payload.get("link"),
        )
        return {"notification": camelize(row)}

    @router.put("")
    async def mark_read(payload: dict = Body(...), user: dict = Depends(get_current_user)):
        if as_bool(payload.get("markAllRead")):
            await rt.db_manager.mark_notifications_read(user["id"])
            return {"success": True}
        if not payload.get("id"):
            raise HTTPException(status_code=400, detail="id is required")
        if not await rt.db_manager.mark_notifications_read(user["id"], str(payload["id"])):
            raise HTTPException(status_code=404, detail="Notification not found")
        return {"success": True}

    @router.delete("")
    async def delete_notifications(
        id: str | None = Query(None),
        all: str | None = Query(None),
        user: dict = Depends(get_current_user),
    ):
        if all == "true":
            await rt.db_manager.delete_notifications(user["id"])
            return {"success": True}
        if not id:
            raise HTTPException(status_code=400, detail="id is required")
        if not await rt.db_manager.delete_notifications(user["id"], id):
            raise HTTPException(status_code=404, detail="Notification not found")
        return {"success": True}

    return router
