from fastapi import APIRouter, Body, Depends, HTTPException, Query

from ..auth import get_current_user
from ..serializers import camelize, camelize_all, pick
from .deps import require_fields
from .runtime import ApiRuntime


def normalize_shortcut(value) -> str:
    shortcut = str(value or "").strip()
    return shortcut if shortcut.startswith("/") else f"/{shortcut}"


def create_quick_replies_router(rt: ApiRuntime) -> APIRouter:
    router = APIRouter(prefix="/api/quick-replies")

    @router.get("")
    async def list_quick_replies(user: dict = Depends(get_current_user)):
        return {"quickReplies": camelize_all(await rt.db_manager.list_quick_replies(user["id"]))}

    @router.post("", status_code=201)
    async def create_quick_reply(payload: dict = Body(...), user: dict = Depends(get_current_user)):
        require_fields(payload, "shortcut", "title", "content")
        shortcut = normalize_shortcut(payload["shortcut"])
        if await rt.db_manager.get_quick_reply_by_shortcut(user["id"], shortcut):
            raise HTTPException(status_code=409, detail="Shortcut already exists")
        reply = await rt.db_manager.create_quick_reply(
            user["id"],
            shortcut=shortcut,
            title=str(payload["title"]),
            content=str(payload["content"]),
            category=str(payload.get("category") or "general"),
        )
        return {"quickReply": camelize(reply)}

    @router.put("")
    async def update_quick_reply(payload: dict = Body(...), user: dict = Depends(get_current_user)):
        reply_id = payload.get("id")
        if not reply_id:
            raise HTTPException(status_code=400, detail="id is required")
        if not await rt.db_manager.get_quick_reply(str(reply_id), user["id"]):
            raise HTTPException(status_code=404, detail="Quick reply not found")
        fields = pick(payload, "shortcut", "title", "content", "category")
        if "shortcut" in fields:
            fields["shortcut"] = normalize_shortcut(fields["shortcut"])
            clash = await rt.db_manager.get_quick_reply_by_shortcut(user["id"], fields["shortcut"])
            if clash and clash["id"] != reply_id:
                raise HTTPException(status_code=409, detail="Shortcut already exists")
        reply = await rt.db_manager.update_quick_reply(str(reply_id), user["id"], fields)
        return {"quickReply": camelize(reply)}

    @router.delete("")
    async def delete_quick_reply(id: str = Query(...), user: dict = Depends(get_current_user)):
        if not await rt.db_manager.delete_quick_reply(id, user["id"]):
            raise HTTPException(status_code=404, detail="Quick reply not found")
        return {"success": True}

    return router
