import logging

from fastapi import APIRouter, Body, Depends, HTTPException, Query

from ..auth import generate_api_key, get_current_user, mask_api_key
from ..config import DEFAULT_API_KEY_PERMISSIONS
from ..serializers import camelize
from .runtime import ApiRuntime

log = logging.getLogger(__name__)

API_PERMISSIONS = ("read_messages", "send_messages")


def _public_key(row: dict, reveal: bool = False) -> dict:
    out = camelize(row, drop=("user_id", "api_key")) or {}
    out["key"] = row["api_key"] if reveal else mask_api_key(row["api_key"])
    return out


def create_api_keys_router(rt: ApiRuntime) -> APIRouter:
    router = APIRouter(prefix="/api/settings/api-keys")

    @router.get("")
    async def list_api_keys(user: dict = Depends(get_current_user)):
        rows = await rt.db_manager.list_api_keys(user["id"])
        return {"apiKeys": [_public_key(r) for r in rows]}

    @router.post("")
    async def create_api_key(payload: dict = Body(...), user: dict = Depends(get_current_user)):
        name = str(payload.get("name") or "").strip()
        if not name:
            raise HTTPException(status_code=400, detail="Name is required")
        permissions = payload.get("permissions") or list(DEFAULT_API_KEY_PERMISSIONS)
        if not isinstance(permissions, list) or any(p not in API_PERMISSIONS for p in permissions):
            raise HTTPException(status_code=400, detail=f"permissions must be a subset of {list(API_PERMISSIONS)}")
        row = await rt.db_manager.create_api_key(
            user["id"], name=name, api_key=generate_api_key(), permissions=permissions
        )
        log.info("API key %s created", row["id"])
        # The full key is only ever returned here
        return {
            "apiKey": _public_key(row, reveal=True),
            "message": "Store this key now, it will not be shown again.",
        }

    @router.delete("")
    async def delete_api_key(id: str = Query(...), user: dict = Depends(get_current_user)):
        if not await rt.db_manager.delete_api_key(id, user["id"]):
            raise HTTPException(status_code=404, detail="API key not found")
        return {"success": True}

    return router
