from fastapi import APIRouter, Body, Depends, HTTPException, Query

from ..auth import get_current_user
from ..serializers import camelize, camelize_all
from .runtime import ApiRuntime


def create_templates_router(rt: ApiRuntime) -> APIRouter:
    router = APIRouter(prefix="/api/templates")

    @router.get("")
    async def list_templates(user: dict = Depends(get_current_user)):
        return {"templates": camelize_all(await rt.db_manager.list_templates(user["id"]))}

    @router.post("")
    async def create_template(payload: dict = Body(...), user: dict = Depends(get_current_user)):
        name = str(payload.get("name") or "").strip()
        content = str(payload.get("content") or "")
        if not name or not content.strip():
            raise HTTPException(status_code=400, detail="Name and content are required")
        variables = payload.get("variables") or []
        if not isinstance(variables, list):
            raise HTTPException(status_code=400, detail="variables must be a list")
        template = await rt.db_manager.create_template(
            user["id"],
            name=name,
            content=content,
            category=str(payload.get("category") or "general"),
            variables=variables,
        )
        return {"template": camelize(template)}

    @router.delete("")
    async def delete_template(id: str = Query(...), user: dict = Depends(get_current_user)):
        if not await rt.db_manager.delete_template(id, user["id"]):
            raise HTTPException(status_code=404, detail="Template not found")
        return {"success": True}

    return router
