import logging

from fastapi import APIRouter, Body, Depends, HTTPException, Query

from ..auth import get_current_user
from ..serializers import as_bool, camelize, camelize_all, pick
from ..whatsapp import digits_only
from .runtime import ApiRuntime

log = logging.getLogger(__name__)

DEFAULT_TAG_COLOR = "#6b7280"
DEFAULT_GROUP_COLOR = "#3b82f6"


def _id_list(value, name: str):
    if value is None:
        return None
    if not isinstance(value, list):
        raise HTTPException(status_code=400, detail=f"{name} must be a list")
    return [str(v) for v in value if v]


def create_contacts_router(rt: ApiRuntime) -> APIRouter:
    router = APIRouter(prefix="/api/contacts")

    # ── contacts ──
    @router.get("")
    async def list_contacts(
        search: str | None = Query(None),
        tagId: str | None = Query(None),
        groupId: str | None = Query(None),
        user: dict = Depends(get_current_user),
    ):
        rows = await rt.db_manager.list_contacts(user["id"], search=search, tag_id=tagId, group_id=groupId)
        return {"contacts": camelize_all(rows)}

    @router.post("", status_code=201)
    async def create_contact(payload: dict = Body(...), user: dict = Depends(get_current_user)):
        phone = digits_only(str(payload.get("phoneNumber") or ""))
        if not phone:
            raise HTTPException(status_code=400, detail="Phone number is required")
        if await rt.db_manager.get_contact_by_phone(user["id"], phone):
            raise HTTPException(status_code=409, detail="Contact already exists")
        contact = await rt.db_manager.create_contact(
            user["id"],
            phone_number=phone,
            name=payload.get("name"),
            email=payload.get("email"),
            company=payload.get("company"),
            tag_ids=_id_list(payload.get("tagIds"), "tagIds"),
        )
        return {"contact": camelize(contact)}

    @router.put("")
    async def update_contact(payload: dict = Body(...), user: dict = Depends(get_current_user)):
        contact_id = payload.get("id")
        if not contact_id:
            raise HTTPException(status_code=400, detail="id is required")
        fields = pick(payload, "name", "email", "company", "isBlocked")
        if "is_blocked" in fields:
            fields["is_blocked"] = as_bool(fields["is_blocked"])
        contact = await rt.db_manager.update_contact(
            str(contact_id), user["id"], fields, _id_list(payload.get("tagIds"), "tagIds")
        )
        if not contact:
            raise HTTPException(status_code=404, detail="Contact not found")
        return {"contact": camelize(contact)}

    @router.delete("")
    async def delete_contact(id: str = Query(...), user: dict = Depends(get_current_user)):
        if not await rt.db_manager.delete_contact(id, user["id"]):
            raise HTTPException(status_code=404, detail="Contact not found")
        return {"success": True}

    # ── tags ──
    @router.get("/tags")
    async def list_tags(user: dict = Depends(get_current_user)):
        return {"tags": camelize_all(await rt.db_manager.list_tags(user["id"]))}

    @router.post("/tags", status_code=201)
    async def create_tag(payload: dict = Body(...), user: dict = Depends(get_current_user)):
        name = str(payload.get("name") or "").strip()
        if not name:
            raise HTTPException(status_code=400, detail="Name is required")
        tag = await rt.db_manager.create_tag(user["id"], name, payload.get("color") or DEFAULT_TAG_COLOR)
        return {"tag": camelize(tag)}

    @router.delete("/tags")
    async def delete_tag(id: str = Query(...), user: dict = Depends(get_current_user)):
        if not await rt.db_manager.delete_tag(id, user["id"]):
            raise HTTPException(status_code=404, detail="Tag not found")
        return {"success": True}

    # ── groups ──
    @router.get("/groups")
    async def list_groups(user: dict = Depends(get_current_user)):
        return {"groups": camelize_all(await rt.db_manager.list_groups(user["id"]))}

    @router.post("/groups", status_code=201)
    async def create_group(payload: dict = Body(...), user: dict = Depends(get_current_user)):
        name = str(payload.get("name") or "").strip()
        if not name:
            raise HTTPException(status_code=400, detail="Name is required")
        group = await rt.db_manager.create_group(
            user["id"],
            name=name,
            description=payload.get("description"),
            color=payload.get("color") or DEFAULT_GROUP_COLOR,
            contact_ids=_id_list(payload.get("contactIds"), "contactIds"),
        )
        return {"group": camelize(group)}

    @router.put("/groups")
    async def update_group(payload: dict = Body(...), user: dict = Depends(get_current_user)):
        group_id = payload.get("id")
        if not group_id:
            raise HTTPException(status_code=400, detail="id is required")
        group = await rt.db_manager.update_group(
            str(group_id),
            user["id"],
            pick(payload, "name", "description", "color"),
            _id_list(payload.get("contactIds"), "contactIds"),
        )
        if not group:
            raise HTTPException(status_code=404, detail="Group not found")
        return {"group": camelize(group)}

    @router.delete("/groups")
    async def delete_group(id: str = Query(...), user: dict = Depends(get_current_user)):
        if not await rt.db_manager.delete_group(id, user["id"]):
            raise HTTPException(status_code=404, detail="Group not found")
        return {"success": True}

    # ── notes ──
    @router.post("/notes", status_code=201)
    async def create_note(payload: dict = Body(...), user: dict = Depends(get_current_user)):
        contact_id = payload.get("contactId")
        content = str(payload.get("content") or "").strip()
        if not contact_id or not content:
            raise HTTPException(status_code=400, detail="Missing required fields")
        if not await rt.db_manager.get_contact(str(contact_id), user["id"]):
            raise HTTPException(status_code=404, detail="Contact not found")
        note = await rt.db_manager.create_note(str(contact_id), content, as_bool(payload.get("isPinned", False)))
        return {"note": camelize(note)}

    @router.put("/notes")
    async def update_note(payload: dict = Body(...), user: dict = Depends(get_current_user)):
        note_id = payload.get("id")
        if not note_id:
            raise HTTPException(status_code=400, detail="id is required")
        if not await rt.db_manager.get_note(str(note_id), user["id"]):
            raise HTTPException(status_code=404, detail="Note not found")
        fields = pick(payload, "content", "isPinned")
        if "is_pinned" in fields:
            fields["is_pinned"] = as_bool(fields["is_pinned"])
        note = await rt.db_manager.update_note(str(note_id), fields)
        return {"note": camelize(note)}

    @router.delete("/notes")
    async def delete_note(id: str = Query(...), user: dict = Depends(get_current_user)):
        if not await rt.db_manager.get_note(id, user["id"]):
            raise HTTPException(status_code=404, detail="Note not found")
        await rt.db_manager.delete_note(id)
        return {"success": True}

    return router
