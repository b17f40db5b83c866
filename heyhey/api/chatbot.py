import logging
from typing import List

from fastapi import APIRouter, Body, Depends, HTTPException, Query
from openai import OpenAIError

from ..auth import get_current_user
from ..chatbot import NODE_TYPES, TRIGGER_KEYWORD, TRIGGER_TYPES
from ..config import AI_ASSISTANT_PROMPT, AI_FALLBACK_REPLY
from ..serializers import as_bool, camelize, camelize_all, pick
from .runtime import ApiRuntime

log = logging.getLogger(__name__)


def _nodes_from_payload(raw) -> List[dict]:
    if raw is None:
        return []
    if not isinstance(raw, list):
        raise HTTPException(status_code=400, detail="nodes must be a list")
    nodes = []
    for item in raw:
        if not isinstance(item, dict):
            raise HTTPException(status_code=400, detail="Invalid node")
        node_type = str(item.get("nodeType") or "message")
        if node_type not in NODE_TYPES:
            raise HTTPException(status_code=400, detail=f"Invalid nodeType: {node_type}")
        node = pick(item, "id", "content", "options", "nextNodeId", "position")
        node["node_type"] = node_type
        nodes.append(node)
    return nodes


def _check_trigger_type(value) -> None:
    if value not in TRIGGER_TYPES:
        raise HTTPException(status_code=400, detail=f"Invalid triggerType: {value}")


def create_chatbot_router(rt: ApiRuntime) -> APIRouter:
    router = APIRouter(prefix="/api/chatbot")

    @router.get("/flows")
    async def list_flows(user: dict = Depends(get_current_user)):
        return {"flows": camelize_all(await rt.db_manager.list_flows(user["id"]))}

    @router.post("/flows")
    async def create_flow(payload: dict = Body(...), user: dict = Depends(get_current_user)):
        name = str(payload.get("name") or "").strip()
        if not name:
            raise HTTPException(status_code=400, detail="Name is required")
        trigger_type = payload.get("triggerType") or TRIGGER_KEYWORD
        _check_trigger_type(trigger_type)
        flow = await rt.db_manager.create_flow(
            user["id"],
            name=name,
            description=payload.get("description"),
            trigger_type=trigger_type,
            trigger_value=payload.get("triggerValue"),
            is_active=as_bool(payload.get("isActive", True)),
            nodes=_nodes_from_payload(payload.get("nodes")),
        )
        log.info("Flow %s created with %d nodes", flow["id"], len(flow.get("nodes") or []))
        return {"flow": camelize(flow)}

    @router.put("/flows")
    async def update_flow(payload: dict = Body(...), user: dict = Depends(get_current_user)):
        flow_id = payload.get("id")
        if not flow_id:
            raise HTTPException(status_code=400, detail="id is required")
        fields = pick(payload, "name", "description", "triggerType", "triggerValue", "isActive")
        if "trigger_type" in fields:
            _check_trigger_type(fields["trigger_type"])
        if "is_active" in fields:
            fields["is_active"] = as_bool(fields["is_active"])
        nodes = _nodes_from_payload(payload["nodes"]) if "nodes" in payload else None
        flow = await rt.db_manager.update_flow(str(flow_id), user["id"], fields, nodes)
        if not flow:
            raise HTTPException(status_code=404, detail="Flow not found")
        return {"flow": camelize(flow)}

    @router.delete("/flows")
    async def delete_flow(id: str = Query(...), user: dict = Depends(get_current_user)):
        if not await rt.db_manager.delete_flow(id, user["id"]):
            raise HTTPException(status_code=404, detail="Flow not found")
        return {"success": True}

    @router.post("/ai")
    async def ai_chat(payload: dict = Body(...), user: dict = Depends(get_current_user)):
        """Dashboard playground for trying prompts against the configured model."""
        message = str(payload.get("message") or "").strip()
        if not message:
            raise HTTPException(status_code=400, detail="Message is required")
        if not rt.llm.configured:
            raise HTTPException(status_code=503, detail="OpenAI API key is not configured")
        history = []
        for item in payload.get("conversationHistory") or []:
            if isinstance(item, dict) and item.get("role") in ("user", "assistant") and item.get("content"):
                history.append({"role": item["role"], "content": str(item["content"])})
        history.append({"role": "user", "content": message})
        system_prompt = str(payload.get("customPrompt") or "").strip() or AI_ASSISTANT_PROMPT
        try:
            completion = await rt.llm.complete(system_prompt, history)
        except OpenAIError as exc:
            log.error("AI playground request failed: %s", exc)
            raise HTTPException(status_code=502, detail="Error generating AI response")
        return {"response": completion.text or AI_FALLBACK_REPLY, "usage": completion.usage}

    return router
