"""Chatbot flow interpreter.

A conversation is a pointer (flow, node) per (connection, phone number). Each inbound
text either continues the active flow by one node, starts the first flow whose trigger
matches, or falls back to an AI reply when some flow carries an ``ai_response`` node.
"""

from __future__ import annotations

import asyncio
import logging
import weakref
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

from .config import CHATBOT_DEFAULT_PROMPT

log = logging.getLogger(__name__)

NODE_MESSAGE = "message"
NODE_AI_RESPONSE = "ai_response"
NODE_TYPES = (NODE_MESSAGE, NODE_AI_RESPONSE)

TRIGGER_KEYWORD = "keyword"
TRIGGER_ALL = "all"
TRIGGER_FIRST_MESSAGE = "first_message"
TRIGGER_TYPES = (TRIGGER_KEYWORD, TRIGGER_ALL, TRIGGER_FIRST_MESSAGE)


@dataclass
class IncomingMessage:
    from_phone: str
    text: str
    connection_id: Optional[str] = None
    waba_id: Optional[str] = None


@dataclass
class ChatbotResponse:
    should_respond: bool
    response: Optional[str] = None
    flow_id: Optional[str] = None
    node_id: Optional[str] = None


NO_RESPONSE = ChatbotResponse(should_respond=False)


def conversation_id(connection_id: str, phone: str) -> str:
    return f"{connection_id}-{phone}"


def trigger_matches(flow: Dict[str, Any], text: str, is_first_message: bool) -> bool:
    trigger_type = (flow.get("trigger_type") or "").strip()
    if trigger_type == TRIGGER_ALL:
        return True
    if trigger_type == TRIGGER_FIRST_MESSAGE:
        return is_first_message
    if trigger_type == TRIGGER_KEYWORD:
        keywords = [k.strip().lower() for k in str(flow.get("trigger_value") or "").split(",")]
        lowered = (text or "").lower()
        return any(k and k in lowered for k in keywords)
    return False


def _next_node(nodes: List[dict], current: dict) -> Optional[dict]:
    target = current.get("next_node_id")
    if target:
        return next((n for n in nodes if n["id"] == target), None)
    index = next((i for i, n in enumerate(nodes) if n["id"] == current["id"]), -1)
    if 0 <= index < len(nodes) - 1:
        return nodes[index + 1]
    return None


class ChatbotEngine:
    def __init__(self, db_manager, llm):
        self.db_manager = db_manager
        self.llm = llm
        # One lock per live conversation; entries vanish once no turn holds them.
        self._locks: "weakref.WeakValueDictionary[str, asyncio.Lock]" = weakref.WeakValueDictionary()

    def _lock_for(self, key: str) -> asyncio.Lock:
        lock = self._locks.get(key)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[key] = lock
        return lock

    async def process_message(self, incoming: IncomingMessage) -> ChatbotResponse:
        connection = None
        if incoming.connection_id:
            connection = await self.db_manager.get_connection(incoming.connection_id)
        if connection is None and incoming.waba_id:
            connection = await self.db_manager.get_connection_by_waba_id(incoming.waba_id)
        if connection is None:
            log.info("Chatbot: no connection for waba_id=%s", incoming.waba_id)
            return NO_RESPONSE

        lock = self._lock_for(conversation_id(connection["id"], incoming.from_phone))
        async with lock:
            return await self._process_locked(connection, incoming)

    async def _process_locked(self, connection: dict, incoming: IncomingMessage) -> ChatbotResponse:
        conversation = await self.db_manager.get_active_conversation(connection["id"], incoming.from_phone)
        flows = await self.db_manager.list_active_flows(connection["user_id"])
        if not flows:
            return NO_RESPONSE

        if conversation and conversation.get("current_flow_id"):
            flow = next((f for f in flows if f["id"] == conversation["current_flow_id"]), None)
            if flow is not None:
                return await self._continue_flow(flow, conversation, incoming)

        is_first_message = conversation is None
        for flow in flows:
            if trigger_matches(flow, incoming.text, is_first_message):
                return await self._start_flow(flow, connection, incoming)

        ai_flow = next(
            (f for f in flows if any(n.get("node_type") == NODE_AI_RESPONSE for n in f.get("nodes") or [])),
            None,
        )
        if ai_flow is not None:
            return await self._ai_reply(ai_flow, incoming.text)
        return NO_RESPONSE

    async def _start_flow(self, flow: dict, connection: dict, incoming: IncomingMessage) -> ChatbotResponse:
        nodes = flow.get("nodes") or []
        if not nodes:
            return NO_RESPONSE
        first = nodes[0]
        await self.db_manager.upsert_conversation(
            conversation_id(connection["id"], incoming.from_phone),
            connection_id=connection["id"],
            phone_number=incoming.from_phone,
            flow_id=flow["id"],
            node_id=first["id"],
            context={"userMessage": incoming.text},
        )
        log.info("Chatbot: started flow %s for %s", flow["id"], incoming.from_phone)
        return await self._run_node(flow, first, incoming.text)

    async def _continue_flow(self, flow: dict, conversation: dict, incoming: IncomingMessage) -> ChatbotResponse:
        nodes = flow.get("nodes") or []
        current = next((n for n in nodes if n["id"] == conversation.get("current_node_id")), None)
        if current is None:
            return NO_RESPONSE
        nxt = _next_node(nodes, current)
        if nxt is None:
            await self.db_manager.deactivate_conversation(conversation["id"])
            log.info("Chatbot: flow %s finished for %s", flow["id"], incoming.from_phone)
            return NO_RESPONSE
        context = dict(conversation.get("context") or {})
        context["lastResponse"] = incoming.text
        await self.db_manager.advance_conversation(conversation["id"], nxt["id"], context)
        return await self._run_node(flow, nxt, incoming.text)

    async def _run_node(self, flow: dict, node: dict, text: str) -> ChatbotResponse:
        if node.get("node_type") == NODE_AI_RESPONSE:
            return await self._ai_reply(flow, text)
        return ChatbotResponse(
            should_respond=True,
            response=node.get("content") or "",
            flow_id=flow["id"],
            node_id=node["id"],
        )

    async def _ai_reply(self, flow: dict, text: str) -> ChatbotResponse:
        if not self.llm or not self.llm.configured:
            return NO_RESPONSE
        ai_node = next((n for n in flow.get("nodes") or [] if n.get("node_type") == NODE_AI_RESPONSE), None)
        prompt = ((ai_node or {}).get("content") or "").strip() or CHATBOT_DEFAULT_PROMPT
        answer = await self.llm.reply(prompt, text)
        if not answer:
            return NO_RESPONSE
        return ChatbotResponse(should_respond=True, response=answer, flow_id=flow["id"])
