from __future__ import annotations

import asyncio
import hashlib
import hmac
import json
import logging

from fastapi import APIRouter, Request
from fastapi.responses import PlainTextResponse

from .runtime import WebhookRuntime
from .workers import process_payload

log = logging.getLogger(__name__)


def signature_matches(secret: str, body: bytes, header: str) -> bool:
    """Check Meta's X-Hub-Signature-256 header ("sha256=<hex>") against the raw body."""
    expected = hmac.new(secret.encode("utf-8"), body, hashlib.sha256).hexdigest()
    presented = header.split("=", 1)[1] if "=" in header else header
    return bool(presented) and hmac.compare_digest(presented.strip().encode("utf-8"), expected.encode("utf-8"))


def create_webhook_router(rt: WebhookRuntime) -> APIRouter:
    router = APIRouter()

    @router.get("/api/webhooks/whatsapp")
    async def verify_webhook(request: Request):
        """Meta subscription handshake."""
        params = request.query_params
        mode = params.get("hub.mode")
        token = params.get("hub.verify_token")
        challenge = params.get("hub.challenge")

        rt.vlog("Webhook verification: mode=%s challenge=%s", mode, challenge)
        if mode == "subscribe" and token and hmac.compare_digest(token.encode("utf-8"), rt.verify_token.encode("utf-8")):
            log.info("Webhook verified successfully")
            return PlainTextResponse(challenge or "")
        log.warning("Webhook verification failed (mode=%s)", mode)
        return PlainTextResponse("Forbidden", status_code=403)

    @router.post("/api/webhooks/whatsapp")
    async def receive_webhook(request: Request):
        """WhatsApp webhook endpoint (ingress)."""
        body_bytes = await request.body()
        if rt.meta_app_secret:
            sig_header = request.headers.get("X-Hub-Signature-256", "")
            if not signature_matches(rt.meta_app_secret, body_bytes, sig_header):
                log.warning("Invalid webhook signature")
                return PlainTextResponse("Invalid signature", status_code=401)
        try:
            data = json.loads(body_bytes.decode("utf-8") or "{}")
        except (UnicodeDecodeError, ValueError):
            return PlainTextResponse("Bad Request", status_code=400)
        if not isinstance(data, dict):
            return PlainTextResponse("Bad Request", status_code=400)

        rt.vlog("Incoming webhook payload: %s", data)

        if int(rt.workers) <= 0:
            await process_payload(rt, data)
            return {"status": "received"}

        # ACK fast: the workers do the DB writes and outbound replies.
        try:
            rt.webhook_queue.put_nowait(data)
        except asyncio.QueueFull:
            log.error("Webhook queue full (maxsize=%s)", rt.webhook_queue.maxsize)
            return PlainTextResponse("Webhook queue full", status_code=503)
        return {"status": "received"}

    return router
