from __future__ import annotations

import asyncio
import logging

from ..observability.context import job_context
from .runtime import WebhookRuntime

log = logging.getLogger(__name__)


async def process_payload(rt: WebhookRuntime, data: dict) -> bool:
    """Process one webhook payload with a timeout; failures are logged, never raised."""
    with job_context("wh"):
        try:
            await asyncio.wait_for(
                rt.message_processor.process_incoming_message(data),
                timeout=max(1.0, float(rt.processing_timeout_seconds)),
            )
            rt.state.processed += 1
            return True
        except asyncio.TimeoutError:
            rt.state.failed += 1
            log.error("Webhook processing timed out after %ss", rt.processing_timeout_seconds)
        except Exception as exc:
            rt.state.failed += 1
            log.exception("Webhook processing failed: %s", exc)
    return False


async def webhook_worker(rt: WebhookRuntime, worker_id: int):
    log.debug("Webhook worker %s started", worker_id)
    while True:
        data = await rt.webhook_queue.get()
        try:
            await process_payload(rt, data)
        finally:
            rt.webhook_queue.task_done()


async def start_webhook_workers(rt: WebhookRuntime) -> None:
    """Start webhook background workers so the webhook route can ACK quickly."""
    count = int(rt.workers)
    if count <= 0:
        log.info("Webhook workers disabled; payloads are processed inline")
        return
    for i in range(count):
        rt.tasks.append(asyncio.create_task(webhook_worker(rt, i + 1)))
    rt.state.workers_started = count
    log.info(
        "Webhook in-memory workers started: %s (queue maxsize=%s)",
        count,
        getattr(rt.webhook_queue, "maxsize", None),
    )


async def stop_webhook_workers(rt: WebhookRuntime) -> None:
    for task in rt.tasks:
        task.cancel()
    for task in rt.tasks:
        try:
            await task
        except asyncio.CancelledError:
            pass
    rt.tasks.clear()
    rt.state.workers_started = 0
