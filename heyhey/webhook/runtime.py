from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from typing import Any, Callable, List


@dataclass
class WebhookState:
    workers_started: int = 0
    processed: int = 0
    failed: int = 0


@dataclass
class WebhookRuntime:
    # Core dependencies (injected from heyhey.main)
    message_processor: Any
    webhook_queue: "asyncio.Queue[dict]"
    vlog: Callable[..., None]

    # Webhook verification/config
    verify_token: str
    meta_app_secret: str

    # Worker config; 0 workers processes payloads inline in the request
    workers: int
    processing_timeout_seconds: float

    state: WebhookState = field(default_factory=WebhookState)
    tasks: List["asyncio.Task[None]"] = field(default_factory=list)

    def backend_name(self) -> str:
        return "memory" if int(self.workers) > 0 else "inline"
