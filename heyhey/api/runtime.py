from __future__ import annotations

from dataclasses import dataclass
from typing import Any


@dataclass
class ApiRuntime:
    # Injected from heyhey.main; routers read these at request time so they can be swapped in tests
    db_manager: Any
    message_processor: Any
    llm: Any
    mailer: Any
