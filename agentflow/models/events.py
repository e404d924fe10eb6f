from __future__ import annotations

import json
from dataclasses import dataclass, field
from enum import Enum
from typing import Any


class EventType(str, Enum):
    CHUNK = "chunk"
    END_GENERATION = "end_generation"
    ERROR = "error"


TERMINAL_EVENTS = frozenset({EventType.END_GENERATION.value, EventType.ERROR.value})


@dataclass
class SSEEvent:
    event: EventType
    data: dict[str, Any] = field(default_factory=dict)

    def format(self) -> str:
        return f"event: {self.event.value}\ndata: {json.dumps(self.data)}\n\n"
