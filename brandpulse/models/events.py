from __future__ import annotations

import json
from dataclasses import dataclass, field
from enum import Enum
from typing import Any


class EventType(str, Enum):
    STATUS = "status"
    PROGRESS = "progress"
    COMPLETE = "complete"
    ERROR = "error"


TERMINAL_EVENTS = frozenset({EventType.COMPLETE, EventType.ERROR})


@dataclass(frozen=True)
class ProgressEvent:
    type: EventType
    progress: int = 0
    message: str = ""
    status: str | None = None
    phase: str | None = None
    counts: dict[str, int] = field(default_factory=dict)
    data: dict[str, Any] = field(default_factory=dict)

    @property
    def is_terminal(self) -> bool:
        return self.type in TERMINAL_EVENTS

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "type": self.type.value,
            "progress": self.progress,
            "message": self.message,
        }
        if self.status:
            payload["status"] = self.status
        if self.phase:
            payload["phase"] = self.phase
        if self.counts:
            payload["counts"] = dict(self.counts)
        payload.update(self.data)
        return payload

    def format(self) -> str:
        return f"event: {self.type.value}\ndata: {json.dumps(self.to_dict())}\n\n"
