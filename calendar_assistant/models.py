"""Core domain models used across layers."""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Literal


class Role(str, Enum):
    SYSTEM = "system"
    USER = "user"
    ASSISTANT = "assistant"
    TOOL = "tool"


@dataclass(slots=True)
class ToolCallRequest:
    """Tool invocation emitted by the model; arguments stay unparsed until dispatch."""

    id: str
    name: str
    raw_arguments: str = "{}"

    def to_api(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "type": "function",
            "function": {"name": self.name, "arguments": self.raw_arguments},
        }


@dataclass(slots=True)
class Message:
    """One entry of a conversation transcript, ordered by sequence_number."""

    role: Role
    content: str | None = None
    tool_calls: list[ToolCallRequest] | None = None
    tool_call_id: str | None = None
    sequence_number: int = 0

    def to_api(self) -> dict[str, Any]:
        payload: dict[str, Any] = {"role": self.role.value, "content": self.content}
        if self.tool_calls:
            payload["tool_calls"] = [tc.to_api() for tc in self.tool_calls]
        if self.tool_call_id is not None:
            payload["tool_call_id"] = self.tool_call_id
        return payload


class StatusTag(str, Enum):
    SUCCESS = "SUCCESS"
    FAILED = "FAILED"
    CONFLICT = "CONFLICT"
    NEUTRAL = "NEUTRAL"
    UNKNOWN = "UNKNOWN"


@dataclass(slots=True)
class ToolResult:
    """Canonical tool outcome returned to the model and persisted."""

    tool_call_id: str
    status_tag: StatusTag
    text: str


@dataclass(slots=True, frozen=True)
class CandidateInterval:
    """Half-open time interval [start, end) with timezone-aware bounds."""

    start: datetime
    end: datetime

    def __post_init__(self) -> None:
        if self.start.tzinfo is None or self.end.tzinfo is None:
            raise ValueError("Interval bounds must carry a timezone offset")
        if self.start >= self.end:
            raise ValueError("Interval start must be before end")

    def overlaps(self, other: CandidateInterval) -> bool:
        return self.start < other.end and other.start < self.end

    @property
    def duration_minutes(self) -> float:
        return (self.end - self.start).total_seconds() / 60


@dataclass(slots=True, frozen=True)
class BusyInterval:
    """Read-only projection of a calendar event used for conflict math."""

    interval: CandidateInterval
    label: str
    is_all_day: bool = False


@dataclass(slots=True)
class Slot:
    """Ranked free interval proposed to the user."""

    interval: CandidateInterval
    pros: list[str] = field(default_factory=list)
    cons: list[str] = field(default_factory=list)
    score: float = 0.0

    def to_payload(self) -> dict[str, Any]:
        return {
            "start": self.interval.start.isoformat(),
            "end": self.interval.end.isoformat(),
            "pros": list(self.pros),
            "cons": list(self.cons),
            "score": round(self.score, 2),
        }

    @classmethod
    def from_payload(cls, payload: dict[str, Any]) -> Slot:
        return cls(
            interval=CandidateInterval(
                start=datetime.fromisoformat(payload["start"]),
                end=datetime.fromisoformat(payload["end"]),
            ),
            pros=list(payload.get("pros", [])),
            cons=list(payload.get("cons", [])),
            score=float(payload.get("score", 0.0)),
        )


@dataclass(slots=True)
class ConflictResult:
    """Outcome of a conflict check for one candidate interval."""

    conflict: bool
    suggestions: list[Slot] = field(default_factory=list)
    overridden: bool = False
    conflict_count: int = 0
    error: str | None = None

    def to_payload(self) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "conflict": self.conflict,
            "suggestions": [slot.to_payload() for slot in self.suggestions],
        }
        if self.overridden:
            payload["overridden"] = True
            payload["conflictCount"] = self.conflict_count
        if self.error:
            payload["error"] = self.error
        return payload


@dataclass(slots=True, frozen=True)
class RequestContext:
    """Caller identity and credentials passed to every tool handler."""

    user_id: str
    access_token: str | None = None


@dataclass(slots=True)
class LLMResponse:
    """Result from an LLM generation request."""

    content: str | None
    tool_calls: list[ToolCallRequest] = field(default_factory=list)
    raw: dict[str, Any] | None = None


TurnEventType = Literal["start", "processing", "content", "error", "end"]


@dataclass(slots=True)
class TurnEvent:
    """Incremental progress signal emitted while a turn runs."""

    type: TurnEventType
    content: str = ""


@dataclass(slots=True)
class TurnResult:
    """Final answer of a turn plus everything emitted along the way."""

    text: str
    events: list[TurnEvent] = field(default_factory=list)
    messages: list[Message] = field(default_factory=list)
    failed: bool = False


def tool_calls_to_json(tool_calls: list[ToolCallRequest] | None) -> str | None:
    if not tool_calls:
        return None
    return json.dumps([tc.to_api() for tc in tool_calls])


def tool_calls_from_json(raw: str | None) -> list[ToolCallRequest] | None:
    """Decode stored tool calls, skipping entries without an id or function name."""

    if not raw:
        return None
    try:
        data = json.loads(raw)
    except json.JSONDecodeError:
        return None
    if isinstance(data, dict):
        data = data.get("tool_calls", [])
    if not isinstance(data, list):
        return None
    calls: list[ToolCallRequest] = []
    for item in data:
        if not isinstance(item, dict):
            continue
        function_data = item.get("function") or {}
        if item.get("id") and function_data.get("name"):
            calls.append(
                ToolCallRequest(
                    id=item["id"],
                    name=function_data["name"],
                    raw_arguments=function_data.get("arguments") or "{}",
                )
            )
    return calls or None
