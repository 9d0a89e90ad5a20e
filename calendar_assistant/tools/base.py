"""Tool contracts."""

from __future__ import annotations

from abc import ABC, abstractmethod
from typing import Any

from calendar_assistant.models import RequestContext
from calendar_assistant.scheduling.slots import format_slots
from calendar_assistant.tools.results import Conflict, Err, HandlerResult


class Tool(ABC):
    """Base class for all assistant tools."""

    name: str
    description: str
    parameters_schema: dict[str, Any]

    @abstractmethod
    async def run(self, context: RequestContext, /, **kwargs: Any) -> HandlerResult:
        """Execute tool with validated arguments."""

    def summarize(self, payload: Any) -> str:
        """Short human-readable summary of a successful payload."""
        return str(payload)

    def summarize_conflict(self, result: Conflict) -> str:
        return "Conflict detected. " + format_slots(result.suggestions)

    def render(self, result: HandlerResult) -> str:
        if isinstance(result, Err):
            return f"Error ({result.kind.value}): {result.message}"
        if isinstance(result, Conflict):
            return self.summarize_conflict(result)
        return self.summarize(result.payload)
