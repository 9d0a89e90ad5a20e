"""Long-term user preference storage."""

from __future__ import annotations

import json
from typing import Any

from calendar_assistant.db import Database
from calendar_assistant.errors import ToolValidationError
from calendar_assistant.models import RequestContext
from calendar_assistant.tools.base import Tool
from calendar_assistant.tools.results import HandlerResult, Ok


class SavePreferenceTool(Tool):
    name = "save_preference"
    description = (
        "Save a user preference for future conversations, such as preferred meeting "
        "hours, a default city, or a favourite workout. Use it when the user states a "
        "lasting preference or scheduling constraint."
    )
    parameters_schema: dict[str, Any] = {
        "type": "object",
        "properties": {
            "category": {
                "type": "string",
                "description": "Broad category, e.g. 'scheduling', 'location', 'activity'.",
            },
            "key": {"type": "string", "description": "Preference key, e.g. 'preferredMeetingHours'."},
            "value": {
                "oneOf": [
                    {"type": "string"},
                    {"type": "number"},
                    {"type": "boolean"},
                    {"type": "array", "items": {}},
                    {"type": "object"},
                ],
                "description": "Preference value.",
            },
            "context": {
                "type": "string",
                "description": "Optional note on when the preference applies, e.g. 'weekends'.",
            },
        },
        "required": ["category", "key", "value"],
        "additionalProperties": False,
    }

    def __init__(self, db: Database) -> None:
        self._db = db

    async def run(self, context: RequestContext, /, **kwargs: Any) -> HandlerResult:
        category = str(kwargs["category"]).strip()
        key = str(kwargs["key"]).strip()
        if not category or not key:
            raise ToolValidationError("category and key must not be empty")
        value = kwargs["value"]
        self._db.upsert_user(context.user_id)
        self._db.save_preference(context.user_id, category, key, value, context=kwargs.get("context"))
        return Ok({"success": True, "message": f"{category}.{key} = {json.dumps(value)}"})

    def summarize(self, payload: Any) -> str:
        return f"Preference saved: {payload['message']}"
