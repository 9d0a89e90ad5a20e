"""Registry for tool registration, argument validation and dispatch."""

from __future__ import annotations

import asyncio
import json
import logging
from dataclasses import asdict, is_dataclass
from enum import Enum
from typing import Any, Literal, Optional

from pydantic import BaseModel, ConfigDict, ValidationError, create_model

from calendar_assistant.db import Database
from calendar_assistant.errors import ToolValidationError
from calendar_assistant.models import RequestContext, StatusTag, ToolCallRequest, ToolResult
from calendar_assistant.tools.base import Tool
from calendar_assistant.tools.results import Conflict, Err, ErrorKind, HandlerResult, Ok, err_from_exception

LOGGER = logging.getLogger(__name__)


class ToolName(str, Enum):
    SAVE_PREFERENCE = "save_preference"
    ADD_EVENTS = "add_events"
    GET_EVENTS = "get_events"
    DELETE_EVENT = "delete_event"
    UPDATE_EVENT = "update_event"
    FIND_AVAILABLE_SLOTS = "find_available_slots"
    GET_WEATHER = "get_weather"
    DELETE_EVENTS_BY_QUERY = "delete_events_by_query"


class ToolRegistry:
    """Closed set of tools keyed by ToolName."""

    def __init__(self, db: Database | None = None, deadline_seconds: float | None = None) -> None:
        self._db = db
        self._deadline_seconds = deadline_seconds
        self._tools: dict[ToolName, Tool] = {}
        self._models: dict[ToolName, type[BaseModel]] = {}

    def register(self, tool: Tool) -> None:
        try:
            name = ToolName(tool.name)
        except ValueError as exc:
            raise ValueError(f"Unknown tool name: {tool.name}") from exc
        if name in self._tools:
            raise ValueError(f"Tool already registered: {tool.name}")
        self._models[name] = build_model(_model_name(tool.name), tool.parameters_schema)
        self._tools[name] = tool

    def get(self, name: str) -> Tool | None:
        try:
            return self._tools.get(ToolName(name))
        except ValueError:
            return None

    def list_tool_specs(self) -> list[dict[str, Any]]:
        return [
            {
                "type": "function",
                "function": {
                    "name": tool.name,
                    "description": tool.description,
                    "parameters": tool.parameters_schema,
                },
            }
            for tool in self._tools.values()
        ]

    async def execute(self, call: ToolCallRequest, context: RequestContext) -> ToolResult:
        """Validate, run and render one tool call. Never raises."""

        tool = self.get(call.name)
        if tool is None:
            LOGGER.warning("Rejected call to unknown tool %r", call.name)
            return _failed(call.id, f"Error: Unknown tool '{call.name}'.")

        try:
            arguments = parse_arguments(call.raw_arguments)
            validated = _validate(self._models[ToolName(tool.name)], arguments)
        except ToolValidationError as exc:
            LOGGER.warning("Invalid arguments for %s: %s", tool.name, exc)
            return _failed(call.id, f"Error: Invalid arguments for {tool.name}: {exc}")

        LOGGER.info("Executing tool %s with args %s", tool.name, _truncate(json.dumps(validated, default=str)))
        result = await self._run(tool, context, validated)
        self._audit(context, tool.name, validated, result)

        tag = classify(result)
        try:
            text = f"{tool.render(result)} (Status: {tag.value})"
        except Exception:
            LOGGER.exception("Failed to format result of %s", tool.name)
            return ToolResult(
                tool_call_id=call.id,
                status_tag=StatusTag.UNKNOWN,
                text=f"Internal Error: Failed to format the result for {tool.name}. (Status: ERROR)",
            )
        LOGGER.info("Tool %s finished with status %s", tool.name, tag.value)
        return ToolResult(tool_call_id=call.id, status_tag=tag, text=text)

    async def _run(self, tool: Tool, context: RequestContext, arguments: dict[str, Any]) -> HandlerResult:
        try:
            if self._deadline_seconds is None:
                result = await tool.run(context, **arguments)
            else:
                result = await asyncio.wait_for(tool.run(context, **arguments), timeout=self._deadline_seconds)
        except asyncio.TimeoutError:
            LOGGER.error("Tool %s exceeded deadline of %ss", tool.name, self._deadline_seconds)
            return Err(ErrorKind.BACKEND, f"{tool.name} did not finish within {self._deadline_seconds} seconds")
        except Exception as exc:
            LOGGER.exception("Tool %s raised", tool.name)
            return err_from_exception(exc)
        if isinstance(result, (Ok, Conflict, Err)):
            return result
        return Ok(result)

    def _audit(self, context: RequestContext, tool_name: str, arguments: dict[str, Any], result: HandlerResult) -> None:
        if self._db is None:
            return
        try:
            self._db.log_tool_execution(
                context.user_id,
                tool_name,
                arguments,
                _audit_payload(result),
                succeeded=classify(result) not in (StatusTag.FAILED, StatusTag.UNKNOWN),
            )
        except Exception:
            LOGGER.exception("Failed to record execution of %s", tool_name)


def classify(result: HandlerResult) -> StatusTag:
    """Map a handler outcome to its status tag, most severe signal first."""

    if isinstance(result, Err):
        return StatusTag.FAILED
    if isinstance(result, Conflict):
        return StatusTag.CONFLICT
    if not isinstance(result, Ok):
        return StatusTag.UNKNOWN

    payload = result.payload
    if isinstance(payload, dict):
        if payload.get("error"):
            return StatusTag.FAILED
        if payload.get("success") is False:
            return StatusTag.FAILED
        if payload.get("conflict") is True:
            return StatusTag.CONFLICT
        if not payload or payload.get("count") == 0:
            return StatusTag.NEUTRAL
        return StatusTag.SUCCESS
    if payload is None or payload in ("", []):
        return StatusTag.NEUTRAL
    if isinstance(payload, (list, str)):
        return StatusTag.SUCCESS
    return StatusTag.UNKNOWN


def parse_arguments(raw: str | None) -> dict[str, Any]:
    if raw is None or not raw.strip():
        return {}
    try:
        parsed = json.loads(raw)
    except json.JSONDecodeError as exc:
        raise ToolValidationError(f"arguments are not valid JSON ({exc.msg})") from exc
    if not isinstance(parsed, dict):
        raise ToolValidationError("arguments must be a JSON object")
    return parsed


def build_model(name: str, schema: dict[str, Any]) -> type[BaseModel]:
    """Generate a pydantic model from an object JSON schema."""

    props = schema.get("properties", {})
    required = set(schema.get("required", []))
    fields: dict[str, tuple[Any, Any]] = {}
    for prop, config in props.items():
        typ = _python_type(config, f"{name}_{prop}")
        if prop in required:
            fields[prop] = (typ, ...)
        else:
            fields[prop] = (Optional[typ], None)
    extra = "forbid" if schema.get("additionalProperties") is False else "ignore"
    return create_model(name, __config__=ConfigDict(extra=extra), **fields)


def _validate(model: type[BaseModel], payload: dict[str, Any]) -> dict[str, Any]:
    try:
        value = model(**payload)
    except ValidationError as exc:
        problems = "; ".join(
            f"{'.'.join(str(part) for part in error['loc']) or 'arguments'}: {error['msg']}"
            for error in exc.errors()
        )
        raise ToolValidationError(problems) from exc
    return value.model_dump(exclude_none=True)


def _python_type(config: dict[str, Any], name: str) -> Any:
    if "enum" in config:
        return Literal[tuple(config["enum"])]
    schema_type = config.get("type")
    if schema_type == "object" and "properties" in config:
        return build_model(name, config)
    if schema_type == "array":
        items = config.get("items")
        return list[_python_type(items, f"{name}_item")] if items else list
    mapping: dict[str, Any] = {
        "string": str,
        "integer": int,
        "number": float,
        "boolean": bool,
        "object": dict,
    }
    return mapping.get(schema_type, Any)


def _model_name(tool_name: str) -> str:
    return "".join(part.capitalize() for part in tool_name.split("_")) + "Arguments"


def _failed(call_id: str, message: str) -> ToolResult:
    return ToolResult(tool_call_id=call_id, status_tag=StatusTag.FAILED, text=f"{message} (Status: FAILED)")


def _audit_payload(result: HandlerResult) -> Any:
    if isinstance(result, Err):
        return {"error": result.message, "kind": result.kind.value}
    if isinstance(result, Conflict):
        return {**result.payload, "suggestions": [slot.to_payload() for slot in result.suggestions]}
    payload = result.payload
    return asdict(payload) if is_dataclass(payload) and not isinstance(payload, type) else payload


def _truncate(text: str, limit: int = 300) -> str:
    return text if len(text) <= limit else text[:limit] + "..."
