import asyncio
import json
from typing import Any
from unittest.mock import MagicMock

import pytest

from calendar_assistant.errors import CalendarBackendError
from calendar_assistant.models import RequestContext, StatusTag, ToolCallRequest
from calendar_assistant.tools.base import Tool
from calendar_assistant.tools.calendar_tools import AddEventsTool, calendar_tools
from calendar_assistant.tools.registry import ToolRegistry, build_model, classify
from calendar_assistant.tools.results import Conflict, Err, ErrorKind, Ok

CTX = RequestContext(user_id="user-1", access_token="token")


class StubWeatherTool(Tool):
    name = "get_weather"
    description = "Stub"
    parameters_schema: dict[str, Any] = {
        "type": "object",
        "properties": {"location": {"type": "string"}, "date": {"type": "string"}},
        "required": ["location"],
        "additionalProperties": False,
    }

    def __init__(self, result: Any = None, exc: Exception | None = None, delay: float = 0.0) -> None:
        self.result = result if result is not None else Ok({"location": "Paris"})
        self.exc = exc
        self.delay = delay
        self.calls: list[dict[str, Any]] = []

    async def run(self, context: RequestContext, /, **kwargs: Any):  # noqa: ANN201
        self.calls.append(kwargs)
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.exc is not None:
            raise self.exc
        return self.result

    def summarize(self, payload: Any) -> str:
        return f"Weather for {payload['location']}"


class BrokenRenderTool(StubWeatherTool):
    def summarize(self, payload: Any) -> str:
        raise KeyError("missing")


def _call(arguments: Any, name: str = "get_weather", call_id: str = "call-1") -> ToolCallRequest:
    raw = arguments if isinstance(arguments, str) else json.dumps(arguments)
    return ToolCallRequest(id=call_id, name=name, raw_arguments=raw)


def test_register_rejects_names_outside_the_closed_set():
    tool = StubWeatherTool()
    tool.name = "web_search"

    with pytest.raises(ValueError, match="Unknown tool name"):
        ToolRegistry().register(tool)


def test_register_rejects_duplicates():
    registry = ToolRegistry()
    registry.register(StubWeatherTool())

    with pytest.raises(ValueError, match="already registered"):
        registry.register(StubWeatherTool())


def test_list_tool_specs_exposes_schema():
    registry = ToolRegistry()
    registry.register(StubWeatherTool())

    specs = registry.list_tool_specs()

    assert specs == [
        {
            "type": "function",
            "function": {
                "name": "get_weather",
                "description": "Stub",
                "parameters": StubWeatherTool.parameters_schema,
            },
        }
    ]


@pytest.mark.asyncio
async def test_unknown_tool_never_invokes_a_handler():
    tool = StubWeatherTool()
    registry = ToolRegistry()
    registry.register(tool)

    result = await registry.execute(_call({"location": "Paris"}, name="launch_rockets"), CTX)

    assert result.status_tag is StatusTag.FAILED
    assert result.text == "Error: Unknown tool 'launch_rockets'. (Status: FAILED)"
    assert tool.calls == []


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "raw",
    [
        "not json",
        json.dumps(["Paris"]),
        json.dumps({}),
        json.dumps({"location": 42}),
        json.dumps({"location": "Paris", "units": "metric"}),
    ],
)
async def test_malformed_arguments_fail_without_invoking_handler(raw):
    tool = StubWeatherTool()
    registry = ToolRegistry()
    registry.register(tool)

    result = await registry.execute(_call(raw), CTX)

    assert result.status_tag is StatusTag.FAILED
    assert result.text.startswith("Error: Invalid arguments for get_weather:")
    assert tool.calls == []


@pytest.mark.asyncio
async def test_nested_schema_violations_are_rejected(kit):
    registry = ToolRegistry()
    for tool in calendar_tools(kit):
        registry.register(tool)
    bad_priority = {
        "events": [
            {
                "summary": "Dentist",
                "start": "2026-10-20T09:00:00+00:00",
                "end": "2026-10-20T10:00:00+00:00",
                "priority": "Critical",
            }
        ]
    }
    unknown_field = {"events": [{"summary": "Dentist", "start": "a", "end": "b", "colour": "red"}]}

    for arguments in (bad_priority, unknown_field, {"events": "Dentist"}):
        result = await registry.execute(_call(arguments, name="add_events"), CTX)
        assert result.status_tag is StatusTag.FAILED
    assert kit.backend.inserted == []


def test_build_model_handles_nested_arrays_and_enums():
    model = build_model("AddEventsArguments", AddEventsTool.parameters_schema)

    value = model(
        events=[
            {
                "summary": "Dentist",
                "start": "2026-10-20T09:00:00+00:00",
                "end": "2026-10-20T10:00:00+00:00",
                "priority": "High",
                "tags": ["health"],
                "reminders": [10, 30],
            }
        ]
    )

    dumped = value.model_dump(exclude_none=True)
    assert dumped["events"][0]["priority"] == "High"
    assert dumped["events"][0]["reminders"] == [10.0, 30.0]
    assert "description" not in dumped["events"][0]


@pytest.mark.asyncio
async def test_successful_call_renders_summary_with_status():
    registry = ToolRegistry()
    registry.register(StubWeatherTool())

    result = await registry.execute(_call({"location": "Paris"}), CTX)

    assert result.status_tag is StatusTag.SUCCESS
    assert result.text == "Weather for Paris (Status: SUCCESS)"
    assert result.tool_call_id == "call-1"


@pytest.mark.asyncio
async def test_handler_exception_becomes_failed_result():
    registry = ToolRegistry()
    registry.register(StubWeatherTool(exc=CalendarBackendError("Unauthorized", status_code=401)))

    result = await registry.execute(_call({"location": "Paris"}), CTX)

    assert result.status_tag is StatusTag.FAILED
    assert result.text == "Error (auth): Unauthorized (Status: FAILED)"


@pytest.mark.asyncio
async def test_formatting_failure_is_contained():
    registry = ToolRegistry()
    registry.register(BrokenRenderTool())

    result = await registry.execute(_call({"location": "Paris"}), CTX)

    assert result.status_tag is StatusTag.UNKNOWN
    assert result.text == "Internal Error: Failed to format the result for get_weather. (Status: ERROR)"


@pytest.mark.asyncio
async def test_deadline_turns_slow_handler_into_failure():
    registry = ToolRegistry(deadline_seconds=0.01)
    registry.register(StubWeatherTool(delay=1.0))

    result = await registry.execute(_call({"location": "Paris"}), CTX)

    assert result.status_tag is StatusTag.FAILED
    assert "did not finish within" in result.text


@pytest.mark.asyncio
async def test_execution_is_audited(db):
    registry = ToolRegistry(db)
    registry.register(StubWeatherTool())

    await registry.execute(_call({"location": "Paris"}), CTX)

    rows = db.list_tool_executions("user-1")
    assert len(rows) == 1
    assert rows[0]["tool_name"] == "get_weather"
    assert json.loads(rows[0]["input_json"]) == {"location": "Paris"}
    assert rows[0]["succeeded"] == 1


@pytest.mark.asyncio
async def test_audit_failure_does_not_fail_the_call():
    db = MagicMock()
    db.log_tool_execution.side_effect = RuntimeError("disk full")
    registry = ToolRegistry(db)
    registry.register(StubWeatherTool())

    result = await registry.execute(_call({"location": "Paris"}), CTX)

    assert result.status_tag is StatusTag.SUCCESS


@pytest.mark.parametrize(
    ("result", "expected"),
    [
        (Err(ErrorKind.BACKEND, "down"), StatusTag.FAILED),
        (Ok({"error": "bad"}), StatusTag.FAILED),
        (Ok({"success": False, "message": "nope", "conflict": True}), StatusTag.FAILED),
        (Ok({"conflict": True, "suggestions": []}), StatusTag.CONFLICT),
        (Conflict(payload={"conflict": True}), StatusTag.CONFLICT),
        (Ok({}), StatusTag.NEUTRAL),
        (Ok({"events": [], "count": 0}), StatusTag.NEUTRAL),
        (Ok(None), StatusTag.NEUTRAL),
        (Ok([]), StatusTag.NEUTRAL),
        (Ok({"success": True}), StatusTag.SUCCESS),
        (Ok(["a"]), StatusTag.SUCCESS),
        (Ok("done"), StatusTag.SUCCESS),
        (Ok(42), StatusTag.UNKNOWN),
    ],
)
def test_classification_precedence(result, expected):
    assert classify(result) is expected
