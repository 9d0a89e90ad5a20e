import sqlite3

import pytest

from calendar_assistant.db import Database
from calendar_assistant.models import Role, ToolCallRequest


def test_initialize_is_repeatable(tmp_path):
    db = Database(tmp_path / "assistant.db")
    db.initialize()
    db.initialize()

    db.upsert_user("user-1", email="ana@example.com")
    db.upsert_user("user-1")
    assert db.create_conversation("user-1") > 0


def test_schema_version_mismatch_is_rejected(tmp_path):
    path = tmp_path / "assistant.db"
    Database(path).initialize()
    with sqlite3.connect(path) as conn:
        conn.execute("UPDATE schema_version SET version = 99")

    with pytest.raises(RuntimeError, match="Unsupported schema version 99"):
        Database(path).initialize()


def test_append_message_assigns_increasing_sequence_numbers(db):
    db.upsert_user("user-1")
    first = db.create_conversation("user-1")
    second = db.create_conversation("user-1")

    assert db.append_message(first, Role.USER, "hello") == 1
    assert db.append_message(first, "assistant", "hi") == 2
    assert db.append_message(second, Role.USER, "other") == 1


def test_recent_messages_window_is_ordered_by_sequence(db):
    db.upsert_user("user-1")
    conversation_id = db.create_conversation("user-1")
    for index in range(6):
        db.append_message(conversation_id, Role.USER if index % 2 == 0 else Role.ASSISTANT, f"m{index}")

    recent = db.get_recent_messages(conversation_id, limit=3)

    assert [m.content for m in recent] == ["m3", "m4", "m5"]
    assert [m.sequence_number for m in recent] == [4, 5, 6]


def test_tool_calls_round_trip(db):
    db.upsert_user("user-1")
    conversation_id = db.create_conversation("user-1")
    call = ToolCallRequest(id="call-1", name="get_events", raw_arguments='{"start_date": "2026-10-20"}')

    db.append_message(conversation_id, Role.ASSISTANT, None, tool_calls=[call])
    db.append_message(conversation_id, Role.TOOL, "result", tool_call_id="call-1")

    assistant, tool = db.get_recent_messages(conversation_id, limit=10)
    assert assistant.content is None
    assert assistant.tool_calls == [call]
    assert tool.tool_call_id == "call-1"


def test_latest_conversation_follows_activity(db):
    db.upsert_user("user-1")
    assert db.get_latest_conversation("user-1") is None

    older = db.create_conversation("user-1")
    newer = db.create_conversation("user-1")
    assert db.get_latest_conversation("user-1") == newer

    db.append_message(older, Role.USER, "back again")
    assert db.get_latest_conversation("user-1") == older


def test_preferences_merge_by_category(db):
    db.upsert_user("user-1")

    db.save_preference("user-1", "scheduling", "preferredHours", "mornings")
    db.save_preference("user-1", "scheduling", "bufferMinutes", 15, context="between meetings")
    db.save_preference("user-1", "location", "homeCity", "Lisbon")

    assert db.get_preferences("user-1") == {
        "scheduling": {"preferredHours": "mornings", "bufferMinutes": 15},
        "scheduling_context": {"bufferMinutes": "between meetings"},
        "location": {"homeCity": "Lisbon"},
    }
    assert db.get_preferences("someone-else") == {}


def test_event_metadata_upsert_and_delete(db):
    db.upsert_event_metadata("user-1", "evt-1", priority="Low", tags=["a"])
    db.upsert_event_metadata("user-1", "evt-1", priority="High", tags=["b", "c"])
    db.upsert_event_metadata("user-2", "evt-1", priority="Urgent")

    assert db.get_event_metadata("user-1", ["evt-1", "evt-2"]) == {"evt-1": {"priority": "High", "tags": ["b", "c"]}}
    assert db.get_event_metadata("user-1", []) == {}

    db.delete_event_metadata("user-1", "evt-1")
    assert db.get_event_metadata("user-1", ["evt-1"]) == {}
    assert db.get_event_metadata("user-2", ["evt-1"]) == {"evt-1": {"priority": "Urgent", "tags": []}}


def test_tool_execution_log_newest_first(db):
    db.log_tool_execution("user-1", "get_events", {"start_date": "x"}, {"count": 0}, succeeded=True)
    db.log_tool_execution("user-1", "delete_event", {"event_id": "y"}, {"error": "nope"}, succeeded=False)

    rows = db.list_tool_executions("user-1", limit=5)

    assert [row["tool_name"] for row in rows] == ["delete_event", "get_events"]
    assert rows[0]["succeeded"] == 0
