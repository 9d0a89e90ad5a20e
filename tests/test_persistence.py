import logging
from unittest.mock import MagicMock

import pytest

from calendar_assistant.models import Message, Role
from calendar_assistant.persistence import MessageRecorder


@pytest.mark.asyncio
async def test_messages_are_written_in_record_order(db):
    db.upsert_user("user-1")
    conversation_id = db.create_conversation("user-1")
    recorder = MessageRecorder(db)

    for index in range(5):
        recorder.record(conversation_id, Message(role=Role.USER, content=f"m{index}"))
    await recorder.drain()

    stored = db.get_recent_messages(conversation_id, limit=10)
    assert [m.content for m in stored] == ["m0", "m1", "m2", "m3", "m4"]
    await recorder.close()


@pytest.mark.asyncio
async def test_write_failures_are_logged_and_skipped(caplog):
    db = MagicMock()
    db.append_message.side_effect = [RuntimeError("database is locked"), 2]
    recorder = MessageRecorder(db)

    with caplog.at_level(logging.ERROR, logger="calendar_assistant.persistence"):
        recorder.record(7, Message(role=Role.USER, content="lost"))
        recorder.record(7, Message(role=Role.ASSISTANT, content="kept"))
        await recorder.drain()

    assert db.append_message.call_count == 2
    assert "Failed to persist user message for conversation 7" in caplog.text
    await recorder.close()


@pytest.mark.asyncio
async def test_drain_without_records_returns():
    recorder = MessageRecorder(MagicMock())

    await recorder.drain()
    await recorder.close()
