"""Conversation history cleanup applied before every model call."""

from __future__ import annotations

import logging

from calendar_assistant.errors import EmptyHistoryError
from calendar_assistant.models import Message, Role

LOGGER = logging.getLogger(__name__)


def normalize_history(messages: list[Message]) -> list[Message]:
    """Return a copy of ``messages`` that the chat-completions API will accept.

    Tool messages must answer a tool call emitted by an assistant message and
    carry content; consecutive messages of the same non-tool role are
    collapsed into the later one. Raises EmptyHistoryError if nothing is left.
    """
    kept = _drop_unanswerable_tool_messages(messages)

    collapsed: list[Message] = []
    for message in kept:
        if collapsed and message.role is not Role.TOOL and collapsed[-1].role is message.role:
            LOGGER.warning("Collapsing consecutive %s messages", message.role.value)
            collapsed[-1] = message
            continue
        collapsed.append(message)

    # Collapsing can discard an assistant message whose calls were answered later.
    result = _drop_unanswerable_tool_messages(collapsed)
    if not result:
        raise EmptyHistoryError("Cannot proceed with an empty message history")
    return result


def _drop_unanswerable_tool_messages(messages: list[Message]) -> list[Message]:
    emitted = {
        call.id
        for message in messages
        if message.role is Role.ASSISTANT and message.tool_calls
        for call in message.tool_calls
    }
    kept = []
    for index, message in enumerate(messages):
        if message.role is Role.TOOL:
            if message.tool_call_id not in emitted:
                LOGGER.warning("Dropping orphaned tool message at %d (%s)", index, message.tool_call_id)
                continue
            if not message.content:
                LOGGER.warning("Dropping empty tool message at %d (%s)", index, message.tool_call_id)
                continue
        kept.append(message)
    return kept
