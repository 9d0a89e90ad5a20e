"""Background message log writer.

Messages are appended in the order they were recorded by a single worker
task. Write failures are logged here and never reach the conversation.
"""

from __future__ import annotations

import asyncio
import logging

from calendar_assistant.db import Database
from calendar_assistant.models import Message

LOGGER = logging.getLogger("calendar_assistant.persistence")


class MessageRecorder:
    def __init__(self, db: Database) -> None:
        self._db = db
        self._queue: asyncio.Queue[tuple[int, Message]] = asyncio.Queue()
        self._worker: asyncio.Task[None] | None = None

    def record(self, conversation_id: int, message: Message) -> None:
        """Queue a message for persistence without waiting for the write."""
        self._ensure_worker()
        self._queue.put_nowait((conversation_id, message))

    async def drain(self) -> None:
        """Wait until every queued message has been written or logged as failed."""
        if self._worker is None:
            return
        await self._queue.join()

    async def close(self) -> None:
        await self.drain()
        if self._worker is not None:
            self._worker.cancel()
            try:
                await self._worker
            except asyncio.CancelledError:
                pass
            self._worker = None

    def _ensure_worker(self) -> None:
        if self._worker is None or self._worker.done():
            self._worker = asyncio.get_running_loop().create_task(self._run(), name="message-recorder")

    async def _run(self) -> None:
        while True:
            conversation_id, message = await self._queue.get()
            try:
                await asyncio.to_thread(
                    self._db.append_message,
                    conversation_id,
                    message.role,
                    message.content,
                    message.tool_calls,
                    message.tool_call_id,
                )
            except Exception:
                LOGGER.exception(
                    "Failed to persist %s message for conversation %s", message.role.value, conversation_id
                )
            finally:
                self._queue.task_done()
