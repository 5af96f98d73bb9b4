"""
Message Tracking
================

Groups streamed generation output into timeline entries.

- ``system`` messages are discrete events and always get a new id.
- ``user``/``assistant`` messages share one id while the role stays the
  same, so streamed chunks accumulate into a single entry.
- ``reset`` forces the next emission onto a new id (used after a tool-call
  step, so text from the next step becomes its own entry).

Each emission is published to live subscribers immediately and queued for
persistence. A per-session worker drains the queue in order, so messages are
persisted in emission order without blocking the pipeline.
"""

import asyncio
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Dict, Optional, Tuple

from genstack.database.retry import RetryConfig, with_retry
from genstack.database.store import SessionStore
from genstack.utils.logging import get_logger

logger = get_logger(__name__)

Publisher = Callable[[str, str, Dict[str, Any]], Awaitable[None]]

MESSAGE_RETRY = RetryConfig(max_retries=3, base_delay=0.05, jitter=False)


@dataclass
class _SessionMessages:
    message_id: Optional[str] = None
    role: Optional[str] = None
    queue: "asyncio.Queue[Tuple[str, str, str, datetime]]" = field(default_factory=asyncio.Queue)
    worker: Optional[asyncio.Task] = None


class MessageTracker:
    """Per-session message ids, live publishing and ordered persistence."""

    def __init__(
        self,
        publisher: Optional[Publisher] = None,
        store: Optional[SessionStore] = None,
        retry_config: RetryConfig = MESSAGE_RETRY,
    ):
        self.publisher = publisher
        self.store = store
        self._sessions: Dict[str, _SessionMessages] = {}
        self._upsert = with_retry(retry_config)(store.upsert_message) if store is not None else None

    def _state(self, session_id: str) -> _SessionMessages:
        state = self._sessions.get(session_id)
        if state is None:
            state = _SessionMessages()
            self._sessions[session_id] = state
        return state

    def message_id_for(self, session_id: str, role: str) -> str:
        state = self._state(session_id)
        if role == "system" or state.role != role or state.message_id is None:
            state.message_id = f"msg-{uuid.uuid4()}"
            state.role = role
        return state.message_id

    async def emit(self, session_id: str, role: str, content: str) -> str:
        """
        Publish ``content`` and queue it for persistence.

        Returns:
            The message id the content was grouped under
        """
        message_id = self.message_id_for(session_id, role)
        timestamp = datetime.now(timezone.utc)

        if self.publisher is not None:
            await self.publisher(session_id, "llm_message", {
                "id": message_id,
                "role": role,
                "content": content,
                "timestamp": int(timestamp.timestamp() * 1000),
            })

        if self._upsert is not None:
            state = self._state(session_id)
            state.queue.put_nowait((message_id, role, content, timestamp))
            if state.worker is None or state.worker.done():
                state.worker = asyncio.create_task(self._drain(session_id, state.queue))

        return message_id

    def reset(self, session_id: str) -> None:
        state = self._sessions.get(session_id)
        if state is not None:
            state.message_id = None
            state.role = None

    async def cleanup(self, session_id: str) -> None:
        """Flush pending persistence and forget the session. Safe to call twice."""
        state = self._sessions.pop(session_id, None)
        if state is None:
            return
        if state.worker is not None and not state.worker.done():
            await state.queue.join()
            state.worker.cancel()
            await asyncio.gather(state.worker, return_exceptions=True)

    async def _drain(self, session_id: str, queue: "asyncio.Queue[Tuple[str, str, str, datetime]]") -> None:
        while True:
            message_id, role, content, timestamp = await queue.get()
            try:
                await self._upsert(session_id, message_id, role, content, timestamp)
            except Exception as e:
                logger.error(
                    f"Failed to persist message after retries: {e}",
                    extra={"session_id": session_id, "message_id": message_id, "role": role},
                )
            finally:
                queue.task_done()
