"""Single in-flight completion per process, with a replayable chunk buffer.

The coordinator is the only place that knows whether a turn is running.
Chunks produced by the turn are appended to an in-memory buffer that
any number of SSE readers replay and then tail. The buffer survives the
end of the turn so late readers still get the final chunks; it is
cleared only when the next turn starts.
"""
from __future__ import annotations

import asyncio
import dataclasses
import logging
import uuid
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, AsyncIterator, Callable

from agentrelay.adapters.chunks import (
    Chunk,
    ErrorChunk,
    MessageFinish,
    MessageStart,
    ReasoningDelta,
    TextDelta,
    ToolInputDelta,
    is_terminal,
)
from agentrelay.engine.errors import (
    CompletionConflictError,
    NoCompletionRunningError,
    is_cancellation,
)

logger = logging.getLogger(__name__)

DEFAULT_POLL_INTERVAL = 0.05

TurnFactory = Callable[[], AsyncIterator[Chunk]]
ErrorFormatter = Callable[[BaseException], "str | None"]


def new_completion_id() -> str:
    return uuid.uuid4().hex[:8]


@dataclass(frozen=True)
class BufferedChunk:
    seq: int
    completion_id: str
    chunk: Chunk


@dataclass
class CompletionStatus:
    is_running: bool = False
    completion_id: str | None = None
    started_at: str | None = None
    error: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "isRunning": self.is_running,
            "completionId": self.completion_id,
            "startedAt": self.started_at,
            "error": self.error,
        }


def _delta_key(chunk: Chunk) -> tuple[type, str] | None:
    if isinstance(chunk, (TextDelta, ReasoningDelta)):
        return type(chunk), chunk.id
    if isinstance(chunk, ToolInputDelta):
        return ToolInputDelta, chunk.tool_call_id
    return None


def aggregate_deltas(chunks: list[Chunk]) -> list[Chunk]:
    """Merge runs of same-block deltas into one delta each.

    Text and reasoning deltas merge by block id, tool-input deltas by
    tool call id. Every other chunk passes through unchanged, so the
    start/delta/end structure is preserved.
    """
    result: list[Chunk] = []
    run_key: tuple[type, str] | None = None
    parts: list[str] = []

    def flush() -> None:
        if run_key is None:
            return
        head = result[-1]
        if isinstance(head, ToolInputDelta):
            result[-1] = dataclasses.replace(head, input_text_delta="".join(parts))
        else:
            result[-1] = dataclasses.replace(head, delta="".join(parts))

    for chunk in chunks:
        key = _delta_key(chunk)
        if key is not None and key == run_key:
            parts.append(
                chunk.input_text_delta if isinstance(chunk, ToolInputDelta) else chunk.delta
            )
            continue
        flush()
        result.append(chunk)
        run_key = key
        if key is not None:
            parts = [
                chunk.input_text_delta if isinstance(chunk, ToolInputDelta) else chunk.delta
            ]
    flush()
    return result


def extract_error_message(exc: BaseException) -> str:
    message = str(exc)
    if message:
        return message
    return type(exc).__name__ or "Unknown error"


class CompletionCoordinator:
    """Owns the running-turn flag, the chunk buffer and the turn task."""

    def __init__(self, poll_interval: float = DEFAULT_POLL_INTERVAL) -> None:
        self.poll_interval = poll_interval
        self._status = CompletionStatus()
        self._events: list[BufferedChunk] = []
        self._seq = 0
        self._task: asyncio.Task | None = None

    @property
    def is_running(self) -> bool:
        return self._status.is_running

    # ── State ──

    def start(self, completion_id: str | None = None) -> str:
        """Mark a turn as running and reset the buffer.

        Raises CompletionConflictError carrying the active id when a
        turn is already running.
        """
        if self._status.is_running:
            active = self._status.completion_id or "unknown"
            logger.info("completion=%s event=conflict", active)
            raise CompletionConflictError(active)
        completion_id = completion_id or new_completion_id()
        self.clear_events()
        self._status = CompletionStatus(
            is_running=True,
            completion_id=completion_id,
            started_at=datetime.now(timezone.utc).isoformat(),
        )
        logger.info("completion=%s event=started", completion_id)
        return completion_id

    def add_chunk(self, chunk: Chunk) -> BufferedChunk:
        buffered = BufferedChunk(
            seq=self._seq,
            completion_id=self._status.completion_id or "",
            chunk=chunk,
        )
        self._seq += 1
        self._events.append(buffered)
        return buffered

    def finish(self, error: str | None = None) -> None:
        # The buffer is kept for readers that attach after the turn ends.
        self._status = CompletionStatus(
            is_running=False,
            completion_id=self._status.completion_id,
            started_at=self._status.started_at,
            error=error,
        )

    def status(self) -> CompletionStatus:
        return dataclasses.replace(self._status)

    def events(self) -> list[Chunk]:
        return [b.chunk for b in self._events]

    def buffered(self) -> list[BufferedChunk]:
        return list(self._events)

    def clear_events(self) -> None:
        # Rebind rather than clear so readers of the previous turn keep
        # their own list.
        self._events = []

    # ── Readers ──

    async def subscribe(
        self,
        poll_interval: float | None = None,
        keepalive: float | None = None,
    ) -> AsyncIterator[Chunk | None]:
        """Replay the buffer (deltas merged), then tail it until the turn ends.

        With *keepalive* set, ``None`` is yielded whenever that many
        seconds pass without a chunk, so the caller can keep its
        connection alive.
        """
        interval = self.poll_interval if poll_interval is None else poll_interval
        completion_id = self._status.completion_id
        events = self._events
        initial = len(events)
        for chunk in aggregate_deltas([b.chunk for b in events[:initial]]):
            yield chunk

        loop = asyncio.get_running_loop()
        last_sent = loop.time()
        index = initial
        while self._status.is_running and self._status.completion_id == completion_id:
            await asyncio.sleep(interval)
            while index < len(events):
                yield events[index].chunk
                index += 1
                last_sent = loop.time()
            if keepalive is not None and loop.time() - last_sent >= keepalive:
                yield None
                last_sent = loop.time()

        while index < len(events):
            yield events[index].chunk
            index += 1

    # ── Driving a turn ──

    def run(
        self,
        turn_factory: TurnFactory,
        on_error: ErrorFormatter | None = None,
        completion_id: str | None = None,
    ) -> str:
        """Start a turn and drive *turn_factory* in a background task.

        Returns the completion id immediately. Raises
        CompletionConflictError when a turn is already running.
        """
        completion_id = self.start(completion_id)
        self._task = asyncio.create_task(
            self._drive(completion_id, turn_factory, on_error),
            name=f"completion-{completion_id}",
        )
        return completion_id

    async def _drive(
        self,
        completion_id: str,
        turn_factory: TurnFactory,
        on_error: ErrorFormatter | None,
    ) -> None:
        error: str | None = None
        try:
            async for chunk in turn_factory():
                self.add_chunk(chunk)
            logger.info("completion=%s event=completed", completion_id)
        except asyncio.CancelledError:
            logger.info("completion=%s event=cancelled", completion_id)
            self._close_unfinished()
            raise
        except Exception as exc:
            if is_cancellation(exc):
                logger.info("completion=%s event=cancelled reason=%s", completion_id, exc)
                self._close_unfinished()
            else:
                error = (on_error(exc) if on_error else None) or extract_error_message(exc)
                logger.error(
                    "completion=%s event=error error=%s", completion_id, error, exc_info=True,
                )
                chunks = self.events()
                if not chunks or not is_terminal(chunks[-1]):
                    self.add_chunk(ErrorChunk(error_text=error))
                    self.add_chunk(MessageFinish(finish_reason="error"))
        finally:
            self.finish(error)
            if self._task is asyncio.current_task():
                self._task = None

    def _close_unfinished(self) -> None:
        """End a stopped turn's stream with a finish chunk if it lacks one."""
        chunks = self.events()
        if not chunks or is_terminal(chunks[-1]):
            return
        if any(isinstance(c, MessageStart) for c in chunks):
            self.add_chunk(MessageFinish())

    async def cancel(self) -> str:
        """Cancel the running turn, keeping every buffered chunk.

        Raises NoCompletionRunningError when nothing is running.
        """
        if not self._status.is_running:
            raise NoCompletionRunningError()
        completion_id = self._status.completion_id or "unknown"
        task = self._task
        if task is not None and not task.done():
            task.cancel()
            await asyncio.gather(task, return_exceptions=True)
        else:
            self.finish()
        logger.info("completion=%s event=cancel_requested", completion_id)
        return completion_id

    async def wait(self) -> None:
        """Wait for the current turn task, if any, to end."""
        task = self._task
        if task is not None:
            await asyncio.gather(task, return_exceptions=True)
