"""AskUserQuestion side-channel between the agent and the web client.

The SDK's ``can_use_tool`` callback blocks on ``ask`` until the client
posts answers through the HTTP API. At most one question is pending per
channel; asking again rejects the previous one. Rejections always carry
a message containing ``cancelled`` so the completion runner treats them
as a clean stop.
"""
from __future__ import annotations

import asyncio
import logging
from collections import OrderedDict
from dataclasses import dataclass, field
from typing import Any

from agentrelay.engine.errors import QuestionCancelledError

logger = logging.getLogger(__name__)

DEFAULT_CANCEL_REASON = "AskUserQuestion: user did not answer, process cancelled"
REPLACED_REASON = "AskUserQuestion: replaced by a new question, process cancelled"

# Answered ids kept for status lookups; oldest are forgotten first.
MAX_ANSWERED = 256


@dataclass
class PendingQuestion:
    tool_use_id: str
    questions: list[dict[str, Any]] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {"toolUseID": self.tool_use_id, "questions": self.questions}


@dataclass
class QuestionStatus:
    status: str  # "pending" | "answered" | "not_found"
    question: PendingQuestion | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "status": self.status,
            "question": self.question.to_dict() if self.question else None,
        }


class QuestionChannel:
    """One pending question at a time, resolved by ``submit``."""

    def __init__(self) -> None:
        self._pending: PendingQuestion | None = None
        self._future: asyncio.Future[dict[str, str]] | None = None
        self._answered: OrderedDict[str, None] = OrderedDict()

    @property
    def pending(self) -> PendingQuestion | None:
        return self._pending

    async def ask(
        self, tool_use_id: str, questions: list[dict[str, Any]],
    ) -> dict[str, str]:
        """Wait for the client's answers (label -> answer).

        Raises QuestionCancelledError when the question is replaced or
        cancelled before an answer arrives.
        """
        if self._pending is not None:
            logger.info(
                "Question %s replaced by %s", self._pending.tool_use_id, tool_use_id,
            )
            self._reject(REPLACED_REASON)

        loop = asyncio.get_running_loop()
        future: asyncio.Future[dict[str, str]] = loop.create_future()
        self._pending = PendingQuestion(tool_use_id=tool_use_id, questions=list(questions))
        self._future = future
        logger.info("Question pending tool_use_id=%s count=%d", tool_use_id, len(questions))
        try:
            return await future
        finally:
            if self._future is future:
                self._pending = None
                self._future = None

    def submit(self, tool_use_id: str, answers: dict[str, str]) -> bool:
        """Resolve the pending question; False when *tool_use_id* is not pending."""
        if self._pending is None or self._pending.tool_use_id != tool_use_id:
            return False
        future = self._future
        self._pending = None
        self._future = None
        self._answered[tool_use_id] = None
        while len(self._answered) > MAX_ANSWERED:
            self._answered.popitem(last=False)
        if future is not None and not future.done():
            future.set_result(dict(answers))
        logger.info("Question answered tool_use_id=%s", tool_use_id)
        return True

    def cancel_all(self, reason: str = DEFAULT_CANCEL_REASON) -> None:
        if self._pending is None:
            return
        logger.info("Cancelling pending question %s: %s", self._pending.tool_use_id, reason)
        self._reject(reason)

    def clear(self) -> None:
        """Cancel anything pending and forget answered ids."""
        self.cancel_all()
        self._answered.clear()

    def get(self, tool_use_id: str | None = None) -> QuestionStatus:
        """Status of *tool_use_id*, or of whatever is pending when omitted."""
        if tool_use_id is None:
            if self._pending is not None:
                return QuestionStatus("pending", self._pending)
            return QuestionStatus("not_found")
        if self._pending is not None and self._pending.tool_use_id == tool_use_id:
            return QuestionStatus("pending", self._pending)
        if tool_use_id in self._answered:
            return QuestionStatus("answered")
        return QuestionStatus("not_found")

    def _reject(self, reason: str) -> None:
        pending, future = self._pending, self._future
        self._pending = None
        self._future = None
        if pending is not None and future is not None and not future.done():
            future.set_exception(QuestionCancelledError(pending.tool_use_id, reason))
