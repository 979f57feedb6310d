"""Per-turn translation state.

One StreamState lives for exactly one turn (user prompt through the
terminal result). It records which content block is open, how far each
tool call has progressed, and a single deferred action that the next
relevant upstream event flushes.

Tool call lifecycle:

    INPUT_STREAMING ──> INPUT_AVAILABLE ──┬──> OUTPUT_AVAILABLE
           │                              │
           │                              └──> OUTPUT_ERROR
           │
           └──> OUTPUT_AVAILABLE / OUTPUT_ERROR   (input-available is
                                                    synthesized first)

Terminal states accept no further transitions, which is what makes a
repeated completed/failed update a no-op.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any


class ToolState(str, Enum):
    """Client-visible progress of one tool call."""
    INPUT_STREAMING = "input-streaming"
    INPUT_AVAILABLE = "input-available"
    OUTPUT_AVAILABLE = "output-available"
    OUTPUT_ERROR = "output-error"

    @property
    def is_terminal(self) -> bool:
        return self in (ToolState.OUTPUT_AVAILABLE, ToolState.OUTPUT_ERROR)


class BlockKind(str, Enum):
    TEXT = "text"
    REASONING = "reasoning"
    TOOL = "tool"


class PendingAction(str, Enum):
    """Work deferred until the next tool result or step start."""
    FINISH_STEP = "finish-step"


VALID_TRANSITIONS: dict[ToolState, set[ToolState]] = {
    ToolState.INPUT_STREAMING: {
        ToolState.INPUT_AVAILABLE,
        ToolState.OUTPUT_AVAILABLE,
        ToolState.OUTPUT_ERROR,
    },
    ToolState.INPUT_AVAILABLE: {
        ToolState.OUTPUT_AVAILABLE,
        ToolState.OUTPUT_ERROR,
    },
    ToolState.OUTPUT_AVAILABLE: set(),
    ToolState.OUTPUT_ERROR: set(),
}


def can_transition(current: ToolState, target: ToolState) -> bool:
    return target in VALID_TRANSITIONS.get(current, set())


def block_id(kind: BlockKind | str, message_id: str, counter: int) -> str:
    """Deterministic id for a text or reasoning block."""
    kind_value = kind.value if isinstance(kind, BlockKind) else kind
    return f"{kind_value}-{message_id}-{counter}"


@dataclass
class ToolTracking:
    """Progress of one tool call within the current turn."""
    tool_call_id: str
    tool_name: str = "unknown"
    state: ToolState = ToolState.INPUT_STREAMING
    input_available_sent: bool = False
    last_input: Any = None
    last_title: str | None = None
    input_json_buffer: str = ""
    provider_metadata: dict[str, Any] | None = None


@dataclass
class StreamState:
    """Mutable state for translating one turn."""

    # Stable id of the whole turn; the first step's upstream message id.
    message_id: str = ""
    # Upstream message id of the step currently streaming.
    step_message_id: str = ""
    turn_started: bool = False
    # True between a start/start-step and its finish-step.
    step_open: bool = False
    finished: bool = False

    open_text_id: str | None = None
    open_reasoning_id: str | None = None
    # Never reset during the turn.
    text_counter: int = 0
    reasoning_counter: int = 0
    plan_counter: int = 0

    tools: dict[str, ToolTracking] = field(default_factory=dict)
    # Upstream content-block index -> what was opened for it.
    block_kinds: dict[int, BlockKind] = field(default_factory=dict)
    block_tools: dict[int, str] = field(default_factory=dict)
    # Steps that arrived as partial stream events; their complete
    # snapshots are duplicates and produce nothing.
    streamed_steps: set[str] = field(default_factory=set)

    pending: PendingAction | None = None
    stop_reason: str | None = None

    @property
    def block_message_id(self) -> str:
        return self.step_message_id or self.message_id

    def next_block_id(self, kind: BlockKind) -> str:
        if kind is BlockKind.TEXT:
            counter = self.text_counter
            self.text_counter += 1
        elif kind is BlockKind.REASONING:
            counter = self.reasoning_counter
            self.reasoning_counter += 1
        else:
            raise ValueError(f"No block ids for {kind.value} blocks")
        return block_id(kind, self.block_message_id, counter)

    def next_plan_id(self) -> str:
        plan_id = f"plan-{self.message_id}-{self.plan_counter}"
        self.plan_counter += 1
        return plan_id

    def has_open_block(self) -> bool:
        return self.open_text_id is not None or self.open_reasoning_id is not None

    def reset_step(self) -> None:
        """Forget per-step tracking. Counters and the turn id survive.

        Tool calls that already reported their output are dropped; ones
        still waiting for a result stay tracked so a late result can
        still be correlated.
        """
        self.open_text_id = None
        self.open_reasoning_id = None
        self.block_kinds.clear()
        self.block_tools.clear()
        self.stop_reason = None
        self.tools = {
            tool_id: tracking
            for tool_id, tracking in self.tools.items()
            if not tracking.state.is_terminal
        }
