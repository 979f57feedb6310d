"""Adapters package - bridge between the agent and the web client.

This package contains the event translator, the completion coordinator,
the question channel and the agent client that drives the Claude CLI.
"""
from __future__ import annotations

__all__ = [
    "AgentClient",
    "CompletionCoordinator",
    "QuestionChannel",
    "StreamState",
    "translate",
]

from agentrelay.adapters.agent_client import AgentClient
from agentrelay.adapters.completion import CompletionCoordinator
from agentrelay.adapters.question import QuestionChannel
from agentrelay.adapters.stream_state import StreamState
from agentrelay.adapters.translator import translate
