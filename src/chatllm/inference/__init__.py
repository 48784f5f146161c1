"""Prompt construction and streaming generation over a loaded model."""

from __future__ import annotations

from chatllm.inference.prompt import Conversation, ConversationTurn, build_prompt
from chatllm.inference.session import CancellationToken, InferenceSession

__all__ = [
    "CancellationToken",
    "Conversation",
    "ConversationTurn",
    "InferenceSession",
    "build_prompt",
]
