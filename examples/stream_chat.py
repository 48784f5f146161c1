#!/usr/bin/env python3
"""Download a small model, select it, and stream one reply.

Demonstrates:
- Building a LifecycleController from the layered config
- Following download progress through a state listener
- Streaming text increments and stopping after a character budget

Usage:
    uv run python examples/stream_chat.py "Explain GGUF in one sentence."
"""
from __future__ import annotations

import asyncio
import sys

from chatllm.config import load_config
from chatllm.inference.prompt import ConversationTurn
from chatllm.models.manager import LifecycleController
from chatllm.models.state import Downloading, Failed, ModelEntry

MODEL_ID = "tinyllama-1.1b-chat"
MAX_CHARS = 400


def _on_change(entry: ModelEntry) -> None:
    if isinstance(entry.state, Downloading):
        print(f"\r{entry.descriptor.name}: {entry.state.progress:.0%}", end="", flush=True)


async def run(question: str) -> None:
    controller = LifecycleController.from_config(load_config())
    controller.add_listener(_on_change)
    try:
        if not controller.entry(MODEL_ID).is_downloaded:
            state = await controller.download(MODEL_ID)
            print()
            if isinstance(state, Failed):
                print(f"Download failed: {state.message}")
                return

        if not await controller.select(MODEL_ID):
            print("Model failed to load")
            return

        produced = 0
        async for piece in controller.generate([ConversationTurn.user(question)]):
            print(piece, end="", flush=True)
            produced += len(piece)
            if produced >= MAX_CHARS:
                controller.stop()
        print()
    finally:
        await controller.shutdown()


def main() -> None:
    if len(sys.argv) < 2:
        print('Usage: python examples/stream_chat.py "<question>"')
        sys.exit(1)
    asyncio.run(run(" ".join(sys.argv[1:])))


if __name__ == "__main__":
    main()
