"""Streaming inference over one loaded model handle."""

from __future__ import annotations

import asyncio
import logging
import threading
from collections.abc import AsyncIterator, Callable, Sequence
from pathlib import Path
from typing import TYPE_CHECKING

from chatllm.errors import GenerationFault, LoadError
from chatllm.inference.prompt import ConversationTurn, build_prompt

if TYPE_CHECKING:
    from chatllm.core.protocols import HandleFactory, InferenceHandle

logger = logging.getLogger(__name__)

_END = object()

NO_MODEL_MESSAGE = "No model selected."
CLOSED_MESSAGE = "Model is not loaded."


class CancellationToken:
    """Cooperative stop flag shared between a caller and one generation.

    Callbacks registered with ``add_callback`` run exactly once, on the first
    ``cancel()``; registering after cancellation runs the callback immediately.
    """

    def __init__(self) -> None:
        self._event = threading.Event()
        self._lock = threading.Lock()
        self._callbacks: list[Callable[[], None]] = []

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def add_callback(self, callback: Callable[[], None]) -> None:
        with self._lock:
            if not self._event.is_set():
                self._callbacks.append(callback)
                return
        callback()

    def cancel(self) -> None:
        with self._lock:
            if self._event.is_set():
                return
            self._event.set()
            callbacks, self._callbacks = self._callbacks, []
        for callback in callbacks:
            try:
                callback()
            except Exception:
                logger.exception("Cancellation callback failed")


class InferenceSession:
    """Own one loaded model handle and drive one generation at a time.

    The session keeps its handle warm across turns: callers pass the full
    conversation to every ``generate`` call and the handle is reset before
    each run. Generations on one session are serialized.

    Args:
        handle: Loaded inference handle, owned exclusively by this session.
        model_path: File the handle was loaded from.
        system_prompt: Optional system instructions prepended to every prompt.
    """

    def __init__(
        self,
        handle: InferenceHandle,
        model_path: Path,
        system_prompt: str | None = None,
    ) -> None:
        self._handle = handle
        self._model_path = model_path
        self._system_prompt = system_prompt
        self._lock = asyncio.Lock()
        self._cancel: CancellationToken | None = None
        self._worker: asyncio.Task[None] | None = None
        self._closed = False

    @classmethod
    async def open(
        cls,
        path: Path,
        factory: HandleFactory,
        system_prompt: str | None = None,
    ) -> InferenceSession:
        """Load ``path`` through ``factory`` in a worker thread.

        Raises:
            LoadError: The file is missing or the factory failed.
        """
        if not path.is_file():
            raise LoadError(path, "file not found")
        try:
            handle = await asyncio.to_thread(factory, path)
        except Exception as exc:
            raise LoadError(path, str(exc) or type(exc).__name__) from exc
        if handle is None:
            raise LoadError(path, "inference engine returned no handle")
        return cls(handle, path, system_prompt)

    @property
    def model_path(self) -> Path:
        return self._model_path

    @property
    def is_generating(self) -> bool:
        return self._worker is not None and not self._worker.done()

    @property
    def closed(self) -> bool:
        return self._closed

    def stop(self) -> None:
        """Ask the current generation to end. Safe to call repeatedly."""
        if self._cancel is not None:
            self._cancel.cancel()

    async def generate(
        self,
        turns: Sequence[ConversationTurn],
        cancel: CancellationToken | None = None,
    ) -> AsyncIterator[str]:
        """Stream text increments for the next assistant turn.

        The stream ends when the model completes, when ``cancel`` (or
        ``stop()``) fires, or after an engine error. Errors that occur before
        any text was produced are reported as a single text increment.
        """
        async with self._lock:
            if self._closed:
                yield CLOSED_MESSAGE
                return
            try:
                prompt = build_prompt(turns, self._system_prompt)
            except ValueError as exc:
                yield f"Generation failed: {exc}"
                return

            # A stopped run may still be unwinding inside the engine.
            if self._worker is not None and not self._worker.done():
                await asyncio.wait([self._worker])

            token = cancel if cancel is not None else CancellationToken()
            self._cancel = token
            loop = asyncio.get_running_loop()
            queue: asyncio.Queue[object] = asyncio.Queue()

            def on_token(text: str) -> bool:
                if token.cancelled:
                    return False
                loop.call_soon_threadsafe(queue.put_nowait, text)
                return True

            token.add_callback(self._handle.stop)
            token.add_callback(lambda: loop.call_soon_threadsafe(queue.put_nowait, _END))

            worker = asyncio.ensure_future(asyncio.to_thread(self._run, prompt, on_token))
            worker.add_done_callback(_retrieve_exception)
            worker.add_done_callback(lambda _: queue.put_nowait(_END))
            self._worker = worker

            produced = 0
            try:
                while True:
                    item = await queue.get()
                    if item is _END or token.cancelled:
                        break
                    produced += 1
                    yield item  # type: ignore[misc]

                if worker.done() and not worker.cancelled() and worker.exception() is not None:
                    exc = worker.exception()
                    logger.error("Generation failed after %d increments: %s", produced, exc)
                    if produced == 0:
                        yield f"Generation failed: {exc}"
            finally:
                if not worker.done():
                    token.cancel()

    async def respond(self, turns: Sequence[ConversationTurn]) -> str:
        """Run a generation to completion and return the trimmed text."""
        pieces = [piece async for piece in self.generate(turns)]
        return "".join(pieces).strip()

    async def close(self) -> None:
        """Stop any generation and release the handle."""
        if self._closed:
            return
        self._closed = True
        self.stop()
        if self._worker is not None and not self._worker.done():
            await asyncio.wait([self._worker])
        try:
            self._handle.close()
        except Exception:
            logger.exception("Error closing inference handle for %s", self._model_path)
        logger.debug("Closed inference session for %s", self._model_path)

    def _run(self, prompt: str, on_token: Callable[[str], bool]) -> None:
        try:
            self._handle.reset()
            self._handle.respond(prompt, on_token)
        except Exception as exc:
            raise GenerationFault(str(exc) or type(exc).__name__) from exc


def _retrieve_exception(future: asyncio.Future[None]) -> None:
    if not future.cancelled():
        future.exception()
