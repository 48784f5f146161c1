"""llama-cpp-python backed inference handle."""

from __future__ import annotations

import logging
import threading
from collections.abc import Callable
from dataclasses import dataclass
from pathlib import Path
from typing import TYPE_CHECKING, Any

from chatllm.inference.prompt import STOP_SEQUENCES

if TYPE_CHECKING:
    from chatllm.config import InferenceConfig

logger = logging.getLogger(__name__)


def _ensure_llama() -> Any:
    """Import llama_cpp with a clear error if not installed."""
    try:
        from llama_cpp import Llama

        return Llama
    except ImportError:
        raise RuntimeError(
            "llama-cpp-python is not installed. Install engine extras: uv add 'chatllm[llama]'"
        ) from None


@dataclass(frozen=True, slots=True)
class SamplingOptions:
    """Per-generation sampling parameters."""

    max_tokens: int = 512
    temperature: float = 0.7
    top_p: float = 0.9
    top_k: int = 40
    repeat_penalty: float = 1.1
    stop: tuple[str, ...] = STOP_SEQUENCES

    def to_dict(self) -> dict[str, Any]:
        """Convert to ``Llama.create_completion`` keyword arguments."""
        return {
            "max_tokens": self.max_tokens,
            "temperature": self.temperature,
            "top_p": self.top_p,
            "top_k": self.top_k,
            "repeat_penalty": self.repeat_penalty,
            "stop": list(self.stop),
        }


class LlamaHandle:
    """Inference handle over a ``llama_cpp.Llama`` instance.

    ``respond`` streams completion chunks and forwards their text to the
    callback until the model finishes, the callback declines more text, or
    ``stop`` is called from another thread.
    """

    def __init__(self, llm: Any, options: SamplingOptions | None = None) -> None:
        self._llm = llm
        self._options = options or SamplingOptions()
        self._stop = threading.Event()

    def respond(self, prompt: str, on_token: Callable[[str], bool]) -> None:
        if self._llm is None:
            raise RuntimeError("Llama handle is closed")
        self._stop.clear()
        stream = self._llm.create_completion(prompt, stream=True, **self._options.to_dict())
        try:
            for chunk in stream:
                if self._stop.is_set():
                    break
                text = chunk["choices"][0].get("text", "")
                if text and not on_token(text):
                    break
        finally:
            close = getattr(stream, "close", None)
            if close is not None:
                close()

    def stop(self) -> None:
        self._stop.set()

    def reset(self) -> None:
        self._stop.clear()
        if self._llm is not None:
            self._llm.reset()

    def close(self) -> None:
        llm, self._llm = self._llm, None
        if llm is not None and hasattr(llm, "close"):
            llm.close()


def load_llama(path: Path, config: InferenceConfig) -> LlamaHandle:
    """Handle factory: load a GGUF file into a ``LlamaHandle``."""
    llama_cls = _ensure_llama()
    logger.info(
        "Loading model %s (n_ctx=%d, threads=%d)", path.name, config.n_ctx, config.n_threads
    )
    llm = llama_cls(
        model_path=str(path),
        n_ctx=config.n_ctx,
        n_threads=config.n_threads,
        n_gpu_layers=config.n_gpu_layers,
        verbose=False,
    )
    options = SamplingOptions(
        max_tokens=config.max_tokens,
        temperature=config.temperature,
        top_p=config.top_p,
        top_k=config.top_k,
        repeat_penalty=config.repeat_penalty,
    )
    return LlamaHandle(llm, options)


def llama_factory(config: InferenceConfig) -> Callable[[Path], LlamaHandle]:
    """Bind ``load_llama`` to an inference config."""

    def factory(path: Path) -> LlamaHandle:
        return load_llama(path, config)

    return factory
