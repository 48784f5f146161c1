"""Tests for InferenceSession streaming and cancellation."""

from __future__ import annotations

import asyncio
import threading
from pathlib import Path

import pytest
from conftest import FakeFactory, FakeHandle

from chatllm.errors import LoadError
from chatllm.inference.prompt import ConversationTurn
from chatllm.inference.session import CLOSED_MESSAGE, CancellationToken, InferenceSession

HI = [ConversationTurn.user("hi")]


@pytest.fixture
def model_file(tmp_path: Path) -> Path:
    path = tmp_path / "m1.bin"
    path.write_bytes(b"GGUF")
    return path


def _session(handle: FakeHandle, path: Path = Path("m1.bin")) -> InferenceSession:
    return InferenceSession(handle, path)


# ---------------------------------------------------------------------------
# Opening
# ---------------------------------------------------------------------------


class TestOpen:
    """Loading a handle from a file."""

    async def test_open(self, model_file: Path) -> None:
        factory = FakeFactory()
        session = await InferenceSession.open(model_file, factory, "Be brief.")

        assert factory.loaded == [model_file]
        assert session.model_path == model_file
        await session.close()

    async def test_missing_file(self, tmp_path: Path) -> None:
        with pytest.raises(LoadError, match="file not found"):
            await InferenceSession.open(tmp_path / "gone.bin", FakeFactory())

    async def test_factory_failure(self, model_file: Path) -> None:
        factory = FakeFactory()
        factory.fail_with = ValueError("unsupported architecture")

        with pytest.raises(LoadError, match="unsupported architecture") as exc_info:
            await InferenceSession.open(model_file, factory)
        assert exc_info.value.path == model_file

    async def test_factory_returns_none(self, model_file: Path) -> None:
        def factory(_path: Path) -> None:
            return None

        with pytest.raises(LoadError, match="no handle"):
            await InferenceSession.open(model_file, factory)  # type: ignore[arg-type]


# ---------------------------------------------------------------------------
# Streaming
# ---------------------------------------------------------------------------


class TestGenerate:
    """Increments arrive in order."""

    async def test_streams_increments(self) -> None:
        handle = FakeHandle(["He", "llo"])
        session = _session(handle)

        pieces = [p async for p in session.generate(HI)]

        assert pieces == ["He", "llo"]
        assert handle.prompts == ["<|user|>\nhi\n<|assistant|>\n"]
        assert handle.resets == 1
        await session.close()

    async def test_respond_trims(self) -> None:
        session = _session(FakeHandle([" Hel", "lo \n"]))
        assert await session.respond(HI) == "Hello"
        await session.close()

    async def test_handle_reset_every_run(self) -> None:
        handle = FakeHandle(["ok"])
        session = _session(handle)

        await session.respond(HI)
        await session.respond([*HI, ConversationTurn.assistant("ok"), *HI])

        assert handle.resets == 2
        assert handle.prompts[1].count("<|user|>") == 2
        await session.close()

    async def test_empty_reply(self) -> None:
        session = _session(FakeHandle([]))
        assert [p async for p in session.generate(HI)] == []
        await session.close()

    async def test_empty_turns_reported_in_band(self) -> None:
        session = _session(FakeHandle())
        pieces = [p async for p in session.generate([])]
        assert len(pieces) == 1
        assert pieces[0].startswith("Generation failed:")
        await session.close()

    async def test_generations_are_serialized(self) -> None:
        session = _session(FakeHandle(["a", "b"]))

        first, second = await asyncio.gather(session.respond(HI), session.respond(HI))

        assert first == second == "ab"
        await session.close()


# ---------------------------------------------------------------------------
# Errors
# ---------------------------------------------------------------------------


class TestErrors:
    """Engine failures end the stream."""

    async def test_error_before_output_reported(self) -> None:
        session = _session(FakeHandle(["x"], error=RuntimeError("context overflow")))

        pieces = [p async for p in session.generate(HI)]

        assert pieces == ["Generation failed: context overflow"]
        await session.close()

    async def test_error_after_output_ends_stream(self) -> None:
        session = _session(FakeHandle(["a", "b", "c"], error=RuntimeError("boom"), error_after=2))

        pieces = [p async for p in session.generate(HI)]

        assert pieces == ["a", "b"]
        await session.close()

    async def test_session_usable_after_error(self) -> None:
        handle = FakeHandle(["x"], error=RuntimeError("boom"))
        session = _session(handle)
        await session.respond(HI)

        handle.error = None
        assert await session.respond(HI) == "x"
        await session.close()


# ---------------------------------------------------------------------------
# Cancellation
# ---------------------------------------------------------------------------


class TestCancellation:
    """stop() and CancellationToken."""

    async def test_stop_after_first_increment(self) -> None:
        handle = FakeHandle(["a", "b", "c"], gate=threading.Event())
        session = _session(handle)

        pieces: list[str] = []
        async for piece in session.generate(HI):
            pieces.append(piece)
            session.stop()

        assert pieces == ["a"]
        await session.close()

    async def test_external_token(self) -> None:
        handle = FakeHandle(["a", "b", "c"], gate=threading.Event())
        session = _session(handle)
        token = CancellationToken()

        pieces: list[str] = []
        async for piece in session.generate(HI, cancel=token):
            pieces.append(piece)
            token.cancel()

        assert pieces == ["a"]
        await session.close()

    async def test_pre_cancelled_token_yields_nothing(self) -> None:
        session = _session(FakeHandle(["a", "b"]))
        token = CancellationToken()
        token.cancel()

        assert [p async for p in session.generate(HI, cancel=token)] == []
        await session.close()

    async def test_stop_when_idle_is_harmless(self) -> None:
        session = _session(FakeHandle(["a"]))
        session.stop()
        session.stop()
        assert await session.respond(HI) == "a"
        await session.close()

    async def test_abandoned_iterator_stops_handle(self) -> None:
        handle = FakeHandle(["a", "b", "c"], gate=threading.Event())
        session = _session(handle)

        stream = session.generate(HI)
        assert await stream.__anext__() == "a"
        await stream.aclose()

        # Next generation waits for the stopped run and then proceeds
        handle.gate = None
        assert await session.respond(HI) == "abc"
        await session.close()


class TestCancellationToken:
    def test_callbacks_run_once(self) -> None:
        token = CancellationToken()
        calls: list[int] = []
        token.add_callback(lambda: calls.append(1))

        token.cancel()
        token.cancel()

        assert token.cancelled is True
        assert calls == [1]

    def test_late_callback_runs_immediately(self) -> None:
        token = CancellationToken()
        token.cancel()
        calls: list[int] = []
        token.add_callback(lambda: calls.append(1))
        assert calls == [1]


# ---------------------------------------------------------------------------
# Close
# ---------------------------------------------------------------------------


class TestClose:
    async def test_close_releases_handle(self) -> None:
        handle = FakeHandle()
        session = _session(handle)

        await session.close()
        await session.close()

        assert handle.closed is True
        assert session.closed is True
        assert [p async for p in session.generate(HI)] == [CLOSED_MESSAGE]
