"""Streaming HTTP download of model weight files.

A download hands its data through three owners before the caller sees it:

- transport-owned: the body is streamed into a scratch directory that is
  removed as soon as the transfer context exits;
- manager-owned: before that exit the file is moved into the staging
  directory, where it survives until the caller acts on it;
- caller-owned: the caller commits the staged file through ``ModelStore``.
"""

from __future__ import annotations

import asyncio
import logging
import shutil
import tempfile
import uuid
from pathlib import Path
from typing import TYPE_CHECKING

import httpx

from chatllm.errors import DownloadCancelled, DownloadError

if TYPE_CHECKING:
    from collections.abc import AsyncIterator

    from chatllm.catalog import ModelDescriptor
    from chatllm.config import ChatLLMConfig

logger = logging.getLogger(__name__)

DEFAULT_USER_AGENT = "Mozilla/5.0"


class DownloadJob:
    """One in-flight transfer: a progress channel plus a result future.

    ``progress()`` is meant for a single consumer. It ends once the transfer
    finishes, fails, or is cancelled; ``result()`` then returns the staged
    file or raises ``DownloadError``.
    """

    def __init__(self, descriptor: ModelDescriptor) -> None:
        self.descriptor = descriptor
        self._updates: asyncio.Queue[float | None] = asyncio.Queue()
        self._task: asyncio.Task[Path] | None = None

    @property
    def task(self) -> asyncio.Task[Path]:
        if self._task is None:
            raise RuntimeError("DownloadJob has not been started")
        return self._task

    def done(self) -> bool:
        return self._task is not None and self._task.done()

    def cancel(self) -> bool:
        """Request cancellation; ``result()`` will raise ``DownloadCancelled``."""
        if self._task is None or self._task.done():
            return False
        return self._task.cancel()

    async def progress(self) -> AsyncIterator[float]:
        """Yield progress fractions in non-decreasing order until the transfer ends."""
        while True:
            value = await self._updates.get()
            if value is None:
                return
            yield value

    async def result(self) -> Path:
        """Wait for the transfer and return the manager-owned staged file.

        Raises:
            DownloadError: Transport, HTTP status, or disk failure.
            DownloadCancelled: The job was cancelled.
        """
        try:
            return await self.task
        except asyncio.CancelledError:
            if self.task.cancelled():
                raise DownloadCancelled("Download cancelled") from None
            raise

    def _publish(self, value: float | None) -> None:
        self._updates.put_nowait(value)


class DownloadManager:
    """Run model downloads, at most one per descriptor id.

    Starting a download for an id that already has an active job returns
    that job. Jobs for distinct ids run concurrently.

    Args:
        staging_dir: Manager-owned directory holding completed transfers
            until the caller commits them.
        user_agent: Browser-style user agent; some hosts reject default
            client identifiers.
        timeout: Per-operation network timeout in seconds.
        connect_timeout: Connection timeout in seconds.
        progress_step: Minimum progress increase between two emissions.
        transport: Optional httpx transport (tests inject ``MockTransport``).
    """

    def __init__(
        self,
        staging_dir: Path,
        user_agent: str = DEFAULT_USER_AGENT,
        timeout: float = 60.0,
        connect_timeout: float = 10.0,
        progress_step: float = 0.01,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._staging_dir = staging_dir
        self._user_agent = user_agent
        self._timeout = timeout
        self._connect_timeout = connect_timeout
        self._progress_step = progress_step
        self._transport = transport
        self._client: httpx.AsyncClient | None = None
        self._jobs: dict[str, DownloadJob] = {}

    @classmethod
    def from_config(cls, config: ChatLLMConfig) -> DownloadManager:
        return cls(
            staging_dir=config.staging_dir,
            user_agent=config.download.user_agent,
            timeout=config.download.timeout_seconds,
            connect_timeout=config.download.connect_timeout_seconds,
            progress_step=config.download.progress_step,
        )

    @property
    def client(self) -> httpx.AsyncClient:
        """Lazily created shared HTTP client."""
        if self._client is None:
            self._client = httpx.AsyncClient(
                transport=self._transport,
                timeout=httpx.Timeout(self._timeout, connect=self._connect_timeout),
                follow_redirects=True,
                headers={"User-Agent": self._user_agent, "Accept-Encoding": "identity"},
            )
        return self._client

    async def aclose(self) -> None:
        """Cancel active jobs and close the HTTP client."""
        for job in list(self._jobs.values()):
            job.cancel()
        if self._jobs:
            await asyncio.gather(*(j.task for j in self._jobs.values()), return_exceptions=True)
        if self._client is not None:
            await self._client.aclose()
            self._client = None

    # -- Job registry -----------------------------------------------------------

    def start(self, descriptor: ModelDescriptor) -> DownloadJob:
        """Start downloading ``descriptor`` or return its already active job."""
        existing = self._jobs.get(descriptor.id)
        if existing is not None and not existing.done():
            logger.info("Download of %s already in progress; joining it", descriptor.id)
            return existing

        job = DownloadJob(descriptor)
        job._task = asyncio.create_task(self._run(job), name=f"download-{descriptor.id}")
        self._jobs[descriptor.id] = job
        job._task.add_done_callback(lambda _: self._finish(job))
        logger.info("Downloading %s from %s", descriptor.filename, descriptor.url)
        return job

    def get(self, model_id: str) -> DownloadJob | None:
        return self._jobs.get(model_id)

    def is_active(self, model_id: str) -> bool:
        job = self._jobs.get(model_id)
        return job is not None and not job.done()

    def cancel(self, model_id: str) -> bool:
        job = self._jobs.get(model_id)
        return job.cancel() if job is not None else False

    def _finish(self, job: DownloadJob) -> None:
        # A task cancelled before it ever ran never reaches _run's finally.
        job._publish(None)
        if self._jobs.get(job.descriptor.id) is job:
            del self._jobs[job.descriptor.id]

    # -- Transfer ---------------------------------------------------------------

    async def _run(self, job: DownloadJob) -> Path:
        url = job.descriptor.url
        try:
            return await self._transfer(job)
        except asyncio.CancelledError:
            logger.info("Download of %s cancelled", job.descriptor.id)
            raise DownloadCancelled("Download cancelled") from None
        except httpx.HTTPStatusError as exc:
            raise DownloadError(
                f"Server returned HTTP {exc.response.status_code} for {url}"
            ) from exc
        except httpx.TimeoutException as exc:
            raise DownloadError(f"Timed out downloading {url}") from exc
        except httpx.HTTPError as exc:
            raise DownloadError(f"Network error downloading {url}: {exc}") from exc
        except OSError as exc:
            raise DownloadError(f"Could not write download to disk: {exc}") from exc
        finally:
            job._publish(None)

    async def _transfer(self, job: DownloadJob) -> Path:
        descriptor = job.descriptor
        self._staging_dir.mkdir(parents=True, exist_ok=True)
        staged = self._staging_dir / f"{uuid.uuid4().hex}.download"

        try:
            with tempfile.TemporaryDirectory(prefix="chatllm-") as scratch:
                scratch_file = Path(scratch) / descriptor.filename
                async with self.client.stream("GET", descriptor.url) as resp:
                    resp.raise_for_status()
                    expected = _content_length(resp.headers)
                    received = await self._stream_body(job, resp, scratch_file, expected)

                if expected > 0 and received != expected:
                    raise DownloadError(
                        f"Incomplete download: received {received} of {expected} bytes"
                    )
                shutil.move(scratch_file, staged)
        except BaseException:
            staged.unlink(missing_ok=True)
            raise

        logger.info("Downloaded %s (%d bytes)", descriptor.filename, staged.stat().st_size)
        return staged

    async def _stream_body(
        self,
        job: DownloadJob,
        resp: httpx.Response,
        dest: Path,
        expected: int,
    ) -> int:
        received = 0
        last = 0.0
        with open(dest, "wb") as f:
            async for chunk in resp.aiter_raw():
                f.write(chunk)
                received += len(chunk)
                if expected <= 0:
                    continue
                fraction = min(received / expected, 1.0)
                if fraction > last and (fraction >= 1.0 or fraction - last >= self._progress_step):
                    job._publish(fraction)
                    last = fraction
        return received


def _content_length(headers: httpx.Headers) -> int:
    try:
        return max(int(headers.get("content-length", 0)), 0)
    except (TypeError, ValueError):
        return 0
