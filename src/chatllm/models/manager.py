"""Model lifecycle management: download state, selection, and the active session.

The controller owns the state table for every catalog model, persists which
model is selected, and decides which model file backs the active
``InferenceSession``. All transitions run on the event loop; filesystem work
and model construction are pushed to worker threads.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import AsyncIterator, Callable, Iterable, Sequence
from pathlib import Path
from typing import TYPE_CHECKING

import psutil

from chatllm.errors import DownloadCancelled, DownloadError, LoadError, StoreError
from chatllm.inference.session import NO_MODEL_MESSAGE, CancellationToken, InferenceSession
from chatllm.models.state import (
    Downloaded,
    Downloading,
    DownloadState,
    Failed,
    ModelEntry,
    NotDownloaded,
)
from chatllm.preferences import SELECTED_MODEL_KEY

if TYPE_CHECKING:
    from chatllm.catalog import ModelDescriptor
    from chatllm.config import ChatLLMConfig
    from chatllm.core.protocols import HandleFactory, KeyValueStore
    from chatllm.inference.prompt import ConversationTurn
    from chatllm.models.download import DownloadManager
    from chatllm.store import ModelStore

logger = logging.getLogger(__name__)

Listener = Callable[[ModelEntry], None]

DEFAULT_MODEL_NAME = "AI"


class LifecycleController:
    """Owns per-model download state, the selection, and the loaded model.

    Transitions for one model id are serialized; distinct ids proceed in
    parallel. At most one entry is selected, and only a ``Downloaded`` one.

    Args:
        catalog: Ordered model descriptors.
        store: Filesystem placement of model files.
        downloader: Network transfer manager.
        preferences: Durable settings holding the selected filename.
        handle_factory: Builds an inference handle from a model file.
        system_prompt: Instructions prepended to every prompt.
    """

    def __init__(
        self,
        catalog: Iterable[ModelDescriptor],
        store: ModelStore,
        downloader: DownloadManager,
        preferences: KeyValueStore,
        handle_factory: HandleFactory,
        system_prompt: str | None = None,
    ) -> None:
        self._entries: dict[str, ModelEntry] = {d.id: ModelEntry(d) for d in catalog}
        self._store = store
        self._downloader = downloader
        self._preferences = preferences
        self._handle_factory = handle_factory
        self._system_prompt = system_prompt

        self._locks: dict[str, asyncio.Lock] = {}
        self._load_lock = asyncio.Lock()
        self._tasks: dict[str, asyncio.Task[DownloadState]] = {}
        self._listeners: list[Listener] = []

        self._session: InferenceSession | None = None
        self._loading_id: str | None = None
        self._is_model_loading = False
        self._is_model_ready = False

        self._seed_states()

    @classmethod
    def from_config(
        cls,
        config: ChatLLMConfig,
        handle_factory: HandleFactory | None = None,
    ) -> LifecycleController:
        """Wire the default store, downloader, settings file, and llama engine."""
        from chatllm.inference.llama import llama_factory
        from chatllm.models.download import DownloadManager
        from chatllm.preferences import JsonKeyValueStore
        from chatllm.store import ModelStore

        return cls(
            catalog=config.models,
            store=ModelStore(config.models_dir),
            downloader=DownloadManager.from_config(config),
            preferences=JsonKeyValueStore(config.settings_path),
            handle_factory=handle_factory or llama_factory(config.inference),
            system_prompt=config.inference.system_prompt or None,
        )

    # ------------------------------------------------------------------
    # Read-only accessors
    # ------------------------------------------------------------------

    @property
    def entries(self) -> list[ModelEntry]:
        return list(self._entries.values())

    def entry(self, model_id: str) -> ModelEntry:
        """Return the entry for ``model_id``.

        Raises:
            KeyError: Unknown model id.
        """
        try:
            return self._entries[model_id]
        except KeyError:
            raise KeyError(f"Unknown model id: {model_id}") from None

    @property
    def session(self) -> InferenceSession | None:
        return self._session

    @property
    def is_model_loading(self) -> bool:
        return self._is_model_loading

    @property
    def is_model_ready(self) -> bool:
        return self._is_model_ready

    @property
    def selected_entry(self) -> ModelEntry | None:
        return next((e for e in self._entries.values() if e.is_selected), None)

    @property
    def current_model_name(self) -> str:
        selected = self.selected_entry
        return selected.descriptor.name if selected is not None else DEFAULT_MODEL_NAME

    def add_listener(self, listener: Listener) -> Callable[[], None]:
        """Subscribe to entry changes. Returns a function that unsubscribes."""
        self._listeners.append(listener)
        return lambda: self._listeners.remove(listener)

    # ------------------------------------------------------------------
    # Startup
    # ------------------------------------------------------------------

    def _seed_states(self) -> None:
        for entry in self._entries.values():
            filename = entry.descriptor.filename
            if self._store.exists(filename):
                entry.state = Downloaded(self._store.resolve_path(filename))

    async def startup(self) -> bool:
        """Reload the persisted selection if its file is still on disk.

        A selection whose model is gone from the catalog or the disk is
        cleared.
        """
        filename = self._preferences.get(SELECTED_MODEL_KEY)
        if filename is None:
            return False

        entry = self._entry_for_filename(filename)
        if entry is None or not self._store.exists(filename):
            logger.warning("Selected model %s is no longer available; clearing selection", filename)
            self._preferences.clear(SELECTED_MODEL_KEY)
            return False

        if not entry.is_downloaded:
            self._set_state(entry, Downloaded(self._store.resolve_path(filename)))
        return await self.load(entry.id)

    # ------------------------------------------------------------------
    # Download
    # ------------------------------------------------------------------

    async def download(self, model_id: str) -> DownloadState:
        """Download a model and commit it to the store.

        Rejected (state unchanged) while the model is already downloading,
        being loaded, or is the selected model.

        Returns:
            The entry's state after the attempt.
        """
        entry = self.entry(model_id)
        if not self._can_download(entry):
            return entry.state

        async with self._lock_for(model_id):
            if not self._can_download(entry):
                return entry.state

            previous = entry.state
            self._set_state(entry, Downloading(0.0))
            job = self._downloader.start(entry.descriptor)

            try:
                async for fraction in job.progress():
                    self._set_state(entry, Downloading(fraction))
                staged = await job.result()
            except asyncio.CancelledError:
                job.cancel()
                self._set_state(entry, previous)
                raise
            except DownloadCancelled:
                logger.info("Download of %s cancelled", model_id)
                self._set_state(entry, previous)
                return entry.state
            except DownloadError as exc:
                logger.error("Download of %s failed: %s", model_id, exc)
                self._set_state(entry, Failed(str(exc)))
                return entry.state

            try:
                path = await asyncio.to_thread(
                    self._store.commit, staged, entry.descriptor.filename
                )
            except StoreError as exc:
                logger.error("Could not store %s: %s", model_id, exc)
                staged.unlink(missing_ok=True)
                self._set_state(entry, Failed(str(exc)))
                return entry.state

            self._set_state(entry, Downloaded(path))
            return entry.state

    def start_download(self, model_id: str) -> asyncio.Task[DownloadState]:
        """Run ``download`` in the background, returning the existing task if one is active."""
        self.entry(model_id)
        task = self._tasks.get(model_id)
        if task is not None and not task.done():
            return task

        task = asyncio.create_task(self.download(model_id), name=f"download-{model_id}")
        self._tasks[model_id] = task

        def _forget(done: asyncio.Task[DownloadState]) -> None:
            if self._tasks.get(model_id) is done:
                del self._tasks[model_id]

        task.add_done_callback(_forget)
        return task

    def cancel_download(self, model_id: str) -> bool:
        """Cancel an in-flight download. The entry reverts to its prior state."""
        self.entry(model_id)
        return self._downloader.cancel(model_id)

    def _can_download(self, entry: ModelEntry) -> bool:
        if entry.is_downloading:
            logger.info("Download of %s already in progress", entry.id)
            return False
        if self._loading_id == entry.id:
            logger.warning("Refusing to download %s while it is being loaded", entry.id)
            return False
        if entry.is_selected:
            logger.warning("Refusing to overwrite %s while it is the active model", entry.id)
            return False
        return True

    # ------------------------------------------------------------------
    # Delete
    # ------------------------------------------------------------------

    async def delete(self, model_id: str) -> bool:
        """Remove a downloaded model file and reset its entry.

        Deleting the selected model also clears the persisted selection and
        closes the active session.

        Returns:
            False if the entry was not ``Downloaded``. A delete issued while
            the same model is loading waits for the load to finish.

        Raises:
            StoreError: The file could not be removed; the entry stays
                ``Downloaded``.
        """
        entry = self.entry(model_id)
        if not entry.is_downloaded:
            return False

        async with self._lock_for(model_id):
            if not isinstance(entry.state, Downloaded):
                return False
            path = entry.state.path
            filename = entry.descriptor.filename
            try:
                await asyncio.to_thread(self._store.delete, filename)
            except StoreError as exc:
                logger.error("Error deleting model %s: %s", model_id, exc)
                raise

            entry.is_selected = False
            self._set_state(entry, NotDownloaded())

            persisted = self._preferences.get(SELECTED_MODEL_KEY) == filename
            if persisted:
                self._preferences.clear(SELECTED_MODEL_KEY)
            if persisted or (self._session is not None and self._session.model_path == path):
                await self._discard_session()
            return True

    # ------------------------------------------------------------------
    # Load / select
    # ------------------------------------------------------------------

    async def load(self, model_id: str) -> bool:
        """Load a downloaded model into a new session and make it the selection.

        A no-op returning False when the entry is not ``Downloaded``. On load
        failure the previous session is discarded and nothing is selected.

        Holds the load lock and then the per-id lock, so a concurrent
        ``delete`` or ``download`` of the same model waits for the load.
        """
        entry = self.entry(model_id)
        if not entry.is_downloaded:
            logger.info("Cannot select %s: not downloaded", model_id)
            return False

        async with self._load_lock, self._lock_for(model_id):
            if not isinstance(entry.state, Downloaded):
                return False
            path = entry.state.path

            self._loading_id = model_id
            self._is_model_loading = True
            self._is_model_ready = False
            self._notify(entry)
            try:
                self._warn_if_low_memory(path)
                session = await InferenceSession.open(
                    path, self._handle_factory, self._system_prompt
                )
                if not isinstance(entry.state, Downloaded) or not path.is_file():
                    await session.close()
                    raise LoadError(path, "model file was removed during load")
            except LoadError as exc:
                logger.error("%s", exc)
                await self._discard_session()
                self._set_selection(None)
                return False
            finally:
                self._loading_id = None
                self._is_model_loading = False

            previous, self._session = self._session, session
            if previous is not None:
                await previous.close()
            self._set_selection(entry)
            self._preferences.set(SELECTED_MODEL_KEY, entry.descriptor.filename)
            self._is_model_ready = True
            self._notify(entry)
            logger.info("Model %s ready", entry.descriptor.name)
            return True

    select = load

    def _warn_if_low_memory(self, path: Path) -> None:
        try:
            needed = path.stat().st_size
        except OSError:
            return
        available = psutil.virtual_memory().available
        if needed > available:
            logger.warning(
                "Low memory: model %s needs ~%.1fGB, %.1fGB available. "
                "Loading may be slow or fail.",
                path.name,
                needed / (1024**3),
                available / (1024**3),
            )

    # ------------------------------------------------------------------
    # Generation
    # ------------------------------------------------------------------

    async def generate(
        self,
        turns: Sequence[ConversationTurn],
        cancel: CancellationToken | None = None,
    ) -> AsyncIterator[str]:
        """Stream the active model's reply; a single notice when none is ready."""
        session = self._session if self._is_model_ready else None
        if session is None:
            yield NO_MODEL_MESSAGE
            return
        async for piece in session.generate(turns, cancel):
            yield piece

    async def respond(self, turns: Sequence[ConversationTurn]) -> str:
        session = self._session if self._is_model_ready else None
        if session is None:
            return NO_MODEL_MESSAGE
        return await session.respond(turns)

    def stop(self) -> None:
        """Stop the active generation, if any."""
        if self._session is not None:
            self._session.stop()

    # ------------------------------------------------------------------
    # Teardown
    # ------------------------------------------------------------------

    async def shutdown(self) -> None:
        """Cancel downloads, close the HTTP client, and release the model."""
        for task in list(self._tasks.values()):
            task.cancel()
        await self._downloader.aclose()
        if self._tasks:
            await asyncio.gather(*self._tasks.values(), return_exceptions=True)
        await self._discard_session()

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _lock_for(self, model_id: str) -> asyncio.Lock:
        lock = self._locks.get(model_id)
        if lock is None:
            lock = self._locks[model_id] = asyncio.Lock()
        return lock

    def _entry_for_filename(self, filename: str) -> ModelEntry | None:
        return next(
            (e for e in self._entries.values() if e.descriptor.filename == filename), None
        )

    def _set_state(self, entry: ModelEntry, state: DownloadState) -> None:
        entry.state = state
        self._notify(entry)

    def _set_selection(self, selected: ModelEntry | None) -> None:
        for entry in self._entries.values():
            is_selected = entry is selected
            if entry.is_selected != is_selected:
                entry.is_selected = is_selected
                self._notify(entry)

    async def _discard_session(self) -> None:
        session, self._session = self._session, None
        self._is_model_ready = False
        if session is not None:
            await session.close()

    def _notify(self, entry: ModelEntry) -> None:
        for listener in list(self._listeners):
            try:
                listener(entry)
            except Exception:
                logger.exception("Listener failed for %s", entry.id)
