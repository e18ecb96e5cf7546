"""Registry of model handles kept in sync with the configured directories.

Each configured root gets a :class:`DirectoryWatcher`; its "list changed"
events add handles for new files and dispose handles whose file vanished.
The registry also arbitrates accelerator memory: before a model's weights
are loaded it checks the device budget and, when the model does not fit
next to what is resident, unloads every other model first.
"""

from __future__ import annotations

import asyncio
from collections.abc import Callable, Iterable
from pathlib import Path
from typing import Any

from loguru import logger

from ..const import DEFAULT_CONTEXT_LENGTH, DEFAULT_FLASH_ATTENTION, DEFAULT_MODEL_EXTENSION
from ..models.errors import InsufficientMemoryError, ModelNotFoundError
from ..models.llama_cpp import LlamaBackend
from .cancellation import CancellationToken
from .memory import MemoryUsage, query_gpu_memory
from .model_handle import ModelHandle
from .mutex import AsyncMutex
from .watcher import DirectoryWatcher

MemoryProbe = Callable[[], MemoryUsage | None]


def model_id_for(path: str | Path, root: str | Path) -> str:
    """Return the id of ``path``: its location below ``root`` with ``/``."""
    return Path(path).relative_to(Path(root)).as_posix()


class ModelRegistry:
    """Asyncio-safe owner of the live :class:`ModelHandle` set.

    Parameters
    ----------
    model_dirs : Iterable[str | Path]
        Directory roots searched recursively for model files.
    extension : str, optional
        Model file suffix, ``.gguf`` by default.
    context_length : int or None, optional
        Context size passed to every handle.
    flash_attention : bool, optional
        Flash attention preference passed to every handle.
    backend : LlamaBackend or None, optional
        Engine factory shared by all handles.
    memory_probe : Callable[[], MemoryUsage | None], optional
        Returns accelerator memory, or ``None`` when it is unknown.
    debounce_ms : int, optional
        Filesystem event debounce used by the watchers.
    """

    def __init__(
        self,
        model_dirs: Iterable[str | Path],
        *,
        extension: str = DEFAULT_MODEL_EXTENSION,
        context_length: int | None = DEFAULT_CONTEXT_LENGTH,
        flash_attention: bool = DEFAULT_FLASH_ATTENTION,
        backend: LlamaBackend | None = None,
        memory_probe: MemoryProbe = query_gpu_memory,
        debounce_ms: int = 300,
    ) -> None:
        self.roots = [Path(d).expanduser().resolve() for d in model_dirs]
        self.extension = extension
        self.context_length = context_length
        self.flash_attention = flash_attention
        self.backend = backend if backend is not None else LlamaBackend()
        self._memory_probe = memory_probe
        self._debounce_ms = debounce_ms

        self._watchers: list[DirectoryWatcher] = []
        # Absolute path -> handle, and the root each handle was found under
        self._handles: dict[str, ModelHandle] = {}
        self._handle_roots: dict[str, Path] = {}
        self._sync_lock = AsyncMutex(name="model-list")
        # Serializes memory checks with the weight loads that follow them
        self._allocation_lock = AsyncMutex(name="allocation")
        self._started = False

    def __repr__(self) -> str:
        return f"<ModelRegistry roots={len(self.roots)} models={len(self._handles)}>"

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def start(self) -> None:
        """Start one watcher per root and wait for every initial scan.

        Raises
        ------
        FileNotFoundError, NotADirectoryError
            If a root is missing or not a directory. Watchers already
            started are stopped before the error propagates.
        """
        if self._started:
            return
        for root in self.roots:
            watcher = DirectoryWatcher(root, extension=self.extension, debounce_ms=self._debounce_ms)
            watcher.subscribe(self._listener_for(watcher.root))
            try:
                await watcher.start()
            except Exception:
                await self._stop_watchers()
                raise
            self._watchers.append(watcher)
        self._started = True
        logger.info(f"Model registry started with {len(self._handles)} models")

    async def aclose(self) -> None:
        """Stop every watcher and dispose every handle."""
        await self._stop_watchers()
        async with await self._sync_lock.acquire():
            handles = list(self._handles.values())
            self._handles.clear()
            self._handle_roots.clear()
        results = await asyncio.gather(
            *(handle.dispose() for handle in handles), return_exceptions=True
        )
        for handle, result in zip(handles, results, strict=True):
            if isinstance(result, BaseException):
                logger.bind(model=handle.model_id).error(
                    f"Failed to dispose model. {type(result).__name__}: {result}"
                )
        self._started = False
        logger.info("Model registry closed")

    async def _stop_watchers(self) -> None:
        watchers, self._watchers = self._watchers, []
        for watcher in watchers:
            await watcher.stop()

    # ------------------------------------------------------------------
    # Lookup
    # ------------------------------------------------------------------

    def get(self, model_id: str) -> ModelHandle:
        """Return the handle whose id equals ``model_id``.

        Raises
        ------
        ModelNotFoundError
            If no tracked file has that id.
        """
        for handle in self._handles.values():
            if handle.model_id == model_id:
                return handle
        raise ModelNotFoundError(model_id)

    def list_models(self) -> list[ModelHandle]:
        """Return every tracked handle ordered by id."""
        return sorted(self._handles.values(), key=lambda h: h.model_id)

    def __len__(self) -> int:
        return len(self._handles)

    # ------------------------------------------------------------------
    # Memory arbitration
    # ------------------------------------------------------------------

    async def prepare_load(self, handle: ModelHandle) -> None:
        """Make room for ``handle``'s weights.

        Raises
        ------
        InsufficientMemoryError
            If the device can never hold the file. Nothing is evicted.
        """
        async with await self._allocation_lock.acquire():
            await self._prepare_load_locked(handle)

    async def load(self, handle: ModelHandle) -> Any:
        """Make room for ``handle`` and return its resident weights.

        The memory check and the load happen under one allocation lock so
        two requests cannot both decide the same free memory is theirs.
        """
        async with await self._allocation_lock.acquire():
            await self._prepare_load_locked(handle)
            return await handle.load_weights()

    async def create_embedding_context(
        self, handle: ModelHandle, token: CancellationToken
    ) -> Any:
        """Make room for an embedding copy of ``handle`` and create it.

        The embedding context loads the file again, so the handle's own
        generation stages are unloaded first and the memory check then runs
        as for a cold load. The caller must hold ``handle.sequence_lock``.
        """
        async with await self._allocation_lock.acquire():
            if handle.is_loaded:
                logger.bind(model=handle.model_id).info(
                    "Unloading generation stages for an embedding context"
                )
                await handle.unload()
            await self._prepare_load_locked(handle)
            return await handle.create_embedding_context(token)

    async def _prepare_load_locked(self, handle: ModelHandle) -> None:
        log = logger.bind(model=handle.model_id)
        if handle.is_loaded:
            return

        try:
            memory = await asyncio.to_thread(self._memory_probe)
        except Exception as e:
            log.warning(f"Memory probe failed. {type(e).__name__}: {e}")
            memory = None

        if memory is None:
            log.info("Accelerator memory unknown, unloading every resident model")
            await self.free_all(exclude=handle)
            return

        if memory.total < handle.size:
            raise InsufficientMemoryError(handle.model_id, handle.size, memory.total)

        if memory.free < handle.size:
            log.info(
                f"Model needs {handle.size} bytes but {memory.free} are free, "
                "unloading every resident model"
            )
            await self.free_all(exclude=handle)

    async def free_all(self, *, exclude: ModelHandle | None = None) -> None:
        """Unload every resident model in parallel.

        Failures are logged and do not stop the other unloads. Models whose
        sequence is in use are skipped: unloading them would pull weights
        out from under a running generation.
        """
        targets: list[ModelHandle] = []
        for handle in self._handles.values():
            if handle is exclude or not handle.is_loaded:
                continue
            if handle.sequence_lock.locked():
                logger.bind(model=handle.model_id).warning("Model busy, not unloading")
                continue
            targets.append(handle)
        if not targets:
            return

        results = await asyncio.gather(
            *(handle.unload() for handle in targets), return_exceptions=True
        )
        for handle, result in zip(targets, results, strict=True):
            if isinstance(result, BaseException):
                logger.bind(model=handle.model_id).error(
                    f"Failed to unload model. {type(result).__name__}: {result}"
                )

    # ------------------------------------------------------------------
    # Directory sync
    # ------------------------------------------------------------------

    def _listener_for(self, root: Path) -> Callable[[list[str]], Any]:
        async def _listener(paths: list[str]) -> None:
            await self.sync(root, paths)

        return _listener

    async def sync(self, root: str | Path, paths: list[str]) -> None:
        """Reconcile the handles found under ``root`` with ``paths``.

        New paths get a handle; a path whose handle cannot be created is
        logged and retried on the next event. Handles under ``root`` whose
        path is absent are disposed and dropped.
        """
        root = Path(root)
        present = set(paths)
        async with await self._sync_lock.acquire():
            for path in sorted(present):
                if path in self._handles:
                    continue
                model_id = model_id_for(path, root)
                try:
                    handle = await ModelHandle.create(
                        path,
                        model_id,
                        backend=self.backend,
                        context_length=self.context_length,
                        flash_attention=self.flash_attention,
                    )
                except Exception as e:
                    logger.bind(model=model_id).error(
                        f"Failed to track {path}. {type(e).__name__}: {e}"
                    )
                    continue
                self._handles[path] = handle
                self._handle_roots[path] = root
                logger.bind(model=model_id).info(f"Model added: {model_id}")

            gone = [
                path
                for path, handle_root in self._handle_roots.items()
                if handle_root == root and path not in present
            ]
            for path in gone:
                handle = self._handles[path]
                try:
                    await handle.dispose()
                except Exception as e:
                    logger.bind(model=handle.model_id).error(
                        f"Failed to dispose model. {type(e).__name__}: {e}"
                    )
                del self._handles[path]
                del self._handle_roots[path]
                logger.bind(model=handle.model_id).info(f"Model removed: {handle.model_id}")
