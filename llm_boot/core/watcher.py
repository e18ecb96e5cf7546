"""Recursive discovery of model files under a directory root."""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable
from contextlib import suppress
import inspect
import os
from pathlib import Path

from loguru import logger
from watchfiles import Change, awatch

from ..const import DEFAULT_MODEL_EXTENSION

ChangeListener = Callable[[list[str]], Awaitable[None] | None]


class DirectoryWatcher:
    """Track every model file below ``root`` and report changes.

    The watcher keeps a deduplicated set of absolute paths whose name ends
    with ``extension`` (case-insensitive). Listeners receive the complete
    sorted path list after the initial scan, after every structural change
    (file added or removed), and when a tracked file's content changes.

    Parameters
    ----------
    root : str or Path
        Directory to watch recursively. Must exist when :meth:`start` runs.
    extension : str, optional
        Model file suffix, ``.gguf`` by default.
    debounce_ms : int, optional
        Window used by ``watchfiles`` to group filesystem events.
    """

    def __init__(
        self,
        root: str | Path,
        *,
        extension: str = DEFAULT_MODEL_EXTENSION,
        debounce_ms: int = 300,
    ) -> None:
        self.root = Path(root).expanduser().resolve()
        self.extension = extension.lower()
        self.debounce_ms = debounce_ms
        self._paths: set[str] = set()
        self._listeners: list[ChangeListener] = []
        self._task: asyncio.Task[None] | None = None
        self._stop_event: asyncio.Event | None = None
        self._seeded = False

    def __repr__(self) -> str:
        return f"<DirectoryWatcher {self.root} files={len(self._paths)}>"

    @property
    def paths(self) -> list[str]:
        """Sorted snapshot of the tracked model paths."""
        return sorted(self._paths)

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def subscribe(self, listener: ChangeListener) -> None:
        """Register a callback (sync or async) receiving the full path list."""
        self._listeners.append(listener)

    def matches(self, path: str | Path) -> bool:
        return str(path).lower().endswith(self.extension)

    async def start(self) -> None:
        """Seed the path set, install the filesystem watch and emit the list.

        Raises
        ------
        FileNotFoundError
            If the root does not exist.
        NotADirectoryError
            If the root is not a directory.
        """
        if self._task is not None:
            return
        if not self.root.exists():
            raise FileNotFoundError(f"Model directory not found: {self.root}")
        if not self.root.is_dir():
            raise NotADirectoryError(f"Model path is not a directory: {self.root}")

        self._stop_event = asyncio.Event()
        self._task = asyncio.create_task(self._watch_loop(), name=f"watch:{self.root}")
        try:
            scanned = await asyncio.to_thread(self._scan, self.root)
        except Exception:
            await self.stop()
            raise

        # Events that arrived while scanning were already applied to the set
        self._paths = {p for p in self._paths | scanned if os.path.isfile(p)}
        self._seeded = True
        logger.info(f"Watching {self.root} ({len(self._paths)} model files)")
        await self._emit()

    async def stop(self) -> None:
        """Stop watching. Safe to call more than once."""
        task, self._task = self._task, None
        if self._stop_event is not None:
            self._stop_event.set()
        if task is None:
            return
        task.cancel()
        with suppress(asyncio.CancelledError):
            await task
        logger.debug(f"Stopped watching {self.root}")

    def _scan(self, directory: Path) -> set[str]:
        found: set[str] = set()
        for dirpath, _dirnames, filenames in os.walk(directory):
            for filename in filenames:
                if self.matches(filename):
                    candidate = os.path.join(dirpath, filename)
                    if os.path.isfile(candidate):
                        found.add(os.path.abspath(candidate))
        return found

    async def _watch_loop(self) -> None:
        try:
            async for changes in awatch(
                self.root,
                watch_filter=None,
                debounce=self.debounce_ms,
                stop_event=self._stop_event,
                recursive=True,
            ):
                structural, touched = await self._apply(changes)
                if self._seeded and (structural or touched):
                    await self._emit()
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.error(f"Watcher for {self.root} stopped. {type(e).__name__}: {e}")

    async def _apply(self, changes: set[tuple[Change, str]]) -> tuple[bool, bool]:
        """Fold one batch of filesystem events into the path set.

        Returns
        -------
        tuple[bool, bool]
            ``(structural, touched)``: whether files were added or removed,
            and whether a tracked file only changed content.
        """
        structural = False
        touched = False
        for change, raw_path in sorted(changes, key=lambda item: item[1]):
            path = os.path.abspath(raw_path)
            if change == Change.modified and path in self._paths and os.path.isfile(path):
                touched = True
                continue
            # Renames arrive as added/deleted pairs; existence decides either way
            if os.path.isdir(path):
                added = await asyncio.to_thread(self._scan, Path(path))
                new = added - self._paths
                if new:
                    self._paths |= new
                    structural = True
            elif os.path.isfile(path):
                if self.matches(path) and path not in self._paths:
                    self._paths.add(path)
                    structural = True
            else:
                prefix = path + os.sep
                gone = {p for p in self._paths if p == path or p.startswith(prefix)}
                if gone:
                    self._paths -= gone
                    structural = True
        return structural, touched

    async def _emit(self) -> None:
        snapshot = self.paths
        for listener in list(self._listeners):
            try:
                result = listener(snapshot)
                if inspect.isawaitable(result):
                    await result
            except Exception as e:
                logger.exception(
                    f"Model list listener failed for {self.root}. {type(e).__name__}: {e}"
                )
