"""
Keystore directory watcher.

Reloads the keystore when keystore files are added, rewritten or removed by
another process. Uses a watchdog observer when available on the platform and
falls back to polling the directory.
"""

import asyncio
import logging
from pathlib import Path
from typing import Optional

from watchdog.events import FileSystemEvent, FileSystemEventHandler
from watchdog.observers import Observer

from .errors import KeystoreError
from .keystore import Keystore

logger = logging.getLogger(__name__)

DEFAULT_POLL_INTERVAL = 2.0


class _KeystoreDirHandler(FileSystemEventHandler):
    """Forwards observer events (observer thread) to the event loop."""

    def __init__(self, watcher: "KeystoreWatcher", loop: asyncio.AbstractEventLoop):
        self.watcher = watcher
        self.loop = loop

    def on_any_event(self, event: FileSystemEvent) -> None:
        if event.is_directory:
            return
        if not str(event.src_path).endswith(".json") and \
                not str(getattr(event, "dest_path", "")).endswith(".json"):
            return
        self.loop.call_soon_threadsafe(self.watcher.check)


class KeystoreWatcher:
    """
    Watch the keystore directory and call Keystore.reload() on change.

    A change is a different (name, mtime, size) signature for the set of
    keystore files, so repeated notifications for one write reload once.
    """

    def __init__(self, keystore: Keystore, mode: str = "auto",
                 interval: float = DEFAULT_POLL_INTERVAL):
        if mode not in ("auto", "poll"):
            raise ValueError(f"Unknown watch mode: {mode}")
        self.keystore = keystore
        self.mode = mode
        self.interval = interval
        self._observer: Optional[Observer] = None
        self._poll_task: Optional[asyncio.Task] = None
        self._signature: tuple = ()

    @property
    def directory(self) -> Path:
        return self.keystore.keystore_dir

    @property
    def is_running(self) -> bool:
        return self._observer is not None or self._poll_task is not None

    @property
    def using_observer(self) -> bool:
        return self._observer is not None

    def signature(self) -> tuple:
        signature = []
        for path in self.keystore.keystore_files():
            try:
                stat = path.stat()
            except FileNotFoundError:
                continue
            signature.append((path.name, stat.st_mtime_ns, stat.st_size))
        return tuple(signature)

    async def start(self) -> None:
        """Start watching. Must be called from the event loop."""
        if self.is_running:
            return

        self.directory.mkdir(parents=True, exist_ok=True)
        self._signature = self.signature()

        if self.mode == "auto" and self._start_observer():
            return

        self._poll_task = asyncio.create_task(self._poll())
        logger.info(f"Watching keystore directory by polling every {self.interval}s")

    def _start_observer(self) -> bool:
        loop = asyncio.get_running_loop()
        observer = Observer()
        try:
            observer.schedule(_KeystoreDirHandler(self, loop), str(self.directory), recursive=False)
            observer.start()
        except OSError as e:
            logger.warning(f"File notifications unavailable ({e}), falling back to polling")
            return False

        self._observer = observer
        logger.info("Watching keystore directory with file notifications")
        return True

    async def _poll(self) -> None:
        while True:
            await asyncio.sleep(self.interval)
            self.check()

    def check(self) -> bool:
        """Reload if the keystore files changed. Returns True if a reload ran."""
        signature = self.signature()
        if signature == self._signature:
            return False
        self._signature = signature

        logger.info("Keystore directory changed, reloading")
        try:
            self.keystore.reload()
        except (KeystoreError, OSError) as e:
            # Keystore.reload() already published KeystoreEvent.ERROR
            logger.warning(f"Keeping previous keystore state: {e}")
        return True

    async def stop(self) -> None:
        if self._poll_task is not None:
            self._poll_task.cancel()
            try:
                await self._poll_task
            except asyncio.CancelledError:
                pass
            self._poll_task = None

        if self._observer is not None:
            observer = self._observer
            self._observer = None
            observer.stop()
            await asyncio.get_running_loop().run_in_executor(None, observer.join)
            logger.info("Keystore watcher stopped")
