"""Hot reload of the configuration file.

The file's mtime is polled; a burst of writes is coalesced into a single
reload once the file has been quiet for the debounce window.
"""

from __future__ import annotations

import asyncio
import inspect
import logging
from collections.abc import Awaitable, Callable
from pathlib import Path

from pydantic import ValidationError
from yaml import YAMLError

from kanbn_sync.config import Config

logger = logging.getLogger(__name__)

POLL_INTERVAL = 5.0  # seconds
DEBOUNCE_SECONDS = 1.0

ChangeHandler = Callable[[Config, Config], Awaitable[None] | None]


def _mtime(path: Path) -> float | None:
    try:
        return path.stat().st_mtime
    except OSError:
        return None


class ConfigWatcher:
    """Polls a config file and notifies handlers with (old, new) configs."""

    def __init__(
        self,
        path: Path,
        config: Config,
        poll_interval: float = POLL_INTERVAL,
        debounce: float = DEBOUNCE_SECONDS,
    ) -> None:
        self.path = path
        self.config = config
        self.poll_interval = poll_interval
        self.debounce = debounce
        self._mtime = _mtime(path)
        self._handlers: list[ChangeHandler] = []
        self._running = False
        self._task: asyncio.Task[None] | None = None

    def on_change(self, handler: ChangeHandler) -> None:
        """Subscribe a sync or async handler called after a successful reload."""
        self._handlers.append(handler)

    async def start(self) -> None:
        if self._running:
            return
        self._running = True
        self._task = asyncio.create_task(self._poll_loop(), name="kanbn-sync-config-watcher")
        logger.info(f"[CONFIG] Watching {self.path} for changes")

    async def stop(self) -> None:
        self._running = False
        if self._task:
            self._task.cancel()
            await asyncio.gather(self._task, return_exceptions=True)
            self._task = None

    async def _poll_loop(self) -> None:
        while self._running:
            try:
                await asyncio.sleep(self.poll_interval)
            except asyncio.CancelledError:
                break
            await self.check()

    async def _wait_until_quiet(self, mtime: float | None) -> float | None:
        """Wait until the mtime stops moving for one debounce window."""
        while True:
            await asyncio.sleep(self.debounce)
            latest = _mtime(self.path)
            if latest == mtime:
                return latest
            mtime = latest

    async def check(self) -> bool:
        """Poll once; reload and notify if the file changed.

        Returns:
            True if a new configuration was loaded.
        """
        current = _mtime(self.path)
        if current == self._mtime:
            return False

        current = await self._wait_until_quiet(current)
        self._mtime = current
        if current is None:
            logger.warning(f"[CONFIG] {self.path} was removed, keeping the previous configuration")
            return False

        logger.info(f"[CONFIG] {self.path} changed, reloading")
        try:
            new_config = Config.load(self.path)
        except (OSError, YAMLError, ValidationError) as e:
            logger.error(f"[CONFIG] Failed to reload configuration, keeping the previous one: {e}")
            return False

        old_config, self.config = self.config, new_config
        for handler in self._handlers:
            try:
                result = handler(old_config, new_config)
                if inspect.isawaitable(result):
                    await result
            except Exception as e:
                logger.error(f"[CONFIG] Reload handler failed: {e}", exc_info=True)
        return True
