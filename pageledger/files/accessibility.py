"""Cached file existence checks for history listings."""

import asyncio
import logging
import os
from typing import Callable, Dict, Iterable, Optional

from pageledger.config import Settings
from pageledger.ui.notify import HISTORY_CHANGED, Notifier

log = logging.getLogger(__name__)

ExistsPredicate = Callable[[str], bool]


class AccessibilityCache:
    """
    Path -> exists, computed on first request and refreshed by a background sweep.

    The map is only written on the event loop; the sweep runs the existence checks
    in a worker thread with sweep_delay seconds between checks.
    """

    def __init__(
        self,
        exists: ExistsPredicate = os.path.exists,
        sweep_delay: float = 0.02,
        notifier: Optional[Notifier] = None,
    ) -> None:
        self._exists = exists
        self.sweep_delay = sweep_delay
        self._notifier = notifier
        self._cache: Dict[str, bool] = {}
        self._sweep: Optional[asyncio.Task] = None

    @classmethod
    def from_settings(
        cls,
        settings: Settings,
        exists: ExistsPredicate = os.path.exists,
        notifier: Optional[Notifier] = None,
    ) -> "AccessibilityCache":
        return cls(exists, sweep_delay=settings.accessibility_sweep_delay, notifier=notifier)

    def _check(self, path: str) -> bool:
        try:
            return bool(self._exists(path))
        except OSError as e:
            log.debug("Existence check failed for %s: %s", path, e)
            return False
        except Exception:
            # Injected predicates may raise anything; the path counts as missing
            log.exception("Existence check raised for %s", path)
            return False

    def is_accessible(self, path: str) -> bool:
        cached = self._cache.get(path)
        if cached is not None:
            return cached
        accessible = self._check(path)
        self._cache[path] = accessible
        return accessible

    def cached(self, path: str) -> Optional[bool]:
        """Cached value without checking; None if path was never checked."""
        return self._cache.get(path)

    def invalidate(self) -> None:
        """Forget every cached result (after bulk history changes)."""
        self._cache.clear()

    @property
    def sweep_running(self) -> bool:
        return self._sweep is not None and not self._sweep.done()

    def start_background_sweep(self, paths: Iterable[str]) -> asyncio.Task:
        """
        Re-check paths in the background. While a sweep runs, further requests
        return the running task instead of starting another one.
        """
        if self.sweep_running:
            log.debug("Accessibility sweep already running")
            return self._sweep
        snapshot = list(dict.fromkeys(paths))
        self._sweep = asyncio.get_running_loop().create_task(self._run_sweep(snapshot))
        return self._sweep

    async def _run_sweep(self, paths: list) -> None:
        log.debug("Accessibility sweep over %d path(s)", len(paths))
        try:
            for i, path in enumerate(paths):
                if i and self.sweep_delay:
                    await asyncio.sleep(self.sweep_delay)
                self._cache[path] = await asyncio.to_thread(self._check, path)
        finally:
            # Emitted even when nothing changed so a cold cache shows up after the first sweep
            if self._notifier is not None:
                self._notifier.emit(HISTORY_CHANGED)
            log.debug("Accessibility sweep done")
