"""Debounced, bounded-concurrency queue of files to open in windows.

States: IDLE -> SCHEDULED (debounce window open) -> PROCESSING -> IDLE.
The first request of a run opens in the window that already exists, later
ones in new windows. At most concurrency_limit windows load at once; each
reports completion through window_loaded.
"""

import asyncio
import enum
import logging
from collections import deque
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Callable, Deque, Iterable, Optional, Union

from pageledger.config import Settings
from pageledger.sessions.models import WindowFrame
from pageledger.sessions.windows import WindowSessionEntry
from pageledger.ui.notify import (
    ALL_WINDOWS_READY,
    OPEN_IN_EXISTING_WINDOW,
    OPEN_IN_NEW_WINDOW,
    PROGRESS_HIDDEN,
    PROGRESS_SHOWN,
    PROGRESS_UPDATED,
    Notifier,
)

log = logging.getLogger(__name__)


@dataclass(frozen=True)
class OpenRequest:
    path: str
    file_key: Optional[str] = None
    page: int = 0
    frame: Optional[WindowFrame] = None
    is_session_restore: bool = False


class QueueState(str, enum.Enum):
    IDLE = "idle"
    SCHEDULED = "scheduled"
    PROCESSING = "processing"


OpenCallback = Callable[[OpenRequest], Any]


class SessionQueue:
    """
    Owned by the event loop: call enqueue and window_loaded on the loop thread,
    or window_loaded_threadsafe from elsewhere.
    """

    def __init__(
        self,
        open_in_existing_window: OpenCallback,
        open_in_new_window: OpenCallback,
        concurrency_limit: int = 1,
        debounce: float = 0.3,
        notifier: Optional[Notifier] = None,
    ) -> None:
        if concurrency_limit < 1:
            raise ValueError("concurrency_limit must be at least 1")
        self._open_in_existing_window = open_in_existing_window
        self._open_in_new_window = open_in_new_window
        self._concurrency_limit = concurrency_limit
        self.debounce = debounce
        self._notifier = notifier
        self._pending: Deque[OpenRequest] = deque()
        self._state = QueueState.IDLE
        self._timer: Optional[asyncio.TimerHandle] = None
        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._first_window_used = False
        self._progress_visible = False
        self._idle = asyncio.Event()
        self._idle.set()
        self.in_flight = 0
        self.processed = 0
        self.total_to_process = 0

    @classmethod
    def from_settings(
        cls,
        settings: Settings,
        open_in_existing_window: OpenCallback,
        open_in_new_window: OpenCallback,
        notifier: Optional[Notifier] = None,
    ) -> "SessionQueue":
        """Queue with the configured loading limit and debounce."""
        return cls(
            open_in_existing_window,
            open_in_new_window,
            concurrency_limit=settings.session_concurrent_loading_limit,
            debounce=settings.session_debounce_seconds,
            notifier=notifier,
        )

    @property
    def state(self) -> QueueState:
        return self._state

    @property
    def pending_count(self) -> int:
        return len(self._pending)

    @property
    def concurrency_limit(self) -> int:
        return self._concurrency_limit

    @concurrency_limit.setter
    def concurrency_limit(self, value: int) -> None:
        if value < 1:
            raise ValueError("concurrency_limit must be at least 1")
        self._concurrency_limit = value
        self._fill()

    def _emit(self, event: str, **payload: Any) -> None:
        if self._notifier is not None:
            self._notifier.emit(event, **payload)

    # Progress UI

    def _show_progress(self) -> None:
        self._progress_visible = True
        self._emit(PROGRESS_SHOWN, processed=self.processed, total=self.total_to_process)

    def _update_progress(self) -> None:
        if not self._progress_visible:
            if self.total_to_process > 1:
                self._show_progress()
            return
        self._emit(PROGRESS_UPDATED, processed=self.processed, total=self.total_to_process)

    def _hide_progress(self) -> None:
        if self._progress_visible:
            self._progress_visible = False
            self._emit(PROGRESS_HIDDEN)

    # Queue

    def enqueue(self, requests: Iterable[OpenRequest]) -> None:
        """Add requests; starts a run after the debounce, or joins the current run."""
        items = list(requests)
        if not items:
            return
        self._loop = asyncio.get_running_loop()
        self._pending.extend(items)
        log.info("Queued %d file(s) to open (pending: %d)", len(items), len(self._pending))
        if self._state == QueueState.PROCESSING:
            new_total = self.processed + len(self._pending) + self.in_flight
            if new_total > self.total_to_process:
                self.total_to_process = new_total
                log.debug("Updated total to %d", new_total)
                self._update_progress()
            self._fill()
        else:
            self._schedule()

    def _schedule(self) -> None:
        # Each enqueue while waiting restarts the debounce window
        if self._timer is not None:
            self._timer.cancel()
        self._state = QueueState.SCHEDULED
        self._idle.clear()
        self._timer = self._loop.call_later(self.debounce, self._start_processing)

    def _start_processing(self) -> None:
        self._timer = None
        if not self._pending:
            self._state = QueueState.IDLE
            self._idle.set()
            return
        self._state = QueueState.PROCESSING
        self._first_window_used = False
        self.processed = 0
        self.total_to_process = len(self._pending)
        log.info("Opening %d file(s), up to %d at a time", self.total_to_process, self._concurrency_limit)
        if self.total_to_process > 1:
            self._show_progress()
        self._fill()

    def _fill(self) -> None:
        while self.dequeue_next():
            pass

    def dequeue_next(self) -> bool:
        """Hand the next request to a window if below the concurrency limit. Returns True if one was dispatched."""
        if self._state != QueueState.PROCESSING:
            return False
        if self.in_flight >= self._concurrency_limit or not self._pending:
            return False
        request = self._pending.popleft()
        self.in_flight += 1
        if not self._first_window_used:
            self._first_window_used = True
            callback, event = self._open_in_existing_window, OPEN_IN_EXISTING_WINDOW
        else:
            callback, event = self._open_in_new_window, OPEN_IN_NEW_WINDOW
        log.debug("Opening %s (%d/%d loading)", request.path, self.in_flight, self._concurrency_limit)
        self._emit(event, request=request)
        try:
            callback(request)
        except Exception:
            log.exception("Opening %s failed", request.path)
            # Count it as loaded so the run can finish
            self._loop.call_soon(self.window_loaded, None)
        return True

    def window_loaded(self, window_id: Optional[str] = None) -> None:
        """A window dispatched by this queue finished loading."""
        if self._state != QueueState.PROCESSING:
            log.debug("window_loaded(%s) ignored: not processing", window_id)
            return
        self.in_flight = max(0, self.in_flight - 1)
        self.processed += 1
        log.debug("Window %s loaded (%d/%d)", window_id, self.processed, self.total_to_process)
        self._update_progress()
        if self.processed >= self.total_to_process and not self._pending and self.in_flight == 0:
            self._finish()
        else:
            self._fill()

    def window_loaded_threadsafe(self, window_id: Optional[str] = None) -> None:
        """window_loaded for callers outside the event loop thread."""
        if self._loop is None:
            raise RuntimeError("SessionQueue has not been started on an event loop")
        self._loop.call_soon_threadsafe(self.window_loaded, window_id)

    def _finish(self) -> None:
        self._state = QueueState.IDLE
        self._first_window_used = False
        self.processed = 0
        self.total_to_process = 0
        self._hide_progress()
        self._emit(ALL_WINDOWS_READY)
        self._idle.set()
        log.info("All windows opened")

    async def wait_idle(self) -> None:
        """Return once no run is scheduled or in progress."""
        await self._idle.wait()

    # Convenience

    def add_files_to_open(self, paths: Iterable[Union[str, Path]]) -> None:
        self.enqueue(OpenRequest(path=str(p)) for p in paths)

    def start_restoration(self, entries: Iterable[WindowSessionEntry]) -> int:
        """Reopen the windows of a saved session. Returns how many were queued."""
        requests = [
            OpenRequest(
                path=e.file_path,
                file_key=e.file_key,
                page=e.current_page,
                frame=e.window_frame,
                is_session_restore=True,
            )
            for e in entries
        ]
        if not requests:
            log.info("No session to restore")
            return 0
        self.enqueue(requests)
        return len(requests)
