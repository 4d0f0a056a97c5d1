"""UI event channel, plus desktop notifications for errors raised outside the viewer (CLI, startup)."""

import logging
import subprocess
import sys
from collections import defaultdict
from typing import Any, Callable, Dict, List, Optional

log = logging.getLogger(__name__)

# Events emitted by the core
HISTORY_CHANGED = "history_changed"
CATALOG_CHANGED = "catalog_changed"
SESSION_GROUPS_CHANGED = "session_groups_changed"
PROGRESS_SHOWN = "progress_shown"
PROGRESS_UPDATED = "progress_updated"
PROGRESS_HIDDEN = "progress_hidden"
OPEN_IN_EXISTING_WINDOW = "open_in_existing_window"
OPEN_IN_NEW_WINDOW = "open_in_new_window"
ALL_WINDOWS_READY = "all_windows_ready"

Listener = Callable[..., Any]

# notify-send popup lifetime; body is cut to _BODY_LIMIT characters
_NOTIFY_EXPIRE_MS = 10_000
_BODY_LIMIT = 200
_APP_NAME = "PageLedger"


class Notifier:
    """Synchronous publish/subscribe by event name. A failing listener does not stop the others."""

    def __init__(self) -> None:
        self._listeners: Dict[str, List[Listener]] = defaultdict(list)

    def subscribe(self, event: str, listener: Listener) -> None:
        self._listeners[event].append(listener)

    def unsubscribe(self, event: str, listener: Listener) -> None:
        try:
            self._listeners[event].remove(listener)
        except ValueError:
            pass

    def emit(self, event: str, **payload: Any) -> None:
        for listener in list(self._listeners.get(event, ())):
            try:
                listener(**payload)
            except Exception:
                log.exception("Listener for %s failed", event)


def _shorten(message: str, limit: int = _BODY_LIMIT) -> str:
    text = message or "Unknown error"
    return text if len(text) <= limit else text[:limit] + "..."


def _applescript_string(text: str) -> str:
    return '"' + text.replace("\\", "\\\\").replace('"', '\\"') + '"'


def desktop_notification_command(title: str, body: str, platform: Optional[str] = None) -> Optional[List[str]]:
    """Command line that shows title/body on platform (default: this one), None if unsupported."""
    platform = platform or sys.platform
    if platform.startswith("linux"):
        # Normal urgency: critical notifications ignore the expire time on some desktops
        return ["notify-send", "--urgency=normal", f"--expire-time={_NOTIFY_EXPIRE_MS}", f"--app-name={_APP_NAME}", title, body]
    if platform == "darwin":
        script = f"display notification {_applescript_string(body)} with title {_applescript_string(title)}"
        return ["osascript", "-e", script]
    return None


def notify_error(title: str, message: str) -> None:
    """Best-effort desktop notification for an error the user should see outside the terminal."""
    command = desktop_notification_command(title, _shorten(message))
    if command is None:
        log.debug("No desktop notifications on %s", sys.platform)
        return
    try:
        subprocess.run(command, check=False, timeout=5, capture_output=True)
    except (OSError, subprocess.TimeoutExpired) as e:
        log.debug("Desktop notification via %s failed: %s", command[0], e)
