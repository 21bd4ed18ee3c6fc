"""Error taxonomy plus logging infrastructure.

Provides centralized exception handling to make errors visible instead of
silently swallowed. Logs to file (configurable) and can notify the user via
a UI callback.
"""

from __future__ import annotations

import logging
import sys
import traceback
from pathlib import Path
from typing import Callable, Literal

from sessiondeck.config import CONFIG

# Configure module logger
log = logging.getLogger("sessiondeck")

SeverityLevel = Literal["information", "warning", "error"]

# Callback for UI notifications, set by the presentation layer on startup
_notify_callback: Callable[[str, SeverityLevel], None] | None = None


# ---------------------------------------------------------------------------
# Error taxonomy
# ---------------------------------------------------------------------------


class SessionDeckError(Exception):
    """Base class for coordinator errors."""


class ValidationError(SessionDeckError):
    """A submission was rejected before it reached the queue."""


class EmptySubmission(ValidationError):
    def __init__(self, session_id: str):
        self.session_id = session_id
        super().__init__(f"Nothing to send for session {session_id}")


class SessionNotFound(ValidationError):
    """The session disappeared from the store (e.g. deleted in another window)."""

    def __init__(self, session_id: str):
        self.session_id = session_id
        super().__init__(
            f"Session {session_id} not found. Please refresh or create a new session."
        )


class EngineDispatchError(SessionDeckError):
    """Starting or streaming a run failed. Ends the current run only."""

    def __init__(self, session_id: str, message: str):
        self.session_id = session_id
        super().__init__(message)


class StreamProtocolError(SessionDeckError):
    """An engine event could not be interpreted. Never aborts the run."""

    def __init__(self, message: str, payload: object = None):
        self.payload = payload
        super().__init__(message)


class RaceRecoveryWarning(UserWarning):
    """Cancel found nothing to cancel; local state was repaired."""


# ---------------------------------------------------------------------------
# Logging
# ---------------------------------------------------------------------------


class NotifyHandler(logging.Handler):
    """Logging handler that sends notifications to the UI."""

    def emit(self, record: logging.LogRecord) -> None:
        # Capture callback to avoid TOCTOU race (callback could be set to None
        # between check and call)
        callback = _notify_callback
        if callback is None:
            return
        try:
            severity: SeverityLevel
            if record.levelno >= logging.ERROR:
                severity = "error"
            elif record.levelno >= logging.WARNING:
                severity = "warning"
            else:
                severity = "information"

            msg = self.format(record)
            # Truncate long messages for notifications
            if len(msg) > 200:
                msg = msg[:197] + "..."
            callback(msg, severity)
        except Exception as e:
            print(f"NotifyHandler.emit() failed: {e}", file=sys.stderr)


def set_notify_callback(
    callback: Callable[[str, SeverityLevel], None] | None,
) -> None:
    """Set the callback for UI notifications.

    Args:
        callback: Function(message, severity) where severity is
                  "information", "warning", or "error".
    """
    global _notify_callback
    _notify_callback = callback


def setup_logging(level: int = logging.DEBUG) -> None:
    """Initialize logging. Call once at startup.

    Configures the root 'sessiondeck' logger so all child loggers
    (sessiondeck.pipeline, sessiondeck.engine, etc.) inherit the handlers.

    Reads configuration from ~/.claude/.sessiondeck.yaml:
    - logging.file: Path to log file, or null to disable (default: ~/sessiondeck.log)
    - logging.notify-level: Min level for UI notifications (default: warning)
    """
    # Guard against being called multiple times
    if log.handlers:
        return

    log.setLevel(level)
    log.propagate = False

    log_file = CONFIG.get("logging", {}).get(
        "file", str(Path.home() / "sessiondeck.log")
    )
    if log_file:
        log_file = str(Path(log_file).expanduser())
        try:
            file_handler = logging.FileHandler(log_file, mode="a")
            file_handler.setFormatter(
                logging.Formatter("%(asctime)s %(levelname)s %(name)s: %(message)s")
            )
            file_handler.setLevel(level)
            log.addHandler(file_handler)
        except OSError:
            log_file = None

    notify_level_str = CONFIG.get("logging", {}).get("notify-level", "warning")
    if notify_level_str:
        notify_level = getattr(logging, notify_level_str.upper(), logging.WARNING)
        notify_handler = NotifyHandler()
        notify_handler.setFormatter(logging.Formatter("%(message)s"))
        notify_handler.setLevel(notify_level)
        log.addHandler(notify_handler)

    if log_file:
        log.info("Logging initialized")


def log_exception(e: BaseException, context: str = "") -> str:
    """Log an exception with context. Returns formatted message for display."""
    tb = "".join(traceback.format_exception(type(e), e, e.__traceback__))
    if context:
        log.error(f"{context}: {e}\n{tb}")
        return f"{context}: {e}"
    else:
        log.error(f"{e}\n{tb}")
        return str(e)
