"""
FLUXWARDEN — Shared Logging Configuration

Centralized logging setup for all FLUXWARDEN components.

Log lines are tagged by subsystem (DISCOVERY, AUTO-<node>, API-<node>,
MAIN-<node>) through the logger name, and every handler installed here
redacts credentials before a line leaves the process.
"""

from __future__ import annotations

import logging
import re
import sys
import threading
from collections import deque
from typing import Iterable, Optional


# =============================================================================
# Log Format
# =============================================================================
LOG_FORMAT = "%(asctime)s | %(levelname)-8s | %(tag)s | %(message)s"
DATE_FORMAT = "%Y-%m-%dT%H:%M:%S"

ROOT_LOGGER = "fluxwarden"
REDACTED = "[REDACTED]"

SENSITIVE_KEYS = (
    "zelidauth",
    "token",
    "signature",
    "loginphrase",
    "password",
    "authorization",
    "secret",
)

# "key": "value" (JSON) and key=value / key: value (plain text)
_JSON_PAIR = re.compile(
    r'("(?P<key>[^"]+)"\s*:\s*)"(?P<value>[^"]*)"',
)
_PLAIN_PAIR = re.compile(
    r"(?P<prefix>\b(?P<key>[A-Za-z_][A-Za-z0-9_-]*)\s*[=:]\s*)(?P<value>[^\s,;&\"'}]+)",
)


def _is_sensitive(key: str) -> bool:
    lowered = key.lower()
    return any(marker in lowered for marker in SENSITIVE_KEYS)


# =============================================================================
# Redaction
# =============================================================================
class RedactingFilter(logging.Filter):
    """
    Masks credentials in log records.

    Two layers: exact secret values registered at runtime (every token the
    credential vault stores), and key/value pairs whose key looks sensitive.
    """

    def __init__(self, secrets: Iterable[str] = ()) -> None:
        super().__init__()
        self._secrets: set[str] = {s for s in secrets if s}
        self._lock = threading.Lock()

    def add_secret(self, value: str) -> None:
        if value:
            with self._lock:
                self._secrets.add(value)

    def discard_secret(self, value: str) -> None:
        with self._lock:
            self._secrets.discard(value)

    def redact(self, text: str) -> str:
        with self._lock:
            secrets = sorted(self._secrets, key=len, reverse=True)
        for secret in secrets:
            text = text.replace(secret, REDACTED)

        def _json_sub(match: re.Match) -> str:
            if _is_sensitive(match.group("key")):
                return f'{match.group(1)}"{REDACTED}"'
            return match.group(0)

        def _plain_sub(match: re.Match) -> str:
            if _is_sensitive(match.group("key")) and match.group("value") != REDACTED:
                return f"{match.group('prefix')}{REDACTED}"
            return match.group(0)

        text = _JSON_PAIR.sub(_json_sub, text)
        return _PLAIN_PAIR.sub(_plain_sub, text)

    def filter(self, record: logging.LogRecord) -> bool:
        record.msg = self.redact(record.getMessage())
        record.args = None
        return True


class TagFilter(logging.Filter):
    """Expose the subsystem tag (last logger-name segment) as %(tag)s."""

    def filter(self, record: logging.LogRecord) -> bool:
        if not hasattr(record, "tag"):
            name = record.name
            prefix = ROOT_LOGGER + "."
            record.tag = name[len(prefix):] if name.startswith(prefix) else name
        return True


# =============================================================================
# Log History (for the external log viewer)
# =============================================================================
class LogHistoryHandler(logging.Handler):
    """Keeps the most recent formatted lines in memory."""

    def __init__(self, capacity: int = 500) -> None:
        super().__init__()
        self._lines: deque[str] = deque(maxlen=capacity)

    def emit(self, record: logging.LogRecord) -> None:
        try:
            self._lines.append(self.format(record))
        except Exception:
            self.handleError(record)

    def history(self, limit: Optional[int] = None) -> list[str]:
        lines = list(self._lines)
        if limit is not None and limit >= 0:
            return lines[-limit:] if limit else []
        return lines

    def clear(self) -> None:
        self._lines.clear()


_redactor = RedactingFilter()
_history = LogHistoryHandler()


def get_redactor() -> RedactingFilter:
    """Process-wide redaction filter shared by all handlers."""
    return _redactor


def get_log_history() -> LogHistoryHandler:
    """Process-wide log history handler."""
    return _history


# =============================================================================
# Logger Factory
# =============================================================================
def setup_logging(level: str = "INFO", history_capacity: int = 500) -> logging.Logger:
    """
    Configure the FLUXWARDEN root logger.

    Installs a stdout handler and the in-memory history handler, both
    behind the tag and redaction filters. Safe to call more than once.
    """
    global _history

    root = logging.getLogger(ROOT_LOGGER)
    log_level = getattr(logging, level.upper(), logging.INFO)
    root.setLevel(log_level)
    root.propagate = False

    for handler in list(root.handlers):
        root.removeHandler(handler)

    formatter = logging.Formatter(LOG_FORMAT, DATE_FORMAT)

    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setLevel(log_level)

    if _history._lines.maxlen != history_capacity:
        _history = LogHistoryHandler(history_capacity)
    _history.setLevel(log_level)

    for handler in (console_handler, _history):
        handler.addFilter(TagFilter())
        handler.addFilter(_redactor)
        handler.setFormatter(formatter)
        root.addHandler(handler)

    return root


def get_logger(name: str) -> logging.Logger:
    """
    Get a logger below the FLUXWARDEN root.

    Args:
        name: Logger name (typically __name__ of the module)
    """
    if name == ROOT_LOGGER or name.startswith(ROOT_LOGGER + "."):
        return logging.getLogger(name)
    return logging.getLogger(f"{ROOT_LOGGER}.{name}")


def get_tagged_logger(tag: str, node_id: str | None = None) -> logging.Logger:
    """
    Subsystem logger, e.g. get_tagged_logger("AUTO", "IP01-node03")
    logs as AUTO-IP01-node03.
    """
    name = f"{tag}-{node_id}" if node_id else tag
    return logging.getLogger(f"{ROOT_LOGGER}.{name}")


# =============================================================================
# Subsystem Tags
# =============================================================================
DISCOVERY_TAG = "DISCOVERY"
AUTOMATION_TAG = "AUTO"
API_TAG = "API"
MAIN_TAG = "MAIN"
