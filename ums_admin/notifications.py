"""User-facing notices raised by the settings and event-stream components."""

from __future__ import annotations

import enum
import logging
from dataclasses import dataclass
from typing import Any, Callable, Mapping, Protocol

DEFAULT_MESSAGES: dict[str, str] = {
    "Error": "Error",
    "Saved": "Saved",
    "Warning": "Warning",
    "Information": "Information",
    "ConfigurationNotReceived": "Configuration was not received from the server.",
    "ConfigurationNotSaved": "Configuration was not saved.",
    "ConfigurationSaved": "Configuration has been saved.",
    "ConfigurationHasNoChanges": "Configuration has no changes.",
    "ClickHereReportBug": "Click here to report the bug.",
    "ServerUnreachable": "Universal Media Server is unreachable.",
}


class Severity(enum.Enum):
    INFO = "info"
    SUCCESS = "success"
    WARNING = "warning"
    ERROR = "error"


_COLOR_SEVERITY = {
    "red": Severity.ERROR,
    "orange": Severity.WARNING,
    "yellow": Severity.WARNING,
    "green": Severity.SUCCESS,
    "teal": Severity.SUCCESS,
}

_SEVERITY_LEVELS = {
    Severity.INFO: logging.INFO,
    Severity.SUCCESS: logging.INFO,
    Severity.WARNING: logging.WARNING,
    Severity.ERROR: logging.ERROR,
}


def severity_from_color(color: Any) -> Severity:
    """Map a server notice colour onto a severity; unknown colours are INFO."""
    if isinstance(color, str):
        return _COLOR_SEVERITY.get(color.strip().lower(), Severity.INFO)
    return Severity.INFO


def message_text(i18n: Mapping[str, str] | None, key: str) -> str:
    if i18n:
        value = i18n.get(key)
        if isinstance(value, str) and value:
            return value
    return DEFAULT_MESSAGES.get(key, key)


@dataclass(frozen=True)
class Notice:
    title: str
    message: str
    severity: Severity = Severity.INFO
    on_click: Callable[[], None] | None = None
    id: str | None = None
    auto_close: bool | int = True


class Notifier(Protocol):
    def notify(self, notice: Notice) -> None:
        ...


class LoggingNotifier:
    """Notifier that writes notices to a logger.

    Used when the host has no richer display surface (the console program
    and tests). Click handlers are not invoked.
    """

    def __init__(self, logger: logging.Logger | None = None) -> None:
        self._logger = logger or logging.getLogger("ums_admin.notices")

    def notify(self, notice: Notice) -> None:
        level = _SEVERITY_LEVELS.get(notice.severity, logging.INFO)
        if notice.title:
            self._logger.log(level, "%s: %s", notice.title, notice.message)
        else:
            self._logger.log(level, "%s", notice.message)
