"""Live server notifications over the UMS event stream.

``EventStreamClient`` tracks the connection state of a single Server-Sent
Events connection and applies the typed events it receives. Wire payloads
are JSON objects tagged by ``action``; ``EVENT_PARSERS`` maps each known
action onto the dataclass that represents it and the client keeps a matching
handler table, so adding an action means adding one entry to each.

Reconnection timing belongs to the transport. The client only mirrors the
attempts into ``state`` and makes sure one continuous outage produces one
"server unreachable" notice, however many times the transport retries.
"""

from __future__ import annotations

import asyncio
import contextlib
import enum
import json
import logging
from dataclasses import dataclass
from typing import Any, Callable, Dict, Mapping, Union

from .credentials import TokenProvider
from .notifications import LoggingNotifier, Notice, Notifier, Severity, message_text, severity_from_color
from .sse import (
    DEFAULT_EVENT_NAME,
    EVENT_STREAM_CONTENT_TYPE,
    EventSourceTransport,
    SSEFrame,
    StreamConnecting,
    StreamFailed,
    StreamOpened,
    is_event_stream,
)

log = logging.getLogger("ums_admin.events")


class ConnectionState(enum.Enum):
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    ERROR = "error"


def _as_int(value: Any) -> int:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise ValueError(f"expected a number, got {value!r}")
    return int(value)


def _as_bool(value: Any) -> bool:
    if not isinstance(value, bool):
        raise ValueError(f"expected a boolean, got {value!r}")
    return value


def _as_text(value: Any) -> str:
    if value is None:
        return ""
    if not isinstance(value, str):
        raise ValueError(f"expected a string, got {value!r}")
    return value


@dataclass(frozen=True)
class MemorySnapshot:
    max: int = 0
    used: int = 0
    buffer: int = 0


@dataclass(frozen=True)
class MemoryUpdate:
    max: int
    used: int
    buffer: int

    @classmethod
    def from_payload(cls, payload: Mapping[str, Any]) -> "MemoryUpdate":
        return cls(
            max=_as_int(payload.get("max")),
            used=_as_int(payload.get("used")),
            buffer=_as_int(payload.get("buffer")),
        )


@dataclass(frozen=True)
class MessageUpdate:
    message: str

    @classmethod
    def from_payload(cls, payload: Mapping[str, Any]) -> "MessageUpdate":
        return cls(message=_as_text(payload.get("message")))


@dataclass(frozen=True)
class ServerNotice:
    title: str
    message: str
    color: str
    id: str | None = None
    auto_close: bool | int = True

    @classmethod
    def from_payload(cls, payload: Mapping[str, Any]) -> "ServerNotice":
        auto_close = payload.get("autoClose", True)
        if not isinstance(auto_close, (bool, int)):
            raise ValueError(f"unexpected autoClose {auto_close!r}")
        notice_id = payload.get("id")
        return cls(
            title=_as_text(payload.get("title")),
            message=_as_text(payload.get("message")),
            color=_as_text(payload.get("color")),
            id=str(notice_id) if notice_id is not None else None,
            auto_close=auto_close,
        )


@dataclass(frozen=True)
class ConfigurationChanged:
    values: Dict[str, Any]

    @classmethod
    def from_payload(cls, payload: Mapping[str, Any]) -> "ConfigurationChanged":
        values = payload.get("value")
        if not isinstance(values, dict):
            raise ValueError("set_configuration_changed without a value object")
        return cls(values=values)


@dataclass(frozen=True)
class ReloadableUpdate:
    value: bool

    @classmethod
    def from_payload(cls, payload: Mapping[str, Any]) -> "ReloadableUpdate":
        return cls(value=_as_bool(payload.get("value")))


@dataclass(frozen=True)
class ScanLibraryStatus:
    enabled: bool = False
    running: bool = False

    @classmethod
    def from_payload(cls, payload: Mapping[str, Any]) -> "ScanLibraryStatus":
        return cls(
            enabled=_as_bool(payload.get("enabled")),
            running=_as_bool(payload.get("running")),
        )


ServerEvent = Union[
    MemoryUpdate,
    MessageUpdate,
    ServerNotice,
    ConfigurationChanged,
    ReloadableUpdate,
    ScanLibraryStatus,
]

EVENT_PARSERS: Dict[str, Callable[[Mapping[str, Any]], ServerEvent]] = {
    "update_memory": MemoryUpdate.from_payload,
    "show_message": MessageUpdate.from_payload,
    "notify": ServerNotice.from_payload,
    "set_configuration_changed": ConfigurationChanged.from_payload,
    "set_reloadable": ReloadableUpdate.from_payload,
    "set_scanlibrary_status": ScanLibraryStatus.from_payload,
}


def parse_server_event(data: str) -> ServerEvent | None:
    """Decode one frame payload; returns None for anything not understood."""
    try:
        payload = json.loads(data)
    except ValueError:
        log.debug("Dropping event with malformed JSON: %.200s", data)
        return None
    if not isinstance(payload, dict):
        log.debug("Dropping non-object event payload: %.200s", data)
        return None
    action = payload.get("action")
    parser = EVENT_PARSERS.get(action) if isinstance(action, str) else None
    if parser is None:
        log.debug("Ignoring event with unknown action %r", action)
        return None
    try:
        return parser(payload)
    except ValueError as exc:
        log.debug("Dropping malformed %s event: %s", action, exc)
        return None


EventListener = Callable[[ServerEvent], None]


class EventStreamClient:
    """Owns one event-stream connection and the state it feeds."""

    def __init__(
        self,
        transport: EventSourceTransport,
        *,
        url: str,
        token_provider: TokenProvider,
        notifier: Notifier | None = None,
        event_name: str = DEFAULT_EVENT_NAME,
        i18n: Mapping[str, str] | None = None,
    ) -> None:
        self._transport = transport
        self._url = url
        self._token_provider = token_provider
        self._notifier = notifier or LoggingNotifier()
        self._event_name = event_name
        self._i18n = i18n
        self._task: asyncio.Task | None = None
        self._generation = 0
        self._listeners: list[EventListener] = []
        self._handlers: Dict[type, Callable[[Any], None]] = {
            MemoryUpdate: self._apply_memory,
            MessageUpdate: self._apply_message,
            ServerNotice: self._apply_notice,
            ConfigurationChanged: self._apply_configuration,
            ReloadableUpdate: self._apply_reloadable,
            ScanLibraryStatus: self._apply_scan_library,
        }

        self.state = ConnectionState.DISCONNECTED
        self.outage_notified = False
        self.memory = MemorySnapshot()
        self.message = ""
        self.reloadable = False
        self.scan_library = ScanLibraryStatus()
        self.last_configuration_update: Dict[str, Any] | None = None

    @property
    def url(self) -> str:
        return self._url

    @property
    def active(self) -> bool:
        return self.state in (ConnectionState.CONNECTING, ConnectionState.CONNECTED)

    def add_listener(self, listener: EventListener) -> None:
        self._listeners.append(listener)

    def remove_listener(self, listener: EventListener) -> None:
        with contextlib.suppress(ValueError):
            self._listeners.remove(listener)

    def build_headers(self) -> Dict[str, str]:
        # re-read on every attempt so refreshed tokens are honoured
        token = self._token_provider.get_token()
        return {
            "Authorization": f"Bearer {token}",
            "Accept": EVENT_STREAM_CONTENT_TYPE,
        }

    # lifecycle

    def start(self) -> None:
        if self._task is not None and not self._task.done():
            return
        if self.active:
            return
        self._generation += 1
        self.state = ConnectionState.CONNECTING
        loop = asyncio.get_running_loop()
        self._task = loop.create_task(self._run(self._generation), name="ums-event-stream")

    init = start

    async def dispose(self) -> None:
        self._generation += 1
        self.state = ConnectionState.DISCONNECTED
        task = self._task
        self._task = None
        if task is None:
            return
        task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await task

    close = dispose

    async def _run(self, generation: int) -> None:
        signals = self._transport.stream(self._url, self.build_headers)
        try:
            async for signal in signals:
                if generation != self._generation:
                    return
                if isinstance(signal, StreamConnecting):
                    self.handle_connecting(signal.attempt)
                elif isinstance(signal, StreamOpened):
                    self.handle_open(signal.status, signal.content_type)
                elif isinstance(signal, StreamFailed):
                    self.handle_error(signal.error)
                elif isinstance(signal, SSEFrame):
                    self.handle_frame(signal)
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            log.exception("Event stream reader stopped unexpectedly")
            if generation == self._generation:
                self.handle_error(exc)
        finally:
            await signals.aclose()

    # state machine

    def handle_connecting(self, attempt: int = 1) -> None:
        # the outage flag survives retries; only a verified open clears it
        if self.state is not ConnectionState.CONNECTING:
            log.debug("Event stream attempt %d to %s", attempt, self._url)
        self.state = ConnectionState.CONNECTING

    def handle_open(self, status: int, content_type: str | None) -> bool:
        if 200 <= status < 300 and is_event_stream(content_type):
            if self.state is not ConnectionState.CONNECTED:
                log.info("Event stream connected to %s", self._url)
            self.state = ConnectionState.CONNECTED
            self.outage_notified = False
            return True
        # neither connected nor failed until the transport reports an error
        log.warning(
            "Event stream open not verified (status=%s, content type=%r)",
            status,
            content_type,
        )
        return False

    def handle_error(self, error: BaseException | None = None) -> None:
        self.state = ConnectionState.ERROR
        if self.outage_notified:
            log.debug("Event stream still unavailable: %s", error)
            return
        self.outage_notified = True
        log.warning("Event stream to %s lost: %s", self._url, error)
        self._notifier.notify(
            Notice(
                title=message_text(self._i18n, "Error"),
                message=message_text(self._i18n, "ServerUnreachable"),
                severity=Severity.ERROR,
                id="connection-lost",
            )
        )

    def handle_frame(self, frame: SSEFrame) -> ServerEvent | None:
        if frame.event != self._event_name:
            return None
        event = parse_server_event(frame.data)
        if event is None:
            return None
        self.dispatch(event)
        return event

    def dispatch(self, event: ServerEvent) -> None:
        handler = self._handlers.get(type(event))
        if handler is None:
            return
        handler(event)
        for listener in list(self._listeners):
            try:
                listener(event)
            except Exception:
                log.exception("Event listener %r failed on %s", listener, type(event).__name__)

    # handlers

    def _apply_memory(self, event: MemoryUpdate) -> None:
        self.memory = MemorySnapshot(max=event.max, used=event.used, buffer=event.buffer)

    def _apply_message(self, event: MessageUpdate) -> None:
        self.message = event.message

    def _apply_notice(self, event: ServerNotice) -> None:
        self._notifier.notify(
            Notice(
                title=event.title,
                message=event.message,
                severity=severity_from_color(event.color),
                id=event.id,
                auto_close=event.auto_close,
            )
        )

    def _apply_configuration(self, event: ConfigurationChanged) -> None:
        self.last_configuration_update = dict(event.values)

    def _apply_reloadable(self, event: ReloadableUpdate) -> None:
        self.reloadable = event.value

    def _apply_scan_library(self, event: ScanLibraryStatus) -> None:
        self.scan_library = event
