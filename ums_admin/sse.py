"""Server-Sent Events client transport.

``EventSourceTransport.stream`` turns a URL into an endless sequence of
signals covering every connection attempt: a connecting signal as the
attempt starts, an open signal with the response status and content type,
the frames received, and a failure signal when the attempt ends. Between
attempts it sleeps according to its own backoff, so consumers only react
to signals and never schedule reconnects themselves.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import AsyncIterator, Callable, Mapping, Union

import aiohttp

EVENT_STREAM_CONTENT_TYPE = "text/event-stream"
DEFAULT_EVENT_NAME = "message"

log = logging.getLogger("ums_admin.sse")


class StreamClosedError(Exception):
    """Raised when the server ends an event stream."""


@dataclass(frozen=True)
class SSEFrame:
    event: str = DEFAULT_EVENT_NAME
    data: str = ""
    id: str | None = None
    retry: int | None = None


@dataclass(frozen=True)
class StreamConnecting:
    attempt: int = 1


@dataclass(frozen=True)
class StreamOpened:
    status: int
    content_type: str


@dataclass(frozen=True)
class StreamFailed:
    error: BaseException


StreamSignal = Union[StreamConnecting, StreamOpened, SSEFrame, StreamFailed]


def is_event_stream(content_type: str | None) -> bool:
    if not content_type:
        return False
    return content_type.split(";", 1)[0].strip().lower() == EVENT_STREAM_CONTENT_TYPE


class SSEParser:
    """Incremental parser for the text/event-stream line format."""

    def __init__(self) -> None:
        self._event = ""
        self._data: list[str] = []
        self._id: str | None = None
        self._retry: int | None = None
        self._first_line = True
        self.last_event_id: str | None = None
        self.retry_ms: int | None = None

    def feed_line(self, line: str) -> SSEFrame | None:
        """Consume one line (with or without its terminator).

        Returns a frame when ``line`` is the blank line ending an event that
        carried data, otherwise None.
        """
        line = line.rstrip("\r\n")
        if self._first_line:
            self._first_line = False
            line = line.lstrip("\ufeff")

        if not line:
            return self._dispatch()
        if line.startswith(":"):
            return None

        field, sep, value = line.partition(":")
        if sep and value.startswith(" "):
            value = value[1:]

        if field == "event":
            self._event = value
        elif field == "data":
            self._data.append(value)
        elif field == "id":
            if "\x00" not in value:
                self._id = value
                self.last_event_id = value
        elif field == "retry":
            if value.isascii() and value.isdigit():
                self._retry = int(value)
                self.retry_ms = self._retry
        return None

    def _dispatch(self) -> SSEFrame | None:
        event, data, frame_id, retry = self._event, self._data, self._id, self._retry
        self._event = ""
        self._data = []
        self._id = None
        self._retry = None
        if not data:
            return None
        return SSEFrame(
            event=event or DEFAULT_EVENT_NAME,
            data="\n".join(data),
            id=frame_id,
            retry=retry,
        )


class EventSourceTransport:
    """Reconnecting SSE reader on top of an ``aiohttp.ClientSession``."""

    def __init__(
        self,
        session: aiohttp.ClientSession,
        *,
        retry_delay: float = 1.0,
        max_retry_delay: float = 30.0,
        connect_timeout: float = 10.0,
        read_timeout: float | None = 90.0,
    ) -> None:
        if retry_delay <= 0:
            raise ValueError("retry_delay must be positive")
        self._session = session
        self._retry_delay = float(retry_delay)
        self._max_retry_delay = max(float(max_retry_delay), self._retry_delay)
        self._timeout = aiohttp.ClientTimeout(
            total=None,
            sock_connect=connect_timeout,
            sock_read=read_timeout,
        )

    @property
    def retry_delay(self) -> float:
        return self._retry_delay

    def next_delay(self, failures: int) -> float:
        if failures <= 1:
            return self._retry_delay
        delay = self._retry_delay * (2 ** (failures - 1))
        return min(delay, self._max_retry_delay)

    async def stream(
        self,
        url: str,
        headers_factory: Callable[[], Mapping[str, str]],
    ) -> AsyncIterator[StreamSignal]:
        failures = 0
        attempt = 0
        last_event_id: str | None = None
        while True:
            attempt += 1
            yield StreamConnecting(attempt)
            try:
                headers = dict(headers_factory())
                if last_event_id:
                    headers["Last-Event-ID"] = last_event_id
                async with self._session.get(url, headers=headers, timeout=self._timeout) as response:
                    content_type = response.headers.get("Content-Type", "")
                    yield StreamOpened(response.status, content_type)
                    response.raise_for_status()
                    if is_event_stream(content_type):
                        failures = 0
                        parser = SSEParser()
                        async for raw_line in response.content:
                            frame = parser.feed_line(raw_line.decode("utf-8", errors="replace"))
                            if parser.retry_ms is not None:
                                self._retry_delay = max(parser.retry_ms / 1000.0, 0.001)
                                parser.retry_ms = None
                            if frame is not None:
                                if frame.id is not None:
                                    last_event_id = frame.id
                                yield frame
                        raise StreamClosedError("server closed the event stream")
                    # not an event stream: back off without reporting a failure
                    failures += 1
                    log.debug(
                        "Event stream %s answered with content type %r; retrying",
                        url,
                        content_type,
                    )
            except (aiohttp.ClientError, asyncio.TimeoutError, StreamClosedError) as exc:
                failures += 1
                log.debug("Event stream attempt %d failed: %s", attempt, exc)
                yield StreamFailed(exc)
            except Exception as exc:
                failures += 1
                log.exception("Event stream attempt %d failed unexpectedly", attempt)
                yield StreamFailed(exc)
            await asyncio.sleep(self.next_delay(max(failures, 1)))
