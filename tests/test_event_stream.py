import asyncio
import json

from aiohttp.test_utils import TestClient, TestServer

from ums_admin.credentials import StaticTokenProvider
from ums_admin.event_stream import (
    ConfigurationChanged,
    ConnectionState,
    EventStreamClient,
    MemorySnapshot,
    MemoryUpdate,
    ScanLibraryStatus,
    parse_server_event,
)
from ums_admin.notifications import Severity
from ums_admin.sse import EventSourceTransport, SSEFrame, StreamConnecting, StreamFailed, StreamOpened

SSE = "text/event-stream"


def sse_event(payload, event="message"):
    data = payload if isinstance(payload, str) else json.dumps(payload)
    return f"event: {event}\ndata: {data}\n\n"


def _frame(payload, event="message"):
    data = payload if isinstance(payload, str) else json.dumps(payload)
    return SSEFrame(event=event, data=data)


class QueueTransport:
    """Transport double fed by the test; ``None`` marks a new attempt."""

    def __init__(self):
        self.queue = asyncio.Queue()
        self.headers = []

    async def stream(self, url, headers_factory):
        attempt = 1
        yield StreamConnecting(attempt)
        self.headers.append(headers_factory())
        while True:
            signal = await self.queue.get()
            if signal is None:
                attempt += 1
                yield StreamConnecting(attempt)
                self.headers.append(headers_factory())
                continue
            yield signal


async def _wait_for(predicate, timeout=3.0):
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not reached in time")
        await asyncio.sleep(0.01)


def _client(notifier, transport=None, token="tok"):
    return EventStreamClient(
        transport or QueueTransport(),
        url="http://ums.local/v1/api/sse/",
        token_provider=StaticTokenProvider(token),
        notifier=notifier,
    )


def test_repeated_errors_notify_once(notifier):
    client = _client(notifier)
    client.handle_error(ConnectionError("down"))
    client.handle_error(ConnectionError("down"))
    client.handle_error(ConnectionError("down"))

    assert client.state is ConnectionState.ERROR
    assert len(notifier.notices) == 1
    assert notifier.notices[0].severity is Severity.ERROR


def test_each_outage_notifies_again_after_recovery(notifier):
    client = _client(notifier)
    client.handle_error(ConnectionError("down"))
    assert client.handle_open(200, "text/event-stream; charset=utf-8")
    assert client.state is ConnectionState.CONNECTED
    assert not client.outage_notified
    client.handle_error(ConnectionError("down again"))

    assert len(notifier.notices) == 2


def test_unverified_open_does_not_clear_outage(notifier):
    client = _client(notifier)
    client.handle_error(ConnectionError("down"))

    client.handle_connecting(2)
    assert client.state is ConnectionState.CONNECTING
    assert client.outage_notified

    assert not client.handle_open(200, "text/html")
    assert not client.handle_open(503, SSE)
    assert client.outage_notified
    assert client.state is ConnectionState.CONNECTING

    client.handle_error(ConnectionError("still down"))
    assert len(notifier.notices) == 1


def test_memory_frame_updates_snapshot(notifier):
    client = _client(notifier)
    event = client.handle_frame(_frame({"action": "update_memory", "max": 4096, "used": 512, "buffer": 64}))

    assert event == MemoryUpdate(max=4096, used=512, buffer=64)
    assert client.memory == MemorySnapshot(max=4096, used=512, buffer=64)


def test_message_frame_updates_display_text(notifier):
    client = _client(notifier)
    client.handle_frame(_frame({"action": "show_message", "message": "Scanning library"}))
    assert client.message == "Scanning library"


def test_unknown_and_malformed_frames_change_nothing(notifier):
    client = _client(notifier)
    client.handle_frame(_frame({"action": "update_memory", "max": 10, "used": 5, "buffer": 1}))
    before = (client.memory, client.message, client.reloadable, client.scan_library, client.state)

    assert client.handle_frame(_frame({"action": "launch_rockets", "count": 3})) is None
    assert client.handle_frame(_frame("{broken json")) is None
    assert client.handle_frame(_frame("[1, 2, 3]")) is None
    assert client.handle_frame(_frame({"action": "update_memory", "max": "lots"})) is None
    assert client.handle_frame(_frame({"no_action": True})) is None

    after = (client.memory, client.message, client.reloadable, client.scan_library, client.state)
    assert after == before
    assert notifier.notices == []


def test_frames_for_other_event_names_are_ignored(notifier):
    client = _client(notifier)
    assert client.handle_frame(_frame({"action": "show_message", "message": "hi"}, event="heartbeat")) is None
    assert client.message == ""


def test_server_notice_is_forwarded_with_mapped_severity(notifier):
    client = _client(notifier)
    client.handle_frame(
        _frame({"action": "notify", "title": "Scan", "message": "Done", "color": "green", "autoClose": False})
    )
    client.handle_frame(_frame({"action": "notify", "message": "Disk full", "color": "red"}))

    first, second = notifier.notices
    assert (first.title, first.message, first.severity, first.auto_close) == ("Scan", "Done", Severity.SUCCESS, False)
    assert second.severity is Severity.ERROR


def test_status_flags_and_listeners(notifier):
    client = _client(notifier)
    seen = []
    client.add_listener(seen.append)

    def broken_listener(event):
        raise RuntimeError("listener bug")

    client.add_listener(broken_listener)

    client.handle_frame(_frame({"action": "set_reloadable", "value": True}))
    client.handle_frame(_frame({"action": "set_scanlibrary_status", "enabled": True, "running": False}))
    client.handle_frame(_frame({"action": "set_configuration_changed", "value": {"server_name": "Den"}}))

    assert client.reloadable is True
    assert client.scan_library == ScanLibraryStatus(enabled=True, running=False)
    assert client.last_configuration_update == {"server_name": "Den"}
    assert seen[-1] == ConfigurationChanged(values={"server_name": "Den"})
    assert len(seen) == 3

    client.remove_listener(broken_listener)
    client.remove_listener(broken_listener)


def test_parse_server_event_handles_every_known_action():
    assert parse_server_event('{"action": "show_message", "message": null}').message == ""
    assert parse_server_event('{"action": "set_reloadable", "value": "yes"}') is None
    assert parse_server_event('{"action": "set_configuration_changed"}') is None
    assert parse_server_event('"just a string"') is None


def test_lifecycle_with_queue_transport(notifier):
    async def runner():
        transport = QueueTransport()
        client = _client(notifier, transport)
        assert client.state is ConnectionState.DISCONNECTED

        client.start()
        assert client.state is ConnectionState.CONNECTING
        client.start()  # already active

        await transport.queue.put(StreamOpened(200, SSE))
        await transport.queue.put(_frame({"action": "show_message", "message": "one"}))
        await _wait_for(lambda: client.message == "one")
        assert client.state is ConnectionState.CONNECTED
        assert transport.headers == [{"Authorization": "Bearer tok", "Accept": SSE}]

        await transport.queue.put(StreamFailed(ConnectionError("reset")))
        await _wait_for(lambda: client.state is ConnectionState.ERROR)

        # retry: back to connecting, outage still flagged
        await transport.queue.put(None)
        await _wait_for(lambda: client.state is ConnectionState.CONNECTING)
        assert client.outage_notified
        assert len(transport.headers) == 2

        await transport.queue.put(StreamOpened(200, "text/html"))
        await transport.queue.put(StreamFailed(ConnectionError("refused")))
        await _wait_for(lambda: client.state is ConnectionState.ERROR)
        assert len(notifier.notices) == 1

        await transport.queue.put(None)
        await transport.queue.put(StreamOpened(200, SSE))
        await _wait_for(lambda: client.state is ConnectionState.CONNECTED)
        assert not client.outage_notified

        await client.dispose()
        assert client.state is ConnectionState.DISCONNECTED

        # nothing reads the old stream any more
        await transport.queue.put(StreamOpened(200, SSE))
        await transport.queue.put(_frame({"action": "show_message", "message": "stale"}))
        await asyncio.sleep(0.05)
        assert client.message == "one"
        assert client.state is ConnectionState.DISCONNECTED

    asyncio.run(runner())


def test_token_is_read_on_every_attempt(notifier):
    async def runner():
        transport = QueueTransport()
        tokens = StaticTokenProvider("first")
        client = EventStreamClient(transport, url="http://ums.local/sse", token_provider=tokens, notifier=notifier)
        client.start()
        await _wait_for(lambda: len(transport.headers) == 1)
        tokens.token = "refreshed"
        await transport.queue.put(None)
        await _wait_for(lambda: len(transport.headers) == 2)
        await client.dispose()
        return [h["Authorization"] for h in transport.headers]

    assert asyncio.run(runner()) == ["Bearer first", "Bearer refreshed"]


async def _start_client(app):
    server = TestServer(app)
    client = TestClient(server)
    await client.start_server()
    return client, server


def test_live_stream_against_server(fake_ums, notifier):
    fake_ums.sse_chunks = [
        ": connected\n\n",
        sse_event({}, event="heartbeat"),
        sse_event({"action": "update_memory", "max": 2048, "used": 300, "buffer": 20}),
        sse_event({"action": "launch_rockets"}),
        sse_event("{oops"),
        sse_event({"action": "show_message", "message": "Library scan finished"}),
    ]

    async def runner():
        http, server = await _start_client(fake_ums.build_app())
        transport = EventSourceTransport(http.session, retry_delay=0.01, max_retry_delay=0.05)
        client = EventStreamClient(
            transport,
            url=str(server.make_url("/v1/api/sse/")),
            token_provider=StaticTokenProvider("secret"),
            notifier=notifier,
        )
        try:
            client.start()
            await _wait_for(lambda: client.message == "Library scan finished")
            assert client.state is ConnectionState.CONNECTED
            assert client.memory == MemorySnapshot(max=2048, used=300, buffer=20)
        finally:
            await client.dispose()
            fake_ums.release.set()
            await http.close()
            await server.close()

    asyncio.run(runner())
    assert fake_ums.sse_auth[0] == "Bearer secret"
    assert notifier.notices == []


def test_flaky_server_notifies_once_per_outage(fake_ums, notifier):
    fake_ums.sse_status = 503

    async def runner():
        http, server = await _start_client(fake_ums.build_app())
        transport = EventSourceTransport(http.session, retry_delay=0.01, max_retry_delay=0.02)
        client = EventStreamClient(
            transport,
            url=str(server.make_url("/v1/api/sse/")),
            token_provider=StaticTokenProvider("secret"),
            notifier=notifier,
        )
        try:
            client.start()
            await _wait_for(lambda: len(fake_ums.sse_auth) >= 4)
            assert client.state in (ConnectionState.ERROR, ConnectionState.CONNECTING)
            assert client.outage_notified
            assert len(notifier.notices) == 1

            fake_ums.sse_status = 200
            fake_ums.sse_chunks = [sse_event({"action": "show_message", "message": "back"})]
            await _wait_for(lambda: client.message == "back")
            assert client.state is ConnectionState.CONNECTED
            assert not client.outage_notified

            # server drops the stream: a new outage
            fake_ums.keep_open = False
            fake_ums.sse_status = 503
            fake_ums.release.set()
            await _wait_for(lambda: len(notifier.notices) == 2)
        finally:
            await client.dispose()
            fake_ums.release.set()
            await http.close()
            await server.close()

    asyncio.run(runner())
    assert all(n.severity is Severity.ERROR for n in notifier.notices)


def test_malformed_retry_field_does_not_end_the_stream(fake_ums, notifier):
    fake_ums.keep_open = False
    fake_ums.sse_chunks = [
        "retry: ²\n\n",
        sse_event({"action": "update_memory", "max": 100, "used": 10, "buffer": 1}),
    ]

    async def runner():
        http, server = await _start_client(fake_ums.build_app())
        transport = EventSourceTransport(http.session, retry_delay=0.01, max_retry_delay=0.02)
        client = EventStreamClient(
            transport,
            url=str(server.make_url("/v1/api/sse/")),
            token_provider=StaticTokenProvider("secret"),
            notifier=notifier,
        )
        try:
            client.start()
            await _wait_for(lambda: len(fake_ums.sse_auth) >= 3)
            assert client.memory == MemorySnapshot(max=100, used=10, buffer=1)
            assert not client._task.done()
        finally:
            await client.dispose()
            await http.close()
            await server.close()

    asyncio.run(runner())
    # each server-side close is one outage after a verified open
    assert all(n.id == "connection-lost" for n in notifier.notices)
