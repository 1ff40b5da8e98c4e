import asyncio
import contextlib

import pytest
from aiohttp import web

from ums_admin import config as config_module


class RecordingNotifier:
    def __init__(self):
        self.notices = []

    def notify(self, notice):
        self.notices.append(notice)


class FakeUMS:
    """In-process stand-in for the media server's web API."""

    def __init__(self):
        self.settings_payload = {"userSettings": {}}
        self.settings_status = 200
        self.settings_body = None
        self.post_status = 200
        self.posted = []
        self.settings_auth = []

        self.sse_chunks = []
        self.sse_status = 200
        self.sse_content_type = "text/event-stream"
        self.sse_auth = []
        self.sse_responder = None
        self.keep_open = True
        self.release = asyncio.Event()

    async def _settings_get(self, request):
        self.settings_auth.append(request.headers.get("Authorization"))
        if self.settings_status != 200:
            return web.json_response({"error": "boom"}, status=self.settings_status)
        if self.settings_body is not None:
            return web.Response(text=self.settings_body, content_type="application/json")
        return web.json_response(self.settings_payload)

    async def _settings_post(self, request):
        self.settings_auth.append(request.headers.get("Authorization"))
        self.posted.append(await request.json())
        if self.post_status != 200:
            return web.json_response({"error": "boom"}, status=self.post_status)
        return web.json_response({})

    async def _events(self, request):
        self.sse_auth.append(request.headers.get("Authorization"))
        if self.sse_responder is not None:
            override = self.sse_responder(request, len(self.sse_auth))
            if override is not None:
                return override
        if self.sse_status != 200 or self.sse_content_type != "text/event-stream":
            return web.Response(
                status=self.sse_status,
                text="nope",
                content_type=self.sse_content_type.split(";")[0],
            )
        response = web.StreamResponse(
            status=200,
            headers={"Content-Type": self.sse_content_type, "Cache-Control": "no-store"},
        )
        await response.prepare(request)
        for chunk in self.sse_chunks:
            await response.write(chunk.encode("utf-8"))
        if self.keep_open:
            with contextlib.suppress(asyncio.TimeoutError):
                await asyncio.wait_for(self.release.wait(), timeout=5)
        return response

    def build_app(self):
        app = web.Application()
        app.router.add_get("/v1/api/settings/", self._settings_get)
        app.router.add_post("/v1/api/settings/", self._settings_post)
        app.router.add_get("/v1/api/sse/", self._events)
        return app


@pytest.fixture
def fake_ums():
    return FakeUMS()


@pytest.fixture
def notifier():
    return RecordingNotifier()


@pytest.fixture
def clean_config(monkeypatch, tmp_path):
    monkeypatch.setattr(config_module, "_cfg_cache", None, raising=False)
    monkeypatch.setattr(config_module, "_search_paths", [], raising=False)
    monkeypatch.setattr(config_module, "_active_config_path", None, raising=False)
    for name in ("UMS_ADMIN_CONFIG", "UMS_ADMIN_URL", "UMS_ADMIN_TOKEN_ENV", "DEV"):
        monkeypatch.delenv(name, raising=False)
    monkeypatch.chdir(tmp_path)
    monkeypatch.setenv("HOME", str(tmp_path))
    yield tmp_path
    monkeypatch.setattr(config_module, "_cfg_cache", None, raising=False)
