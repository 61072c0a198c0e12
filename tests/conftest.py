"""Shared fixtures: a local aiohttp server with scripted endpoints."""

from __future__ import annotations

import asyncio

import pytest
import pytest_asyncio
from aiohttp import web
from aiohttp.test_utils import TestServer


class ScriptedStatuses:
    """Hands out a queue of status codes, repeating the last one when exhausted."""

    def __init__(self) -> None:
        self.statuses: list[int] = []
        self.seen: list[dict] = []

    def next(self) -> int:
        if len(self.statuses) > 1:
            return self.statuses.pop(0)
        return self.statuses[0] if self.statuses else 200


def build_app(script: ScriptedStatuses) -> web.Application:
    async def ok(request: web.Request) -> web.Response:
        return web.Response(text="ok")

    async def fail(request: web.Request) -> web.Response:
        return web.Response(status=503, text="unavailable")

    async def slow(request: web.Request) -> web.Response:
        await asyncio.sleep(0.25)
        return web.Response(text="slow")

    async def hang(request: web.Request) -> web.Response:
        await asyncio.sleep(2)
        return web.Response(text="late")

    async def scripted(request: web.Request) -> web.Response:
        return web.Response(status=script.next())

    async def echo(request: web.Request) -> web.Response:
        script.seen.append({
            "method": request.method,
            "headers": {key.lower(): value for key, value in request.headers.items()},
            "body": await request.text(),
        })
        return web.Response(text="echo")

    app = web.Application()
    app.router.add_route("*", "/ok", ok)
    app.router.add_route("*", "/fail", fail)
    app.router.add_route("*", "/slow", slow)
    app.router.add_route("*", "/hang", hang)
    app.router.add_route("*", "/scripted", scripted)
    app.router.add_route("*", "/echo", echo)
    return app


@pytest.fixture
def script() -> ScriptedStatuses:
    return ScriptedStatuses()


@pytest_asyncio.fixture
async def server(script: ScriptedStatuses):
    test_server = TestServer(build_app(script), host="127.0.0.1")
    await test_server.start_server()
    try:
        yield test_server
    finally:
        await test_server.close()


@pytest.fixture
def url_for(server: TestServer):
    def _url_for(path: str) -> str:
        return str(server.make_url(path))
    return _url_for
