from __future__ import annotations

import json
import sys
from pathlib import Path

import httpx
import pytest

sys.path.insert(0, str(Path(__file__).resolve().parents[1] / "src"))

from chatgpt_webui.tools.browser import (
    SESSION_COOKIE,
    BrowserTool,
    parse_json_document,
    summarize_error_payload,
)
from chatgpt_webui.tools.errors import BackendRequestError, is_crash_signal


class Backend:
    """Records requests and answers from a route table of ``(method, path) -> response``."""

    def __init__(self, routes: dict[tuple[str, str], object]) -> None:
        self.routes = routes
        self.requests: list[httpx.Request] = []
        self.sleeps: list[float] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        route = self.routes.get((request.method, request.url.path))
        if route is None:
            return httpx.Response(404, json={"error": f"no route {request.url.path}"})
        if callable(route):
            return route(request)
        if isinstance(route, list):
            route = route.pop(0) if len(route) > 1 else route[0]
        # Canned responses may be served more than once.
        return httpx.Response(route.status_code, content=route.content, headers=route.headers)

    def paths(self, method: str | None = None) -> list[str]:
        return [r.url.path for r in self.requests if method is None or r.method == method]

    async def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)

    def tool(self, **kwargs) -> BrowserTool:
        return BrowserTool(
            "http://browser.local:9377/",
            user_id="u1",
            transport=httpx.MockTransport(self),
            sleep=self.sleep,
            **kwargs,
        )


def _ok(**body) -> httpx.Response:
    return httpx.Response(200, json={"ok": True, **body})


def test_parse_json_document_direct_line() -> None:
    text = '- document:\n  - text: {"accessToken": "abc", "user": {"id": 1}}'
    assert parse_json_document(text) == {"accessToken": "abc", "user": {"id": 1}}


def test_parse_json_document_double_encoded() -> None:
    inner = json.dumps({"models": [1, 2]})
    text = f"- paragraph: {json.dumps(inner)}"
    assert parse_json_document(text) == {"models": [1, 2]}


def test_parse_json_document_brace_scan() -> None:
    text = '- generic [e1]:\n  - pre: {"a": {"b": 2}} trailing'
    assert parse_json_document(text) == {"a": {"b": 2}}


def test_parse_json_document_none() -> None:
    assert parse_json_document("- heading \"Just a moment...\"") is None
    assert parse_json_document("") is None


def test_summarize_error_payload() -> None:
    assert summarize_error_payload('{"detail": "tab not found"}') == "tab not found"
    assert summarize_error_payload("  Bad\n gateway  ") == "Bad gateway"
    assert len(summarize_error_payload("x" * 1000)) == 300


@pytest.mark.asyncio
async def test_create_tab_returns_id() -> None:
    backend = Backend({("POST", "/tabs"): _ok(tabId="t-1")})
    assert await backend.tool().create_tab() == "t-1"
    body = json.loads(backend.requests[0].content)
    assert body["userId"] == "u1"
    assert body["sessionKey"] == "chatgpt-webui"


@pytest.mark.asyncio
async def test_create_tab_restarts_crashed_browser() -> None:
    crashed = httpx.Response(500, json={"error": "Target page, context or browser has been closed"})
    backend = Backend({
        ("POST", "/tabs"): [crashed, _ok(tabId="t-2")],
        ("POST", "/start"): _ok(),
    })
    assert await backend.tool().create_tab() == "t-2"
    assert backend.paths("POST") == ["/tabs", "/start", "/tabs"]
    assert backend.sleeps == [1.0]


@pytest.mark.parametrize(
    ("message", "crashed"),
    [
        ("browser_request_failed_500: internal", True),
        ("browser_request_failed_400: Target page, context or browser has been closed", True),
        ("browser_request_failed_409: Browser has been closed", True),
        ("browser_network_error on /tabs: Page crashed", True),
        ("browser_request_failed_404: Tab not found or already closed", False),
        ("browser_request_failed_409: dialog closed before click", False),
        ("browser_request_failed_400: bad user", False),
    ],
)
def test_crash_signal_ignores_the_error_prefix(message: str, crashed: bool) -> None:
    assert is_crash_signal(message) is crashed


@pytest.mark.asyncio
async def test_closed_tab_error_does_not_restart_backend() -> None:
    backend = Backend({
        ("POST", "/tabs"): httpx.Response(404, json={"error": "Tab not found or already closed"}),
        ("POST", "/start"): _ok(),
    })
    with pytest.raises(BackendRequestError):
        await backend.tool().create_tab()
    assert backend.paths("POST") == ["/tabs"]
    assert backend.sleeps == []


@pytest.mark.asyncio
async def test_create_tab_other_errors_propagate() -> None:
    backend = Backend({("POST", "/tabs"): httpx.Response(400, json={"error": "bad user"})})
    with pytest.raises(BackendRequestError) as exc:
        await backend.tool().create_tab()
    assert str(exc.value) == "browser_request_failed_400: bad user"
    assert exc.value.status_code == 400
    assert backend.paths() == ["/tabs"]


@pytest.mark.asyncio
async def test_create_tab_missing_id() -> None:
    backend = Backend({("POST", "/tabs"): _ok()})
    with pytest.raises(BackendRequestError) as exc:
        await backend.tool().create_tab()
    assert "missing_tab_id" in str(exc.value)


@pytest.mark.asyncio
async def test_invalid_json_response() -> None:
    backend = Backend({("GET", "/tabs/t-1/snapshot"): httpx.Response(200, text="<html>")})
    with pytest.raises(BackendRequestError) as exc:
        await backend.tool().snapshot("t-1")
    assert str(exc.value).startswith("browser_invalid_json_response_for_")


@pytest.mark.asyncio
async def test_cookie_import_replaces_stale_cookies() -> None:
    backend = Backend({("POST", "/sessions/u1/cookies"): _ok()})
    await backend.tool().import_session_cookie("tok")
    cookies = json.loads(backend.requests[0].content)["cookies"]
    assert len(cookies) == 4
    assert {c["name"] for c in cookies} == {SESSION_COOKIE}
    assert [c["value"] for c in cookies] == ["", "", "tok", "tok"]
    assert {c["domain"] for c in cookies} == {".chatgpt.com", "chatgpt.com"}


@pytest.mark.asyncio
async def test_cookie_import_forbidden_without_api_key() -> None:
    backend = Backend({("POST", "/sessions/u1/cookies"): httpx.Response(403, json={"error": "forbidden"})})
    await backend.tool().import_session_cookie("tok")

    with pytest.raises(BackendRequestError):
        await backend.tool(api_key="k").import_session_cookie("tok")
    assert backend.requests[-1].headers["Authorization"] == "Bearer k"


@pytest.mark.asyncio
async def test_try_wait_swallows_backend_errors() -> None:
    backend = Backend({("POST", "/tabs/t-1/wait"): httpx.Response(504, json={"error": "timeout"})})
    tool = backend.tool()
    await tool.try_wait("t-1", 1000)
    with pytest.raises(BackendRequestError):
        await tool.wait("t-1", 1000)


@pytest.mark.asyncio
async def test_snapshot_text_all_follows_offsets() -> None:
    def snapshot(request: httpx.Request) -> httpx.Response:
        offset = int(request.url.params.get("offset", "0"))
        if offset == 0:
            return _ok(url="https://chatgpt.com/", snapshot="- part one", hasMore=True, nextOffset=100)
        return _ok(url="https://chatgpt.com/", snapshot="- part two", hasMore=False)

    backend = Backend({("GET", "/tabs/t-1/snapshot"): snapshot})
    assert await backend.tool().snapshot_text_all("t-1") == "- part one\n- part two"


@pytest.mark.asyncio
async def test_snapshot_all_keeps_first_chunk_url() -> None:
    def snapshot(request: httpx.Request) -> httpx.Response:
        offset = int(request.url.params.get("offset", "0"))
        if offset == 0:
            return _ok(url="https://chatgpt.com/c/abc", snapshot="- head", hasMore=True, nextOffset=10)
        if offset == 10:
            return _ok(url="", snapshot="- middle", hasMore=True, nextOffset=20)
        return _ok(url="", snapshot="- tail", hasMore=True, nextOffset=30)

    backend = Backend({("GET", "/tabs/t-1/snapshot"): snapshot})
    snap = await backend.tool().snapshot_all("t-1", max_chunks=3)
    assert snap.url == "https://chatgpt.com/c/abc"
    assert snap.text == "- head\n- middle\n- tail"
    assert len(backend.requests) == 3


@pytest.mark.asyncio
async def test_click_requires_target() -> None:
    backend = Backend({})
    with pytest.raises(BackendRequestError):
        await backend.tool().click("t-1")
    assert backend.requests == []


@pytest.mark.asyncio
async def test_screenshot_data_url() -> None:
    backend = Backend({
        ("GET", "/tabs/t-1/screenshot"): httpx.Response(200, content=b"\x89PNG", headers={"content-type": "image/png"}),
    })
    data_url, size = await backend.tool().screenshot("t-1")
    assert data_url == "data:image/png;base64,iVBORw=="
    assert size == 4


@pytest.mark.asyncio
async def test_fetch_json_document_uses_throwaway_tab() -> None:
    backend = Backend({
        ("POST", "/tabs"): _ok(tabId="t-9"),
        ("POST", "/sessions/u1/cookies"): _ok(),
        ("POST", "/tabs/t-9/navigate"): _ok(),
        ("POST", "/tabs/t-9/wait"): _ok(),
        ("GET", "/tabs/t-9/snapshot"): [
            _ok(url="https://chatgpt.com/api/auth/session", snapshot='- heading "Just a moment..."'),
            _ok(url="https://chatgpt.com/api/auth/session", snapshot='- text: {"accessToken": "a1"}'),
        ],
        ("DELETE", "/tabs/t-9"): _ok(),
    })
    doc = await backend.tool().fetch_json_document("https://chatgpt.com/api/auth/session", "tok")
    assert doc == {"accessToken": "a1"}
    assert backend.paths("DELETE") == ["/tabs/t-9"]
    navigate = next(r for r in backend.requests if r.url.path.endswith("/navigate"))
    assert json.loads(navigate.content)["url"] == "https://chatgpt.com/api/auth/session"
