"""
BrowserTool: thin async client for the remote browser automation backend
(a camofox-style REST server that owns tabs, cookies and snapshots).

Every call is a plain request/response over the backend's base URL:

* ``POST /tabs``                       create a tab in the user's session
* ``DELETE /tabs/{id}``                close it
* ``POST /tabs/{id}/navigate|wait|click|type|press``
* ``GET  /tabs/{id}/snapshot|links|stats|downloads|images|screenshot``
* ``POST /sessions/{user}/cookies``    inject cookies
* ``POST /start``                      restart the browser process

Failures raise ``BackendRequestError`` with a ``browser_`` prefixed message so
a failed step is easy to find in logs.
"""
from __future__ import annotations

import asyncio
import base64
import json
import logging
import re
import time
from typing import Any, Awaitable, Callable

import httpx

from ..snapshot import Snapshot
from .errors import BackendRequestError, is_crash_signal

log = logging.getLogger(__name__)

SESSION_COOKIE = "__Secure-next-auth.session-token"
_COOKIE_DOMAINS = (".chatgpt.com", "chatgpt.com")
_COOKIE_TTL_S = 60 * 60 * 24 * 30
_CREATE_TAB_ATTEMPTS = 4
_JSON_DOC_ATTEMPTS = 4
_CLOUDFLARE_RE = re.compile(r"Just a moment|cf-mitigated|Cloudflare", re.IGNORECASE)


def summarize_error_payload(raw: str) -> str:
    try:
        parsed = json.loads(raw)
    except (TypeError, ValueError):
        parsed = None
    if isinstance(parsed, dict):
        for key in ("detail", "message", "error"):
            detail = parsed.get(key)
            if isinstance(detail, str) and detail:
                return detail
    return re.sub(r"\s+", " ", raw or "").strip()[:300]


def _loads_object(raw: str) -> Any:
    try:
        value = json.loads(raw)
    except (TypeError, ValueError):
        return None
    return value


_TEXT_LINE_RE = re.compile(r"^(text|paragraph):\s*", re.IGNORECASE)


def parse_json_document(snapshot_text: str, *, max_starts: int = 120) -> dict | list | None:
    """Find the JSON body a browser rendered for a JSON URL.

    The page shows either the document itself or a JSON string holding it
    (double-encoded); failing both, scan for the first parseable ``{...}``.
    """
    for line in snapshot_text.splitlines():
        normalized = line.strip()
        if normalized.startswith("- "):
            normalized = normalized[2:]
        if not _TEXT_LINE_RE.match(normalized):
            continue
        raw_value = _TEXT_LINE_RE.sub("", normalized, count=1).strip()
        if not raw_value:
            continue
        direct = _loads_object(raw_value)
        if isinstance(direct, (dict, list)):
            return direct
        if isinstance(direct, str):
            inner = _loads_object(direct)
            if isinstance(inner, (dict, list)):
                return inner

    starts = [i for i, ch in enumerate(snapshot_text) if ch == "{"][:max_starts]
    for start in starts:
        end = len(snapshot_text)
        while end > start + 1:
            end = snapshot_text.rfind("}", start, end)
            if end < 0:
                break
            candidate = _loads_object(snapshot_text[start:end + 1])
            if isinstance(candidate, dict):
                return candidate
    return None


class BrowserTool:
    def __init__(
        self,
        base_url: str = "http://127.0.0.1:9377",
        *,
        user_id: str = "chatgpt-webui-mcp",
        session_key: str = "chatgpt-webui",
        api_key: str = "",
        timeout: float = 60.0,
        transport: httpx.AsyncBaseTransport | None = None,
        sleep: Callable[[float], Awaitable[None]] | None = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.user_id = user_id
        self.session_key = session_key
        self.api_key = api_key
        self.timeout = timeout
        self._transport = transport
        self.sleep = sleep or asyncio.sleep

    # ------------------------------------------------------------------
    # Transport
    # ------------------------------------------------------------------

    def _client(self, timeout: float | None = None) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            base_url=self.base_url,
            timeout=timeout or self.timeout,
            transport=self._transport,
        )

    async def _send(self, method: str, path: str, **kwargs: Any) -> httpx.Response:
        timeout = kwargs.pop("timeout", None)
        try:
            async with self._client(timeout) as client:
                return await client.request(method, path, **kwargs)
        except httpx.TimeoutException as exc:
            raise BackendRequestError(f"browser_request_timeout on {path}", retryable=False) from exc
        except httpx.HTTPError as exc:
            raise BackendRequestError(f"browser_network_error on {path}: {exc}", retryable=False) from exc

    async def _request(self, method: str, path: str, **kwargs: Any) -> dict[str, Any]:
        response = await self._send(method, path, **kwargs)
        raw = response.text
        if response.status_code >= 400:
            message = f"browser_request_failed_{response.status_code}: {summarize_error_payload(raw)}"
            raise BackendRequestError(
                message,
                status_code=response.status_code,
                retryable=is_crash_signal(message),
            )
        payload = _loads_object(raw)
        if not isinstance(payload, dict):
            raise BackendRequestError(f"browser_invalid_json_response_for_{path}")
        return payload

    async def _post(self, path: str, body: dict[str, Any], **kwargs: Any) -> dict[str, Any]:
        return await self._request("POST", path, json=body, **kwargs)

    # ------------------------------------------------------------------
    # Tab lifecycle
    # ------------------------------------------------------------------

    async def restart(self) -> None:
        try:
            await self._send("POST", "/start")
        except BackendRequestError as exc:
            log.warning("browser restart request failed: %s", exc)

    async def create_tab(self, url: str = "https://example.com/") -> str:
        """Open a tab; a crashed backend is restarted and retried with linear backoff."""
        for attempt in range(_CREATE_TAB_ATTEMPTS):
            try:
                payload = await self._post(
                    "/tabs",
                    {"userId": self.user_id, "sessionKey": self.session_key, "url": url},
                )
                tab_id = str(payload.get("tabId") or "").strip()
                if not tab_id:
                    raise BackendRequestError("browser_create_tab_failed_missing_tab_id")
                return tab_id
            except BackendRequestError as exc:
                if not is_crash_signal(str(exc)) or attempt == _CREATE_TAB_ATTEMPTS - 1:
                    raise
                log.warning("create_tab attempt %d hit a crashed browser: %s", attempt + 1, exc)
                await self.restart()
                await self.sleep(1.0 * (attempt + 1))
        raise BackendRequestError("browser_create_tab_failed")

    async def delete_tab(self, tab_id: str) -> None:
        try:
            await self._request("DELETE", f"/tabs/{tab_id}", json={"userId": self.user_id})
        except BackendRequestError as exc:
            log.debug("delete_tab %s failed: %s", tab_id, exc)

    async def import_session_cookie(self, session_token: str) -> None:
        """Replace every stale variant of the session cookie with the caller's token."""
        expired = 1
        expires = int(time.time()) + _COOKIE_TTL_S
        cookies = [
            {
                "name": SESSION_COOKIE,
                "value": value,
                "domain": domain,
                "path": "/",
                "expires": expiry,
                "httpOnly": True,
                "secure": True,
                "sameSite": "None",
            }
            # Host-only and domain cookies can coexist; clear both before setting.
            for value, expiry in (("", expired), (session_token, expires))
            for domain in _COOKIE_DOMAINS
        ]
        headers = {"Authorization": f"Bearer {self.api_key}"} if self.api_key else {}
        try:
            await self._post(f"/sessions/{self.user_id}/cookies", {"cookies": cookies}, headers=headers)
        except BackendRequestError as exc:
            if exc.status_code in (401, 403) and not self.api_key:
                log.debug("cookie import not authorised without an API key; continuing")
                return
            raise

    # ------------------------------------------------------------------
    # Navigation and snapshots
    # ------------------------------------------------------------------

    async def navigate(self, tab_id: str, url: str) -> None:
        await self._post(f"/tabs/{tab_id}/navigate", {"userId": self.user_id, "url": url})

    async def wait(self, tab_id: str, timeout_ms: int = 5000, wait_for_network: bool = True) -> None:
        await self._post(
            f"/tabs/{tab_id}/wait",
            {"userId": self.user_id, "timeout": timeout_ms, "waitForNetwork": wait_for_network},
            timeout=max(self.timeout, timeout_ms / 1000 + 10),
        )

    async def try_wait(self, tab_id: str, timeout_ms: int = 5000, wait_for_network: bool = True) -> None:
        # Long generations keep the network busy; a wait timeout is expected.
        try:
            await self.wait(tab_id, timeout_ms, wait_for_network)
        except BackendRequestError as exc:
            log.debug("wait on %s did not settle: %s", tab_id, exc)

    async def snapshot(self, tab_id: str, offset: int | None = None) -> Snapshot:
        params: dict[str, Any] = {"userId": self.user_id}
        if offset is not None and offset >= 0:
            params["offset"] = int(offset)
        payload = await self._request("GET", f"/tabs/{tab_id}/snapshot", params=params)
        return Snapshot.from_payload(payload)

    async def snapshot_text(self, tab_id: str) -> str:
        return (await self.snapshot(tab_id)).text

    async def snapshot_all(self, tab_id: str, max_chunks: int = 8) -> Snapshot:
        """Every chunk's text joined in order (up to ``max_chunks``), under the first chunk's url."""
        offset = 0
        first: Snapshot | None = None
        chunks: list[str] = []
        for _ in range(max(1, max_chunks)):
            page = await self.snapshot(tab_id, offset)
            if first is None:
                first = page
            chunks.append(page.text)
            if not page.has_more or page.next_offset is None or page.next_offset <= offset:
                break
            offset = page.next_offset
        return Snapshot(url=first.url, text="\n".join(chunks))

    async def snapshot_text_all(self, tab_id: str, max_chunks: int = 8) -> str:
        return (await self.snapshot_all(tab_id, max_chunks)).text

    async def links(self, tab_id: str) -> list[dict[str, Any]]:
        payload = await self._request("GET", f"/tabs/{tab_id}/links", params={"userId": self.user_id})
        links = payload.get("links")
        return [link for link in links if isinstance(link, dict)] if isinstance(links, list) else []

    async def visited_urls(self, tab_id: str) -> list[str]:
        payload = await self._request("GET", f"/tabs/{tab_id}/stats", params={"userId": self.user_id})
        raw = payload.get("visitedUrls")
        if not isinstance(raw, list):
            return []
        return [entry.strip() for entry in raw if isinstance(entry, str) and entry.strip()]

    # ------------------------------------------------------------------
    # Interaction
    # ------------------------------------------------------------------

    async def click(self, tab_id: str, *, ref: str | None = None, selector: str | None = None) -> None:
        ref = (ref or "").strip()
        selector = (selector or "").strip()
        if not ref and not selector:
            raise BackendRequestError("browser_click_missing_ref_or_selector")
        body: dict[str, Any] = {"userId": self.user_id}
        if ref:
            body["ref"] = ref
        if selector:
            body["selector"] = selector
        await self._post(f"/tabs/{tab_id}/click", body)

    async def type_text(
        self,
        tab_id: str,
        text: str,
        *,
        ref: str | None = None,
        selector: str | None = None,
    ) -> None:
        body: dict[str, Any] = {"userId": self.user_id, "text": text}
        if ref:
            body["ref"] = ref
        elif selector:
            body["selector"] = selector
        else:
            raise BackendRequestError("browser_type_missing_ref_or_selector")
        await self._post(f"/tabs/{tab_id}/type", body)

    async def press(self, tab_id: str, key: str) -> None:
        await self._post(f"/tabs/{tab_id}/press", {"userId": self.user_id, "key": key})

    # ------------------------------------------------------------------
    # Artifacts
    # ------------------------------------------------------------------

    async def downloads(
        self,
        tab_id: str,
        *,
        include_data: bool = False,
        consume: bool = False,
        max_bytes: int | None = None,
    ) -> list[dict[str, Any]]:
        params: dict[str, Any] = {
            "userId": self.user_id,
            "includeData": "true" if include_data else "false",
            "consume": "true" if consume else "false",
        }
        if max_bytes and max_bytes > 0:
            params["maxBytes"] = int(max_bytes)
        payload = await self._request("GET", f"/tabs/{tab_id}/downloads", params=params)
        entries = payload.get("downloads")
        return [entry for entry in entries if isinstance(entry, dict)] if isinstance(entries, list) else []

    async def dom_images(
        self,
        tab_id: str,
        *,
        include_data: bool = False,
        max_bytes: int | None = None,
        limit: int | None = None,
    ) -> list[dict[str, Any]]:
        params: dict[str, Any] = {"userId": self.user_id, "includeData": "true" if include_data else "false"}
        if max_bytes and max_bytes > 0:
            params["maxBytes"] = int(max_bytes)
        if limit and limit > 0:
            params["limit"] = int(limit)
        payload = await self._request("GET", f"/tabs/{tab_id}/images", params=params)
        images = payload.get("images")
        return [image for image in images if isinstance(image, dict)] if isinstance(images, list) else []

    async def screenshot(self, tab_id: str, full_page: bool = False) -> tuple[str, int]:
        """Return ``(data_url, byte_size)`` of a PNG screenshot."""
        path = f"/tabs/{tab_id}/screenshot"
        response = await self._send(
            "GET",
            path,
            params={"userId": self.user_id, "fullPage": "true" if full_page else "false"},
        )
        if response.status_code >= 400:
            raise BackendRequestError(
                f"browser_request_failed_{response.status_code}: {summarize_error_payload(response.text)}",
                status_code=response.status_code,
            )
        mime = response.headers.get("content-type", "image/png").split(";")[0].strip() or "image/png"
        data = response.content
        return f"data:{mime};base64,{base64.b64encode(data).decode('ascii')}", len(data)

    # ------------------------------------------------------------------
    # JSON documents through a real browser session
    # ------------------------------------------------------------------

    async def fetch_json_document(
        self,
        url: str,
        session_token: str,
        wait_timeout_ms: int = 15000,
    ) -> dict | list:
        """Load a JSON URL in a throwaway authenticated tab and parse the rendered body."""
        last_error: Exception | None = None
        for attempt in range(_JSON_DOC_ATTEMPTS):
            tab_id: str | None = None
            try:
                tab_id = await self.create_tab()
                await self.import_session_cookie(session_token)
                await self.navigate(tab_id, url)
                await self.try_wait(tab_id, wait_timeout_ms, attempt == 0)

                text = await self.snapshot_text_all(tab_id)
                doc = parse_json_document(text)
                if doc is not None:
                    return doc
                if _CLOUDFLARE_RE.search(text):
                    await self.try_wait(tab_id, 5000, False)
                    doc = parse_json_document(await self.snapshot_text_all(tab_id))
                    if doc is not None:
                        return doc
                last_error = BackendRequestError("browser_json_document_not_found_in_snapshot")
            except BackendRequestError as exc:
                last_error = exc
                if is_crash_signal(str(exc)):
                    await self.restart()
            finally:
                if tab_id:
                    await self.delete_tab(tab_id)
            log.debug("json document attempt %d for %s failed: %s", attempt + 1, url, last_error)
            await self.sleep(1.0 * (attempt + 1))
        raise last_error or BackendRequestError("browser_json_document_not_found_in_snapshot")
