"""Scripted stand-ins for the browser backend, shared by the async tests."""
from __future__ import annotations

import io
import sys
from pathlib import Path
from typing import Any

from PIL import Image

sys.path.insert(0, str(Path(__file__).resolve().parents[1] / "src"))

from chatgpt_webui.models import ImageArtifact
from chatgpt_webui.snapshot import Snapshot
from chatgpt_webui.tools.browser import BrowserTool
from chatgpt_webui.tools.errors import BackendRequestError

HOME_LINES = (
    'button "Open sidebar" [e30]',
    'button "Model selector" [e1]',
    'menuitem "Auto" [e10]',
    'menuitem "Instant" [e11]',
    'menuitem "Thinking" [e12]',
    'button "Create image" [e5]',
    'textbox "Ask anything" [e2]',
    'button "Send prompt" [e3]',
)


def page(*lines: str, url: str = "https://chatgpt.com/") -> Snapshot:
    return Snapshot(url=url, text="\n".join(f"- {line}" for line in lines))


def home(*extra: str, url: str = "https://chatgpt.com/") -> Snapshot:
    return page(*HOME_LINES, *extra, url=url)


def generating(prompt: str, *extra: str, url: str = "https://chatgpt.com/") -> Snapshot:
    return page('heading "You said:"', f"paragraph: {prompt}", *extra, 'button "Stop streaming" [e9]', url=url)


def answered(prompt: str, *answer: str, url: str = "https://chatgpt.com/c/conv-1") -> Snapshot:
    return page(
        'heading "You said:"',
        f"paragraph: {prompt}",
        'heading "ChatGPT said:"',
        *(f"paragraph: {line}" for line in answer),
        'button "Copy" [e20]',
        'textbox "Ask anything" [e2]',
        'button "Send prompt" [e3]',
        url=url,
    )


def png_bytes(size: tuple[int, int] = (4, 4)) -> bytes:
    buf = io.BytesIO()
    Image.new("RGB", size, (200, 30, 30)).save(buf, format="PNG")
    return buf.getvalue()


class FakeClock:
    """Monotonic seconds that only move when something sleeps."""

    def __init__(self) -> None:
        self.now = 0.0
        self.sleeps: list[float] = []

    def monotonic(self) -> float:
        return self.now

    async def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        self.now += seconds


class FakeBrowser:
    """Duck-typed BrowserTool.

    Before Enter is pressed every snapshot is ``current`` (clicking a ref in
    ``transitions`` swaps it).  After Enter, each snapshot pops the next entry
    of ``after_submit``; the last one repeats.  Later chunks of a paginated
    snapshot are served from ``continuations`` by offset.
    """

    def __init__(
        self,
        current: Snapshot | None = None,
        after_submit: list[Snapshot] | None = None,
        *,
        submitted: bool = False,
        transitions: dict[str, Snapshot] | None = None,
        rejected_selectors: tuple[str, ...] = (),
        documents: dict[str, Any] | None = None,
        links: list[dict[str, Any]] | None = None,
        visited: list[str] | None = None,
        downloads: list[dict[str, Any]] | None = None,
        dom_images: list[dict[str, Any]] | None = None,
        continuations: dict[int, Snapshot] | None = None,
    ) -> None:
        self.current = current or home()
        self.pages = list(after_submit or [])
        self.submitted = submitted
        self.transitions = dict(transitions or {})
        self.rejected_selectors = rejected_selectors
        self.documents = dict(documents or {})
        self.link_entries = list(links or [])
        self.visited = list(visited or [])
        self.download_entries = list(downloads or [])
        self.dom_entries = list(dom_images or [])
        self.continuations = dict(continuations or {})
        self.calls: list[tuple[Any, ...]] = []

    @property
    def clicks(self) -> list[str]:
        return [call[1] for call in self.calls if call[0] == "click"]

    def called(self, name: str) -> list[tuple[Any, ...]]:
        return [call for call in self.calls if call[0] == name]

    async def restart(self) -> None:
        self.calls.append(("restart",))

    async def create_tab(self, url: str = "https://example.com/") -> str:
        self.calls.append(("create_tab", url))
        return "tab-1"

    async def delete_tab(self, tab_id: str) -> None:
        self.calls.append(("delete_tab", tab_id))

    async def import_session_cookie(self, session_token: str) -> None:
        self.calls.append(("import_session_cookie", session_token))

    async def navigate(self, tab_id: str, url: str) -> None:
        self.calls.append(("navigate", url))

    async def wait(self, tab_id: str, timeout_ms: int = 5000, wait_for_network: bool = True) -> None:
        self.calls.append(("wait", timeout_ms))

    async def try_wait(self, tab_id: str, timeout_ms: int = 5000, wait_for_network: bool = True) -> None:
        self.calls.append(("try_wait", timeout_ms))

    async def snapshot(self, tab_id: str, offset: int | None = None) -> Snapshot:
        if offset:
            return self.continuations[offset]
        if self.submitted and self.pages:
            self.current = self.pages.pop(0) if len(self.pages) > 1 else self.pages[0]
        return self.current

    async def snapshot_text(self, tab_id: str) -> str:
        return (await self.snapshot(tab_id)).text

    snapshot_all = BrowserTool.snapshot_all
    snapshot_text_all = BrowserTool.snapshot_text_all

    async def links(self, tab_id: str) -> list[dict[str, Any]]:
        return list(self.link_entries)

    async def visited_urls(self, tab_id: str) -> list[str]:
        return list(self.visited)

    async def click(self, tab_id: str, *, ref: str | None = None, selector: str | None = None) -> None:
        if selector and selector in self.rejected_selectors:
            raise BackendRequestError(f"browser_request_failed_400: no element for {selector}", status_code=400)
        self.calls.append(("click", ref or selector))
        if ref and ref in self.transitions:
            self.current = self.transitions[ref]

    async def type_text(self, tab_id: str, text: str, *, ref: str | None = None, selector: str | None = None) -> None:
        if selector and selector in self.rejected_selectors:
            raise BackendRequestError(f"browser_request_failed_400: no element for {selector}", status_code=400)
        self.calls.append(("type", ref or selector, text))

    async def press(self, tab_id: str, key: str) -> None:
        self.calls.append(("press", key))
        if key == "Enter":
            self.submitted = True

    async def downloads(
        self,
        tab_id: str,
        *,
        include_data: bool = False,
        consume: bool = False,
        max_bytes: int | None = None,
    ) -> list[dict[str, Any]]:
        entries = list(self.download_entries)
        if consume:
            self.calls.append(("consume_downloads",))
            self.download_entries.clear()
        return entries

    async def dom_images(
        self,
        tab_id: str,
        *,
        include_data: bool = False,
        max_bytes: int | None = None,
        limit: int | None = None,
    ) -> list[dict[str, Any]]:
        return list(self.dom_entries)

    async def screenshot(self, tab_id: str, full_page: bool = False) -> tuple[str, int]:
        self.calls.append(("screenshot", full_page))
        return "data:image/png;base64,iVBORw0KGgo=", 8

    async def fetch_json_document(self, url: str, session_token: str, wait_timeout_ms: int = 15000) -> Any:
        self.calls.append(("fetch_json_document", url))
        for suffix, document in self.documents.items():
            if url.endswith(suffix):
                return document
        raise BackendRequestError("browser_json_document_not_found_in_snapshot")


class FakeChatApi:
    """Just enough of ChatApiTool for the image collector."""

    base_url = "https://chatgpt.com"

    def __init__(self, conversation: dict[str, Any] | None = None, *, bearer: dict[str, Any] | None = None) -> None:
        self.conversation = conversation
        self.bearer = bearer
        self.bearer_calls = 0
        self.built: list[list[str]] = []

    async def get_conversation(self, conversation_id: str) -> dict[str, Any]:
        self.bearer_calls += 1
        if self.bearer is None:
            raise BackendRequestError("chat_api_conversation_fetch_failed_403: blocked", status_code=403)
        return self.bearer

    async def get_conversation_via_browser(self, conversation_id: str) -> dict[str, Any]:
        if self.conversation is None:
            raise BackendRequestError("browser_json_document_not_found_in_snapshot")
        return self.conversation

    async def build_images(self, pointers: list[str]) -> list[ImageArtifact]:
        self.built.append(list(pointers))
        return [
            ImageArtifact(
                asset_pointer=pointer,
                source_url=f"{self.base_url}/backend-api/estuary/content?id={pointer.replace('file_', 'file-')}",
            )
            for pointer in pointers
        ]
