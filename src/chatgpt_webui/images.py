"""
Image collection for image-generation runs.

Sources are tried in order until one yields something:

1. the conversation record (typed asset pointers, then a full-tree scan)
2. links, rendered ``/url:`` lines and visited URLs of the tab
3. ``<img>`` elements on the page, scored by alt text and host
4. the tab's download queue
5. clicking the page's "Download" button, then the queue again
6. a screenshot, when enabled

A source that errors is logged and skipped; running out of sources is
reported as "no images", not raised.
"""
from __future__ import annotations

import asyncio
import base64
import binascii
import logging
import re
import time
import uuid
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Iterable
from urllib.parse import parse_qsl, quote, urlsplit

from .models import ImageArtifact
from .snapshot import find_ref
from .tools.browser import BrowserTool, parse_json_document
from .tools.chat_api import ChatApiTool, extract_image_asset_pointers, sniff_image
from .tools.errors import WebuiError

log = logging.getLogger(__name__)

_IMAGE_EXT_RE = re.compile(r"\.(png|jpe?g|webp|gif)(?:[?#]|$)", re.IGNORECASE)
_IMAGE_HOST_RE = re.compile(r"(oaiusercontent|openaiusercontent|oaidalle|blob\.core\.windows\.net)", re.IGNORECASE)
_BACKEND_ASSET_RE = re.compile(r"/backend-api/(files|asset)/", re.IGNORECASE)
_ESTUARY_RE = re.compile(r"/backend-api/estuary/content\?", re.IGNORECASE)
_SNAPSHOT_URL_RE = re.compile(r"/url:\s+\"?([^\"\s]+)\"?", re.IGNORECASE)
_POINTER_TOKEN_RE = re.compile(r"file[-_][a-zA-Z0-9_-]+")
_CONVERSATION_JSON_RE = re.compile(r"/backend-api/conversation/", re.IGNORECASE)

_DOM_ALT_RE = re.compile(r"(generated image|download this image|created image)", re.IGNORECASE)
_DOM_SRC_RE = re.compile(r"(oaiusercontent|openaiusercontent|oaidalle|estuary|blob:|dalle)", re.IGNORECASE)

_MIME_BY_EXT = {
    ".png": "image/png",
    ".jpg": "image/jpeg",
    ".jpeg": "image/jpeg",
    ".webp": "image/webp",
    ".gif": "image/gif",
    ".svg": "image/svg+xml",
}


def looks_like_image_url(url: str) -> bool:
    url = url.strip()
    if not url:
        return False
    return bool(
        _IMAGE_EXT_RE.search(url)
        or _IMAGE_HOST_RE.search(url)
        or _BACKEND_ASSET_RE.search(url)
        or _ESTUARY_RE.search(url)
    )


def any_image_url(urls: Iterable[str]) -> bool:
    return any(looks_like_image_url(url) for url in urls)


def image_urls(urls: Iterable[str]) -> list[str]:
    """Distinct image-looking URLs, first occurrence order."""
    seen: dict[str, None] = {}
    for url in urls:
        url = (url or "").strip()
        if url and url not in seen and looks_like_image_url(url):
            seen[url] = None
    return list(seen)


def urls_from_snapshot(text: str) -> list[str]:
    seen: dict[str, None] = {}
    for line in text.splitlines():
        match = _SNAPSHOT_URL_RE.search(line)
        if match:
            seen.setdefault(match.group(1).strip(), None)
    return [url for url in seen if url]


def pointer_tokens(text: str) -> list[str]:
    return list(dict.fromkeys(_POINTER_TOKEN_RE.findall(text)))


def pointer_tokens_from_urls(urls: Iterable[str]) -> list[str]:
    tokens: dict[str, None] = {}
    for url in urls:
        url = (url or "").strip()
        if not url:
            continue
        for token in pointer_tokens(url):
            tokens[token] = None
        parts = urlsplit(url)
        if parts.scheme and parts.query:
            for _, value in parse_qsl(parts.query):
                for token in pointer_tokens(value):
                    tokens[token] = None
    return list(tokens)


def infer_mime_type(name: str) -> str | None:
    path = urlsplit(name.strip().lower()).path or name.strip().lower()
    for ext, mime in _MIME_BY_EXT.items():
        if path.endswith(ext):
            return mime
    return None


def _sniffed_mime(data_b64: str) -> str | None:
    try:
        data = base64.b64decode(data_b64, validate=True)
    except (binascii.Error, ValueError):
        return None
    sniffed = sniff_image(data)
    return sniffed[0] if sniffed else None


def downloads_to_images(downloads: list[dict[str, Any]]) -> list[ImageArtifact]:
    images: list[ImageArtifact] = []
    for entry in downloads:
        if entry.get("failure"):
            continue
        url = str(entry.get("url") or "").strip()
        filename = str(entry.get("suggestedFilename") or "").strip()
        data_b64 = str(entry.get("dataBase64") or "").strip()
        mime = (
            str(entry.get("mimeType") or "").strip()
            or infer_mime_type(filename)
            or infer_mime_type(url)
            or (_sniffed_mime(data_b64) if data_b64 else None)
            or "application/octet-stream"
        )
        download_id = str(entry.get("id") or uuid.uuid4())
        source = url or f"download://{quote(download_id, safe='')}/{quote(filename or 'image.bin', safe='')}"
        pointer = next(iter(pointer_tokens_from_urls([source])), "") or filename or source
        size = entry.get("bytes")
        images.append(
            ImageArtifact(
                asset_pointer=pointer,
                source_url=source,
                mime_type=mime,
                byte_size=size if isinstance(size, int) and not isinstance(size, bool) else None,
                inline_data=f"data:{mime};base64,{data_b64}" if data_b64 else None,
            )
        )
    return images


def score_dom_image(alt: str, src: str, has_data: bool) -> int:
    score = 0
    if _DOM_ALT_RE.search(alt):
        score += 5
    if _DOM_SRC_RE.search(src):
        score += 3
    if has_data:
        score += 2
    return score


def dom_images_to_artifacts(entries: list[dict[str, Any]]) -> list[ImageArtifact]:
    """Page images best-first; zero-score images only when nothing scores."""
    scored: list[tuple[int, ImageArtifact]] = []
    for entry in entries:
        src = str(entry.get("src") or "").strip()
        if not src:
            continue
        alt = str(entry.get("alt") or "").strip()
        data_url = str(entry.get("dataUrl") or "").strip() or None
        mime = str(entry.get("mimeType") or "").strip() or infer_mime_type(src) or "application/octet-stream"
        pointer = next(iter(pointer_tokens_from_urls([src])), "") or alt or src
        size = entry.get("bytes")
        scored.append((
            score_dom_image(alt, src, bool(data_url)),
            ImageArtifact(
                asset_pointer=pointer,
                source_url=src,
                mime_type=mime,
                byte_size=size if isinstance(size, int) and not isinstance(size, bool) else None,
                inline_data=data_url,
            ),
        ))
    scored.sort(key=lambda pair: pair[0], reverse=True)
    preferred = [image for score, image in scored if score > 0]
    return preferred or [image for _, image in scored]


@dataclass(slots=True)
class CollectedImages:
    images: list[ImageArtifact] = field(default_factory=list)
    image_urls: list[str] = field(default_factory=list)
    image_data_url: str | None = None
    source: str | None = None

    @property
    def found(self) -> bool:
        return bool(self.images or self.image_urls)

    def take(self, images: list[ImageArtifact], source: str) -> "CollectedImages":
        self.images = images
        self.image_urls = [image.source_url for image in images]
        self.image_data_url = next((image.inline_data for image in images if image.inline_data), None)
        self.source = source
        return self

    def synthesize(self) -> None:
        """Bare URLs become artifacts when nothing richer was found."""
        if self.images or not self.image_urls:
            return
        self.images = [
            ImageArtifact(
                asset_pointer=next(iter(pointer_tokens_from_urls([url])), "") or url,
                source_url=url,
            )
            for url in self.image_urls
        ]


class ImageCollector:
    def __init__(
        self,
        browser: BrowserTool,
        chat_api: ChatApiTool,
        *,
        download_max_bytes: int = 15 * 1024 * 1024,
        screenshot_fallback: bool = False,
        screenshot_max_bytes: int = 2 * 1024 * 1024,
        conversation_attempts: int = 8,
        sleep: Callable[[float], Awaitable[None]] | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.browser = browser
        self.chat_api = chat_api
        self.download_max_bytes = download_max_bytes
        self.screenshot_fallback = screenshot_fallback
        self.screenshot_max_bytes = screenshot_max_bytes
        self.conversation_attempts = conversation_attempts
        self.sleep = sleep or asyncio.sleep
        self.clock = clock

    async def collect(self, tab_id: str, conversation_id: str | None) -> CollectedImages:
        result = CollectedImages()
        await self.browser.try_wait(tab_id, 8000, False)

        if conversation_id:
            images = await self._guard("conversation", self.from_conversation(tab_id, conversation_id))
            if images:
                return result.take(images, "conversation")

        steps: tuple[tuple[str, Callable[[str], Awaitable[CollectedImages | list[ImageArtifact] | None]]], ...] = (
            ("page_links", self.from_page_links),
            ("dom_images", self.from_dom_images),
            ("download_queue", self.from_download_queue),
            ("download_button", self.from_download_button),
        )
        for name, step in steps:
            found = await self._guard(name, step(tab_id))
            if isinstance(found, CollectedImages) and found.found:
                found.source = name
                found.synthesize()
                return found
            if isinstance(found, list) and found:
                return result.take(found, name)

        if self.screenshot_fallback:
            data_url = await self._guard("screenshot", self.screenshot(tab_id))
            if data_url:
                result.image_data_url = data_url
                result.source = "screenshot"
        if not result.found and not result.image_data_url:
            log.warning("no image artifacts found on tab %s", tab_id)
        return result

    async def _guard(self, name: str, step: Awaitable[Any]) -> Any:
        try:
            return await step
        except WebuiError as exc:
            log.info("image source %s failed: %s", name, exc)
            return None

    # ------------------------------------------------------------------
    # 1. Conversation record
    # ------------------------------------------------------------------

    async def _conversation_from_tab(self, tab_id: str, conversation_id: str, attempts: int = 3) -> dict:
        url = f"{self.chat_api.base_url}/backend-api/conversation/{conversation_id}"
        try:
            current = (await self.browser.snapshot(tab_id)).url.strip()
        except WebuiError:
            current = ""
        restore = current if current and not _CONVERSATION_JSON_RE.search(current) else (
            f"{self.chat_api.base_url}/c/{conversation_id}"
        )
        try:
            for attempt in range(attempts):
                await self.browser.navigate(tab_id, url)
                await self.browser.try_wait(tab_id, 12000, attempt == 0)
                doc = parse_json_document(await self.browser.snapshot_text_all(tab_id))
                if isinstance(doc, dict):
                    return doc
                await self.sleep(1.2)
            raise WebuiError("browser_conversation_json_not_found_from_existing_tab")
        finally:
            await self._restore_url(tab_id, restore)

    async def _restore_url(self, tab_id: str, url: str) -> None:
        try:
            if (await self.browser.snapshot(tab_id)).url.strip() != url:
                await self.browser.navigate(tab_id, url)
                await self.browser.try_wait(tab_id, 8000, False)
        except WebuiError as exc:
            log.debug("could not restore %s on tab %s: %s", url, tab_id, exc)

    async def _conversation_via_browser(self, tab_id: str, conversation_id: str, attempt: int) -> dict:
        try:
            return await self._conversation_from_tab(tab_id, conversation_id)
        except WebuiError as exc:
            log.debug("conversation json from tab failed (%s); using a fresh tab", exc)
        try:
            return await self.chat_api.get_conversation_via_browser(conversation_id)
        except WebuiError as exc:
            log.debug("conversation json attempt %d failed: %s", attempt + 1, exc)
            return {}

    async def from_conversation(self, tab_id: str, conversation_id: str) -> list[ImageArtifact]:
        """Image pointers from the conversation record: bearer API first, then the browser."""
        use_bearer = True
        for attempt in range(self.conversation_attempts):
            payload: dict = {}
            if use_bearer:
                try:
                    payload = await self.chat_api.get_conversation(conversation_id)
                except WebuiError as exc:
                    log.debug("bearer conversation fetch failed (%s); reading it through the browser", exc)
                    use_bearer = False
            if not payload:
                payload = await self._conversation_via_browser(tab_id, conversation_id, attempt)
            pointers = extract_image_asset_pointers(payload)
            if pointers:
                images = await self.chat_api.build_images(pointers)
                if images:
                    return images
            await self.sleep(2.5)
        return []

    # ------------------------------------------------------------------
    # 2. Links, snapshot URLs and visited URLs
    # ------------------------------------------------------------------

    async def from_page_links(self, tab_id: str) -> CollectedImages:
        links = [str(link.get("url") or "").strip() for link in await self.browser.links(tab_id)]
        visited = await self.browser.visited_urls(tab_id)
        text = await self.browser.snapshot_text_all(tab_id)
        all_urls = [url for url in links + urls_from_snapshot(text) + visited if url]

        result = CollectedImages(image_urls=image_urls(all_urls))
        tokens = list(dict.fromkeys(pointer_tokens(text) + pointer_tokens_from_urls(all_urls)))
        if tokens:
            try:
                images = await self.chat_api.build_images(tokens)
            except WebuiError as exc:
                log.debug("pointer downloads failed: %s", exc)
                images = []
            if images:
                result.take(images, "page_links")
        return result

    # ------------------------------------------------------------------
    # 3-5. DOM images and downloads
    # ------------------------------------------------------------------

    async def from_dom_images(self, tab_id: str) -> list[ImageArtifact]:
        entries = await self.browser.dom_images(
            tab_id, include_data=True, max_bytes=self.download_max_bytes, limit=12
        )
        return dom_images_to_artifacts(entries)

    async def wait_for_downloads(
        self,
        tab_id: str,
        *,
        timeout_ms: int = 10000,
        interval_ms: int = 500,
        consume: bool = False,
    ) -> list[ImageArtifact]:
        deadline = self.clock() + timeout_ms / 1000.0
        while self.clock() < deadline:
            try:
                entries = await self.browser.downloads(
                    tab_id, include_data=True, consume=False, max_bytes=self.download_max_bytes
                )
            except WebuiError as exc:
                log.debug("download queue unavailable: %s", exc)
                entries = []
            images = downloads_to_images(entries)
            if images:
                if consume:
                    try:
                        await self.browser.downloads(tab_id, consume=True, max_bytes=self.download_max_bytes)
                    except WebuiError as exc:
                        log.debug("download queue not drained: %s", exc)
                return images
            await self.sleep(interval_ms / 1000.0)
        return []

    async def from_download_queue(self, tab_id: str) -> list[ImageArtifact]:
        return await self.wait_for_downloads(tab_id, timeout_ms=2500, interval_ms=350, consume=True)

    async def from_download_button(self, tab_id: str) -> CollectedImages | list[ImageArtifact]:
        ref = find_ref(await self.browser.snapshot_text(tab_id), "button", r"Download(?: this image)?")
        if not ref:
            return []
        await self.browser.click(tab_id, ref=ref)
        await self.browser.try_wait(tab_id, 2500, False)
        images = await self.wait_for_downloads(tab_id, timeout_ms=12000, interval_ms=500, consume=True)
        if images:
            return images
        return await self.from_page_links(tab_id)

    # ------------------------------------------------------------------
    # 6. Screenshot
    # ------------------------------------------------------------------

    async def screenshot(self, tab_id: str) -> str | None:
        data_url, size = await self.browser.screenshot(tab_id, full_page=False)
        if size > self.screenshot_max_bytes:
            log.info("screenshot of %d bytes exceeds the %d byte cap", size, self.screenshot_max_bytes)
            return None
        return data_url
