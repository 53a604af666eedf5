"""
ChatApiTool: the chat application's own backend API.

Session and JSON documents are read through a real browser tab (plain HTTP
clients get stopped by the site's bot protection); bearer-authenticated calls
and binary asset downloads go straight over httpx.
"""
from __future__ import annotations

import base64
import io
import json
import logging
import re
import time
import uuid
from typing import Any, Callable
from urllib.parse import quote

import httpx
from PIL import Image, UnidentifiedImageError

from ..models import ImageArtifact
from .browser import BrowserTool, summarize_error_payload
from .errors import BackendRequestError, LoginRequiredError

log = logging.getLogger(__name__)

ACCESS_TOKEN_TTL_S = 10 * 60
CHAT_REQUIREMENTS_PATH = "/backend-api/sentinel/chat-requirements"
_MAX_TREE_NODES = 150_000

_POINTER_RE = re.compile(r"\b(file[-_][a-zA-Z0-9_-]+)\b")
_POINTER_LIKE_RE = re.compile(r"\bfile[-_][a-zA-Z0-9]+\b")


def asset_pointer_to_id(asset_pointer: str) -> str | None:
    """``sediment://file_abc`` / ``file_abc`` -> ``file-abc`` (the content endpoint's id form)."""
    # "file-service://file-x" would otherwise match on the scheme.
    match = _POINTER_RE.search(asset_pointer.strip().split("://", 1)[-1])
    if not match:
        return None
    raw = match.group(1)
    if raw.startswith("file_"):
        return "file-" + raw[len("file_"):]
    return raw


def _pointer_of(record: dict) -> str:
    for key in ("asset_pointer", "assetPointer"):
        value = record.get(key)
        if isinstance(value, str) and value.strip():
            return value.strip()
    return ""


def extract_image_asset_pointers(payload: Any) -> list[str]:
    """Image asset pointers from a conversation record, in discovery order.

    Typed ``image_asset_pointer`` parts come first; then the whole payload is
    walked (bounded) for anything carrying an asset pointer, since the message
    schema changes without notice.
    """
    pointers: dict[str, None] = {}

    mapping = payload.get("mapping") if isinstance(payload, dict) else None
    if isinstance(mapping, dict):
        for node in mapping.values():
            message = node.get("message") if isinstance(node, dict) else None
            content = message.get("content") if isinstance(message, dict) else None
            parts = content.get("parts") if isinstance(content, dict) else None
            if not isinstance(parts, list):
                continue
            for part in parts:
                if not isinstance(part, dict):
                    continue
                pointer = _pointer_of(part)
                if not pointer:
                    continue
                if str(part.get("content_type") or "").strip() == "image_asset_pointer":
                    pointers[pointer] = None
                elif _POINTER_LIKE_RE.search(pointer):
                    pointers[pointer] = None

    seen: set[int] = set()
    stack: list[Any] = [payload]
    inspected = 0
    while stack and inspected < _MAX_TREE_NODES:
        current = stack.pop()
        inspected += 1
        if isinstance(current, (dict, list)):
            if id(current) in seen:
                continue
            seen.add(id(current))
        if isinstance(current, list):
            stack.extend(current)
        elif isinstance(current, dict):
            pointer = _pointer_of(current)
            if pointer and _POINTER_LIKE_RE.search(pointer):
                pointers[pointer] = None
            stack.extend(current.values())

    return list(pointers)


def sniff_image(data: bytes) -> tuple[str, int, int] | None:
    """``(mime_type, width, height)`` when ``data`` decodes as an image."""
    try:
        with Image.open(io.BytesIO(data)) as img:
            mime = Image.MIME.get(img.format or "")
            if not mime:
                return None
            return mime, img.width, img.height
    except (UnidentifiedImageError, OSError, ValueError):
        return None


def to_data_url(mime_type: str, data: bytes) -> str:
    return f"data:{mime_type};base64,{base64.b64encode(data).decode('ascii')}"


class ChatApiTool:
    def __init__(
        self,
        base_url: str,
        session_token: str,
        browser: BrowserTool,
        *,
        download_max_bytes: int = 15 * 1024 * 1024,
        timeout: float = 60.0,
        transport: httpx.AsyncBaseTransport | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.session_token = session_token
        self.browser = browser
        self.download_max_bytes = download_max_bytes
        self.timeout = timeout
        self._transport = transport
        self._clock = clock
        self._device_id = str(uuid.uuid4())
        self._access_token: str | None = None
        self._access_token_at = 0.0

    def _headers(self, access_token: str | None = None) -> dict[str, str]:
        headers = {
            "Accept": "application/json",
            "Content-Type": "application/json",
            "Origin": self.base_url,
            "Referer": f"{self.base_url}/",
            "Oai-Device-Id": self._device_id,
        }
        if access_token:
            headers["Authorization"] = f"Bearer {access_token}"
        return headers

    async def _bearer(self, method: str, path: str, **kwargs: Any) -> httpx.Response:
        token = await self.get_access_token()
        try:
            async with httpx.AsyncClient(timeout=self.timeout, transport=self._transport) as client:
                return await client.request(
                    method, f"{self.base_url}{path}", headers=self._headers(token), **kwargs
                )
        except httpx.HTTPError as exc:
            raise BackendRequestError(f"chat_api_network_error on {path}: {exc}") from exc

    # ------------------------------------------------------------------
    # Session
    # ------------------------------------------------------------------

    async def get_session(self) -> dict[str, Any]:
        doc = await self.browser.fetch_json_document(f"{self.base_url}/api/auth/session", self.session_token)
        if not isinstance(doc, dict) or not doc.get("accessToken"):
            raise LoginRequiredError("chat_api_session_missing_access_token")
        return doc

    async def get_access_token(self) -> str:
        now = self._clock()
        if self._access_token and now - self._access_token_at < ACCESS_TOKEN_TTL_S:
            return self._access_token
        session = await self.get_session()
        self._access_token = str(session["accessToken"])
        self._access_token_at = now
        return self._access_token

    # ------------------------------------------------------------------
    # Documents
    # ------------------------------------------------------------------

    async def get_models(self) -> Any:
        return await self.browser.fetch_json_document(f"{self.base_url}/backend-api/models", self.session_token)

    async def get_conversation(self, conversation_id: str) -> dict[str, Any]:
        path = f"/backend-api/conversation/{quote(conversation_id, safe='')}"
        response = await self._bearer("GET", path)
        try:
            payload = response.json()
        except ValueError:
            payload = None
        if response.status_code >= 400 or not isinstance(payload, dict):
            raise BackendRequestError(
                f"chat_api_conversation_fetch_failed_{response.status_code}: "
                f"{summarize_error_payload(response.text)}",
                status_code=response.status_code,
            )
        return payload

    async def get_conversation_via_browser(self, conversation_id: str) -> dict[str, Any]:
        doc = await self.browser.fetch_json_document(
            f"{self.base_url}/backend-api/conversation/{quote(conversation_id, safe='')}",
            self.session_token,
        )
        if not isinstance(doc, dict):
            raise BackendRequestError("chat_api_conversation_not_an_object")
        return doc

    async def get_chat_requirements_token(self) -> str | None:
        try:
            response = await self._bearer("POST", CHAT_REQUIREMENTS_PATH, content=json.dumps({}))
        except (BackendRequestError, LoginRequiredError) as exc:
            log.debug("chat requirements token unavailable: %s", exc)
            return None
        if response.status_code >= 400:
            return None
        try:
            token = response.json().get("token")
        except (ValueError, AttributeError):
            return None
        return str(token) if token else None

    # ------------------------------------------------------------------
    # Assets
    # ------------------------------------------------------------------

    def asset_url(self, asset_id: str) -> str:
        return f"{self.base_url}/backend-api/estuary/content?id={quote(asset_id, safe='')}"

    async def fetch_asset(self, asset_id: str) -> tuple[str, bytes]:
        """Raw bytes of an asset and its mime type (sniffed when the server is vague)."""
        response = await self._bearer("GET", f"/backend-api/estuary/content?id={quote(asset_id, safe='')}")
        if response.status_code >= 400:
            raise BackendRequestError(
                f"chat_api_asset_fetch_failed_{response.status_code}",
                status_code=response.status_code,
            )
        data = response.content
        mime = response.headers.get("content-type", "").split(";")[0].strip()
        if not mime.startswith("image/"):
            sniffed = sniff_image(data)
            mime = sniffed[0] if sniffed else (mime or "application/octet-stream")
        return mime, data

    async def build_images(self, pointers: list[str]) -> list[ImageArtifact]:
        """Resolve pointers to content URLs, downloading bytes where possible."""
        images: list[ImageArtifact] = []
        for pointer in pointers:
            asset_id = asset_pointer_to_id(pointer)
            if not asset_id:
                continue
            image = ImageArtifact(asset_pointer=pointer, source_url=self.asset_url(asset_id))
            try:
                mime, data = await self.fetch_asset(asset_id)
            except (BackendRequestError, LoginRequiredError) as exc:
                log.debug("asset %s not downloaded: %s", asset_id, exc)
            else:
                image.mime_type = mime
                image.byte_size = len(data)
                if len(data) <= self.download_max_bytes:
                    image.inline_data = to_data_url(mime, data)
            images.append(image)
        return images
