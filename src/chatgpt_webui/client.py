from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import replace
from typing import Any, Awaitable, Callable

from .config import AppConfig
from .driver import InteractionDriver, mode_to_model_slug
from .extractor import ResponseExtractor
from .images import ImageCollector
from .models import RESEARCH_MODEL, AskRequest, AskResult
from .poller import CompletionPoller
from .tools.browser import BrowserTool
from .tools.chat_api import ChatApiTool
from .tools.errors import ConfigurationError, WebuiError, is_crash_signal

log = logging.getLogger(__name__)

ASK_ATTEMPTS = 3


def normalize_request(request: AskRequest) -> tuple[AskRequest, str]:
    """Trim the prompt and resolve the model slug the driver should select."""
    request = replace(request, prompt=request.prompt.strip())
    request.validate()
    if request.wants_research:
        slug = RESEARCH_MODEL
    else:
        slug = (
            (request.model or "").strip()
            or mode_to_model_slug(request.model_mode)
            or mode_to_model_slug("auto")
            or "auto"
        )
    return replace(request, model=slug), slug


class WebuiClient:
    """One ask = one tab: drive, poll, collect images, delete the tab."""

    def __init__(
        self,
        config: AppConfig,
        *,
        browser: BrowserTool | None = None,
        chat_api: ChatApiTool | None = None,
        sleep: Callable[[float], Awaitable[None]] | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        if not config.session_token:
            raise ConfigurationError(
                "missing_session_token: set CHATGPT_SESSION_TOKEN "
                "(value of __Secure-next-auth.session-token) or CHATGPT_SESSION_TOKEN_FILE",
                kind="missing_session_token",
            )
        self.config = config
        self.sleep = sleep or asyncio.sleep
        self.browser = browser or BrowserTool(
            config.browser_base_url,
            user_id=config.browser_user_id,
            session_key=config.browser_session_key,
            api_key=config.browser_api_key,
            sleep=self.sleep,
        )
        self.chat_api = chat_api or ChatApiTool(
            config.base_url,
            config.session_token,
            self.browser,
            download_max_bytes=config.image_download_max_bytes,
            clock=clock,
        )
        self.driver = InteractionDriver(
            self.browser,
            base_url=config.base_url,
            session_token=config.session_token,
            sleep=self.sleep,
        )
        self.poller = CompletionPoller(
            self.browser,
            ResponseExtractor(containment_ratio=config.echo_containment_ratio),
            settle_ms=config.settle_ms,
            idle_ticks=config.idle_ticks,
            poll_interval_ms=config.poll_interval_ms,
            sleep=self.sleep,
            clock=clock,
        )
        self.images = ImageCollector(
            self.browser,
            self.chat_api,
            download_max_bytes=config.image_download_max_bytes,
            screenshot_fallback=config.image_screenshot_fallback,
            screenshot_max_bytes=config.image_screenshot_max_bytes,
            sleep=self.sleep,
            clock=clock,
        )

    async def get_session(self) -> dict[str, Any]:
        """Session document plus whether bearer calls to the backend API get through."""
        session = await self.chat_api.get_session()
        requirements = await self.chat_api.get_chat_requirements_token()
        return {**session, "chatRequirementsAvailable": requirements is not None}

    async def get_models(self) -> Any:
        return await self.chat_api.get_models()

    async def ask(self, request: AskRequest) -> AskResult:
        request, slug = normalize_request(request)
        for attempt in range(ASK_ATTEMPTS):
            try:
                return await self._ask_once(request, slug)
            except WebuiError as exc:
                if not is_crash_signal(str(exc)) or attempt == ASK_ATTEMPTS - 1:
                    raise
                log.warning("ask attempt %d hit a browser crash, restarting: %s", attempt + 1, exc)
                await self.browser.restart()
                await self.sleep(1.0 * (attempt + 1))
        raise WebuiError("browser_ask_failed")

    async def _ask_once(self, request: AskRequest, slug: str) -> AskResult:
        workspace = (request.workspace or "").strip() or self.config.workspace
        timeout_ms = request.wait_timeout_ms or self.config.wait_timeout_ms

        tab_id = await self.driver.open_session()
        try:
            report = await self.driver.prepare_and_submit(tab_id, request, workspace=workspace, model_slug=slug)

            if request.wants_image:
                settle = await self.poller.wait_for_image_settle(tab_id, timeout_ms)
                text = ""
                conversation_id = settle.conversation_id
                collected = await self.images.collect(tab_id, conversation_id)
            else:
                polled = await self.poller.poll_text(tab_id, request.prompt, timeout_ms)
                text = polled.text
                conversation_id = polled.conversation_id
                collected = None

            if report.model_selected:
                model: str | None = slug
            else:
                model = "auto" if slug == "auto" else None

            return AskResult(
                text=text,
                conversation_id=conversation_id or request.conversation_id,
                parent_message_id=None,
                model=model,
                image_urls=tuple(collected.image_urls) if collected else (),
                image_data_url=collected.image_data_url if collected else None,
                images=tuple(collected.images) if collected else (),
            )
        finally:
            await self.browser.delete_tab(tab_id)
