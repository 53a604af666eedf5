"""
Completion poller: samples the tab until the answer has settled.

One tick = short network wait, fresh snapshot (every chunk joined),
classification.  A candidate settles once generation has stopped, it has not
changed for ``settle_ms``, and the composer is ready again (or enough idle
ticks have passed).
"""
from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass
from enum import Enum
from typing import Awaitable, Callable

from .extractor import ResponseExtractor
from .images import any_image_url
from .snapshot import (
    conversation_id_from_url,
    fatal_ui_error,
    find_ref,
    generation_in_progress,
    login_required,
    ready_for_next_prompt,
)
from .tools.browser import BrowserTool
from .tools.errors import (
    BackendRequestError,
    FatalUiError,
    LoginRequiredError,
    ResponseTimeoutError,
)

log = logging.getLogger(__name__)


class PollState(str, Enum):
    GENERATING = "generating"
    SETTLING_CANDIDATE = "settling_candidate"
    SETTLED = "settled"
    TIMED_OUT = "timed_out"
    FATAL_ERROR = "fatal_error"


@dataclass(frozen=True, slots=True)
class PollResult:
    text: str
    conversation_id: str | None
    state: PollState
    ticks: int = 0


@dataclass(frozen=True, slots=True)
class ImageSettle:
    conversation_id: str | None
    saw_image_candidate: bool
    state: PollState


class CompletionPoller:
    def __init__(
        self,
        browser: BrowserTool,
        extractor: ResponseExtractor | None = None,
        *,
        settle_ms: int = 6000,
        idle_ticks: int = 3,
        poll_interval_ms: int = 1500,
        sleep: Callable[[float], Awaitable[None]] | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.browser = browser
        self.extractor = extractor or ResponseExtractor()
        self.settle_ms = settle_ms
        self.idle_ticks = idle_ticks
        self.poll_interval_ms = poll_interval_ms
        self.sleep = sleep or asyncio.sleep
        self.clock = clock

    def _now_ms(self) -> float:
        return self.clock() * 1000.0

    async def _continue_generating(self, tab_id: str, text: str) -> bool:
        ref = find_ref(text, "button", r"Continue generating")
        if not ref:
            return False
        log.info("clicking 'Continue generating' on tab %s", tab_id)
        await self.browser.click(tab_id, ref=ref)
        await self.browser.try_wait(tab_id, 4000, False)
        return True

    async def poll_text(
        self,
        tab_id: str,
        prompt: str,
        timeout_ms: int,
        *,
        allow_empty: bool = False,
    ) -> PollResult:
        """Wait for the assistant's answer; raise on fatal UI states or an empty timeout."""
        started = self._now_ms()
        last_candidate = ""
        last_candidate_at = 0.0
        conversation_id: str | None = None
        idle = 0
        seen_generating = False
        ticks = 0

        while self._now_ms() - started < timeout_ms:
            ticks += 1
            await self.browser.try_wait(tab_id, 5000, False)
            snap = await self.browser.snapshot_all(tab_id)
            text = snap.text
            generating = generation_in_progress(text)
            if generating:
                seen_generating = True

            if await self._continue_generating(tab_id, text):
                idle = 0
                continue

            kind = fatal_ui_error(text, prompt)
            if kind and not last_candidate:
                raise FatalUiError(f"browser_ui_error_{kind}", kind=f"ui_error_{kind}")
            if login_required(text) and not last_candidate:
                raise LoginRequiredError("browser_login_required")

            candidate = self.extractor.extract(text, prompt)
            conversation_id = conversation_id_from_url(snap.url) or conversation_id
            trusted = seen_generating or bool(conversation_id)

            if trusted and candidate and candidate != last_candidate:
                last_candidate = candidate
                last_candidate_at = self._now_ms()
                idle = 0
            elif not generating:
                idle += 1
            else:
                idle = 0

            ready = ready_for_next_prompt(text)
            state = PollState.GENERATING if generating else PollState.SETTLING_CANDIDATE
            log.debug(
                "tick %d tab=%s state=%s idle=%d candidate_len=%d conversation=%s",
                ticks, tab_id, state.value, idle, len(last_candidate), conversation_id,
            )

            if (
                last_candidate
                and not generating
                and self._now_ms() - last_candidate_at >= self.settle_ms
                and (ready or idle >= self.idle_ticks)
            ):
                return PollResult(last_candidate, conversation_id, PollState.SETTLED, ticks)

            if allow_empty and trusted and not generating and (ready or idle >= self.idle_ticks):
                return PollResult("", conversation_id, PollState.SETTLED, ticks)

            await self.sleep(self.poll_interval_ms / 1000.0)

        if last_candidate:
            log.warning("response timeout on tab %s; returning the last candidate", tab_id)
            return PollResult(last_candidate, conversation_id, PollState.TIMED_OUT, ticks)
        if allow_empty and conversation_id:
            return PollResult("", conversation_id, PollState.TIMED_OUT, ticks)
        raise ResponseTimeoutError(
            "browser_assistant_response_timeout",
            partial_text=last_candidate,
            conversation_id=conversation_id,
        )

    async def wait_for_image_settle(self, tab_id: str, timeout_ms: int) -> ImageSettle:
        """Settle detection for image runs; never raises on timeout."""
        started = self._now_ms()
        conversation_id: str | None = None
        idle = 0
        saw_image = False

        while self._now_ms() - started < timeout_ms:
            await self.browser.try_wait(tab_id, 5000, False)
            snap = await self.browser.snapshot_all(tab_id)
            conversation_id = conversation_id_from_url(snap.url) or conversation_id

            try:
                visited = await self.browser.visited_urls(tab_id)
            except BackendRequestError as exc:
                log.debug("visited urls unavailable: %s", exc)
                visited = []
            if any_image_url(visited):
                saw_image = True

            generating = generation_in_progress(snap.text)
            idle = 0 if generating else idle + 1
            elapsed = self._now_ms() - started
            ready = ready_for_next_prompt(snap.text)

            if not generating and elapsed >= self.settle_ms:
                threshold = 2 if saw_image else self.idle_ticks
                if ready or idle >= threshold:
                    return ImageSettle(conversation_id, saw_image, PollState.SETTLED)

            await self.sleep(self.poll_interval_ms / 1000.0)

        return ImageSettle(conversation_id, saw_image, PollState.TIMED_OUT)
