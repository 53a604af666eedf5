"""
Interaction driver: walks a fresh tab to the requested conversational
configuration (workspace, research mode, image mode, model, reasoning depth)
and submits the prompt.

Every action reads a fresh snapshot, resolves a ref, acts, and forgets the
ref.  Steps that may degrade without failing the run (cookie banners, image
toggle, model selection) return a ``StepOutcome`` instead of raising.
"""
from __future__ import annotations

import asyncio
import logging
import re
from dataclasses import dataclass, field
from enum import Enum
from typing import Awaitable, Callable
from urllib.parse import quote

from .models import RESEARCH_MODEL, AskRequest, ModelMode, ReasoningEffort, SiteMode
from .snapshot import (
    Label,
    composer_loaded,
    find_ref,
    generation_in_progress,
    login_required,
    parse_menu_items,
    workspace_selection_visible,
)
from .tools.browser import BrowserTool
from .tools.errors import (
    ControlNotFoundError,
    LoginRequiredError,
    WebuiError,
    WorkspaceSelectionError,
)

log = logging.getLogger(__name__)

_I = re.IGNORECASE

PROMPT_SELECTORS = (
    "#prompt-textarea",
    "textarea#prompt-textarea",
    "div#prompt-textarea",
    "textarea[name='prompt-textarea']",
    'role=textbox[name="Ask anything"]',
    "role=textbox",
    "[contenteditable='true']",
    "textarea",
)

COOKIE_BUTTONS = (
    re.compile(r"Accept all", _I),
    re.compile(r"Reject non-essential", _I),
    re.compile(r"^Close$", _I),
    re.compile(r"Manage Cookies", _I),
)

_KNOWN_MODEL_LABELS: dict[str, tuple[re.Pattern[str], ...]] = {
    "gpt-5-2": (re.compile(r"^Auto\b", _I), re.compile(r"GPT-5\.2$", _I)),
    "gpt-5-2-instant": (re.compile(r"^Instant\b", _I), re.compile(r"GPT-5\.2\s+Instant", _I)),
    "gpt-5-2-thinking": (re.compile(r"^Thinking\b", _I), re.compile(r"GPT-5\.2\s+Thinking", _I)),
    "gpt-5-2-pro": (re.compile(r"^Pro\b", _I), re.compile(r"GPT-5\.2\s+Pro", _I)),
    "gpt-5-1": (re.compile(r"GPT-5\.1$", _I),),
    "gpt-5-1-instant": (re.compile(r"GPT-5\.1\s+Instant", _I),),
    "gpt-5-1-thinking": (re.compile(r"GPT-5\.1\s+Thinking", _I),),
    "gpt-5-1-pro": (re.compile(r"GPT-5\.1\s+Pro", _I),),
    RESEARCH_MODEL: (re.compile(r"Deep\s+Research", _I),),
}

_MODE_SLUGS: dict[str, str] = {
    "auto": "gpt-5-2",
    "instant": "gpt-5-2-instant",
    "thinking": "gpt-5-2-thinking",
    "pro": "gpt-5-2-pro",
}

_LEGACY_MENU = re.compile(r"Legacy models", _I)
_ALPHA_MENU = re.compile(r"Alpha models", _I)
_ALPHA_SLUG_RE = re.compile(r"alpha|preview|o\d|gpt-4\.", _I)

_THINKING_ACTIVE = re.compile(r"^Thinking, click to remove", _I)
_EXTENDED_ACTIVE = re.compile(r"^Extended thinking, click to remove", _I)
_IMAGE_ACTIVE = re.compile(r"Create images?, click to remove", _I)
_CREATE_IMAGE = re.compile(r"^Create images?$", _I)
_SEND_LABELS = (
    re.compile(r"send prompt", _I),
    re.compile(r"send message", _I),
    re.compile(r"get a detailed report", _I),
    re.compile(r"detailed report", _I),
)
_ANY = re.compile(r".*")


def mode_to_model_slug(mode: ModelMode | str | None) -> str | None:
    return _MODE_SLUGS.get(mode or "")


def model_label_matchers(slug: str) -> tuple[re.Pattern[str], ...]:
    """Menu-label patterns for a model slug; unknown slugs match their parts in order."""
    slug = slug.strip().lower()
    if slug in _KNOWN_MODEL_LABELS:
        return _KNOWN_MODEL_LABELS[slug]
    parts = [re.escape(part) for part in slug.split("-") if part]
    if not parts:
        return ()
    return (re.compile(".*".join(parts), _I),)


def model_submenu_matchers(slug: str) -> tuple[re.Pattern[str], ...]:
    slug = slug.strip().lower()
    if not slug:
        return ()
    if slug.startswith("gpt-5-1"):
        return (_LEGACY_MENU,)
    if _ALPHA_SLUG_RE.search(slug):
        return (_ALPHA_MENU, _LEGACY_MENU)
    return (_LEGACY_MENU, _ALPHA_MENU)


class StepStatus(str, Enum):
    SUCCEEDED = "succeeded"
    DEGRADED = "degraded"
    SKIPPED = "skipped"


@dataclass(frozen=True, slots=True)
class StepOutcome:
    step: str
    status: StepStatus
    detail: str = ""

    @property
    def succeeded(self) -> bool:
        return self.status is StepStatus.SUCCEEDED


@dataclass(slots=True)
class DriverReport:
    outcomes: list[StepOutcome] = field(default_factory=list)

    def record(self, outcome: StepOutcome) -> StepOutcome:
        self.outcomes.append(outcome)
        return outcome

    def outcome(self, step: str) -> StepOutcome | None:
        for outcome in self.outcomes:
            if outcome.step == step:
                return outcome
        return None

    @property
    def model_selected(self) -> bool:
        outcome = self.outcome("select_model")
        return outcome is not None and outcome.succeeded


class InteractionDriver:
    def __init__(
        self,
        browser: BrowserTool,
        *,
        base_url: str,
        session_token: str,
        sleep: Callable[[float], Awaitable[None]] | None = None,
    ) -> None:
        self.browser = browser
        self.base_url = base_url.rstrip("/")
        self.session_token = session_token
        self.sleep = sleep or asyncio.sleep

    # ------------------------------------------------------------------
    # Primitives
    # ------------------------------------------------------------------

    async def find_and_click(self, tab_id: str, role: str, label: Label) -> bool:
        ref = find_ref(await self.browser.snapshot_text(tab_id), role, label)
        if not ref:
            return False
        await self.browser.click(tab_id, ref=ref)
        return True

    async def find_and_click_any_role(self, tab_id: str, roles: tuple[str, ...], label: Label) -> bool:
        for role in roles:
            if await self.find_and_click(tab_id, role, label):
                return True
        return False

    def conversation_url(self, conversation_id: str | None = None) -> str:
        conversation_id = (conversation_id or "").strip()
        if not conversation_id:
            return f"{self.base_url}/"
        return f"{self.base_url}/c/{quote(conversation_id, safe='')}"

    # ------------------------------------------------------------------
    # Steps 1-5: session, navigation, interstitials
    # ------------------------------------------------------------------

    async def open_session(self) -> str:
        tab_id = await self.browser.create_tab()
        try:
            await self.browser.import_session_cookie(self.session_token)
        except BaseException:
            await self.browser.delete_tab(tab_id)
            raise
        return tab_id

    async def navigate(self, tab_id: str, conversation_id: str | None = None) -> None:
        await self.browser.navigate(tab_id, self.conversation_url(conversation_id))
        try:
            await self.browser.wait(tab_id, 20000, True)
        except WebuiError:
            await self.browser.try_wait(tab_id, 8000, True)

    async def resolve_workspace(self, tab_id: str, workspace: str, attempts: int = 3) -> None:
        preferred = re.compile(rf"^{re.escape(workspace)}$", _I)
        for _ in range(attempts):
            text = await self.browser.snapshot_text(tab_id)
            if not workspace_selection_visible(text):
                return
            ref = find_ref(text, "radio", preferred) or find_ref(text, "radio", r".+")
            if not ref:
                raise WorkspaceSelectionError(
                    "browser_workspace_selection_ref_not_found",
                    kind="workspace_selection_ref_not_found",
                )
            log.info("selecting workspace %r", workspace)
            await self.browser.click(tab_id, ref=ref)
            await self.browser.try_wait(tab_id, 10000)
        if workspace_selection_visible(await self.browser.snapshot_text(tab_id)):
            raise WorkspaceSelectionError(
                "browser_workspace_selection_not_resolved",
                kind="workspace_selection_not_resolved",
            )

    async def dismiss_cookie_dialogs(self, tab_id: str) -> StepOutcome:
        for matcher in COOKIE_BUTTONS:
            try:
                if await self.find_and_click(tab_id, "button", matcher):
                    await self.browser.try_wait(tab_id, 2000)
                    return StepOutcome("dismiss_cookies", StepStatus.SUCCEEDED, matcher.pattern)
            except WebuiError as exc:
                log.debug("cookie button %r not clickable: %s", matcher.pattern, exc)
        return StepOutcome("dismiss_cookies", StepStatus.SKIPPED, "no cookie dialog")

    async def assert_authenticated(self, tab_id: str) -> None:
        if login_required(await self.browser.snapshot_text(tab_id)):
            raise LoginRequiredError("browser_login_required")

    # ------------------------------------------------------------------
    # Step 6: research mode
    # ------------------------------------------------------------------

    async def open_sidebar(self, tab_id: str) -> None:
        text = await self.browser.snapshot_text(tab_id)
        if find_ref(text, "button", r"Close sidebar"):
            return
        if await self.find_and_click(tab_id, "button", r"Open sidebar"):
            await self.browser.try_wait(tab_id, 3000)

    async def enable_deep_research(self, tab_id: str, site_mode: SiteMode | None = None) -> None:
        await self.open_sidebar(tab_id)

        clicked = await self.find_and_click(tab_id, "link", r"Deep research")
        if not clicked:
            clicked = await self.find_and_click_any_role(tab_id, ("button", "menuitem"), r"^Deep research$")
        if not clicked:
            raise ControlNotFoundError(
                "browser_deep_research_entry_not_found", kind="deep_research_entry_not_found"
            )
        await self.browser.try_wait(tab_id, 15000)

        if not site_mode:
            return

        if not await self.find_and_click(tab_id, "button", r"^Sites,"):
            raise ControlNotFoundError(
                "browser_deep_research_sites_button_not_found", kind="deep_research_sites_button_not_found"
            )
        await self.browser.try_wait(tab_id, 4000)

        target = r"Specific sites" if site_mode == "specific_sites" else r"Search the web"
        if not await self.find_and_click(tab_id, "menuitem", target):
            raise ControlNotFoundError(
                f"browser_deep_research_sites_option_not_found_{site_mode}",
                kind="deep_research_sites_option_not_found",
            )
        await self.browser.try_wait(tab_id, 3000)

    # ------------------------------------------------------------------
    # Step 7: image mode
    # ------------------------------------------------------------------

    async def _enable_create_image(self, tab_id: str, attempts: int = 4) -> str:
        roles = ("button", "menuitem", "menuitemradio")
        menu_roles = ("menuitemradio", "menuitem", "button")
        for _ in range(attempts):
            text = await self.browser.snapshot_text(tab_id)
            if not composer_loaded(text):
                await self.browser.try_wait(tab_id, 4000)
                continue
            if find_ref(text, "button", _IMAGE_ACTIVE):
                return "already active"

            if await self.find_and_click_any_role(tab_id, roles, _CREATE_IMAGE):
                await self.browser.try_wait(tab_id, 1500)
                return "direct toggle"

            opened = (
                await self.find_and_click(tab_id, "button", r"Add files")
                or await self.find_and_click(tab_id, "button", r"^Tools$")
                or await self.find_and_click(tab_id, "button", r"^Attach$")
                or await self.find_and_click(tab_id, "menuitem", r"Add files")
            )
            if opened:
                await self.browser.try_wait(tab_id, 2500)
                # Tool options in this menu often render without refs.
                try:
                    await self.browser.click(tab_id, selector='role=menuitemradio[name="Create image"]')
                    await self.browser.try_wait(tab_id, 1500)
                    return "tools menu selector"
                except WebuiError as exc:
                    log.debug("selector click on Create image failed: %s", exc)
                if (
                    await self.find_and_click_any_role(tab_id, menu_roles, _CREATE_IMAGE)
                    or await self.find_and_click_any_role(tab_id, menu_roles, r"Create.*image")
                ):
                    await self.browser.try_wait(tab_id, 1500)
                    return "tools menu"

            await self.browser.try_wait(tab_id, 2000)

        available = ", ".join(item.label for item in parse_menu_items(await self.browser.snapshot_text(tab_id)))
        raise ControlNotFoundError(
            f"browser_create_image_control_not_found; available: {available or 'none'}",
            kind="create_image_control_not_found",
        )

    async def enable_create_image(self, tab_id: str) -> StepOutcome:
        try:
            how = await self._enable_create_image(tab_id)
        except WebuiError as exc:
            log.warning("image mode not confirmed, submitting anyway: %s", exc)
            return StepOutcome("create_image", StepStatus.DEGRADED, str(exc))
        return StepOutcome("create_image", StepStatus.SUCCEEDED, how)

    # ------------------------------------------------------------------
    # Step 8: model selection
    # ------------------------------------------------------------------

    async def open_model_menu(self, tab_id: str) -> str:
        text = await self.browser.snapshot_text(tab_id)
        ref = (
            find_ref(text, "button", r"Model selector")
            or find_ref(text, "button", r"^(Auto|Instant|Thinking|Pro)$")
            or find_ref(text, "button", r"GPT-5\.[12]")
        )
        if not ref:
            raise ControlNotFoundError("browser_model_selector_not_found", kind="model_selector_not_found")
        await self.browser.click(tab_id, ref=ref)
        await self.browser.try_wait(tab_id, 4000)
        return await self.browser.snapshot_text(tab_id)

    async def _pick_model(self, tab_id: str, text: str, matchers: tuple[re.Pattern[str], ...]) -> bool:
        for item in parse_menu_items(text):
            if any(matcher.search(item.label) for matcher in matchers):
                await self.browser.click(tab_id, ref=item.ref)
                await self.browser.try_wait(tab_id, 8000)
                return True
        return False

    async def _select_model(self, tab_id: str, slug: str) -> None:
        matchers = model_label_matchers(slug)
        if await self._pick_model(tab_id, await self.open_model_menu(tab_id), matchers):
            return
        for submenu in model_submenu_matchers(slug):
            if not await self.find_and_click_any_role(tab_id, ("button", "menuitem"), submenu):
                continue
            await self.browser.try_wait(tab_id, 3500)
            if await self._pick_model(tab_id, await self.browser.snapshot_text(tab_id), matchers):
                return
        available = ", ".join(item.label for item in parse_menu_items(await self.browser.snapshot_text(tab_id)))
        raise ControlNotFoundError(
            f"browser_model_not_found_for_slug_{slug}; available: {available or 'none'}",
            kind="model_not_found",
        )

    async def select_model(self, tab_id: str, slug: str) -> StepOutcome:
        try:
            await self._select_model(tab_id, slug)
        except WebuiError as exc:
            log.warning("model %s not selected, continuing with the default: %s", slug, exc)
            return StepOutcome("select_model", StepStatus.DEGRADED, str(exc))
        return StepOutcome("select_model", StepStatus.SUCCEEDED, slug)

    # ------------------------------------------------------------------
    # Step 9: reasoning depth
    # ------------------------------------------------------------------

    async def set_reasoning_effort(self, tab_id: str, effort: ReasoningEffort | None) -> None:
        """Reach ``none < standard < extended`` from whatever is active now, one click per hop."""
        if not effort:
            return
        text = await self.browser.snapshot_text(tab_id)
        extended_ref = find_ref(text, "button", _EXTENDED_ACTIVE)
        thinking_ref = find_ref(text, "button", _THINKING_ACTIVE)

        if effort == "none":
            ref = extended_ref or thinking_ref
            if ref:
                await self.browser.click(tab_id, ref=ref)
                await self.browser.try_wait(tab_id, 3000)
            return

        if effort == "standard":
            if extended_ref:
                await self.browser.click(tab_id, ref=extended_ref)
                await self.browser.try_wait(tab_id, 2500)
                text = await self.browser.snapshot_text(tab_id)
            if find_ref(text, "button", _THINKING_ACTIVE):
                return
            if await self.find_and_click(tab_id, "button", r"^Thinking$"):
                await self.browser.try_wait(tab_id, 3000)
            return

        if extended_ref:
            return
        if thinking_ref:
            await self.browser.click(tab_id, ref=thinking_ref)
            await self.browser.try_wait(tab_id, 2500)
        if await self.find_and_click(tab_id, "button", r"^Extended thinking$"):
            await self.browser.try_wait(tab_id, 3000)
            return
        if await self.find_and_click_any_role(tab_id, ("button", "menuitem"), r"Extended"):
            await self.browser.try_wait(tab_id, 3000)

    # ------------------------------------------------------------------
    # Steps 10-11: type and submit
    # ------------------------------------------------------------------

    async def _type(self, tab_id: str, text: str, **target: str) -> bool:
        try:
            await self.browser.type_text(tab_id, text, **target)
        except WebuiError:
            return False
        return True

    async def type_prompt(self, tab_id: str, prompt: str) -> str:
        """Type into the composer; returns the selector or ref that took the text."""
        for selector in PROMPT_SELECTORS:
            if await self._type(tab_id, prompt, selector=selector):
                return selector
            try:
                await self.browser.click(tab_id, selector=selector)
            except WebuiError as exc:
                log.debug("focus click on %s failed: %s", selector, exc)
            if await self._type(tab_id, prompt, selector=selector):
                return selector

        ref = find_ref(await self.browser.snapshot_text(tab_id), "textbox", _ANY)
        if not ref:
            ref = find_ref(await self.browser.snapshot_text_all(tab_id), "textbox", _ANY)
        if not ref:
            raise ControlNotFoundError("browser_prompt_input_not_found", kind="prompt_input_not_found")
        await self.browser.type_text(tab_id, prompt, ref=ref)
        return ref

    async def submit_prompt(self, tab_id: str, grace_s: float = 0.6) -> StepOutcome:
        try:
            await self.browser.press(tab_id, "Enter")
        except WebuiError as exc:
            log.debug("Enter keypress failed, falling back to the send button: %s", exc)

        await self.sleep(grace_s)
        text = await self.browser.snapshot_text(tab_id)
        if generation_in_progress(text):
            return StepOutcome("submit", StepStatus.SUCCEEDED, "enter")

        ref = None
        for label in _SEND_LABELS:
            ref = find_ref(text, "button", label)
            if ref:
                break
        if ref:
            try:
                await self.browser.click(tab_id, ref=ref)
                await self.browser.try_wait(tab_id, 2000, False)
                return StepOutcome("submit", StepStatus.SUCCEEDED, "send button")
            except WebuiError as exc:
                return StepOutcome("submit", StepStatus.DEGRADED, str(exc))

        for selector in ('role=button[name="Send prompt"]', 'role=button[name="Send message"]'):
            try:
                await self.browser.click(tab_id, selector=selector)
                return StepOutcome("submit", StepStatus.SUCCEEDED, selector)
            except WebuiError as exc:
                log.debug("send selector %s failed: %s", selector, exc)
        return StepOutcome("submit", StepStatus.DEGRADED, "no send control; relying on Enter")

    # ------------------------------------------------------------------
    # Whole sequence
    # ------------------------------------------------------------------

    async def prepare_and_submit(
        self,
        tab_id: str,
        request: AskRequest,
        *,
        workspace: str,
        model_slug: str | None,
    ) -> DriverReport:
        """Steps 2-11 on an already opened and authenticated tab."""
        report = DriverReport()
        await self.navigate(tab_id, request.conversation_id)
        await self.resolve_workspace(tab_id, workspace)
        report.record(await self.dismiss_cookie_dialogs(tab_id))
        await self.assert_authenticated(tab_id)

        if request.wants_research:
            await self.enable_deep_research(tab_id, request.deep_research_site_mode)
            report.record(StepOutcome("deep_research", StepStatus.SUCCEEDED))

        if request.wants_image:
            report.record(await self.enable_create_image(tab_id))

        if model_slug and model_slug not in (RESEARCH_MODEL, "auto"):
            report.record(await self.select_model(tab_id, model_slug))

        if request.reasoning_effort:
            await self.set_reasoning_effort(tab_id, request.reasoning_effort)
            report.record(StepOutcome("reasoning_effort", StepStatus.SUCCEEDED, request.reasoning_effort))

        report.record(StepOutcome("type_prompt", StepStatus.SUCCEEDED, await self.type_prompt(tab_id, request.prompt)))
        report.record(await self.submit_prompt(tab_id))
        log.info("prompt submitted on tab %s (%s)", tab_id, ", ".join(f"{o.step}={o.status.value}" for o in report.outcomes))
        return report
