from __future__ import annotations

import re
from typing import Any, Literal

ModeHint = Literal["auto", "wait", "background"]

_I = re.IGNORECASE

_BACKGROUND_RE = re.compile(r"\b(background|async|in\s+the\s+background|dont\s+wait)\b", _I)
_WAIT_RE = re.compile(r"\b(wait|blocking|sync|synchronously)\b", _I)

_DEEP_RESEARCH_RE = re.compile(r"\bdeep\s*research\b|\bdeepresearch\b", _I)
_SPECIFIC_SITES_RE = re.compile(r"\bspecific\s+sites\b", _I)
_SEARCH_WEB_RE = re.compile(r"\bsearch\s+the\s+web\b|\bsearch\s+web\b", _I)
_CREATE_IMAGE_RE = re.compile(r"\b(create|generate|make)\s+(an?\s+)?images?\b|\bimage\s+generation\b", _I)

_EFFORT_PATTERNS: tuple[tuple[str, re.Pattern[str]], ...] = (
    ("none", re.compile(r"\bno\s+thinking\b|\bdisable\s+thinking\b", _I)),
    ("extended", re.compile(r"\bextended\s+(thinking|reasoning)\b|\bext\s+thinking\b", _I)),
    ("standard", re.compile(r"\bstandard\s+thinking\b|\bnormal\s+thinking\b", _I)),
)

_V51_RE = re.compile(r"\b5\.1\b", _I)
_MODES = ("pro", "instant", "thinking", "auto")

_ABOUT_RE = re.compile(r"\b(?:on|about)\b\s+(.+)$", _I)
_LEAD_INS = (
    re.compile(r"^with\s+chatgpt\s+webui\b", _I),
    re.compile(r"^chatgpt\s+webui\b", _I),
    re.compile(r"^do\s+deep\s*research\b", _I),
    re.compile(r"^deep\s*research\b", _I),
)


def normalize_command(value: str) -> str:
    return re.sub(r"\s+", " ", value).strip()


def parse_mode_hint(command: str) -> ModeHint | None:
    if _BACKGROUND_RE.search(command):
        return "background"
    if _WAIT_RE.search(command):
        return "wait"
    return None


def _mentioned_mode(lower: str) -> str | None:
    for mode in _MODES:
        if re.search(rf"\b{mode}\b", lower):
            return mode
    return None


def _extract_prompt(command: str) -> str:
    prompt = command
    colon = command.find(":")
    if 0 <= colon < len(command) - 1:
        prompt = command[colon + 1:].strip()
    else:
        match = _ABOUT_RE.search(command)
        if match:
            prompt = match.group(1).strip()
    for lead_in in _LEAD_INS:
        prompt = lead_in.sub("", prompt)
    return prompt.strip()


def parse_command(text: str) -> tuple[dict[str, Any], ModeHint | None]:
    """Best-effort slot filling of a plain-English request into ask arguments.

    "deep research on X", "create an image: X", "5.1 thinking: X", "pro, in the
    background: X" ...  Anything not recognised is left unset.
    """
    command = normalize_command(text)
    lower = command.lower()

    fields: dict[str, Any] = {}
    if _DEEP_RESEARCH_RE.search(lower):
        fields["deep_research"] = True
    if _SPECIFIC_SITES_RE.search(lower):
        fields["deep_research_site_mode"] = "specific_sites"
    elif _SEARCH_WEB_RE.search(lower):
        fields["deep_research_site_mode"] = "search_web"
    if _CREATE_IMAGE_RE.search(lower):
        fields["create_image"] = True

    for effort, pattern in _EFFORT_PATTERNS:
        if pattern.search(lower):
            fields["reasoning_effort"] = effort
            break

    mode = _mentioned_mode(lower)
    if _V51_RE.search(lower):
        # 5.1 lives under the legacy menu, so it needs an explicit slug.
        fields["model"] = f"gpt-5-1-{mode}" if mode in ("pro", "instant", "thinking") else "gpt-5-1"
    elif mode:
        fields["model_mode"] = mode

    fields["prompt"] = _extract_prompt(command)
    return fields, parse_mode_hint(command)
