"""
Parsing for the automation backend's accessibility-tree snapshots.

A snapshot is a text dump with one node per line, e.g.::

    - heading "ChatGPT said:"
    - paragraph: Hello there
    - button "Copy" [e41]
    - textbox "Ask anything" [e7]

Element refs (``e41``) are only valid for the snapshot they came from; callers
re-read the snapshot before every action instead of holding on to a ref.
"""
from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Callable

Label = re.Pattern[str] | str


@dataclass(frozen=True, slots=True)
class Snapshot:
    url: str
    text: str
    has_more: bool = False
    next_offset: int | None = None

    @classmethod
    def from_payload(cls, payload: dict) -> "Snapshot":
        has_more = payload.get("hasMore") is True or payload.get("truncated") is True
        raw_offset = payload.get("nextOffset")
        next_offset = int(raw_offset) if isinstance(raw_offset, (int, float)) and not isinstance(raw_offset, bool) else None
        return cls(
            url=str(payload.get("url") or ""),
            text=str(payload.get("snapshot") or ""),
            has_more=has_more,
            next_offset=next_offset,
        )


@dataclass(frozen=True, slots=True)
class MenuItem:
    ref: str
    label: str


def _compile(label: Label) -> re.Pattern[str]:
    if isinstance(label, str):
        return re.compile(label, re.IGNORECASE)
    return label


def _node_re(role: str) -> re.Pattern[str]:
    return re.compile(rf"\b{re.escape(role)}\s+(?:\"([^\"]*)\"\s+)?\[(?:ref=)?(e\d+)\]", re.IGNORECASE)


def find_ref(text: str, role: str, label: Label) -> str | None:
    """Return the first ref (document order) of a ``role`` node whose name matches ``label``."""
    pattern = _compile(label)
    node = _node_re(role)
    for line in text.splitlines():
        match = node.search(line)
        if match and pattern.search(match.group(1) or ""):
            return match.group(2)
    return None


def find_ref_any_role(text: str, roles: list[str] | tuple[str, ...], label: Label) -> str | None:
    for role in roles:
        ref = find_ref(text, role, label)
        if ref:
            return ref
    return None


def normalize_whitespace(value: str) -> str:
    return re.sub(r"\s+", " ", value).strip()


_MODEL_OPTION_RES = (
    re.compile(r"\b(auto|instant|thinking|pro)\b", re.IGNORECASE),
    re.compile(r"\b(gpt|o\d)\b", re.IGNORECASE),
    re.compile(r"deep\s+research", re.IGNORECASE),
    re.compile(r"legacy\s+models", re.IGNORECASE),
    re.compile(r"alpha\s+models", re.IGNORECASE),
)


def is_model_option_label(label: str) -> bool:
    return any(pattern.search(label) for pattern in _MODEL_OPTION_RES)


_MENU_LINE_RE = re.compile(r"\b(menuitem|button)\s+\"([^\"]+)\"\s+\[(?:ref=)?(e\d+)\]", re.IGNORECASE)


def parse_menu_items(
    text: str,
    plausible: Callable[[str], bool] = is_model_option_label,
) -> list[MenuItem]:
    """Menu-ish nodes (menuitem/button) whose label passes ``plausible``, deduplicated by ref."""
    items: list[MenuItem] = []
    seen: set[str] = set()
    for line in text.splitlines():
        for match in _MENU_LINE_RE.finditer(line):
            label = normalize_whitespace(match.group(2))
            ref = match.group(3)
            if not label or ref in seen or not plausible(label):
                continue
            seen.add(ref)
            items.append(MenuItem(ref=ref, label=label))
    return items


# ---------------------------------------------------------------------------
# Status predicates
# ---------------------------------------------------------------------------

_GENERATING_RE = re.compile(r"button\s+\"(?:Stop|Cancel)\b", re.IGNORECASE)
_READY_RES = (
    re.compile(r"button\s+\"(?:Send prompt|Send message)\"", re.IGNORECASE),
    re.compile(r"textbox\s+", re.IGNORECASE),
    re.compile(r"#prompt-textarea", re.IGNORECASE),
)
_LOGIN_RE = re.compile(r"button\s+\"Log in\"", re.IGNORECASE)
_SIGNUP_RE = re.compile(r"button\s+\"Sign up for free\"", re.IGNORECASE)
_WORKSPACE_RE = re.compile(r"heading\s+\"Select a workspace", re.IGNORECASE)
_COMPOSER_RE = re.compile(r"Ask anything|Add files", re.IGNORECASE)

# Checked in order; the first match names the error kind.
FATAL_UI_ERRORS: tuple[tuple[str, re.Pattern[str]], ...] = (
    ("something_went_wrong", re.compile(r"\bSomething went wrong\b", re.IGNORECASE)),
    ("unable_to_load_conversation", re.compile(r"\bUnable to load conversation\b", re.IGNORECASE)),
    ("session_logged_out", re.compile(r"\bYou have been logged out\b", re.IGNORECASE)),
    ("session_expired", re.compile(r"\bSession expired\b", re.IGNORECASE)),
)


def generation_in_progress(text: str) -> bool:
    return bool(_GENERATING_RE.search(text))


def ready_for_next_prompt(text: str) -> bool:
    return any(pattern.search(text) for pattern in _READY_RES)


_NODE_VALUE_RE = re.compile(r'^[A-Za-z]+\s*(?:"(?P<name>[^"]*)"|:\s*(?P<text>.*))')


def _node_value(line: str) -> str:
    line = line.strip()
    if line.startswith("- "):
        line = line[2:].lstrip()
    match = _NODE_VALUE_RE.match(line)
    if not match:
        return normalize_whitespace(line)
    value = match.group("name") if match.group("name") is not None else match.group("text")
    return normalize_whitespace(value.strip('"'))


def fatal_ui_error(text: str, prompt: str = "") -> str | None:
    """Kind of the first fatal banner; lines that only echo ``prompt`` do not count."""
    echoed = normalize_whitespace(prompt).lower()
    lines = text.splitlines()
    for kind, pattern in FATAL_UI_ERRORS:
        for line in lines:
            if not pattern.search(line):
                continue
            value = _node_value(line).lower()
            if echoed and value and value in echoed:
                continue
            return kind
    return None


def login_required(text: str) -> bool:
    return bool(_LOGIN_RE.search(text)) and bool(_SIGNUP_RE.search(text))


def workspace_selection_visible(text: str) -> bool:
    return bool(_WORKSPACE_RE.search(text))


def composer_loaded(text: str) -> bool:
    return bool(_COMPOSER_RE.search(text))


_CONVERSATION_RE = re.compile(r"/c/([^/?#]+)", re.IGNORECASE)


def conversation_id_from_url(url: str | None) -> str | None:
    if not url:
        return None
    match = _CONVERSATION_RE.search(url)
    return match.group(1) if match else None
