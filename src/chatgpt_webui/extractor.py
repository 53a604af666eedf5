"""
Recover the assistant's answer from a rendered snapshot.

Extraction is a chain of strategies tried in order; the first one that yields
a non-empty answer wins.  ``TurnBlockStrategy`` reads the structured
"ChatGPT said:" turns.  ``EchoFilteredLineStrategy`` is the fallback for
mid-stream renders or reworded headings: it scans loose text lines and throws
away prompt echoes and UI chrome.
"""
from __future__ import annotations

import logging
import re
from typing import Protocol

from .snapshot import normalize_whitespace

log = logging.getLogger(__name__)

_USER_TURN_RE = re.compile(r'^heading\s+"You said:"', re.IGNORECASE)
_ASSISTANT_TURN_RE = re.compile(r'^heading\s+"ChatGPT said:"', re.IGNORECASE)
_ANY_HEADING_RE = re.compile(r'^heading\s+"([^"]+)"', re.IGNORECASE)
_REGION_BOUNDARY_RE = re.compile(r"^(article|complementary|dialog|main|banner):", re.IGNORECASE)
_TURN_END_BUTTON_RE = re.compile(
    r'^button\s+"(Copy|Good response|Bad response|Share|Switch model|More actions)"',
    re.IGNORECASE,
)
_BUTTON_RE = re.compile(r'^button\s+"', re.IGNORECASE)
_PARAGRAPH_RE = re.compile(r"^paragraph:\s*", re.IGNORECASE)
_CODE_RE = re.compile(r"^code:\s*", re.IGNORECASE)
_BLOCKQUOTE_RE = re.compile(r"^blockquote:", re.IGNORECASE)
_LIST_RE = re.compile(r"^(list|listitem):", re.IGNORECASE)
_SEPARATOR_RE = re.compile(r"^separator\b", re.IGNORECASE)
_INLINE_RE = re.compile(
    r"^(text|strong|emphasis|em|code|mark|del|ins|sub|sup|abbr|time|span|link):\s*",
    re.IGNORECASE,
)
_FALLBACK_LINE_RE = re.compile(
    r"^(paragraph|text|strong|emphasis|em|code|mark|del|ins|sub|sup|abbr|time|span|link):\s*",
    re.IGNORECASE,
)
_SPACE_BEFORE_PUNCT_RE = re.compile(r"\s+([.,;:!?)\]}])")
_COMPOSER_PLACEHOLDER_RE = re.compile(r"^Ask anything$", re.IGNORECASE)

# Static UI strings that are never part of an answer.
UI_CHROME_DENYLIST: tuple[re.Pattern[str], ...] = tuple(
    re.compile(pattern, re.IGNORECASE)
    for pattern in (
        r"^By messaging ChatGPT",
        r"^Terms$",
        r"^Privacy Policy$",
        r"^Ask anything$",
        r"^What can I help with\?$",
        r"^Attach$",
        r"^Search$",
        r"^Study$",
        r"^Create image$",
        r"^Voice$",
        r"^Send prompt$",
        r"^Send message$",
        r"^Get a detailed report$",
        r"^Detailed report$",
        r"^Sources$",
        r"^Log in$",
        r"^Sign up for free$",
        r"^ChatGPT can make mistakes\.",
    )
)


def snapshot_lines(snapshot_text: str) -> list[str]:
    """Trimmed, non-empty lines with the tree's leading ``- `` bullet removed."""
    lines = []
    for raw in snapshot_text.splitlines():
        line = raw.strip()
        if not line:
            continue
        if line.startswith("- "):
            line = line[2:].lstrip()
        lines.append(line)
    return lines


def _unquote(value: str) -> str:
    value = value.strip()
    if len(value) >= 2 and value.startswith('"') and value.endswith('"'):
        return value[1:-1]
    return value


def looks_like_prompt_echo(
    candidate: str,
    prompt: str,
    *,
    containment_ratio: float = 0.6,
    min_prompt_length: int = 20,
) -> bool:
    """True when ``candidate`` is the prompt, or a re-wrapped substantial part of it."""
    cn = normalize_whitespace(candidate)
    pn = normalize_whitespace(prompt)
    if not cn or not pn:
        return False
    if cn == pn:
        return True
    if len(pn) < min_prompt_length:
        return False
    if len(cn) >= len(pn) * containment_ratio and cn in pn:
        return True
    if len(pn) >= len(cn) * containment_ratio and pn in cn:
        return True
    return False


class ExtractionStrategy(Protocol):
    name: str

    def extract(self, lines: list[str], prompt: str) -> str: ...


class TurnBlockStrategy:
    """Content of the last "ChatGPT said:" turn, rendered as light markdown."""

    name = "turn_blocks"

    def extract(self, lines: list[str], prompt: str) -> str:
        turns: list[str] = []
        for index, line in enumerate(lines):
            if _ASSISTANT_TURN_RE.match(line):
                body = self._collect_turn(lines, index + 1)
                if body:
                    turns.append(body)
        return turns[-1] if turns else ""

    def _collect_turn(self, lines: list[str], start: int) -> str:
        blocks: list[str] = []
        paragraph: list[str] = []

        def flush() -> None:
            if paragraph:
                blocks.append(_SPACE_BEFORE_PUNCT_RE.sub(r"\1", " ".join(paragraph)))
                paragraph.clear()

        for line in lines[start:]:
            if _USER_TURN_RE.match(line) or _ASSISTANT_TURN_RE.match(line):
                break
            if _REGION_BOUNDARY_RE.match(line) or _TURN_END_BUTTON_RE.match(line):
                break
            # "Thought for 12s", "Sources" and similar collapsibles.
            if _BUTTON_RE.match(line):
                continue

            heading = _ANY_HEADING_RE.match(line)
            if heading:
                flush()
                title = heading.group(1).strip()
                if title:
                    blocks.append(f"\n## {title}")
                continue

            if _PARAGRAPH_RE.match(line):
                flush()
                value = _unquote(_PARAGRAPH_RE.sub("", line, count=1))
                if value and not _COMPOSER_PLACEHOLDER_RE.match(value):
                    paragraph.append(value)
                continue

            if _CODE_RE.match(line):
                flush()
                value = _unquote(_CODE_RE.sub("", line, count=1))
                if value:
                    blocks.append(f"```\n{value}\n```")
                continue

            if _BLOCKQUOTE_RE.match(line) or _LIST_RE.match(line):
                flush()
                continue

            if _SEPARATOR_RE.match(line):
                flush()
                blocks.append("---")
                continue

            inline = _INLINE_RE.match(line)
            if inline:
                value = _unquote(line[inline.end():])
                if value and not _COMPOSER_PLACEHOLDER_RE.match(value):
                    paragraph.append(value)

        flush()
        return "\n".join(blocks)


class EchoFilteredLineStrategy:
    """Last loose text line outside user turns that is neither a prompt echo nor chrome."""

    name = "echo_filtered_lines"

    def __init__(self, containment_ratio: float = 0.6) -> None:
        self.containment_ratio = containment_ratio

    def extract(self, lines: list[str], prompt: str) -> str:
        inside_user_turn = False
        seen_echo = False
        before_echo: list[str] = []
        after_echo: list[str] = []

        for line in lines:
            if _USER_TURN_RE.match(line):
                inside_user_turn = True
                continue
            if _ASSISTANT_TURN_RE.match(line):
                inside_user_turn = False
                continue
            if _ANY_HEADING_RE.match(line):
                inside_user_turn = False
            if inside_user_turn:
                continue

            match = _FALLBACK_LINE_RE.match(line)
            if not match:
                continue
            value = _unquote(line[match.end():]).strip()
            if not value:
                continue
            if looks_like_prompt_echo(value, prompt, containment_ratio=self.containment_ratio):
                seen_echo = True
                continue
            if any(pattern.search(value) for pattern in UI_CHROME_DENYLIST):
                continue
            (after_echo if seen_echo else before_echo).append(value)

        # Last, not longest: the longest line on the page is often the prompt.
        preferred = after_echo or before_echo
        return preferred[-1] if preferred else ""


class ResponseExtractor:
    def __init__(
        self,
        strategies: list[ExtractionStrategy] | None = None,
        *,
        containment_ratio: float = 0.6,
    ) -> None:
        self.strategies: list[ExtractionStrategy] = strategies or [
            TurnBlockStrategy(),
            EchoFilteredLineStrategy(containment_ratio),
        ]

    def extract(self, snapshot_text: str, prompt: str) -> str:
        """Best candidate answer, or ``""``; never raises."""
        try:
            lines = snapshot_lines(snapshot_text or "")
        except Exception:  # noqa: BLE001
            return ""
        for strategy in self.strategies:
            try:
                candidate = strategy.extract(lines, prompt or "")
            except Exception as exc:  # noqa: BLE001
                log.debug("extraction strategy %s failed: %s", strategy.name, exc)
                continue
            if candidate:
                return candidate
        return ""
