import sys
from pathlib import Path

sys.path.insert(0, str(Path(__file__).resolve().parents[1] / "src"))

from chatgpt_webui.extractor import (
    EchoFilteredLineStrategy,
    ResponseExtractor,
    TurnBlockStrategy,
    looks_like_prompt_echo,
    snapshot_lines,
)

PROMPT = "Summarise the plot of Hamlet in one short sentence please"


def _snapshot(*lines: str) -> str:
    return "\n".join(f"- {line}" for line in lines)


def test_last_assistant_turn_wins() -> None:
    text = _snapshot(
        'heading "You said:"',
        "paragraph: first question",
        'heading "ChatGPT said:"',
        "paragraph: first answer",
        'button "Copy" [e5]',
        'heading "You said:"',
        f"paragraph: {PROMPT}",
        'heading "ChatGPT said:"',
        "paragraph: A prince avenges his father and everyone dies.",
        'button "Copy" [e9]',
    )
    assert ResponseExtractor().extract(text, PROMPT) == "A prince avenges his father and everyone dies."


def test_turn_blocks_render_light_markdown() -> None:
    lines = snapshot_lines(_snapshot(
        'heading "ChatGPT said:"',
        'button "Thought for 12s" [e4]',
        'heading "Summary"',
        "paragraph: Hello",
        "strong: world",
        "text: !",
        "code: print(1)",
        "separator",
        "paragraph: Done",
        'button "Copy" [e6]',
        "paragraph: never reached",
    ))
    rendered = TurnBlockStrategy().extract(lines, "")
    assert rendered.strip().splitlines() == ["## Summary", "Hello world!", "```", "print(1)", "```", "---", "Done"]


def test_prompt_echo_only_yields_empty() -> None:
    text = _snapshot(
        'heading "You said:"',
        f"paragraph: {PROMPT}",
        f"text: {PROMPT}",
        'button "Stop streaming" [e9]',
    )
    assert ResponseExtractor().extract(text, PROMPT) == ""


def test_fallback_prefers_lines_after_the_echo() -> None:
    text = _snapshot(
        "text: What can I help with?",
        "text: earlier chatter",
        f"paragraph: {PROMPT}",
        "text: Revenge tragedy in Denmark.",
        "text: ChatGPT can make mistakes. Check important info.",
    )
    assert ResponseExtractor().extract(text, PROMPT) == "Revenge tragedy in Denmark."


def test_fallback_skips_user_turn_content() -> None:
    lines = snapshot_lines(_snapshot('heading "You said:"', "paragraph: my own words", 'heading "Answer"', "text: 42"))
    assert EchoFilteredLineStrategy().extract(lines, "unrelated") == "42"


def test_extraction_is_idempotent() -> None:
    text = _snapshot('heading "ChatGPT said:"', "paragraph: Stable answer", 'button "Copy" [e1]')
    extractor = ResponseExtractor()
    assert extractor.extract(text, PROMPT) == extractor.extract(text, PROMPT) == "Stable answer"


def test_failing_strategy_falls_through() -> None:
    class Broken:
        name = "broken"

        def extract(self, lines: list[str], prompt: str) -> str:
            raise RuntimeError("boom")

    extractor = ResponseExtractor([Broken(), EchoFilteredLineStrategy()])
    assert extractor.extract(_snapshot("text: survivor"), "x") == "survivor"
    assert extractor.extract("", "x") == ""


def test_looks_like_prompt_echo() -> None:
    assert looks_like_prompt_echo("  hi  ", "hi")
    assert not looks_like_prompt_echo("hi there", "hi")
    assert looks_like_prompt_echo("Summarise the plot of Hamlet in one short sentence", PROMPT)
    assert not looks_like_prompt_echo("Hamlet", PROMPT)
    assert not looks_like_prompt_echo("", PROMPT)


def test_containment_ratio_is_tunable() -> None:
    fragment = "Summarise the plot of Hamlet"
    assert not looks_like_prompt_echo(fragment, PROMPT)
    assert looks_like_prompt_echo(fragment, PROMPT, containment_ratio=0.4)
