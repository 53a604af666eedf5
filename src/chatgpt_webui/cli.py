from __future__ import annotations

import argparse
import asyncio
import json
import sys

from .client import WebuiClient
from .config import configure_logging, load_config
from .mcp_server import main as mcp_main
from .models import MODEL_MODES, REASONING_EFFORTS, AskRequest
from .tools.errors import WebuiError

SELF_TEST_CASES = (
    ("instant", "SELF_TEST_INSTANT_OK", 300_000),
    ("pro", "SELF_TEST_PRO_OK", 900_000),
)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="chatgpt-webui",
        description="Drive the ChatGPT web UI through a remote browser automation backend.",
    )
    subparsers = parser.add_subparsers(dest="command")

    subparsers.add_parser(
        "mcp",
        help="Run the MCP (Model Context Protocol) server over stdio.",
    )

    ask_parser = subparsers.add_parser("ask", help="Send one prompt and print the answer")
    ask_parser.add_argument("prompt", help="Prompt text")
    ask_parser.add_argument("--model", help="Model slug override (e.g. gpt-5-1-thinking)")
    ask_parser.add_argument("--model-mode", choices=MODEL_MODES, help="GPT-5.2 variant")
    ask_parser.add_argument("--reasoning-effort", choices=REASONING_EFFORTS, help="Thinking depth")
    ask_parser.add_argument("--deep-research", action="store_true", help="Use Deep Research")
    ask_parser.add_argument("--create-image", action="store_true", help="Use image generation mode")
    ask_parser.add_argument("--conversation-id", help="Continue an existing conversation")
    ask_parser.add_argument("--wait-timeout-ms", type=int, help="Max wait for the answer")
    ask_parser.add_argument("--json", action="store_true", help="Print the full result as JSON")
    ask_parser.set_defaults(func=ask_command)

    self_test = subparsers.add_parser("self-test", help="Check the session, then run instant and pro prompts")
    self_test.set_defaults(func=self_test_command)

    return parser


def _client() -> WebuiClient:
    cfg = load_config()
    configure_logging(cfg.log_level)
    return WebuiClient(cfg)


def ask_command(args: argparse.Namespace) -> int:
    request = AskRequest(
        prompt=args.prompt,
        model=args.model,
        model_mode=args.model_mode,
        reasoning_effort=args.reasoning_effort,
        deep_research=True if args.deep_research else None,
        create_image=True if args.create_image else None,
        wait_timeout_ms=args.wait_timeout_ms,
        conversation_id=args.conversation_id,
    )
    try:
        result = asyncio.run(_client().ask(request))
    except WebuiError as exc:
        print(f"error [{exc.kind}]: {exc}", file=sys.stderr)
        return 1
    if args.json:
        print(json.dumps(result.as_dict(), indent=2))
    else:
        print(result.text)
        for url in result.image_urls:
            print(url)
    return 0


async def _self_test(client: WebuiClient) -> None:
    session = await client.get_session()
    user = session.get("user") if isinstance(session.get("user"), dict) else {}
    print(f"[ok] session: {user.get('email') or 'unknown'}")
    for mode, marker, timeout_ms in SELF_TEST_CASES:
        result = await client.ask(
            AskRequest(prompt=f"Reply exactly with {marker}", model_mode=mode, wait_timeout_ms=timeout_ms)
        )
        if marker not in result.text:
            raise WebuiError(f"{mode}_mismatch: {result.text[:200]}", kind="self_test_mismatch")
        print(f"[ok] {mode}")


def self_test_command(args: argparse.Namespace) -> int:
    try:
        asyncio.run(_self_test(_client()))
    except WebuiError as exc:
        print(f"self-test failed: {exc}", file=sys.stderr)
        return 1
    return 0


def main() -> None:
    parser = build_parser()
    args = parser.parse_args()
    if args.command == "mcp":
        mcp_main()
        return
    if hasattr(args, "func"):
        sys.exit(args.func(args))
    parser.print_help()
    sys.exit(2)


if __name__ == "__main__":
    main()
