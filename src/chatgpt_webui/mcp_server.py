"""
MCP (Model Context Protocol) server for chatgpt-webui.

Exposes ChatGPT web-UI prompting as MCP tools: blocking asks, background runs
with status/result polling, session and model introspection, and a
natural-language command wrapper.

Protocol: JSON-RPC 2.0 over stdio (one JSON object per line).  Logs go to
stderr; stdout carries only protocol messages.

Every tool result carries ``structuredContent`` shaped either
``{"ok": true, "data": {...}}`` or ``{"error": "...", "kind": "..."}``, with
``isError`` set on the latter.

Usage
-----
    chatgpt-webui mcp

Client config entry
-------------------
{
  "mcpServers": {
    "chatgpt-webui": {
      "command": "chatgpt-webui",
      "args": ["mcp"],
      "env": {"CHATGPT_SESSION_TOKEN": "...", "CHATGPT_BROWSER_BASE_URL": "http://127.0.0.1:9377"}
    }
  }
}
"""
from __future__ import annotations

import asyncio
import json
import logging
import sys
from typing import Any

from . import __version__
from .client import WebuiClient, normalize_request
from .command import parse_command
from .config import AppConfig, configure_logging, load_config
from .jobs import JobScheduler, should_run_in_background
from .models import MODEL_MODES, REASONING_EFFORTS, SITE_MODES, AskRequest, Job, JobState, optional_positive_int
from .tools.errors import ConfigurationError, error_kind

log = logging.getLogger(__name__)

DEFAULT_POLL_INTERVAL_MS = 2000
RESULT_PREVIEW_CHARS = 500

_config: AppConfig | None = None
_client: WebuiClient | None = None
_scheduler: JobScheduler | None = None


def _get_config() -> AppConfig:
    global _config
    if _config is None:
        _config = load_config()
    return _config


def _get_client() -> WebuiClient:
    global _client
    if _client is None:
        _client = WebuiClient(_get_config())
    return _client


def _get_scheduler() -> JobScheduler:
    global _scheduler
    if _scheduler is None:
        cfg = _get_config()

        async def _runner(request: AskRequest):
            return await _get_client().ask(request)

        _scheduler = JobScheduler(_runner, ttl_ms=cfg.job_ttl_ms, max_jobs=cfg.job_max)
    return _scheduler


# ---------------------------------------------------------------------------
# Tool schema registry
# ---------------------------------------------------------------------------

_ASK_PROPERTIES: dict[str, Any] = {
    "prompt": {"type": "string", "description": "Prompt to send."},
    "model": {
        "type": "string",
        "description": (
            "Model slug override, e.g. gpt-5-2, gpt-5-2-pro, gpt-5-1-instant, research. "
            "Ignored when deep_research is set."
        ),
    },
    "model_mode": {
        "type": "string",
        "enum": list(MODEL_MODES),
        "description": "Quick selector for the GPT-5.2 variants.",
    },
    "reasoning_effort": {
        "type": "string",
        "enum": list(REASONING_EFFORTS),
        "description": "Thinking control in the composer; mainly for thinking-capable models.",
    },
    "deep_research": {"type": "boolean", "description": "Run the Deep Research flow."},
    "deep_research_site_mode": {
        "type": "string",
        "enum": list(SITE_MODES),
        "description": "Deep Research sites scope.",
    },
    "create_image": {"type": "boolean", "description": "Enable image generation mode."},
    "wait_timeout_ms": {
        "type": "integer",
        "minimum": 1,
        "description": "Max wait for the answer in ms (Pro and Deep Research runs can take hours).",
    },
    "workspace": {
        "type": "string",
        "description": "Workspace to pick if the site asks for one (e.g. PRO, Personal).",
    },
    "conversation_id": {"type": "string", "description": "Continue an existing conversation."},
    "parent_message_id": {"type": "string", "description": "Parent message id for a continued conversation."},
}

_ASK_SCHEMA: dict[str, Any] = {"type": "object", "properties": _ASK_PROPERTIES, "required": ["prompt"]}

_WAIT_PROPERTIES: dict[str, Any] = {
    "wait_timeout_ms": {
        "type": "integer",
        "minimum": 1,
        "description": "Optional max wait for completion before returning the current state.",
    },
    "poll_interval_ms": {
        "type": "integer",
        "minimum": 1,
        "description": f"Polling interval while waiting (default {DEFAULT_POLL_INTERVAL_MS} ms).",
    },
}

_MODE_PROPERTIES: dict[str, Any] = {
    "mode": {
        "type": "string",
        "enum": ["auto", "wait", "background"],
        "description": "auto picks background for long tasks; wait blocks; background returns a run_id.",
    },
    "wait_for_ms": {
        "type": "integer",
        "minimum": 1,
        "description": "Extra grace window in background mode before returning a running state.",
    },
    "poll_interval_ms": _WAIT_PROPERTIES["poll_interval_ms"],
}

_TOOL_SCHEMAS: list[dict[str, Any]] = [
    {
        "name": "chatgpt_webui_session",
        "description": "Validate the ChatGPT session token and return session details.",
        "inputSchema": {"type": "object", "properties": {}},
    },
    {
        "name": "chatgpt_webui_models",
        "description": "List the ChatGPT models available to the current account.",
        "inputSchema": {"type": "object", "properties": {}},
    },
    {
        "name": "chatgpt_webui_ask",
        "description": "Send a prompt to the ChatGPT web UI and block until the answer is ready.",
        "inputSchema": _ASK_SCHEMA,
    },
    {
        "name": "chatgpt_webui_ask_async_start",
        "description": (
            "Start a background ask job and return a job id immediately. "
            "Use for long tasks such as Deep Research and Pro runs."
        ),
        "inputSchema": _ASK_SCHEMA,
    },
    {
        "name": "chatgpt_webui_ask_async_status",
        "description": "Status of a background ask job, with a short preview of the answer.",
        "inputSchema": {
            "type": "object",
            "properties": {"job_id": {"type": "string", "description": "Id from chatgpt_webui_ask_async_start."}},
            "required": ["job_id"],
        },
    },
    {
        "name": "chatgpt_webui_ask_async_result",
        "description": "Result of a background ask job; optionally wait for it to finish.",
        "inputSchema": {
            "type": "object",
            "properties": {
                "job_id": {"type": "string", "description": "Id from chatgpt_webui_ask_async_start."},
                **_WAIT_PROPERTIES,
            },
            "required": ["job_id"],
        },
    },
    {
        "name": "chatgpt_webui_prompt",
        "description": (
            "Unified prompt entry point. mode=auto runs long tasks (Deep Research, Pro/Thinking, "
            "image generation) in the background and waits directly for short ones."
        ),
        "inputSchema": {
            "type": "object",
            "properties": {**_ASK_PROPERTIES, **_MODE_PROPERTIES},
            "required": ["prompt"],
        },
    },
    {
        "name": "chatgpt_webui_run",
        "description": "Check a run started by chatgpt_webui_prompt (run_id) or the async tools (job_id).",
        "inputSchema": {
            "type": "object",
            "properties": {
                "run_id": {"type": "string", "description": "Run id from chatgpt_webui_prompt."},
                "job_id": {"type": "string", "description": "Alias for run_id."},
                **_WAIT_PROPERTIES,
            },
        },
    },
    {
        "name": "chatgpt_webui_command",
        "description": (
            "Natural-language wrapper, e.g. 'with chatgpt webui on gpt 5.2 pro extended thinking: ...'. "
            "Parsed into a chatgpt_webui_prompt call."
        ),
        "inputSchema": {
            "type": "object",
            "properties": {
                "command": {"type": "string", "description": "Natural-language command."},
                **_MODE_PROPERTIES,
            },
            "required": ["command"],
        },
    },
]


# ---------------------------------------------------------------------------
# Result shaping
# ---------------------------------------------------------------------------

def _ok_payload(data: dict[str, Any]) -> dict[str, Any]:
    return {"ok": True, "data": data}


def _error_payload(message: str, kind: str, **extra: Any) -> dict[str, Any]:
    return {"error": message, "kind": kind, **extra}


def _job_result_payload(job: Job, id_key: str) -> tuple[str, dict[str, Any]]:
    if job.state is JobState.FAILED:
        message = job.error or "ask_job_failed"
        payload = _error_payload(message, job.error_kind or "ask_job_failed")
        payload.update({id_key: job.id, "state": job.state.value})
        return message, payload
    if job.state is not JobState.SUCCEEDED or job.result is None:
        data = {
            id_key: job.id,
            "state": job.state.value,
            "created_at": job.created_at,
            "started_at": job.started_at,
            "finished_at": job.finished_at,
        }
        return json.dumps(data, indent=2), _ok_payload(data)
    return job.result.text, _ok_payload({id_key: job.id, "state": job.state.value, **job.result.as_dict()})


def _submit(request: AskRequest) -> Job:
    # Reject bad requests and missing credentials before a job exists.
    normalize_request(request)
    _get_client()
    scheduler = _get_scheduler()
    return scheduler.status(scheduler.submit(request))


def _poll_interval(arguments: dict[str, Any]) -> int:
    return optional_positive_int("poll_interval_ms", arguments.get("poll_interval_ms")) or DEFAULT_POLL_INTERVAL_MS


async def _prompt(arguments: dict[str, Any]) -> tuple[str, dict[str, Any]]:
    mode = str(arguments.get("mode") or "auto").strip()
    if mode not in ("auto", "wait", "background"):
        raise ConfigurationError(f"invalid_mode: {mode!r}", kind="invalid_mode")
    request = AskRequest.from_arguments(arguments)
    if mode == "auto":
        mode = "background" if should_run_in_background(request) else "wait"

    if mode == "wait":
        result = await _get_client().ask(request)
        return result.text, _ok_payload({"mode": mode, "state": JobState.SUCCEEDED.value, **result.as_dict()})

    job = _submit(request)
    wait_for_ms = optional_positive_int("wait_for_ms", arguments.get("wait_for_ms"))
    if wait_for_ms:
        job = await _get_scheduler().await_until(job.id, wait_for_ms, _poll_interval(arguments))
        if job.state.terminal:
            text, payload = _job_result_payload(job, "run_id")
            target = payload.get("data", payload)
            target["mode"] = mode
            return text, payload

    data = {"mode": mode, "run_id": job.id, "state": job.state.value, "created_at": job.created_at}
    return json.dumps({"run_id": job.id, "state": job.state.value}, indent=2), _ok_payload(data)


async def _check_job(job_id: str, arguments: dict[str, Any], id_key: str) -> tuple[str, dict[str, Any]]:
    scheduler = _get_scheduler()
    wait_ms = optional_positive_int("wait_timeout_ms", arguments.get("wait_timeout_ms"))
    job = scheduler.status(job_id)
    if wait_ms:
        job = await scheduler.await_until(job_id, wait_ms, _poll_interval(arguments))
    return _job_result_payload(job, id_key)


# ---------------------------------------------------------------------------
# Tool dispatch: returns (text, structured payload)
# ---------------------------------------------------------------------------

async def _call_tool(name: str, arguments: dict[str, Any]) -> tuple[str, dict[str, Any]]:
    try:
        if name == "chatgpt_webui_session":
            session = await _get_client().get_session()
            return json.dumps(session, indent=2), _ok_payload(session)

        if name == "chatgpt_webui_models":
            models = await _get_client().get_models()
            return json.dumps(models, indent=2), _ok_payload({"models": models})

        if name == "chatgpt_webui_ask":
            result = await _get_client().ask(AskRequest.from_arguments(arguments))
            return result.text, _ok_payload(result.as_dict())

        if name == "chatgpt_webui_ask_async_start":
            job = _submit(AskRequest.from_arguments(arguments))
            data = {"job_id": job.id, "state": job.state.value, "created_at": job.created_at}
            return json.dumps({"job_id": job.id, "state": job.state.value}, indent=2), _ok_payload(data)

        if name == "chatgpt_webui_ask_async_status":
            job = _get_scheduler().status(str(arguments.get("job_id") or "").strip())
            data = job.summary(preview_chars=RESULT_PREVIEW_CHARS)
            return json.dumps(data, indent=2), _ok_payload(data)

        if name == "chatgpt_webui_ask_async_result":
            return await _check_job(str(arguments.get("job_id") or "").strip(), arguments, "job_id")

        if name == "chatgpt_webui_prompt":
            return await _prompt(arguments)

        if name == "chatgpt_webui_run":
            run_id = str(arguments.get("run_id") or arguments.get("job_id") or "").strip()
            if not run_id:
                return "missing_run_id", _error_payload("missing_run_id", "missing_run_id")
            return await _check_job(run_id, arguments, "run_id")

        if name == "chatgpt_webui_command":
            command = str(arguments.get("command") or "")
            fields, hint = parse_command(command)
            mode = str(arguments.get("mode") or "").strip() or hint or "auto"
            log.info("command parsed as %s (mode=%s)", {k: v for k, v in fields.items() if k != "prompt"}, mode)
            return await _prompt({
                **fields,
                "mode": mode,
                "wait_for_ms": arguments.get("wait_for_ms"),
                "poll_interval_ms": arguments.get("poll_interval_ms"),
            })

        message = f"Unknown tool: {name}"
        return message, _error_payload(message, "unknown_tool")

    except Exception as exc:  # noqa: BLE001
        kind = error_kind(exc)
        log.warning("tool %s failed (%s): %s", name, kind, exc)
        return str(exc), _error_payload(str(exc), kind)


# ---------------------------------------------------------------------------
# JSON-RPC 2.0 helpers
# ---------------------------------------------------------------------------

def _ok(request_id: Any, result: Any) -> dict:
    return {"jsonrpc": "2.0", "id": request_id, "result": result}


def _err(request_id: Any, code: int, message: str) -> dict:
    return {"jsonrpc": "2.0", "id": request_id, "error": {"code": code, "message": message}}


def _write(obj: dict) -> None:
    sys.stdout.write(json.dumps(obj) + "\n")
    sys.stdout.flush()


# ---------------------------------------------------------------------------
# Main request handler
# ---------------------------------------------------------------------------

async def _handle(line: str) -> None:
    try:
        req = json.loads(line)
    except json.JSONDecodeError:
        _write(_err(None, -32700, "Parse error"))
        return
    if not isinstance(req, dict):
        _write(_err(None, -32600, "Invalid Request"))
        return

    req_id = req.get("id")
    method = req.get("method", "")
    params = req.get("params") or {}

    if method == "initialize":
        client_ver = params.get("protocolVersion", "2024-11-05")
        agreed_ver = client_ver if client_ver in {"2024-11-05", "2025-03-26", "2025-06-18"} else "2024-11-05"
        _write(_ok(req_id, {
            "protocolVersion": agreed_ver,
            "capabilities": {"tools": {}},
            "serverInfo": {"name": "chatgpt-webui-mcp", "version": __version__},
        }))

    elif method in ("notifications/initialized", "initialized"):
        pass

    elif method == "tools/list":
        _write(_ok(req_id, {"tools": _TOOL_SCHEMAS}))

    elif method == "tools/call":
        tool_name = params.get("name", "")
        arguments = params.get("arguments") or {}
        text, payload = await _call_tool(tool_name, arguments)
        _write(_ok(req_id, {
            "content": [{"type": "text", "text": text}],
            "structuredContent": payload,
            "isError": "error" in payload,
        }))

    elif method == "ping":
        _write(_ok(req_id, {}))

    else:
        if req_id is not None:
            _write(_err(req_id, -32601, f"Method not found: {method}"))


# ---------------------------------------------------------------------------
# Entry point
# ---------------------------------------------------------------------------

async def _run() -> None:
    loop = asyncio.get_running_loop()
    reader = asyncio.StreamReader()
    protocol = asyncio.StreamReaderProtocol(reader)
    await loop.connect_read_pipe(lambda: protocol, sys.stdin)

    # Calls run as tasks so a long blocking ask does not stall status polls.
    pending: set[asyncio.Task[None]] = set()
    while True:
        try:
            line_bytes = await reader.readline()
        except (ValueError, ConnectionError) as exc:
            log.warning("stdin closed: %s", exc)
            break
        if not line_bytes:
            break
        line = line_bytes.decode(errors="replace").strip()
        if line:
            task = loop.create_task(_handle(line))
            pending.add(task)
            task.add_done_callback(pending.discard)

    if pending:
        await asyncio.gather(*pending, return_exceptions=True)


def main() -> None:
    configure_logging(_get_config().log_level)
    log.info("chatgpt-webui MCP server %s starting on stdio", __version__)
    asyncio.run(_run())


if __name__ == "__main__":
    main()
