from __future__ import annotations

import logging
import os
import sys
from collections.abc import Mapping
from dataclasses import dataclass, fields
from pathlib import Path
from typing import Any

import yaml

CONFIG_PATH = Path.home() / ".config" / "chatgpt-webui" / "config.yml"

LOG_FORMAT = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"

_TRUE = {"1", "true", "yes", "on"}
_FALSE = {"0", "false", "no", "off"}
_LEVELS = {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}


@dataclass(frozen=True)
class AppConfig:
    base_url: str = "https://chatgpt.com"
    session_token: str = ""
    browser_base_url: str = "http://127.0.0.1:9377"
    browser_user_id: str = "chatgpt-webui-mcp"
    browser_session_key: str = "chatgpt-webui"
    browser_api_key: str = ""
    wait_timeout_ms: int = 7_200_000       # Pro / Deep Research runs can take hours
    workspace: str = "PRO"
    image_screenshot_fallback: bool = False
    image_screenshot_max_bytes: int = 2 * 1024 * 1024
    image_download_max_bytes: int = 15 * 1024 * 1024
    job_ttl_ms: int = 24 * 60 * 60 * 1000
    job_max: int = 150
    # Poller tuning; empirically chosen, not derived.
    settle_ms: int = 6000
    idle_ticks: int = 3
    poll_interval_ms: int = 1500
    echo_containment_ratio: float = 0.6
    log_level: str = "INFO"


# Each env var maps to a config key; the first non-empty var in a group wins.
_ENV_KEYS: dict[str, tuple[str, ...]] = {
    "base_url": ("CHATGPT_WEBUI_BASE_URL",),
    "session_token": ("CHATGPT_SESSION_TOKEN", "OPENAI_SESSION_TOKEN"),
    "browser_base_url": ("CHATGPT_BROWSER_BASE_URL", "CHATGPT_CAMOFOX_BASE_URL", "CAMOFOX_BASE_URL"),
    "browser_user_id": ("CHATGPT_USER_ID", "CHATGPT_CAMOFOX_USER_ID"),
    "browser_session_key": ("CHATGPT_SESSION_KEY", "CHATGPT_CAMOFOX_SESSION_KEY"),
    "browser_api_key": ("CHATGPT_CAMOFOX_API_KEY", "CAMOFOX_API_KEY"),
    "wait_timeout_ms": ("CHATGPT_WAIT_TIMEOUT_MS", "CHATGPT_CAMOFOX_WAIT_TIMEOUT_MS"),
    "workspace": ("CHATGPT_WORKSPACE", "CHATGPT_CAMOFOX_WORKSPACE"),
    "image_screenshot_fallback": ("CHATGPT_IMAGE_SCREENSHOT_FALLBACK",),
    "image_screenshot_max_bytes": ("CHATGPT_IMAGE_SCREENSHOT_MAX_BYTES",),
    "image_download_max_bytes": ("CHATGPT_IMAGE_DOWNLOAD_MAX_BYTES",),
    "job_ttl_ms": ("CHATGPT_ASYNC_JOB_TTL_MS",),
    "job_max": ("CHATGPT_ASYNC_JOB_MAX",),
    "settle_ms": ("CHATGPT_SETTLE_MS",),
    "poll_interval_ms": ("CHATGPT_POLL_INTERVAL_MS",),
    "log_level": ("CHATGPT_WEBUI_LOG_LEVEL",),
}


def parse_bool(raw: object) -> bool | None:
    if isinstance(raw, bool):
        return raw
    value = str(raw or "").strip().lower()
    if value in _TRUE:
        return True
    if value in _FALSE:
        return False
    return None


def _positive_int(raw: object, *, allow_zero: bool = False) -> int | None:
    if isinstance(raw, bool):
        return None
    try:
        value = float(str(raw).strip())
    except (TypeError, ValueError):
        return None
    if value != value or value < 0 or (value == 0 and not allow_zero):
        return None
    return int(value)


def _validate(cfg: Mapping[str, Any]) -> dict[str, Any]:
    defaults = AppConfig().__dict__.copy()
    merged = {**defaults, **{k: v for k, v in cfg.items() if k in defaults}}
    for key in ("base_url", "browser_base_url"):
        value = merged.get(key)
        if not isinstance(value, str) or not value.strip():
            merged[key] = defaults[key]
        else:
            merged[key] = value.strip().rstrip("/")
    for key in ("session_token", "browser_api_key"):
        merged[key] = str(merged.get(key) or "").strip()
    for key in ("browser_user_id", "browser_session_key", "workspace"):
        value = str(merged.get(key) or "").strip()
        merged[key] = value or defaults[key]
    for key in ("wait_timeout_ms", "job_ttl_ms", "job_max", "settle_ms", "idle_ticks", "poll_interval_ms"):
        value = _positive_int(merged.get(key))
        merged[key] = value if value is not None else defaults[key]
    for key in ("image_screenshot_max_bytes", "image_download_max_bytes"):
        value = _positive_int(merged.get(key), allow_zero=True)
        merged[key] = value if value is not None else defaults[key]
    flag = parse_bool(merged.get("image_screenshot_fallback"))
    merged["image_screenshot_fallback"] = defaults["image_screenshot_fallback"] if flag is None else flag
    raw_ratio = merged.get("echo_containment_ratio")
    merged["echo_containment_ratio"] = (
        float(raw_ratio)
        if isinstance(raw_ratio, (int, float)) and not isinstance(raw_ratio, bool) and 0.0 < float(raw_ratio) <= 1.0
        else defaults["echo_containment_ratio"]
    )
    level = str(merged.get("log_level") or "").strip().upper()
    merged["log_level"] = level if level in _LEVELS else defaults["log_level"]
    return merged


def _read_token_file(path: str) -> str:
    path = path.strip()
    if not path:
        return ""
    try:
        return Path(path).expanduser().read_text(encoding="utf-8").strip()
    except OSError:
        return ""


def _env_overrides(env: Mapping[str, str]) -> dict[str, Any]:
    overrides: dict[str, Any] = {}
    for key, names in _ENV_KEYS.items():
        for name in names:
            value = env.get(name)
            if value is not None and value.strip():
                overrides[key] = value.strip()
                break
    if "session_token" not in overrides:
        token = _read_token_file(env.get("CHATGPT_SESSION_TOKEN_FILE", ""))
        if token:
            overrides["session_token"] = token
    return overrides


def load_config(path: Path | None = None, env: Mapping[str, str] | None = None) -> AppConfig:
    """Defaults, then the YAML file (if present), then environment variables."""
    env = os.environ if env is None else env
    if path is None:
        raw_path = env.get("CHATGPT_WEBUI_CONFIG", "").strip()
        path = Path(raw_path).expanduser() if raw_path else CONFIG_PATH

    file_cfg: dict[str, Any] = {}
    if path.exists():
        raw = yaml.safe_load(path.read_text(encoding="utf-8")) or {}
        if isinstance(raw, dict):
            file_cfg = raw

    validated = _validate({**file_cfg, **_env_overrides(env)})
    names = {f.name for f in fields(AppConfig)}
    return AppConfig(**{k: v for k, v in validated.items() if k in names})


def configure_logging(level: str = "INFO") -> None:
    # stdout carries the JSON-RPC stream; logs go to stderr only.
    root = logging.getLogger()
    for handler in list(root.handlers):
        root.removeHandler(handler)
    handler = logging.StreamHandler(sys.stderr)
    handler.setFormatter(logging.Formatter(LOG_FORMAT))
    root.addHandler(handler)
    root.setLevel(level)
