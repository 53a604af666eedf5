from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Any, Literal

from .tools.errors import ConfigurationError

ModelMode = Literal["auto", "instant", "thinking", "pro"]
ReasoningEffort = Literal["none", "standard", "extended"]
SiteMode = Literal["search_web", "specific_sites"]

MODEL_MODES = ("auto", "instant", "thinking", "pro")
REASONING_EFFORTS = ("none", "standard", "extended")
SITE_MODES = ("search_web", "specific_sites")

RESEARCH_MODEL = "research"


class JobState(str, Enum):
    QUEUED = "queued"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"

    @property
    def terminal(self) -> bool:
        return self in (JobState.SUCCEEDED, JobState.FAILED)


def _opt_str(raw: object) -> str | None:
    if raw is None:
        return None
    value = str(raw).strip()
    return value or None


def _opt_choice(name: str, raw: object, choices: tuple[str, ...]) -> Any:
    value = _opt_str(raw)
    if value is None:
        return None
    if value not in choices:
        raise ConfigurationError(
            f"invalid_{name}: {value!r} (expected one of {', '.join(choices)})",
            kind=f"invalid_{name}",
        )
    return value


def _opt_bool(raw: object) -> bool | None:
    if raw is None:
        return None
    if isinstance(raw, bool):
        return raw
    return str(raw).strip().lower() in {"1", "true", "yes", "on"}


def optional_positive_int(name: str, raw: object) -> int | None:
    if raw is None or raw == "":
        return None
    try:
        value = int(raw)  # type: ignore[call-overload]
    except (TypeError, ValueError):
        raise ConfigurationError(f"invalid_{name}: {raw!r}", kind=f"invalid_{name}") from None
    if value <= 0:
        raise ConfigurationError(f"invalid_{name}: must be positive", kind=f"invalid_{name}")
    return value


@dataclass(slots=True)
class AskRequest:
    prompt: str
    model: str | None = None
    model_mode: ModelMode | None = None
    reasoning_effort: ReasoningEffort | None = None
    deep_research: bool | None = None
    deep_research_site_mode: SiteMode | None = None
    create_image: bool | None = None
    wait_timeout_ms: int | None = None
    workspace: str | None = None
    conversation_id: str | None = None
    parent_message_id: str | None = None

    @classmethod
    def from_arguments(cls, arguments: dict[str, Any]) -> "AskRequest":
        """Build a request from tool-call arguments (snake_case wire names)."""
        return cls(
            prompt=str(arguments.get("prompt") or ""),
            model=_opt_str(arguments.get("model")),
            model_mode=_opt_choice("model_mode", arguments.get("model_mode"), MODEL_MODES),
            reasoning_effort=_opt_choice("reasoning_effort", arguments.get("reasoning_effort"), REASONING_EFFORTS),
            deep_research=_opt_bool(arguments.get("deep_research")),
            deep_research_site_mode=_opt_choice(
                "deep_research_site_mode", arguments.get("deep_research_site_mode"), SITE_MODES
            ),
            create_image=_opt_bool(arguments.get("create_image")),
            wait_timeout_ms=optional_positive_int("wait_timeout_ms", arguments.get("wait_timeout_ms")),
            workspace=_opt_str(arguments.get("workspace")),
            conversation_id=_opt_str(arguments.get("conversation_id")),
            parent_message_id=_opt_str(arguments.get("parent_message_id")),
        )

    @property
    def wants_research(self) -> bool:
        return (
            self.deep_research is True
            or self.deep_research_site_mode is not None
            or (self.model or "").strip() == RESEARCH_MODEL
        )

    @property
    def wants_image(self) -> bool:
        return self.create_image is True

    def validate(self) -> None:
        """Reject requests that must never reach the remote surface."""
        if not self.prompt.strip():
            raise ConfigurationError("missing_prompt", kind="missing_prompt")
        if self.wants_image and self.wants_research:
            raise ConfigurationError(
                "invalid_mode_combination_create_image_and_deep_research",
                kind="invalid_mode_combination",
            )

    def as_dict(self) -> dict[str, Any]:
        payload = {
            "prompt": self.prompt,
            "model": self.model,
            "model_mode": self.model_mode,
            "reasoning_effort": self.reasoning_effort,
            "deep_research": self.deep_research,
            "deep_research_site_mode": self.deep_research_site_mode,
            "create_image": self.create_image,
            "wait_timeout_ms": self.wait_timeout_ms,
            "workspace": self.workspace,
            "conversation_id": self.conversation_id,
            "parent_message_id": self.parent_message_id,
        }
        return {k: v for k, v in payload.items() if v is not None}


@dataclass(slots=True)
class ImageArtifact:
    asset_pointer: str
    source_url: str
    mime_type: str | None = None
    byte_size: int | None = None
    inline_data: str | None = None  # data: URL

    def as_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {"asset_pointer": self.asset_pointer, "source_url": self.source_url}
        if self.mime_type:
            payload["mime_type"] = self.mime_type
        if self.byte_size is not None:
            payload["bytes"] = self.byte_size
        if self.inline_data:
            payload["data_url"] = self.inline_data
        return payload


@dataclass(frozen=True, slots=True)
class AskResult:
    text: str
    conversation_id: str | None = None
    parent_message_id: str | None = None
    model: str | None = None
    image_urls: tuple[str, ...] = ()
    image_data_url: str | None = None
    images: tuple[ImageArtifact, ...] = ()

    def as_dict(self) -> dict[str, Any]:
        return {
            "text": self.text,
            "conversation_id": self.conversation_id,
            "parent_message_id": self.parent_message_id,
            "model": self.model,
            "image_urls": list(self.image_urls),
            "image_data_url": self.image_data_url,
            "images": [image.as_dict() for image in self.images],
        }


@dataclass(slots=True)
class Job:
    id: str
    input: AskRequest
    created_at: int
    state: JobState = JobState.QUEUED
    started_at: int | None = None
    finished_at: int | None = None
    result: AskResult | None = None
    error: str | None = None
    error_kind: str | None = None

    def summary(self, *, preview_chars: int = 0) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "job_id": self.id,
            "state": self.state.value,
            "created_at": self.created_at,
            "started_at": self.started_at,
            "finished_at": self.finished_at,
            "error": self.error,
        }
        if self.error_kind:
            payload["error_kind"] = self.error_kind
        if preview_chars:
            text = self.result.text if self.result else ""
            payload["result_preview"] = text[:preview_chars] if text else None
        return payload
