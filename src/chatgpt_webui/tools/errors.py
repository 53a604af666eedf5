from __future__ import annotations

import re


class WebuiError(RuntimeError):
    """Base error; ``kind`` is the stable code surfaced in ``{error, kind}`` payloads."""

    kind = "webui_error"

    def __init__(
        self,
        message: str,
        *,
        kind: str | None = None,
        status_code: int | None = None,
        retryable: bool = False,
    ) -> None:
        super().__init__(message)
        if kind:
            self.kind = kind
        self.status_code = status_code
        self.retryable = retryable


class ConfigurationError(WebuiError):
    kind = "configuration_error"


class BackendRequestError(WebuiError):
    kind = "backend_request_failed"


class LoginRequiredError(WebuiError):
    kind = "login_required"


class FatalUiError(WebuiError):
    kind = "ui_error"


class WorkspaceSelectionError(WebuiError):
    kind = "workspace_selection_failed"


class ControlNotFoundError(WebuiError):
    kind = "control_not_found"


class JobNotFoundError(WebuiError):
    kind = "job_not_found"


class ResponseTimeoutError(WebuiError):
    kind = "assistant_response_timeout"

    def __init__(
        self,
        message: str,
        *,
        partial_text: str = "",
        conversation_id: str | None = None,
    ) -> None:
        super().__init__(message)
        self.partial_text = partial_text
        self.conversation_id = conversation_id


_CRASH_SIGNAL_RE = re.compile(
    r"Page crashed"
    r"|\bbrowser(?: process| context)? (?:has been|was|is) closed"
    r"|Target page, context or browser has been closed"
    r"|Failed to launch the browser process"
    r"|browserType\.launch"
    r"|browser_request_failed_500",
    re.IGNORECASE,
)


def is_crash_signal(message: str) -> bool:
    return bool(_CRASH_SIGNAL_RE.search(message))


def error_kind(exc: BaseException) -> str:
    if isinstance(exc, WebuiError):
        return exc.kind
    return type(exc).__name__
