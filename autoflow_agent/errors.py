"""Error taxonomy shared by the compiler, its collaborators, and the HTTP layer.

  SchemaError   — the candidate flow is structurally or semantically unbuildable
  SafetyBlock   — policy refusal (distinct channel from SchemaError)
  ProviderError — the IR producer failed or returned unparseable output
  EngineError   — a remote Activepieces call failed (carries path + raw body)
  AuthError     — credential acquisition failed; not retried automatically

Non-blocking findings are not exceptions; see agent/validation.py (Advisory).
"""

from __future__ import annotations


class AutoflowError(Exception):
    """Base class for every error raised by autoflow_agent."""


class SchemaError(AutoflowError):
    """Raised when a flow fails validation with blocking findings.

    errors:   blocking findings, human-readable, surfaced verbatim.
    warnings: advisory findings collected in the same pass.
    """

    def __init__(
        self,
        errors: list[str],
        warnings: list[str] | None = None,
        is_user_error: bool = False,
    ) -> None:
        super().__init__("; ".join(errors) or "flow failed validation")
        self.errors = list(errors)
        self.warnings = list(warnings or [])
        self.is_user_error = is_user_error


class SafetyBlock(AutoflowError):
    """Raised when the safety guard refuses a flow."""

    def __init__(self, blocks: list[str], warnings: list[str] | None = None) -> None:
        super().__init__("; ".join(blocks) or "flow blocked by safety policy")
        self.blocks = list(blocks)
        self.warnings = list(warnings or [])


class ProviderError(AutoflowError):
    """Raised when the IR producer fails or its output cannot be parsed.

    code: one of AI_CALL_FAILED, INVALID_RESPONSE, PARSE_ERROR, RETRY_FAILED.
    """

    AI_CALL_FAILED = "AI_CALL_FAILED"
    INVALID_RESPONSE = "INVALID_RESPONSE"
    PARSE_ERROR = "PARSE_ERROR"
    RETRY_FAILED = "RETRY_FAILED"

    def __init__(self, message: str, code: str, raw_response: str | None = None) -> None:
        super().__init__(message)
        self.code = code
        self.raw_response = raw_response


class EngineError(AutoflowError):
    """Raised when a call to the execution engine fails.

    status_code:   HTTP status from the engine, or None for transport failures.
    response_body: raw response text, kept for diagnostics.
    path:          API path of the failing call.
    """

    def __init__(
        self,
        message: str,
        status_code: int | None = None,
        response_body: str | None = None,
        path: str | None = None,
    ) -> None:
        super().__init__(message)
        self.status_code = status_code
        self.response_body = response_body
        self.path = path


class AuthError(AutoflowError):
    """Raised when signing in to the execution engine fails."""

    def __init__(self, message: str, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code
