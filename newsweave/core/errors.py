"""Exception taxonomy.

Ingestion and workflow code classify failures with these types:

- TransientIOError: network or datastore hiccup; retried per step policy.
- ContentValidationError: item content unusable; terminal, skipped.
- NotFoundError: item vanished before processing; short-circuits a workflow.
- MalformedResponseError: AI output failed to parse or shape-check; callers
  fall back to deterministic defaults.
- StepFailedError: a workflow step exhausted its retry budget.
"""

from typing import Optional


class NewsweaveError(Exception):
    """Base class for all service errors."""

    code = "INTERNAL_ERROR"

    def __init__(self, message: str = "", code: Optional[str] = None):
        super().__init__(message)
        self.message = message
        if code:
            self.code = code


class TransientIOError(NewsweaveError):
    code = "TRANSIENT_IO"


class ContentValidationError(NewsweaveError):
    code = "VALIDATION_ERROR"


class NotFoundError(NewsweaveError):
    code = "NOT_FOUND"


class MalformedResponseError(NewsweaveError):
    code = "MALFORMED_RESPONSE"


class StepFailedError(NewsweaveError):
    """Raised when a workflow step exhausts its retries."""

    code = "STEP_FAILED"

    def __init__(self, step_name: str, attempts: int, cause: Optional[BaseException] = None):
        super().__init__(f"Step '{step_name}' failed after {attempts} attempt(s): {cause}")
        self.step_name = step_name
        self.attempts = attempts
        self.cause = cause


# Failures that retrying cannot fix
TERMINAL_ERRORS = (NotFoundError, ContentValidationError)
