"""Exception hierarchy shared across the pipeline."""


class GuruloError(Exception):
    """Base class for all pipeline errors."""


class ModelError(GuruloError):
    """Completion backend failure."""

    def __init__(self, message: str, status_code: int | None = None):
        super().__init__(message)
        self.status_code = status_code


class ModelTransientError(ModelError):
    """Retryable failure: rate limit, 5xx, timeout, connection."""

    def __init__(self, message: str, status_code: int | None = None, rate_limited: bool = False):
        super().__init__(message, status_code)
        self.rate_limited = rate_limited


class ModelUnavailableError(ModelTransientError):
    """Transient failures persisted past the retry budget."""

    def __init__(self, message: str, attempts: int, last_error: Exception | None = None):
        status = getattr(last_error, "status_code", None)
        rate_limited = getattr(last_error, "rate_limited", False)
        super().__init__(message, status, rate_limited)
        self.attempts = attempts
        self.last_error = last_error


class ModelAuthError(ModelError):
    """Credentials rejected by the backend. Never retried."""


class ModelResponseError(ModelError):
    """Backend answered with a payload we cannot use."""


class ToolValidationError(GuruloError):
    """A tool call failed schema validation."""

    def __init__(self, message: str, tool_name: str | None = None):
        super().__init__(message)
        self.tool_name = tool_name


class MultipleToolCallsError(ToolValidationError):
    """More than one action was requested in a single model turn."""


class ActionBlockedError(GuruloError):
    """An action was refused by the sandbox before any side effect."""


class UnconfirmedActionError(GuruloError):
    """The executor was handed an action that did not pass the safety gate."""
