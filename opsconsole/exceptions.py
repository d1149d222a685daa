"""Exception hierarchy for the outreach console."""

from typing import Optional


class OpsConsoleError(Exception):
    """Base error for the outreach console."""


class ConfigurationError(OpsConsoleError):
    """Configuration is missing or invalid."""


class CallbackPayloadError(OpsConsoleError):
    """Callback codec was configured or called incorrectly."""


class OperationCancelledError(OpsConsoleError):
    """Work was cancelled because its operation is no longer live.

    Raised as control flow: handlers unwind on it without side effects and
    it is never logged as a failure.
    """

    def __init__(self, reason: Optional[str] = None) -> None:
        self.reason = reason or "Operation cancelled"
        super().__init__(self.reason)


class ConversationTimeoutError(OperationCancelledError):
    """A conversation waited too long for the user's next reply."""
