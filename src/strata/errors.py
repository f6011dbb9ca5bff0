"""Error taxonomy shared by every strata component."""

from __future__ import annotations


class StrataError(Exception):
    """Base class for all strata errors."""

    retryable = False


class UserInputError(StrataError):
    """Bad arguments, no active session, or an uninitialized memory root."""


class ConcurrencyError(StrataError):
    """Another writer holds the memory root."""

    retryable = True


class LockedError(ConcurrencyError):
    """A lock file could not be acquired within the retry budget."""

    def __init__(self, path, message: str = "Memory operations are locked. Try again shortly.") -> None:
        super().__init__(message)
        self.path = path


class ExternalServiceError(StrataError):
    """The LLM backend failed or returned something unusable."""


class LLMTimeoutError(ExternalServiceError):
    """An LLM call exceeded its time budget."""

    def __init__(self, timeout: float) -> None:
        super().__init__(f"LLM request timed out after {timeout:g}s")
        self.timeout = timeout


class SummaryFormatError(ExternalServiceError):
    """The LLM response did not match the session summary contract."""

    def __init__(self, message: str, raw: str = "") -> None:
        super().__init__(message)
        self.raw = raw


class IntegrityError(StrataError):
    """Persisted memory files violate their schema or link structure."""

    def __init__(self, issues: list) -> None:
        self.issues = list(issues)
        lines = [f"{len(self.issues)} integrity issue(s):"]
        lines.extend(f"  {issue}" for issue in self.issues)
        super().__init__("\n".join(lines))
