"""Exception hierarchy for Mnemo."""

from typing import Any, Dict, Optional


class MnemoError(Exception):
    """
    Base exception for all Mnemo errors.

    Carries an optional details dict and the underlying cause so callers
    (CLI, REST API) can report errors without parsing messages.
    """

    def __init__(
        self,
        message: str,
        details: Optional[Dict[str, Any]] = None,
        cause: Optional[BaseException] = None,
    ):
        self.message = message
        self.details = details or {}
        self.cause = cause
        super().__init__(self.message)

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for logging/API responses."""
        result: Dict[str, Any] = {
            "error_type": self.__class__.__name__,
            "message": self.message,
        }
        if self.details:
            result["details"] = self.details
        if self.cause:
            result["cause"] = str(self.cause)
        return result

    def __str__(self) -> str:
        base = self.message
        if self.details:
            base += f" | Details: {self.details}"
        if self.cause:
            base += f" | Caused by: {self.cause}"
        return base


class ConfigurationError(MnemoError):
    """Invalid setting detected before any I/O (threshold, k, batch size, dims)."""


class ProviderError(MnemoError):
    """Failure surfaced by an embedding or generation backend."""

    def __init__(self, message: str, provider: Optional[str] = None, **kwargs):
        details = kwargs.pop("details", {})
        if provider:
            details["provider"] = provider
        super().__init__(message, details=details, **kwargs)


class IndexConsistencyError(MnemoError):
    """
    One side of a paired vector store / record manager write failed.

    Soft error: it is logged and reported, never rolled back.
    """

    def __init__(self, message: str, failed_side: str, ids_count: int = 0, **kwargs):
        details = kwargs.pop("details", {})
        details["failed_side"] = failed_side
        details["ids"] = ids_count
        super().__init__(message, details=details, **kwargs)


class ReductionImpossibleError(MnemoError):
    """A single passage exceeds the token budget and cannot be split further."""


class ReductionLimitError(ReductionImpossibleError):
    """The map-reduce loop hit its pass ceiling without fitting the budget."""


class UserInputError(MnemoError):
    """Invalid caller input (blank query, missing delete filters)."""
