"""Errors that reach callers of the router."""

from typing import TYPE_CHECKING, Sequence, Tuple

if TYPE_CHECKING:
    from .budget import Clearance
    from .models import GenerationAttempt


class NarrativeGuardError(Exception):
    """Base class for errors raised by generate_narrative."""


class ValidationError(NarrativeGuardError, ValueError):
    """Malformed generation request. Nothing was attempted."""


class BudgetExceeded(NarrativeGuardError):
    """A budget hard stop (or an unreadable ledger) refused the request."""

    def __init__(
        self,
        clearance: "Clearance",
        attempts: Sequence["GenerationAttempt"] = ()
    ):
        super().__init__(clearance.message or f"Budget denied: {clearance.reason.value}")
        self.clearance = clearance
        self.attempts: Tuple["GenerationAttempt", ...] = tuple(attempts)


class ProvidersExhausted(NarrativeGuardError):
    """Every eligible provider failed; carries the full attempt log."""

    def __init__(
        self,
        attempts: Sequence["GenerationAttempt"],
        skipped: Sequence[str] = ()
    ):
        self.attempts: Tuple["GenerationAttempt", ...] = tuple(attempts)
        self.skipped: Tuple[str, ...] = tuple(skipped)
        summary = ", ".join(
            f"{attempt.provider_name or '-'}={attempt.status}" for attempt in self.attempts
        ) or "no provider attempted"
        if self.skipped:
            summary += f"; skipped: {', '.join(self.skipped)}"
        super().__init__(f"All providers failed ({summary})")
