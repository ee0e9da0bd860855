"""
Request, attempt and result records for narrative generation.
"""

import uuid
from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from typing import Optional, Tuple, Union

from narrative_guard.providers.base import AdapterErrorKind, ConversationTurn, GeneratedContent
from .quality import QualityScore


@dataclass(frozen=True)
class GenerationRequest:
    """One narrative beat to generate for a user."""
    prompt: str
    user_id: str
    context_history: Tuple[ConversationTurn, ...] = ()
    request_id: str = field(default_factory=lambda: uuid.uuid4().hex)
    max_attempts: Optional[int] = None

    def __post_init__(self):
        # Accept any sequence of turns but store an immutable one
        object.__setattr__(self, "context_history", tuple(self.context_history))


@dataclass(frozen=True)
class Success:
    content: GeneratedContent


@dataclass(frozen=True)
class Failure:
    error_kind: Optional[AdapterErrorKind]
    reason: str


@dataclass(frozen=True)
class Timeout:
    timeout_ms: int


@dataclass(frozen=True)
class BudgetRejected:
    reason: str


Outcome = Union[Success, Failure, Timeout, BudgetRejected]


@dataclass(frozen=True)
class GenerationAttempt:
    """A single provider invocation, or a budget rejection before any.

    ``provider_name`` is None only for a request-level budget rejection.
    ``ended_at`` is None when the provider timed out.
    """
    provider_name: Optional[str]
    started_at: datetime
    ended_at: Optional[datetime]
    outcome: Outcome
    quality_score: Optional[QualityScore] = None

    def __post_init__(self):
        if self.ended_at is not None and self.ended_at < self.started_at:
            raise ValueError("ended_at cannot be earlier than started_at")
        if self.quality_score is not None and not isinstance(self.outcome, Success):
            raise ValueError("quality_score is only recorded for a Success outcome")

    @property
    def status(self) -> str:
        if isinstance(self.outcome, Success):
            if self.quality_score is not None and not self.quality_score.passed:
                return "quality_rejected"
            return "succeeded"
        if isinstance(self.outcome, Timeout):
            return "timeout"
        if isinstance(self.outcome, BudgetRejected):
            return "budget_rejected"
        return "failed"

    @property
    def succeeded(self) -> bool:
        return self.status == "succeeded"

    @property
    def latency_ms(self) -> Optional[float]:
        if self.ended_at is None:
            return None
        return (self.ended_at - self.started_at).total_seconds() * 1000


@dataclass(frozen=True)
class GenerationResult:
    """Passing content plus the attempts it took to get it."""
    request_id: str
    provider_name: str
    content: GeneratedContent
    quality_score: QualityScore
    attempts: Tuple[GenerationAttempt, ...]
    cost_amount: Decimal

    @property
    def text(self) -> str:
        return self.content.text
