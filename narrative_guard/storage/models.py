"""
Data models for storage layer.

Defines the persisted cost ledger entry.
"""

from dataclasses import dataclass
from datetime import datetime, timezone
from decimal import Decimal
from typing import Optional

from narrative_guard.config.models import ProviderConfig
from narrative_guard.core.pricing import calculate_cost
from narrative_guard.core.token_counter import TokenUsage


@dataclass(frozen=True)
class CostRecord:
    """Immutable record of provider spend for financial tracking.

    Append-only entries that create an auditable ledger of AI costs.
    Once written, these records must never be modified.
    """
    timestamp: datetime
    provider_name: str
    user_id: str
    tokens_in: int
    tokens_out: int
    cost_amount: Decimal
    request_id: Optional[str] = None

    @classmethod
    def from_usage(
        cls,
        provider: ProviderConfig,
        user_id: str,
        usage: TokenUsage,
        request_id: Optional[str] = None,
        timestamp: Optional[datetime] = None
    ) -> "CostRecord":
        """Build a record whose cost is computed from the provider's rates."""
        return cls(
            timestamp=timestamp or datetime.now(timezone.utc),
            provider_name=provider.name,
            user_id=user_id,
            tokens_in=usage.input_tokens,
            tokens_out=usage.output_tokens,
            cost_amount=calculate_cost(provider, usage),
            request_id=request_id
        )
