"""
Pricing calculations for provider usage.

Costs are exact Decimal products of token counts and the provider's
configured per-token rates. No rounding is applied so ledger sums stay exact.
"""

from decimal import Decimal
from typing import Iterable

from narrative_guard.config.models import ProviderConfig
from .token_counter import TokenUsage, estimate_prompt_tokens


def calculate_cost(provider: ProviderConfig, usage: TokenUsage) -> Decimal:
    """Calculate the cost of a completed provider call.

    Args:
        provider: Provider whose rates apply
        usage: Token usage reported (or estimated) for the call

    Returns:
        tokens_in * cost_per_input_token + tokens_out * cost_per_output_token
    """
    input_cost = Decimal(usage.input_tokens) * provider.cost_per_input_token
    output_cost = Decimal(usage.output_tokens) * provider.cost_per_output_token
    return input_cost + output_cost


def estimate_request_cost(
    provider: ProviderConfig,
    prompt: str,
    history: Iterable[str] = ()
) -> Decimal:
    """Project the worst-case cost of sending a prompt to a provider.

    Input tokens are estimated from the text; output is assumed to use the
    provider's full max_tokens allowance.
    """
    usage = TokenUsage(
        input_tokens=estimate_prompt_tokens(prompt, history),
        output_tokens=provider.max_tokens,
        estimated=True
    )
    return calculate_cost(provider, usage)
