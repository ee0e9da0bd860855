"""
Configuration data models.

Every model here is immutable. A running router only ever sees a complete
NarrativeGuardConfig snapshot; reconfiguration builds a new one.
"""

from dataclasses import dataclass, field
from datetime import timedelta
from decimal import Decimal
from enum import Enum
from typing import Optional, Tuple


class ScopeKind(Enum):
    """What a budget scope aggregates over."""
    GLOBAL = "global"
    PER_USER = "per_user"
    PER_PROVIDER = "per_provider"


@dataclass(frozen=True)
class BudgetScope:
    """A concrete slice of the cost ledger.

    GLOBAL scopes have no key; PER_USER and PER_PROVIDER scopes are keyed by
    the user id or provider name they select.
    """
    kind: ScopeKind
    key: Optional[str] = None

    def __post_init__(self):
        if self.kind == ScopeKind.GLOBAL and self.key is not None:
            raise ValueError("global scope cannot have a key")

    @classmethod
    def global_scope(cls) -> "BudgetScope":
        return cls(ScopeKind.GLOBAL)

    @classmethod
    def for_user(cls, user_id: str) -> "BudgetScope":
        return cls(ScopeKind.PER_USER, user_id)

    @classmethod
    def for_provider(cls, provider_name: str) -> "BudgetScope":
        return cls(ScopeKind.PER_PROVIDER, provider_name)

    def __str__(self) -> str:
        if self.key is None:
            return self.kind.value
        return f"{self.kind.value}:{self.key}"


@dataclass(frozen=True)
class ProviderConfig:
    """One external AI service endpoint."""
    name: str
    kind: str
    model: str
    priority: int
    cost_per_input_token: Decimal
    cost_per_output_token: Decimal
    max_tokens: int
    timeout_ms: int
    base_url: Optional[str] = None
    api_key_env: Optional[str] = None
    system_prompt: Optional[str] = None
    temperature: Optional[float] = None

    def __post_init__(self):
        """Validate provider values."""
        if not self.name or not self.name.strip():
            raise ValueError("provider name cannot be empty")
        if self.cost_per_input_token < 0:
            raise ValueError("cost_per_input_token cannot be negative")
        if self.cost_per_output_token < 0:
            raise ValueError("cost_per_output_token cannot be negative")
        if self.max_tokens <= 0:
            raise ValueError("max_tokens must be > 0")
        if self.timeout_ms <= 0:
            raise ValueError("timeout_ms must be > 0")
        if self.temperature is not None and not 0 <= self.temperature <= 2:
            raise ValueError("temperature must be between 0 and 2")


@dataclass(frozen=True)
class BudgetPolicy:
    """Spending ceiling over a rolling window.

    A PER_USER or PER_PROVIDER scope without a key applies to every user or
    provider individually.
    """
    name: str
    scope: BudgetScope
    limit_amount: Decimal
    window: timedelta
    hard_stop_fraction: Decimal = Decimal("0.95")
    alert_fractions: Tuple[Decimal, ...] = ()

    def __post_init__(self):
        """Validate ceilings and thresholds."""
        if self.limit_amount <= 0:
            raise ValueError("limit_amount must be > 0")
        if self.window <= timedelta(0):
            raise ValueError("window must be positive")
        if not Decimal(0) < self.hard_stop_fraction <= Decimal(1):
            raise ValueError("hard_stop_fraction must be in (0, 1]")
        if list(self.alert_fractions) != sorted(self.alert_fractions):
            raise ValueError("alert_fractions must be in ascending order")
        for fraction in self.alert_fractions:
            if not Decimal(0) < fraction < self.hard_stop_fraction:
                raise ValueError("alert_fractions must be > 0 and below hard_stop_fraction")

    @property
    def hard_stop_amount(self) -> Decimal:
        """Spend at which requests are rejected outright."""
        return self.limit_amount * self.hard_stop_fraction

    def resolve(self, user_id: str, provider_name: Optional[str] = None) -> Optional[BudgetScope]:
        """Resolve the concrete ledger scope this policy governs for a request.

        Returns None when the policy does not apply.
        """
        kind = self.scope.kind
        if kind == ScopeKind.GLOBAL:
            return self.scope
        if kind == ScopeKind.PER_USER:
            if self.scope.key is None or self.scope.key == user_id:
                return BudgetScope.for_user(user_id)
            return None
        # PER_PROVIDER is only known once a provider has been chosen
        if provider_name is None:
            return None
        if self.scope.key is None or self.scope.key == provider_name:
            return BudgetScope.for_provider(provider_name)
        return None


@dataclass(frozen=True)
class QualityConstraints:
    """Acceptance rules for generated narrative text."""
    min_length: int = 1
    max_length: int = 500
    denylist: Tuple[str, ...] = ()
    denylist_patterns: Tuple[str, ...] = ()
    reject_emoji: bool = True
    terminal_markers: Tuple[str, ...] = ("(Y/N)", "(Restart?)")
    diagnostic: bool = False

    def __post_init__(self):
        if self.min_length < 0:
            raise ValueError("min_length cannot be negative")
        if self.max_length < self.min_length:
            raise ValueError("max_length must be >= min_length")


@dataclass(frozen=True)
class CircuitBreakerConfig:
    """Thresholds for excluding a repeatedly failing provider."""
    failure_threshold: int = 3
    failure_window_seconds: float = 60.0
    cooldown_seconds: float = 30.0

    def __post_init__(self):
        if self.failure_threshold <= 0:
            raise ValueError("failure_threshold must be > 0")
        if self.failure_window_seconds <= 0:
            raise ValueError("failure_window_seconds must be > 0")
        if self.cooldown_seconds <= 0:
            raise ValueError("cooldown_seconds must be > 0")


@dataclass(frozen=True)
class RouterSettings:
    """Request-shape limits enforced before any provider is contacted."""
    max_history: int = 50

    def __post_init__(self):
        if self.max_history < 0:
            raise ValueError("max_history cannot be negative")


@dataclass(frozen=True)
class NarrativeGuardConfig:
    """Complete, immutable configuration snapshot.

    Providers are stored pre-sorted by ascending priority; ties keep the
    order in which they were configured.
    """
    providers: Tuple[ProviderConfig, ...]
    budgets: Tuple[BudgetPolicy, ...] = ()
    quality: QualityConstraints = field(default_factory=QualityConstraints)
    circuit_breaker: CircuitBreakerConfig = field(default_factory=CircuitBreakerConfig)
    router: RouterSettings = field(default_factory=RouterSettings)

    def __post_init__(self):
        if not self.providers:
            raise ValueError("at least one provider must be configured")
        names = [provider.name for provider in self.providers]
        duplicates = {name for name in names if names.count(name) > 1}
        if duplicates:
            raise ValueError(f"Duplicate provider names: {sorted(duplicates)}")
        policy_names = [policy.name for policy in self.budgets]
        if len(set(policy_names)) != len(policy_names):
            raise ValueError("budget policy names must be unique")
        # sorted() is stable, so equal priorities keep insertion order
        ordered = tuple(sorted(self.providers, key=lambda p: p.priority))
        object.__setattr__(self, "providers", ordered)

    def get_provider(self, name: str) -> ProviderConfig:
        """Look up a provider by name.

        Raises:
            KeyError: If no provider has that name
        """
        for provider in self.providers:
            if provider.name == name:
                return provider
        raise KeyError(name)
