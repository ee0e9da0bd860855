"""
Budget governance.

Authorizes requests against rolling-window spending ceilings read from the
cost ledger.

Enforcement Order:
1. Ledger availability - no readable ledger means no clearance (fail closed)
2. Hard stop - projected spend above limit * hard_stop_fraction is rejected
3. Alerts - crossing an alert fraction emits an advisory event, never blocks
"""

import logging
import threading
from dataclasses import dataclass
from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Callable, Dict, Iterable, List, Optional, Tuple

from narrative_guard.config.models import BudgetPolicy, BudgetScope, ScopeKind
from narrative_guard.storage.ledger import CostLedger, LedgerUnavailable
from .telemetry import BudgetAlertRaised, TelemetryEmitter, emit_safely

logger = logging.getLogger(__name__)


class ClearanceReason(Enum):
    """Why a clearance was granted or refused."""
    WITHIN_BUDGET = "within_budget"
    HARD_STOP = "hard_stop"
    LEDGER_UNAVAILABLE = "ledger_unavailable"


@dataclass(frozen=True)
class Clearance:
    """Outcome of a budget authorization."""
    allowed: bool
    reason: ClearanceReason
    policy_name: Optional[str] = None
    projected: Optional[Decimal] = None
    ceiling: Optional[Decimal] = None
    message: str = ""


@dataclass(frozen=True)
class BudgetState:
    """Current spend for one policy over one concrete scope."""
    policy: BudgetPolicy
    scope: BudgetScope
    amount_used: Decimal

    @property
    def amount_remaining(self) -> Decimal:
        return self.policy.hard_stop_amount - self.amount_used

    @property
    def fraction_used(self) -> Decimal:
        return self.amount_used / self.policy.limit_amount


class BudgetGovernor:
    """Checks spend against every applicable BudgetPolicy.

    Authorization is best-effort under concurrency: two requests near a
    ceiling can both be cleared before either is recorded.
    """

    def __init__(
        self,
        ledger: CostLedger,
        policies: Iterable[BudgetPolicy] = (),
        emitter: Optional[TelemetryEmitter] = None,
        now: Callable[[], datetime] = lambda: datetime.now(timezone.utc)
    ):
        self.ledger = ledger
        self.emitter = emitter
        self._policies: Tuple[BudgetPolicy, ...] = tuple(policies)
        self._now = now
        self._alerted: Dict[Tuple[str, BudgetScope], Decimal] = {}
        self._alert_lock = threading.Lock()

    @property
    def policies(self) -> Tuple[BudgetPolicy, ...]:
        return self._policies

    def reload(self, policies: Iterable[BudgetPolicy]) -> None:
        """Swap in a new policy set; requests already authorizing keep the old one."""
        self._policies = tuple(policies)
        with self._alert_lock:
            self._alerted.clear()

    def authorize(
        self,
        user_id: str,
        estimated_cost: Decimal,
        provider_name: Optional[str] = None
    ) -> Clearance:
        """Decide whether a request projected to cost ``estimated_cost`` may run.

        Global and per-user policies always apply; per-provider policies only
        when ``provider_name`` is known.

        Args:
            user_id: User the spend is attributed to
            estimated_cost: Pre-flight cost projection for the request
            provider_name: Provider about to be contacted, if chosen

        Returns:
            Clearance; allowed=False on any hard-stop breach or ledger failure
        """
        now = self._now()
        for policy in self._policies:
            scope = policy.resolve(user_id, provider_name)
            if scope is None:
                continue
            try:
                spent = self.ledger.windowed_sum(scope, policy.window, now)
            except LedgerUnavailable as e:
                logger.warning("Denying request for %s: cost ledger unavailable (%s)", user_id, e)
                return Clearance(
                    allowed=False,
                    reason=ClearanceReason.LEDGER_UNAVAILABLE,
                    policy_name=policy.name,
                    message=f"Cost ledger unavailable: {e}"
                )

            self._check_alerts(BudgetState(policy, scope, spent))

            projected = spent + estimated_cost
            ceiling = policy.hard_stop_amount
            if projected > ceiling:
                message = (
                    f"Budget '{policy.name}' for {scope} would reach ${projected:.4f}, "
                    f"above hard stop ${ceiling:.4f} (limit ${policy.limit_amount:.2f})"
                )
                logger.warning(message)
                return Clearance(
                    allowed=False,
                    reason=ClearanceReason.HARD_STOP,
                    policy_name=policy.name,
                    projected=projected,
                    ceiling=ceiling,
                    message=message
                )

        return Clearance(allowed=True, reason=ClearanceReason.WITHIN_BUDGET)

    def record_actual(
        self,
        user_id: str,
        provider_name: str,
        actual_cost: Decimal,
        estimated_cost: Optional[Decimal] = None
    ) -> None:
        """True-up after an attempt whose cost has been written to the ledger.

        Re-evaluates alert thresholds with the new spend. Never raises for
        ledger failures; the next authorize call will fail closed instead.
        """
        if estimated_cost is not None and actual_cost > estimated_cost:
            logger.info(
                "Actual cost $%s for %s/%s exceeded pre-flight estimate $%s",
                actual_cost, user_id, provider_name, estimated_cost
            )
        now = self._now()
        for policy in self._policies:
            scope = policy.resolve(user_id, provider_name)
            if scope is None:
                continue
            try:
                spent = self.ledger.windowed_sum(scope, policy.window, now)
            except LedgerUnavailable as e:
                logger.warning("Skipping budget true-up for %s: %s", policy.name, e)
                return
            self._check_alerts(BudgetState(policy, scope, spent))

    def budget_states(
        self,
        user_id: Optional[str] = None,
        provider_names: Iterable[str] = ()
    ) -> List[BudgetState]:
        """Current spend for every policy that resolves to a concrete scope.

        Per-user policies without a fixed user need ``user_id``; per-provider
        policies without a fixed provider are expanded over ``provider_names``.

        Raises:
            LedgerUnavailable: If the ledger cannot be read
        """
        now = self._now()
        states = []
        providers = list(provider_names)
        for policy in self._policies:
            scopes = []
            if policy.scope.key is not None or policy.scope.kind == ScopeKind.GLOBAL:
                scopes.append(policy.scope)
            elif policy.scope.kind == ScopeKind.PER_USER:
                if user_id is not None:
                    scopes.append(BudgetScope.for_user(user_id))
            else:
                scopes.extend(BudgetScope.for_provider(name) for name in providers)
            for scope in scopes:
                spent = self.ledger.windowed_sum(scope, policy.window, now)
                states.append(BudgetState(policy, scope, spent))
        return states

    def _check_alerts(self, state: BudgetState) -> None:
        policy = state.policy
        if not policy.alert_fractions:
            return
        crossed = [f for f in policy.alert_fractions if state.fraction_used >= f]
        key = (policy.name, state.scope)
        raise_alert = False
        with self._alert_lock:
            previous = self._alerted.get(key)
            if not crossed:
                # Window rolled forward; later crossings alert again
                self._alerted.pop(key, None)
                return
            highest = crossed[-1]
            if previous is None or highest > previous:
                raise_alert = True
            self._alerted[key] = highest

        if raise_alert:
            logger.warning(
                "Budget '%s' for %s at %.0f%% of $%s",
                policy.name, state.scope, state.fraction_used * 100, policy.limit_amount
            )
            emit_safely(self.emitter, BudgetAlertRaised(
                policy_name=policy.name,
                scope=str(state.scope),
                threshold=highest,
                spent=state.amount_used,
                limit_amount=policy.limit_amount
            ))
