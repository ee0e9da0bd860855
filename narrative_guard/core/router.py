"""
Provider routing for narrative generation.

A request moves through:
1. Validation - malformed requests fail before anything is attempted
2. Budget check - the cheapest projected cost must fit every applicable budget
3. Attempts - providers in priority order, one at a time, until one passes quality
4. Result - the passing content, or an aggregate failure with every attempt
"""

import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from decimal import Decimal
from types import MappingProxyType
from typing import Callable, Dict, List, Mapping, Optional

from narrative_guard.config.models import NarrativeGuardConfig, ProviderConfig
from narrative_guard.providers import (
    AdapterError,
    AuthFailure,
    ProviderAdapter,
    ProviderTimeout,
    build_adapters,
)
from narrative_guard.storage.ledger import CostLedger, LedgerUnavailable
from narrative_guard.storage.models import CostRecord

from .budget import BudgetGovernor, Clearance
from .circuit import CircuitBreaker, CircuitState
from .errors import BudgetExceeded, ProvidersExhausted, ValidationError
from .models import (
    BudgetRejected,
    Failure,
    GenerationAttempt,
    GenerationRequest,
    GenerationResult,
    Success,
    Timeout,
)
from .pricing import estimate_request_cost
from .quality import score
from .telemetry import AttemptCompleted, RequestExhausted, TelemetryEmitter, emit_safely
from .token_counter import TokenUsage

logger = logging.getLogger(__name__)


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class _RoutingSnapshot:
    """Configuration a request runs against from start to finish."""
    config: NarrativeGuardConfig
    adapters: Mapping[str, ProviderAdapter]
    breaker: CircuitBreaker


class ProviderRouter:
    """Routes generation requests across providers with fallback.

    Providers are tried strictly sequentially in priority order so a request
    never pays for two generations when it needs one.
    """

    def __init__(
        self,
        config: NarrativeGuardConfig,
        adapters: Mapping[str, ProviderAdapter],
        ledger: CostLedger,
        governor: Optional[BudgetGovernor] = None,
        emitter: Optional[TelemetryEmitter] = None,
        breaker: Optional[CircuitBreaker] = None,
        now: Callable[[], datetime] = _utc_now
    ):
        self.ledger = ledger
        self.emitter = emitter
        self.governor = governor or BudgetGovernor(ledger, config.budgets, emitter)
        self._now = now
        self._snapshot = self._build_snapshot(config, adapters, breaker)

    @classmethod
    def from_config(
        cls,
        config: NarrativeGuardConfig,
        ledger: CostLedger,
        emitter: Optional[TelemetryEmitter] = None
    ) -> "ProviderRouter":
        """Build a router with adapters created from each provider's kind."""
        return cls(config, build_adapters(config.providers), ledger, emitter=emitter)

    @property
    def config(self) -> NarrativeGuardConfig:
        return self._snapshot.config

    def reload(
        self,
        config: NarrativeGuardConfig,
        adapters: Optional[Mapping[str, ProviderAdapter]] = None
    ) -> None:
        """Swap in a new configuration.

        Requests already in flight finish against the configuration they
        started with. Circuit state, including providers disabled after an
        authentication failure, starts fresh.
        """
        if adapters is None:
            adapters = build_adapters(config.providers)
        self._snapshot = self._build_snapshot(config, adapters, None)
        self.governor.reload(config.budgets)
        logger.info("Routing configuration reloaded with %d providers", len(config.providers))

    def circuit_status(self) -> Dict[str, str]:
        snapshot = self._snapshot
        return {
            provider.name: snapshot.breaker.state(provider.name).value
            for provider in snapshot.config.providers
        }

    def provider_health(self) -> Dict[str, Dict]:
        """Circuit details for every configured provider, in routing order."""
        snapshot = self._snapshot
        circuits = snapshot.breaker.snapshot()
        return {
            provider.name: circuits.get(provider.name, {
                "state": CircuitState.CLOSED.value,
                "recent_failures": 0,
                "open_until": None,
                "reason": "",
            })
            for provider in snapshot.config.providers
        }

    async def generate_narrative(self, request: GenerationRequest) -> GenerationResult:
        """Generate one narrative beat, falling back across providers.

        Args:
            request: Prompt, user and story history

        Returns:
            GenerationResult from the first provider whose output passes quality

        Raises:
            ValidationError: If the request is malformed
            BudgetExceeded: If a budget hard stop refuses the request
            ProvidersExhausted: If no provider produced passing content
        """
        snapshot = self._snapshot
        config = snapshot.config
        self._validate(request, config)

        history = [turn.content for turn in request.context_history]
        estimate = min(
            estimate_request_cost(provider, request.prompt, history)
            for provider in config.providers
        )
        clearance = await asyncio.to_thread(self.governor.authorize, request.user_id, estimate)
        if not clearance.allowed:
            now = self._now()
            attempt = GenerationAttempt(
                provider_name=None,
                started_at=now,
                ended_at=now,
                outcome=BudgetRejected(clearance.message or clearance.reason.value)
            )
            self._emit_attempt(request, attempt)
            raise BudgetExceeded(clearance, [attempt])

        max_attempts = request.max_attempts or len(config.providers)
        attempts: List[GenerationAttempt] = []
        skipped: List[str] = []
        contacted = 0
        last_denial: Optional[Clearance] = None

        for provider in config.providers:
            if contacted >= max_attempts:
                break
            if not snapshot.breaker.allow(provider.name):
                logger.info("Skipping %s: circuit %s", provider.name, snapshot.breaker.state(provider.name).value)
                skipped.append(provider.name)
                continue

            provider_estimate = estimate_request_cost(provider, request.prompt, history)
            clearance = await asyncio.to_thread(
                self.governor.authorize, request.user_id, provider_estimate, provider.name
            )
            if not clearance.allowed:
                snapshot.breaker.release(provider.name)
                last_denial = clearance
                now = self._now()
                attempt = GenerationAttempt(
                    provider_name=provider.name,
                    started_at=now,
                    ended_at=now,
                    outcome=BudgetRejected(clearance.message or clearance.reason.value)
                )
                attempts.append(attempt)
                self._emit_attempt(request, attempt)
                continue

            contacted += 1
            attempt, usage = await self._attempt(request, provider, snapshot)
            attempts.append(attempt)

            cost = Decimal(0)
            if usage is not None:
                cost = await self._record_cost(request, provider, usage, provider_estimate)
            self._emit_attempt(request, attempt, usage, cost)

            if attempt.succeeded:
                logger.info(
                    "Request %s served by %s after %d attempt(s)",
                    request.request_id, provider.name, len(attempts)
                )
                return GenerationResult(
                    request_id=request.request_id,
                    provider_name=provider.name,
                    content=attempt.outcome.content,
                    quality_score=attempt.quality_score,
                    attempts=tuple(attempts),
                    cost_amount=cost
                )
            logger.info("Falling back from %s (%s)", provider.name, attempt.status)

        if contacted == 0 and last_denial is not None:
            raise BudgetExceeded(last_denial, attempts)

        logger.warning(
            "Request %s exhausted all providers after %d attempt(s)",
            request.request_id, len(attempts)
        )
        emit_safely(self.emitter, RequestExhausted(
            request_id=request.request_id,
            user_id=request.user_id,
            attempt_statuses=tuple((a.provider_name, a.status) for a in attempts),
            skipped_providers=tuple(skipped)
        ))
        raise ProvidersExhausted(attempts, skipped)

    async def _attempt(self, request: GenerationRequest, provider: ProviderConfig, snapshot: _RoutingSnapshot):
        """Call one provider and score its output.

        Returns the attempt plus any billable usage it consumed.
        """
        adapter = snapshot.adapters[provider.name]
        breaker = snapshot.breaker
        started = self._now()
        try:
            content = await adapter.generate(
                request.prompt,
                request.context_history,
                provider.max_tokens,
                provider.timeout_ms
            )
        except asyncio.CancelledError:
            breaker.release(provider.name)
            attempt = GenerationAttempt(
                provider.name, started, self._now(), Failure(None, "cancelled")
            )
            self._emit_attempt(request, attempt)
            raise
        except ProviderTimeout as e:
            logger.warning("%s timed out after %dms", provider.name, provider.timeout_ms)
            breaker.record_failure(provider.name, str(e))
            return GenerationAttempt(provider.name, started, None, Timeout(provider.timeout_ms)), e.usage
        except AuthFailure as e:
            logger.warning("%s rejected credentials: %s", provider.name, e)
            breaker.disable(provider.name, str(e))
            return GenerationAttempt(provider.name, started, self._now(), Failure(e.kind, str(e))), e.usage
        except AdapterError as e:
            logger.warning("%s failed with %s: %s", provider.name, e.kind.value, e)
            breaker.record_failure(provider.name, str(e))
            return GenerationAttempt(provider.name, started, self._now(), Failure(e.kind, str(e))), e.usage
        except Exception as e:
            logger.exception("%s raised an unexpected error", provider.name)
            breaker.record_failure(provider.name, str(e))
            reason = f"unexpected error: {type(e).__name__}: {e}"
            return GenerationAttempt(provider.name, started, self._now(), Failure(None, reason)), None

        ended = self._now()
        # A response that fails quality is still a healthy provider
        breaker.record_success(provider.name)
        quality = score(content, snapshot.config.quality)
        if not quality.passed:
            logger.info(
                "%s output rejected: %s",
                provider.name, ", ".join(issue.value for issue in quality.issues)
            )
        return GenerationAttempt(provider.name, started, ended, Success(content), quality), content.usage

    async def _record_cost(
        self,
        request: GenerationRequest,
        provider: ProviderConfig,
        usage: TokenUsage,
        estimated_cost: Decimal
    ) -> Decimal:
        record = CostRecord.from_usage(provider, request.user_id, usage, request.request_id, self._now())
        try:
            await asyncio.to_thread(self.ledger.record, record)
        except LedgerUnavailable:
            logger.exception(
                "Failed to record $%s spent on %s for request %s",
                record.cost_amount, provider.name, request.request_id
            )
            return record.cost_amount
        await asyncio.to_thread(
            self.governor.record_actual,
            request.user_id,
            provider.name,
            record.cost_amount,
            estimated_cost
        )
        return record.cost_amount

    def _emit_attempt(
        self,
        request: GenerationRequest,
        attempt: GenerationAttempt,
        usage: Optional[TokenUsage] = None,
        cost: Decimal = Decimal(0)
    ) -> None:
        error = None
        if isinstance(attempt.outcome, (Failure, BudgetRejected)):
            error = attempt.outcome.reason
        elif isinstance(attempt.outcome, Timeout):
            error = f"timeout after {attempt.outcome.timeout_ms}ms"
        issues = attempt.quality_score.issues if attempt.quality_score else ()
        emit_safely(self.emitter, AttemptCompleted(
            request_id=request.request_id,
            user_id=request.user_id,
            provider_name=attempt.provider_name,
            status=attempt.status,
            latency_ms=attempt.latency_ms,
            tokens_in=usage.input_tokens if usage else 0,
            tokens_out=usage.output_tokens if usage else 0,
            cost_amount=cost,
            quality_issues=tuple(issue.value for issue in issues),
            error=error
        ))

    @staticmethod
    def _validate(request: GenerationRequest, config: NarrativeGuardConfig) -> None:
        if not request.prompt or not request.prompt.strip():
            raise ValidationError("prompt is required and cannot be empty")
        if not request.user_id or not request.user_id.strip():
            raise ValidationError("user_id is required and cannot be empty")
        if len(request.context_history) > config.router.max_history:
            raise ValidationError(
                f"context_history has {len(request.context_history)} turns, "
                f"maximum is {config.router.max_history}"
            )
        if request.max_attempts is not None and request.max_attempts < 1:
            raise ValidationError("max_attempts must be at least 1")

    @staticmethod
    def _build_snapshot(
        config: NarrativeGuardConfig,
        adapters: Mapping[str, ProviderAdapter],
        breaker: Optional[CircuitBreaker]
    ) -> _RoutingSnapshot:
        missing = [p.name for p in config.providers if p.name not in adapters]
        if missing:
            raise ValueError(f"No adapter for configured providers: {', '.join(missing)}")
        return _RoutingSnapshot(
            config=config,
            adapters=MappingProxyType(dict(adapters)),
            breaker=breaker or CircuitBreaker(config.circuit_breaker)
        )
