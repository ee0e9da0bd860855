"""
Tests for provider routing.

Covers fallback order, exhaustion, budget rejection, circuit skipping,
cost recording and cancellation.
"""
import asyncio
import dataclasses
import logging
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from unittest.mock import AsyncMock, Mock, patch

import httpx
import openai
import pytest

from narrative_guard.config.models import (
    BudgetPolicy,
    BudgetScope,
    CircuitBreakerConfig,
    NarrativeGuardConfig,
    ProviderConfig,
    QualityConstraints,
    RouterSettings,
    ScopeKind,
)
from narrative_guard.core.circuit import CircuitState
from narrative_guard.core.errors import BudgetExceeded, ProvidersExhausted, ValidationError
from narrative_guard.core.models import BudgetRejected, GenerationRequest, Timeout
from narrative_guard.core.quality import IssueTag
from narrative_guard.core.router import ProviderRouter
from narrative_guard.core.telemetry import (
    AttemptCompleted,
    BufferedTelemetryEmitter,
    RequestExhausted,
)
from narrative_guard.providers import (
    AdapterErrorKind,
    AuthFailure,
    ConversationTurn,
    GeneratedContent,
    MalformedResponse,
    NetworkError,
    OfflineStorytellerAdapter,
    OpenAIAdapter,
    ProviderAdapter,
    ProviderTimeout,
    RateLimited,
)
from narrative_guard.core.token_counter import TokenUsage
from narrative_guard.storage.ledger import InMemoryCostLedger, LedgerUnavailable
from narrative_guard.storage.models import CostRecord


def make_provider(name, priority, input_rate="0.00001", output_rate="0.00002", max_tokens=100):
    return ProviderConfig(
        name=name,
        kind="scripted",
        model=f"{name}-model",
        priority=priority,
        cost_per_input_token=Decimal(input_rate),
        cost_per_output_token=Decimal(output_rate),
        max_tokens=max_tokens,
        timeout_ms=1000
    )


class ScriptedAdapter(ProviderAdapter):
    """Adapter that replays queued outcomes: text, an exception, or a delay."""
    kind = "scripted"

    def __init__(self, config, *outcomes):
        super().__init__(config)
        self.outcomes = list(outcomes)
        self.calls = 0
        self.started = asyncio.Event()

    async def _complete(self, prompt, context_history, max_tokens):
        self.calls += 1
        self.started.set()
        outcome = self.outcomes.pop(0) if len(self.outcomes) > 1 else self.outcomes[0]
        if isinstance(outcome, BaseException):
            raise outcome
        if isinstance(outcome, float):
            await asyncio.sleep(outcome)
            outcome = "Too late. (Y/N)"
        return GeneratedContent(text=outcome, tokens_in=100, tokens_out=50)


class FailingLedger(InMemoryCostLedger):
    """Readable ledger whose writes fail."""

    def record(self, record):
        raise LedgerUnavailable("read-only filesystem")


class BrokenEmitter:
    def emit(self, event):
        raise RuntimeError("collector down")


def make_router(providers, adapters, budgets=(), ledger=None, emitter=None, quality=None, **config_kwargs):
    config = NarrativeGuardConfig(
        providers=tuple(providers),
        budgets=tuple(budgets),
        quality=quality or QualityConstraints(),
        **config_kwargs
    )
    ledger = ledger if ledger is not None else InMemoryCostLedger()
    return ProviderRouter(
        config,
        {adapter.name: adapter for adapter in adapters},
        ledger,
        emitter=emitter
    )


def request(prompt="Y", user="alice", **kwargs):
    return GenerationRequest(prompt=prompt, user_id=user, **kwargs)


class TestFallback:
    """First passing provider wins; failures fall through in priority order."""

    def setup_method(self):
        self.ledger = InMemoryCostLedger()
        self.emitter = BufferedTelemetryEmitter()
        self.bedrock = ScriptedAdapter(make_provider("bedrock", 1), RateLimited("429"))
        self.openai = ScriptedAdapter(make_provider("openai", 2), "You wait. (Y/N)")

    @pytest.mark.asyncio
    async def test_rate_limited_primary_falls_back(self):
        """A rate-limited first provider hands over to the second."""
        router = make_router(
            [self.openai.config, self.bedrock.config], [self.bedrock, self.openai],
            ledger=self.ledger, emitter=self.emitter
        )

        result = await router.generate_narrative(request())

        assert result.text == "You wait. (Y/N)"
        assert result.provider_name == "openai"
        assert [a.provider_name for a in result.attempts] == ["bedrock", "openai"]
        assert [a.status for a in result.attempts] == ["failed", "succeeded"]
        records = self.ledger.records()
        assert len(records) == 1
        assert records[0].provider_name == "openai"
        assert records[0].cost_amount == Decimal("0.002")
        assert result.cost_amount == Decimal("0.002")

    @pytest.mark.asyncio
    @pytest.mark.parametrize("failure", [
        RateLimited("429"),
        NetworkError("connection reset"),
        ProviderTimeout("slow"),
        AuthFailure("bad key"),
        MalformedResponse("no choices"),
        "You wait.",
        "You wait \U0001F600 here. (Y/N)",
    ])
    async def test_any_failure_falls_back_to_next(self, failure):
        first = ScriptedAdapter(make_provider("first", 1), failure)
        second = ScriptedAdapter(make_provider("second", 2), "A door opens. (Y/N)")
        router = make_router([first.config, second.config], [first, second])

        result = await router.generate_narrative(request())

        assert result.provider_name == "second"
        assert len(result.attempts) == 2
        assert result.attempts[0].provider_name == "first"
        assert result.quality_score.passed

    @pytest.mark.asyncio
    async def test_emoji_response_rejected_for_quality(self):
        first = ScriptedAdapter(make_provider("first", 1), "You wait \U0001F600 here. (Y/N)")
        second = ScriptedAdapter(make_provider("second", 2), "A door opens. (Y/N)")
        router = make_router([first.config, second.config], [first, second], ledger=self.ledger)

        result = await router.generate_narrative(request())

        rejected = result.attempts[0]
        assert rejected.status == "quality_rejected"
        assert rejected.quality_score.issues == (IssueTag.DISALLOWED_CONTENT,)
        # Tokens were consumed, so the rejected attempt is billed too
        assert [r.provider_name for r in self.ledger.records()] == ["first", "second"]

    @pytest.mark.asyncio
    async def test_missing_marker_rejected_for_quality(self):
        first = ScriptedAdapter(make_provider("first", 1), "You wait.")
        second = ScriptedAdapter(make_provider("second", 2), "You wait. (Y/N)")
        router = make_router([first.config, second.config], [first, second])

        result = await router.generate_narrative(request())

        assert result.attempts[0].quality_score.issues == (IssueTag.MISSING_TERMINAL_MARKER,)
        assert result.provider_name == "second"

    @pytest.mark.asyncio
    async def test_equal_priority_keeps_configured_order(self):
        a = ScriptedAdapter(make_provider("a", 1), NetworkError("down"))
        b = ScriptedAdapter(make_provider("b", 1), "B speaks. (Y/N)")
        router = make_router([a.config, b.config], [b, a])

        result = await router.generate_narrative(request())

        assert [attempt.provider_name for attempt in result.attempts] == ["a", "b"]

    @pytest.mark.asyncio
    async def test_timeout_attempt_has_no_end(self):
        slow = ScriptedAdapter(make_provider("slow", 1), ProviderTimeout("slow"))
        fast = ScriptedAdapter(make_provider("fast", 2), "Quick. (Y/N)")
        router = make_router([slow.config, fast.config], [slow, fast])

        result = await router.generate_narrative(request())

        timed_out = result.attempts[0]
        assert isinstance(timed_out.outcome, Timeout)
        assert timed_out.ended_at is None
        assert timed_out.status == "timeout"

    @pytest.mark.asyncio
    async def test_unexpected_adapter_error_falls_back(self, caplog):
        broken = ScriptedAdapter(make_provider("broken", 1), KeyError("choices"))
        steady = ScriptedAdapter(make_provider("steady", 2), "Steady. (Y/N)")
        router = make_router(
            [broken.config, steady.config], [broken, steady],
            ledger=self.ledger, emitter=self.emitter
        )

        with caplog.at_level(logging.ERROR, logger="narrative_guard.core.router"):
            result = await router.generate_narrative(request())

        assert result.provider_name == "steady"
        failed = result.attempts[0]
        assert failed.status == "failed"
        assert failed.outcome.error_kind is None
        assert "KeyError" in failed.outcome.reason
        assert [r.provider_name for r in self.ledger.records()] == ["steady"]
        assert router.provider_health()["broken"]["recent_failures"] == 1
        assert "broken raised an unexpected error" in caplog.text
        events = [e for e in self.emitter.events if isinstance(e, AttemptCompleted)]
        assert [e.status for e in events] == ["failed", "succeeded"]

    @pytest.mark.asyncio
    async def test_unmapped_sdk_error_falls_back_to_offline(self):
        openai_config = dataclasses.replace(
            make_provider("openai", 1), kind="openai", api_key_env="NG_TEST_OPENAI_KEY"
        )
        offline_config = dataclasses.replace(
            make_provider("offline", 2, input_rate="0", output_rate="0"), kind="offline"
        )
        request_info = httpx.Request("POST", "https://api.test/v1/chat/completions")
        sdk_error = openai.APIResponseValidationError(
            response=httpx.Response(200, request=request_info), body=None
        )
        with patch('narrative_guard.providers.openai_provider.AsyncOpenAI') as mock_client_class:
            client = Mock()
            client.chat.completions.create = AsyncMock(side_effect=sdk_error)
            mock_client_class.return_value = client
            adapters = [OpenAIAdapter(openai_config, api_key="sk-test"), OfflineStorytellerAdapter(offline_config)]
            router = make_router([openai_config, offline_config], adapters)

            result = await router.generate_narrative(request())

        assert result.provider_name == "offline"
        assert result.attempts[0].status == "failed"
        assert result.attempts[0].outcome.error_kind == AdapterErrorKind.MALFORMED_RESPONSE

    @pytest.mark.asyncio
    async def test_unexpected_errors_everywhere_exhaust(self):
        first = ScriptedAdapter(make_provider("first", 1), TypeError("bad usage"))
        second = ScriptedAdapter(make_provider("second", 2), ValueError("bad body"))
        router = make_router([first.config, second.config], [first, second])

        with pytest.raises(ProvidersExhausted) as exc_info:
            await router.generate_narrative(request())

        assert [a.status for a in exc_info.value.attempts] == ["failed", "failed"]

    @pytest.mark.asyncio
    async def test_billable_adapter_error_is_recorded(self):
        truncated = MalformedResponse("cut off", usage=TokenUsage(100, 10))
        first = ScriptedAdapter(make_provider("first", 1), truncated)
        second = ScriptedAdapter(make_provider("second", 2), "Fine. (Y/N)")
        router = make_router([first.config, second.config], [first, second], ledger=self.ledger)

        await router.generate_narrative(request())

        first_record = self.ledger.records()[0]
        assert first_record.provider_name == "first"
        assert first_record.cost_amount == Decimal("0.0012")

    @pytest.mark.asyncio
    async def test_telemetry_per_attempt(self):
        router = make_router(
            [self.bedrock.config, self.openai.config], [self.bedrock, self.openai],
            emitter=self.emitter
        )

        result = await router.generate_narrative(request())

        events = [e for e in self.emitter.events if isinstance(e, AttemptCompleted)]
        assert [(e.provider_name, e.status) for e in events] == [
            ("bedrock", "failed"), ("openai", "succeeded")
        ]
        assert events[0].error == "429"
        assert events[0].cost_amount == Decimal(0)
        assert events[1].tokens_in == 100
        assert events[1].cost_amount == result.cost_amount
        assert all(e.request_id == result.request_id for e in events)

    @pytest.mark.asyncio
    async def test_telemetry_failure_never_fails_generation(self):
        router = make_router(
            [self.bedrock.config, self.openai.config], [self.bedrock, self.openai],
            emitter=BrokenEmitter()
        )
        result = await router.generate_narrative(request())
        assert result.provider_name == "openai"

    @pytest.mark.asyncio
    async def test_ledger_write_failure_still_returns_result(self):
        router = make_router(
            [self.openai.config], [self.openai], ledger=FailingLedger()
        )
        result = await router.generate_narrative(request())
        assert result.text == "You wait. (Y/N)"

    @pytest.mark.asyncio
    async def test_max_attempts_limits_contacts(self):
        adapters = [
            ScriptedAdapter(make_provider(f"p{i}", i), NetworkError("down")) for i in range(1, 4)
        ]
        router = make_router([a.config for a in adapters], adapters)

        with pytest.raises(ProvidersExhausted) as exc_info:
            await router.generate_narrative(request(max_attempts=2))

        assert len(exc_info.value.attempts) == 2
        assert adapters[2].calls == 0


class TestExhaustion:
    """All providers failing never yields a result."""

    @pytest.mark.asyncio
    async def test_all_fail_raises_providers_exhausted(self):
        emitter = BufferedTelemetryEmitter()
        first = ScriptedAdapter(make_provider("first", 1), RateLimited("429"))
        second = ScriptedAdapter(make_provider("second", 2), "No marker here.")
        router = make_router([first.config, second.config], [first, second], emitter=emitter)

        with pytest.raises(ProvidersExhausted) as exc_info:
            await router.generate_narrative(request())

        error = exc_info.value
        assert [a.status for a in error.attempts] == ["failed", "quality_rejected"]
        assert "first=failed" in str(error)
        exhausted = [e for e in emitter.events if isinstance(e, RequestExhausted)]
        assert exhausted[0].attempt_statuses == (("first", "failed"), ("second", "quality_rejected"))

    @pytest.mark.asyncio
    async def test_empty_response_from_only_provider_exhausts(self):
        only = ScriptedAdapter(make_provider("only", 1), "")
        router = make_router([only.config], [only])

        with pytest.raises(ProvidersExhausted):
            await router.generate_narrative(request())


class TestBudgetRejection:
    """Budget denials stop requests before any provider is paid."""

    def setup_method(self):
        self.ledger = InMemoryCostLedger()
        self.now = datetime.now(timezone.utc)

    def user_policy(self, limit="10", hard_stop="0.9", scope=None):
        return BudgetPolicy(
            name="player",
            scope=scope or BudgetScope(ScopeKind.PER_USER),
            limit_amount=Decimal(limit),
            window=timedelta(days=30),
            hard_stop_fraction=Decimal(hard_stop)
        )

    @pytest.mark.asyncio
    async def test_over_budget_user_never_reaches_provider(self):
        """Prior spend of 9.5 against a 10 limit at 0.9 hard stop is refused."""
        self.ledger.record(CostRecord(self.now - timedelta(hours=1), "only", "alice", 1, 1, Decimal("9.5")))
        emitter = BufferedTelemetryEmitter()
        only = ScriptedAdapter(make_provider("only", 1), "You wait. (Y/N)")
        router = make_router([only.config], [only], budgets=[self.user_policy()],
                             ledger=self.ledger, emitter=emitter)

        with pytest.raises(BudgetExceeded) as exc_info:
            await router.generate_narrative(request())

        assert only.calls == 0
        assert len(self.ledger) == 1
        attempt = exc_info.value.attempts[0]
        assert attempt.provider_name is None
        assert isinstance(attempt.outcome, BudgetRejected)
        assert [e.status for e in emitter.events] == ["budget_rejected"]

    @pytest.mark.asyncio
    async def test_unavailable_ledger_rejects(self):
        class DownLedger(InMemoryCostLedger):
            def windowed_sum(self, scope, window, now=None):
                raise LedgerUnavailable("down")

        only = ScriptedAdapter(make_provider("only", 1), "You wait. (Y/N)")
        router = make_router([only.config], [only], budgets=[self.user_policy(limit="1000000")],
                             ledger=DownLedger())

        with pytest.raises(BudgetExceeded):
            await router.generate_narrative(request())
        assert only.calls == 0

    @pytest.mark.asyncio
    async def test_provider_budget_skips_that_provider(self):
        self.ledger.record(CostRecord(self.now - timedelta(hours=1), "pricey", "bob", 1, 1, Decimal("9.5")))
        pricey = ScriptedAdapter(make_provider("pricey", 1), "Expensive. (Y/N)")
        cheap = ScriptedAdapter(make_provider("cheap", 2), "Cheap. (Y/N)")
        policy = self.user_policy(scope=BudgetScope.for_provider("pricey"))
        router = make_router([pricey.config, cheap.config], [pricey, cheap],
                             budgets=[policy], ledger=self.ledger)

        result = await router.generate_narrative(request())

        assert result.provider_name == "cheap"
        assert pricey.calls == 0
        assert [a.status for a in result.attempts] == ["budget_rejected", "succeeded"]

    @pytest.mark.asyncio
    async def test_every_provider_over_budget_is_budget_exceeded(self):
        self.ledger.record(CostRecord(self.now - timedelta(hours=1), "only", "bob", 1, 1, Decimal("9.5")))
        only = ScriptedAdapter(make_provider("only", 1), "You wait. (Y/N)")
        policy = self.user_policy(scope=BudgetScope(ScopeKind.PER_PROVIDER))
        router = make_router([only.config], [only], budgets=[policy], ledger=self.ledger)

        with pytest.raises(BudgetExceeded):
            await router.generate_narrative(request())
        assert len(self.ledger) == 1

    @pytest.mark.asyncio
    async def test_budget_rejection_records_no_cost(self):
        emitter = BufferedTelemetryEmitter()
        self.ledger.record(CostRecord(self.now, "only", "alice", 1, 1, Decimal("100")))
        only = ScriptedAdapter(make_provider("only", 1), "You wait. (Y/N)")
        router = make_router([only.config], [only], budgets=[self.user_policy()],
                             ledger=self.ledger, emitter=emitter)

        for _ in range(3):
            with pytest.raises(BudgetExceeded):
                await router.generate_narrative(request())

        assert len(self.ledger) == 1
        assert all(e.cost_amount == 0 for e in emitter.events)


class TestValidation:
    """Malformed requests are refused before anything happens."""

    def setup_method(self):
        self.ledger = InMemoryCostLedger()
        self.emitter = BufferedTelemetryEmitter()
        self.only = ScriptedAdapter(make_provider("only", 1), "You wait. (Y/N)")
        self.router = make_router([self.only.config], [self.only], ledger=self.ledger,
                                  emitter=self.emitter, router=RouterSettings(max_history=2))

    @pytest.mark.asyncio
    @pytest.mark.parametrize("bad_request", [
        GenerationRequest(prompt="", user_id="alice"),
        GenerationRequest(prompt="   ", user_id="alice"),
        GenerationRequest(prompt="Y", user_id=""),
        GenerationRequest(prompt="Y", user_id="alice", max_attempts=0),
        GenerationRequest(prompt="Y", user_id="alice",
                          context_history=[ConversationTurn("user", "Y")] * 3),
    ])
    async def test_invalid_request(self, bad_request):
        with pytest.raises(ValidationError):
            await self.router.generate_narrative(bad_request)
        assert self.only.calls == 0
        assert len(self.ledger) == 0
        assert self.emitter.events == []


class TestCircuitIntegration:
    """Unhealthy providers are skipped."""

    @pytest.mark.asyncio
    async def test_open_circuit_skips_provider(self):
        flaky = ScriptedAdapter(make_provider("flaky", 1), NetworkError("down"))
        steady = ScriptedAdapter(make_provider("steady", 2), "Steady. (Y/N)")
        router = make_router(
            [flaky.config, steady.config], [flaky, steady],
            circuit_breaker=CircuitBreakerConfig(failure_threshold=2, cooldown_seconds=60)
        )

        for _ in range(2):
            await router.generate_narrative(request())
        assert router.circuit_status()["flaky"] == CircuitState.OPEN.value

        result = await router.generate_narrative(request())

        assert flaky.calls == 2
        assert [a.provider_name for a in result.attempts] == ["steady"]

    @pytest.mark.asyncio
    async def test_all_circuits_open_exhausts_with_skips(self):
        only = ScriptedAdapter(make_provider("only", 1), NetworkError("down"))
        router = make_router([only.config], [only],
                             circuit_breaker=CircuitBreakerConfig(failure_threshold=1))

        with pytest.raises(ProvidersExhausted):
            await router.generate_narrative(request())
        with pytest.raises(ProvidersExhausted) as exc_info:
            await router.generate_narrative(request())

        assert exc_info.value.attempts == ()
        assert exc_info.value.skipped == ("only",)

    @pytest.mark.asyncio
    async def test_auth_failure_disables_until_reload(self):
        locked = ScriptedAdapter(make_provider("locked", 1), AuthFailure("bad key"))
        backup = ScriptedAdapter(make_provider("backup", 2), "Backup. (Y/N)")
        router = make_router([locked.config, backup.config], [locked, backup])

        await router.generate_narrative(request())
        await router.generate_narrative(request())
        assert locked.calls == 1
        assert router.circuit_status()["locked"] == CircuitState.DISABLED.value

        fixed = ScriptedAdapter(make_provider("locked", 1), "Fixed. (Y/N)")
        router.reload(router.config, {"locked": fixed, "backup": backup})
        result = await router.generate_narrative(request())
        assert result.provider_name == "locked"

    @pytest.mark.asyncio
    async def test_quality_rejection_does_not_open_circuit(self):
        chatty = ScriptedAdapter(make_provider("chatty", 1), "No marker.")
        backup = ScriptedAdapter(make_provider("backup", 2), "Backup. (Y/N)")
        router = make_router([chatty.config, backup.config], [chatty, backup],
                             circuit_breaker=CircuitBreakerConfig(failure_threshold=1))

        await router.generate_narrative(request())
        await router.generate_narrative(request())

        assert chatty.calls == 2
        assert router.circuit_status()["chatty"] == CircuitState.CLOSED.value

    @pytest.mark.asyncio
    async def test_provider_health_reports_every_provider(self):
        flaky = ScriptedAdapter(make_provider("flaky", 1), NetworkError("connection reset"))
        steady = ScriptedAdapter(make_provider("steady", 2), "Steady. (Y/N)")
        router = make_router(
            [flaky.config, steady.config], [flaky, steady],
            circuit_breaker=CircuitBreakerConfig(failure_threshold=1)
        )
        assert router.provider_health()["flaky"]["state"] == "closed"

        await router.generate_narrative(request())

        health = router.provider_health()
        assert list(health) == ["flaky", "steady"]
        assert health["flaky"]["state"] == CircuitState.OPEN.value
        assert health["flaky"]["reason"] == "connection reset"
        assert health["steady"]["state"] == CircuitState.CLOSED.value
        assert health["steady"]["recent_failures"] == 0


class TestCancellation:
    """Cancelling a request aborts the provider call but keeps spent money."""

    @pytest.mark.asyncio
    async def test_cancel_during_provider_call(self):
        ledger = InMemoryCostLedger()
        emitter = BufferedTelemetryEmitter()
        broken = ScriptedAdapter(make_provider("broken", 1), "Half a story.")
        hanging = ScriptedAdapter(make_provider("hanging", 2), 30.0)
        router = make_router([broken.config, hanging.config], [broken, hanging],
                             ledger=ledger, emitter=emitter)

        task = asyncio.create_task(router.generate_narrative(request()))
        await asyncio.wait_for(hanging.started.wait(), timeout=5)
        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task

        # The quality-rejected first attempt was paid for and stays recorded
        assert [r.provider_name for r in ledger.records()] == ["broken"]
        statuses = [(e.provider_name, e.status, e.error) for e in emitter.events]
        assert statuses[-1] == ("hanging", "failed", "cancelled")


class TestReload:
    """Configuration swaps are atomic and leave in-flight requests alone."""

    @pytest.mark.asyncio
    async def test_reload_changes_order(self):
        a = ScriptedAdapter(make_provider("a", 1), "From A. (Y/N)")
        b = ScriptedAdapter(make_provider("b", 2), "From B. (Y/N)")
        router = make_router([a.config, b.config], [a, b])
        assert (await router.generate_narrative(request())).provider_name == "a"

        new_config = NarrativeGuardConfig(providers=(
            make_provider("a", 5), make_provider("b", 1)
        ))
        router.reload(new_config, {"a": a, "b": b})

        assert (await router.generate_narrative(request())).provider_name == "b"

    def test_reload_without_adapter_rejected(self):
        a = ScriptedAdapter(make_provider("a", 1), "From A. (Y/N)")
        router = make_router([a.config], [a])
        new_config = NarrativeGuardConfig(providers=(make_provider("a", 1), make_provider("z", 2)))
        with pytest.raises(ValueError, match="No adapter for configured providers: z"):
            router.reload(new_config, {"a": a})
        assert [p.name for p in router.config.providers] == ["a"]

    @pytest.mark.asyncio
    async def test_in_flight_request_keeps_old_snapshot(self):
        a = ScriptedAdapter(make_provider("a", 1), 0.05)
        router = make_router([a.config], [a])

        task = asyncio.create_task(router.generate_narrative(request()))
        await asyncio.wait_for(a.started.wait(), timeout=5)
        b = ScriptedAdapter(make_provider("b", 1), "From B. (Y/N)")
        router.reload(NarrativeGuardConfig(providers=(b.config,)), {"b": b})

        result = await task
        assert result.provider_name == "a"
        assert (await router.generate_narrative(request())).provider_name == "b"

    def test_from_config_builds_registered_adapters(self):
        offline = ProviderConfig(
            name="offline", kind="offline", model="storyteller", priority=1,
            cost_per_input_token=Decimal(0), cost_per_output_token=Decimal(0),
            max_tokens=100, timeout_ms=1000
        )
        router = ProviderRouter.from_config(
            NarrativeGuardConfig(providers=(offline,)), InMemoryCostLedger()
        )
        assert router.circuit_status() == {"offline": "closed"}

    @pytest.mark.asyncio
    async def test_offline_storyteller_end_to_end(self):
        offline = ProviderConfig(
            name="offline", kind="offline", model="storyteller", priority=1,
            cost_per_input_token=Decimal(0), cost_per_output_token=Decimal(0),
            max_tokens=100, timeout_ms=1000
        )
        ledger = InMemoryCostLedger()
        router = ProviderRouter.from_config(NarrativeGuardConfig(providers=(offline,)), ledger)

        result = await router.generate_narrative(request("N"))

        assert result.quality_score.passed
        assert result.cost_amount == Decimal(0)
        assert len(ledger) == 1
