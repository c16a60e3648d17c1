import asyncio
from unittest.mock import AsyncMock, MagicMock

import pytest
import pytest_asyncio

from modelgate.budget.governor import RuntimeBudgetGovernor
from modelgate.budget.store import UsageStore
from modelgate.config import ModelConfig, ProviderConfig
from modelgate.llm.base import LLMResponse, ProviderError, ProviderRateLimitError
from modelgate.llm.router import AllProvidersUnavailable, ModelRouter, NoProvidersConfigured

MESSAGES = [{"role": "user", "content": "What is the capital of France?"}]


def _response(provider: str, tokens: int = 150) -> LLMResponse:
    return LLMResponse(
        content=f"reply from {provider}",
        model=f"{provider}-large",
        provider=provider,
        input_tokens=100,
        output_tokens=tokens - 100,
        total_tokens=tokens,
    )


def _provider(name: str, side_effect=None):
    provider = MagicMock()
    provider.name = name
    provider.is_available.return_value = True
    provider.complete = AsyncMock(side_effect=side_effect, return_value=_response(name))
    return provider


def _rate_limited(retry_after_ms=None):
    return ProviderRateLimitError("429 Too Many Requests", retry_after_ms=retry_after_ms)


class GatedProvider:
    """Blocks inside complete() until released."""

    def __init__(self, name: str):
        self.name = name
        self.started = asyncio.Event()
        self.release = asyncio.Event()

    def is_available(self):
        return True

    def get_models(self):
        return [f"{self.name}-large"]

    async def complete(self, messages, model=None, temperature=0.7, max_tokens=4096, tools=None):
        self.started.set()
        await self.release.wait()
        return _response(self.name)


@pytest.mark.asyncio
class TestModelRouter:
    @pytest_asyncio.fixture
    async def governor(self, session_factory, config, clock):
        governor = RuntimeBudgetGovernor(UsageStore(session_factory), config=config, clock=clock)
        await governor.start()
        return governor

    def _router(self, governor, clock, **providers):
        return ModelRouter(governor, providers=providers, config=governor.config, sleep=clock.sleep)

    async def test_complete_with_first_candidate(self, governor, clock):
        alpha, beta = _provider("alpha"), _provider("beta")
        router = self._router(governor, clock, alpha=alpha, beta=beta)

        response = await router.complete(MESSAGES, session_id="s1")
        assert response.provider == "alpha"
        beta.complete.assert_not_called()
        assert governor.state.sessions["s1"].tokens_used == 150

    async def test_aggressive_fallback_switches_without_pacing(self, governor, clock):
        alpha = _provider("alpha", side_effect=_rate_limited())
        beta = _provider("beta")
        router = self._router(governor, clock, alpha=alpha, beta=beta)

        response = await router.complete(MESSAGES)
        assert response.provider == "beta"
        assert clock.sleeps == []
        assert governor.circuit_state("alpha") == "open"

        state = governor.state
        assert state.daily.request_count == 2
        assert state.daily.rate_limited_count == 1
        assert state.providers["alpha"].failure_count == 1

        telemetry = await router.get_telemetry()
        assert telemetry["metrics"]["failover_count"] == 1
        types = [e["type"] for e in telemetry["recent_routing_events"]]
        assert types[:4] == ["success", "attempt", "failover", "rate_limit"]

    async def test_intelligent_pacing_waits_out_cooldown_then_moves_on(self, governor, clock):
        await governor.set_fallback_mode("intelligent_pacing")
        await governor.set_manual_profile("balanced")
        alpha = _provider("alpha", side_effect=_rate_limited())
        beta = _provider("beta")
        router = self._router(governor, clock, alpha=alpha, beta=beta)

        directive = governor.get_routing_directive()
        assert directive.pacing_delay_ms == 250

        response = await router.complete(MESSAGES)
        assert response.provider == "beta"
        assert alpha.complete.await_count == 2
        # Profile pacing, the full 1000ms backoff, then profile pacing before beta.
        assert clock.sleeps == [0.25, 1.0, 0.25]

    async def test_intelligent_pacing_with_default_settings_retries_after_backoff(self, governor, clock):
        await governor.set_fallback_mode("intelligent_pacing")
        assert governor.get_routing_directive().profile == "performance"
        alpha = _provider("alpha", side_effect=[_rate_limited(), _response("alpha")])
        beta = _provider("beta")
        router = self._router(governor, clock, alpha=alpha, beta=beta)

        response = await router.complete(MESSAGES)
        assert response.provider == "alpha"
        assert clock.sleeps == [1.0]
        beta.complete.assert_not_called()
        assert governor.circuit_state("alpha") == "closed"

    async def test_fallback_modes_differ_with_default_settings(self, governor, clock):
        alpha = _provider("alpha", side_effect=[_rate_limited(), _response("alpha")])
        beta = _provider("beta")
        router = self._router(governor, clock, alpha=alpha, beta=beta)

        response = await router.complete(MESSAGES)
        assert response.provider == "beta"
        assert clock.sleeps == []
        assert alpha.complete.await_count == 1

        await governor.reset_policy_state()
        await governor.set_fallback_mode("intelligent_pacing")
        alpha.complete.side_effect = [_rate_limited(), _response("alpha")]
        response = await router.complete(MESSAGES)
        assert response.provider == "alpha"
        assert clock.sleeps == [1.0]
        assert beta.complete.await_count == 1

    async def test_cooling_retry_keeps_failure_reason(self, session_factory, settings_factory, clock):
        config = settings_factory(max_pacing_ms=0, fallback_mode="intelligent_pacing")
        governor = RuntimeBudgetGovernor(UsageStore(session_factory), config=config, clock=clock)
        await governor.start()
        alpha = _provider("alpha", side_effect=_rate_limited())
        beta = _provider("beta", side_effect=ProviderError("HTTP 503: unavailable", status_code=503))
        router = self._router(governor, clock, alpha=alpha, beta=beta)

        with pytest.raises(AllProvidersUnavailable) as exc_info:
            await router.complete(MESSAGES)

        reasons = {r.provider: r for r in exc_info.value.reasons}
        assert reasons["alpha"].reason == "rate_limited"
        assert reasons["beta"].reason == "error"
        assert reasons["alpha"].cooldown_remaining_ms == 1000
        assert reasons["beta"].cooldown_remaining_ms == 1000
        assert "503" in reasons["beta"].detail
        assert clock.sleeps == []
        assert alpha.complete.await_count == 1

    async def test_routing_events_do_not_copy_budget_state(self, governor, clock, monkeypatch):
        await governor.set_fallback_mode("intelligent_pacing")
        alpha = _provider("alpha", side_effect=_rate_limited())
        beta = _provider("beta")
        router = self._router(governor, clock, alpha=alpha, beta=beta)

        def copied(self):
            raise AssertionError("budget state copied during routing")

        monkeypatch.setattr(RuntimeBudgetGovernor, "state", property(copied))
        response = await router.complete(MESSAGES)
        assert response.provider == "beta"

        events = (await router.get_telemetry())["recent_routing_events"]
        assert {"cooldown_wait", "failover", "success"} <= {e["type"] for e in events}
        assert {e["fallback_mode"] for e in events} == {"intelligent_pacing"}

    async def test_intelligent_pacing_retries_same_provider_when_cooldown_elapses(
        self, session_factory, settings_factory, clock
    ):
        config = settings_factory(cooldown_base_ms=100, fallback_mode="intelligent_pacing")
        governor = RuntimeBudgetGovernor(UsageStore(session_factory), config=config, clock=clock)
        await governor.start()
        await governor.set_manual_profile("balanced")
        alpha = _provider("alpha", side_effect=[_rate_limited(), _response("alpha")])
        beta = _provider("beta")
        router = self._router(governor, clock, alpha=alpha, beta=beta)

        response = await router.complete(MESSAGES)
        assert response.provider == "alpha"
        assert alpha.complete.await_count == 2
        beta.complete.assert_not_called()
        assert governor.circuit_state("alpha") == "closed"

    async def test_all_providers_cooling_down(self, governor, clock):
        alpha, beta = _provider("alpha"), _provider("beta")
        router = self._router(governor, clock, alpha=alpha, beta=beta)
        await governor.apply_provider_cooldown("alpha", "rate_limited", retry_after_ms=3000)
        await governor.apply_provider_cooldown("beta", "error")

        with pytest.raises(AllProvidersUnavailable) as exc_info:
            await router.complete(MESSAGES)

        reasons = exc_info.value.reasons
        assert [r.provider for r in reasons] == ["alpha", "beta"]
        assert all(r.reason == "cooldown" for r in reasons)
        assert [r.cooldown_remaining_ms for r in reasons] == [3000, 1000]
        alpha.complete.assert_not_called()
        beta.complete.assert_not_called()

        guidance = (await router.get_telemetry())["operator_guidance"]
        assert guidance[0].startswith("All providers cooling down")

    async def test_every_failure_reported_with_reason(self, governor, clock):
        alpha = _provider("alpha", side_effect=ProviderError("HTTP 503: unavailable", status_code=503))
        beta = _provider("beta", side_effect=_rate_limited(retry_after_ms=5000))
        router = self._router(governor, clock, alpha=alpha, beta=beta)

        with pytest.raises(AllProvidersUnavailable) as exc_info:
            await router.complete(MESSAGES)

        reasons = {r.provider: r for r in exc_info.value.reasons}
        assert reasons["alpha"].reason == "error"
        assert reasons["beta"].reason == "rate_limited"
        assert reasons["beta"].cooldown_remaining_ms == 5000
        assert exc_info.value.to_dict()["error"] == "all_providers_unavailable"

        usage = (await governor.get_recent_events())["usage"]
        assert {u["status_code"] for u in usage} == {503, 429}

    async def test_attempts_are_bounded(self, session_factory, settings_factory, clock):
        config = settings_factory(cooldown_base_ms=100, fallback_mode="intelligent_pacing")
        governor = RuntimeBudgetGovernor(UsageStore(session_factory), config=config, clock=clock)
        await governor.start()
        await governor.set_manual_profile("balanced")
        alpha = _provider("alpha", side_effect=ProviderError("boom"))
        beta = _provider("beta", side_effect=ProviderError("boom"))
        router = self._router(governor, clock, alpha=alpha, beta=beta)

        with pytest.raises(AllProvidersUnavailable):
            await router.complete(MESSAGES)
        assert alpha.complete.await_count == 2
        assert beta.complete.await_count == 2

    async def test_total_pacing_is_capped(self, session_factory, settings_factory, clock):
        config = settings_factory(max_pacing_ms=300, fallback_mode="intelligent_pacing")
        governor = RuntimeBudgetGovernor(UsageStore(session_factory), config=config, clock=clock)
        await governor.start()
        await governor.set_manual_profile("balanced")
        alpha = _provider("alpha", side_effect=ProviderError("boom"))
        beta = _provider("beta", side_effect=ProviderError("boom"))
        router = self._router(governor, clock, alpha=alpha, beta=beta)

        with pytest.raises(AllProvidersUnavailable):
            await router.complete(MESSAGES)
        assert sum(round(s * 1000) for s in clock.sleeps) <= 300

    async def test_attempt_timeout_counts_as_error(self, session_factory, settings_factory, clock):
        config = settings_factory(attempt_timeout_seconds=0.05)
        governor = RuntimeBudgetGovernor(UsageStore(session_factory), config=config, clock=clock)
        await governor.start()

        async def hang(**kwargs):
            await asyncio.sleep(5)

        alpha = _provider("alpha", side_effect=hang)
        beta = _provider("beta")
        router = self._router(governor, clock, alpha=alpha, beta=beta)

        response = await router.complete(MESSAGES)
        assert response.provider == "beta"
        assert governor.cooldown_entry("alpha").last_failure_kind == "error"
        assert "Timed out" in governor.cooldown_entry("alpha").reason

    async def test_half_open_probe_is_single_flight(self, governor, clock):
        alpha = GatedProvider("alpha")
        beta = _provider("beta")
        router = self._router(governor, clock, alpha=alpha, beta=beta)
        await governor.apply_provider_cooldown("alpha", "error")
        clock.advance(ms=1000)
        assert governor.circuit_state("alpha") == "half_open"

        probe = asyncio.create_task(router.complete(MESSAGES))
        await asyncio.wait_for(alpha.started.wait(), timeout=5)

        second = await router.complete(MESSAGES)
        assert second.provider == "beta"

        alpha.release.set()
        first = await probe
        assert first.provider == "alpha"
        assert governor.circuit_state("alpha") == "closed"

    async def test_set_fallback_mode_records_event(self, governor, clock):
        router = self._router(governor, clock, alpha=_provider("alpha"), beta=_provider("beta"))
        await router.set_fallback_mode("intelligent_pacing")

        telemetry = await router.get_telemetry()
        assert telemetry["fallback_mode"] == "intelligent_pacing"
        assert telemetry["recent_routing_events"][0]["type"] == "mode_change"

    async def test_provider_without_credentials_is_skipped(self, governor, clock):
        beta = _provider("beta")
        router = self._router(governor, clock, beta=beta)
        assert router.get_available_providers() == ["beta"]

        response = await router.complete(MESSAGES)
        assert response.provider == "beta"
        assert [c["available"] for c in router.get_candidate_info()] == [False, True]

    async def test_no_credentials_fails_fast(self, governor, clock):
        unavailable = _provider("alpha")
        unavailable.is_available.return_value = False
        with pytest.raises(NoProvidersConfigured):
            self._router(governor, clock, alpha=unavailable)

    async def test_builds_providers_from_settings(self, governor):
        router = ModelRouter(governor, config=governor.config)
        assert router.get_available_providers() == ["alpha", "beta"]

    async def test_builds_nothing_without_keys(self, session_factory, settings_factory, clock):
        config = settings_factory(modal_api_key=None, openrouter_api_key=None)
        governor = RuntimeBudgetGovernor(UsageStore(session_factory), config=config, clock=clock)
        with pytest.raises(NoProvidersConfigured):
            ModelRouter(governor, config=config)


@pytest.mark.asyncio
class TestCandidateSelection:
    @pytest.fixture
    def config(self, settings_factory):
        return settings_factory(
            gemini_api_key="test-gemini",
            model_catalog=[
                ProviderConfig(
                    name="premium",
                    base_url="http://premium.invalid/v1",
                    api_key_setting="modal_api_key",
                    models=[ModelConfig(name="big", tier="premium")],
                ),
                ProviderConfig(
                    name="standard",
                    base_url="http://standard.invalid/v1",
                    api_key_setting="openrouter_api_key",
                    models=[ModelConfig(name="medium", tier="standard")],
                ),
                ProviderConfig(
                    name="cheap",
                    base_url="http://cheap.invalid/v1",
                    api_key_setting="gemini_api_key",
                    models=[ModelConfig(name="small", tier="economy")],
                ),
            ],
        )

    @pytest_asyncio.fixture
    async def router(self, session_factory, config, clock):
        governor = RuntimeBudgetGovernor(UsageStore(session_factory), config=config, clock=clock)
        await governor.start()
        providers = {name: _provider(name) for name in ("premium", "standard", "cheap")}
        return ModelRouter(governor, providers=providers, config=config, sleep=clock.sleep)

    async def _order(self, router, pin):
        await router.governor.set_manual_profile(pin)
        return [c.provider for c in router.select_candidates(router.governor.get_routing_directive())]

    async def test_performance_keeps_catalog_order(self, router):
        assert await self._order(router, "performance") == ["premium", "standard", "cheap"]

    async def test_balanced_prefers_standard_tier(self, router):
        assert await self._order(router, "balanced") == ["standard", "premium", "cheap"]

    async def test_economy_goes_cheapest_first_and_drops_premium(self, router):
        assert await self._order(router, "economy") == ["cheap", "standard"]

    async def test_blocked_by_budget_diagnostic(self, router):
        await router.governor.set_manual_profile("economy")
        await router.governor.apply_provider_cooldown("cheap", "error")
        await router.governor.apply_provider_cooldown("standard", "error")

        with pytest.raises(AllProvidersUnavailable) as exc_info:
            await router.complete(MESSAGES)
        reasons = {r.provider: r.reason for r in exc_info.value.reasons}
        assert reasons == {"premium": "blocked_by_budget", "standard": "cooldown", "cheap": "cooldown"}
