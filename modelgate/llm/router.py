import asyncio
import time
from collections import deque
from dataclasses import dataclass
from typing import Literal
from uuid import uuid4

from pydantic import BaseModel, Field

from modelgate.budget.governor import RuntimeBudgetGovernor
from modelgate.budget.models import FallbackMode, Outcome, RoutingDirective, UsageEvent
from modelgate.budget.policy import PROFILE_DEFINITIONS
from modelgate.config import Settings, settings
from modelgate.llm.base import LLMProvider, LLMResponse, ProviderError, ProviderRateLimitError
from modelgate.llm.providers.openai_compat import OpenAICompatibleProvider
from modelgate.observability.logger import get_logger

log = get_logger("llm_router")

CHARS_PER_TOKEN = 4

UnavailableReason = Literal[
    "cooldown",
    "blocked_by_budget",
    "no_credentials",
    "probe_in_flight",
    "rate_limited",
    "error",
]


@dataclass(frozen=True)
class Candidate:
    provider: str
    model: str
    tier: str

    @property
    def key(self) -> str:
        return f"{self.provider}/{self.model}"


class CompletionRequest(BaseModel):
    messages: list[dict]
    session_id: str | None = None
    temperature: float = 0.7
    max_tokens: int = 4096
    tools: list[dict] | None = None


class ProviderUnavailability(BaseModel):
    provider: str
    model: str | None = None
    reason: UnavailableReason
    detail: str
    cooldown_remaining_ms: int = 0


class RoutingEvent(BaseModel):
    id: str = Field(default_factory=lambda: uuid4().hex)
    type: str
    provider: str | None = None
    model: str | None = None
    fallback_mode: FallbackMode
    detail: str
    created_at: str


class AllProvidersUnavailable(RuntimeError):
    """Every candidate was skipped or failed for this turn. Not retryable by the caller."""

    def __init__(self, reasons: list[ProviderUnavailability], directive: RoutingDirective):
        self.reasons = reasons
        self.directive = directive
        summary = "; ".join(f"{r.provider}: {r.detail}" for r in reasons) or "no providers configured"
        super().__init__(f"All configured providers are unavailable ({summary})")

    def to_dict(self) -> dict:
        return {
            "error": "all_providers_unavailable",
            "severity": self.directive.severity,
            "profile": self.directive.profile,
            "providers": [r.model_dump() for r in self.reasons],
        }


class NoProvidersConfigured(RuntimeError):
    """No catalog provider has credentials; raised at startup."""


def estimate_tokens(text: str) -> int:
    if not text:
        return 0
    return max(1, -(-len(text) // CHARS_PER_TOKEN))


def estimate_request_tokens(messages: list[dict]) -> int:
    return sum(estimate_tokens(str(m.get("content") or "")) for m in messages)


class ModelRouter:
    """Routes each inference turn across the configured providers.

    Candidate order comes from the model catalog, reordered for the
    directive's profile. Failures are reported to the governor, which owns
    the per-provider cooldown circuit that this router re-checks before every
    attempt.
    """

    def __init__(
        self,
        governor: RuntimeBudgetGovernor,
        providers: dict[str, LLMProvider] | None = None,
        config: Settings = settings,
        sleep=asyncio.sleep,
    ):
        self.governor = governor
        self.config = config
        self._sleep = sleep
        self.catalog = [
            Candidate(provider=p.name, model=m.name, tier=m.tier)
            for p in config.model_catalog
            for m in p.models
        ]
        self._provider_order = [p.name for p in config.model_catalog]
        self.providers: dict[str, LLMProvider] = {}
        self._init_providers(providers)
        if not self.providers:
            raise NoProvidersConfigured(
                "No model provider has credentials. Set one of: "
                + ", ".join(p.api_key_setting.upper() for p in config.model_catalog)
            )

        self._probes_in_flight: set[str] = set()
        self._events: deque[RoutingEvent] = deque(maxlen=config.router_event_buffer)
        self._metrics = {
            "total_requests": 0,
            "total_failures": 0,
            "consecutive_failures": 0,
            "failover_count": 0,
            "last_error": None,
            "last_failure_at": None,
        }
        self._usage = {
            c.key: {
                "provider": c.provider,
                "model": c.model,
                "attempts": 0,
                "successes": 0,
                "failures": 0,
                "rate_limits": 0,
                "last_used_at": None,
                "last_error": None,
            }
            for c in self.catalog
        }
        self.current_model: str | None = None

    def _init_providers(self, providers: dict[str, LLMProvider] | None):
        if providers is None:
            providers = {
                p.name: OpenAICompatibleProvider(
                    name=p.name,
                    base_url=p.base_url,
                    api_key=self.config.api_key_for(p),
                    models=[m.name for m in p.models],
                    extra_headers=p.extra_headers,
                )
                for p in self.config.model_catalog
            }
        for name in self._provider_order:
            provider = providers.get(name)
            if provider is not None and provider.is_available():
                self.providers[name] = provider
                log.info("provider_available", provider=name)
            else:
                log.warning("provider_unavailable", provider=name)

    # ── Candidate selection ──────────────────────────────────────────────

    def _ordered(self, directive: RoutingDirective) -> list[Candidate]:
        preference = PROFILE_DEFINITIONS[directive.profile].tier_preference
        if preference is None:
            return list(self.catalog)
        rank = {tier: i for i, tier in enumerate(preference)}
        return sorted(self.catalog, key=lambda c: rank.get(c.tier, len(rank)))

    def _plan(self, directive: RoutingDirective) -> tuple[list[Candidate], dict[str, ProviderUnavailability]]:
        candidates: list[Candidate] = []
        skipped: dict[str, ProviderUnavailability] = {}
        for cand in self._ordered(directive):
            remaining = self.governor.cooldown_remaining_ms(cand.provider)
            if cand.provider not in self.providers:
                skip = ProviderUnavailability(
                    provider=cand.provider,
                    model=cand.model,
                    reason="no_credentials",
                    detail="No API key configured.",
                )
            elif remaining > 0:
                # Re-checked directly: the directive may predate this cooldown.
                skip = ProviderUnavailability(
                    provider=cand.provider,
                    model=cand.model,
                    reason="cooldown",
                    detail=f"Cooling down for {remaining}ms.",
                    cooldown_remaining_ms=remaining,
                )
            elif cand.provider in directive.blocked_providers:
                skip = ProviderUnavailability(
                    provider=cand.provider,
                    model=cand.model,
                    reason="blocked_by_budget",
                    detail=f"Provider quota reached ({directive.severity}).",
                )
            elif cand.model in directive.blocked_models:
                skip = ProviderUnavailability(
                    provider=cand.provider,
                    model=cand.model,
                    reason="blocked_by_budget",
                    detail=f"Model tier '{cand.tier}' not allowed under the {directive.profile} profile.",
                )
            else:
                candidates.append(cand)
                continue
            skipped.setdefault(cand.provider, skip)
        return candidates, skipped

    def select_candidates(self, directive: RoutingDirective) -> list[Candidate]:
        return self._plan(directive)[0]

    # ── Execution ────────────────────────────────────────────────────────

    async def complete(
        self,
        messages: list[dict],
        session_id: str | None = None,
        temperature: float = 0.7,
        max_tokens: int = 4096,
        tools: list[dict] | None = None,
    ) -> LLMResponse:
        """One inference turn: fetch a directive, then execute with failover."""
        request = CompletionRequest(
            messages=messages,
            session_id=session_id,
            temperature=temperature,
            max_tokens=max_tokens,
            tools=tools,
        )
        directive = self.governor.get_routing_directive(session_id)
        return await self.execute_with_failover(request, directive)

    async def execute_with_failover(self, request: CompletionRequest, directive: RoutingDirective) -> LLMResponse:
        candidates, reasons = self._plan(directive)
        pacing = directive.fallback_mode == "intelligent_pacing"
        pacing_budget_ms = self.config.max_pacing_ms
        retried: set[str] = set()
        retrying = False
        last_tried: Candidate | None = None

        idx = 0
        while idx < len(candidates):
            cand = candidates[idx]
            if pacing and not retrying:
                pacing_budget_ms -= await self._pace(
                    directive.pacing_delay_ms,
                    pacing_budget_ms,
                    cand,
                    directive,
                    f"Intelligent pacing wait {{wait_ms}}ms before {cand.key}.",
                )
            retrying = False

            remaining = self.governor.cooldown_remaining_ms(cand.provider)
            if remaining > 0 and pacing:
                # Wait for the cooldown to open instead of switching providers.
                pacing_budget_ms -= await self._pace(
                    remaining,
                    pacing_budget_ms,
                    cand,
                    directive,
                    f"Waiting {{wait_ms}}ms for {cand.key} cooldown.",
                )
                remaining = self.governor.cooldown_remaining_ms(cand.provider)
            if remaining > 0:
                self._mark_cooling(reasons, cand, remaining)
                self._record_event(
                    "cooldown_skip",
                    cand,
                    f"Skipped {cand.key}; cooldown active for {remaining}ms.",
                    directive.fallback_mode,
                )
                idx += 1
                continue

            probing = self.governor.circuit_state(cand.provider) == "half_open"
            if probing and cand.provider in self._probes_in_flight:
                reasons.setdefault(
                    cand.provider,
                    ProviderUnavailability(
                        provider=cand.provider,
                        model=cand.model,
                        reason="probe_in_flight",
                        detail="Recovery probe already in flight.",
                    ),
                )
                self._record_event(
                    "cooldown_skip",
                    cand,
                    f"Skipped {cand.key}; recovery probe in flight.",
                    directive.fallback_mode,
                )
                idx += 1
                continue

            if last_tried is not None and last_tried.provider != cand.provider:
                self._metrics["failover_count"] += 1
                self._record_event(
                    "failover",
                    cand,
                    f"Automatic fallback {last_tried.key} -> {cand.key}.",
                    directive.fallback_mode,
                )

            if probing:
                self._probes_in_flight.add(cand.provider)
            try:
                response, failure = await self._attempt(cand, request, directive)
            finally:
                if probing:
                    self._probes_in_flight.discard(cand.provider)

            if response is not None:
                reasons.pop(cand.provider, None)
                return response

            reasons[cand.provider] = failure
            last_tried = cand
            if pacing and cand.key not in retried:
                # One retry of the same candidate once its cooldown has been waited out.
                retried.add(cand.key)
                retrying = True
                continue
            idx += 1

        diagnostics = [reasons[p] for p in self._provider_order if p in reasons]
        log.error(
            "all_providers_unavailable",
            severity=directive.severity,
            profile=directive.profile,
            reasons=[f"{r.provider}:{r.reason}" for r in diagnostics],
        )
        raise AllProvidersUnavailable(diagnostics, directive)

    @staticmethod
    def _mark_cooling(reasons: dict[str, ProviderUnavailability], cand: Candidate, remaining: int):
        previous = reasons.get(cand.provider)
        if previous is not None and previous.reason in ("rate_limited", "error"):
            # Keep the failure that started the cooldown.
            reasons[cand.provider] = previous.model_copy(update={"cooldown_remaining_ms": remaining})
            return
        reasons[cand.provider] = ProviderUnavailability(
            provider=cand.provider,
            model=cand.model,
            reason="cooldown",
            detail=f"Cooling down for {remaining}ms.",
            cooldown_remaining_ms=remaining,
        )

    async def _pace(
        self, delay_ms: int, budget_ms: int, cand: Candidate, directive: RoutingDirective, message: str
    ) -> int:
        wait_ms = max(0, min(delay_ms, self.config.max_pacing_ms, budget_ms))
        if wait_ms > 0:
            self._record_event("cooldown_wait", cand, message.format(wait_ms=wait_ms), directive.fallback_mode)
            await self._sleep(wait_ms / 1000)
        return wait_ms

    async def _attempt(
        self,
        cand: Candidate,
        request: CompletionRequest,
        directive: RoutingDirective,
    ) -> tuple[LLMResponse | None, ProviderUnavailability | None]:
        provider = self.providers[cand.provider]
        self._metrics["total_requests"] += 1
        usage = self._usage[cand.key]
        usage["attempts"] += 1
        usage["last_used_at"] = self.governor.clock().isoformat()
        self._record_event(
            "attempt",
            cand,
            f"Attempting {cand.model} (profile={directive.profile}, severity={directive.severity}).",
            directive.fallback_mode,
        )
        log.info("llm_request", provider=cand.provider, model=cand.model, profile=directive.profile)

        outcome: Outcome = "success"
        error = None
        status_code = None
        retry_after_ms = None
        response = None
        started = time.monotonic()
        try:
            response = await asyncio.wait_for(
                provider.complete(
                    messages=request.messages,
                    model=cand.model,
                    temperature=request.temperature,
                    max_tokens=request.max_tokens,
                    tools=request.tools,
                ),
                timeout=self.config.attempt_timeout_seconds,
            )
        except ProviderRateLimitError as e:
            outcome, error, status_code, retry_after_ms = "rate_limited", str(e), e.status_code, e.retry_after_ms
        except asyncio.TimeoutError:
            outcome, error = "error", f"Timed out after {self.config.attempt_timeout_seconds}s"
        except ProviderError as e:
            outcome, error, status_code = "error", str(e), e.status_code
        except Exception as e:
            outcome, error = "error", str(e) or type(e).__name__
        latency_ms = int((time.monotonic() - started) * 1000)

        if response is not None:
            tokens = response.total_tokens or (
                estimate_request_tokens(request.messages) + estimate_tokens(response.content)
            )
        else:
            tokens = estimate_request_tokens(request.messages)

        await self.governor.record_usage(
            UsageEvent(
                timestamp=self.governor.clock(),
                session_id=request.session_id,
                provider=cand.provider,
                model=cand.model,
                outcome=outcome,
                tokens_used=tokens,
                latency_ms=latency_ms,
                profile=directive.profile,
                status_code=status_code,
                error=error,
            )
        )
        entry = await self.governor.apply_provider_cooldown(
            cand.provider, outcome, retry_after_ms=retry_after_ms, reason=error
        )

        if response is not None:
            self._metrics["consecutive_failures"] = 0
            self._metrics["last_error"] = None
            usage["successes"] += 1
            usage["last_error"] = None
            self.current_model = cand.key
            self._record_event("success", cand, f"Response succeeded for {cand.key}.", directive.fallback_mode)
            log.info("llm_response", provider=cand.provider, model=cand.model, tokens=tokens, latency_ms=latency_ms)
            return response, None

        self._metrics["total_failures"] += 1
        self._metrics["consecutive_failures"] += 1
        self._metrics["last_error"] = error
        self._metrics["last_failure_at"] = self.governor.clock().isoformat()
        usage["failures"] += 1
        usage["last_error"] = error
        remaining = self.governor.cooldown_remaining_ms(cand.provider)
        if outcome == "rate_limited":
            usage["rate_limits"] += 1
            self._record_event(
                "rate_limit",
                cand,
                f"Rate limit on {cand.key}; cooldown={remaining}ms; mode={directive.fallback_mode}.",
                directive.fallback_mode,
            )
        else:
            self._record_event("failure", cand, f"Attempt failed for {cand.key}: {error}", directive.fallback_mode)
        log.warning(
            "provider_failed",
            provider=cand.provider,
            model=cand.model,
            outcome=outcome,
            error=error,
            consecutive_failures=entry.consecutive_failures,
        )
        return None, ProviderUnavailability(
            provider=cand.provider,
            model=cand.model,
            reason=outcome,
            detail=f"{error} (cooling down for {remaining}ms)" if remaining else error,
            cooldown_remaining_ms=remaining,
        )

    # ── Operator surface ─────────────────────────────────────────────────

    async def set_fallback_mode(self, mode: FallbackMode) -> FallbackMode:
        previous = await self.governor.set_fallback_mode(mode)
        if previous != mode:
            self._record_event("mode_change", None, f"Fallback mode changed {previous} -> {mode}.", mode)
        return mode

    def get_available_providers(self) -> list[str]:
        return list(self.providers.keys())

    def get_candidate_info(self) -> list[dict]:
        return [
            {
                "provider": c.provider,
                "model": c.model,
                "tier": c.tier,
                "available": c.provider in self.providers,
            }
            for c in self.catalog
        ]

    async def get_telemetry(self, session_id: str | None = None, event_limit: int = 30) -> dict:
        directive = self.governor.get_routing_directive(session_id)
        providers = []
        for name in self._provider_order:
            entry = self.governor.cooldown_entry(name)
            providers.append({
                "provider": name,
                "available": name in self.providers,
                "circuit": self.governor.circuit_state(name),
                "cooldown_remaining_ms": self.governor.cooldown_remaining_ms(name),
                "consecutive_failures": entry.consecutive_failures if entry else 0,
            })
        active = [p for p in providers if p["cooldown_remaining_ms"] > 0]
        recent = await self.governor.get_recent_events(event_limit)
        return {
            "fallback_mode": directive.fallback_mode,
            "severity": directive.severity,
            "profile": directive.profile,
            "directive": directive.model_dump(mode="json"),
            "current_model": self.current_model,
            "providers": providers,
            "active_cooldowns": active,
            "metrics": dict(self._metrics),
            "usage": list(self._usage.values()),
            "recent_routing_events": [e.model_dump() for e in reversed(self._events)],
            "recent_usage_events": recent["usage"],
            "recent_transitions": recent["transitions"],
            "operator_guidance": self._operator_guidance(directive, active),
        }

    def _operator_guidance(self, directive: RoutingDirective, active: list[dict]) -> list[str]:
        guidance = []
        if active and len(active) >= len(self.providers):
            next_ready_ms = min(p["cooldown_remaining_ms"] for p in active)
            guidance.append(
                f"All providers cooling down. Next availability in ~{-(-next_ready_ms // 1000)}s."
            )
        if self._metrics["consecutive_failures"] >= 3:
            guidance.append(
                f"Routing instability detected ({self._metrics['consecutive_failures']} consecutive failures). "
                "Validate quotas and provider credentials."
            )
        if directive.severity != "ok":
            guidance.append(directive.reason)
        if directive.fallback_mode == "intelligent_pacing" and active:
            guidance.append("intelligent_pacing is active: waiting briefly before provider switching.")
        if directive.fallback_mode == "aggressive_fallback" and self._metrics["failover_count"] > 0:
            guidance.append("aggressive_fallback is active: immediate provider switching enabled.")
        if not guidance:
            guidance.append("Routing stable. No active cooldown or budget pressure.")
        return guidance

    def _record_event(self, type_: str, cand: Candidate | None, detail: str, mode: FallbackMode):
        self._events.append(
            RoutingEvent(
                type=type_,
                provider=cand.provider if cand else None,
                model=cand.model if cand else None,
                fallback_mode=mode,
                detail=detail,
                created_at=self.governor.clock().isoformat(),
            )
        )
