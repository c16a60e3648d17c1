from datetime import datetime

from modelgate.budget import policy
from modelgate.budget.models import (
    FALLBACK_MODES,
    PROFILES,
    BudgetState,
    BudgetTransitionEvent,
    CircuitState,
    CooldownEntry,
    FallbackMode,
    Outcome,
    Profile,
    RoutingDirective,
    UsageAggregate,
    UsageEvent,
)
from modelgate.budget.store import StoredStateError, UsageStore
from modelgate.config import Settings, settings, utc_now
from modelgate.observability.logger import get_logger

log = get_logger("budget")


class RuntimeBudgetGovernor:
    """Single authority on whether, and how, the next inference call may run.

    Holds the working BudgetState in memory and is its only writer. Directives
    are computed synchronously from that state; every mutation updates memory
    first and then persists best-effort through the UsageStore.
    """

    def __init__(self, store: UsageStore, config: Settings = settings, clock=utc_now):
        self.store = store
        self.config = config
        self.clock = clock
        self._state = self._default_state(clock())

    def _default_state(self, now: datetime) -> BudgetState:
        return BudgetState(window_day=now.date(), fallback_mode=self.config.fallback_mode)

    async def start(self) -> BudgetState:
        """Load persisted state, creating defaults on first run."""
        now = self.clock()
        try:
            state = await self.store.load_state(now.date())
        except StoredStateError as e:
            log.warning("budget_state_malformed", error=str(e))
            self._state = self._default_state(now)
            try:
                await self.store.reset(self._state)
            except Exception as e:
                log.error("budget_state_persist_failed", error=str(e))
            return self.state
        except Exception as e:
            log.error("budget_state_load_failed", error=str(e))
            self._state = self._default_state(now)
            self._state.storage_degraded = True
            return self.state

        if state is None:
            self._state = self._default_state(now)
            await self._persist_state()
            log.info("budget_state_created", fallback_mode=self._state.fallback_mode)
        else:
            self._state = state
            log.info(
                "budget_state_loaded",
                severity=state.current_severity,
                profile=state.current_profile,
                manual_profile=state.manual_profile_pin,
                daily_requests=state.daily.request_count,
                cooldowns=len(state.cooldowns),
            )
        return self.state

    @property
    def state(self) -> BudgetState:
        return self._state.model_copy(deep=True)

    @property
    def fallback_mode(self) -> FallbackMode:
        return self._state.fallback_mode

    @property
    def storage_degraded(self) -> bool:
        return self._state.storage_degraded

    # ── Directive ────────────────────────────────────────────────────────

    def get_routing_directive(self, session_id: str | None = None) -> RoutingDirective:
        return policy.compute_directive(self._state, self.config, self.clock(), session_id)

    def cooldown_entry(self, provider: str) -> CooldownEntry | None:
        return self._state.cooldowns.get(provider)

    def circuit_state(self, provider: str) -> CircuitState:
        return policy.circuit_state(self._state.cooldowns.get(provider), self.clock())

    def cooldown_remaining_ms(self, provider: str) -> int:
        return policy.cooldown_remaining_ms(self._state.cooldowns.get(provider), self.clock())

    # ── Mutations ────────────────────────────────────────────────────────

    async def record_usage(self, event: UsageEvent) -> RoutingDirective:
        """Account one attempt. In-memory aggregates advance even if storage fails."""
        self._roll_window(self.clock())
        state = self._state
        state.daily.add(event)
        state.providers.setdefault(event.provider, UsageAggregate()).add(event)
        if event.session_id:
            state.sessions.setdefault(event.session_id, UsageAggregate()).add(event)
        transition = self._evaluate_transition(event.session_id)

        try:
            await self.store.record_usage(
                event,
                state.window_day,
                transition=transition,
                state=state if transition else None,
            )
        except Exception as e:
            log.error("usage_persist_failed", provider=event.provider, outcome=event.outcome, error=str(e))

        log.info(
            "usage_recorded",
            provider=event.provider,
            model=event.model,
            outcome=event.outcome,
            tokens=event.tokens_used,
            latency_ms=event.latency_ms,
            daily_requests=state.daily.request_count,
        )
        return self.get_routing_directive(event.session_id)

    async def apply_provider_cooldown(
        self,
        provider: str,
        failure_kind: Outcome,
        retry_after_ms: int | None = None,
        reason: str | None = None,
    ) -> CooldownEntry:
        now = self.clock()
        previous = self._state.cooldowns.get(provider)
        if failure_kind == "success" and (previous is None or previous.consecutive_failures == 0):
            return previous or CooldownEntry(provider=provider)

        entry = policy.merge_cooldown(previous, provider, failure_kind, now, self.config, retry_after_ms, reason)
        self._state.cooldowns[provider] = entry

        try:
            if failure_kind == "success":
                await self.store.clear_cooldown(provider)
            else:
                await self.store.save_cooldown(entry)
        except Exception as e:
            log.error("cooldown_persist_failed", provider=provider, error=str(e))

        if failure_kind == "success":
            log.info("provider_cooldown_cleared", provider=provider)
        else:
            log.warning(
                "provider_cooldown_applied",
                provider=provider,
                failure_kind=failure_kind,
                consecutive_failures=entry.consecutive_failures,
                cooldown_ms=policy.cooldown_remaining_ms(entry, now),
                cooldown_until=entry.cooldown_until.isoformat(),
            )
        return entry

    async def set_manual_profile(self, profile: Profile | None) -> RoutingDirective:
        if profile is not None and profile not in PROFILES:
            raise ValueError(f"Unknown budget profile '{profile}'")
        self._state.manual_profile_pin = profile
        transition = self._evaluate_transition(None)
        await self._persist_state(transition)
        log.info("manual_profile_set", profile=profile)
        return self.get_routing_directive()

    async def set_fallback_mode(self, mode: FallbackMode) -> FallbackMode:
        """Set the router's fallback mode; returns the previous mode."""
        if mode not in FALLBACK_MODES:
            raise ValueError(f"Unknown fallback mode '{mode}'")
        previous = self._state.fallback_mode
        self._state.fallback_mode = mode
        if previous != mode:
            await self._persist_state()
            log.info("fallback_mode_changed", previous=previous, mode=mode)
        return previous

    async def reset_policy_state(self) -> RoutingDirective:
        """Zero aggregates, cooldowns and the manual pin. Event logs are kept."""
        now = self.clock()
        state = self._state
        state.window_day = now.date()
        state.daily = UsageAggregate()
        state.sessions = {}
        state.providers = {}
        state.cooldowns = {}
        state.manual_profile_pin = None
        state.storage_degraded = False
        transition = self._evaluate_transition(None, reason="Runtime budget policy state reset.")
        try:
            await self.store.reset(state, transition)
        except Exception as e:
            log.error("budget_reset_persist_failed", error=str(e))
        log.warning("budget_policy_reset")
        return self.get_routing_directive()

    # ── Diagnostics ──────────────────────────────────────────────────────

    async def get_recent_events(self, limit: int = 50) -> dict:
        try:
            usage = await self.store.list_usage_events(limit)
            transitions = await self.store.list_transition_events(limit)
        except Exception as e:
            log.error("budget_events_read_failed", error=str(e))
            return {"usage": [], "transitions": []}
        return {
            "usage": [e.model_dump(mode="json") for e in usage],
            "transitions": [e.model_dump(mode="json") for e in transitions],
        }

    def get_cooldowns(self) -> list[dict]:
        now = self.clock()
        cooldowns = []
        for provider in sorted(self._state.cooldowns):
            entry = self._state.cooldowns[provider]
            cooldowns.append({
                "provider": provider,
                "circuit": policy.circuit_state(entry, now),
                "remaining_ms": policy.cooldown_remaining_ms(entry, now),
                "cooldown_until": entry.cooldown_until.isoformat() if entry.cooldown_until else None,
                "consecutive_failures": entry.consecutive_failures,
                "last_failure_kind": entry.last_failure_kind,
                "reason": entry.reason,
            })
        return cooldowns

    async def get_snapshot(self, session_id: str | None = None, event_limit: int = 50) -> dict:
        now = self.clock()
        state = self._state
        daily, providers = policy.window_aggregates(state, now.date())
        directive = self.get_routing_directive(session_id)
        snapshot = {
            "state": {
                "current_severity": state.current_severity,
                "current_profile": state.current_profile,
                "manual_profile_pin": state.manual_profile_pin,
                "fallback_mode": state.fallback_mode,
                "window_day": now.date().isoformat(),
                "storage_degraded": state.storage_degraded,
            },
            "limits": self.config.limits(),
            "daily": daily.model_dump(),
            "providers": {name: providers[name].model_dump() for name in sorted(providers)},
            "sessions_tracked": len(state.sessions),
            "cooldowns": self.get_cooldowns(),
            "directive": directive.model_dump(mode="json"),
            "recent_events": await self.get_recent_events(event_limit),
        }
        if session_id:
            snapshot["session"] = {
                "session_id": session_id,
                **state.sessions.get(session_id, UsageAggregate()).model_dump(),
            }
        return snapshot

    # ── Internals ────────────────────────────────────────────────────────

    def _roll_window(self, now: datetime):
        if self._state.window_day != now.date():
            log.info("budget_window_rolled", previous=str(self._state.window_day), day=str(now.date()))
            self._state.window_day = now.date()
            self._state.daily = UsageAggregate()
            self._state.providers = {}

    def _evaluate_transition(self, session_id: str | None, reason: str | None = None) -> BudgetTransitionEvent | None:
        """Move current severity/profile to the global evaluation, once per change."""
        directive = self.get_routing_directive()
        state = self._state
        if (directive.severity, directive.profile) == (state.current_severity, state.current_profile):
            return None

        transition = BudgetTransitionEvent(
            timestamp=directive.computed_at,
            session_id=session_id,
            from_severity=state.current_severity,
            to_severity=directive.severity,
            from_profile=state.current_profile,
            to_profile=directive.profile,
            reason=reason or directive.reason,
        )
        state.current_severity = directive.severity
        state.current_profile = directive.profile
        log.warning(
            "budget_transition",
            from_severity=transition.from_severity,
            to_severity=transition.to_severity,
            from_profile=transition.from_profile,
            to_profile=transition.to_profile,
            reason=transition.reason,
        )
        return transition

    async def _persist_state(self, transition: BudgetTransitionEvent | None = None):
        try:
            await self.store.save_state(self._state, transition)
        except Exception as e:
            log.error("budget_state_persist_failed", error=str(e))
