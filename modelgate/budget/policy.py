"""Pure budget policy: severity, profile resolution, cooldown math, directives.

Nothing here reads the clock or storage. Every function takes the state,
settings and the current instant explicitly, so identical inputs always give
identical outputs.
"""

from dataclasses import dataclass
from datetime import date, datetime, timedelta

from modelgate.budget.models import (
    PROFILES,
    BudgetState,
    CircuitState,
    CooldownEntry,
    Outcome,
    Profile,
    RoutingDirective,
    Severity,
    UsageAggregate,
)
from modelgate.config import Settings


@dataclass(frozen=True)
class ProfileDefinition:
    name: str
    allowed_tiers: tuple[str, ...]
    # Candidate ordering by tier; None keeps catalog order.
    tier_preference: tuple[str, ...] | None
    pacing_setting: str | None  # Settings field holding the pacing delay

    def pacing_delay_ms(self, config: Settings) -> int:
        if self.pacing_setting is None:
            return 0
        return min(getattr(config, self.pacing_setting), config.max_pacing_ms)


PROFILE_DEFINITIONS: dict[str, ProfileDefinition] = {
    "performance": ProfileDefinition(
        name="performance",
        allowed_tiers=("premium", "standard", "economy"),
        tier_preference=None,
        pacing_setting=None,
    ),
    "balanced": ProfileDefinition(
        name="balanced",
        allowed_tiers=("premium", "standard", "economy"),
        tier_preference=("standard", "premium", "economy"),
        pacing_setting="warning_pacing_ms",
    ),
    "economy": ProfileDefinition(
        name="economy",
        allowed_tiers=("standard", "economy"),
        tier_preference=("economy", "standard"),
        pacing_setting="hard_limit_pacing_ms",
    ),
}

# Least conservative profile each severity permits.
SEVERITY_CEILING: dict[str, Profile] = {
    "ok": "performance",
    "warning": "balanced",
    "hard_limit": "economy",
}


# ── Aggregates ──────────────────────────────────────────────────────────


def window_aggregates(state: BudgetState, day: date) -> tuple[UsageAggregate, dict[str, UsageAggregate]]:
    """Daily and per-provider aggregates for ``day``; a stale window reads as zero."""
    if state.window_day != day:
        return UsageAggregate(), {}
    return state.daily, state.providers


def _checks(
    config: Settings,
    daily: UsageAggregate,
    session: UsageAggregate | None,
    providers: dict[str, UsageAggregate],
) -> list[tuple[str, int, int]]:
    checks = [
        ("daily_requests", daily.request_count, config.daily_request_limit),
        ("daily_tokens", daily.tokens_used, config.daily_token_limit),
    ]
    if session is not None:
        checks.append(("session_requests", session.request_count, config.session_request_limit))
        checks.append(("session_tokens", session.tokens_used, config.session_token_limit))
    for name in sorted(providers):
        usage = providers[name]
        checks.append((f"{name}_requests", usage.request_count, config.per_provider_request_limit))
        checks.append((f"{name}_tokens", usage.tokens_used, config.per_provider_token_limit))
    return checks


def resolve_severity(
    config: Settings,
    daily: UsageAggregate,
    session: UsageAggregate | None,
    providers: dict[str, UsageAggregate],
) -> Severity:
    checks = _checks(config, daily, session, providers)
    if any(value >= limit for _, value, limit in checks):
        return "hard_limit"
    if any(value * 100 > limit * config.warning_threshold_pct for _, value, limit in checks):
        return "warning"
    return "ok"


def over_limit_providers(config: Settings, providers: dict[str, UsageAggregate]) -> list[str]:
    return sorted(
        name
        for name, usage in providers.items()
        if usage.request_count >= config.per_provider_request_limit
        or usage.tokens_used >= config.per_provider_token_limit
    )


# ── Profiles ────────────────────────────────────────────────────────────


def more_conservative(a: Profile, b: Profile) -> Profile:
    return a if PROFILES.index(a) <= PROFILES.index(b) else b


def resolve_profile(severity: Severity, pin: Profile | None, degraded: bool = False) -> Profile:
    """Pinned profile clamped to what the severity permits."""
    ceiling = "economy" if degraded else SEVERITY_CEILING[severity]
    if pin is None:
        return ceiling
    return more_conservative(pin, ceiling)


def blocked_models(profile: Profile, config: Settings) -> list[str]:
    allowed = PROFILE_DEFINITIONS[profile].allowed_tiers
    return sorted(
        model.name
        for provider in config.model_catalog
        for model in provider.models
        if model.tier not in allowed
    )


# ── Cooldowns ───────────────────────────────────────────────────────────


def circuit_state(entry: CooldownEntry | None, now: datetime) -> CircuitState:
    if entry is None or entry.cooldown_until is None:
        return "closed"
    if now < entry.cooldown_until:
        return "open"
    return "half_open"


def cooldown_remaining_ms(entry: CooldownEntry | None, now: datetime) -> int:
    if entry is None or entry.cooldown_until is None or now >= entry.cooldown_until:
        return 0
    return int((entry.cooldown_until - now) / timedelta(milliseconds=1))


def backoff_ms(consecutive_failures: int, config: Settings, retry_after_ms: int | None = None) -> int:
    delay = min(config.cooldown_base_ms * (2 ** consecutive_failures), config.cooldown_max_ms)
    if retry_after_ms:
        delay = min(max(delay, retry_after_ms), config.cooldown_max_ms)
    return delay


def merge_cooldown(
    entry: CooldownEntry | None,
    provider: str,
    failure_kind: Outcome,
    now: datetime,
    config: Settings,
    retry_after_ms: int | None = None,
    reason: str | None = None,
) -> CooldownEntry:
    """Next cooldown entry. cooldown_until never moves backwards before a success."""
    if failure_kind == "success":
        return CooldownEntry(provider=provider)

    failures = entry.consecutive_failures if entry else 0
    proposed = now + timedelta(milliseconds=backoff_ms(failures, config, retry_after_ms))
    current = entry.cooldown_until if entry else None
    until = proposed if current is None else max(current, proposed)
    return CooldownEntry(
        provider=provider,
        cooldown_until=until,
        consecutive_failures=failures + 1,
        last_failure_kind=failure_kind,
        reason=reason or failure_kind,
    )


# ── Directive ───────────────────────────────────────────────────────────


def _reason(
    config: Settings,
    severity: Severity,
    checks: list[tuple[str, int, int]],
    pin: Profile | None,
    profile: Profile,
    cooling: list[str],
    exhausted: list[str],
    degraded: bool,
) -> str:
    if severity == "ok":
        parts = ["Budget utilization is below warning thresholds."]
    else:
        pressure = [
            f"{label}={value}/{limit}"
            for label, value, limit in checks
            if value * 100 > limit * config.warning_threshold_pct or value >= limit
        ]
        prefix = "Hard budget threshold reached" if severity == "hard_limit" else "Warning budget threshold reached"
        parts = [f"{prefix} ({' | '.join(pressure)})."]
    if degraded:
        parts.append("Budget state could not be loaded; economy enforced.")
    if pin is not None and pin != profile:
        parts.append(f"Manual profile '{pin}' clamped to '{profile}'.")
    elif pin is not None:
        parts.append(f"Manual profile '{pin}' in effect.")
    if cooling:
        parts.append(f"Cooling down: {', '.join(cooling)}.")
    if exhausted:
        parts.append(f"Provider quota reached: {', '.join(exhausted)}.")
    return " ".join(parts)


def compute_directive(
    state: BudgetState,
    config: Settings,
    now: datetime,
    session_id: str | None = None,
) -> RoutingDirective:
    daily, providers = window_aggregates(state, now.date())
    session = (state.sessions.get(session_id) or UsageAggregate()) if session_id else None

    cooling = sorted(
        name for name, entry in state.cooldowns.items() if circuit_state(entry, now) == "open"
    )
    exhausted = over_limit_providers(config, providers)
    severity = resolve_severity(config, daily, session, providers)
    profile = resolve_profile(severity, state.manual_profile_pin, state.storage_degraded)
    definition = PROFILE_DEFINITIONS[profile]

    actions = []
    if severity != "ok" or definition.pacing_delay_ms(config) > 0:
        actions.append("intelligent_pacing")
    if cooling or exhausted:
        actions.append("provider_cooldown")
    if severity == "hard_limit" or profile == "economy":
        actions.append("fallback_tightening")
    if not actions:
        actions.append("none")

    return RoutingDirective(
        profile=profile,
        severity=severity,
        fallback_mode=state.fallback_mode,
        actions=actions,
        blocked_providers=sorted(set(cooling) | set(exhausted)),
        blocked_models=blocked_models(profile, config),
        pacing_delay_ms=definition.pacing_delay_ms(config),
        reason=_reason(
            config,
            severity,
            _checks(config, daily, session, providers),
            state.manual_profile_pin,
            profile,
            cooling,
            exhausted,
            state.storage_degraded,
        ),
        computed_at=now,
    )
