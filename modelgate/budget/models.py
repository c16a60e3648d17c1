from datetime import date, datetime
from typing import Literal
from uuid import uuid4

from pydantic import BaseModel, ConfigDict, Field

Severity = Literal["ok", "warning", "hard_limit"]
Profile = Literal["economy", "balanced", "performance"]
FallbackMode = Literal["intelligent_pacing", "aggressive_fallback"]
Outcome = Literal["success", "rate_limited", "error"]
CircuitState = Literal["closed", "open", "half_open"]
ModelTier = Literal["premium", "standard", "economy"]

SEVERITIES: tuple[str, ...] = ("ok", "warning", "hard_limit")
# Most conservative first
PROFILES: tuple[str, ...] = ("economy", "balanced", "performance")
FALLBACK_MODES: tuple[str, ...] = ("intelligent_pacing", "aggressive_fallback")


def _new_id() -> str:
    return uuid4().hex


class UsageEvent(BaseModel):
    """One recorded inference attempt. Immutable once written."""

    model_config = ConfigDict(frozen=True)

    id: str = Field(default_factory=_new_id)
    timestamp: datetime
    session_id: str | None = None
    provider: str
    model: str
    outcome: Outcome
    tokens_used: int = Field(0, ge=0)
    latency_ms: int = Field(0, ge=0)
    profile: Profile | None = None
    status_code: int | None = None
    error: str | None = None


class BudgetTransitionEvent(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: str = Field(default_factory=_new_id)
    timestamp: datetime
    session_id: str | None = None
    from_severity: Severity
    to_severity: Severity
    from_profile: Profile
    to_profile: Profile
    reason: str


class CooldownEntry(BaseModel):
    model_config = ConfigDict(frozen=True)

    provider: str
    cooldown_until: datetime | None = None
    consecutive_failures: int = Field(0, ge=0)
    last_failure_kind: Outcome | None = None
    reason: str | None = None


class UsageAggregate(BaseModel):
    request_count: int = Field(0, ge=0)
    tokens_used: int = Field(0, ge=0)
    failure_count: int = Field(0, ge=0)
    rate_limited_count: int = Field(0, ge=0)

    def add(self, event: UsageEvent) -> None:
        self.request_count += 1
        self.tokens_used += event.tokens_used
        if event.outcome != "success":
            self.failure_count += 1
        if event.outcome == "rate_limited":
            self.rate_limited_count += 1


class BudgetState(BaseModel):
    """The governor's persisted working state (one logical row)."""

    current_severity: Severity = "ok"
    current_profile: Profile = "performance"
    manual_profile_pin: Profile | None = None
    fallback_mode: FallbackMode = "aggressive_fallback"
    window_day: date
    daily: UsageAggregate = Field(default_factory=UsageAggregate)
    sessions: dict[str, UsageAggregate] = Field(default_factory=dict)
    providers: dict[str, UsageAggregate] = Field(default_factory=dict)
    cooldowns: dict[str, CooldownEntry] = Field(default_factory=dict)
    # Set when the initial load from storage failed; forces economy.
    storage_degraded: bool = False


class RoutingDirective(BaseModel):
    model_config = ConfigDict(frozen=True)

    profile: Profile
    severity: Severity
    fallback_mode: FallbackMode
    actions: list[str]
    blocked_providers: list[str]
    blocked_models: list[str]
    pacing_delay_ms: int
    reason: str
    computed_at: datetime
