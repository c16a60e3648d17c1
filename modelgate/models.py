from sqlalchemy import Column, DateTime, Integer, String, Text, UniqueConstraint, func

from modelgate.database import Base


class RuntimeUsageEvent(Base):
    """Append-only log of inference attempts."""

    __tablename__ = "runtime_usage_events"

    id = Column(String(36), primary_key=True)
    timestamp = Column(DateTime(timezone=True), nullable=False, index=True)
    session_id = Column(String(200), nullable=True)
    provider = Column(String(50), nullable=False, index=True)
    model = Column(String(200), nullable=False)
    outcome = Column(String(20), nullable=False)  # success, rate_limited, error
    profile = Column(String(20), nullable=True)
    tokens_used = Column(Integer, default=0)
    latency_ms = Column(Integer, default=0)
    status_code = Column(Integer, nullable=True)
    error = Column(Text, nullable=True)


class RuntimeBudgetEvent(Base):
    """Append-only log of severity/profile transitions."""

    __tablename__ = "runtime_budget_events"

    id = Column(String(36), primary_key=True)
    timestamp = Column(DateTime(timezone=True), nullable=False, index=True)
    session_id = Column(String(200), nullable=True)
    from_severity = Column(String(20), nullable=False)
    to_severity = Column(String(20), nullable=False)
    from_profile = Column(String(20), nullable=False)
    to_profile = Column(String(20), nullable=False)
    reason = Column(Text, nullable=False)


class RuntimeBudgetState(Base):
    __tablename__ = "runtime_budget_state"

    id = Column(Integer, primary_key=True, default=1)
    current_severity = Column(String(20), nullable=False, default="ok")
    current_profile = Column(String(20), nullable=False, default="performance")
    manual_profile_pin = Column(String(20), nullable=True)
    fallback_mode = Column(String(30), nullable=False)
    window_day = Column(String(10), nullable=False)  # YYYY-MM-DD
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())


class RuntimeUsageCounter(Base):
    """Aggregate counters, incremented in place by upsert.

    scope is "daily", "session" or "provider". Daily and provider rows are
    keyed by window_day; session rows use an empty window.
    """

    __tablename__ = "runtime_usage_counters"
    __table_args__ = (UniqueConstraint("scope", "scope_key", "window_day"),)

    id = Column(Integer, primary_key=True, autoincrement=True)
    scope = Column(String(20), nullable=False)
    scope_key = Column(String(200), nullable=False, default="")
    window_day = Column(String(10), nullable=False, default="")
    request_count = Column(Integer, nullable=False, default=0)
    tokens_used = Column(Integer, nullable=False, default=0)
    failure_count = Column(Integer, nullable=False, default=0)
    rate_limited_count = Column(Integer, nullable=False, default=0)


class RuntimeProviderCooldown(Base):
    __tablename__ = "runtime_provider_cooldowns"

    provider = Column(String(50), primary_key=True)
    cooldown_until = Column(DateTime(timezone=True), nullable=True)
    consecutive_failures = Column(Integer, nullable=False, default=0)
    last_failure_kind = Column(String(20), nullable=True)
    reason = Column(Text, nullable=True)
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())
