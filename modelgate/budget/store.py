from datetime import date, datetime, timezone

from pydantic import ValidationError
from sqlalchemy import case, delete, select
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.ext.asyncio import AsyncSession

from modelgate.budget.models import (
    BudgetState,
    BudgetTransitionEvent,
    CooldownEntry,
    UsageAggregate,
    UsageEvent,
)
from modelgate.models import (
    RuntimeBudgetEvent,
    RuntimeBudgetState,
    RuntimeProviderCooldown,
    RuntimeUsageCounter,
    RuntimeUsageEvent,
)

STATE_ROW_ID = 1
MAX_EVENT_LIMIT = 500


class StoredStateError(ValueError):
    """Persisted budget state exists but cannot be interpreted."""


def _as_utc(value: datetime | None) -> datetime | None:
    # SQLite hands DateTime columns back without tzinfo; everything stored is UTC.
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def _insert(session: AsyncSession, table):
    if session.get_bind().dialect.name == "postgresql":
        return postgresql.insert(table)
    return sqlite.insert(table)


def _aggregate(row: RuntimeUsageCounter) -> UsageAggregate:
    return UsageAggregate(
        request_count=row.request_count,
        tokens_used=row.tokens_used,
        failure_count=row.failure_count,
        rate_limited_count=row.rate_limited_count,
    )


def _cooldown(row: RuntimeProviderCooldown) -> CooldownEntry:
    return CooldownEntry(
        provider=row.provider,
        cooldown_until=_as_utc(row.cooldown_until),
        consecutive_failures=row.consecutive_failures,
        last_failure_kind=row.last_failure_kind,
        reason=row.reason,
    )


def _usage_event(row: RuntimeUsageEvent) -> UsageEvent:
    return UsageEvent(
        id=row.id,
        timestamp=_as_utc(row.timestamp),
        session_id=row.session_id,
        provider=row.provider,
        model=row.model,
        outcome=row.outcome,
        tokens_used=row.tokens_used or 0,
        latency_ms=row.latency_ms or 0,
        profile=row.profile,
        status_code=row.status_code,
        error=row.error,
    )


def _transition_event(row: RuntimeBudgetEvent) -> BudgetTransitionEvent:
    return BudgetTransitionEvent(
        id=row.id,
        timestamp=_as_utc(row.timestamp),
        session_id=row.session_id,
        from_severity=row.from_severity,
        to_severity=row.to_severity,
        from_profile=row.from_profile,
        to_profile=row.to_profile,
        reason=row.reason,
    )


class UsageStore:
    """Persistence for the budget governor.

    The usage and transition tables only ever receive inserts. Counters are
    bumped with INSERT .. ON CONFLICT DO UPDATE SET n = n + excluded.n so
    concurrent completions never lose an increment.
    """

    def __init__(self, session_factory):
        self.session_factory = session_factory

    async def load_state(self, day: date) -> BudgetState | None:
        async with self.session_factory() as session:
            row = await session.get(RuntimeBudgetState, STATE_ROW_ID)
            if row is None:
                return None
            counters = (await session.execute(select(RuntimeUsageCounter))).scalars().all()
            cooldowns = (await session.execute(select(RuntimeProviderCooldown))).scalars().all()

        today = day.isoformat()
        daily = UsageAggregate()
        sessions: dict[str, UsageAggregate] = {}
        providers: dict[str, UsageAggregate] = {}
        try:
            for counter in counters:
                if counter.scope == "session":
                    sessions[counter.scope_key] = _aggregate(counter)
                elif counter.window_day != today:
                    continue
                elif counter.scope == "daily":
                    daily = _aggregate(counter)
                elif counter.scope == "provider":
                    providers[counter.scope_key] = _aggregate(counter)
                else:
                    raise StoredStateError(f"unknown counter scope '{counter.scope}'")

            return BudgetState(
                current_severity=row.current_severity,
                current_profile=row.current_profile,
                manual_profile_pin=row.manual_profile_pin,
                fallback_mode=row.fallback_mode,
                window_day=day,
                daily=daily,
                sessions=sessions,
                providers=providers,
                cooldowns={c.provider: _cooldown(c) for c in cooldowns},
            )
        except ValidationError as e:
            raise StoredStateError(str(e)) from e

    async def save_state(self, state: BudgetState, transition: BudgetTransitionEvent | None = None):
        async with self.session_factory() as session:
            if transition is not None:
                session.add(self._transition_row(transition))
            await self._upsert_state(session, state)
            await session.commit()

    async def record_usage(
        self,
        event: UsageEvent,
        window_day: date,
        transition: BudgetTransitionEvent | None = None,
        state: BudgetState | None = None,
    ):
        day = window_day.isoformat()
        async with self.session_factory() as session:
            session.add(
                RuntimeUsageEvent(
                    id=event.id,
                    timestamp=event.timestamp,
                    session_id=event.session_id,
                    provider=event.provider,
                    model=event.model,
                    outcome=event.outcome,
                    profile=event.profile,
                    tokens_used=event.tokens_used,
                    latency_ms=event.latency_ms,
                    status_code=event.status_code,
                    error=event.error,
                )
            )
            await self._increment(session, "daily", "", day, event)
            await self._increment(session, "provider", event.provider, day, event)
            if event.session_id:
                await self._increment(session, "session", event.session_id, "", event)
            if transition is not None:
                session.add(self._transition_row(transition))
            if state is not None:
                await self._upsert_state(session, state)
            await session.commit()

    async def save_cooldown(self, entry: CooldownEntry):
        """Upsert a cooldown; the stored cooldown_until only moves forward."""
        async with self.session_factory() as session:
            stmt = _insert(session, RuntimeProviderCooldown).values(
                provider=entry.provider,
                cooldown_until=entry.cooldown_until,
                consecutive_failures=entry.consecutive_failures,
                last_failure_kind=entry.last_failure_kind,
                reason=entry.reason,
            )
            existing = RuntimeProviderCooldown.cooldown_until
            stmt = stmt.on_conflict_do_update(
                index_elements=["provider"],
                set_={
                    "cooldown_until": case(
                        (existing.is_(None), stmt.excluded.cooldown_until),
                        (existing > stmt.excluded.cooldown_until, existing),
                        else_=stmt.excluded.cooldown_until,
                    ),
                    "consecutive_failures": stmt.excluded.consecutive_failures,
                    "last_failure_kind": stmt.excluded.last_failure_kind,
                    "reason": stmt.excluded.reason,
                },
            )
            await session.execute(stmt)
            await session.commit()

    async def clear_cooldown(self, provider: str):
        async with self.session_factory() as session:
            row = await session.get(RuntimeProviderCooldown, provider)
            if row is not None:
                row.cooldown_until = None
                row.consecutive_failures = 0
                row.last_failure_kind = None
                row.reason = None
                await session.commit()

    async def reset(self, state: BudgetState, transition: BudgetTransitionEvent | None = None):
        """Truncate counters and cooldowns. Event logs are left untouched."""
        async with self.session_factory() as session:
            await session.execute(delete(RuntimeUsageCounter))
            await session.execute(delete(RuntimeProviderCooldown))
            if transition is not None:
                session.add(self._transition_row(transition))
            await self._upsert_state(session, state)
            await session.commit()

    async def list_usage_events(self, limit: int = 50) -> list[UsageEvent]:
        limit = max(1, min(MAX_EVENT_LIMIT, int(limit)))
        async with self.session_factory() as session:
            result = await session.execute(
                select(RuntimeUsageEvent)
                .order_by(RuntimeUsageEvent.timestamp.desc(), RuntimeUsageEvent.id.desc())
                .limit(limit)
            )
            return [_usage_event(row) for row in result.scalars().all()]

    async def list_transition_events(self, limit: int = 50) -> list[BudgetTransitionEvent]:
        limit = max(1, min(MAX_EVENT_LIMIT, int(limit)))
        async with self.session_factory() as session:
            result = await session.execute(
                select(RuntimeBudgetEvent)
                .order_by(RuntimeBudgetEvent.timestamp.desc(), RuntimeBudgetEvent.id.desc())
                .limit(limit)
            )
            return [_transition_event(row) for row in result.scalars().all()]

    async def _increment(self, session: AsyncSession, scope: str, key: str, window: str, event: UsageEvent):
        failed = 0 if event.outcome == "success" else 1
        limited = 1 if event.outcome == "rate_limited" else 0
        stmt = _insert(session, RuntimeUsageCounter).values(
            scope=scope,
            scope_key=key,
            window_day=window,
            request_count=1,
            tokens_used=event.tokens_used,
            failure_count=failed,
            rate_limited_count=limited,
        )
        stmt = stmt.on_conflict_do_update(
            index_elements=["scope", "scope_key", "window_day"],
            set_={
                "request_count": RuntimeUsageCounter.request_count + stmt.excluded.request_count,
                "tokens_used": RuntimeUsageCounter.tokens_used + stmt.excluded.tokens_used,
                "failure_count": RuntimeUsageCounter.failure_count + stmt.excluded.failure_count,
                "rate_limited_count": RuntimeUsageCounter.rate_limited_count
                + stmt.excluded.rate_limited_count,
            },
        )
        await session.execute(stmt)

    async def _upsert_state(self, session: AsyncSession, state: BudgetState):
        values = {
            "current_severity": state.current_severity,
            "current_profile": state.current_profile,
            "manual_profile_pin": state.manual_profile_pin,
            "fallback_mode": state.fallback_mode,
            "window_day": state.window_day.isoformat(),
        }
        stmt = _insert(session, RuntimeBudgetState).values(id=STATE_ROW_ID, **values)
        stmt = stmt.on_conflict_do_update(index_elements=["id"], set_=values)
        await session.execute(stmt)

    @staticmethod
    def _transition_row(event: BudgetTransitionEvent) -> RuntimeBudgetEvent:
        return RuntimeBudgetEvent(
            id=event.id,
            timestamp=event.timestamp,
            session_id=event.session_id,
            from_severity=event.from_severity,
            to_severity=event.to_severity,
            from_profile=event.from_profile,
            to_profile=event.to_profile,
            reason=event.reason,
        )
