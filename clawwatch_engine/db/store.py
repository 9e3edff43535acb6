"""
TelemetryStore — the mutation/query surface the collector writes through.

- Idempotent upserts for agents and sessions
- Append-only inserts for cost records, activities, health checks, alerts
- Additive delta patches for the stats cache
- Read queries keyed by agent / time window for the evaluator and sweeper

Every public method runs in its own short unit of work; there is no
cross-table transaction. SQLAlchemy failures surface as StoreError so callers
can log per call and carry on with the next tick.
"""
import logging
from contextlib import asynccontextmanager
from datetime import datetime, timedelta
from typing import Any, AsyncIterator, Callable, Iterable, Sequence

from sqlalchemy import delete, func, select, update
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from clawwatch_engine.exceptions import StoreError
from clawwatch_engine.records import (
    ActivityEntry,
    CostEntry,
    HealthSample,
    SessionInfo,
    StatsDelta,
)
from .models import (
    Activity,
    Agent,
    AgentSession,
    Alert,
    AlertRule,
    Budget,
    CostRecord,
    HealthCheck,
    SnitchEvent,
    StatsCache,
    utcnow,
)

logger = logging.getLogger("clawwatch.db.store")

# Retention: table name -> (model, age column, requires resolved_at)
RETENTION_TABLES: dict[str, tuple[type, Any, bool]] = {
    "activities": (Activity, Activity.created_at, False),
    "health_checks": (HealthCheck, HealthCheck.timestamp, False),
    "cost_records": (CostRecord, CostRecord.timestamp, False),
    "snitch_events": (SnitchEvent, SnitchEvent.timestamp, False),
    "alerts": (Alert, Alert.created_at, True),
}


def round_cost(value: float) -> float:
    """Round dollars to 4 places (display/aggregation boundary)."""
    return round(value, 4)


class TelemetryStore:
    """Async store backed by a SQLAlchemy session factory."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self._session_factory = session_factory

    @asynccontextmanager
    async def _unit(self, operation: str) -> AsyncIterator[AsyncSession]:
        try:
            async with self._session_factory() as db:
                yield db
                await db.commit()
        except SQLAlchemyError as e:
            raise StoreError(f"{operation} failed: {e}") from e

    # ── Agents ───────────────────────────────────────────────────────────────

    async def _agents_by_name(self, db: AsyncSession, names: Iterable[str]) -> dict[str, Agent]:
        wanted = set(names)
        if not wanted:
            return {}
        result = await db.execute(select(Agent).where(Agent.name.in_(wanted)))
        return {a.name: a for a in result.scalars().all()}

    @staticmethod
    def _touch(agent: Agent, now: datetime) -> None:
        agent.status = "online"
        agent.last_heartbeat = now
        agent.last_seen = now

    async def ensure_agent(
        self,
        name: str,
        gateway_url: str | None = None,
        *,
        now: datetime | None = None,
    ) -> int:
        """Return the agent id for ``name``, creating the agent if needed."""
        now = now or utcnow()
        async with self._unit("ensure_agent") as db:
            agent = (await self._agents_by_name(db, [name])).get(name)
            if agent is None:
                agent = Agent(
                    name=name,
                    gateway_url=gateway_url,
                    status="online",
                    last_heartbeat=now,
                    last_seen=now,
                    config={},
                )
                db.add(agent)
                await db.flush()
            return agent.id

    async def list_agents(self) -> list[Agent]:
        async with self._unit("list_agents") as db:
            result = await db.execute(select(Agent).order_by(Agent.name))
            return list(result.scalars().all())

    async def set_agent_status(self, agent_id: int, status: str) -> None:
        async with self._unit("set_agent_status") as db:
            await db.execute(update(Agent).where(Agent.id == agent_id).values(status=status))

    # ── Sessions ─────────────────────────────────────────────────────────────

    async def upsert_sessions(
        self,
        gateway_url: str,
        sessions: list[SessionInfo],
        *,
        now: datetime | None = None,
    ) -> int:
        """Create agents on first sight and upsert sessions by (agent, key).

        Existing sessions only get total_tokens / last_activity / is_active
        refreshed; cost and token breakdowns are never recomputed here.
        """
        now = now or utcnow()
        ingested = 0
        async with self._unit("upsert_sessions") as db:
            agents = await self._agents_by_name(db, (s.agent for s in sessions))
            for info in sessions:
                agent = agents.get(info.agent)
                if agent is None:
                    agent = Agent(
                        name=info.agent,
                        gateway_url=gateway_url,
                        status="online",
                        last_heartbeat=now,
                        last_seen=now,
                        config={"model": info.model, "channel": info.channel},
                    )
                    db.add(agent)
                    await db.flush()
                    agents[info.agent] = agent

                # Only the ":main" session may overwrite the configured model;
                # other sessions (discord, cron) only fill it in when empty.
                config = dict(agent.config or {})
                if info.key.endswith(":main"):
                    config["model"] = info.model or config.get("model")
                else:
                    config["model"] = config.get("model") or info.model
                config["channel"] = info.channel or config.get("channel")
                agent.config = config
                self._touch(agent, now)

                existing = await db.scalar(
                    select(AgentSession).where(
                        AgentSession.agent_id == agent.id,
                        AgentSession.session_key == info.key,
                    )
                )
                if existing is not None:
                    existing.total_tokens = info.total_tokens
                    existing.last_activity = info.updated_at
                    existing.is_active = info.is_active(now)
                else:
                    db.add(AgentSession(
                        agent_id=agent.id,
                        session_key=info.key,
                        kind=info.kind,
                        display_name=info.display_name,
                        channel=info.channel,
                        started_at=info.updated_at,
                        last_activity=info.updated_at,
                        total_tokens=info.total_tokens,
                        input_tokens=0,
                        output_tokens=0,
                        estimated_cost=0.0,
                        message_count=0,
                        is_active=info.is_active(now),
                    ))
                ingested += 1
        return ingested

    async def active_sessions(self, agent_id: int, limit: int = 50) -> list[AgentSession]:
        async with self._unit("active_sessions") as db:
            result = await db.execute(
                select(AgentSession)
                .where(AgentSession.agent_id == agent_id, AgentSession.is_active.is_(True))
                .order_by(AgentSession.last_activity.desc())
                .limit(limit)
            )
            return list(result.scalars().all())

    async def latest_sessions_by_channel(
        self, agent_id: int, channel: str, limit: int = 20,
    ) -> list[AgentSession]:
        """Most recently active sessions of ``agent_id`` on ``channel``."""
        async with self._unit("latest_sessions_by_channel") as db:
            result = await db.execute(
                select(AgentSession)
                .where(AgentSession.agent_id == agent_id, AgentSession.channel == channel)
                .order_by(AgentSession.last_activity.desc())
                .limit(limit)
            )
            return list(result.scalars().all())

    # ── Append-only ingestion ────────────────────────────────────────────────

    async def insert_cost_records(
        self,
        entries: list[CostEntry],
        *,
        now: datetime | None = None,
    ) -> list[tuple[CostEntry, int]]:
        """Insert cost records; entries for unknown agents are skipped.

        Returns the accepted entries paired with their agent id.
        """
        now = now or utcnow()
        accepted: list[tuple[CostEntry, int]] = []
        async with self._unit("insert_cost_records") as db:
            agents = await self._agents_by_name(db, (e.agent for e in entries))
            for entry in entries:
                agent = agents.get(entry.agent)
                if agent is None:
                    logger.warning(
                        "Skipping cost entry for unknown agent %r (%s)", entry.agent, entry.source,
                    )
                    continue
                db.add(CostRecord(
                    agent_id=agent.id,
                    session_key=entry.session_key,
                    provider=entry.provider,
                    model=entry.model,
                    input_tokens=entry.input_tokens,
                    output_tokens=entry.output_tokens,
                    cache_read_tokens=entry.cache_read_tokens,
                    cache_write_tokens=entry.cache_write_tokens,
                    cost=entry.cost,
                    period="hourly",
                    timestamp=entry.timestamp,
                    source=entry.source,
                    record_id=entry.record_id,
                ))
                self._touch(agent, now)
                accepted.append((entry, agent.id))
        return accepted

    async def insert_activities(
        self,
        entries: list[ActivityEntry],
        *,
        now: datetime | None = None,
    ) -> int:
        now = now or utcnow()
        ingested = 0
        async with self._unit("insert_activities") as db:
            agents = await self._agents_by_name(db, (e.agent for e in entries))
            for entry in entries:
                agent = agents.get(entry.agent)
                if agent is None:
                    logger.debug("Skipping activity for unknown agent %r", entry.agent)
                    continue
                db.add(Activity(
                    agent_id=agent.id,
                    type=entry.type,
                    summary=entry.summary,
                    session_key=entry.session_key,
                    channel=entry.channel,
                    details=entry.details,
                    timestamp=entry.timestamp,
                    created_at=now,
                ))
                self._touch(agent, now)
                ingested += 1
        return ingested

    async def record_alert_activity(
        self,
        agent_id: int,
        *,
        summary: str,
        details: dict[str, Any] | None,
        now: datetime,
    ) -> None:
        """Append an alert_fired activity for an agent already known by id."""
        async with self._unit("record_alert_activity") as db:
            db.add(Activity(
                agent_id=agent_id,
                type="alert_fired",
                summary=summary,
                details=details,
                timestamp=now,
                created_at=now,
            ))

    async def record_health_check(
        self,
        sample: HealthSample,
        *,
        now: datetime | None = None,
    ) -> bool:
        now = now or utcnow()
        async with self._unit("record_health_check") as db:
            agent = (await self._agents_by_name(db, [sample.agent])).get(sample.agent)
            if agent is None:
                logger.debug("Skipping health check for unknown agent %r", sample.agent)
                return False
            db.add(HealthCheck(
                agent_id=agent.id,
                timestamp=now,
                is_healthy=sample.is_healthy,
                response_time_ms=sample.response_time_ms,
                active_session_count=sample.active_session_count,
                total_session_count=sample.total_session_count,
                total_tokens_last_hour=sample.total_tokens_last_hour,
                cost_last_hour=sample.cost_last_hour,
                error_count=sample.error_count,
            ))
            self._touch(agent, now)
            return True

    # ── Stats cache ──────────────────────────────────────────────────────────

    async def apply_stats_deltas(
        self,
        deltas: dict[str, StatsDelta],
        *,
        now: datetime | None = None,
    ) -> int:
        """Add each delta onto its cache row, creating rows on first use.

        One ``INSERT ... ON CONFLICT (key) DO UPDATE`` per chunk, so the
        increment happens in the database rather than read-modify-write.
        """
        if not deltas:
            return 0
        now = now or utcnow()
        async with self._unit("apply_stats_deltas") as db:
            insert = pg_insert if db.get_bind().dialect.name == "postgresql" else sqlite_insert
            stmt = insert(StatsCache).values([
                {
                    "key": key,
                    "cost": round_cost(delta.cost),
                    "input_tokens": delta.input_tokens,
                    "output_tokens": delta.output_tokens,
                    "requests": delta.requests,
                    "updated_at": now,
                }
                for key, delta in deltas.items()
            ])
            stmt = stmt.on_conflict_do_update(
                index_elements=[StatsCache.key],
                set_={
                    "cost": StatsCache.cost + stmt.excluded.cost,
                    "input_tokens": StatsCache.input_tokens + stmt.excluded.input_tokens,
                    "output_tokens": StatsCache.output_tokens + stmt.excluded.output_tokens,
                    "requests": StatsCache.requests + stmt.excluded.requests,
                    "updated_at": stmt.excluded.updated_at,
                },
            )
            await db.execute(stmt)
        return len(deltas)

    async def get_stats(self, key: str) -> dict[str, Any] | None:
        async with self._unit("get_stats") as db:
            row = await db.scalar(select(StatsCache).where(StatsCache.key == key))
            if row is None:
                return None
            return {
                "key": row.key,
                "cost": round_cost(row.cost),
                "input_tokens": row.input_tokens,
                "output_tokens": row.output_tokens,
                "requests": row.requests,
                "updated_at": row.updated_at,
            }

    # ── Budgets ──────────────────────────────────────────────────────────────

    async def list_active_budgets(self) -> list[Budget]:
        async with self._unit("list_active_budgets") as db:
            result = await db.execute(select(Budget).where(Budget.is_active.is_(True)))
            return list(result.scalars().all())

    async def book_budgets(
        self,
        accepted: Sequence[tuple[CostEntry, int]],
        apply: Callable[[Budget, CostEntry, int], bool],
    ) -> int:
        """Read active budgets and book ``accepted`` into them in one unit.

        ``apply`` mutates a budget in place and returns True when it changed.
        Rows are locked for the read (``FOR UPDATE`` on PostgreSQL) and
        written back on commit. Returns the number of budgets modified.
        """
        async with self._unit("book_budgets") as db:
            result = await db.execute(
                select(Budget).where(Budget.is_active.is_(True)).order_by(Budget.id).with_for_update()
            )
            budgets = list(result.scalars().all())
            modified: set[int] = set()
            for entry, agent_id in accepted:
                for budget in budgets:
                    if apply(budget, entry, agent_id):
                        modified.add(budget.id)
        return len(modified)

    # ── Alerting reads ───────────────────────────────────────────────────────

    async def list_active_rules(self) -> list[AlertRule]:
        async with self._unit("list_active_rules") as db:
            result = await db.execute(
                select(AlertRule).where(AlertRule.is_active.is_(True)).order_by(AlertRule.id)
            )
            return list(result.scalars().all())

    async def count_activities(self, agent_id: int, activity_type: str, since: datetime) -> int:
        async with self._unit("count_activities") as db:
            return await db.scalar(
                select(func.count(Activity.id)).where(
                    Activity.agent_id == agent_id,
                    Activity.type == activity_type,
                    Activity.timestamp > since,
                )
            ) or 0

    async def recent_dedup_keys(self, since: datetime) -> list[tuple[str, datetime, float, str | None]]:
        """(source, timestamp, cost, record_id) of cost records stamped at or after ``since``."""
        async with self._unit("recent_dedup_keys") as db:
            result = await db.execute(
                select(CostRecord.source, CostRecord.timestamp, CostRecord.cost, CostRecord.record_id)
                .where(CostRecord.timestamp >= since, CostRecord.source.is_not(None))
                .order_by(CostRecord.id)
            )
            return [tuple(row) for row in result.all()]

    async def cost_records_since(self, agent_id: int, since: datetime) -> list[CostRecord]:
        async with self._unit("cost_records_since") as db:
            result = await db.execute(
                select(CostRecord)
                .where(CostRecord.agent_id == agent_id, CostRecord.timestamp >= since)
                .order_by(CostRecord.timestamp)
            )
            return list(result.scalars().all())

    # ── Alerting writes ──────────────────────────────────────────────────────

    async def insert_alert(
        self,
        *,
        rule: AlertRule,
        agent_id: int | None,
        severity: str,
        title: str,
        message: str,
        data: dict[str, Any] | None,
        now: datetime,
    ) -> int:
        async with self._unit("insert_alert") as db:
            alert = Alert(
                rule_id=rule.id,
                agent_id=agent_id,
                type=rule.type,
                severity=severity,
                title=title,
                message=message,
                data=data,
                channels=list(rule.channels or []),
                created_at=now,
            )
            db.add(alert)
            await db.flush()
            return alert.id

    async def mark_rule_triggered(self, rule_id: int, when: datetime) -> None:
        async with self._unit("mark_rule_triggered") as db:
            await db.execute(
                update(AlertRule).where(AlertRule.id == rule_id).values(last_triggered=when)
            )

    async def acknowledge_alert(self, alert_id: int, *, now: datetime | None = None) -> None:
        """User action; never called by the evaluator."""
        async with self._unit("acknowledge_alert") as db:
            await db.execute(
                update(Alert).where(Alert.id == alert_id).values(acknowledged_at=now or utcnow())
            )

    async def resolve_alert(self, alert_id: int, *, now: datetime | None = None) -> None:
        """User action; never called by the evaluator."""
        async with self._unit("resolve_alert") as db:
            await db.execute(
                update(Alert).where(Alert.id == alert_id).values(resolved_at=now or utcnow())
            )

    async def list_alerts(self, limit: int = 50) -> list[Alert]:
        async with self._unit("list_alerts") as db:
            result = await db.execute(select(Alert).order_by(Alert.created_at.desc()).limit(limit))
            return list(result.scalars().all())

    # ── Retention ────────────────────────────────────────────────────────────

    async def delete_expired(self, table: str, cutoff: datetime, batch_size: int) -> int:
        """Delete up to ``batch_size`` rows older than ``cutoff``, oldest first."""
        try:
            model, age_col, requires_resolved = RETENTION_TABLES[table]
        except KeyError:
            raise StoreError(f"No retention policy for table {table!r}") from None

        async with self._unit(f"delete_expired[{table}]") as db:
            query = select(model.id).where(age_col < cutoff)
            if requires_resolved:
                query = query.where(model.resolved_at.is_not(None))
            ids = list((await db.execute(query.order_by(age_col.asc()).limit(batch_size))).scalars())
            if ids:
                await db.execute(delete(model).where(model.id.in_(ids)))
            return len(ids)

    async def table_stats(self) -> dict[str, dict[str, Any]]:
        stats: dict[str, dict[str, Any]] = {}
        async with self._unit("table_stats") as db:
            for table, (model, age_col, _) in RETENTION_TABLES.items():
                total = await db.scalar(select(func.count(model.id))) or 0
                oldest = await db.scalar(select(func.min(age_col)))
                stats[table] = {"total": total, "oldest": oldest}
        return stats

    # ── Rule / budget management ─────────────────────────────────────────────

    async def create_rule(
        self,
        *,
        name: str,
        type: str,
        config: dict[str, Any] | None = None,
        agent_id: int | None = None,
        severity: str | None = None,
        channels: list[str] | None = None,
        cooldown_minutes: int = 60,
    ) -> int:
        async with self._unit("create_rule") as db:
            rule = AlertRule(
                name=name,
                type=type,
                agent_id=agent_id,
                config=config or {},
                severity=severity,
                channels=channels or [],
                cooldown_minutes=cooldown_minutes,
                is_active=True,
            )
            db.add(rule)
            await db.flush()
            return rule.id

    async def create_budget(
        self,
        *,
        name: str,
        period: str,
        limit_dollars: float,
        reset_at: datetime,
        agent_id: int | None = None,
        hard_stop: bool = False,
        current_spend: float = 0.0,
    ) -> int:
        async with self._unit("create_budget") as db:
            budget = Budget(
                name=name,
                agent_id=agent_id,
                period=period,
                limit_dollars=limit_dollars,
                current_spend=current_spend,
                reset_at=reset_at,
                hard_stop=hard_stop,
                is_active=True,
            )
            db.add(budget)
            await db.flush()
            return budget.id

    # ── Bootstrapping ────────────────────────────────────────────────────────

    async def seed_defaults(self, *, now: datetime | None = None) -> bool:
        """Create default alert rules + a global daily budget if no rules exist."""
        now = now or utcnow()
        async with self._unit("seed_defaults") as db:
            if await db.scalar(select(AlertRule.id).limit(1)) is not None:
                return False

            db.add_all([
                AlertRule(name="Daily Budget Exceeded", type="budget_exceeded",
                          config={"threshold": 10}, channels=["discord"], cooldown_minutes=60),
                AlertRule(name="Agent Offline > 5min", type="agent_offline",
                          config={"window_minutes": 5}, channels=["discord"], cooldown_minutes=15),
                AlertRule(name="Error Spike (>5 in 10min)", type="error_spike",
                          config={"threshold": 5, "window_minutes": 10}, channels=["discord"],
                          cooldown_minutes=30),
                AlertRule(name="Session Loop Detected", type="session_loop",
                          config={}, channels=["discord"], cooldown_minutes=60),
                AlertRule(name="Hourly Cost > $5", type="custom_threshold",
                          config={"threshold": 5, "metric": "cost_per_hour"}, channels=["discord"],
                          cooldown_minutes=60),
            ])
            tomorrow = (now + timedelta(days=1)).replace(hour=0, minute=0, second=0, microsecond=0)
            db.add(Budget(
                name="Daily Global Limit",
                period="daily",
                limit_dollars=25.0,
                current_spend=0.0,
                reset_at=tomorrow,
                hard_stop=False,
                is_active=True,
            ))
        logger.info("Seeded default alert rules and daily budget")
        return True
