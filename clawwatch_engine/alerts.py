"""
Alert Evaluator — periodic rule evaluation with a rule-level cooldown.

Each active rule is checked against current store state. A rule whose
condition holds fires only when it has never fired or its cooldown has
elapsed since ``last_triggered``; firing inserts one alert per finding, an
``alert_fired`` activity for agent-scoped findings, and stamps
``last_triggered``. Alerts are never acknowledged or resolved here.

Rule types and defaults:
  budget_exceeded     current_spend >= threshold (or limit × pct / 100)
  agent_offline       no heartbeat for window_minutes (5)
  error_spike         >= threshold (5) errors in window_minutes (10)
  cost_spike          hourly rate in window (15m) >= pct (50) over 24h baseline
  high_token_usage    >= threshold (100000) tokens in window_minutes (15)
  session_loop        active session with > 100 messages and > 500000 tokens
  channel_disconnect  inactive but no active sessions on a channel (discord)
  custom_threshold    metric "cost_per_hour" compared against threshold (5)
"""
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Awaitable, Callable

from clawwatch_engine.db.models import Agent, AlertRule, utcnow
from clawwatch_engine.db.store import TelemetryStore
from clawwatch_engine.metrics import METRICS, CollectorMetrics

logger = logging.getLogger("clawwatch.engine.alerts")

COST_SPIKE_LOOKBACK = timedelta(hours=24)
SESSION_LOOP_MESSAGES = 100
SESSION_LOOP_TOKENS = 500_000


@dataclass
class Finding:
    """One alert a rule wants to raise."""

    severity: str
    title: str
    message: str
    agent_id: int | None = None
    data: dict[str, Any] | None = None


def normalize_alert_data(raw: dict[str, Any] | None) -> dict[str, Any] | None:
    """Flatten alert data to JSON scalars; None when nothing is left."""
    if not raw:
        return None
    out: dict[str, Any] = {}
    for key, value in raw.items():
        if value is None or isinstance(value, (str, int, float, bool)):
            out[key] = value
        else:
            out[key] = str(value)
    return out or None


def rule_setting(rule: AlertRule, name: str, default: Any = None) -> Any:
    """Read a rule config value by snake_case name, accepting camelCase too."""
    config = rule.config or {}
    if config.get(name) is not None:
        return config[name]
    head, *rest = name.split("_")
    camel = head + "".join(part.title() for part in rest)
    if config.get(camel) is not None:
        return config[camel]
    return default


def compare(value: float, threshold: float, comparison: str = "gt") -> bool:
    if comparison == "lt":
        return value < threshold
    if comparison == "eq":
        return value == threshold
    return value > threshold


def cooldown_elapsed(rule: AlertRule, now: datetime) -> bool:
    if rule.last_triggered is None:
        return True
    return now - rule.last_triggered >= timedelta(minutes=rule.cooldown_minutes or 0)


class AlertEvaluator:
    """Evaluates all active alert rules once per call to ``evaluate``."""

    def __init__(
        self,
        store: TelemetryStore,
        *,
        metrics: CollectorMetrics | None = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.store = store
        self.metrics = metrics or METRICS
        self._clock = clock
        self._checks: dict[str, Callable[[AlertRule, list[Agent], datetime], Awaitable[list[Finding]]]] = {
            "budget_exceeded": self._check_budget_exceeded,
            "agent_offline": self._check_agent_offline,
            "error_spike": self._check_error_spike,
            "cost_spike": self._check_cost_spike,
            "high_token_usage": self._check_high_token_usage,
            "session_loop": self._check_session_loop,
            "channel_disconnect": self._check_channel_disconnect,
            "custom_threshold": self._check_custom_threshold,
        }

    async def evaluate(self) -> dict[str, int]:
        now = self._clock()
        rules = await self.store.list_active_rules()
        agents = await self.store.list_agents()
        fired = 0

        for rule in rules:
            check = self._checks.get(rule.type)
            if check is None:
                logger.warning("Rule %r has unknown type %r", rule.name, rule.type)
                continue
            try:
                scoped = [a for a in agents if rule.agent_id is None or a.id == rule.agent_id]
                findings = await check(rule, scoped, now)
                if findings and cooldown_elapsed(rule, now):
                    fired += await self._fire(rule, findings, now)
            except Exception as e:
                logger.error("Evaluating rule %r failed: %s", rule.name, e, exc_info=True)
                self.metrics.errors_total.labels(error_type=type(e).__name__, component="alerts").inc()

        return {"evaluated": len(rules), "fired": fired}

    async def _fire(self, rule: AlertRule, findings: list[Finding], now: datetime) -> int:
        for finding in findings:
            await self.store.insert_alert(
                rule=rule,
                agent_id=finding.agent_id,
                severity=finding.severity,
                title=finding.title,
                message=finding.message,
                data=normalize_alert_data(finding.data),
                now=now,
            )
            if finding.agent_id is not None:
                await self.store.record_alert_activity(
                    finding.agent_id,
                    summary=f"{finding.severity.upper()}: {finding.title}",
                    details={"message": finding.message},
                    now=now,
                )
            self.metrics.alerts_fired_total.labels(rule_type=rule.type, severity=finding.severity).inc()
            logger.info("Fired: %s (%s)", finding.title, finding.severity)

        await self.store.mark_rule_triggered(rule.id, now)
        rule.last_triggered = now
        return len(findings)

    # ── Checks ───────────────────────────────────────────────────────────────

    async def _check_budget_exceeded(self, rule, agents, now) -> list[Finding]:
        findings = []
        pct = rule_setting(rule, "percentage_threshold")
        for budget in await self.store.list_active_budgets():
            if rule.agent_id is not None and budget.agent_id != rule.agent_id:
                continue
            if pct is not None:
                threshold = budget.limit_dollars * float(pct) / 100
            else:
                threshold = float(rule_setting(rule, "threshold", budget.limit_dollars))
            if budget.current_spend < threshold:
                continue
            findings.append(Finding(
                agent_id=budget.agent_id,
                severity=rule.severity or ("critical" if budget.hard_stop else "warning"),
                title=f'Budget "{budget.name}" exceeded',
                message=(
                    f"Spend ${budget.current_spend:.2f} >= limit ${threshold:.2f} ({budget.period})"
                ),
                data={
                    "budget_name": budget.name,
                    "spend": budget.current_spend,
                    "limit": threshold,
                    "period": budget.period,
                    "hard_stop": budget.hard_stop,
                },
            ))
        return findings

    async def _check_agent_offline(self, rule, agents, now) -> list[Finding]:
        findings = []
        window_minutes = rule_setting(rule, "window_minutes", 5)
        window = timedelta(minutes=window_minutes)
        for agent in agents:
            if agent.last_heartbeat is not None and now - agent.last_heartbeat <= window:
                if agent.status == "offline":
                    await self.store.set_agent_status(agent.id, "online")
                    agent.status = "online"
                continue

            minutes_offline = (
                round((now - agent.last_heartbeat).total_seconds() / 60)
                if agent.last_heartbeat is not None else None
            )
            findings.append(Finding(
                agent_id=agent.id,
                severity=rule.severity or "critical",
                title=f'Agent "{agent.name}" is offline',
                message=f"No heartbeat for {minutes_offline} minutes",
                data={
                    "agent_name": agent.name,
                    "minutes_offline": minutes_offline,
                    "window_minutes": window_minutes,
                },
            ))
            if agent.status != "offline":
                await self.store.set_agent_status(agent.id, "offline")
                agent.status = "offline"
        return findings

    async def _check_error_spike(self, rule, agents, now) -> list[Finding]:
        findings = []
        window_minutes = rule_setting(rule, "window_minutes", 10)
        threshold = rule_setting(rule, "threshold", 5)
        since = now - timedelta(minutes=window_minutes)
        for agent in agents:
            errors = await self.store.count_activities(agent.id, "error", since)
            if errors >= threshold:
                findings.append(Finding(
                    agent_id=agent.id,
                    severity=rule.severity or "warning",
                    title=f'Error spike on "{agent.name}"',
                    message=f"{errors} errors in last {window_minutes} minutes",
                    data={
                        "agent_name": agent.name,
                        "error_count": errors,
                        "threshold": threshold,
                        "window_minutes": window_minutes,
                    },
                ))
        return findings

    async def _check_cost_spike(self, rule, agents, now) -> list[Finding]:
        findings = []
        window_minutes = rule_setting(rule, "window_minutes", 15)
        pct_threshold = rule_setting(rule, "percentage_threshold", 50)
        window = timedelta(minutes=window_minutes)
        window_start = now - window
        window_hours = window.total_seconds() / 3600
        baseline_hours = max((COST_SPIKE_LOOKBACK - window).total_seconds() / 3600, 1)

        for agent in agents:
            records = await self.store.cost_records_since(agent.id, now - COST_SPIKE_LOOKBACK)
            if not records:
                continue
            recent = sum(r.cost for r in records if r.timestamp >= window_start)
            baseline = sum(r.cost for r in records if r.timestamp < window_start)
            baseline_hourly = baseline / baseline_hours
            if baseline_hourly <= 0:
                continue
            current_hourly = recent / window_hours
            increase_pct = (current_hourly - baseline_hourly) / baseline_hourly * 100
            if increase_pct < pct_threshold:
                continue
            findings.append(Finding(
                agent_id=agent.id,
                severity=rule.severity or "warning",
                title=f'Cost spike on "{agent.name}"',
                message=f"{increase_pct:.0f}% above baseline ({window_minutes}m window)",
                data={
                    "agent_name": agent.name,
                    "increase_pct": round(increase_pct),
                    "baseline_hourly": round(baseline_hourly, 4),
                    "current_hourly": round(current_hourly, 4),
                    "window_minutes": window_minutes,
                },
            ))
        return findings

    async def _check_high_token_usage(self, rule, agents, now) -> list[Finding]:
        findings = []
        threshold = rule_setting(rule, "threshold", 100_000)
        window_minutes = rule_setting(rule, "window_minutes", 15)
        since = now - timedelta(minutes=window_minutes)
        for agent in agents:
            records = await self.store.cost_records_since(agent.id, since)
            tokens = sum(r.input_tokens + r.output_tokens for r in records)
            if tokens >= threshold:
                findings.append(Finding(
                    agent_id=agent.id,
                    severity=rule.severity or "warning",
                    title=f'High token usage on "{agent.name}"',
                    message=f"{tokens:,} tokens in last {window_minutes} minutes",
                    data={
                        "agent_name": agent.name,
                        "tokens": tokens,
                        "threshold": threshold,
                        "window_minutes": window_minutes,
                    },
                ))
        return findings

    async def _check_session_loop(self, rule, agents, now) -> list[Finding]:
        findings = []
        for agent in agents:
            for session in await self.store.active_sessions(agent.id, limit=50):
                if session.message_count <= SESSION_LOOP_MESSAGES or session.total_tokens <= SESSION_LOOP_TOKENS:
                    continue
                findings.append(Finding(
                    agent_id=agent.id,
                    severity=rule.severity or "critical",
                    title=f'Possible loop on "{agent.name}"',
                    message=(
                        f"Session {session.display_name or session.session_key} has "
                        f"{session.message_count} messages and {session.total_tokens} tokens"
                    ),
                    data={
                        "agent_name": agent.name,
                        "session_key": session.session_key,
                        "message_count": session.message_count,
                        "total_tokens": session.total_tokens,
                    },
                ))
        return findings

    async def _check_channel_disconnect(self, rule, agents, now) -> list[Finding]:
        findings = []
        channel = rule_setting(rule, "metric", "discord")
        for agent in agents:
            sessions = await self.store.latest_sessions_by_channel(agent.id, channel)
            if not sessions or any(s.is_active for s in sessions):
                continue
            findings.append(Finding(
                agent_id=agent.id,
                severity=rule.severity or "warning",
                title=f'Channel disconnect on "{agent.name}"',
                message=f"No active {channel} sessions",
                data={"agent_name": agent.name, "channel": channel},
            ))
        return findings

    async def _check_custom_threshold(self, rule, agents, now) -> list[Finding]:
        metric = rule_setting(rule, "metric")
        if metric != "cost_per_hour":
            logger.debug("Rule %r: unsupported metric %r", rule.name, metric)
            return []

        findings = []
        threshold = float(rule_setting(rule, "threshold", 5))
        comparison = rule_setting(rule, "comparison", "gt")
        for agent in agents:
            records = await self.store.cost_records_since(agent.id, now - timedelta(hours=1))
            hour_cost = sum(r.cost for r in records)
            if not compare(hour_cost, threshold, comparison):
                continue
            findings.append(Finding(
                agent_id=agent.id,
                severity=rule.severity or "warning",
                title=f'High hourly cost on "{agent.name}"',
                message=f"${hour_cost:.2f}/hr vs ${threshold:.2f} threshold ({comparison})",
                data={
                    "agent_name": agent.name,
                    "hour_cost": round(hour_cost, 4),
                    "threshold": threshold,
                    "comparison": comparison,
                },
            ))
        return findings
