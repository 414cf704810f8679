"""Cron schedules: bindings, catch-up policy and the leader lease.

Cron arithmetic is delegated to APScheduler's ``CronTrigger``; the scheduler
itself is a loop that, while holding the lease row, fires every binding
whose ``next_fire_at`` has passed.
"""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timezone as dt_timezone
from typing import TYPE_CHECKING, Any, Dict, List, Optional
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from apscheduler.triggers.base import BaseTrigger
from apscheduler.triggers.combining import OrTrigger
from apscheduler.triggers.cron import CronTrigger

from .clock import from_datetime, from_iso, to_iso
from .constants import SCHEDULER_LEASE_NAME
from .errors import InvalidTransition, ValidationError
from .models import DefinitionStatus, Lease, ScheduleBinding, TriggerKind, WorkflowDefinition
from .persistence.repository import Repository

if TYPE_CHECKING:
    from .engine import Engine

logger = logging.getLogger(__name__)

CATCH_UP_POLICIES = ("once", "none", "all")
FREQUENCIES = ("daily", "weekly", "monthly", "quarterly", "yearly")
_WEEKDAYS = ["Sunday", "Monday", "Tuesday", "Wednesday", "Thursday", "Friday", "Saturday"]


# ---------------------------------------------------------------------------
# Cron helpers
# ---------------------------------------------------------------------------


def _zone(name: str) -> ZoneInfo:
    try:
        return ZoneInfo(name)
    except (ZoneInfoNotFoundError, ValueError) as exc:
        raise ValidationError(f"Unknown timezone {name!r}") from exc


_DOW_NAMES = ["sun", "mon", "tue", "wed", "thu", "fri", "sat"]


def _weekday_names(field: str) -> str:
    """Expand crontab weekday numbers (0 or 7 is Sunday) into names.

    APScheduler counts weekdays from Monday, so numeric lists, ranges and
    steps are spelled out as explicit names. Parts already written with
    names are passed through untouched.
    """

    if field == "*":
        return field
    parts: List[str] = []
    for part in field.split(","):
        base, slash, step_text = part.partition("/")
        if base != "*" and not base.replace("-", "").isdigit():
            parts.append(part)
            continue
        if slash and not step_text.isdigit():
            raise ValidationError(f"Invalid weekday step in {field!r}")
        step = int(step_text) if slash else 1
        if base == "*":
            first, last = 0, 6
        else:
            start, dash, end = base.partition("-")
            first = int(start)
            last = int(end) if dash else (7 if slash else first)
        if not (0 <= first <= last <= 7) or step < 1:
            raise ValidationError(f"Invalid weekday range {part!r}")
        for day in range(first, last + 1, step):
            name = _DOW_NAMES[day % 7]
            if name not in parts:
                parts.append(name)
    return ",".join(parts)


def _restricted(field: str) -> bool:
    return not field.startswith("*")


def parse_cron(expression: str, timezone: str = "UTC") -> BaseTrigger:
    """Parse a standard 5-field cron expression evaluated in ``timezone``.

    As in crontab, when both day of month and day of week are restricted a
    day matching either one fires.
    """

    fields = expression.split()
    if len(fields) != 5:
        raise ValidationError(f"Cron expression {expression!r} must have 5 fields")
    minute, hour, day, month, day_of_week = fields
    zone = _zone(timezone)

    def build(day: str, day_of_week: str) -> CronTrigger:
        return CronTrigger(
            minute=minute, hour=hour, day=day, month=month, day_of_week=day_of_week, timezone=zone
        )

    try:
        weekdays = _weekday_names(day_of_week)
        if _restricted(day) and _restricted(day_of_week):
            return OrTrigger([build(day, "*"), build("*", weekdays)])
        return build(day, weekdays)
    except ValueError as exc:
        raise ValidationError(f"Invalid cron expression {expression!r}: {exc}") from exc


def next_fire_after(expression: str, timezone: str, after_ms: int) -> Optional[int]:
    """First fire time strictly after ``after_ms``."""

    trigger = parse_cron(expression, timezone)
    now = datetime.fromtimestamp((after_ms + 1) / 1000, tz=dt_timezone.utc)
    fire = trigger.get_next_fire_time(None, now)
    return from_datetime(fire) if fire is not None else None


def next_fire_times(
    expression: str, timezone: str = "UTC", count: int = 5, after_ms: Optional[int] = None
) -> List[int]:
    """Preview the next ``count`` fire times."""

    if after_ms is None:
        after_ms = from_datetime(datetime.now(dt_timezone.utc))
    times: List[int] = []
    current = after_ms
    for _ in range(count):
        fire = next_fire_after(expression, timezone, current)
        if fire is None:
            break
        times.append(fire)
        current = fire
    return times


def frequency_to_cron(
    frequency: str,
    run_at: str = "09:00",
    day_of_week: Optional[int] = None,
    day_of_month: Optional[int] = None,
) -> str:
    """Translate a frequency preset (``daily`` ... ``yearly``) into cron."""

    try:
        hour, minute = (int(part) for part in run_at.split(":"))
    except ValueError:
        raise ValidationError(f"runAt must be HH:MM, got {run_at!r}") from None
    if not (0 <= hour < 24 and 0 <= minute < 60):
        raise ValidationError(f"runAt must be HH:MM, got {run_at!r}")
    dom = day_of_month or 1
    if frequency == "daily":
        return f"{minute} {hour} * * *"
    if frequency == "weekly":
        return f"{minute} {hour} * * {1 if day_of_week is None else day_of_week}"
    if frequency == "monthly":
        return f"{minute} {hour} {dom} * *"
    if frequency == "quarterly":
        return f"{minute} {hour} {dom} 1,4,7,10 *"
    if frequency == "yearly":
        return f"{minute} {hour} {dom} 1 *"
    raise ValidationError(f"Unknown frequency {frequency!r}; expected one of {', '.join(FREQUENCIES)}")


_COMMON = {
    "* * * * *": "Every minute",
    "0 * * * *": "Every hour",
    "0 0 * * *": "Daily at midnight",
    "0 0 * * 0": "Weekly on Sunday at midnight",
    "0 0 1 * *": "Monthly on the 1st at midnight",
    "0 9 * * 1-5": "Weekdays at 09:00",
}


def describe(expression: str) -> str:
    """Human-readable description of a cron expression."""

    normalized = " ".join(expression.split())
    if normalized in _COMMON:
        return _COMMON[normalized]
    parts = normalized.split(" ")
    if len(parts) != 5:
        return "Invalid cron expression"
    minute, hour, dom, month, dow = parts

    if minute.startswith("*/") and hour == "*" and dom == month == dow == "*":
        return f"Every {minute[2:]} minutes"
    if minute.isdigit() and hour.startswith("*/") and dom == month == dow == "*":
        return f"Every {hour[2:]} hours at minute {minute}"

    if minute.isdigit() and hour.isdigit():
        text = f"At {int(hour):02d}:{int(minute):02d}"
    else:
        text = "At " + ("every minute" if minute == "*" else f"minute {minute}")
        if hour != "*":
            text += f", hour {hour}"
    if dom != "*":
        text += f", on day {dom} of the month"
    if month != "*":
        text += f", in month {month}"
    if dow != "*":
        if dow.isdigit() and int(dow) < 7:
            text += f", on {_WEEKDAYS[int(dow)]}"
        else:
            text += f", on weekday {dow}"
    if dom == month == dow == "*" and minute.isdigit() and hour.isdigit():
        text += " every day"
    return text


def _timestamp(value: Any) -> Optional[int]:
    if value is None or isinstance(value, int):
        return value
    return from_iso(str(value))


def binding_cron(trigger_config: Dict[str, Any]) -> str:
    """Cron expression of a scheduled trigger config (``cron`` or a frequency preset)."""

    if trigger_config.get("cron"):
        return str(trigger_config["cron"])
    if trigger_config.get("frequency"):
        return frequency_to_cron(
            trigger_config["frequency"],
            trigger_config.get("runAt", "09:00"),
            trigger_config.get("dayOfWeek"),
            trigger_config.get("dayOfMonth"),
        )
    raise ValidationError("A scheduled trigger needs 'cron' or 'frequency'")


def check_trigger_config(trigger_config: Dict[str, Any]) -> List[str]:
    problems: List[str] = []
    try:
        parse_cron(binding_cron(trigger_config), trigger_config.get("timezone", "UTC"))
    except ValidationError as exc:
        problems.append(str(exc))
    policy = trigger_config.get("catchUpPolicy")
    if policy is not None and policy not in CATCH_UP_POLICIES:
        problems.append(f"catchUpPolicy must be one of {', '.join(CATCH_UP_POLICIES)}")
    return problems


# ---------------------------------------------------------------------------
# Scheduler
# ---------------------------------------------------------------------------


class Scheduler:
    """Fires scheduled definitions; one leader at a time holds the lease."""

    def __init__(self, engine: "Engine", holder: Optional[str] = None) -> None:
        self.engine = engine
        self.clock = engine.clock
        self.config = engine.config.scheduler
        self.holder = holder or f"scheduler-{engine.ids.new_id()}"

    # ------------------------------------------------------------------
    # Bindings
    # ------------------------------------------------------------------

    async def bind(self, repo: Repository, definition: WorkflowDefinition) -> ScheduleBinding:
        """Create the binding of a scheduled definition inside the caller's transaction."""

        trigger = definition.trigger_config
        cron = binding_cron(trigger)
        tz = trigger.get("timezone", "UTC")
        parse_cron(cron, tz)
        now = self.clock.now_ms()
        start_at = _timestamp(trigger.get("startAt"))
        binding = ScheduleBinding(
            id=self.engine.ids.new_id(),
            definition_id=definition.id,
            cron_expr=cron,
            timezone=tz,
            enabled=trigger.get("enabled", True),
            start_at=start_at,
            end_at=_timestamp(trigger.get("endAt")),
            catch_up_policy=trigger.get("catchUpPolicy"),
            input_data=dict(trigger.get("input") or {}),
            created_at=now,
        )
        binding.next_fire_at = self._first_fire(binding, now)
        await repo.save_schedule(binding)
        await self.engine.audit.append(
            repo,
            "schedule.created",
            binding.id,
            "schedule",
            after={"enabled": binding.enabled, "nextFireAt": to_iso(binding.next_fire_at)},
            data={"definitionId": definition.id, "cron": cron, "timezone": tz},
        )
        logger.info(
            f"Scheduled {definition.name} with '{cron}' ({tz}), next fire {to_iso(binding.next_fire_at)}"
        )
        return binding

    async def unbind(self, repo: Repository, definition_id: str) -> int:
        removed = 0
        for binding in await repo.list_schedules():
            if binding.definition_id == definition_id:
                await repo.delete_schedule(binding.id)
                await self.engine.audit.append(
                    repo, "schedule.removed", binding.id, "schedule", data={"definitionId": definition_id}
                )
                removed += 1
        return removed

    def _first_fire(self, binding: ScheduleBinding, now: int) -> Optional[int]:
        after = now
        if binding.start_at is not None and binding.start_at > now:
            after = binding.start_at - 1
        fire = next_fire_after(binding.cron_expr, binding.timezone, after)
        if fire is not None and binding.end_at is not None and fire > binding.end_at:
            return None
        return fire

    async def get_binding(self, binding_id: str) -> ScheduleBinding:
        async with self.engine.store.transaction() as tx:
            return await Repository(tx).get_schedule(binding_id)

    async def bindings(self, definition_id: Optional[str] = None) -> List[ScheduleBinding]:
        async with self.engine.store.transaction() as tx:
            bindings = await Repository(tx).list_schedules()
        return [b for b in bindings if definition_id is None or b.definition_id == definition_id]

    async def enable(self, binding_id: str, actor_id: Optional[str] = None) -> ScheduleBinding:
        return await self._set_enabled(binding_id, True, actor_id)

    async def disable(self, binding_id: str, actor_id: Optional[str] = None) -> ScheduleBinding:
        return await self._set_enabled(binding_id, False, actor_id)

    async def _set_enabled(
        self, binding_id: str, enabled: bool, actor_id: Optional[str]
    ) -> ScheduleBinding:
        now = self.clock.now_ms()
        async with self.engine.store.transaction() as tx:
            repo = Repository(tx)
            binding = await repo.get_schedule(binding_id, for_update=True)
            before = binding.enabled
            binding.enabled = enabled
            if enabled:
                # re-enabling never replays the fires missed while disabled
                binding.next_fire_at = self._first_fire(binding, now)
                binding.deferred_until = None
                binding.defer_count = 0
            await repo.save_schedule(binding)
            await self.engine.audit.append(
                repo,
                "schedule.enabled" if enabled else "schedule.disabled",
                binding.id,
                "schedule",
                before={"enabled": before},
                after={"enabled": enabled, "nextFireAt": to_iso(binding.next_fire_at)},
                actor_id=actor_id,
            )
        logger.info(f"Schedule {binding_id} {'enabled' if enabled else 'disabled'}")
        return binding

    # ------------------------------------------------------------------
    # Leader lease
    # ------------------------------------------------------------------

    async def acquire_lease(self) -> bool:
        """Take or renew the lease; another holder's lease lapses after lease + grace."""

        now = self.clock.now_ms()
        async with self.engine.store.transaction() as tx:
            repo = Repository(tx)
            lease = await repo.get_lease(SCHEDULER_LEASE_NAME, for_update=True)
            if lease is not None and lease.holder != self.holder:
                if now < lease.expires_at + self.config.lease_grace_ms:
                    return False
                logger.warning(f"Taking over scheduler lease from {lease.holder}")
            renewed = Lease(
                name=SCHEDULER_LEASE_NAME,
                holder=self.holder,
                acquired_at=lease.acquired_at if lease and lease.holder == self.holder else now,
                expires_at=now + self.config.lease_ms,
            )
            renewed.row_version = lease.row_version if lease else 0
            await repo.save_lease(renewed)
            return True

    async def release_lease(self) -> None:
        async with self.engine.store.transaction() as tx:
            repo = Repository(tx)
            lease = await repo.get_lease(SCHEDULER_LEASE_NAME, for_update=True)
            if lease is not None and lease.holder == self.holder:
                lease.expires_at = self.clock.now_ms() - self.config.lease_grace_ms
                await repo.save_lease(lease)

    # ------------------------------------------------------------------
    # Firing
    # ------------------------------------------------------------------

    async def tick(self) -> List[str]:
        """Fire every due binding if this process is the leader; returns new instance ids."""

        if not await self.acquire_lease():
            return []
        now = self.clock.now_ms()
        started: List[str] = []
        for binding in await self.bindings():
            if not binding.enabled or binding.next_fire_at is None or binding.next_fire_at > now:
                continue
            if binding.deferred_until is not None and binding.deferred_until > now:
                continue
            started.extend(await self._fire_due(binding.id))
        if started:
            await self.engine.executor.relay()
        return started

    async def run(self, lifespan: Optional[float] = None, stop: Optional[asyncio.Event] = None) -> None:
        loop = asyncio.get_running_loop()
        deadline = loop.time() + lifespan if lifespan is not None else None
        interval = self.config.tick_interval_ms / 1000
        logger.info(f"Scheduler {self.holder} started")
        try:
            while not (stop is not None and stop.is_set()):
                if deadline is not None and loop.time() >= deadline:
                    break
                await self.tick()
                await asyncio.sleep(interval)
        finally:
            await self.release_lease()
            logger.info(f"Scheduler {self.holder} stopped")

    def _due_fires(self, binding: ScheduleBinding, now: int) -> List[int]:
        fires: List[int] = []
        fire = binding.next_fire_at
        # bounded so a long outage cannot produce an unbounded scan
        limit = max(self.config.max_catchup_fires, 1) * 100
        while fire is not None and fire <= now and len(fires) < limit:
            fires.append(fire)
            fire = next_fire_after(binding.cron_expr, binding.timezone, fire)
        return fires

    def _select_fires(self, binding: ScheduleBinding, fires: List[int], now: int) -> List[tuple]:
        """Pick ``(fire_at, catch_up)`` pairs to run; the rest are dropped."""

        tolerance = max(2 * self.config.tick_interval_ms, 1_000)
        window = self.config.catchup_window_s * 1000
        policy = binding.catch_up_policy or self.config.catchup_policy
        on_time = [f for f in fires if now - f <= tolerance]
        missed = [f for f in fires if tolerance < now - f <= window]
        selected = [(f, False) for f in on_time]
        if missed and policy == "once":
            selected.insert(0, (missed[-1], True))
        elif missed and policy == "all":
            selected = [(f, True) for f in missed[-self.config.max_catchup_fires:]] + selected
        if binding.start_at is not None:
            selected = [(f, c) for f, c in selected if f >= binding.start_at]
        if binding.end_at is not None:
            selected = [(f, c) for f, c in selected if f <= binding.end_at]
        return selected

    async def _fire_due(self, binding_id: str) -> List[str]:
        now = self.clock.now_ms()
        started: List[str] = []
        async with self.engine.store.transaction() as tx:
            repo = Repository(tx)
            binding = await repo.get_schedule(binding_id, for_update=True)
            if not binding.enabled or binding.next_fire_at is None or binding.next_fire_at > now:
                return []
            definition = await repo.find_definition(binding.definition_id)
            if definition is None or definition.status != DefinitionStatus.ACTIVE:
                binding.enabled = False
                binding.last_error = "definition is not active"
                await repo.save_schedule(binding)
                await self.engine.audit.append(
                    repo, "schedule.disabled", binding.id, "schedule", severity="warning",
                    data={"reason": binding.last_error},
                )
                return []

            priority = definition.definition.effective_settings.priority or self.engine.config.engine.default_priority
            if not await self.engine.queue.has_capacity(priority):
                delay = min(
                    self.config.defer_initial_ms * 2 ** binding.defer_count, self.config.defer_max_ms
                )
                binding.defer_count += 1
                binding.deferred_until = now + delay
                await repo.save_schedule(binding)
                await self.engine.audit.append(
                    repo, "schedule.deferred", binding.id, "schedule", severity="warning",
                    data={"deferredUntil": to_iso(binding.deferred_until), "deferCount": binding.defer_count},
                )
                logger.warning(f"Queue full, deferring schedule {binding.id} by {delay}ms")
                return []

            fires = self._due_fires(binding, now)
            selected = self._select_fires(binding, fires, now)
            dropped = len(fires) - len(selected)
            for fire_at, catch_up in selected:
                try:
                    instance = await self.engine.executor.create_instance(
                        repo,
                        definition,
                        binding.input_data,
                        trigger_kind=TriggerKind.SCHEDULED,
                        trigger_data={
                            "bindingId": binding.id,
                            "scheduledAt": to_iso(fire_at),
                            "catchUp": catch_up,
                        },
                    )
                except ValidationError as exc:
                    binding.failure_count += 1
                    binding.last_error = str(exc)
                    logger.error(f"Schedule {binding.id} could not start {definition.name}: {exc}")
                    continue
                started.append(instance.id)
                binding.fire_count += 1
                binding.last_fire_at = fire_at

            binding.dropped_count += dropped
            binding.next_fire_at = next_fire_after(binding.cron_expr, binding.timezone, max(now, fires[-1]))
            binding.deferred_until = None
            binding.defer_count = 0
            expired = binding.end_at is not None and (
                binding.next_fire_at is None or binding.next_fire_at > binding.end_at
            )
            if expired:
                binding.enabled = False
                binding.next_fire_at = None
            await repo.save_schedule(binding)
            await self.engine.audit.append(
                repo,
                "schedule.fired",
                binding.id,
                "schedule",
                after={"nextFireAt": to_iso(binding.next_fire_at), "fireCount": binding.fire_count},
                data={
                    "instances": started,
                    "catchUp": [c for _, c in selected],
                    "dropped": dropped,
                    "failures": binding.failure_count,
                },
            )
            if dropped:
                logger.warning(f"Schedule {binding.id} dropped {dropped} missed fires")
            if expired:
                await self.engine.audit.append(
                    repo, "schedule.expired", binding.id, "schedule", data={"endAt": to_iso(binding.end_at)}
                )
                logger.info(f"Schedule {binding.id} reached its end date")
        return started

    async def trigger_now(self, binding_id: str, actor_id: Optional[str] = None) -> str:
        """Start an instance right away; ``next_fire_at`` is left untouched."""

        now = self.clock.now_ms()
        async with self.engine.store.transaction() as tx:
            repo = Repository(tx)
            binding = await repo.get_schedule(binding_id, for_update=True)
            definition = await repo.get_definition(binding.definition_id)
            if definition.status != DefinitionStatus.ACTIVE:
                raise InvalidTransition(f"Definition {definition.id} is {definition.status.value}")
            instance = await self.engine.executor.create_instance(
                repo,
                definition,
                binding.input_data,
                trigger_kind=TriggerKind.SCHEDULED,
                trigger_data={"bindingId": binding.id, "scheduledAt": to_iso(now), "manual": True},
                initiated_by=actor_id,
            )
            binding.fire_count += 1
            binding.last_fire_at = now
            await repo.save_schedule(binding)
            await self.engine.audit.append(
                repo, "schedule.triggered", binding.id, "schedule", actor_id=actor_id,
                data={"instanceId": instance.id},
            )
        await self.engine.executor.relay()
        return instance.id

    def preview(self, binding: ScheduleBinding, count: int = 5) -> Dict[str, Any]:
        after = binding.next_fire_at - 1 if binding.next_fire_at else self.clock.now_ms()
        return {
            "bindingId": binding.id,
            "cron": binding.cron_expr,
            "timezone": binding.timezone,
            "description": describe(binding.cron_expr),
            "nextExecutions": [to_iso(t) for t in next_fire_times(binding.cron_expr, binding.timezone, count, after)],
        }
