from __future__ import annotations
import logging
import threading
import uuid
from dataclasses import dataclass, field, replace
from datetime import datetime, timedelta, tzinfo
from typing import Callable, Iterable

from apscheduler.executors.pool import ThreadPoolExecutor
from apscheduler.jobstores.base import JobLookupError
from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.triggers.base import BaseTrigger
from apscheduler.triggers.combining import OrTrigger
from apscheduler.triggers.cron import CronTrigger
from apscheduler.triggers.interval import IntervalTrigger

from auditbot.errors import AuditBotError, NotFound, ScheduleParseError
from auditbot.executor import JobExecutor, RunOutcome
from auditbot.operations import AuditOperation, OperationRegistry
from auditbot.schemas import TaskSpec
from auditbot.utils import resolve_timezone

logger = logging.getLogger(__name__)

DESCRIPTORS = {
    "@yearly": "0 0 1 1 *",
    "@annually": "0 0 1 1 *",
    "@monthly": "0 0 1 * *",
    "@weekly": "0 0 * * 0",
    "@daily": "0 0 * * *",
    "@midnight": "0 0 * * *",
    "@hourly": "0 * * * *",
}

_CRON_WEEKDAYS = ["sun", "mon", "tue", "wed", "thu", "fri", "sat"]


def _standard_day_of_week(expr: str) -> str:
    """Translate cron day-of-week numbers (0/7 = Sunday) into names.

    APScheduler numbers weekdays from Monday = 0, so numeric values are never
    passed through as-is. Names (mon-fri) are left alone.
    """
    out: list[str] = []
    for part in expr.split(","):
        base, _, step = part.partition("/")
        if base == "*" and not step:
            out.append(part)
            continue
        if base != "*" and not any(ch.isdigit() for ch in base):
            out.append(part)
            continue
        if base == "*":
            start, end = 0, 6
        else:
            lo, _, hi = base.partition("-")
            start = int(lo)
            end = int(hi) if hi else (6 if step else start)
        stride = int(step) if step else 1
        if not (0 <= start <= 7 and 0 <= end <= 7) or start > end or stride < 1:
            raise ValueError(f"bad day-of-week field {part!r}")
        out.extend(_CRON_WEEKDAYS[n % 7] for n in range(start, end + 1, stride))
    return ",".join(dict.fromkeys(out))


def parse_schedule(expression: str, tz: tzinfo) -> BaseTrigger:
    """Parse 5-field cron text into a trigger.

    With both day-of-month and day-of-week restricted, cron fires when either
    matches, so the result is an OrTrigger of the two day rules.
    """
    text = (expression or "").strip()
    text = DESCRIPTORS.get(text.lower(), text)
    fields = text.split()
    if len(fields) != 5:
        raise ScheduleParseError(expression, f"expected 5 fields, got {len(fields)}")
    minute, hour, day, month, dow = fields
    try:
        dow = _standard_day_of_week(dow)
        if day != "*" and dow != "*":
            return OrTrigger(
                [
                    CronTrigger(minute=minute, hour=hour, day=day, month=month, timezone=tz),
                    CronTrigger(minute=minute, hour=hour, month=month, day_of_week=dow, timezone=tz),
                ]
            )
        return CronTrigger(minute=minute, hour=hour, day=day, month=month, day_of_week=dow, timezone=tz)
    except ValueError as e:
        raise ScheduleParseError(expression, str(e)) from e


@dataclass(frozen=True)
class Task:
    id: str
    name: str
    accounts: tuple[str, ...]
    service: str
    command: str
    schedule: str
    channel: str
    operation: AuditOperation = field(repr=False, compare=False)
    trigger: BaseTrigger = field(repr=False, compare=False)
    schedule_handle: str = field(default="", repr=False, compare=False)

    def next_occurrence(self, now: datetime) -> datetime | None:
        return self.trigger.get_next_fire_time(None, now)

    def to_spec(self) -> TaskSpec:
        return TaskSpec(
            name=self.name,
            accounts=list(self.accounts),
            service=self.service,
            command=self.command,
            schedule=self.schedule,
            channel=self.channel,
        )


class TaskScheduler:
    """Recurring audit tasks on top of an APScheduler background clock.

    ``_tasks`` is the only state shared between admin callers and firings and is
    only touched under ``_lock``. The lock is never held while a task executes.
    Each task has exactly one live job; its id is the task's ``schedule_handle``
    and a firing whose handle is no longer current does nothing.
    """

    def __init__(
        self,
        executor: JobExecutor,
        registry: OperationRegistry,
        timezone: str | tzinfo | None = None,
        max_workers: int = 8,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self.tz = timezone if isinstance(timezone, tzinfo) else resolve_timezone(timezone)
        self.sched = BackgroundScheduler(
            timezone=self.tz,
            executors={"default": ThreadPoolExecutor(max_workers)},
            job_defaults={"coalesce": True, "max_instances": 1, "misfire_grace_time": 60},
        )
        self._executor = executor
        self._registry = registry
        self._clock = clock or (lambda: datetime.now(self.tz))
        self._lock = threading.Lock()
        self._tasks: dict[str, Task] = {}
        self._started = False

    # -------------------- lifecycle --------------------

    def start(self) -> None:
        if self._started:
            return
        self.sched.start()
        self._started = True
        logger.info("task scheduler started with %d tasks", len(self._tasks))

    def shutdown(self, wait: bool = False) -> None:
        with self._lock:
            for t in self._tasks.values():
                self._unregister(t.schedule_handle)
            self._tasks.clear()
        if self.sched.running:
            self.sched.shutdown(wait=wait)
        self._started = False

    def load(self, specs: Iterable[TaskSpec]) -> list[Task]:
        created: list[Task] = []
        for spec in specs:
            try:
                created.append(self.create(spec))
            except AuditBotError as e:
                logger.error("skipping task %r from configuration: %s", spec.name, e.message)
        logger.info("loaded %d tasks from configuration", len(created))
        return created

    def add_maintenance_job(self, func: Callable[[], object], seconds: int, job_id: str) -> None:
        self.sched.add_job(func, IntervalTrigger(seconds=seconds, timezone=self.tz), id=job_id, replace_existing=True)

    # -------------------- registrations --------------------

    def _build(self, spec: TaskSpec, task_id: str) -> Task:
        trigger = parse_schedule(spec.schedule, self.tz)
        operation = self._registry.resolve(spec.service, spec.command)
        return Task(
            id=task_id,
            name=spec.name,
            accounts=tuple(spec.accounts),
            service=spec.service,
            command=spec.command,
            schedule=spec.schedule.strip(),
            channel=spec.channel,
            operation=operation,
            trigger=trigger,
        )

    def _register(self, task: Task) -> Task:
        handle = f"task-{task.id}-{uuid.uuid4().hex[:8]}"
        self.sched.add_job(self._fire, task.trigger, args=[task.id, handle], id=handle, name=task.name)
        return replace(task, schedule_handle=handle)

    def _unregister(self, handle: str) -> None:
        try:
            self.sched.remove_job(handle)
        except JobLookupError:
            logger.debug("job %s already gone", handle)

    def _fire(self, task_id: str, handle: str) -> None:
        with self._lock:
            task = self._tasks.get(task_id)
            if task is None or task.schedule_handle != handle:
                logger.debug("ignoring stale firing of %s", handle)
                return
        self._executor.run(task, trigger="schedule")

    # -------------------- CRUD --------------------

    def create(self, spec: TaskSpec) -> Task:
        task = self._build(spec, str(uuid.uuid4()))
        with self._lock:
            task = self._register(task)
            self._tasks[task.id] = task
        logger.info("added task id=%s name=%s schedule=%r", task.id, task.name, task.schedule)
        return task

    def update(self, task_id: str, spec: TaskSpec) -> Task:
        task = self._build(spec, task_id)
        with self._lock:
            old = self._tasks.get(task_id)
            if old is None:
                raise NotFound(task_id)
            self._unregister(old.schedule_handle)
            task = self._register(task)
            self._tasks[task_id] = task
        logger.info("updated task id=%s name=%s schedule=%r", task.id, task.name, task.schedule)
        return task

    def delete(self, task_id: str) -> None:
        with self._lock:
            task = self._tasks.pop(task_id, None)
            if task is None:
                raise NotFound(task_id)
            self._unregister(task.schedule_handle)
        logger.info("deleted task id=%s name=%s", task.id, task.name)

    def get(self, task_id: str) -> Task:
        with self._lock:
            task = self._tasks.get(task_id)
        if task is None:
            raise NotFound(task_id)
        return task

    def list_all(self) -> list[Task]:
        with self._lock:
            return list(self._tasks.values())

    # -------------------- queries --------------------

    def next_run_at(self, task: Task) -> datetime | None:
        return task.next_occurrence(self._clock())

    def due_within(self, window: timedelta, now: datetime | None = None) -> list[Task]:
        now = now or self._clock()
        due = []
        for task in self.list_all():
            nxt = task.next_occurrence(now)
            if nxt is not None and nxt - now <= window:
                due.append(task)
        return due

    def execute_now(self, task_id: str, notify: bool = True) -> RunOutcome:
        task = self.get(task_id)
        return self._executor.run(task, trigger="manual", notify=notify)
