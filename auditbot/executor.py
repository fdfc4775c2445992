from __future__ import annotations
import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import TYPE_CHECKING

from auditbot.notify import Notifier
from auditbot.utils import now_utc

if TYPE_CHECKING:
    from auditbot.broker import CredentialBroker
    from auditbot.scheduler import Task
    from auditbot.services import RunHistory

logger = logging.getLogger(__name__)


@dataclass
class RunOutcome:
    task_id: str
    task_name: str
    service: str
    command: str
    trigger: str
    status: str  # SUCCESS | PARTIAL | FAILED
    started_at: datetime
    finished_at: datetime
    report: str
    failed_accounts: list[str] = field(default_factory=list)
    error_message: str | None = None
    notified: bool = False

    @property
    def ok(self) -> bool:
        return self.status == "SUCCESS"


class JobExecutor:
    def __init__(
        self,
        broker: "CredentialBroker",
        notifier: Notifier,
        history: "RunHistory | None" = None,
    ) -> None:
        self._broker = broker
        self.notifier = notifier
        self._history = history

    def run(self, task: "Task", trigger: str = "schedule", notify: bool = True) -> RunOutcome:
        """Run one task; never raises. Errors end up in the outcome and the report."""
        started = now_utc()
        logger.debug("executing task id=%s name=%s", task.id, task.name)
        failed: list[str] = []
        error_message = None
        try:
            report = task.operation.execute(list(task.accounts), self._broker.mint_delegated_credential)
            failed = [r.account_id for r in report.failed]
            text = report.render()
            if not failed:
                status = "SUCCESS"
            elif len(failed) < len(report.results):
                status = "PARTIAL"
            else:
                status = "FAILED"
        except Exception as e:
            logger.exception("task %s (%s) failed", task.id, task.name)
            status = "FAILED"
            failed = list(task.accounts)
            error_message = f"{type(e).__name__}: {e}"
            text = f"Task {task.name} failed: {error_message}"

        if status != "SUCCESS":
            logger.warning("task %s (%s) finished %s, failed accounts: %s", task.id, task.name, status, ",".join(failed))
        else:
            logger.info("task %s (%s) executed successfully", task.id, task.name)

        notified = False
        if notify and task.channel:
            try:
                self.notifier.post(task.channel, text)
                notified = True
            except Exception as e:
                logger.error("error posting report of task %s to %s: %s", task.id, task.channel, e)

        outcome = RunOutcome(
            task_id=task.id,
            task_name=task.name,
            service=task.service,
            command=task.command,
            trigger=trigger,
            status=status,
            started_at=started,
            finished_at=now_utc(),
            report=text,
            failed_accounts=failed,
            error_message=error_message,
            notified=notified,
        )
        if self._history is not None:
            try:
                outcome_id = self._history.record(outcome)
                logger.debug("recorded run %s for task %s", outcome_id, task.id)
            except Exception as e:
                logger.error("failed to record run of task %s: %s", task.id, e)
        return outcome
