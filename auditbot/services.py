from __future__ import annotations
import logging
from sqlalchemy import select, delete
from sqlalchemy.engine import Engine
from auditbot.db import Base, make_session_factory
from auditbot.executor import RunOutcome
from auditbot.models import RunRecord

logger = logging.getLogger(__name__)


class RunHistory:
    """Execution log of task runs. Task definitions themselves are not stored."""

    def __init__(self, engine: Engine) -> None:
        self._engine = engine
        self._sessions = make_session_factory(engine)

    def create_schema(self) -> None:
        Base.metadata.create_all(bind=self._engine)

    def record(self, outcome: RunOutcome) -> int:
        r = RunRecord(
            task_id=outcome.task_id,
            task_name=outcome.task_name,
            service=outcome.service,
            command=outcome.command,
            trigger=outcome.trigger,
            status=outcome.status,
            started_at=outcome.started_at,
            finished_at=outcome.finished_at,
            report=outcome.report,
            failed_accounts=",".join(outcome.failed_accounts),
            error_message=outcome.error_message,
            notified=outcome.notified,
        )
        with self._sessions() as db:
            db.add(r)
            db.commit()
            return r.id

    def list_runs(self, task_id: str | None = None, limit: int = 50) -> list[RunRecord]:
        q = select(RunRecord).order_by(RunRecord.id.desc()).limit(limit)
        if task_id:
            q = q.where(RunRecord.task_id == task_id)
        with self._sessions() as db:
            return list(db.execute(q).scalars().all())

    def clear(self, task_id: str | None = None) -> int:
        q = delete(RunRecord)
        if task_id:
            q = q.where(RunRecord.task_id == task_id)
        with self._sessions() as db:
            n = db.execute(q).rowcount or 0
            db.commit()
        logger.info("cleared %d run records", n)
        return n
