"""
Fire-and-forget task submission.

Manual triggers (scan, sync, renew, test notification) are submitted here
and return a TaskRecord immediately; callers observe completion by polling
the record or the affected domain records. Failures never propagate to the
submitter: they are captured on the record and logged.
"""

import asyncio
import uuid
from collections import OrderedDict
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Awaitable, Callable, Optional

from .audit_logger import AuditLogger
from .enums import TaskKind, TaskState
from .exceptions import CertMonitorError, RecordNotFoundError
from .models import to_iso, utcnow


@dataclass
class TaskRecord:
    """Pollable state of one submitted task."""

    id: str
    kind: TaskKind
    key: str = ""
    state: TaskState = TaskState.QUEUED
    created_at: datetime = field(default_factory=utcnow)
    started_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None
    result: Any = None
    error: Optional[str] = None

    @property
    def done(self) -> bool:
        return self.state in (TaskState.SUCCEEDED, TaskState.FAILED, TaskState.CANCELLED)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "kind": self.kind.value,
            "key": self.key,
            "state": self.state.value,
            "created_at": to_iso(self.created_at),
            "started_at": to_iso(self.started_at),
            "finished_at": to_iso(self.finished_at),
            "result": self.result,
            "error": self.error,
        }


class TaskQueue:
    """
    Runs submitted coroutines as background tasks and keeps their records.

    With ``coalesce=True`` a submission of the same (kind, key) as an
    unfinished task returns that task instead of starting another one.
    """

    def __init__(
        self,
        logger: Optional[AuditLogger] = None,
        max_history: int = 200,
    ) -> None:
        self._logger = logger
        self._max_history = max_history
        self._records: OrderedDict[str, TaskRecord] = OrderedDict()
        self._running: dict[str, asyncio.Task] = {}

    def submit(
        self,
        kind: TaskKind,
        factory: Callable[[], Awaitable[Any]],
        key: str = "",
        coalesce: bool = False,
    ) -> TaskRecord:
        """
        Schedule ``factory()`` on the running event loop.

        Returns:
            The new TaskRecord, or the unfinished one it coalesced onto
        """
        if coalesce:
            for record in self._records.values():
                if record.kind == kind and record.key == key and not record.done:
                    return record

        record = TaskRecord(id=uuid.uuid4().hex, kind=kind, key=key)
        self._records[record.id] = record
        self._trim_history()

        task = asyncio.get_running_loop().create_task(self._run(record, factory))
        self._running[record.id] = task
        task.add_done_callback(lambda _t, task_id=record.id: self._running.pop(task_id, None))

        self._log_info(f"Task submitted: {kind.value}", {"task_id": record.id, "key": key})
        return record

    async def _run(self, record: TaskRecord, factory: Callable[[], Awaitable[Any]]) -> None:
        record.state = TaskState.RUNNING
        record.started_at = utcnow()
        try:
            record.result = await factory()
            record.state = TaskState.SUCCEEDED
        except CertMonitorError as e:
            record.state = TaskState.FAILED
            record.error = e.message
            self._log_error(f"Task failed: {record.kind.value}", e, record)
        except Exception as e:
            # A background task has no caller to propagate to
            record.state = TaskState.FAILED
            record.error = f"{type(e).__name__}: {e}"
            self._log_error(f"Task crashed: {record.kind.value}", e, record)
        except asyncio.CancelledError:
            record.state = TaskState.CANCELLED
            record.error = "Task cancelled"
            raise
        finally:
            record.finished_at = utcnow()

    def get(self, task_id: str) -> TaskRecord:
        record = self._records.get(task_id)
        if record is None:
            raise RecordNotFoundError(
                code="task_not_found",
                message=f"No task with id {task_id}",
                details={"task_id": task_id},
            )
        return record

    def list(self, kind: Optional[TaskKind] = None) -> list[TaskRecord]:
        """All retained records, newest first."""
        records = [r for r in self._records.values() if kind is None or r.kind == kind]
        return list(reversed(records))

    async def drain(self) -> None:
        """Wait until every submitted task (including ones they submit) has finished."""
        while self._running:
            await asyncio.gather(*list(self._running.values()), return_exceptions=True)

    async def cancel_all(self) -> None:
        """Cancel every unfinished task; each one ends in a terminal state."""
        cancelled = list(self._running.keys())
        for task in list(self._running.values()):
            task.cancel()
        await asyncio.gather(*list(self._running.values()), return_exceptions=True)

        for task_id in cancelled:
            record = self._records.get(task_id)
            # Tasks cancelled before their first step never enter _run
            if record is not None and not record.done:
                record.state = TaskState.CANCELLED
                record.error = "Task cancelled"
                record.finished_at = utcnow()

    def _trim_history(self) -> None:
        while len(self._records) > self._max_history:
            oldest_id = next(iter(self._records))
            if not self._records[oldest_id].done:
                break
            self._records.popitem(last=False)

    def _log_info(self, message: str, data: dict) -> None:
        if self._logger:
            self._logger.info("TaskQueue", message, data)

    def _log_error(self, message: str, error: BaseException, record: TaskRecord) -> None:
        if self._logger:
            self._logger.log_error(
                "TaskQueue",
                message,
                error,
                {"task_id": record.id, "kind": record.kind.value, "key": record.key},
            )
