import asyncio
import logging
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Coroutine, Optional

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class StepEvent:
    step_name: str
    status: str  # "started", "completed", "failed", "skipped"
    timestamp: str
    duration_ms: Optional[float] = None
    error: Optional[str] = None

    def to_payload(self) -> dict:
        return {
            "type": "step",
            "step_name": self.step_name,
            "status": self.status,
            "timestamp": self.timestamp,
            "duration_ms": self.duration_ms,
            "error": self.error,
        }


@dataclass
class PipelineStatus:
    """Progress of one background valuation run, read by a single SSE consumer."""

    report_id: str
    events: list[StepEvent] = field(default_factory=list)
    report: Any = None
    finished_at: Optional[float] = None
    _changed: asyncio.Event = field(default_factory=asyncio.Event, repr=False)
    _cursor: int = 0

    @property
    def complete(self) -> bool:
        return self.finished_at is not None

    def emit(self, step_name: str, status: str, duration_ms: Optional[float] = None, error: Optional[str] = None):
        self.events.append(StepEvent(
            step_name=step_name,
            status=status,
            timestamp=datetime.now(timezone.utc).isoformat(),
            duration_ms=duration_ms,
            error=error,
        ))
        self._changed.set()

    def mark_complete(self, report: Any = None):
        """Mark the run finished; the report rides on the final stream event."""
        self.report = report
        self.finished_at = time.monotonic()
        self._changed.set()

    def fail(self, error: str):
        self.emit("pipeline", "failed", error=error)
        self.mark_complete(None)

    def _drain(self) -> list[StepEvent]:
        unread = self.events[self._cursor:]
        self._cursor = len(self.events)
        return unread

    async def wait_for_event(self, timeout: float = 30.0) -> list[StepEvent]:
        """Return events not read yet, waiting up to `timeout` seconds when there are none."""
        if self._cursor < len(self.events) or self.complete:
            return self._drain()

        self._changed.clear()
        try:
            await asyncio.wait_for(self._changed.wait(), timeout=timeout)
        except asyncio.TimeoutError:
            pass
        return self._drain()


class StatusRegistry:
    """Statuses of background runs keyed by report id.

    A finished run is dropped when its stream delivers the final event, or
    `ttl_seconds` after it finishes if nobody streams it.
    """

    def __init__(self, ttl_seconds: float = 300.0):
        self.ttl_seconds = ttl_seconds
        self._statuses: dict[str, PipelineStatus] = {}
        self._tasks: set[asyncio.Task] = set()

    def __len__(self) -> int:
        return len(self._statuses)

    @property
    def pending_tasks(self) -> int:
        return len(self._tasks)

    def create(self, report_id: str) -> PipelineStatus:
        status = PipelineStatus(report_id=report_id)
        self._statuses[report_id] = status
        return status

    def get(self, report_id: str) -> Optional[PipelineStatus]:
        return self._statuses.get(report_id)

    def discard(self, report_id: str):
        self._statuses.pop(report_id, None)

    def launch(self, status: PipelineStatus, run: Coroutine) -> asyncio.Task:
        """Run `run` in the background and hold the task until it finishes."""
        task = asyncio.create_task(run)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        task.add_done_callback(lambda t: self._finished(status, t))
        return task

    def _finished(self, status: PipelineStatus, task: asyncio.Task):
        if task.cancelled():
            status.fail("Pipeline run was cancelled")
        elif task.exception() is not None:
            logger.error(f"Pipeline run {status.report_id} crashed: {task.exception()}")
            status.fail(str(task.exception()))
        elif not status.complete:
            status.mark_complete(None)
        asyncio.get_running_loop().call_later(self.ttl_seconds, self._expire, status.report_id)

    def _expire(self, report_id: str):
        if self._statuses.pop(report_id, None) is not None:
            logger.info(f"Expired unstreamed pipeline status {report_id}")
