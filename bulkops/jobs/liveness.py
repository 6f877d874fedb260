"""Liveness registry: which jobs have a dispatch loop running in this process.

The registry is in-memory only and starts empty on every boot. A job whose
persisted status is ``processing`` but which has no entry here was left behind
by a previous process (orphaned) and needs a resume.
"""

import asyncio
import threading
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Optional
from uuid import UUID


class StopReason(str, Enum):
    """Why a dispatch loop stopped claiming work."""

    PAUSED = "paused"
    CANCELLED = "cancelled"
    ABORTED = "aborted"  # systemic enrichment failure
    DETACHED = "detached"  # process shutdown
    DELETED = "deleted"


class LoopToken:
    """Cooperative stop signal shared between the orchestrator and one loop.

    Flags are only read by the loop before it claims the next item; in-flight
    items always run to completion.
    """

    def __init__(self):
        self._reason: Optional[StopReason] = None
        self._detail: Optional[str] = None
        self._signalled = asyncio.Event()

    @property
    def reason(self) -> Optional[StopReason]:
        return self._reason

    @property
    def detail(self) -> Optional[str]:
        return self._detail

    @property
    def is_set(self) -> bool:
        return self._reason is not None

    def _signal(self, reason: StopReason, detail: Optional[str] = None) -> None:
        # Cancel and abort outrank pause/detach: the job must end up failed
        if self._reason in (StopReason.CANCELLED, StopReason.ABORTED):
            return
        self._reason = reason
        self._detail = detail
        self._signalled.set()

    def pause(self) -> None:
        self._signal(StopReason.PAUSED)

    def cancel(self, detail: Optional[str] = None) -> None:
        self._signal(StopReason.CANCELLED, detail)

    def abort(self, detail: str) -> None:
        self._signal(StopReason.ABORTED, detail)

    def detach(self) -> None:
        self._signal(StopReason.DETACHED)

    async def sleep(self, seconds: float) -> bool:
        """Sleep up to ``seconds``; return True if woken early by a signal."""
        if seconds <= 0:
            return self.is_set
        try:
            await asyncio.wait_for(self._signalled.wait(), timeout=seconds)
        except asyncio.TimeoutError:
            return False
        return True


@dataclass
class LoopHandle:
    """Registry entry for one running dispatch loop."""

    job_id: UUID
    token: LoopToken = field(default_factory=LoopToken)
    task: Optional[asyncio.Task] = None
    attached_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    @property
    def done(self) -> bool:
        return self.task is not None and self.task.done()


class LivenessRegistry:
    """Process-local map of job id -> running loop handle.

    Guarded by a single lock; critical sections never span an await.
    """

    def __init__(self):
        self._lock = threading.Lock()
        self._entries: dict[UUID, LoopHandle] = {}

    def register(self, job_id: UUID, handle: LoopHandle) -> bool:
        """Register a loop. Returns False if one is already registered."""
        with self._lock:
            if job_id in self._entries:
                return False
            self._entries[job_id] = handle
            return True

    def unregister(
        self, job_id: UUID, handle: Optional[LoopHandle] = None
    ) -> Optional[LoopHandle]:
        """Remove the entry for a job.

        With ``handle`` given, only that exact handle is removed, so a loop
        that exits late never evicts its successor.
        """
        with self._lock:
            current = self._entries.get(job_id)
            if current is None:
                return None
            if handle is not None and current is not handle:
                return None
            return self._entries.pop(job_id)

    def is_live(self, job_id: UUID) -> bool:
        with self._lock:
            return job_id in self._entries

    def get(self, job_id: UUID) -> Optional[LoopHandle]:
        with self._lock:
            return self._entries.get(job_id)

    def live_job_ids(self) -> list[UUID]:
        with self._lock:
            return list(self._entries)

    def handles(self) -> list[LoopHandle]:
        with self._lock:
            return list(self._entries.values())

    def clear(self) -> None:
        """Forget every entry (what a process restart does implicitly)."""
        with self._lock:
            self._entries.clear()

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)
