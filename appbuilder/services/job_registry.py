# FILE: appbuilder/services/job_registry.py
"""
In-memory registry of everything a running job owns:
child process, dependency-install task, promotion timers, cancel flag.

All access goes through one lock so a job id can never hold two processes.
"""
import asyncio
import threading
import time
from dataclasses import dataclass, field
from typing import Dict, List, Optional


class JobAlreadyRunningError(Exception):
    pass


@dataclass
class JobEntry:
    job_id: str
    running: bool = False
    process: Optional[asyncio.subprocess.Process] = None
    install_task: Optional["asyncio.Task[bool]"] = None
    timers: List[asyncio.TimerHandle] = field(default_factory=list)
    cancelled: bool = False
    started_at: float = field(default_factory=time.time)


class JobRegistry:
    def __init__(self) -> None:
        self._entries: Dict[str, JobEntry] = {}
        self._lock = threading.Lock()

    def _entry(self, job_id: str) -> JobEntry:
        entry = self._entries.get(job_id)
        if entry is None:
            entry = JobEntry(job_id=job_id)
            self._entries[job_id] = entry
        return entry

    def get(self, job_id: str) -> Optional[JobEntry]:
        with self._lock:
            return self._entries.get(job_id)

    # -------- Process slot

    def claim_process(self, job_id: str) -> JobEntry:
        """Reserve the single process slot for job_id (before spawning)."""
        with self._lock:
            entry = self._entry(job_id)
            if entry.running:
                raise JobAlreadyRunningError(f"A generation process is already running for {job_id}")
            entry.running = True
            entry.cancelled = False
            entry.started_at = time.time()
            return entry

    def attach_process(self, job_id: str, process: asyncio.subprocess.Process) -> None:
        with self._lock:
            self._entry(job_id).process = process

    def get_process(self, job_id: str) -> Optional[asyncio.subprocess.Process]:
        with self._lock:
            entry = self._entries.get(job_id)
            return entry.process if entry else None

    def release_process(self, job_id: str) -> None:
        with self._lock:
            entry = self._entries.get(job_id)
            if entry:
                entry.running = False
                entry.process = None

    def is_running(self, job_id: str) -> bool:
        with self._lock:
            entry = self._entries.get(job_id)
            return bool(entry and entry.running)

    def running_count(self) -> int:
        with self._lock:
            return sum(1 for e in self._entries.values() if e.running)

    # -------- Install handle

    def set_install(self, job_id: str, task: "asyncio.Task[bool]") -> None:
        with self._lock:
            self._entry(job_id).install_task = task

    def pop_install(self, job_id: str) -> Optional["asyncio.Task[bool]"]:
        with self._lock:
            entry = self._entries.get(job_id)
            if not entry:
                return None
            task, entry.install_task = entry.install_task, None
            return task

    # -------- Timers

    def add_timer(self, job_id: str, handle: asyncio.TimerHandle) -> None:
        with self._lock:
            self._entry(job_id).timers.append(handle)

    def cancel_timers(self, job_id: str) -> int:
        with self._lock:
            entry = self._entries.get(job_id)
            if not entry:
                return 0
            timers, entry.timers = entry.timers, []
        for handle in timers:
            handle.cancel()
        return len(timers)

    # -------- Cancellation

    def mark_cancelled(self, job_id: str) -> None:
        with self._lock:
            self._entry(job_id).cancelled = True

    def is_cancelled(self, job_id: str) -> bool:
        with self._lock:
            entry = self._entries.get(job_id)
            return bool(entry and entry.cancelled)

    def discard(self, job_id: str) -> None:
        self.cancel_timers(job_id)
        with self._lock:
            entry = self._entries.get(job_id)
            if entry and not entry.running:
                self._entries.pop(job_id, None)
