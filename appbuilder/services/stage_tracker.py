# FILE: appbuilder/services/stage_tracker.py
"""
Latest stage per job, plus timer-driven promotion through the early stages.

The generation CLI says little while it plans and scaffolds, so the tracker
moves the job designing -> scaffolding -> coding on fixed timers. Each timer
only fires if nothing real has moved the job past it. complete/failed never
come from here; only the process exit sets them.
"""
import asyncio
import logging
import time
from dataclasses import asdict, dataclass, field
from typing import Any, Callable, Dict, List, Optional, Tuple

from appbuilder.core.config import DESIGNING_SECONDS, SCAFFOLDING_SECONDS
from appbuilder.services.job_registry import JobRegistry

logger = logging.getLogger("appbuilder.stages")

STAGE_ORDER: List[str] = [
    "pending",
    "designing",
    "scaffolding",
    "coding",
    "database",
    "finalizing",
    "deploying",
    "complete",
]

STAGE_MESSAGES: Dict[str, str] = {
    "pending": "Preparing to build your app...",
    "designing": "Planning your app architecture...",
    "scaffolding": "Creating project structure...",
    "coding": "Building components and API routes...",
    "database": "Setting up database and seed data...",
    "finalizing": "Validating build and preparing preview...",
    "deploying": "Deploying your app preview...",
    "complete": "Your app is ready!",
    "failed": "Something went wrong.",
}

TERMINAL_STAGES = ("complete", "failed")


def stage_index(stage: str) -> int:
    try:
        return STAGE_ORDER.index(stage)
    except ValueError:
        return -1


def default_message(stage: str) -> str:
    return STAGE_MESSAGES.get(stage, STAGE_MESSAGES["pending"])


@dataclass
class StageUpdate:
    job_id: str
    stage: str
    message: str
    detail: Optional[str] = None
    error: Optional[str] = None
    title: Optional[str] = None
    description: Optional[str] = None
    preview_url: Optional[str] = None
    updated_at: float = field(default_factory=time.time)

    @property
    def terminal(self) -> bool:
        return self.stage in TERMINAL_STAGES

    def to_event(self) -> Dict[str, Any]:
        data = asdict(self)
        data.pop("updated_at", None)
        return {k: v for k, v in data.items() if v is not None}


Listener = Callable[[StageUpdate], None]


class StageTracker:
    def __init__(
            self,
            registry: Optional[JobRegistry] = None,
            designing_seconds: float = DESIGNING_SECONDS,
            scaffolding_seconds: float = SCAFFOLDING_SECONDS,
    ) -> None:
        self.registry = registry or JobRegistry()
        self.designing_seconds = designing_seconds
        self.scaffolding_seconds = scaffolding_seconds
        self._stages: Dict[str, StageUpdate] = {}
        self._listeners: List[Listener] = []

    # -------- Listeners

    def add_listener(self, listener: Listener) -> None:
        self._listeners.append(listener)

    def remove_listener(self, listener: Listener) -> None:
        if listener in self._listeners:
            self._listeners.remove(listener)

    def _emit(self, update: StageUpdate) -> None:
        for listener in list(self._listeners):
            try:
                listener(update)
            except Exception as e:
                logger.error(f"[Stage {update.job_id}] listener failed: {e}")

    # -------- Reads / writes

    def get_stage(self, job_id: str) -> StageUpdate:
        current = self._stages.get(job_id)
        if current is None:
            return StageUpdate(job_id=job_id, stage="pending", message=default_message("pending"))
        return current

    def set_stage(
            self,
            job_id: str,
            stage: str,
            message: Optional[str] = None,
            detail: Optional[str] = None,
            error: Optional[str] = None,
            title: Optional[str] = None,
            description: Optional[str] = None,
            preview_url: Optional[str] = None,
    ) -> StageUpdate:
        previous = self._stages.get(job_id)

        # detail survives only a same-stage update
        if detail is None and previous is not None and previous.stage == stage:
            detail = previous.detail

        update = StageUpdate(
            job_id=job_id,
            stage=stage,
            message=message or default_message(stage),
            detail=detail,
            error=error if stage == "failed" else None,
            title=title,
            description=description,
            preview_url=preview_url,
        )
        self._stages[job_id] = update

        if update.terminal:
            self.registry.cancel_timers(job_id)

        logger.info(f"[Stage {job_id}] {stage}" + (f" ({detail})" if detail else ""))
        self._emit(update)
        return update

    def set_detail(self, job_id: str, detail: str) -> Optional[StageUpdate]:
        current = self.get_stage(job_id)
        if current.terminal or current.detail == detail:
            return None
        return self.set_stage(job_id, current.stage, message=current.message, detail=detail)

    # -------- Timed promotion

    def start_timed_promotion(self, job_id: str) -> None:
        """designing now, scaffolding at +8s, coding at +18s (both from now)."""
        loop = asyncio.get_running_loop()
        self.registry.cancel_timers(job_id)
        self.set_stage(job_id, "designing")

        self.registry.add_timer(job_id, loop.call_later(
            self.designing_seconds,
            self._promote, job_id, ("pending", "designing"), "scaffolding",
        ))
        self.registry.add_timer(job_id, loop.call_later(
            self.scaffolding_seconds,
            self._promote, job_id, ("scaffolding",), "coding",
        ))

    def _promote(self, job_id: str, expected: Tuple[str, ...], target: str) -> None:
        current = self.get_stage(job_id).stage
        if current not in expected:
            logger.debug(f"[Stage {job_id}] skip timed {target}: already at {current}")
            return
        self.set_stage(job_id, target)

    def cancel_timers(self, job_id: str) -> None:
        self.registry.cancel_timers(job_id)

    # -------- Cleanup

    def cleanup(self, job_id: str) -> None:
        self.registry.cancel_timers(job_id)
        self._stages.pop(job_id, None)

    def cleanup_finished(self, max_age_seconds: float) -> int:
        cutoff = time.time() - max_age_seconds
        stale = [
            job_id for job_id, update in self._stages.items()
            if update.terminal and update.updated_at < cutoff
        ]
        for job_id in stale:
            self.cleanup(job_id)
            self.registry.discard(job_id)
        return len(stale)
