# FILE: appbuilder/services/job_store.py
"""
Durable job records (generated_apps + app_iterations).

This is the single source of truth for where a job stands. Everything kept
in memory by the tracker/registry is disposable relative to these rows.
"""
import asyncio
import logging
import uuid
from datetime import datetime
from typing import Any, Dict, Optional

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from appbuilder.core.config import MAX_ERROR_CHARS
from appbuilder.core.database import SessionLocal
from appbuilder.models.app_iteration import AppIteration
from appbuilder.models.generated_app import GeneratedApp, JobStatus

logger = logging.getLogger("appbuilder.jobs")


class JobNotFoundError(Exception):
    pass


class JobStateError(Exception):
    pass


def truncate_error(error: Optional[str]) -> Optional[str]:
    if error is None:
        return None
    return error[:MAX_ERROR_CHARS]


def to_status(app: GeneratedApp) -> Dict[str, Any]:
    return {
        "id": app.id,
        "status": app.status,
        "current_stage": app.current_stage,
        "current_detail": app.current_detail,
        "iteration_count": app.iteration_count or 0,
        "title": app.title,
        "description": app.description,
        "error": app.error,
        "published": bool(app.published),
        "preview_url": app.preview_url,
    }


class JobStore:
    def __init__(
            self,
            session_factory: Optional[async_sessionmaker[AsyncSession]] = None,
            max_retries: int = 5,
            retry_delay: float = 1.0,
    ) -> None:
        self._sessions = session_factory or SessionLocal
        self.max_retries = max_retries
        self.retry_delay = retry_delay

    # -------- Reads

    async def get(self, job_id: str) -> Optional[GeneratedApp]:
        async with self._sessions() as db:
            return await db.get(GeneratedApp, job_id)

    async def get_status(self, job_id: str) -> Dict[str, Any]:
        app = await self.get(job_id)
        if not app:
            raise JobNotFoundError(job_id)
        return to_status(app)

    async def count_active(self) -> int:
        async with self._sessions() as db:
            n = (
                await db.execute(
                    select(func.count(GeneratedApp.id))
                    .where(GeneratedApp.status.in_(JobStatus.ACTIVE))
                )
            ).scalar_one()
            return int(n or 0)

    # -------- Writes

    async def create(
            self,
            prompt: str,
            context: Optional[Dict[str, Any]] = None,
            created_by_id: str = "",
    ) -> str:
        job_id = str(uuid.uuid4())
        async with self._sessions() as db:
            db.add(GeneratedApp(
                id=job_id,
                created_by_id=created_by_id,
                prompt=prompt,
                business_context=context or None,
                status=JobStatus.PENDING,
                iteration_count=0,
                published=False,
                created_at=datetime.utcnow(),
            ))
            await db.commit()
        return job_id

    async def mark_generating(self, job_id: str, source_dir: str) -> None:
        def apply(app: GeneratedApp) -> None:
            app.status = JobStatus.GENERATING
            # the workspace is assigned once and never moves
            if not app.source_dir:
                app.source_dir = source_dir

        # the record may have been written by another process a moment ago
        await self._update(job_id, apply, retry=True)

    async def mark_complete(
            self,
            job_id: str,
            title: str,
            description: str,
            preview_url: Optional[str] = None,
    ) -> None:
        def apply(app: GeneratedApp) -> None:
            if app.status == JobStatus.CANCELLED:
                return
            app.status = JobStatus.COMPLETE
            app.current_stage = "complete"
            app.current_detail = None
            app.title = title
            app.description = description
            app.error = None
            if preview_url:
                app.preview_url = preview_url

        await self._update(job_id, apply)

    async def mark_failed(self, job_id: str, error: str) -> None:
        def apply(app: GeneratedApp) -> None:
            if app.status == JobStatus.CANCELLED:
                return
            app.status = JobStatus.FAILED
            app.current_stage = "failed"
            app.current_detail = None
            app.error = truncate_error(error)

        await self._update(job_id, apply)

    async def mark_cancelled(self, job_id: str, reason: str = "Cancelled by user") -> None:
        def apply(app: GeneratedApp) -> None:
            app.status = JobStatus.CANCELLED
            app.current_stage = "failed"
            app.current_detail = None
            app.error = truncate_error(reason)

        await self._update(job_id, apply)

    async def update_stage(self, job_id: str, stage: str, detail: Optional[str] = None) -> None:
        def apply(app: GeneratedApp) -> None:
            # terminal rows carry their own stage
            if app.status in JobStatus.TERMINAL:
                return
            app.current_stage = stage
            app.current_detail = (detail or None) and detail[:255]

        await self._update(job_id, apply)

    async def set_preview_url(self, job_id: str, url: Optional[str]) -> None:
        def apply(app: GeneratedApp) -> None:
            app.preview_url = url

        await self._update(job_id, apply)

    async def begin_iteration(self, job_id: str, prompt: str) -> str:
        """Open a refinement pass: job back to GENERATING, counter bumped."""
        async with self._sessions() as db:
            app = await db.get(GeneratedApp, job_id)
            if not app:
                raise JobNotFoundError(job_id)
            if app.status not in (JobStatus.COMPLETE, JobStatus.FAILED):
                raise JobStateError("App must be fully generated before iterating")
            if not app.source_dir:
                raise JobStateError(f"No sourceDir found for generation {job_id}")

            seq = (app.iteration_count or 0) + 1
            iteration = AppIteration(
                id=str(uuid.uuid4()),
                generated_app_id=job_id,
                prompt=prompt,
                sequence_number=seq,
                status="GENERATING",
                created_at=datetime.utcnow(),
            )
            db.add(iteration)

            app.status = JobStatus.GENERATING
            app.iteration_count = seq
            app.current_stage = "pending"
            app.current_detail = None
            app.error = None
            await db.commit()
            return iteration.id

    async def finish_iteration(self, iteration_id: str, success: bool, error: Optional[str] = None) -> None:
        async with self._sessions() as db:
            iteration = await db.get(AppIteration, iteration_id)
            if not iteration:
                logger.warning(f"[Jobs] iteration {iteration_id} vanished before it finished")
                return
            iteration.status = "COMPLETE" if success else "FAILED"
            iteration.error = None if success else truncate_error(error)
            await db.commit()

    # -------- Internals

    async def _update(self, job_id: str, apply, retry: bool = False) -> None:
        attempts = self.max_retries if retry else 1
        for attempt in range(1, attempts + 1):
            async with self._sessions() as db:
                app = await db.get(GeneratedApp, job_id)
                if app is not None:
                    apply(app)
                    await db.commit()
                    return
            if attempt == attempts:
                raise JobNotFoundError(job_id)
            logger.info(
                f"[Jobs {job_id}] Record not found yet, retrying in {self.retry_delay}s "
                f"(attempt {attempt}/{attempts})"
            )
            await asyncio.sleep(self.retry_delay)
