# FILE: appbuilder/client/session.py
"""
Client Generation Session

Observer-side state machine for one job at a time:
- start_generation(job_id): pending state, breadcrumb, open the live channel
- pushed updates merge into state; updates for another job are dropped
- resume(): at most once per session, reattach via the breadcrumb
- reset(): close everything and go idle

Any explicit switch of job bumps an epoch; a resume whose status fetch
resolves under an older epoch is discarded.
"""
import asyncio
import dataclasses
import logging
import time
from dataclasses import dataclass
from typing import Any, Callable, Dict, Optional

import httpx

from appbuilder.client.api import BuilderAPIError, BuilderClient
from appbuilder.client.breadcrumb import BreadcrumbStore
from appbuilder.client.preview import PreviewDeployController
from appbuilder.core.config import BREADCRUMB_MAX_AGE_SECONDS
from appbuilder.services.stage_tracker import STAGE_MESSAGES, TERMINAL_STAGES, default_message

logger = logging.getLogger("appbuilder.client.session")

ITERATION_MESSAGE = "Refining your app..."
ACTIVE_STATUSES = ("PENDING", "GENERATING")
TERMINAL_STATUSES = ("COMPLETE", "FAILED", "CANCELLED")


@dataclass
class SessionState:
    job_id: Optional[str] = None
    stage: str = "idle"
    message: str = ""
    detail: Optional[str] = None
    title: Optional[str] = None
    description: Optional[str] = None
    error: Optional[str] = None
    iteration_count: int = 0
    published: bool = False
    preview_url: Optional[str] = None
    preview_loading: bool = False


class GenerationSession:
    def __init__(
            self,
            api: BuilderClient,
            breadcrumbs: Optional[BreadcrumbStore] = None,
            preview: Optional[PreviewDeployController] = None,
            max_age_seconds: float = BREADCRUMB_MAX_AGE_SECONDS,
            on_change: Optional[Callable[[SessionState], None]] = None,
            clock: Callable[[], float] = time.time,
    ) -> None:
        self.api = api
        self.breadcrumbs = breadcrumbs or BreadcrumbStore()
        self.preview = preview or PreviewDeployController(api)
        self.max_age_seconds = max_age_seconds
        self.on_change = on_change
        self._clock = clock

        self.state = SessionState()
        self._channel: Optional["asyncio.Task[None]"] = None
        self._epoch = 0
        self._resumed = False

    # -------- State helpers

    def _replace(self, state: SessionState) -> None:
        self.state = state
        if self.on_change:
            self.on_change(state)

    def _update(self, **changes: Any) -> None:
        self._replace(dataclasses.replace(self.state, **changes))

    @property
    def channel(self) -> Optional["asyncio.Task[None]"]:
        return self._channel

    @property
    def channel_open(self) -> bool:
        return bool(self._channel and not self._channel.done())

    # -------- Channel

    def _open_channel(self, job_id: str) -> None:
        self._close_channel()
        self._channel = asyncio.create_task(self._consume(job_id), name=f"session-stream-{job_id}")

    def _close_channel(self) -> None:
        task, self._channel = self._channel, None
        if task and not task.done() and task is not asyncio.current_task():
            task.cancel()

    async def _consume(self, job_id: str) -> None:
        try:
            async for event in self.api.stream(job_id):
                if self.apply_update(job_id, event):
                    return
        except (BuilderAPIError, httpx.HTTPError) as e:
            # no auto-reconnect: the next attach must start from a status fetch
            logger.warning(f"[Session {job_id}] live channel dropped: {e}")

    def apply_update(self, job_id: str, event: Dict[str, Any]) -> bool:
        """
        Merge one pushed update. Returns True when the channel should close
        (terminal update, or the update belongs to a job we no longer watch).
        """
        current = self.state.job_id
        if job_id != current or event.get("job_id", job_id) != current:
            logger.debug(f"[Session] dropping update for {event.get('job_id', job_id)} (watching {current})")
            return True

        stage = event.get("stage")
        if stage == "complete":
            self._update(
                stage="complete",
                message=event.get("message") or default_message("complete"),
                detail=None,
                title=event["title"] if event.get("title") is not None else self.state.title,
                description=event["description"] if event.get("description") is not None else self.state.description,
                preview_url=event.get("preview_url") or self.state.preview_url,
                preview_loading=False,
            )
            return True

        if stage == "failed":
            self._update(
                stage="failed",
                message=event.get("message") or default_message("failed"),
                detail=None,
                error=event.get("error"),
            )
            return True

        if stage:
            self._update(
                stage=stage,
                message=event.get("message") or self.state.message,
                detail=event.get("detail"),
            )
        return False

    # -------- Operations

    def start_generation(self, job_id: str) -> None:
        self._epoch += 1
        self._close_channel()
        self._replace(SessionState(
            job_id=job_id,
            stage="pending",
            message=default_message("pending"),
        ))
        self.breadcrumbs.write(job_id, started_at=self._clock())
        self._open_channel(job_id)

    def increment_iteration(self) -> None:
        self._update(
            iteration_count=self.state.iteration_count + 1,
            stage="pending",
            message=ITERATION_MESSAGE,
            detail=None,
            error=None,
            preview_url=None,
        )
        if self.state.job_id:
            self._open_channel(self.state.job_id)

    async def iterate(self, prompt: str) -> Optional[str]:
        """Ask the server to refine the current app. Returns the iteration id, None if rejected."""
        job_id = self.state.job_id
        if not job_id:
            return None
        try:
            iteration_id = await self.api.iterate(job_id, prompt)
        except BuilderAPIError as e:
            logger.warning(f"[Session {job_id}] iteration rejected: {e}")
            if self.state.job_id == job_id:
                self.set_failed(e.detail or "Failed to start iteration")
            return None
        except httpx.HTTPError as e:
            logger.warning(f"[Session {job_id}] iteration request failed: {e}")
            if self.state.job_id == job_id:
                self.set_failed(f"Failed to start iteration: {e}")
            return None

        if self.state.job_id == job_id:
            self.increment_iteration()
        return iteration_id

    def set_complete(self, title: Optional[str] = None, description: Optional[str] = None) -> None:
        self._update(
            stage="complete",
            message=default_message("complete"),
            title=title if title is not None else self.state.title,
            description=description if description is not None else self.state.description,
        )

    def set_failed(self, error: str) -> None:
        self._update(stage="failed", message=default_message("failed"), error=error)

    def set_published(self) -> None:
        self._update(published=True)

    def reset(self) -> None:
        self._epoch += 1
        self._close_channel()
        self.breadcrumbs.clear()
        self._replace(SessionState())

    async def close(self) -> None:
        task, self._channel = self._channel, None
        if task and not task.done():
            task.cancel()
            await asyncio.gather(task, return_exceptions=True)

    # -------- Resume

    async def resume(self) -> bool:
        """Reattach to the breadcrumb's job. Runs once; True if the session was seeded."""
        if self._resumed:
            return False
        self._resumed = True

        crumb = self.breadcrumbs.read()
        if crumb is None:
            return False

        epoch = self._epoch
        try:
            data = await self.api.get_status(crumb.job_id)
        except (BuilderAPIError, httpx.HTTPError) as e:
            logger.info(f"[Session] breadcrumb {crumb.job_id} not resumable: {e}")
            if epoch == self._epoch:
                self.breadcrumbs.clear()
            return False

        if epoch != self._epoch:
            logger.info(f"[Session] resume of {crumb.job_id} lost to a newer job, discarding")
            return False

        status = data.get("status")
        if status in ACTIVE_STATUSES:
            stage = data.get("current_stage") or "coding"
            if stage not in STAGE_MESSAGES or stage in TERMINAL_STAGES:
                stage = "coding"
            self._replace(SessionState(
                job_id=crumb.job_id,
                stage=stage,
                message=default_message(stage),
                detail=data.get("current_detail"),
                iteration_count=data.get("iteration_count") or 0,
                published=bool(data.get("published")),
            ))
            self._open_channel(crumb.job_id)
            return True

        fresh = crumb.age(self._clock()) < self.max_age_seconds
        if status in TERMINAL_STATUSES and fresh:
            base = SessionState(
                job_id=crumb.job_id,
                iteration_count=data.get("iteration_count") or 0,
                published=bool(data.get("published")),
                title=data.get("title"),
                description=data.get("description"),
                preview_url=data.get("preview_url"),
            )
            if status == "COMPLETE":
                self._replace(dataclasses.replace(base, stage="complete", message=default_message("complete")))
            else:
                self._replace(dataclasses.replace(
                    base,
                    stage="failed",
                    message=default_message("failed"),
                    error=data.get("error"),
                ))
            return True

        self.breadcrumbs.clear()
        return False

    # -------- Preview

    async def start_preview(self) -> Optional[str]:
        job_id = self.state.job_id
        if not job_id:
            return None
        if self.state.preview_loading:
            # already deploying: join the in-flight attempt
            return await self.preview.start(job_id)

        self._update(preview_loading=True)
        try:
            url = await self.preview.start(job_id)
        except BaseException:
            if self.state.job_id == job_id:
                self._update(preview_loading=False)
            raise

        if self.state.job_id == job_id:
            self._update(preview_url=url, preview_loading=False)
        return url

    async def stop_preview(self) -> None:
        job_id = self.state.job_id
        if not job_id:
            return
        await self.preview.stop(job_id)
        if self.state.job_id == job_id:
            self._update(preview_url=None, preview_loading=False)
