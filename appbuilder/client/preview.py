# FILE: appbuilder/client/preview.py
"""
Preview Deploy Controller (client side)

start(): POST preview -> url right away (local server) or {} -> poll status
every few seconds until ready, failed (or stopped) or timeout. A second start() for the
same job while one is in flight waits on the first instead of re-deploying.
"""
import asyncio
import logging
import time
from typing import Awaitable, Callable, Dict

import httpx

from appbuilder.client.api import BuilderAPIError, BuilderClient
from appbuilder.core.config import PREVIEW_POLL_SECONDS, PREVIEW_TIMEOUT_SECONDS

logger = logging.getLogger("appbuilder.client.preview")


class PreviewDeployError(Exception):
    pass


class PreviewFailedError(PreviewDeployError):
    pass


class PreviewTimeoutError(PreviewDeployError):
    pass


class PreviewDeployController:
    def __init__(
            self,
            api: BuilderClient,
            poll_interval: float = PREVIEW_POLL_SECONDS,
            timeout: float = PREVIEW_TIMEOUT_SECONDS,
            sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
            clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.api = api
        self.poll_interval = poll_interval
        self.timeout = timeout
        self._sleep = sleep
        self._clock = clock
        self._inflight: Dict[str, "asyncio.Task[str]"] = {}

    def in_flight(self, job_id: str) -> bool:
        task = self._inflight.get(job_id)
        return bool(task and not task.done())

    async def start(self, job_id: str) -> str:
        task = self._inflight.get(job_id)
        if task is None or task.done():
            task = asyncio.create_task(self._deploy(job_id), name=f"preview-deploy-{job_id}")
            self._inflight[job_id] = task
            task.add_done_callback(lambda t: self._forget(job_id, t))
        else:
            logger.info(f"[Preview {job_id}] start already in flight, waiting on it")
        try:
            return await asyncio.shield(task)
        except asyncio.CancelledError:
            # stop() cancelled the shared deploy, not our caller
            if task.cancelled():
                raise PreviewDeployError("Preview deploy was stopped")
            raise

    def _forget(self, job_id: str, task: "asyncio.Task[str]") -> None:
        if self._inflight.get(job_id) is task:
            self._inflight.pop(job_id, None)

    async def _deploy(self, job_id: str) -> str:
        try:
            data = await self.api.start_preview(job_id)
        except BuilderAPIError as e:
            raise PreviewDeployError(e.detail or "Failed to start preview") from e
        except httpx.HTTPError as e:
            raise PreviewDeployError(f"Failed to start preview: {e}") from e

        url = data.get("url")
        if url:
            return url

        deadline = self._clock() + self.timeout
        while self._clock() < deadline:
            await self._sleep(self.poll_interval)
            try:
                status = await self.api.preview_status(job_id)
            except (BuilderAPIError, httpx.HTTPError) as e:
                logger.warning(f"[Preview {job_id}] status poll failed, retrying: {e}")
                continue

            state = status.get("status")
            if state == "ready" and status.get("url"):
                return status["url"]
            if state == "failed":
                error = status.get("error")
                raise PreviewFailedError(f"Preview failed: {error}" if error else "Preview deploy failed")
            if state == "stopped":
                # torn down (or the preview server restarted) after our start
                raise PreviewFailedError("Preview was stopped")

        raise PreviewTimeoutError("Preview timed out, please try again")

    async def stop(self, job_id: str) -> None:
        task = self._inflight.pop(job_id, None)
        if task and not task.done():
            task.cancel()
        try:
            await self.api.stop_preview(job_id)
        except (BuilderAPIError, httpx.HTTPError) as e:
            logger.warning(f"[Preview {job_id}] teardown failed (ignored): {e}")
