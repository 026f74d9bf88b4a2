# FILE: appbuilder/api/generate.py
# =========================================================
# Generation jobs: create, poll, live stream, iterate, cancel, preview
# =========================================================

import asyncio
import json
import logging
from typing import Any, Dict, Optional

from fastapi import APIRouter, BackgroundTasks, Depends, HTTPException, Request, Response
from fastapi.responses import StreamingResponse

from appbuilder.api.deps import get_current_user
from appbuilder.core.config import STREAM_KEEPALIVE_SECONDS
from appbuilder.models.generated_app import GeneratedApp, JobStatus
from appbuilder.schemas.generate import (
    GenerateRequest,
    GenerateResponse,
    HealthResponse,
    IterateRequest,
    IterateResponse,
    JobStatusResponse,
    PreviewStartResponse,
    PreviewStatusResponse,
)
from appbuilder.services.job_registry import JobAlreadyRunningError
from appbuilder.services.job_store import JobNotFoundError, JobStateError, to_status
from appbuilder.services.preview_service import PreviewError
from appbuilder.services.runtime import Services, get_services
from appbuilder.services.stage_tracker import default_message

logger = logging.getLogger("appbuilder.api.generate")

router = APIRouter(prefix="/api", tags=["generate"])


def _sse(data: Dict[str, Any]) -> str:
    return f"data: {json.dumps(data)}\n\n"


async def _get_owned(job_id: str, user: dict, services: Services) -> GeneratedApp:
    app = await services.store.get(job_id)
    if not app:
        raise HTTPException(status_code=404, detail="Generation not found")
    if str(app.created_by_id) != str(user["id"]):
        raise HTTPException(status_code=403, detail="Forbidden")
    return app


def _terminal_event(app: GeneratedApp) -> Optional[Dict[str, Any]]:
    if app.status == JobStatus.COMPLETE:
        event = {
            "job_id": app.id,
            "stage": "complete",
            "message": default_message("complete"),
            "title": app.title,
            "description": app.description,
        }
        if app.preview_url:
            event["preview_url"] = app.preview_url
        return event
    if app.status in (JobStatus.FAILED, JobStatus.CANCELLED):
        return {
            "job_id": app.id,
            "stage": "failed",
            "message": app.error if app.status == JobStatus.CANCELLED and app.error else default_message("failed"),
            "error": app.error or "Generation failed",
        }
    return None


async def _start_job(services: Services, job_id: str, prompt: str, context: Optional[Dict[str, Any]]) -> None:
    try:
        await services.orchestrator.start_generation(job_id, prompt, context)
    except JobAlreadyRunningError:
        logger.warning(f"[API {job_id}] generation already running, start ignored")
    except Exception as e:
        logger.exception(f"[API {job_id}] failed to start generation: {e}")
        # observers attached to the stream need the terminal update too
        await services.orchestrator.fail(job_id, f"Failed to start generation: {e}")


# ─────────────────────────────────────────────
# CREATE
# ─────────────────────────────────────────────
@router.post("/generate", status_code=201, response_model=GenerateResponse)
async def create_generation(
        req: GenerateRequest,
        background_tasks: BackgroundTasks,
        user=Depends(get_current_user),
        services: Services = Depends(get_services),
):
    context = req.business_context.model_dump(exclude_none=True) if req.business_context else None
    job_id = await services.store.create(req.prompt, context, created_by_id=user["id"])

    background_tasks.add_task(_start_job, services, job_id, req.prompt, context)
    return {"id": job_id}


# ─────────────────────────────────────────────
# POLL STATUS
# ─────────────────────────────────────────────
@router.get("/generate/{job_id}/status", response_model=JobStatusResponse)
async def get_generation_status(
        job_id: str,
        user=Depends(get_current_user),
        services: Services = Depends(get_services),
):
    app = await _get_owned(job_id, user, services)
    return to_status(app)


# ─────────────────────────────────────────────
# LIVE STREAM (SSE)
# ─────────────────────────────────────────────
@router.get("/generate/{job_id}/stream")
async def stream_generation(
        job_id: str,
        request: Request,
        user=Depends(get_current_user),
        services: Services = Depends(get_services),
):
    await _get_owned(job_id, user, services)

    # attach before re-reading the row so a terminal update cannot slip between
    sub = services.hub.subscribe(job_id)
    app = await services.store.get(job_id)
    terminal = _terminal_event(app) if app else None

    async def stream():
        try:
            if terminal is not None:
                yield _sse(terminal)
                return

            while True:
                if await request.is_disconnected():
                    logger.info(f"[Stream {job_id}] observer disconnected")
                    return
                try:
                    update = await sub.next_update(timeout=STREAM_KEEPALIVE_SECONDS)
                except asyncio.TimeoutError:
                    yield ": keep-alive\n\n"
                    continue
                if update is None:
                    return
                yield _sse(update.to_event())
                if update.terminal:
                    return
        finally:
            services.hub.unsubscribe(sub)

    return StreamingResponse(
        stream(),
        media_type="text/event-stream",
        headers={"Cache-Control": "no-cache", "Connection": "keep-alive", "X-Accel-Buffering": "no"},
    )


# ─────────────────────────────────────────────
# ITERATE / CANCEL
# ─────────────────────────────────────────────
@router.post("/generate/{job_id}/iterate", status_code=201, response_model=IterateResponse)
async def iterate_generation(
        job_id: str,
        req: IterateRequest,
        user=Depends(get_current_user),
        services: Services = Depends(get_services),
):
    app = await _get_owned(job_id, user, services)
    if app.status not in (JobStatus.COMPLETE, JobStatus.FAILED):
        raise HTTPException(status_code=409, detail="App must be fully generated before iterating")

    try:
        iteration_id = await services.orchestrator.start_iteration(job_id, req.prompt)
    except JobNotFoundError:
        raise HTTPException(status_code=404, detail="Generation not found")
    except (JobStateError, JobAlreadyRunningError) as e:
        raise HTTPException(status_code=409, detail=str(e))

    return {"iteration_id": iteration_id}


@router.post("/generate/{job_id}/cancel")
async def cancel_generation(
        job_id: str,
        user=Depends(get_current_user),
        services: Services = Depends(get_services),
):
    await _get_owned(job_id, user, services)
    cancelled = await services.orchestrator.cancel(job_id)
    if not cancelled:
        raise HTTPException(status_code=409, detail="No running generation for this app")
    return {"status": "cancelled"}


# ─────────────────────────────────────────────
# PREVIEW
# ─────────────────────────────────────────────
@router.post("/generate/{job_id}/preview", response_model=PreviewStartResponse)
async def start_preview(
        job_id: str,
        user=Depends(get_current_user),
        services: Services = Depends(get_services),
):
    app = await _get_owned(job_id, user, services)
    if app.status != JobStatus.COMPLETE:
        raise HTTPException(status_code=409, detail="App must be fully generated before previewing")
    if not app.source_dir:
        raise HTTPException(status_code=400, detail="No source directory found for this app")

    try:
        result = await services.preview.start(job_id, app.source_dir)
    except PreviewError as e:
        raise HTTPException(status_code=500, detail=str(e))

    url = result.get("url")
    if url:
        await services.store.set_preview_url(job_id, url)
    return {"url": url}


@router.get("/generate/{job_id}/preview", response_model=PreviewStatusResponse)
async def get_preview_status(
        job_id: str,
        user=Depends(get_current_user),
        services: Services = Depends(get_services),
):
    await _get_owned(job_id, user, services)
    try:
        status = await services.preview.status(job_id)
    except PreviewError as e:
        raise HTTPException(status_code=503, detail=str(e))

    if status.get("status") == "ready" and status.get("url"):
        await services.store.set_preview_url(job_id, status["url"])
    return status


@router.delete("/generate/{job_id}/preview", status_code=204)
async def stop_preview(
        job_id: str,
        user=Depends(get_current_user),
        services: Services = Depends(get_services),
):
    await _get_owned(job_id, user, services)
    await services.preview.stop(job_id)
    await services.store.set_preview_url(job_id, None)
    return Response(status_code=204)


# ─────────────────────────────────────────────
# HEALTH
# ─────────────────────────────────────────────
@router.get("/health", response_model=HealthResponse)
async def health(services: Services = Depends(get_services)):
    return {
        "status": "ok",
        "active_jobs": services.orchestrator.active_count(),
        "open_jobs": await services.store.count_active(),
    }
