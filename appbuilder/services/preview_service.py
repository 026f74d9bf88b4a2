# FILE: appbuilder/services/preview_service.py
"""
Preview Service
- Remote: delegates to the builder service at BUILDER_URL (POST/GET/DELETE /preview)
- Local: runs `npx next dev -p <port>` inside the job's workspace
- Status values exposed to the API: ready | pending | failed | stopped
- start() returns {"url": ...} when a preview is already up, else {} (caller polls)
"""

import asyncio
import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, List, Optional

import httpx

from appbuilder.core.config import (
    BUILDER_API_KEY,
    BUILDER_URL,
    NPM_INSTALL_TIMEOUT_SECONDS,
    PREVIEW_BASE_PORT,
    PREVIEW_HOST,
    PREVIEW_READY_TIMEOUT_SECONDS,
    PRISMA_TIMEOUT_SECONDS,
    SEED_SCRIPT,
    WORKSPACE_ENV,
)
from appbuilder.services.dependency_installer import (
    PRISMA_PUSH,
    SEED,
    Runner,
    run_command,
    workspace_env,
)

logger = logging.getLogger("appbuilder.preview")

NEXT_DEV = ["npx", "next", "dev"]


class PreviewError(Exception):
    pass


def _normalize_status(raw: Optional[str]) -> str:
    s = (raw or "").strip().lower()
    if s in ("ready", "running"):
        return "ready"
    if s in ("pending", "starting", "queued", "building", "deploying"):
        return "pending"
    if s == "failed":
        return "failed"
    return "stopped"


# ----------------------------
# Remote builder
# ----------------------------
class RemotePreviewBackend:
    def __init__(
            self,
            base_url: str = BUILDER_URL,
            api_key: str = BUILDER_API_KEY,
            transport: Optional[httpx.AsyncBaseTransport] = None,
            timeout: float = 30,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.api_key = api_key
        self.transport = transport
        self.timeout = timeout

    def _client(self) -> httpx.AsyncClient:
        headers = {"Accept": "application/json"}
        if self.api_key:
            headers["Authorization"] = f"Bearer {self.api_key}"
        return httpx.AsyncClient(
            base_url=self.base_url,
            headers=headers,
            timeout=self.timeout,
            transport=self.transport,
        )

    async def start(self, job_id: str, source_dir: Optional[str]) -> Dict[str, Any]:
        try:
            async with self._client() as client:
                resp = await client.post("/preview", json={"generationId": job_id})
        except httpx.HTTPError as e:
            raise PreviewError(f"Builder service unavailable: {e}") from e

        if resp.status_code >= 400:
            raise PreviewError(f"Preview failed: {resp.text[:500]}")

        data = resp.json() if resp.content else {}
        url = data.get("url") if isinstance(data, dict) else None
        return {"url": url} if url else {}

    async def status(self, job_id: str) -> Dict[str, Any]:
        try:
            async with self._client() as client:
                resp = await client.get(f"/preview/{job_id}")
        except httpx.HTTPError as e:
            raise PreviewError(f"Builder service unavailable: {e}") from e

        if resp.status_code == 404:
            return {"status": "stopped"}
        if resp.status_code >= 400:
            raise PreviewError(f"Preview status failed: {resp.text[:500]}")

        data = resp.json() if resp.content else {}
        if not isinstance(data, dict):
            data = {}
        return {
            "status": _normalize_status(data.get("status")),
            "url": data.get("url"),
            "error": data.get("error"),
        }

    async def stop(self, job_id: str) -> None:
        try:
            async with self._client() as client:
                await client.delete(f"/preview/{job_id}")
        except httpx.HTTPError as e:
            logger.warning(f"[Preview {job_id}] remote teardown failed (ignored): {e}")


# ----------------------------
# Local dev server
# ----------------------------
@dataclass
class ActivePreview:
    port: int
    url: str
    status: str = "pending"
    error: Optional[str] = None
    process: Optional[asyncio.subprocess.Process] = None
    task: Optional["asyncio.Task[None]"] = None


class LocalPreviewBackend:
    def __init__(
            self,
            base_port: int = PREVIEW_BASE_PORT,
            host: str = PREVIEW_HOST,
            ready_timeout: float = PREVIEW_READY_TIMEOUT_SECONDS,
            runner: Runner = run_command,
            command: Optional[List[str]] = None,
            probe_interval: float = 1.0,
    ) -> None:
        self.host = host
        self.ready_timeout = ready_timeout
        self.runner = runner
        self.command = list(command or NEXT_DEV)
        self.probe_interval = probe_interval
        self._next_port = base_port
        self._previews: Dict[str, ActivePreview] = {}

    def get(self, job_id: str) -> Optional[ActivePreview]:
        return self._previews.get(job_id)

    async def start(self, job_id: str, source_dir: Optional[str]) -> Dict[str, Any]:
        current = self._previews.get(job_id)
        if current and current.status == "ready":
            return {"url": current.url}
        if current and current.status == "pending":
            return {}

        # failed leftovers are replaced
        await self.stop(job_id)

        source = Path(source_dir or "")
        if not source_dir or not source.is_dir():
            raise PreviewError("App source directory not found")

        port = self._next_port
        self._next_port += 1
        preview = ActivePreview(port=port, url=f"http://{self.host}:{port}")
        self._previews[job_id] = preview
        preview.task = asyncio.create_task(self._boot(job_id, source, preview), name=f"preview-{job_id}")
        return {}

    async def status(self, job_id: str) -> Dict[str, Any]:
        preview = self._previews.get(job_id)
        if not preview:
            return {"status": "stopped"}
        return {
            "status": preview.status,
            "url": preview.url if preview.status == "ready" else None,
            "error": preview.error,
        }

    async def stop(self, job_id: str) -> None:
        preview = self._previews.pop(job_id, None)
        if not preview:
            return

        if preview.task and not preview.task.done():
            preview.task.cancel()
        await self._terminate(preview)
        logger.info(f"[Preview {job_id}] Stopped")

    async def shutdown(self) -> None:
        for job_id in list(self._previews):
            await self.stop(job_id)

    # -------- Internals

    async def _boot(self, job_id: str, source: Path, preview: ActivePreview) -> None:
        try:
            await self._prepare(job_id, source)

            logger.info(f"[Preview {job_id}] Starting dev server on port {preview.port}")
            env = workspace_env()
            env.update({
                "AUTH_SECRET": "preview-secret-key",
                "PREVIEW_MODE": "true",
                "PORT": str(preview.port),
            })
            try:
                preview.process = await asyncio.create_subprocess_exec(
                    *self.command, "-p", str(preview.port),
                    cwd=str(source),
                    env=env,
                    stdin=asyncio.subprocess.DEVNULL,
                    stdout=asyncio.subprocess.DEVNULL,
                    stderr=asyncio.subprocess.DEVNULL,
                )
            except OSError as e:
                raise PreviewError(f"Failed to start dev server: {e}") from e

            await self._wait_for_ready(preview)
            preview.status = "ready"
            logger.info(f"[Preview {job_id}] Ready at {preview.url}")
        except Exception as e:
            # any boot error ends in failed, never a stuck pending
            preview.status = "failed"
            preview.error = str(e) or type(e).__name__
            logger.error(f"[Preview {job_id}] {e}")
            await self._terminate(preview)

    async def _prepare(self, job_id: str, source: Path) -> None:
        env_path = source / ".env"
        if not env_path.exists():
            env_path.write_text(WORKSPACE_ENV, encoding="utf-8")

        if not (source / "node_modules").is_dir():
            logger.info(f"[Preview {job_id}] Installing dependencies...")
            result = await self.runner(["npm", "install"], source, timeout=NPM_INSTALL_TIMEOUT_SECONDS)
            if not result.ok:
                raise PreviewError(f"npm install failed: {(result.stderr or result.stdout)[:500]}")
        else:
            logger.info(f"[Preview {job_id}] Dependencies already installed, skipping npm install")

        if (source / "dev.db").exists():
            logger.info(f"[Preview {job_id}] Database already set up, skipping")
            return

        logger.info(f"[Preview {job_id}] Setting up database...")
        env = workspace_env()
        result = await self.runner(PRISMA_PUSH, source, timeout=PRISMA_TIMEOUT_SECONDS, env=env)
        if not result.ok:
            logger.warning(f"[Preview {job_id}] prisma db push failed (non-fatal)")
        if (source / SEED_SCRIPT).is_file():
            result = await self.runner(SEED, source, timeout=PRISMA_TIMEOUT_SECONDS, env=env)
            if not result.ok:
                logger.warning(f"[Preview {job_id}] Seed script failed (non-fatal)")

    async def _wait_for_ready(self, preview: ActivePreview) -> None:
        loop = asyncio.get_running_loop()
        deadline = loop.time() + self.ready_timeout
        async with httpx.AsyncClient(timeout=2, trust_env=False) as client:
            while loop.time() < deadline:
                proc = preview.process
                if proc is not None and proc.returncode is not None:
                    raise PreviewError(f"Process exited with code {proc.returncode}")
                try:
                    resp = await client.get(preview.url)
                    if resp.is_success or resp.status_code in (302, 307):
                        return
                except httpx.HTTPError:
                    pass
                await asyncio.sleep(self.probe_interval)
        raise PreviewError("Preview app failed to start within timeout")

    async def _terminate(self, preview: ActivePreview) -> None:
        proc = preview.process
        if proc is None or proc.returncode is not None:
            return
        try:
            proc.terminate()
            await asyncio.wait_for(proc.wait(), 5)
        except ProcessLookupError:
            pass
        except asyncio.TimeoutError:
            proc.kill()
            await proc.wait()


# ----------------------------
# Facade used by the API layer
# ----------------------------
class PreviewService:
    def __init__(self, backend=None) -> None:
        if backend is None:
            backend = RemotePreviewBackend() if BUILDER_URL else LocalPreviewBackend()
        self.backend = backend

    @property
    def remote(self) -> bool:
        return isinstance(self.backend, RemotePreviewBackend)

    async def start(self, job_id: str, source_dir: Optional[str]) -> Dict[str, Any]:
        logger.info(f"[Preview {job_id}] start requested ({'remote' if self.remote else 'local'})")
        return await self.backend.start(job_id, source_dir)

    async def status(self, job_id: str) -> Dict[str, Any]:
        return await self.backend.status(job_id)

    async def stop(self, job_id: str) -> None:
        await self.backend.stop(job_id)

    async def shutdown(self) -> None:
        if hasattr(self.backend, "shutdown"):
            await self.backend.shutdown()

