# FILE: appbuilder/client/api.py
"""Thin async HTTP client for the generation API (httpx)."""
import json
import logging
from typing import Any, AsyncIterator, Dict, List, Optional

import httpx

from appbuilder.core.config import API_BASE_URL

logger = logging.getLogger("appbuilder.client.api")


class BuilderAPIError(Exception):
    def __init__(self, status_code: int, detail: str):
        super().__init__(f"{status_code}: {detail}")
        self.status_code = status_code
        self.detail = detail


def _raise_for_status(resp: httpx.Response) -> None:
    if not resp.is_error:
        return
    detail = resp.text
    try:
        data = resp.json()
        if isinstance(data, dict):
            detail = str(data.get("detail") or data.get("error") or detail)
    except ValueError:
        pass
    raise BuilderAPIError(resp.status_code, detail)


def parse_sse_lines(lines: List[str]) -> Optional[Dict[str, Any]]:
    """Join the data: lines of one SSE event into a dict (None for comments/garbage)."""
    payload = "\n".join(l[5:].lstrip() for l in lines if l.startswith("data:"))
    if not payload:
        return None
    try:
        data = json.loads(payload)
    except ValueError:
        logger.debug(f"skipping non-JSON event: {payload[:200]}")
        return None
    return data if isinstance(data, dict) else None


class BuilderClient:
    def __init__(
            self,
            base_url: str = API_BASE_URL,
            token: Optional[str] = None,
            transport: Optional[httpx.AsyncBaseTransport] = None,
            timeout: float = 30,
    ) -> None:
        headers = {"Accept": "application/json"}
        if token:
            headers["Authorization"] = f"Bearer {token}"
        self._client = httpx.AsyncClient(
            base_url=base_url.rstrip("/"),
            headers=headers,
            timeout=timeout,
            transport=transport,
        )
        self.timeout = timeout

    async def aclose(self) -> None:
        await self._client.aclose()

    async def __aenter__(self) -> "BuilderClient":
        return self

    async def __aexit__(self, *exc) -> None:
        await self.aclose()

    # -------- Jobs

    async def create_generation(self, prompt: str, business_context: Optional[Dict[str, Any]] = None) -> str:
        body: Dict[str, Any] = {"prompt": prompt}
        if business_context:
            body["business_context"] = business_context
        resp = await self._client.post("/api/generate", json=body)
        _raise_for_status(resp)
        return resp.json()["id"]

    async def get_status(self, job_id: str) -> Dict[str, Any]:
        resp = await self._client.get(f"/api/generate/{job_id}/status")
        _raise_for_status(resp)
        return resp.json()

    async def iterate(self, job_id: str, prompt: str) -> str:
        resp = await self._client.post(f"/api/generate/{job_id}/iterate", json={"prompt": prompt})
        _raise_for_status(resp)
        return resp.json()["iteration_id"]

    async def cancel(self, job_id: str) -> None:
        resp = await self._client.post(f"/api/generate/{job_id}/cancel")
        _raise_for_status(resp)

    async def stream(self, job_id: str) -> AsyncIterator[Dict[str, Any]]:
        """Yield each pushed update until the server closes the channel."""
        timeout = httpx.Timeout(self.timeout, read=None)
        async with self._client.stream("GET", f"/api/generate/{job_id}/stream", timeout=timeout) as resp:
            if resp.is_error:
                await resp.aread()
                _raise_for_status(resp)

            pending: List[str] = []
            async for line in resp.aiter_lines():
                if line:
                    pending.append(line)
                    continue
                event = parse_sse_lines(pending)
                pending = []
                if event is not None:
                    yield event

            event = parse_sse_lines(pending)
            if event is not None:
                yield event

    # -------- Preview

    async def start_preview(self, job_id: str) -> Dict[str, Any]:
        resp = await self._client.post(f"/api/generate/{job_id}/preview")
        _raise_for_status(resp)
        return resp.json()

    async def preview_status(self, job_id: str) -> Dict[str, Any]:
        resp = await self._client.get(f"/api/generate/{job_id}/preview")
        _raise_for_status(resp)
        return resp.json()

    async def stop_preview(self, job_id: str) -> None:
        resp = await self._client.delete(f"/api/generate/{job_id}/preview")
        _raise_for_status(resp)
