# FILE: appbuilder/client/breadcrumb.py
import json
import logging
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, Optional

from appbuilder.core.config import BREADCRUMB_KEY, CLIENT_STATE_FILE

logger = logging.getLogger("appbuilder.client.breadcrumb")


@dataclass
class Breadcrumb:
    job_id: str
    started_at: float

    def age(self, now: Optional[float] = None) -> float:
        return (now if now is not None else time.time()) - self.started_at


class BreadcrumbStore:
    """
    The client's one durable record of "the job I was watching".
    Kept under a fixed key in a small JSON state file; other keys are preserved.
    Anything unreadable counts as no breadcrumb.
    """

    def __init__(self, path: Optional[Path] = None, key: str = BREADCRUMB_KEY) -> None:
        self.path = Path(path or CLIENT_STATE_FILE)
        self.key = key

    def _load(self) -> Dict[str, Any]:
        try:
            data = json.loads(self.path.read_text(encoding="utf-8"))
        except (OSError, ValueError):
            return {}
        return data if isinstance(data, dict) else {}

    def _save(self, data: Dict[str, Any]) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        tmp = self.path.with_suffix(self.path.suffix + ".tmp")
        tmp.write_text(json.dumps(data, indent=2), encoding="utf-8")
        tmp.replace(self.path)

    def read(self) -> Optional[Breadcrumb]:
        raw = self._load().get(self.key)
        if not isinstance(raw, dict):
            return None
        job_id = raw.get("job_id")
        started_at = raw.get("started_at")
        if not isinstance(job_id, str) or not job_id or not isinstance(started_at, (int, float)):
            logger.debug(f"discarding malformed breadcrumb: {raw!r}")
            return None
        return Breadcrumb(job_id=job_id, started_at=float(started_at))

    def write(self, job_id: str, started_at: Optional[float] = None) -> Breadcrumb:
        crumb = Breadcrumb(job_id=job_id, started_at=started_at if started_at is not None else time.time())
        data = self._load()
        data[self.key] = {"job_id": crumb.job_id, "started_at": crumb.started_at}
        self._save(data)
        return crumb

    def clear(self) -> None:
        data = self._load()
        if self.key in data:
            data.pop(self.key)
            self._save(data)
