# FILE: appbuilder/services/workspace_service.py
import logging
import re
import shutil
from pathlib import Path
from typing import Optional

from appbuilder.core.config import (
    APPS_DIR,
    INSTRUCTIONS_FILENAME,
    PLAYBOOK_DIR,
    PLAYBOOK_FILE,
    TEMPLATE_DIRNAME,
    WORKSPACE_ENV,
)

logger = logging.getLogger("appbuilder.workspace")

_SAFE_ID = re.compile(r"^[A-Za-z0-9_-]+$")


class WorkspaceError(Exception):
    pass


class WorkspaceProvisioner:
    """
    One directory per job under apps_dir:
    - starter template copied in (when the playbook ships one)
    - playbook instructions written as CLAUDE.md for the generation CLI
    - minimal .env (never overwritten)
    """

    def __init__(self, apps_dir: Optional[Path] = None, playbook_dir: Optional[Path] = None) -> None:
        self.apps_dir = Path(apps_dir or APPS_DIR)
        self.playbook_dir = Path(playbook_dir or PLAYBOOK_DIR)

    def workspace_dir(self, job_id: str) -> Path:
        if not _SAFE_ID.match(job_id or ""):
            raise WorkspaceError(f"Invalid job id for workspace: {job_id!r}")
        return self.apps_dir / job_id

    def provision(self, job_id: str) -> Path:
        workspace = self.workspace_dir(job_id)
        instructions = self.playbook_dir / PLAYBOOK_FILE
        if not instructions.is_file():
            raise WorkspaceError(f"Playbook not found: {instructions}")

        try:
            workspace.mkdir(parents=True, exist_ok=True)

            template = self.playbook_dir / TEMPLATE_DIRNAME
            if template.is_dir():
                shutil.copytree(template, workspace, dirs_exist_ok=True)
                logger.info(f"[Workspace {job_id}] Template copied to workspace")

            (workspace / INSTRUCTIONS_FILENAME).write_text(
                instructions.read_text(encoding="utf-8"), encoding="utf-8"
            )

            env_path = workspace / ".env"
            if not env_path.exists():
                env_path.write_text(WORKSPACE_ENV, encoding="utf-8")
        except OSError as e:
            raise WorkspaceError(f"Failed to provision workspace for {job_id}: {e}") from e

        return workspace.resolve()
