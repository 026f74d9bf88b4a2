# FILE: appbuilder/services/dependency_installer.py
"""
npm install runs in parallel with code generation; once generation exits 0
we join it, top it up, then push the Prisma schema and seed.

Nothing here can fail a job. A generated app with a cold preview
environment is still a generated app.
"""
import asyncio
import logging
import os
import re
from dataclasses import dataclass
from pathlib import Path
from typing import Awaitable, Callable, Dict, List, Optional

from appbuilder.core.config import (
    NPM_INCREMENTAL_TIMEOUT_SECONDS,
    NPM_INSTALL_TIMEOUT_SECONDS,
    PRISMA_TIMEOUT_SECONDS,
    SEED_SCRIPT,
)
from appbuilder.services.job_registry import JobRegistry

logger = logging.getLogger("appbuilder.installer")

NPM_INSTALL = ["npm", "install", "--ignore-scripts"]
PRISMA_FORMAT = ["npx", "prisma", "format"]
PRISMA_GENERATE = ["npx", "prisma", "generate"]
PRISMA_PUSH = ["npx", "prisma", "db", "push", "--accept-data-loss"]
SEED = ["npx", "tsx", SEED_SCRIPT]

BINARY_TARGETS = '["native", "debian-openssl-1.1.x", "debian-openssl-3.0.x"]'


@dataclass
class CommandResult:
    returncode: int
    stdout: str = ""
    stderr: str = ""

    @property
    def ok(self) -> bool:
        return self.returncode == 0


Runner = Callable[..., Awaitable[CommandResult]]


async def run_command(
        cmd: List[str],
        cwd: Path,
        timeout: Optional[float] = None,
        env: Optional[Dict[str, str]] = None,
) -> CommandResult:
    try:
        proc = await asyncio.create_subprocess_exec(
            *cmd,
            cwd=str(cwd),
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
            env=env or os.environ.copy(),
        )
    except OSError as e:
        return CommandResult(127, "", f"{cmd[0]}: {e}")

    try:
        out, err = await asyncio.wait_for(proc.communicate(), timeout)
    except asyncio.TimeoutError:
        proc.kill()
        await proc.wait()
        return CommandResult(124, "", f"timed out after {timeout}s")

    return CommandResult(
        proc.returncode if proc.returncode is not None else 1,
        out.decode("utf-8", errors="replace"),
        err.decode("utf-8", errors="replace"),
    )


def workspace_env() -> Dict[str, str]:
    env = os.environ.copy()
    env["DATABASE_URL"] = "file:./dev.db"
    return env


class DependencyInstaller:
    def __init__(self, registry: JobRegistry, runner: Runner = run_command) -> None:
        self.registry = registry
        self.runner = runner

    def install_async(self, job_id: str, workspace_dir: Path) -> "asyncio.Task[bool]":
        task = asyncio.create_task(self._parallel_install(job_id, Path(workspace_dir)))
        self.registry.set_install(job_id, task)
        return task

    async def _parallel_install(self, job_id: str, workspace_dir: Path) -> bool:
        logger.info(f"[Installer {job_id}] Starting parallel npm install...")
        result = await self.runner(NPM_INSTALL, workspace_dir)
        logger.info(f"[Installer {job_id}] Parallel npm install finished (code {result.returncode})")
        return result.ok

    async def await_and_finalize(self, job_id: str, workspace_dir: Path) -> str:
        """
        Returns the install branch taken: "incremental", "fallback" or "fresh".
        Never raises.
        """
        workspace_dir = Path(workspace_dir)
        try:
            branch = await self._settle_dependencies(job_id, workspace_dir)
            # schema push and seed run whatever the install outcome
            await self._prepare_database(job_id, workspace_dir)
            return branch
        except Exception as e:
            logger.error(f"[Installer {job_id}] finalization failed (non-fatal): {e}")
            return "error"

    async def _settle_dependencies(self, job_id: str, workspace_dir: Path) -> str:
        task = self.registry.pop_install(job_id)

        if task is None:
            logger.info(f"[Installer {job_id}] No parallel install on record, running full npm install...")
            result = await self.runner(NPM_INSTALL, workspace_dir, timeout=NPM_INSTALL_TIMEOUT_SECONDS)
            if not result.ok:
                logger.warning(f"[Installer {job_id}] npm install failed (non-fatal): {result.stderr[:500]}")
            return "fresh"

        logger.info(f"[Installer {job_id}] Waiting for parallel npm install to finish...")
        try:
            success = await task
        except asyncio.CancelledError:
            if not task.cancelled():
                raise
            logger.warning(f"[Installer {job_id}] Parallel install was cancelled")
            success = False
        except Exception as e:
            logger.warning(f"[Installer {job_id}] Parallel install crashed: {e}")
            success = False

        if success:
            logger.info(f"[Installer {job_id}] Running incremental npm install...")
            result = await self.runner(NPM_INSTALL, workspace_dir, timeout=NPM_INCREMENTAL_TIMEOUT_SECONDS)
            if not result.ok:
                logger.warning(
                    f"[Installer {job_id}] Incremental npm install failed (non-fatal): {result.stderr[:500]}"
                )
            return "incremental"

        logger.info(f"[Installer {job_id}] Parallel install failed, running full npm install...")
        result = await self.runner(NPM_INSTALL, workspace_dir, timeout=NPM_INSTALL_TIMEOUT_SECONDS)
        if not result.ok:
            logger.warning(f"[Installer {job_id}] npm install failed (non-fatal): {result.stderr[:500]}")
        return "fallback"

    async def _prepare_database(self, job_id: str, workspace_dir: Path) -> None:
        env = workspace_env()
        ensure_binary_targets(workspace_dir)

        for cmd in (PRISMA_FORMAT, PRISMA_GENERATE):
            result = await self.runner(cmd, workspace_dir, timeout=PRISMA_TIMEOUT_SECONDS, env=env)
            if not result.ok:
                logger.warning(f"[Installer {job_id}] {' '.join(cmd[1:])} failed (non-fatal)")

        # stale db from a previous pass would get seeded twice
        dev_db = workspace_dir / "dev.db"
        if dev_db.exists():
            dev_db.unlink()

        result = await self.runner(PRISMA_PUSH, workspace_dir, timeout=PRISMA_TIMEOUT_SECONDS, env=env)
        if not result.ok:
            logger.warning(f"[Installer {job_id}] prisma db push failed (non-fatal)")

        if (workspace_dir / SEED_SCRIPT).is_file():
            result = await self.runner(SEED, workspace_dir, timeout=PRISMA_TIMEOUT_SECONDS, env=env)
            if not result.ok:
                logger.warning(f"[Installer {job_id}] Seed failed (non-fatal)")


def ensure_binary_targets(workspace_dir: Path) -> bool:
    schema_path = workspace_dir / "prisma" / "schema.prisma"
    if not schema_path.is_file():
        return False
    schema = schema_path.read_text(encoding="utf-8")
    if "binaryTargets" in schema:
        return False
    patched, n = re.subn(
        r'provider\s*=\s*"prisma-client-js"',
        f'provider      = "prisma-client-js"\n  binaryTargets = {BINARY_TARGETS}',
        schema,
        count=1,
    )
    if n:
        schema_path.write_text(patched, encoding="utf-8")
    return bool(n)
