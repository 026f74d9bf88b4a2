# FILE: appbuilder/services/orchestrator.py
"""
Wires one generation (or iteration) end to end:

provision workspace -> mark GENERATING -> parallel npm install
-> timed stages -> CLI process -> finalize job row + terminal stage.

Stage updates are persisted in order per job so a late write can never
overwrite the terminal row.
"""
import asyncio
import logging
from pathlib import Path
from typing import Any, Dict, Mapping, Optional

from appbuilder.core.config import CANCEL_GRACE_SECONDS, JOB_CLEANUP_AFTER_SECONDS
from appbuilder.services.dependency_installer import DependencyInstaller
from appbuilder.services.generator import (
    AppMetadata,
    GenerationProcessManager,
    build_cli_args,
    build_enriched_prompt,
)
from appbuilder.services.job_registry import JobRegistry
from appbuilder.services.job_store import JobStore, truncate_error
from appbuilder.services.stage_tracker import StageTracker, StageUpdate
from appbuilder.services.workspace_service import WorkspaceError, WorkspaceProvisioner

logger = logging.getLogger("appbuilder.orchestrator")

CANCELLED_MESSAGE = "Cancelled by user"


class GenerationOrchestrator:
    def __init__(
            self,
            store: JobStore,
            tracker: StageTracker,
            registry: JobRegistry,
            installer: DependencyInstaller,
            manager: GenerationProcessManager,
            provisioner: WorkspaceProvisioner,
            cancel_grace_seconds: float = CANCEL_GRACE_SECONDS,
    ) -> None:
        self.store = store
        self.tracker = tracker
        self.registry = registry
        self.installer = installer
        self.manager = manager
        self.provisioner = provisioner
        self.cancel_grace_seconds = cancel_grace_seconds

        self._stage_writes: Dict[str, "asyncio.Task[None]"] = {}
        self._iterations: Dict[str, str] = {}
        self.tracker.add_listener(self._persist_stage)

    # -------- Stage persistence

    def _persist_stage(self, update: StageUpdate) -> None:
        if update.terminal:
            return
        previous = self._stage_writes.get(update.job_id)
        self._stage_writes[update.job_id] = asyncio.create_task(self._write_stage(previous, update))

    async def _write_stage(self, previous: Optional["asyncio.Task[None]"], update: StageUpdate) -> None:
        if previous is not None:
            await previous
        try:
            await self.store.update_stage(update.job_id, update.stage, update.detail)
        except Exception as e:
            logger.warning(f"[Orchestrator {update.job_id}] Failed to persist stage {update.stage}: {e}")

    async def _flush_stage_writes(self, job_id: str) -> None:
        task = self._stage_writes.pop(job_id, None)
        if task is not None:
            await task

    # -------- Start

    async def start_generation(
            self,
            job_id: str,
            prompt: str,
            context: Optional[Mapping[str, Any]] = None,
    ) -> Optional["asyncio.Task[None]"]:
        """
        Kick off a fresh generation. Returns the process task, or None when the
        job failed before the CLI could start (the failure is already recorded).
        Raises JobAlreadyRunningError when the job already has a process.
        """
        self.tracker.cleanup_finished(JOB_CLEANUP_AFTER_SECONDS)
        self.registry.claim_process(job_id)

        try:
            workspace = self.provisioner.provision(job_id)
            await self.store.mark_generating(job_id, str(workspace))
        except WorkspaceError as e:
            self.registry.release_process(job_id)
            await self._finish_failed(job_id, str(e))
            return None
        except Exception as e:
            self.registry.release_process(job_id)
            logger.exception(f"[Orchestrator {job_id}] Startup failed: {e}")
            await self._finish_failed(job_id, f"Failed to start generation: {e}")
            return None

        # overlaps with generation; joined in await_and_finalize
        self.installer.install_async(job_id, workspace)
        self.tracker.start_timed_promotion(job_id)

        args = build_cli_args(build_enriched_prompt(prompt, context), use_continue=False)
        return self.manager.start(
            job_id, workspace, args,
            on_complete=lambda meta: self._finish_complete(job_id, meta),
            on_error=lambda error: self._finish_failed(job_id, error),
            claimed=True,
        )

    async def start_iteration(self, job_id: str, prompt: str) -> str:
        """
        Refine a finished job in its existing workspace (--continue).
        Returns the iteration id.
        """
        self.registry.claim_process(job_id)
        try:
            iteration_id = await self.store.begin_iteration(job_id, prompt)
            app = await self.store.get(job_id)
            workspace = Path(app.source_dir)
        except Exception:
            self.registry.release_process(job_id)
            raise

        self._iterations[job_id] = iteration_id
        self.tracker.start_timed_promotion(job_id)

        self.manager.start(
            job_id, workspace, build_cli_args(prompt, use_continue=True),
            on_complete=lambda meta: self._finish_complete(job_id, meta),
            on_error=lambda error: self._finish_failed(job_id, error),
            claimed=True,
        )
        return iteration_id

    # -------- Cancel

    async def cancel(self, job_id: str) -> bool:
        """Kill the job's CLI (SIGTERM, then SIGKILL after the grace period). False if nothing is running."""
        if not self.registry.is_running(job_id):
            return False

        self.registry.mark_cancelled(job_id)
        self.tracker.cancel_timers(job_id)

        proc = self.registry.get_process(job_id)
        if proc is not None and proc.returncode is None:
            try:
                proc.terminate()
            except ProcessLookupError:
                pass
            try:
                await asyncio.wait_for(proc.wait(), self.cancel_grace_seconds)
            except asyncio.TimeoutError:
                logger.warning(f"[Orchestrator {job_id}] CLI ignored SIGTERM, killing")
                proc.kill()
                await proc.wait()

        install = self.registry.pop_install(job_id)
        if install is not None and not install.done():
            install.cancel()

        await self._flush_stage_writes(job_id)
        try:
            await self.store.mark_cancelled(job_id, CANCELLED_MESSAGE)
            await self._close_iteration(job_id, False, CANCELLED_MESSAGE)
        except Exception as e:
            logger.error(f"[Orchestrator {job_id}] Failed to record cancel: {e}")

        self.tracker.set_stage(job_id, "failed", message=CANCELLED_MESSAGE, error=CANCELLED_MESSAGE)
        logger.info(f"[Orchestrator {job_id}] Cancelled")
        return True

    def active_count(self) -> int:
        return self.registry.running_count()

    # -------- Continuations

    async def fail(self, job_id: str, error: str) -> None:
        """Record a failure that happened outside the CLI run (store row, iteration, terminal stage)."""
        await self._finish_failed(job_id, error)

    async def _finish_complete(self, job_id: str, meta: AppMetadata) -> None:
        if self.registry.is_cancelled(job_id):
            logger.info(f"[Orchestrator {job_id}] Completion after cancel ignored")
            return
        await self._flush_stage_writes(job_id)
        try:
            await self.store.mark_complete(job_id, meta.title, meta.description)
            await self._close_iteration(job_id, True)
        except Exception as e:
            logger.error(f"[Orchestrator {job_id}] Failed to record completion: {e}")
        finally:
            self.tracker.set_stage(job_id, "complete", title=meta.title, description=meta.description)

    async def _finish_failed(self, job_id: str, error: str) -> None:
        if self.registry.is_cancelled(job_id):
            logger.info(f"[Orchestrator {job_id}] Failure after cancel ignored: {error[:200]}")
            return
        await self._flush_stage_writes(job_id)
        try:
            await self.store.mark_failed(job_id, error)
            await self._close_iteration(job_id, False, error)
        except Exception as e:
            logger.error(f"[Orchestrator {job_id}] Failed to record failure: {e}")
        finally:
            self.tracker.set_stage(job_id, "failed", error=truncate_error(error))

    async def _close_iteration(self, job_id: str, success: bool, error: Optional[str] = None) -> None:
        iteration_id = self._iterations.pop(job_id, None)
        if iteration_id:
            await self.store.finish_iteration(iteration_id, success, error)

