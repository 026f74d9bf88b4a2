import asyncio
import json
from unittest.mock import AsyncMock, MagicMock

import pytest

from appbuilder.models.generated_app import JobStatus
from appbuilder.services.dependency_installer import NPM_INSTALL, DependencyInstaller
from appbuilder.services.generator import GenerationProcessManager
from appbuilder.services.job_registry import JobAlreadyRunningError, JobRegistry
from appbuilder.services.orchestrator import CANCELLED_MESSAGE, GenerationOrchestrator
from appbuilder.services.progress_stream import ProgressHub
from appbuilder.services.stage_tracker import StageTracker
from appbuilder.services.workspace_service import WorkspaceProvisioner
from tests.helpers import FakeRunner, fake_cli, wait_until

WRITE_APP = """
import json, sys
with open("args.json", "w") as fh:
    json.dump(sys.argv[1:], fh)
print("[APPBUILDER:STAGE:coding]", flush=True)
with open("package.json", "w") as fh:
    json.dump({"name": "pet-store", "description": "Pets for sale"}, fh)
"""

PROMPT = "An inventory tracker for a small pet store"


def _orchestrator(store, provisioner, script, runner=None, validator=None):
    registry = JobRegistry()
    # long timers so only real output moves the stage
    tracker = StageTracker(registry, designing_seconds=60, scaffolding_seconds=120)
    hub = ProgressHub()
    tracker.add_listener(hub.publish)
    if runner is None:
        installer = MagicMock()
        installer.await_and_finalize = AsyncMock(return_value="fresh")
    else:
        installer = DependencyInstaller(registry, runner)
    manager = GenerationProcessManager(
        registry, tracker, installer, command=fake_cli(script), marker_prefix="APPBUILDER", validator=validator,
    )
    orchestrator = GenerationOrchestrator(
        store=store,
        tracker=tracker,
        registry=registry,
        installer=installer,
        manager=manager,
        provisioner=provisioner,
        cancel_grace_seconds=2,
    )
    return orchestrator, tracker, hub, installer


@pytest.mark.anyio
async def test_generation_runs_to_complete(store, provisioner):
    orchestrator, tracker, hub, installer = _orchestrator(store, provisioner, WRITE_APP)
    job_id = await store.create(PROMPT, {"company_name": "Paws"})
    sub = hub.subscribe(job_id)

    task = await orchestrator.start_generation(job_id, PROMPT, {"company_name": "Paws"})
    await task

    app = await store.get(job_id)
    assert app.status == JobStatus.COMPLETE
    assert app.current_stage == "complete"
    assert app.title == "Pet Store"
    assert app.description == "Pets for sale"
    assert app.source_dir == str(provisioner.workspace_dir(job_id).resolve())

    installer.install_async.assert_called_once()
    final = tracker.get_stage(job_id)
    assert final.stage == "complete"
    assert final.title == "Pet Store"

    stages = [update.stage async for update in sub]
    assert stages == ["designing", "coding", "finalizing", "complete"]

    args = json.loads((provisioner.workspace_dir(job_id) / "args.json").read_text(encoding="utf-8"))
    assert "--continue" not in args
    assert "Company name: Paws" in args[1]
    assert orchestrator.active_count() == 0


@pytest.mark.anyio
async def test_generation_failure_is_recorded(store, provisioner):
    script = "import sys; sys.stderr.write('Error: model overloaded'); sys.exit(2)"
    orchestrator, tracker, _, installer = _orchestrator(store, provisioner, script)
    job_id = await store.create(PROMPT)

    task = await orchestrator.start_generation(job_id, PROMPT)
    await task

    app = await store.get(job_id)
    assert app.status == JobStatus.FAILED
    assert app.error == "Error: model overloaded"
    assert tracker.get_stage(job_id).error == "Error: model overloaded"
    installer.await_and_finalize.assert_not_awaited()


@pytest.mark.anyio
async def test_missing_playbook_fails_before_spawn(store, tmp_path):
    provisioner = WorkspaceProvisioner(apps_dir=tmp_path / "apps", playbook_dir=tmp_path / "missing")
    orchestrator, tracker, _, _ = _orchestrator(store, provisioner, WRITE_APP)
    job_id = await store.create(PROMPT)

    assert await orchestrator.start_generation(job_id, PROMPT) is None

    app = await store.get(job_id)
    assert app.status == JobStatus.FAILED
    assert "Playbook not found" in app.error
    assert tracker.get_stage(job_id).stage == "failed"
    assert not orchestrator.registry.is_running(job_id)


@pytest.mark.anyio
async def test_second_start_is_rejected(store, provisioner):
    orchestrator, _, _, _ = _orchestrator(store, provisioner, "import time; time.sleep(0.3)")
    job_id = await store.create(PROMPT)

    task = await orchestrator.start_generation(job_id, PROMPT)
    with pytest.raises(JobAlreadyRunningError):
        await orchestrator.start_generation(job_id, PROMPT)
    await task


@pytest.mark.anyio
async def test_cancel_kills_cli_and_marks_cancelled(store, provisioner):
    orchestrator, tracker, hub, _ = _orchestrator(store, provisioner, "import time; time.sleep(30)")
    job_id = await store.create(PROMPT)

    task = await orchestrator.start_generation(job_id, PROMPT)
    await wait_until(lambda: orchestrator.registry.get_process(job_id) is not None)
    sub = hub.subscribe(job_id)

    assert await orchestrator.cancel(job_id) is True
    await task

    app = await store.get(job_id)
    assert app.status == JobStatus.CANCELLED
    assert app.error == CANCELLED_MESSAGE

    update = tracker.get_stage(job_id)
    assert (update.stage, update.message, update.error) == ("failed", CANCELLED_MESSAGE, CANCELLED_MESSAGE)
    assert [u.stage async for u in sub] == ["failed"]
    assert not orchestrator.registry.is_running(job_id)


@pytest.mark.anyio
async def test_cancel_without_running_process(store, provisioner):
    orchestrator, _, _, _ = _orchestrator(store, provisioner, WRITE_APP)
    job_id = await store.create(PROMPT)
    assert await orchestrator.cancel(job_id) is False


@pytest.mark.anyio
async def test_iteration_reuses_workspace_with_continue(store, provisioner):
    orchestrator, tracker, _, _ = _orchestrator(store, provisioner, WRITE_APP)
    job_id = await store.create(PROMPT)
    await (await orchestrator.start_generation(job_id, PROMPT))

    iteration_id = await orchestrator.start_iteration(job_id, "Add a low-stock alert banner")
    assert iteration_id
    await wait_until(lambda: not orchestrator.registry.is_running(job_id))
    await wait_until(lambda: tracker.get_stage(job_id).stage == "complete")

    app = await store.get(job_id)
    assert app.status == JobStatus.COMPLETE
    assert app.iteration_count == 1

    args = json.loads((provisioner.workspace_dir(job_id) / "args.json").read_text(encoding="utf-8"))
    assert args[:3] == ["-p", "Add a low-stock alert banner", "--continue"]


@pytest.mark.anyio
async def test_missing_manifest_still_completes(store, provisioner):
    script = "import os; os.remove('package.json')"
    orchestrator, tracker, _, _ = _orchestrator(store, provisioner, script)
    job_id = await store.create(PROMPT)

    await (await orchestrator.start_generation(job_id, PROMPT))

    final = tracker.get_stage(job_id)
    assert (final.stage, final.title, final.description) == ("complete", "Generated App", "")
    assert (await store.get(job_id)).status == JobStatus.COMPLETE


@pytest.mark.anyio
async def test_iteration_runs_a_fresh_install(store, provisioner):
    runner = FakeRunner()
    orchestrator, _, _, _ = _orchestrator(store, provisioner, WRITE_APP, runner=runner)
    job_id = await store.create(PROMPT)
    await (await orchestrator.start_generation(job_id, PROMPT))
    assert [t for cmd, t in runner.calls if cmd == NPM_INSTALL] == [None, 60]

    workspace = provisioner.workspace_dir(job_id)
    (workspace / "node_modules").mkdir()
    runner.calls.clear()

    await orchestrator.start_iteration(job_id, "Add a low-stock alert banner")
    await wait_until(lambda: not orchestrator.registry.is_running(job_id))

    assert [t for cmd, t in runner.calls if cmd == NPM_INSTALL] == [120]


@pytest.mark.anyio
async def test_startup_crash_reaches_observers(store, provisioner):
    orchestrator, tracker, hub, installer = _orchestrator(store, provisioner, WRITE_APP)
    job_id = await store.create(PROMPT)
    sub = hub.subscribe(job_id)
    store.mark_generating = AsyncMock(side_effect=RuntimeError("database is locked"))

    assert await orchestrator.start_generation(job_id, PROMPT) is None

    assert [u.stage async for u in sub] == ["failed"]
    assert tracker.get_stage(job_id).error == "Failed to start generation: database is locked"
    app = await store.get(job_id)
    assert app.status == JobStatus.FAILED
    assert app.error == "Failed to start generation: database is locked"
    assert not orchestrator.registry.is_running(job_id)
    installer.install_async.assert_not_called()


@pytest.mark.anyio
async def test_cancel_during_finalization_stays_cancelled(store, provisioner):
    orchestrator, tracker, hub, installer = _orchestrator(store, provisioner, WRITE_APP)
    gate = asyncio.Event()
    finalizing = asyncio.Event()

    async def slow_finalize(job_id, workspace_dir):
        finalizing.set()
        await gate.wait()
        return "fresh"

    installer.await_and_finalize = AsyncMock(side_effect=slow_finalize)
    job_id = await store.create(PROMPT)
    sub = hub.subscribe(job_id)

    task = await orchestrator.start_generation(job_id, PROMPT)
    await asyncio.wait_for(finalizing.wait(), 10)
    assert await orchestrator.cancel(job_id) is True
    gate.set()
    await task

    final = tracker.get_stage(job_id)
    assert (final.stage, final.error) == ("failed", CANCELLED_MESSAGE)
    assert (await store.get(job_id)).status == JobStatus.CANCELLED

    stages = [u.stage async for u in sub]
    assert stages[-2:] == ["finalizing", "failed"]
    assert stages.count("failed") == 1
    assert "complete" not in stages


@pytest.mark.anyio
async def test_build_validation_runs_before_completion(store, provisioner):
    validator = MagicMock()
    validator.validate = AsyncMock(return_value=True)
    orchestrator, tracker, _, installer = _orchestrator(store, provisioner, WRITE_APP, validator=validator)
    job_id = await store.create(PROMPT)

    await (await orchestrator.start_generation(job_id, PROMPT))

    workspace = provisioner.workspace_dir(job_id).resolve()
    installer.await_and_finalize.assert_awaited_once()
    validator.validate.assert_awaited_once_with(job_id, workspace)
    assert tracker.get_stage(job_id).stage == "complete"
