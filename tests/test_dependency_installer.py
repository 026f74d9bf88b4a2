import asyncio

import pytest

from appbuilder.services.dependency_installer import (
    NPM_INSTALL,
    PRISMA_FORMAT,
    PRISMA_GENERATE,
    PRISMA_PUSH,
    SEED,
    CommandResult,
    DependencyInstaller,
    ensure_binary_targets,
)
from appbuilder.services.job_registry import JobRegistry
from tests.helpers import FakeRunner

PRISMA_STEPS = [PRISMA_FORMAT, PRISMA_GENERATE, PRISMA_PUSH]


@pytest.mark.anyio
async def test_no_parallel_install_runs_fresh_install(tmp_path):
    runner = FakeRunner()
    installer = DependencyInstaller(JobRegistry(), runner)

    branch = await installer.await_and_finalize("job-1", tmp_path)

    assert branch == "fresh"
    assert runner.calls[0] == (NPM_INSTALL, 120)
    assert runner.commands()[1:] == PRISMA_STEPS


@pytest.mark.anyio
async def test_successful_parallel_install_gets_incremental_topup(tmp_path):
    runner = FakeRunner()
    installer = DependencyInstaller(JobRegistry(), runner)

    installer.install_async("job-1", tmp_path)
    branch = await installer.await_and_finalize("job-1", tmp_path)

    assert branch == "incremental"
    assert runner.calls[0] == (NPM_INSTALL, None)
    assert runner.calls[1] == (NPM_INSTALL, 60)
    assert runner.commands()[2:] == PRISMA_STEPS


@pytest.mark.anyio
async def test_failed_parallel_install_falls_back_to_full_install(tmp_path):
    runner = FakeRunner({tuple(NPM_INSTALL): [CommandResult(1, "", "ERESOLVE")]})
    installer = DependencyInstaller(JobRegistry(), runner)

    installer.install_async("job-1", tmp_path)
    branch = await installer.await_and_finalize("job-1", tmp_path)

    assert branch == "fallback"
    assert runner.calls[1] == (NPM_INSTALL, 120)
    assert runner.commands()[2:] == PRISMA_STEPS


@pytest.mark.anyio
async def test_failed_full_install_still_pushes_schema(tmp_path):
    runner = FakeRunner({tuple(NPM_INSTALL): [CommandResult(1), CommandResult(1)]})
    installer = DependencyInstaller(JobRegistry(), runner)

    installer.install_async("job-1", tmp_path)
    branch = await installer.await_and_finalize("job-1", tmp_path)

    assert branch == "fallback"
    assert runner.commands() == [NPM_INSTALL, NPM_INSTALL, *PRISMA_STEPS]


@pytest.mark.anyio
async def test_cancelled_parallel_install_counts_as_failure(tmp_path):
    gate = asyncio.Event()
    runner = FakeRunner()

    async def slow_first_install(cmd, cwd, timeout=None, env=None):
        if timeout is None:
            await gate.wait()
        return await runner(cmd, cwd, timeout=timeout, env=env)

    installer = DependencyInstaller(JobRegistry(), slow_first_install)
    task = installer.install_async("job-1", tmp_path)
    await asyncio.sleep(0)
    task.cancel()

    branch = await installer.await_and_finalize("job-1", tmp_path)

    assert branch == "fallback"
    assert runner.calls[0] == (NPM_INSTALL, 120)


@pytest.mark.anyio
async def test_database_steps_seed_and_reset_dev_db(tmp_path):
    (tmp_path / "prisma").mkdir()
    (tmp_path / "prisma" / "seed.ts").write_text("// seed", encoding="utf-8")
    (tmp_path / "dev.db").write_bytes(b"stale")
    runner = FakeRunner()
    installer = DependencyInstaller(JobRegistry(), runner)

    await installer.await_and_finalize("job-1", tmp_path)

    assert runner.commands()[-1] == SEED
    assert not (tmp_path / "dev.db").exists()


@pytest.mark.anyio
async def test_finalization_never_raises(tmp_path):
    async def exploding(cmd, cwd, timeout=None, env=None):
        raise RuntimeError("runner crashed")

    installer = DependencyInstaller(JobRegistry(), exploding)
    assert await installer.await_and_finalize("job-1", tmp_path) == "error"


def test_binary_targets_injected_once(tmp_path):
    schema = tmp_path / "prisma" / "schema.prisma"
    schema.parent.mkdir()
    schema.write_text('generator client {\n  provider = "prisma-client-js"\n}\n', encoding="utf-8")

    assert ensure_binary_targets(tmp_path) is True
    patched = schema.read_text(encoding="utf-8")
    assert "binaryTargets" in patched
    assert "debian-openssl-3.0.x" in patched

    assert ensure_binary_targets(tmp_path) is False
    assert schema.read_text(encoding="utf-8") == patched


def test_binary_targets_without_schema(tmp_path):
    assert ensure_binary_targets(tmp_path) is False
