import asyncio

import pytest

from appbuilder.client.api import BuilderAPIError
from appbuilder.client.breadcrumb import BreadcrumbStore
from appbuilder.client.preview import PreviewDeployError
from appbuilder.client.session import ITERATION_MESSAGE, GenerationSession
from appbuilder.services.stage_tracker import STAGE_MESSAGES

NOW = 10_000.0


class FakeApi:
    def __init__(self, status=None, events=None, error=None):
        self.status = status or {}
        self.events = events or {}
        self.error = error
        self.gate = None
        self.streamed = []
        self.status_calls = 0
        self.iterate_error = None
        self.preview_gate = None

    async def get_status(self, job_id):
        self.status_calls += 1
        if self.gate is not None:
            await self.gate.wait()
        if self.error is not None:
            raise self.error
        return dict(self.status, id=job_id)

    async def stream(self, job_id):
        self.streamed.append(job_id)
        for event in self.events.get(job_id, []):
            await asyncio.sleep(0)
            yield event

    async def iterate(self, job_id, prompt):
        if self.iterate_error is not None:
            raise self.iterate_error
        return "iter-1"

    async def start_preview(self, job_id):
        if self.preview_gate is not None:
            await self.preview_gate.wait()
        return {"url": "http://localhost:4001"}

    async def preview_status(self, job_id):
        return {"status": "ready", "url": "http://localhost:4001"}

    async def stop_preview(self, job_id):
        return None


@pytest.fixture
def crumbs(tmp_path):
    return BreadcrumbStore(tmp_path / "state.json")


def _session(api, crumbs):
    return GenerationSession(api, breadcrumbs=crumbs, clock=lambda: NOW)


async def _drain(session):
    if session.channel is not None:
        await session.channel


@pytest.mark.anyio
async def test_start_generation_follows_live_updates(crumbs):
    api = FakeApi(events={"j1": [
        {"job_id": "j1", "stage": "coding", "message": STAGE_MESSAGES["coding"], "detail": "Creating app/page.tsx"},
        {"job_id": "j1", "stage": "complete", "message": STAGE_MESSAGES["complete"],
         "title": "Recipe Box", "description": "Family recipes"},
    ]})
    session = _session(api, crumbs)

    session.start_generation("j1")
    assert session.state.stage == "pending"
    assert session.state.message == STAGE_MESSAGES["pending"]
    assert crumbs.read().job_id == "j1"

    await _drain(session)
    state = session.state
    assert (state.stage, state.title, state.description) == ("complete", "Recipe Box", "Family recipes")
    assert state.detail is None
    assert not session.channel_open


@pytest.mark.anyio
async def test_failed_update_captures_error(crumbs):
    api = FakeApi(events={"j1": [{"job_id": "j1", "stage": "failed", "error": "Process exited with code 1"}]})
    session = _session(api, crumbs)

    session.start_generation("j1")
    await _drain(session)

    assert session.state.stage == "failed"
    assert session.state.error == "Process exited with code 1"


@pytest.mark.anyio
async def test_updates_for_other_jobs_are_dropped(crumbs):
    session = _session(FakeApi(), crumbs)
    session.start_generation("j1")

    assert session.apply_update("j1", {"job_id": "j2", "stage": "complete"}) is True
    assert session.apply_update("j2", {"stage": "coding"}) is True
    assert session.state.stage == "pending"
    await session.close()


@pytest.mark.anyio
async def test_resume_active_job_reopens_channel(crumbs):
    crumbs.write("j1", started_at=NOW - 30)
    api = FakeApi(status={"status": "GENERATING", "current_stage": "database", "iteration_count": 2})
    session = _session(api, crumbs)

    assert await session.resume() is True
    state = session.state
    assert (state.job_id, state.stage, state.message) == ("j1", "database", STAGE_MESSAGES["database"])
    assert state.iteration_count == 2
    await _drain(session)
    assert api.streamed == ["j1"]


@pytest.mark.anyio
async def test_resume_active_job_without_stage_defaults_to_coding(crumbs):
    crumbs.write("j1", started_at=NOW - 30)
    session = _session(FakeApi(status={"status": "PENDING"}), crumbs)

    await session.resume()
    assert session.state.stage == "coding"
    await session.close()


@pytest.mark.anyio
async def test_resume_recent_finished_job_seeds_result(crumbs):
    crumbs.write("j1", started_at=NOW - 600)
    api = FakeApi(status={"status": "COMPLETE", "title": "Recipe Box", "preview_url": "http://localhost:4001"})
    session = _session(api, crumbs)

    assert await session.resume() is True
    assert session.state.stage == "complete"
    assert session.state.title == "Recipe Box"
    assert session.state.preview_url == "http://localhost:4001"
    assert session.channel is None


@pytest.mark.anyio
async def test_resume_recent_cancelled_job_shows_failure(crumbs):
    crumbs.write("j1", started_at=NOW - 600)
    session = _session(FakeApi(status={"status": "CANCELLED", "error": "Cancelled by user"}), crumbs)

    assert await session.resume() is True
    assert (session.state.stage, session.state.error) == ("failed", "Cancelled by user")


@pytest.mark.anyio
async def test_resume_stale_finished_job_clears_breadcrumb(crumbs):
    crumbs.write("j1", started_at=NOW - 7200)
    session = _session(FakeApi(status={"status": "COMPLETE"}), crumbs)

    assert await session.resume() is False
    assert session.state.stage == "idle"
    assert crumbs.read() is None


@pytest.mark.anyio
async def test_resume_fetch_failure_clears_breadcrumb(crumbs):
    crumbs.write("j1", started_at=NOW - 30)
    session = _session(FakeApi(error=BuilderAPIError(404, "Generation not found")), crumbs)

    assert await session.resume() is False
    assert session.state.stage == "idle"
    assert crumbs.read() is None


@pytest.mark.anyio
async def test_resume_runs_once(crumbs):
    crumbs.write("j1", started_at=NOW - 600)
    api = FakeApi(status={"status": "COMPLETE"})
    session = _session(api, crumbs)

    await session.resume()
    assert await session.resume() is False
    assert api.status_calls == 1


@pytest.mark.anyio
async def test_new_job_wins_over_slow_resume(crumbs):
    crumbs.write("old", started_at=NOW - 30)
    api = FakeApi(status={"status": "GENERATING", "current_stage": "coding"})
    api.gate = asyncio.Event()
    session = _session(api, crumbs)

    resuming = asyncio.create_task(session.resume())
    await asyncio.sleep(0.01)
    session.start_generation("new")
    api.gate.set()

    assert await resuming is False
    assert session.state.job_id == "new"
    assert session.state.stage == "pending"
    assert crumbs.read().job_id == "new"
    await session.close()


@pytest.mark.anyio
async def test_new_job_keeps_breadcrumb_when_stale_resume_fails(crumbs):
    crumbs.write("old", started_at=NOW - 30)
    api = FakeApi(error=BuilderAPIError(500, "boom"))
    api.gate = asyncio.Event()
    session = _session(api, crumbs)

    resuming = asyncio.create_task(session.resume())
    await asyncio.sleep(0.01)
    session.start_generation("new")
    api.gate.set()

    assert await resuming is False
    assert crumbs.read().job_id == "new"
    await session.close()


@pytest.mark.anyio
async def test_iteration_resets_progress(crumbs):
    session = _session(FakeApi(), crumbs)
    session.start_generation("j1")
    session.set_complete(title="Recipe Box")
    session.state.preview_url = "http://localhost:4001"

    session.increment_iteration()

    state = session.state
    assert state.iteration_count == 1
    assert (state.stage, state.message) == ("pending", ITERATION_MESSAGE)
    assert state.preview_url is None
    assert state.title == "Recipe Box"
    await session.close()


@pytest.mark.anyio
async def test_reset_returns_to_idle(crumbs):
    session = _session(FakeApi(), crumbs)
    session.start_generation("j1")
    session.set_published()

    session.reset()

    assert session.state.stage == "idle"
    assert session.state.job_id is None
    assert not session.state.published
    assert crumbs.read() is None
    assert session.channel is None


@pytest.mark.anyio
async def test_start_preview_records_url(crumbs):
    changes = []
    session = GenerationSession(FakeApi(), breadcrumbs=crumbs, clock=lambda: NOW, on_change=changes.append)
    session.start_generation("j1")
    await _drain(session)

    assert await session.start_preview() == "http://localhost:4001"
    assert session.state.preview_url == "http://localhost:4001"
    assert not session.state.preview_loading
    assert any(c.preview_loading for c in changes)

    await session.stop_preview()
    assert session.state.preview_url is None


@pytest.mark.anyio
async def test_iterate_starts_a_refinement(crumbs):
    session = _session(FakeApi(), crumbs)
    session.start_generation("j1")
    session.set_complete(title="Recipe Box")

    assert await session.iterate("Add a shopping list page") == "iter-1"

    assert session.state.iteration_count == 1
    assert (session.state.stage, session.state.message) == ("pending", ITERATION_MESSAGE)
    await session.close()


@pytest.mark.anyio
async def test_rejected_iteration_shows_failure(crumbs):
    api = FakeApi()
    api.iterate_error = BuilderAPIError(409, "Generation is still running")
    session = _session(api, crumbs)
    session.start_generation("j1")
    await session.close()

    assert await session.iterate("Add a shopping list page") is None

    state = session.state
    assert (state.stage, state.error) == ("failed", "Generation is still running")
    assert state.message == STAGE_MESSAGES["failed"]
    assert state.iteration_count == 0


@pytest.mark.anyio
async def test_stopping_a_deploy_clears_preview_loading(crumbs):
    api = FakeApi()
    api.preview_gate = asyncio.Event()
    session = _session(api, crumbs)
    session.start_generation("j1")
    await _drain(session)

    deploying = asyncio.create_task(session.start_preview())
    await asyncio.sleep(0.01)
    assert session.state.preview_loading

    await session.stop_preview()
    with pytest.raises(PreviewDeployError, match="stopped"):
        await deploying

    assert not session.state.preview_loading
    assert session.state.preview_url is None
