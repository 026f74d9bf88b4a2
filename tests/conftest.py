import os
from pathlib import Path

import pytest
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

os.environ.setdefault("JWT_SECRET", "test-secret")

import appbuilder.models  # noqa: E402,F401
from appbuilder.core.database import Base  # noqa: E402
from appbuilder.services.job_store import JobStore  # noqa: E402
from appbuilder.services.workspace_service import WorkspaceProvisioner  # noqa: E402


@pytest.fixture
def anyio_backend():
    return "asyncio"


@pytest.fixture
async def store(tmp_path):
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'jobs.db'}")
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    sessions = async_sessionmaker(engine, expire_on_commit=False, class_=AsyncSession)
    yield JobStore(sessions, max_retries=3, retry_delay=0.01)
    await engine.dispose()


@pytest.fixture
def playbook_dir(tmp_path):
    playbook = tmp_path / "playbook"
    (playbook / "template" / "prisma").mkdir(parents=True)
    (playbook / "INSTRUCTIONS.md").write_text("# Build the app\n", encoding="utf-8")
    (playbook / "template" / "package.json").write_text('{"name": "starter"}', encoding="utf-8")
    return playbook


@pytest.fixture
def provisioner(tmp_path, playbook_dir):
    return WorkspaceProvisioner(apps_dir=tmp_path / "apps", playbook_dir=playbook_dir)
