# appbuilder/core/config.py
import os
from pathlib import Path
from typing import List, Optional
from dotenv import load_dotenv

# ================== ENV ==================

ROOT_DIR = Path(__file__).resolve().parents[2]
load_dotenv(ROOT_DIR / ".env", override=True)

def env(*names: str, default: Optional[str] = None) -> str:
    for n in names:
        v = os.environ.get(n)
        if v is not None and str(v).strip() != "":
            return v
    if default is not None:
        return default
    raise KeyError(f"Missing required env var. Tried: {', '.join(names)}")


def env_list(name: str, default: str = "") -> List[str]:
    raw = os.environ.get(name, default)
    return [part.strip() for part in raw.split(",") if part.strip()]

# ================== JWT ==================

JWT_SECRET = os.environ.get("JWT_SECRET", "default_secret_key")
JWT_ALGORITHM = "HS256"
JWT_EXPIRATION_HOURS = int(os.environ.get("JWT_EXPIRATION_HOURS", "24"))

# ================== WORKSPACES ==================

# Each job gets APPS_DIR/<job_id>; iterations reuse it.
APPS_DIR = Path(env("APPS_DIR", default=str(ROOT_DIR / "data" / "apps")))

# PLAYBOOK_DIR holds the instruction document and the starter template.
PLAYBOOK_DIR = Path(env("PLAYBOOK_DIR", default=str(ROOT_DIR / "playbook")))
PLAYBOOK_FILE = env("PLAYBOOK_FILE", default="INSTRUCTIONS.md")
TEMPLATE_DIRNAME = env("TEMPLATE_DIRNAME", default="template")

# The generation CLI reads its instructions from this filename in the cwd.
INSTRUCTIONS_FILENAME = env("INSTRUCTIONS_FILENAME", default="CLAUDE.md")

WORKSPACE_ENV = 'DATABASE_URL="file:./dev.db"\nAUTH_SECRET="preview-secret-key"\n'

# ================== GENERATION CLI ==================

GENERATION_CLI = env_list("GENERATION_CLI", default="npx,--yes,@anthropic-ai/claude-code")
GENERATION_MODEL = env("GENERATION_MODEL", "CLAUDE_MODEL", default="sonnet")
STAGE_MARKER_PREFIX = env("STAGE_MARKER_PREFIX", default="APPBUILDER")

# Timed early stages: designing -> scaffolding -> coding (both measured from start)
DESIGNING_SECONDS = float(os.environ.get("DESIGNING_SECONDS", "8"))
SCAFFOLDING_SECONDS = float(os.environ.get("SCAFFOLDING_SECONDS", "18"))

# 0 disables the wall-clock limit on a generation run.
GENERATION_MAX_SECONDS = float(os.environ.get("GENERATION_MAX_SECONDS", "0"))
CANCEL_GRACE_SECONDS = float(os.environ.get("CANCEL_GRACE_SECONDS", "3"))

MAX_ERROR_CHARS = 1000
MAX_LOG_CHARS = 2000

# ================== DEPENDENCIES ==================

NPM_INSTALL_TIMEOUT_SECONDS = int(os.environ.get("NPM_INSTALL_TIMEOUT_SECONDS", "120"))
NPM_INCREMENTAL_TIMEOUT_SECONDS = int(os.environ.get("NPM_INCREMENTAL_TIMEOUT_SECONDS", "60"))
PRISMA_TIMEOUT_SECONDS = int(os.environ.get("PRISMA_TIMEOUT_SECONDS", "30"))
SEED_SCRIPT = "prisma/seed.ts"

# ================== BUILD VALIDATION ==================

# Cold Next.js builds can take several minutes on small machines.
BUILD_TIMEOUT_SECONDS = int(os.environ.get("BUILD_TIMEOUT_SECONDS", "300"))
# --continue fix passes after a failed build; 0 skips auto-fix.
MAX_AUTO_FIX_ATTEMPTS = int(os.environ.get("MAX_AUTO_FIX_ATTEMPTS", "2"))

# ================== PREVIEW ==================

# Remote builder service; when unset previews run locally.
BUILDER_URL = (os.environ.get("BUILDER_URL") or "").strip().rstrip("/")
BUILDER_API_KEY = os.environ.get("BUILDER_API_KEY", "")

PREVIEW_BASE_PORT = int(os.environ.get("PREVIEW_BASE_PORT", "4001"))
PREVIEW_HOST = env("PREVIEW_HOST", default="localhost")
PREVIEW_READY_TIMEOUT_SECONDS = int(os.environ.get("PREVIEW_READY_TIMEOUT_SECONDS", "120"))
PREVIEW_POLL_SECONDS = float(os.environ.get("PREVIEW_POLL_SECONDS", "3"))
PREVIEW_TIMEOUT_SECONDS = float(os.environ.get("PREVIEW_TIMEOUT_SECONDS", str(5 * 60)))

# ================== JOBS ==================

JOB_CLEANUP_AFTER_SECONDS = 60 * 60
STREAM_KEEPALIVE_SECONDS = float(os.environ.get("STREAM_KEEPALIVE_SECONDS", "15"))

CORS_ORIGINS = env_list("CORS_ORIGINS", default="*")

# ================== CLIENT ==================

API_BASE_URL = env("APPBUILDER_API_URL", default="http://127.0.0.1:8000").rstrip("/")
CLIENT_STATE_FILE = Path(
    env("APPBUILDER_STATE_FILE", default=str(Path.home() / ".appbuilder" / "state.json"))
)
BREADCRUMB_KEY = "appbuilder_active_gen"
BREADCRUMB_MAX_AGE_SECONDS = 60 * 60

# ================== DATABASE ==================
# Using SQLite for local development

DATABASE_URL = os.environ.get("DATABASE_URL", "")

def get_database_url() -> str:
    """Get database URL - supports SQLite or MySQL."""
    if DATABASE_URL:
        return DATABASE_URL

    mysql_host = os.environ.get("MYSQL_HOST")
    if mysql_host and mysql_host != "127.0.0.1":
        mysql_port = int(os.environ.get("MYSQL_PORT", "3306"))
        mysql_user = os.environ.get("MYSQL_USER", "root")
        mysql_password = os.environ.get("MYSQL_PASSWORD", "")
        mysql_db = os.environ.get("MYSQL_DB", "appbuilder")
        return f"mysql+aiomysql://{mysql_user}:{mysql_password}@{mysql_host}:{mysql_port}/{mysql_db}?charset=utf8mb4"

    db_path = ROOT_DIR / "appbuilder.db"
    return f"sqlite+aiosqlite:///{db_path}"
