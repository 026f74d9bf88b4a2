# FILE: appbuilder/services/build_validator.py
"""
Build validation - runs after dependency finalization, before the job completes.

- a middleware.ts using the `export default auth(...)` wrapper is rewritten
- `npm run build` (first pass from a clean .next); a failure is reduced to its error lines
- up to MAX_AUTO_FIX_ATTEMPTS `--continue` CLI passes get those errors, each followed
  by an incremental install, prisma generate and another build

Never fails a job: a build that is still broken is logged and the job completes.
"""
import logging
import shutil
from pathlib import Path
from typing import List, Optional

from appbuilder.core.config import (
    BUILD_TIMEOUT_SECONDS,
    GENERATION_CLI,
    GENERATION_MAX_SECONDS,
    MAX_AUTO_FIX_ATTEMPTS,
    NPM_INCREMENTAL_TIMEOUT_SECONDS,
    PRISMA_TIMEOUT_SECONDS,
)
from appbuilder.services.dependency_installer import (
    NPM_INSTALL,
    PRISMA_FORMAT,
    PRISMA_GENERATE,
    Runner,
    run_command,
    workspace_env,
)
from appbuilder.services.generator import build_cli_args
from appbuilder.services.job_registry import JobRegistry
from appbuilder.services.stage_tracker import StageTracker

logger = logging.getLogger("appbuilder.build")

NPM_BUILD = ["npm", "run", "build"]

MAX_ERROR_LINES = 10
FALLBACK_TAIL_LINES = 20

ERROR_MARKERS = ("Error", "error", "Module not found", "⨯")

# Files the starter template owns; fix passes must leave them alone.
PROTECTED_FILES = [
    "src/auth.ts",
    "src/auth.config.ts",
    "src/lib/prisma.ts",
    "src/middleware.ts",
    "src/components/SessionProvider.tsx",
    "src/app/globals.css",
    "src/app/auth/page.tsx",
    "src/types/next-auth.d.ts",
]

MIDDLEWARE_PATH = Path("src") / "middleware.ts"

MIDDLEWARE_SOURCE = """import { NextResponse } from "next/server";
import type { NextRequest } from "next/server";

export function middleware(req: NextRequest) {
  if (process.env.PREVIEW_MODE === "true") return NextResponse.next();

  const path = req.nextUrl.pathname;

  // Skip auth pages and API routes (APIs self-protect via session checks)
  if (path.startsWith("/auth") || path.startsWith("/api")) {
    return NextResponse.next();
  }

  const hasSession =
    req.cookies.has("authjs.session-token") ||
    req.cookies.has("__Secure-authjs.session-token");

  if (!hasSession) {
    return NextResponse.redirect(new URL("/auth", req.url));
  }

  return NextResponse.next();
}

export const config = {
  matcher: ["/((?!_next/static|_next/image|favicon.ico).*)"],
};
"""


# ----------------------------
# Helpers
# ----------------------------
def is_error_line(line: str) -> bool:
    # Next.js prints these on every build; they are not failures
    if "middleware" in line and "deprecated" in line:
        return False
    if "proxy" in line and "instead" in line:
        return False
    if "⚠" in line and "Error" not in line:
        return False
    return any(marker in line for marker in ERROR_MARKERS)


def extract_build_errors(output: str, limit: int = MAX_ERROR_LINES) -> str:
    lines = [line for line in output.splitlines() if is_error_line(line)]
    return "\n".join(lines[:limit])


def build_fix_prompt(build_error: str) -> str:
    protected = ", ".join(PROTECTED_FILES)
    return (
        f"The app failed to build with this error:\n\n{build_error}\n\n"
        f"Fix the build error. Do not change any pre-built infrastructure files "
        f"({protected}, or any file under src/app/api/auth/). "
        f"Only fix the files you created or modified."
    )


def fix_middleware_export(workspace_dir: Path) -> bool:
    """
    The auth() wrapper returns a Promise in preview mode, so a default-exported
    auth(...) middleware breaks every request. Returns True when the file was rewritten.
    """
    path = Path(workspace_dir) / MIDDLEWARE_PATH
    if not path.is_file():
        return False
    source = path.read_text(encoding="utf-8")
    named = "export function middleware" in source or "export async function middleware" in source
    if "export default auth(" not in source and named:
        return False
    path.write_text(MIDDLEWARE_SOURCE, encoding="utf-8")
    return True


# ----------------------------
# Validator
# ----------------------------
class BuildValidator:
    def __init__(
            self,
            registry: JobRegistry,
            tracker: StageTracker,
            runner: Runner = run_command,
            command: Optional[List[str]] = None,
            max_attempts: int = MAX_AUTO_FIX_ATTEMPTS,
            build_timeout: float = BUILD_TIMEOUT_SECONDS,
            fix_timeout: float = GENERATION_MAX_SECONDS,
    ) -> None:
        self.registry = registry
        self.tracker = tracker
        self.runner = runner
        self.command = list(command or GENERATION_CLI)
        self.max_attempts = max_attempts
        self.build_timeout = build_timeout
        self.fix_timeout = fix_timeout

    async def validate(self, job_id: str, workspace_dir: Path) -> bool:
        """True when the last build passed. Never raises."""
        workspace_dir = Path(workspace_dir)
        try:
            return await self._validate(job_id, workspace_dir)
        except Exception as e:
            logger.error(f"[Build {job_id}] validation crashed (non-fatal): {e}")
            return False

    async def _validate(self, job_id: str, workspace_dir: Path) -> bool:
        if fix_middleware_export(workspace_dir):
            logger.info(f"[Build {job_id}] Fixed middleware export pattern")

        build_error = await self.try_build(job_id, workspace_dir, clean=True)
        attempt = 0
        while build_error and attempt < self.max_attempts:
            if self.registry.is_cancelled(job_id):
                return False
            attempt += 1
            logger.info(f"[Build {job_id}] Auto-fix attempt {attempt}/{self.max_attempts}")
            self.tracker.set_stage(job_id, "coding")

            if not await self.auto_fix(job_id, workspace_dir, build_error):
                logger.error(f"[Build {job_id}] Auto-fix CLI failed, giving up")
                if not self.registry.is_cancelled(job_id):
                    self.tracker.set_stage(job_id, "finalizing")
                break

            await self._refresh_dependencies(job_id, workspace_dir)
            if self.registry.is_cancelled(job_id):
                return False
            self.tracker.set_stage(job_id, "finalizing")
            build_error = await self.try_build(job_id, workspace_dir)

        if build_error:
            logger.error(f"[Build {job_id}] Build still failing after auto-fix attempts, proceeding anyway")
            return False
        return True

    async def try_build(self, job_id: str, workspace_dir: Path, clean: bool = False) -> Optional[str]:
        """None when the build passed, else the most useful part of its output."""
        if clean:
            # .next left behind by the CLI's own dev server may not be writable
            shutil.rmtree(workspace_dir / ".next", ignore_errors=True)

        logger.info(f"[Build {job_id}] Running build validation...")
        result = await self.runner(NPM_BUILD, workspace_dir, timeout=self.build_timeout, env=workspace_env())
        if result.ok:
            logger.info(f"[Build {job_id}] Build passed")
            return None

        output = result.stderr or result.stdout
        errors = extract_build_errors(output)
        if errors:
            logger.error(f"[Build {job_id}] Build failed:\n{errors}")
            return errors

        # non-zero exit with only warnings counts only if the bundle was produced
        if (workspace_dir / ".next" / "standalone").exists():
            logger.info(f"[Build {job_id}] Build exited non-zero but only had warnings, treating as pass")
            return None
        logger.warning(f"[Build {job_id}] Build exited non-zero without error lines and no standalone output")
        tail = "\n".join(output.splitlines()[-FALLBACK_TAIL_LINES:]).strip()
        return tail or "Build failed: .next/standalone not produced (no error details captured)"

    async def auto_fix(self, job_id: str, workspace_dir: Path, build_error: str) -> bool:
        cmd = [*self.command, *build_cli_args(build_fix_prompt(build_error), use_continue=True)]
        logger.info(f"[Build {job_id}] Auto-fix: running CLI with --continue")
        result = await self.runner(cmd, workspace_dir, timeout=self.fix_timeout if self.fix_timeout > 0 else None)
        logger.info(f"[Build {job_id}] Auto-fix CLI exited with code {result.returncode}")
        return result.ok

    async def _refresh_dependencies(self, job_id: str, workspace_dir: Path) -> None:
        # the fix may have added packages or touched the schema
        result = await self.runner(NPM_INSTALL, workspace_dir, timeout=NPM_INCREMENTAL_TIMEOUT_SECONDS)
        if not result.ok:
            logger.warning(f"[Build {job_id}] npm install after fix failed (non-fatal)")

        env = workspace_env()
        for cmd in (PRISMA_FORMAT, PRISMA_GENERATE):
            result = await self.runner(cmd, workspace_dir, timeout=PRISMA_TIMEOUT_SECONDS, env=env)
            if not result.ok:
                logger.warning(f"[Build {job_id}] {' '.join(cmd[1:])} after fix failed (non-fatal)")
                break
