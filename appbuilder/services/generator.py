# FILE: appbuilder/services/generator.py
"""
Generation Process Manager

Runs the code-generation CLI for a job and turns its output into stage updates:
- stdout is newline-delimited JSON (stream-json); non-JSON lines are still
  scanned for inline [<PREFIX>:STAGE:<stage>] markers
- tool_use blocks become the tracker's detail line ("Creating src/app/page.tsx")
- exit 0 -> finalizing -> dependency finalization -> build validation -> on_complete(meta)
- anything else -> on_error(stderr or stdout or "Process exited with code N")
"""
import asyncio
import json
import logging
import os
import re
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Awaitable, Callable, Dict, List, Mapping, Optional

from appbuilder.core.config import (
    GENERATION_CLI,
    GENERATION_MAX_SECONDS,
    GENERATION_MODEL,
    MAX_LOG_CHARS,
    STAGE_MARKER_PREFIX,
)
from appbuilder.services.dependency_installer import DependencyInstaller
from appbuilder.services.job_registry import JobRegistry
from appbuilder.services.stage_tracker import STAGE_ORDER, StageTracker, stage_index

logger = logging.getLogger("appbuilder.generator")

# stream-json lines carry whole file bodies
STREAM_LINE_LIMIT = 16 * 1024 * 1024

# markers may move a job forward through these, never to complete
MARKER_STAGES = [s for s in STAGE_ORDER if s != "complete"]

BUILD_REQUIREMENTS = "\n".join([
    "[BUILD REQUIREMENTS]",
    "In addition to the user's request, ensure the app includes:",
    "- A dashboard home page with summary statistics and quick navigation",
    "- Full CRUD (create, read/list, update, delete) for every data entity",
    "- Searchable list views for each entity",
    "- Form validation on required fields",
    "- Delete confirmation dialogs before destructive actions",
    "- Realistic seed data (5-8 records per entity) in prisma/seed.ts",
    "- Responsive navigation that works on mobile (choose the layout style that best fits the app)",
    "- Empty states with helpful messages when sections have no data",
    "[END BUILD REQUIREMENTS]",
])


@dataclass
class AppMetadata:
    title: str = "Generated App"
    description: str = ""


OnComplete = Callable[[AppMetadata], Awaitable[None]]
OnError = Callable[[str], Awaitable[None]]


# ----------------------------
# Prompt / args
# ----------------------------
def build_enriched_prompt(prompt: str, context: Optional[Mapping[str, Any]] = None) -> str:
    sections: List[str] = []

    if context:
        parts: List[str] = []
        if context.get("business_context"):
            parts.append(f"Business: {context['business_context']}")
        if context.get("company_name"):
            parts.append(f"Company name: {context['company_name']}")
        state, country = context.get("state"), context.get("country")
        if state and country:
            parts.append(f"Location: {state}, {country}")
        elif country:
            parts.append(f"Location: {country}")
        use_cases = [u for u in (context.get("use_cases") or []) if u]
        if use_cases:
            parts.append(f"Industry focus: {', '.join(use_cases)}")

        if parts:
            sections.append("\n".join(["[BUSINESS CONTEXT]", *parts, "[END BUSINESS CONTEXT]"]))

    sections.append(prompt)
    sections.append(BUILD_REQUIREMENTS)
    return "\n\n".join(sections)


def build_cli_args(prompt: str, use_continue: bool = False, model: str = GENERATION_MODEL) -> List[str]:
    args = [
        "-p", prompt,
        "--output-format", "stream-json",
        "--verbose",
        "--dangerously-skip-permissions",
        "--model", model,
    ]
    if use_continue:
        args.insert(2, "--continue")
    return args


# ----------------------------
# Output parsing helpers
# ----------------------------
def extract_tool_detail(
        tool_name: str,
        tool_input: Optional[Dict[str, Any]],
        workspace_dir: Optional[Path] = None,
) -> Optional[str]:
    tool_input = tool_input or {}
    file_path = tool_input.get("file_path") or tool_input.get("path")
    short_path = None
    if isinstance(file_path, str) and file_path:
        prefix = f"{workspace_dir}/" if workspace_dir else None
        if prefix and file_path.startswith(prefix):
            short_path = file_path[len(prefix):]
        else:
            short_path = re.sub(r"^.*/apps/[^/]+/", "", file_path)

    if tool_name == "Write":
        return f"Creating {short_path}" if short_path else "Creating file..."
    if tool_name == "Edit":
        return f"Editing {short_path}" if short_path else "Editing file..."
    if tool_name == "Read":
        return f"Reading {short_path}" if short_path else "Reading file..."
    if tool_name == "Bash":
        description = tool_input.get("description")
        if isinstance(description, str) and description:
            return description[:80]
        return "Running command..."
    if tool_name in ("Glob", "Grep"):
        return "Searching codebase..."
    return None


def extract_app_metadata(workspace_dir: Path) -> AppMetadata:
    """Title/description from package.json; placeholders when it is missing or unreadable."""
    meta = AppMetadata()
    pkg_path = Path(workspace_dir) / "package.json"
    if not pkg_path.is_file():
        return meta
    try:
        pkg = json.loads(pkg_path.read_text(encoding="utf-8"))
    except (OSError, ValueError):
        return meta
    if not isinstance(pkg, dict):
        return meta

    name = pkg.get("name")
    if isinstance(name, str) and name:
        spaced = re.sub(r"[-_]", " ", name)
        meta.title = re.sub(r"\b\w", lambda m: m.group(0).upper(), spaced)
    description = pkg.get("description")
    if isinstance(description, str) and description:
        meta.description = description
    return meta


# ----------------------------
# Process manager
# ----------------------------
class GenerationProcessManager:
    def __init__(
            self,
            registry: JobRegistry,
            tracker: StageTracker,
            installer: DependencyInstaller,
            command: Optional[List[str]] = None,
            max_seconds: float = GENERATION_MAX_SECONDS,
            marker_prefix: str = STAGE_MARKER_PREFIX,
            validator=None,
    ) -> None:
        self.registry = registry
        self.tracker = tracker
        self.installer = installer
        # BuildValidator; None skips build validation
        self.validator = validator
        self.command = list(command or GENERATION_CLI)
        self.max_seconds = max_seconds
        self._marker = re.compile(rf"\[{re.escape(marker_prefix)}:STAGE:(\w+)\]")

    # -------- Public

    def start(
            self,
            job_id: str,
            workspace_dir: Path,
            cli_args: List[str],
            on_complete: OnComplete,
            on_error: OnError,
            claimed: bool = False,
    ) -> "asyncio.Task[None]":
        """
        Reserve the job's process slot and run the CLI in a background task.
        Raises JobAlreadyRunningError if the job already has a process.
        """
        if not claimed:
            self.registry.claim_process(job_id)
        return asyncio.create_task(
            self._run_claimed(job_id, Path(workspace_dir), cli_args, on_complete, on_error),
            name=f"generate-{job_id}",
        )

    async def run(
            self,
            job_id: str,
            workspace_dir: Path,
            cli_args: List[str],
            on_complete: OnComplete,
            on_error: OnError,
    ) -> None:
        await self.start(job_id, workspace_dir, cli_args, on_complete, on_error)

    # -------- Stage updates from output

    def check_for_stage_markers(self, job_id: str, text: str) -> None:
        if not text:
            return
        for match in self._marker.finditer(text):
            stage = match.group(1)
            if stage not in MARKER_STAGES:
                continue
            current = self.tracker.get_stage(job_id).stage
            if stage_index(stage) > stage_index(current):
                self.tracker.set_stage(job_id, stage)

    def handle_stream_event(self, job_id: str, event: Dict[str, Any], workspace_dir: Optional[Path] = None) -> None:
        kind = event.get("type")

        if kind == "assistant" and isinstance(event.get("message"), dict):
            content = event["message"].get("content")
            if isinstance(content, list):
                for block in content:
                    if not isinstance(block, dict):
                        continue
                    if block.get("type") == "text":
                        self.check_for_stage_markers(job_id, block.get("text") or "")
                    elif block.get("type") == "tool_use":
                        detail = extract_tool_detail(block.get("name") or "", block.get("input"), workspace_dir)
                        if detail:
                            self.tracker.set_detail(job_id, detail)

        elif kind == "result" and isinstance(event.get("result"), str):
            self.check_for_stage_markers(job_id, event["result"])

    def handle_line(self, job_id: str, line: str, workspace_dir: Optional[Path] = None) -> bool:
        """Returns True when the line was a structured event."""
        try:
            event = json.loads(line)
        except ValueError:
            self.check_for_stage_markers(job_id, line)
            return False
        if not isinstance(event, dict):
            self.check_for_stage_markers(job_id, line)
            return False
        self.handle_stream_event(job_id, event, workspace_dir)
        return True

    # -------- Internals

    async def _run_claimed(
            self,
            job_id: str,
            workspace_dir: Path,
            cli_args: List[str],
            on_complete: OnComplete,
            on_error: OnError,
    ) -> None:
        try:
            await self._run_process(job_id, workspace_dir, cli_args, on_complete, on_error)
        finally:
            self.registry.release_process(job_id)
            self.tracker.cancel_timers(job_id)

    async def _run_process(
            self,
            job_id: str,
            workspace_dir: Path,
            cli_args: List[str],
            on_complete: OnComplete,
            on_error: OnError,
    ) -> None:
        cmd = [*self.command, *cli_args]
        logger.info(f"[Generator {job_id}] Spawning CLI in {workspace_dir}")
        logger.info(f"[Generator {job_id}] Args: {' '.join(cmd)[:200]}...")
        logger.info(f"[Generator {job_id}] ANTHROPIC_API_KEY set: {bool(os.environ.get('ANTHROPIC_API_KEY'))}")

        if not workspace_dir.is_dir():
            await self._fail(job_id, on_error, f"Workspace not found: {workspace_dir}")
            return

        try:
            proc = await asyncio.create_subprocess_exec(
                *cmd,
                cwd=str(workspace_dir),
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                env=os.environ.copy(),
                limit=STREAM_LINE_LIMIT,
            )
        except FileNotFoundError:
            await self._fail(job_id, on_error, f"Generation CLI ({self.command[0]}) not found.")
            return
        except OSError as e:
            await self._fail(job_id, on_error, str(e))
            return

        self.registry.attach_process(job_id, proc)
        if self.registry.is_cancelled(job_id):
            proc.kill()

        stdout_parts: List[str] = []
        stderr_parts: List[str] = []
        counters = {"events": 0}

        async def read_stdout() -> None:
            assert proc.stdout is not None
            async for raw in proc.stdout:
                text = raw.decode("utf-8", errors="replace")
                stdout_parts.append(text)
                line = text.strip()
                if line and self.handle_line(job_id, line, workspace_dir):
                    counters["events"] += 1

        async def read_stderr() -> None:
            assert proc.stderr is not None
            async for raw in proc.stderr:
                text = raw.decode("utf-8", errors="replace")
                stderr_parts.append(text)
                if text.strip():
                    logger.info(f"[Generator {job_id}] stderr: {text.strip()[:500]}")

        timed_out = False
        pump = asyncio.gather(read_stdout(), read_stderr(), proc.wait())
        try:
            await asyncio.wait_for(pump, self.max_seconds if self.max_seconds > 0 else None)
        except asyncio.TimeoutError:
            timed_out = True
            logger.error(f"[Generator {job_id}] exceeded {self.max_seconds}s, killing CLI")
            if proc.returncode is None:
                proc.kill()
            await proc.wait()

        code = proc.returncode
        stdout_buf = "".join(stdout_parts)
        stderr_buf = "".join(stderr_parts)
        self.tracker.cancel_timers(job_id)
        self._log_exit(job_id, code, counters["events"], workspace_dir)

        if self.registry.is_cancelled(job_id):
            logger.info(f"[Generator {job_id}] Process ended after cancel (code {code})")
            return

        if timed_out:
            await self._fail(job_id, on_error, f"Generation timed out after {self.max_seconds:g}s")
            return

        if code == 0:
            await self._succeed(job_id, workspace_dir, on_complete)
            return

        error = stderr_buf.strip() or stdout_buf.strip() or f"Process exited with code {code}"
        logger.error(f"[Generator {job_id}] Failed with code {code}")
        logger.error(f"[Generator {job_id}] stderr: {stderr_buf[:MAX_LOG_CHARS]}")
        logger.error(f"[Generator {job_id}] stdout: {stdout_buf[:MAX_LOG_CHARS]}")
        await self._fail(job_id, on_error, error)

    async def _succeed(self, job_id: str, workspace_dir: Path, on_complete: OnComplete) -> None:
        self.tracker.set_stage(job_id, "finalizing")
        await self.installer.await_and_finalize(job_id, workspace_dir)
        if self.validator is not None and not self.registry.is_cancelled(job_id):
            await self.validator.validate(job_id, workspace_dir)

        # cancel() already recorded the terminal state
        if self.registry.is_cancelled(job_id):
            logger.info(f"[Generator {job_id}] Cancelled during finalization")
            return

        # read after finalization: a fix pass may rewrite package.json
        meta = extract_app_metadata(workspace_dir)
        logger.info(
            f'[Generator {job_id}] Complete: title="{meta.title}", description="{meta.description[:100]}"'
        )
        try:
            await on_complete(meta)
        except Exception as e:
            logger.exception(f"[Generator {job_id}] Error in completion handler: {e}")

    async def _fail(self, job_id: str, on_error: OnError, error: str) -> None:
        logger.error(f"[Generator {job_id}] {error[:MAX_LOG_CHARS]}")
        try:
            await on_error(error)
        except Exception as e:
            logger.exception(f"[Generator {job_id}] Error in failure handler: {e}")

    def _log_exit(self, job_id: str, code: Optional[int], events: int, workspace_dir: Path) -> None:
        try:
            files = sorted(p.name for p in workspace_dir.iterdir())
            logger.info(
                f"[Generator {job_id}] Exit code: {code}, events: {events}, "
                f"workspace files: {len(files)} ({', '.join(files[:10])})"
            )
        except OSError:
            logger.info(f"[Generator {job_id}] Exit code: {code}, events: {events}, workspace dir read failed")
