import asyncio
import sys
import textwrap
from collections import defaultdict

from appbuilder.services.dependency_installer import CommandResult


def fake_cli(script: str):
    """Command that runs `script` with the real interpreter; CLI args land in sys.argv."""
    return [sys.executable, "-c", textwrap.dedent(script)]


async def wait_until(predicate, timeout: float = 10.0, interval: float = 0.02) -> None:
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not reached in time")
        await asyncio.sleep(interval)


class FakeRunner:
    """Records every command; per-command results are consumed in order, default success."""

    def __init__(self, results=None):
        self.calls = []
        self.results = defaultdict(list)
        for cmd, outcomes in (results or {}).items():
            self.results[tuple(cmd)].extend(outcomes)

    async def __call__(self, cmd, cwd, timeout=None, env=None):
        self.calls.append((list(cmd), timeout))
        queue = self.results[tuple(cmd)]
        return queue.pop(0) if queue else CommandResult(0)

    def commands(self):
        return [cmd for cmd, _ in self.calls]
