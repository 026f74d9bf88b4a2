# FILE: appbuilder/services/progress_stream.py
"""
Fan-out of tracker updates to live observers, one channel per job.

Subscribers only see updates published after they attach. A terminal
update (complete/failed) closes every subscription for that job.
"""
import asyncio
import logging
from typing import Dict, Optional, Set

from appbuilder.services.stage_tracker import StageUpdate

logger = logging.getLogger("appbuilder.stream")

_CLOSED = object()


class ProgressSubscription:
    def __init__(self, hub: "ProgressHub", job_id: str) -> None:
        self.hub = hub
        self.job_id = job_id
        self.closed = False
        self._queue: "asyncio.Queue[object]" = asyncio.Queue()

    def push(self, update: StageUpdate) -> None:
        if not self.closed:
            self._queue.put_nowait(update)

    def close(self) -> None:
        if not self.closed:
            self.closed = True
            self._queue.put_nowait(_CLOSED)

    async def next_update(self, timeout: Optional[float] = None) -> Optional[StageUpdate]:
        """
        Next update, or None once the channel is closed.
        Raises asyncio.TimeoutError if nothing arrives within `timeout`.
        """
        if timeout is None:
            item = await self._queue.get()
        else:
            item = await asyncio.wait_for(self._queue.get(), timeout)
        if item is _CLOSED:
            return None
        return item  # type: ignore[return-value]

    def __aiter__(self):
        return self

    async def __anext__(self) -> StageUpdate:
        update = await self.next_update()
        if update is None:
            raise StopAsyncIteration
        return update

    async def __aenter__(self) -> "ProgressSubscription":
        return self

    async def __aexit__(self, *exc) -> None:
        self.hub.unsubscribe(self)


class ProgressHub:
    def __init__(self) -> None:
        self._subs: Dict[str, Set[ProgressSubscription]] = {}

    def subscribe(self, job_id: str) -> ProgressSubscription:
        sub = ProgressSubscription(self, job_id)
        self._subs.setdefault(job_id, set()).add(sub)
        return sub

    def unsubscribe(self, sub: ProgressSubscription) -> None:
        subs = self._subs.get(sub.job_id)
        if subs is not None:
            subs.discard(sub)
            if not subs:
                self._subs.pop(sub.job_id, None)
        sub.close()

    def subscriber_count(self, job_id: str) -> int:
        return len(self._subs.get(job_id, ()))

    def publish(self, update: StageUpdate) -> None:
        subs = list(self._subs.get(update.job_id, ()))
        for sub in subs:
            sub.push(update)

        if update.terminal:
            for sub in subs:
                sub.close()
            self._subs.pop(update.job_id, None)
            if subs:
                logger.info(f"[Stream {update.job_id}] closed {len(subs)} observer(s) on {update.stage}")
