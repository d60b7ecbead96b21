"""
Runtime holder for the engine state.

``AppStore.dispatch`` is the only way callers change state. After every intent
the ban check runs eagerly, and each accepted change is mirrored to the
repository without waiting for the write. ``BanWatchdog`` repeats the ban check
on a timer so a session banned by someone else ends within one period.
"""

import asyncio
import contextlib
from typing import Optional, Set

from loguru import logger

from engine import CheckBannedStatus, Intent, LoadSnapshot, apply
from schemas import AppState


class AppStore:
    def __init__(self, repository=None, state: Optional[AppState] = None):
        self._state = state if state is not None else AppState()
        self.repository = repository
        self._pending: Set[asyncio.Task] = set()
        self._save_lock = asyncio.Lock()
        self._saved: Optional[AppState] = None

    @property
    def state(self) -> AppState:
        return self._state

    def dispatch(self, intent: Intent) -> AppState:
        previous = self._state
        state = apply(previous, intent)
        if not isinstance(intent, CheckBannedStatus):
            state = apply(state, CheckBannedStatus())
        self._state = state
        if state is not previous:
            self._persist()
        return state

    def _persist(self) -> None:
        if self.repository is None:
            return
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            logger.debug("No running event loop; snapshot not persisted")
            return
        task = loop.create_task(self._save_latest())
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)

    async def _save_latest(self) -> None:
        # Saves run one at a time and always write the newest state
        async with self._save_lock:
            state = self._state
            if state is self._saved:
                return
            await self.repository.save(state)
            self._saved = state

    async def flush(self) -> None:
        """Wait for every outstanding save."""
        if self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)

    async def restore(self) -> AppState:
        if self.repository is None:
            return self._state
        snapshot = await self.repository.load()
        logger.info(
            f"Restored {len(snapshot.users)} users, {len(snapshot.swap_requests)} swap requests"
        )
        return self.dispatch(LoadSnapshot.from_state(snapshot))


class BanWatchdog:
    def __init__(self, store: AppStore, interval: float = 3.0):
        self.store = store
        self.interval = interval
        self._task: Optional[asyncio.Task] = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def tick(self) -> AppState:
        return self.store.dispatch(CheckBannedStatus())

    async def _run(self) -> None:
        while True:
            await asyncio.sleep(self.interval)
            self.tick()

    def start(self) -> None:
        if self.running:
            return
        self._task = asyncio.get_running_loop().create_task(self._run())
        logger.debug(f"Ban watchdog started ({self.interval}s period)")

    async def stop(self) -> None:
        if self._task is None:
            return
        self._task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await self._task
        self._task = None
        logger.debug("Ban watchdog stopped")
