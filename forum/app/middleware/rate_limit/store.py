"""In-memory sliding window log storage.

Keeps the exact timestamps of recent events per key. Every operation that
touches a key runs under that key's own lock, so checks on different keys
never wait for each other while checks on the same key are serialised.
"""

import asyncio
import threading
import time
from collections import deque
from contextlib import contextmanager
from typing import Callable, Deque, Dict, Iterator, Optional

from forum.app.core.logging import get_logger
from forum.app.middleware.rate_limit.models import WindowCount

logger = get_logger(__name__)


class WindowCounterStore:
    """Per-key timestamp history with an atomic record-and-count primitive.

    Usage:
        store = WindowCounterStore()
        await store.start()      # periodic prune of abandoned keys
        store.record_and_count("rl:requests:anonymous", 60, 100)
        await store.stop()
    """

    DEFAULT_SWEEP_INTERVAL = 300.0  # 5 minutes
    DEFAULT_STALE_HORIZON = 3600.0  # 1 hour

    def __init__(
        self,
        clock: Callable[[], float] = time.time,
        sweep_interval: float = DEFAULT_SWEEP_INTERVAL,
        stale_horizon: float = DEFAULT_STALE_HORIZON,
    ):
        """Initialize the store.

        Args:
            clock: Time source returning epoch seconds
            sweep_interval: Seconds between background prune passes
            stale_horizon: Keys whose newest event is older than this are pruned
        """
        self._clock = clock
        self.sweep_interval = sweep_interval
        self.stale_horizon = stale_horizon

        self._history: Dict[str, Deque[float]] = {}
        self._locks: Dict[str, threading.Lock] = {}
        # Guards the _locks mapping only, never held across a key operation
        self._registry_lock = threading.Lock()

        self._task: Optional[asyncio.Task] = None
        self._stop_event = asyncio.Event()

    def now(self) -> float:
        return self._clock()

    def __len__(self) -> int:
        with self._registry_lock:
            return len(self._locks)

    def _key_lock(self, key: str) -> threading.Lock:
        with self._registry_lock:
            lock = self._locks.get(key)
            if lock is None:
                lock = threading.Lock()
                self._locks[key] = lock
            return lock

    @contextmanager
    def _locked(self, key: str) -> Iterator[None]:
        """Hold the lock of key.

        prune() retires a key's lock together with its history. A caller
        that raced with it may end up holding a retired lock, in which case
        it starts over with the live one.
        """
        while True:
            lock = self._key_lock(key)
            lock.acquire()
            with self._registry_lock:
                live = self._locks.get(key) is lock
            if live:
                break
            lock.release()
        try:
            yield
        finally:
            lock.release()

    def record_and_count(
        self, key: str, window_seconds: float, max_events: int
    ) -> WindowCount:
        """Count the events of key inside the window and maybe record one more.

        Timestamps older than now - window_seconds are dropped. The new event
        is appended only while the in-window count is below max_events, so a
        denied caller does not push its own window further out.

        Args:
            key: Rate limit key
            window_seconds: Length of the trailing window
            max_events: Ceiling the caller admits against

        Returns:
            WindowCount with the pre-append count and oldest in-window stamp
        """
        with self._locked(key):
            now = self._clock()
            window_start = now - window_seconds

            history = self._history.get(key)
            if history is None:
                history = deque()
                self._history[key] = history

            while history and history[0] < window_start:
                history.popleft()

            count = len(history)
            oldest = history[0] if history else None
            recorded = count < max_events
            if recorded:
                history.append(now)

            return WindowCount(count=count, oldest=oldest, recorded=recorded, now=now)

    def peek(self, key: str, window_seconds: float) -> int:
        """Number of events of key currently inside the window (no mutation)."""
        with self._locked(key):
            history = self._history.get(key)
            if not history:
                return 0
            window_start = self._clock() - window_seconds
            return sum(1 for stamp in history if stamp >= window_start)

    def prune(self, horizon_seconds: Optional[float] = None) -> int:
        """Drop keys whose most recent event is older than the horizon.

        Keys with an empty history are dropped as well. Each key is removed
        under its own lock, so a concurrent check is either fully before or
        fully after the removal.

        Returns:
            Number of keys removed
        """
        horizon = self.stale_horizon if horizon_seconds is None else horizon_seconds
        cutoff = self._clock() - horizon

        with self._registry_lock:
            candidates = list(self._locks.items())

        removed = 0
        for key, lock in candidates:
            with lock:
                with self._registry_lock:
                    if self._locks.get(key) is not lock:
                        continue
                    history = self._history.get(key)
                    if history and history[-1] >= cutoff:
                        continue
                    self._history.pop(key, None)
                    del self._locks[key]
                    removed += 1

        if removed:
            logger.debug(f"Pruned {removed} stale rate limit keys")
        return removed

    def reset(self) -> None:
        """Forget every key."""
        with self._registry_lock:
            self._history.clear()
            self._locks.clear()

    async def start(self) -> None:
        """Start the background prune task."""
        if self._task is not None:
            logger.debug("Rate limit sweeper already running")
            return

        self._stop_event.clear()
        self._task = asyncio.create_task(self._run_sweeps())
        logger.info(f"Started rate limit sweeper (interval: {self.sweep_interval}s)")

    async def stop(self) -> None:
        """Stop the background prune task."""
        if self._task is None:
            return

        self._stop_event.set()
        try:
            await asyncio.wait_for(self._task, timeout=5.0)
        except asyncio.TimeoutError:
            logger.warning("Rate limit sweeper did not stop gracefully, cancelling")
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
        finally:
            self._task = None
            logger.info("Stopped rate limit sweeper")

    async def _run_sweeps(self) -> None:
        while not self._stop_event.is_set():
            try:
                await asyncio.wait_for(
                    self._stop_event.wait(), timeout=self.sweep_interval
                )
            except asyncio.TimeoutError:
                self.prune()
