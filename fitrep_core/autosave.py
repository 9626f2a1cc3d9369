# fitrep_core/autosave.py
"""Adaptive autosave: debounce after edits plus a periodic safety net.

The periodic interval follows recent activity (more edits, shorter interval)
and is recalibrated on its own timer. Saves run as their own tasks so that
restarting a timer never cancels a write already in progress.
"""
from __future__ import annotations
from collections import deque
from typing import Deque, Optional, Set
import asyncio, logging, time

from .config import (
    ACTIVITY_HIGH,
    ACTIVITY_MODERATE,
    ACTIVITY_WINDOW_SEC,
    BASE_INTERVAL_SEC,
    DEBOUNCE_SEC,
    MAX_INTERVAL_SEC,
    MIN_INTERVAL_SEC,
    MODERATE_INTERVAL_SEC,
    RECALIBRATE_SEC,
    RETRY_ATTEMPTS,
    RETRY_BASE_DELAY_SEC,
)
from .durability import WritePipeline


log = logging.getLogger(__name__)


class AutoSaveScheduler:
    def __init__(
        self,
        pipeline: WritePipeline,
        *,
        debounce: float = DEBOUNCE_SEC,
        base_interval: float = BASE_INTERVAL_SEC,
        min_interval: float = MIN_INTERVAL_SEC,
        moderate_interval: float = MODERATE_INTERVAL_SEC,
        max_interval: float = MAX_INTERVAL_SEC,
        recalibrate_every: float = RECALIBRATE_SEC,
        activity_window: float = ACTIVITY_WINDOW_SEC,
        attempts: int = RETRY_ATTEMPTS,
        base_delay: float = RETRY_BASE_DELAY_SEC,
        clock=time.monotonic,
    ):
        self.pipeline = pipeline
        self.debounce = debounce
        self.base_interval = base_interval
        self.min_interval = min_interval
        self.moderate_interval = moderate_interval
        self.max_interval = max_interval
        self.recalibrate_every = recalibrate_every
        self.activity_window = activity_window
        self.attempts = attempts
        self.base_delay = base_delay
        self._clock = clock

        self.dirty = False
        self.interval = self._clamp(base_interval)
        self._generation = 0
        self._activity: Deque[float] = deque()
        self._lock = asyncio.Lock()
        self._debounce_task: Optional[asyncio.Task] = None
        self._periodic_task: Optional[asyncio.Task] = None
        self._recalibrate_task: Optional[asyncio.Task] = None
        self._saves: Set[asyncio.Task] = set()
        self.running = False

    @property
    def status(self):
        return self.pipeline.status

    # ---- activity / interval ----
    def _clamp(self, value: float) -> float:
        return max(self.min_interval, min(self.max_interval, value))

    def _prune(self) -> None:
        cutoff = self._clock() - self.activity_window
        while self._activity and self._activity[0] < cutoff:
            self._activity.popleft()

    def compute_interval(self) -> float:
        self._prune()
        n = len(self._activity)
        if n >= ACTIVITY_HIGH:
            target = self.min_interval
        elif n >= ACTIVITY_MODERATE:
            target = self.moderate_interval
        else:
            target = self.base_interval
        return self._clamp(target)

    def recalibrate(self) -> bool:
        """Recompute the periodic interval; the timer restarts only on change."""

        new = self.compute_interval()
        if new == self.interval:
            return False
        log.debug("autosave interval %.1fs -> %.1fs (activity=%d)", self.interval, new, len(self._activity))
        self.interval = new
        if self.running:
            self._restart_periodic()
        return True

    # ---- triggers ----
    def mark_dirty(self, reason: str = "edit") -> None:
        self._generation += 1
        self.dirty = True
        self._activity.append(self._clock())
        self.pipeline.status.set("unsaved")
        log.debug("dirty reason=%s generation=%d", reason, self._generation)
        self._restart_debounce()

    def _spawn_save(self) -> Optional[asyncio.Task]:
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            return None
        task = loop.create_task(self.save_if_dirty())
        self._saves.add(task)
        task.add_done_callback(self._saves.discard)
        return task

    def _restart_debounce(self) -> None:
        if not self.running:
            return
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            return
        if self._debounce_task is not None:
            self._debounce_task.cancel()
        self._debounce_task = loop.create_task(self._debounce_fire())

    async def _debounce_fire(self) -> None:
        await asyncio.sleep(self.debounce)
        self._debounce_task = None
        self._spawn_save()

    def _restart_periodic(self) -> None:
        if self._periodic_task is not None:
            self._periodic_task.cancel()
        self._periodic_task = asyncio.get_running_loop().create_task(self._periodic_loop())

    async def _periodic_loop(self) -> None:
        while True:
            await asyncio.sleep(self.interval)
            if self.dirty:
                self._spawn_save()

    async def _recalibrate_loop(self) -> None:
        while True:
            await asyncio.sleep(self.recalibrate_every)
            self.recalibrate()

    # ---- saves ----
    async def save_if_dirty(self) -> bool:
        return await self._save(force=False)

    async def force_save(self) -> bool:
        if self._debounce_task is not None:
            self._debounce_task.cancel()
            self._debounce_task = None
        self.dirty = True
        return await self._save(force=True)

    async def retry_now(self) -> bool:
        return await self._save(force=True)

    async def _save(self, force: bool) -> bool:
        async with self._lock:
            if not force and not self.dirty:
                log.debug("save coalesced; state already clean")
                return True
            while True:
                generation = self._generation
                ok = await self.pipeline.perform_save_with_retry(self.attempts, self.base_delay)
                if not ok:
                    return False
                if self._generation == generation:
                    self.dirty = False
                    return True
                log.debug("state changed during write; saving again")

    # ---- lifecycle ----
    def start(self) -> None:
        if self.running:
            return
        loop = asyncio.get_running_loop()
        self.running = True
        self._periodic_task = loop.create_task(self._periodic_loop())
        self._recalibrate_task = loop.create_task(self._recalibrate_loop())
        log.info("autosave started interval=%.1fs debounce=%.1fs", self.interval, self.debounce)

    async def close(self) -> None:
        """Cancel timers and wait for any write already in flight."""

        self.running = False
        timers = [t for t in (self._debounce_task, self._periodic_task, self._recalibrate_task) if t is not None]
        for task in timers:
            task.cancel()
        await asyncio.gather(*timers, return_exceptions=True)
        self._debounce_task = self._periodic_task = self._recalibrate_task = None
        if self._saves:
            await asyncio.gather(*list(self._saves), return_exceptions=True)
        log.info("autosave stopped dirty=%s", self.dirty)


__all__ = ["AutoSaveScheduler"]
