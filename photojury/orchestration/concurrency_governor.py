"""Slot-based concurrency governor with latency-driven auto-scaling.

Arbitrates a bounded pool of execution slots for cooperative asyncio
tasks. Callers suspend on a future (never busy-wait) until a slot frees
up, and waiters are served in FIFO order.

Auto-scaling:
- The first `baseline_window` latency reports establish a baseline.
- Recent average below scale_up_factor x baseline: limit +1 (up to max).
- Recent average above scale_down_factor x baseline: limit -1 (min 1).
- Process memory above the threshold, sampled on every report, forces
  the limit to 1 until it drops back below the threshold.

A configured fixed_slots value pins the limit and disables scaling.
"""

import asyncio
import time
from collections import deque
from contextlib import asynccontextmanager
from typing import AsyncIterator, Callable, Deque, Dict, List, Optional

import psutil
import structlog

from photojury.models.concurrency import ConcurrencyStats, SlotHandle
from photojury.models.config import ConcurrencyConfig
from photojury.observability.metrics import ACTIVE_SLOTS, SLOT_LIMIT

logger = structlog.get_logger()

MemorySampler = Callable[[], float]


def process_memory_mb() -> float:
    """Resident memory of this process in MB"""
    return psutil.Process().memory_info().rss / (1024 * 1024)


class ConcurrencyGovernor:
    """Bounded slot pool for external inference calls.

    Invariants: 0 <= active <= max_slots and 1 <= slot_limit <= max_slots.
    """

    def __init__(
        self,
        config: Optional[ConcurrencyConfig] = None,
        memory_sampler: Optional[MemorySampler] = None,
    ):
        """Initialize the governor.

        Args:
            config: Concurrency configuration
            memory_sampler: Returns current memory use in MB (psutil RSS
                by default)
        """
        self.config = config or ConcurrencyConfig()
        self._memory_sampler = memory_sampler or process_memory_mb

        if self.config.fixed_slots is not None:
            self.max_slots = self.config.fixed_slots
            self.slot_limit = self.config.fixed_slots
            self.auto_scale = False
        else:
            self.max_slots = self.config.max_slots
            self.slot_limit = min(self.config.initial_slots, self.max_slots)
            self.auto_scale = self.config.auto_scale

        self.active = 0
        self._next_slot_id = 1
        self._held: Dict[int, SlotHandle] = {}
        self._waiters: Deque[asyncio.Future] = deque()

        # Baseline samples are kept only until the baseline exists
        self._baseline_samples: List[float] = []
        self._recent: Deque[float] = deque(maxlen=self.config.baseline_window)
        self._baseline_ms: Optional[float] = None
        self._last_memory_mb = 0.0
        self._memory_guard_active = False
        self._items_processed = 0
        self._started = time.monotonic()

        SLOT_LIMIT.set(self.slot_limit)
        ACTIVE_SLOTS.set(0)

        logger.info(
            "concurrency_governor_initialized",
            slot_limit=self.slot_limit,
            max_slots=self.max_slots,
            auto_scale=self.auto_scale,
        )

    # ==================== Slot Pool ====================

    def _grant(self) -> SlotHandle:
        handle = SlotHandle(slot_id=self._next_slot_id)
        self._next_slot_id += 1
        self._held[handle.slot_id] = handle
        self.active += 1
        ACTIVE_SLOTS.set(self.active)
        return handle

    def _wake_waiters(self) -> None:
        while self._waiters and self.active < self.slot_limit:
            waiter = self._waiters.popleft()
            if waiter.done():
                # Cancelled while queued
                continue
            waiter.set_result(self._grant())

    async def acquire(self) -> SlotHandle:
        """Acquire a slot, suspending until one is available.

        Returns:
            Handle to pass to release() and report_latency()
        """
        if self.active < self.slot_limit and not self._waiters:
            return self._grant()

        waiter: asyncio.Future = asyncio.get_running_loop().create_future()
        self._waiters.append(waiter)

        try:
            return await waiter
        except asyncio.CancelledError:
            if waiter.done() and not waiter.cancelled():
                # Slot was granted just before cancellation landed
                self.release(waiter.result())
            raise

    def release(self, handle: SlotHandle) -> None:
        """Release a slot and wake the next waiter.

        Releasing the same handle twice is ignored.
        """
        if self._held.pop(handle.slot_id, None) is None:
            logger.warning("slot_double_release_ignored", slot_id=handle.slot_id)
            return

        self.active -= 1
        ACTIVE_SLOTS.set(self.active)
        self._wake_waiters()

    @asynccontextmanager
    async def slot(self) -> AsyncIterator[SlotHandle]:
        """Hold a slot for the duration of the block.

        Example:
            async with governor.slot() as handle:
                result = await provider.invoke(payload, params)
        """
        handle = await self.acquire()
        try:
            yield handle
        finally:
            self.release(handle)

    # ==================== Auto-scaling ====================

    def report_latency(self, handle: SlotHandle, duration_ms: float) -> None:
        """Feed a completed call's latency into the scaling decision.

        The memory guard is checked on every report; latency comparisons
        start once the baseline exists.

        Args:
            handle: Slot the call ran in
            duration_ms: Call duration in milliseconds
        """
        self._recent.append(duration_ms)
        self._items_processed += 1

        window = self.config.baseline_window
        if self._baseline_ms is None:
            self._baseline_samples.append(duration_ms)
            if len(self._baseline_samples) >= window:
                self._baseline_ms = sum(self._baseline_samples) / window
                self._baseline_samples = []
                logger.debug(
                    "latency_baseline_established",
                    baseline_ms=round(self._baseline_ms, 1),
                    slot_id=handle.slot_id,
                )

        if not self.auto_scale:
            return
        if self._check_memory():
            return
        if self._baseline_ms is not None:
            self._adjust()

    def _set_limit(self, new_limit: int, reason: str, **context) -> None:
        old_limit = self.slot_limit
        self.slot_limit = max(1, min(new_limit, self.max_slots))
        if self.slot_limit == old_limit:
            return

        SLOT_LIMIT.set(self.slot_limit)
        logger.info(
            "slot_limit_changed",
            old_limit=old_limit,
            new_limit=self.slot_limit,
            reason=reason,
            **context,
        )
        self._wake_waiters()

    def _check_memory(self) -> bool:
        """Sample memory; returns True while the guard holds the limit at 1"""
        memory_mb = self._memory_sampler()
        self._last_memory_mb = memory_mb

        if memory_mb > self.config.memory_threshold_mb:
            self._memory_guard_active = True
            self._set_limit(
                1,
                "memory_guard",
                memory_mb=round(memory_mb, 1),
                threshold_mb=self.config.memory_threshold_mb,
            )
            return True

        if self._memory_guard_active:
            self._memory_guard_active = False
            logger.info("memory_guard_lifted", memory_mb=round(memory_mb, 1))
        return False

    def _adjust(self) -> None:
        assert self._baseline_ms is not None

        recent_avg = sum(self._recent) / len(self._recent)

        scale_down_at = self._baseline_ms * self.config.scale_down_factor
        scale_up_at = self._baseline_ms * self.config.scale_up_factor

        if recent_avg > scale_down_at:
            self._set_limit(
                self.slot_limit - 1,
                "latency_high",
                recent_ms=round(recent_avg, 1),
                threshold_ms=round(scale_down_at, 1),
            )
        elif recent_avg < scale_up_at and self.slot_limit < self.max_slots:
            self._set_limit(
                self.slot_limit + 1,
                "latency_low",
                recent_ms=round(recent_avg, 1),
                threshold_ms=round(scale_up_at, 1),
            )

    def stats(self) -> ConcurrencyStats:
        """Get current governor statistics"""
        avg = sum(self._recent) / len(self._recent) if self._recent else 0.0
        elapsed = time.monotonic() - self._started

        return ConcurrencyStats(
            active=self.active,
            slot_limit=self.slot_limit,
            max_slots=self.max_slots,
            waiting=sum(1 for w in self._waiters if not w.done()),
            auto_scale=self.auto_scale,
            baseline_latency_ms=self._baseline_ms,
            avg_latency_ms=round(avg, 1),
            memory_mb=round(self._last_memory_mb, 1),
            memory_guard_active=self._memory_guard_active,
            items_processed=self._items_processed,
            items_per_second=(
                round(self._items_processed / elapsed, 2) if elapsed > 0 else 0.0
            ),
        )
