"""
Per-device heartbeat timers.

Each heartbeat re-arms a single timer for its device. If the timer fires,
the expiry callback (normally StateStore.mark_device_offline) decides
whether the device really goes offline. Timers live in this process only.

Heartbeat handling and the expiry handler for one device run under the same
per-device lock: an expiry that was already due when a heartbeat arrived
either finishes before the heartbeat's own write, or sees the re-armed timer
and does nothing.
"""

import asyncio
import itertools
import logging
import threading
from typing import Any, Awaitable, Callable, Optional

ExpiryCallback = Callable[[str], Awaitable[Any]]


class HeartbeatMonitor:
    """Owns the device -> pending expiry timer registry."""

    def __init__(
        self,
        on_expire: ExpiryCallback,
        timeout: float = 180.0,
        logger: Optional[logging.Logger] = None,
    ):
        self.timeout = timeout
        self._on_expire = on_expire
        self._log = logger or logging.getLogger(__name__)
        self._lock = threading.Lock()
        self._timers: dict[str, tuple[int, asyncio.TimerHandle]] = {}
        self._device_locks: dict[str, asyncio.Lock] = {}
        self._tokens = itertools.count()
        self._tasks: set[asyncio.Task] = set()
        self._closed = False

    def device_lock(self, dev_id: str) -> asyncio.Lock:
        """Lock shared by the device's heartbeat handling and its expiry handler."""
        with self._lock:
            lock = self._device_locks.get(dev_id)
            if lock is None:
                lock = self._device_locks[dev_id] = asyncio.Lock()
            return lock

    def on_heartbeat(self, dev_id: str) -> None:
        """Cancel any pending expiry for the device and start a new one."""
        loop = asyncio.get_running_loop()
        with self._lock:
            if self._closed:
                return
            previous = self._timers.pop(dev_id, None)
            if previous is not None:
                previous[1].cancel()
            token = next(self._tokens)
            handle = loop.call_later(self.timeout, self._fire, dev_id, token)
            self._timers[dev_id] = (token, handle)
        self._log.debug(
            "Heartbeat timer armed",
            extra={"dev_id": dev_id, "timeout_s": self.timeout, "rearmed": previous is not None},
        )

    def discard(self, dev_id: str) -> bool:
        """Drop the device's pending timer without running the expiry handler."""
        with self._lock:
            entry = self._timers.pop(dev_id, None)
            self._device_locks.pop(dev_id, None)
        if entry is None:
            return False
        entry[1].cancel()
        self._log.debug("Heartbeat timer discarded", extra={"dev_id": dev_id})
        return True

    def is_pending(self, dev_id: str) -> bool:
        with self._lock:
            return dev_id in self._timers

    @property
    def pending_count(self) -> int:
        with self._lock:
            return len(self._timers)

    def _fire(self, dev_id: str, token: int) -> None:
        with self._lock:
            current = self._timers.get(dev_id)
            # A newer heartbeat replaced this timer
            if current is None or current[0] != token:
                return
            del self._timers[dev_id]

        self._log.info("Heartbeat timeout", extra={"dev_id": dev_id, "timeout_s": self.timeout})
        task = asyncio.get_running_loop().create_task(self._expire(dev_id))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def _expire(self, dev_id: str) -> None:
        async with self.device_lock(dev_id):
            if self.is_pending(dev_id):
                self._log.debug("Heartbeat expiry superseded by a newer heartbeat", extra={"dev_id": dev_id})
                return
            try:
                await self._on_expire(dev_id)
            except asyncio.CancelledError:
                raise
            except Exception:
                self._log.exception("Heartbeat expiry handler failed", extra={"dev_id": dev_id})

    async def shutdown(self) -> None:
        """Cancel every pending timer and in-flight expiry handler."""
        with self._lock:
            self._closed = True
            timers = list(self._timers.values())
            self._timers.clear()
        for _, handle in timers:
            handle.cancel()

        tasks = list(self._tasks)
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        self._log.info("Heartbeat monitor stopped", extra={"cancelled_timers": len(timers)})
