from __future__ import annotations
import time
import threading
import logging
from collections import deque
from typing import Callable, Deque, Dict, List, Optional

from .models import Sample, PresenceView

logger = logging.getLogger(__name__)


class PresenceTracker:
    """
    Which devices are reporting right now.

    Holds last-seen time and last sample per device. Entries are refreshed
    on every reading and removed by sweep() once silent for longer than the
    TTL. Nothing here touches durable storage.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._last_seen: Dict[str, float] = {}
        self._last_sample: Dict[str, Sample] = {}

    def record(self, device_id: str, sample: Sample, now: Optional[float] = None) -> None:
        now = time.time() if now is None else now
        with self._lock:
            self._last_seen[device_id] = now
            self._last_sample[device_id] = sample

    def list_live(self, ttl: float, now: Optional[float] = None) -> List[PresenceView]:
        """Devices seen within ttl seconds (inclusive), most recently seen first."""
        now = time.time() if now is None else now
        with self._lock:
            entries = [
                (device_id, seen, self._last_sample[device_id])
                for device_id, seen in self._last_seen.items()
                if now - seen <= ttl
            ]
        entries.sort(key=lambda e: e[1], reverse=True)
        return [
            PresenceView(device_id=device_id, last_seen=seen, age=now - seen, last_sample=sample)
            for device_id, seen, sample in entries
        ]

    def sweep(self, ttl: float, now: Optional[float] = None) -> List[str]:
        """Forget devices silent for strictly longer than ttl; returns their ids."""
        now = time.time() if now is None else now
        with self._lock:
            stale = [d for d, seen in self._last_seen.items() if now - seen > ttl]
            for device_id in stale:
                del self._last_seen[device_id]
                self._last_sample.pop(device_id, None)
        return stale

    def __len__(self) -> int:
        with self._lock:
            return len(self._last_seen)


class SampleRing:
    """Most recent samples across all devices, oldest first, bounded."""

    def __init__(self, maxlen: int) -> None:
        if maxlen < 1:
            raise ValueError("ring size must be at least 1")
        self._lock = threading.Lock()
        self._buffer: Deque[Sample] = deque(maxlen=maxlen)

    @property
    def maxlen(self) -> int:
        return self._buffer.maxlen or 0

    def push(self, sample: Sample) -> None:
        # deque(maxlen) drops from the head once full
        with self._lock:
            self._buffer.append(sample)

    def snapshot(self) -> List[Sample]:
        with self._lock:
            return list(self._buffer)

    def __len__(self) -> int:
        with self._lock:
            return len(self._buffer)


class Sweeper:
    """
    Background thread that calls sweep() on the tracker every interval.

    The thread waits on an Event, so stop() returns promptly instead of
    sleeping out the remaining interval.
    """

    def __init__(
        self,
        tracker: PresenceTracker,
        ttl: float,
        interval_s: float,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.tracker = tracker
        self.ttl = ttl
        self.interval_s = interval_s
        self._clock = clock
        self._stop = threading.Event()
        self._thread: Optional[threading.Thread] = None

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def run_once(self) -> List[str]:
        evicted = self.tracker.sweep(self.ttl, now=self._clock())
        if evicted:
            logger.info(f"Presence sweep evicted {len(evicted)} device(s): {', '.join(evicted)}")
        return evicted

    def _loop(self) -> None:
        logger.info(f"Presence sweeper started (ttl={self.ttl}s, interval={self.interval_s}s)")
        while not self._stop.wait(self.interval_s):
            try:
                self.run_once()
            except Exception:
                logger.exception("Presence sweep failed")
        logger.info("Presence sweeper stopped")

    def start(self) -> None:
        if self.running:
            return
        self._stop.clear()
        self._thread = threading.Thread(target=self._loop, name="presence-sweeper", daemon=True)
        self._thread.start()

    def stop(self, timeout: Optional[float] = 5.0) -> None:
        self._stop.set()
        if self._thread is not None:
            self._thread.join(timeout)
            self._thread = None
