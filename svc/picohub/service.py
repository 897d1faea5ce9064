from __future__ import annotations
import time
import logging
from typing import Any, Dict, List, Optional

from .models import Sample, PresenceView, DeviceMessage, DeviceSummary, ReadingSummary, IngestRequest
from .live import PresenceTracker, SampleRing, Sweeper
from .config import (
    LIVE_TTL_SECONDS,
    SWEEP_INTERVAL_SECONDS,
    LIVE_BUFFER_MAX,
    HISTORY_MAX_LIMIT,
    DEFAULT_DEVICE_ID,
)
from . import state

logger = logging.getLogger(__name__)


class TelemetryService:
    """
    Owns the live state of the process and fronts the durable store.

    One instance is built per app; handlers get it through Depends.
    """

    def __init__(
        self,
        ttl: float = LIVE_TTL_SECONDS,
        sweep_interval: float = SWEEP_INTERVAL_SECONDS,
        buffer_max: int = LIVE_BUFFER_MAX,
        default_device_id: str = DEFAULT_DEVICE_ID,
    ) -> None:
        self.ttl = ttl
        self.default_device_id = default_device_id
        self.tracker = PresenceTracker()
        self.ring = SampleRing(buffer_max)
        self.sweeper = Sweeper(self.tracker, ttl, sweep_interval)

    # lifecycle
    def bootstrap(self) -> None:
        """Prepare storage; any StorageError here is fatal for startup."""
        state.initialize_database()
        if self.default_device_id:
            state.ensure_device(
                self.default_device_id,
                name="Pico cooling system",
                location="Room 1",
                type="temp+fan",
            )
            logger.info(f"Device registered: {self.default_device_id}")

    def start(self) -> None:
        self.sweeper.start()

    def stop(self) -> None:
        self.sweeper.stop()

    # ingestion
    def ingest(self, reading: IngestRequest, raw: Any = None, now: Optional[float] = None) -> Sample:
        """
        Accept a validated reading.

        Live state is updated before anything is written to storage, so a
        storage failure still leaves the dashboard current.
        """
        now = time.time() if now is None else now
        sample = Sample(
            device_id=reading.device_id,
            value=reading.temp,
            fan=reading.fan if reading.fan is not None else 0.0,
            mode=reading.mode,
            timestamp=now,
        )
        self.tracker.record(sample.device_id, sample, now=now)
        self.ring.push(sample)

        state.store_reading(sample, raw if raw is not None else reading.model_dump(exclude_none=True))
        logger.info(
            f"Stored: {sample.device_id} {sample.value}°C, fan={sample.fan}, mode={sample.mode}"
        )
        return sample

    # live reads
    def live_samples(self) -> List[Sample]:
        return self.ring.snapshot()

    def live_devices(self, now: Optional[float] = None) -> List[PresenceView]:
        return self.tracker.list_live(self.ttl, now=now)

    # history
    def history(self, limit: int, device_id: Optional[str] = None) -> List[Sample]:
        limit = min(limit, HISTORY_MAX_LIMIT)
        return state.fetch_recent_samples(limit, device_id=device_id)

    # mailbox
    def enqueue_command(self, device_id: str, params: Any, now: Optional[float] = None) -> int:
        now = time.time() if now is None else now
        msg_id = state.enqueue_message(device_id, params, now)
        logger.info(f"Command {msg_id} queued for {device_id}")
        return msg_id

    def poll_command(self, device_id: str, peek: bool = False) -> Optional[DeviceMessage]:
        """Oldest queued command for the device; consumed unless peek is set."""
        if peek:
            return state.peek_message(device_id)
        msg = state.consume_message(device_id)
        if msg is not None:
            logger.info(f"Command {msg.id} delivered to {device_id}")
        return msg

    # registry
    def list_devices(self) -> List[DeviceSummary]:
        summaries = []
        for d in state.list_devices():
            device_id = d["device_id"]
            last_three = state.fetch_recent_samples(3, device_id=device_id)
            summaries.append(
                DeviceSummary(
                    device_id=device_id,
                    name=d["name"] or device_id,
                    location=d["location"] or "",
                    type=d["type"],
                    is_cooling=bool(self.default_device_id) and device_id == self.default_device_id,
                    last_three=[
                        ReadingSummary(value=s.value, fan=s.fan, mode=s.mode, timestamp=s.timestamp)
                        for s in last_three
                    ],
                )
            )
        return summaries

    # diagnostics
    def health(self) -> Dict[str, Any]:
        return {
            "status": "ok",
            "storage": "ok" if state.ping() else "error",
            "live_devices": len(self.live_devices()),
            "buffered_samples": len(self.ring),
            "ttl_seconds": self.ttl,
        }
