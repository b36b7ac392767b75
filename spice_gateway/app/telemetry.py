"""
telemetry.py - Live sensor feed and real-time broadcast.

Holds the latest sample plus a bounded history ring, and pushes every
accepted sample to connected observers (WebSocket clients). Samples are
ephemeral: nothing here is persisted unless a caller promotes the latest
sample into a batch.

accept() never awaits, so on the single event loop two ingests cannot
interleave mid-update and no lock is needed.
"""
import logging
import os
import time
from collections import deque
from typing import Any, Optional, Protocol

log = logging.getLogger("spice.telemetry")

HISTORY_CAPACITY = int(os.getenv("TELEMETRY_HISTORY", "100"))
EVENT_NAME = "sensorReading"


class Observer(Protocol):
    async def send_json(self, data: Any) -> None: ...


class TelemetryFeed:

    def __init__(self, capacity: int = HISTORY_CAPACITY):
        if capacity < 1:
            raise ValueError("history capacity must be >= 1")
        self._latest: Optional[dict] = None
        self._history: deque[dict] = deque(maxlen=capacity)
        self._observers: list[Observer] = []

    @property
    def latest(self) -> Optional[dict]:
        return self._latest

    @property
    def capacity(self) -> int:
        return self._history.maxlen

    def history(self) -> list[dict]:
        """Buffered samples, oldest first."""
        return list(self._history)

    def accept(self, sample: dict) -> dict:
        """Stamp, store as latest and append to history (oldest evicted when full)."""
        sample = dict(sample)
        sample["_serverTs"] = int(time.time() * 1000)
        self._latest = sample
        self._history.append(sample)
        return sample

    @staticmethod
    def _message(sample: dict) -> dict:
        return {"event": EVENT_NAME, "data": sample}

    async def publish(self, sample: dict) -> int:
        """Push a sample to every observer. Returns how many received it."""
        delivered = 0
        for observer in list(self._observers):
            try:
                await observer.send_json(self._message(sample))
                delivered += 1
            except Exception as exc:
                log.info("dropping observer after failed send: %s", exc)
                self.disconnect(observer)
        return delivered

    async def connect(self, observer: Observer):
        """Register an observer; it gets the current latest sample only, no backfill."""
        self._observers.append(observer)
        log.info("observer connected (%d total)", len(self._observers))
        if self._latest is not None:
            try:
                await observer.send_json(self._message(self._latest))
            except Exception:
                self.disconnect(observer)
                raise

    def disconnect(self, observer: Observer):
        if observer in self._observers:
            self._observers.remove(observer)
            log.info("observer disconnected (%d total)", len(self._observers))

    @property
    def observer_count(self) -> int:
        return len(self._observers)


# Module-level singleton - shared across the gateway process.
feed = TelemetryFeed()


def get_feed() -> TelemetryFeed:
    return feed
