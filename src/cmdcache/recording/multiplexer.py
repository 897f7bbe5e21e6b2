"""Merge independently-timed byte producers into one ordered Record channel.

Every producer publishes onto the same bounded queue, and exactly one
consumer drains it, so the consumer never sees two records at once and
the encoded order equals arrival order on the queue. Each write is also
teed unmodified to a passthrough stream so a live observer sees output
while it is being captured.
"""

from __future__ import annotations

import logging
import queue
import threading
import time
from collections.abc import Callable
from typing import BinaryIO, Literal

from cmdcache.recording.models import Record, StreamTag

logger = logging.getLogger(__name__)

ClockMode = Literal["per_stream", "shared"]


class _Lap:
    """Millisecond lap timer over a monotonic clock function."""

    def __init__(self, clock: Callable[[], float]) -> None:
        self._clock = clock
        self._last = clock()

    def lap(self) -> int:
        now = self._clock()
        elapsed = int((now - self._last) * 1000)
        self._last = now
        return max(elapsed, 0)


class StreamProducer:
    """Writable endpoint for one logical stream.

    Created via StreamMultiplexer.producer(). Only one thread should
    write to a given producer; per-stream timing is unsynchronized.
    """

    def __init__(
        self,
        mux: "StreamMultiplexer",
        tag: StreamTag,
        passthrough: BinaryIO | None,
        lap: _Lap,
    ) -> None:
        self._mux = mux
        self.tag = tag
        self._passthrough = passthrough
        self._lap = lap

    def write(self, data: bytes) -> int:
        """Tee data to the passthrough stream and publish it as a Record.

        Args:
            data: Bytes read from the underlying source.

        Returns:
            Number of bytes accepted (always len(data)).
        """
        if not data:
            return 0
        payload = bytes(data)
        if self._passthrough is not None:
            try:
                self._passthrough.write(payload)
                self._passthrough.flush()
            except OSError as exc:
                # Observer went away; keep recording
                logger.warning("Live %s output disabled: %s", self.tag.name.lower(), exc)
                self._passthrough = None
        self._mux._emit(self._lap, self.tag, payload)
        return len(payload)


class StreamMultiplexer:
    """Single-channel fan-in for capture producers.

    Args:
        maxsize: Queue bound; producers block when the consumer lags.
        clock_mode: "per_stream" stamps each record with the time since
            its own producer's previous write. "shared" stamps it with
            the time since the previous record of any producer.
        clock: Monotonic clock in seconds (injectable for tests).
    """

    def __init__(
        self,
        maxsize: int = 64,
        clock_mode: ClockMode = "per_stream",
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        if clock_mode not in ("per_stream", "shared"):
            raise ValueError(f"Unknown clock mode: {clock_mode!r}")
        self.clock_mode = clock_mode
        self._clock = clock
        self._channel: queue.Queue[Record] = queue.Queue(maxsize=maxsize)
        self._shared_lap = _Lap(clock) if clock_mode == "shared" else None
        self._lock = threading.Lock()

    def producer(
        self, tag: StreamTag, passthrough: BinaryIO | None = None
    ) -> StreamProducer:
        """Create a producer for tag, starting its clock now."""
        lap = self._shared_lap if self._shared_lap is not None else _Lap(self._clock)
        return StreamProducer(self, tag, passthrough, lap)

    def _emit(self, lap: _Lap, tag: StreamTag, payload: bytes) -> None:
        if self._shared_lap is None:
            self._channel.put(Record(elapsed_ms=lap.lap(), tag=tag, payload=payload))
            return
        # Stamp and enqueue atomically so elapsed values follow queue order
        with self._lock:
            self._channel.put(Record(elapsed_ms=lap.lap(), tag=tag, payload=payload))

    def publish(self, record: Record) -> None:
        """Enqueue a pre-built record, e.g. the terminal exit record."""
        if self._shared_lap is None:
            self._channel.put(record)
            return
        with self._lock:
            self._channel.put(record)

    def get(self, timeout: float | None = None) -> Record:
        """Block until the next record is available."""
        return self._channel.get(timeout=timeout)
