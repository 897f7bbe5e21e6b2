"""ReplaySession for re-emitting a cached capture.

Decodes an entry one record at a time and writes each payload to the
stream it was captured from, optionally sleeping for the recorded
delay first, until the exit status record is reached.
"""

from __future__ import annotations

import logging
import sys
import time
from collections.abc import Callable
from typing import BinaryIO

from cmdcache.recording.codec import RecordDecodeError, RecordDecoder
from cmdcache.recording.models import StreamTag
from cmdcache.storage.cache_store import CacheStore

logger = logging.getLogger(__name__)


class ReplaySession:
    """Replay cached entries to live binary streams.

    Args:
        store: Cache store holding the entries.
        pace: Sleep each record's elapsed_ms before emitting it.
        strict: Raise on corrupt data instead of treating it as the end
            of the stream.
        stdout: Destination for STDOUT payloads. Defaults to sys.stdout.
        stderr: Destination for STDERR payloads. Defaults to sys.stderr.
        sleep: Sleep function taking seconds (injectable for tests).
    """

    def __init__(
        self,
        store: CacheStore,
        pace: bool = False,
        strict: bool = False,
        stdout: BinaryIO | None = None,
        stderr: BinaryIO | None = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.store = store
        self.pace = pace
        self.strict = strict
        self.stdout = stdout if stdout is not None else getattr(sys.stdout, "buffer", sys.stdout)
        self.stderr = stderr if stderr is not None else getattr(sys.stderr, "buffer", sys.stderr)
        self.sleep = sleep

    def replay(self, key: str) -> int:
        """Replay the entry for key and return its recorded exit code.

        If the stream ends before an exit status record, the last exit
        code seen is returned (0 if none).

        Raises:
            FileNotFoundError: If there is no entry for key.
            RecordDecodeError: In strict mode, if the entry is corrupt.
        """
        destinations: dict[StreamTag, BinaryIO | None] = {
            StreamTag.STDOUT: self.stdout,
            StreamTag.STDERR: self.stderr,
        }
        exit_code = 0

        with self.store.open_read(key) as source:
            decoder = RecordDecoder(source)
            while True:
                try:
                    record = next(decoder)
                except StopIteration:
                    logger.debug("Entry %s ended without an exit status record", key)
                    break
                except RecordDecodeError as exc:
                    if self.strict:
                        raise
                    logger.warning("Stopping replay of %s: %s", key, exc)
                    break

                if record.is_terminal:
                    exit_code = record.exit_code
                    break

                if self.pace and record.elapsed_ms > 0:
                    self.sleep(record.elapsed_ms / 1000)
                out = destinations.get(record.tag)
                if out is None:
                    continue
                try:
                    out.write(record.payload)
                    out.flush()
                except BrokenPipeError:
                    # Reader went away; keep decoding for the exit code
                    logger.debug("Destination for %s closed during replay", record.tag.name)
                    destinations[record.tag] = None

        return exit_code
