"""CaptureSession: run a command and record its output into the cache.

Wires the child's stdout and stderr pipes through one
StreamMultiplexer (teeing to the live streams as it goes), encodes the
merged record sequence into a CacheStore entry on a single consumer
thread, and terminates the sequence with the exit status record.
"""

from __future__ import annotations

import logging
import subprocess
import sys
import threading
from collections.abc import Sequence
from dataclasses import dataclass
from typing import IO, BinaryIO

from cmdcache.recording.codec import RecordEncodeError, RecordEncoder
from cmdcache.recording.models import Record, StreamTag, exit_record
from cmdcache.recording.multiplexer import ClockMode, StreamMultiplexer, StreamProducer
from cmdcache.storage.cache_store import CacheStore, CacheWriter

logger = logging.getLogger(__name__)

# Bytes requested per pipe read; read1 returns whatever is available
READ_CHUNK_SIZE = 64 * 1024


class CommandStartError(Exception):
    """Raised when the child process cannot be launched.

    Attributes:
        argv: The command line that failed to start.
        cause: The underlying OSError.
    """

    def __init__(self, argv: Sequence[str], cause: OSError) -> None:
        self.argv = list(argv)
        self.cause = cause
        super().__init__(f"Failed to start {argv[0]!r}: {cause}")


@dataclass
class CaptureResult:
    """Outcome of a capture run.

    Attributes:
        exit_code: Exit code of the child (0-255).
        cached: Whether a cache entry was committed.
        records_written: Number of records encoded, including the exit record.
        error: Description of an encode/write failure, if any.
    """

    exit_code: int
    cached: bool
    records_written: int
    error: str | None = None


def exit_code_from_returncode(returncode: int) -> int:
    """Convert a Popen returncode to a single-byte exit code.

    Negative return codes (terminated by signal N) map to 128 + N, the
    shell convention.
    """
    if returncode < 0:
        return (128 - returncode) & 0xFF
    return returncode & 0xFF


def _binary_stream(stream: IO) -> BinaryIO:
    return getattr(stream, "buffer", stream)


def _pump(pipe: BinaryIO, producer: StreamProducer) -> None:
    """Copy a child pipe into a producer until EOF."""
    with pipe:
        while True:
            chunk = pipe.read1(READ_CHUNK_SIZE)
            if not chunk:
                break
            producer.write(chunk)


class CaptureSession:
    """Run argv once, teeing its output live while recording it under key.

    A session is single-use; build a fresh one per invocation.

    Args:
        store: Cache store that owns the entry file.
        key: Cache key for this command line.
        argv: Command followed by its arguments.
        keep_failures: Keep entries whose exit code is non-zero.
        stdout: Live destination for the child's stdout (binary).
            Defaults to the invoking process's stdout.
        stderr: Live destination for the child's stderr (binary).
        clock_mode: Timing mode for the multiplexer.
        queue_size: Bound on records in flight between readers and encoder.
    """

    def __init__(
        self,
        store: CacheStore,
        key: str,
        argv: Sequence[str],
        keep_failures: bool = False,
        stdout: BinaryIO | None = None,
        stderr: BinaryIO | None = None,
        clock_mode: ClockMode = "per_stream",
        queue_size: int = 64,
    ) -> None:
        if not argv:
            raise ValueError("Cannot capture an empty command")
        self.store = store
        self.key = key
        self.argv = list(argv)
        self.keep_failures = keep_failures
        self.stdout = stdout if stdout is not None else _binary_stream(sys.stdout)
        self.stderr = stderr if stderr is not None else _binary_stream(sys.stderr)
        self.mux = StreamMultiplexer(maxsize=queue_size, clock_mode=clock_mode)
        self.finished = threading.Event()
        self._encode_error: Exception | None = None
        self._records_written = 0

    def run(self) -> CaptureResult:
        """Execute the command and capture it.

        Returns:
            CaptureResult with the child's exit code.

        Raises:
            CommandStartError: If the command could not be started. The
                in-progress entry is discarded first.
            CacheUnavailableError: If the cache entry cannot be created.
        """
        with self.store.begin_write(self.key) as writer:
            try:
                proc = subprocess.Popen(
                    self.argv,
                    stdout=subprocess.PIPE,
                    stderr=subprocess.PIPE,
                )
            except OSError as exc:
                writer.abort()
                self.store.discard(self.key)
                raise CommandStartError(self.argv, exc) from exc

            logger.debug("Started pid %d for %s", proc.pid, self.argv)
            consumer = threading.Thread(
                target=self._consume, args=(writer,), name="cmdcache-encoder", daemon=True
            )
            consumer.start()

            readers = [
                threading.Thread(
                    target=_pump,
                    args=(proc.stdout, self.mux.producer(StreamTag.STDOUT, self.stdout)),
                    name="cmdcache-stdout",
                    daemon=True,
                ),
                threading.Thread(
                    target=_pump,
                    args=(proc.stderr, self.mux.producer(StreamTag.STDERR, self.stderr)),
                    name="cmdcache-stderr",
                    daemon=True,
                ),
            ]
            for reader in readers:
                reader.start()

            returncode = proc.wait()
            for reader in readers:
                reader.join()

            exit_code = exit_code_from_returncode(returncode)
            self.mux.publish(exit_record(exit_code))
            # Wait until every record, including the exit record, is encoded
            self.finished.wait()
            consumer.join()

            return self._finalize(writer, exit_code)

    def _consume(self, writer: CacheWriter) -> None:
        """Single consumer: encode records until the exit record arrives.

        After a failure the remaining records are still drained so the
        readers never block on a full channel.
        """
        encoder = RecordEncoder(writer)
        try:
            while True:
                record: Record = self.mux.get()
                if self._encode_error is None:
                    try:
                        encoder.write(record)
                    except RecordEncodeError as exc:
                        logger.error("Capture of %s will not be cached: %s", self.argv[0], exc)
                        self._encode_error = exc
                    except Exception as exc:
                        logger.exception("Capture of %s will not be cached", self.argv[0])
                        self._encode_error = exc
                if record.is_terminal:
                    return
        finally:
            self._records_written = encoder.records_written
            self.finished.set()

    def _finalize(self, writer: CacheWriter, exit_code: int) -> CaptureResult:
        if self._encode_error is not None:
            writer.abort()
            return CaptureResult(
                exit_code=exit_code,
                cached=False,
                records_written=self._records_written,
                error=str(self._encode_error),
            )

        if exit_code != 0 and not self.keep_failures:
            logger.debug("Not caching %s: exit code %d", self.argv[0], exit_code)
            writer.abort()
            self.store.discard(self.key)
            return CaptureResult(
                exit_code=exit_code, cached=False, records_written=self._records_written
            )

        try:
            writer.commit()
        except OSError as exc:
            logger.error("Failed to finalize cache entry for %s: %s", self.argv[0], exc)
            writer.abort()
            return CaptureResult(
                exit_code=exit_code,
                cached=False,
                records_written=self._records_written,
                error=str(exc),
            )
        return CaptureResult(
            exit_code=exit_code, cached=True, records_written=self._records_written
        )
