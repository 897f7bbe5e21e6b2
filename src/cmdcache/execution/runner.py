"""CachedCommandRunner: serve a command from cache or capture it.

Looks up the entry for a command line, replays it when fresh, and
otherwise captures a new run. When the cache itself is unusable the
command is executed directly without caching.
"""

from __future__ import annotations

import logging
import subprocess
from collections.abc import Sequence
from typing import BinaryIO

from cmdcache.execution.capture import (
    CaptureSession,
    CommandStartError,
    exit_code_from_returncode,
)
from cmdcache.keys import cache_key
from cmdcache.models.config import CacheConfig
from cmdcache.recording.codec import RecordDecodeError
from cmdcache.recording.replayer import ReplaySession
from cmdcache.storage.cache_store import CacheStore, CacheUnavailableError

logger = logging.getLogger(__name__)


def run_passthrough(argv: Sequence[str]) -> int:
    """Run argv with inherited stdio and no caching.

    Raises:
        CommandStartError: If the command could not be started.
    """
    try:
        completed = subprocess.run(list(argv), check=False)
    except OSError as exc:
        raise CommandStartError(argv, exc) from exc
    return exit_code_from_returncode(completed.returncode)


class CachedCommandRunner:
    """Replay-or-capture orchestration for one command line.

    Args:
        store: Cache store for entries.
        config: Effective settings (TTL, pacing, retention, ...).
        stdout: Binary destination for stdout (default: process stdout).
        stderr: Binary destination for stderr (default: process stderr).
    """

    def __init__(
        self,
        store: CacheStore,
        config: CacheConfig,
        stdout: BinaryIO | None = None,
        stderr: BinaryIO | None = None,
    ) -> None:
        self.store = store
        self.config = config
        self.stdout = stdout
        self.stderr = stderr

    def run(self, argv: Sequence[str]) -> int:
        """Produce the output and exit code of argv, from cache if possible.

        Returns:
            Exit code (0-255) of the live or replayed command.

        Raises:
            CommandStartError: If the command could not be started.
            RecordDecodeError: If strict decoding is on and the entry is
                corrupt. The entry is discarded first.
        """
        key = cache_key(argv)
        try:
            lookup = self.store.lookup(key, self.config.ttl)
        except CacheUnavailableError as exc:
            logger.warning("%s; running without cache", exc)
            return run_passthrough(argv)
        logger.debug("Lookup %s for %s: %s", key, argv[0], lookup.status.value)

        if lookup.is_fresh:
            try:
                return self._replay(key)
            except FileNotFoundError:
                # Removed between lookup and open
                logger.debug("Entry %s vanished before replay; capturing", key)
            except CacheUnavailableError as exc:
                logger.warning("%s; running without cache", exc)
                return run_passthrough(argv)

        session = CaptureSession(
            self.store,
            key,
            argv,
            keep_failures=self.config.keep_failures,
            stdout=self.stdout,
            stderr=self.stderr,
            clock_mode=self.config.clock,
            queue_size=self.config.queue_size,
        )
        try:
            result = session.run()
        except CacheUnavailableError as exc:
            logger.warning("%s; running without cache", exc)
            return run_passthrough(argv)

        logger.debug(
            "Captured %s: exit=%d cached=%s records=%d",
            argv[0],
            result.exit_code,
            result.cached,
            result.records_written,
        )
        return result.exit_code

    def _replay(self, key: str) -> int:
        replayer = ReplaySession(
            self.store,
            pace=self.config.delay,
            strict=self.config.strict_decode,
            stdout=self.stdout,
            stderr=self.stderr,
        )
        try:
            return replayer.replay(key)
        except RecordDecodeError:
            self.store.discard(key)
            raise
