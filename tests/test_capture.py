"""Tests for cmdcache.execution.capture - running and recording commands."""

from __future__ import annotations

import errno
import io
import os
import subprocess
import sys
import textwrap
from pathlib import Path

import pytest

import cmdcache
from cmdcache.execution.capture import (
    CaptureSession,
    CommandStartError,
    exit_code_from_returncode,
)
from cmdcache.recording.codec import RecordDecoder, RecordEncodeError, RecordEncoder
from cmdcache.recording.models import Record, StreamTag
from cmdcache.storage import cache_store
from cmdcache.storage.cache_store import CacheStore

KEY = "capture-test"

INTERLEAVED = (
    "import sys, time\n"
    "sys.stdout.write('A'); sys.stdout.flush(); time.sleep(0.2)\n"
    "sys.stderr.write('B'); sys.stderr.flush(); time.sleep(0.2)\n"
    "sys.stdout.write('C'); sys.stdout.flush()\n"
)


def _py(source: str) -> list[str]:
    return [sys.executable, "-u", "-c", source]


def _read_entry(store: CacheStore, key: str = KEY) -> list[Record]:
    with store.open_read(key) as stream:
        return list(RecordDecoder(stream))


def _merge(records: list[Record]) -> list[tuple[StreamTag, bytes]]:
    """Join adjacent same-stream records (pipe reads may split writes)."""
    merged: list[tuple[StreamTag, bytes]] = []
    for record in records:
        if merged and merged[-1][0] is record.tag:
            merged[-1] = (record.tag, merged[-1][1] + record.payload)
        else:
            merged.append((record.tag, record.payload))
    return merged


def _session(store: CacheStore, argv: list[str], **kwargs) -> tuple[CaptureSession, io.BytesIO, io.BytesIO]:
    out, err = io.BytesIO(), io.BytesIO()
    session = CaptureSession(store, KEY, argv, stdout=out, stderr=err, **kwargs)
    return session, out, err


class TestExitCodeConversion:
    """Popen return codes become single-byte exit codes."""

    @pytest.mark.parametrize(
        ("returncode", "expected"),
        [(0, 0), (3, 3), (255, 255), (256, 0), (-9, 137), (-15, 143)],
    )
    def test_conversion(self, returncode: int, expected: int) -> None:
        assert exit_code_from_returncode(returncode) == expected


class TestCaptureSuccess:
    """Capturing a successful command."""

    def test_output_teed_and_recorded(self, store: CacheStore) -> None:
        session, out, err = _session(
            store, _py("import sys; print('hello'); print('oops', file=sys.stderr)")
        )
        result = session.run()

        assert result.exit_code == 0
        assert result.cached is True
        assert out.getvalue() == b"hello\n"
        assert err.getvalue() == b"oops\n"

        records = _read_entry(store)
        assert records[-1].is_terminal
        assert records[-1].exit_code == 0
        assert result.records_written == len(records)
        body = records[:-1]
        assert b"".join(r.payload for r in body if r.tag is StreamTag.STDOUT) == b"hello\n"
        assert b"".join(r.payload for r in body if r.tag is StreamTag.STDERR) == b"oops\n"

    def test_interleaving_preserved(self, store: CacheStore) -> None:
        session, out, err = _session(store, _py(INTERLEAVED))
        session.run()

        records = _read_entry(store)
        assert _merge(records[:-1]) == [
            (StreamTag.STDOUT, b"A"),
            (StreamTag.STDERR, b"B"),
            (StreamTag.STDOUT, b"C"),
        ]
        assert out.getvalue() == b"AC"
        assert err.getvalue() == b"B"

    def test_per_stream_timing(self, store: CacheStore) -> None:
        """C is timed from A (same stream), spanning both sleeps."""
        session, _, _ = _session(store, _py(INTERLEAVED))
        session.run()

        records = [r for r in _read_entry(store) if not r.is_terminal]
        c_record = next(r for r in records if r.payload.endswith(b"C"))
        assert c_record.elapsed_ms >= 300

    def test_shared_clock_mode(self, store: CacheStore) -> None:
        session, out, _ = _session(store, _py(INTERLEAVED), clock_mode="shared")
        result = session.run()
        assert result.cached is True
        assert out.getvalue() == b"AC"

    def test_empty_output_single_record(self, store: CacheStore) -> None:
        session, out, err = _session(store, _py("pass"))
        result = session.run()

        records = _read_entry(store)
        assert len(records) == 1
        assert records[0].tag is StreamTag.EXIT_STATUS
        assert records[0].exit_code == 0
        assert result.records_written == 1
        assert out.getvalue() == b""
        assert err.getvalue() == b""

    def test_large_output_streams_through(self, store: CacheStore) -> None:
        session, out, _ = _session(
            store,
            _py("import sys; sys.stdout.write('x' * 1_000_000)"),
            queue_size=2,
        )
        session.run()
        assert len(out.getvalue()) == 1_000_000
        recorded = b"".join(r.payload for r in _read_entry(store) if not r.is_terminal)
        assert recorded == b"x" * 1_000_000


class TestRetention:
    """Non-zero exit codes and the keep_failures policy."""

    def test_failure_discarded_by_default(self, store: CacheStore) -> None:
        session, out, _ = _session(store, _py("print('partial'); raise SystemExit(3)"))
        result = session.run()

        assert result.exit_code == 3
        assert result.cached is False
        assert out.getvalue() == b"partial\n"
        assert store.entries() == []
        assert list(store.root.glob("*.tmp")) == []

    def test_failure_kept_when_enabled(self, store: CacheStore) -> None:
        session, _, _ = _session(
            store, _py("raise SystemExit(3)"), keep_failures=True
        )
        result = session.run()

        assert result.cached is True
        records = _read_entry(store)
        assert records[-1].exit_code == 3

    def test_exit_code_255_kept(self, store: CacheStore) -> None:
        session, _, _ = _session(store, _py("raise SystemExit(255)"), keep_failures=True)
        assert session.run().exit_code == 255
        assert _read_entry(store)[-1].exit_code == 255

    def test_failure_removes_previous_entry(self, store: CacheStore) -> None:
        _session(store, _py("print('ok')"))[0].run()
        assert store.entries() == [KEY]
        _session(store, _py("raise SystemExit(1)"))[0].run()
        assert store.entries() == []


class TestStartFailure:
    """Commands that cannot be launched."""

    def test_missing_command_raises_and_discards(self, store: CacheStore, tmp_path) -> None:
        argv = [str(tmp_path / "no-such-command")]
        session, out, _ = _session(store, argv)
        with pytest.raises(CommandStartError) as excinfo:
            session.run()

        assert isinstance(excinfo.value.cause, FileNotFoundError)
        assert excinfo.value.argv == argv
        assert store.entries() == []
        assert list(store.root.glob("*.tmp")) == []
        assert out.getvalue() == b""

    def test_empty_argv_rejected(self, store: CacheStore) -> None:
        with pytest.raises(ValueError):
            CaptureSession(store, KEY, [])


class TestEncodeFailure:
    """Encode/write errors abort the entry but not the command."""

    def test_encode_error_aborts_entry(
        self, store: CacheStore, monkeypatch: pytest.MonkeyPatch
    ) -> None:
        def failing_write(self, record):
            raise RecordEncodeError("disk full")

        monkeypatch.setattr(RecordEncoder, "write", failing_write)
        session, out, _ = _session(store, _py("print('still visible')"))
        result = session.run()

        assert result.exit_code == 0
        assert result.cached is False
        assert result.error == "disk full"
        assert out.getvalue() == b"still visible\n"
        assert store.entries() == []

    def test_unexpected_encoder_error_does_not_hang(
        self, store: CacheStore, monkeypatch: pytest.MonkeyPatch
    ) -> None:
        def exploding_write(self, record):
            raise RuntimeError("compressor state lost")

        monkeypatch.setattr(RecordEncoder, "write", exploding_write)
        # Enough output to fill the channel if nothing drained it
        session, out, _ = _session(
            store,
            _py("import sys\nfor i in range(500): print(i, flush=True)"),
            queue_size=4,
        )
        result = session.run()

        assert result.exit_code == 0
        assert result.cached is False
        assert result.error == "compressor state lost"
        assert out.getvalue().splitlines()[-1] == b"499"
        assert store.entries() == []


class _FullDisk(io.RawIOBase):
    def writable(self) -> bool:
        return True

    def write(self, data) -> int:
        raise OSError(errno.ENOSPC, "No space left on device")


class TestSinkFailure:
    """A failing cache file loses the entry, never the command result."""

    def test_disk_full_returns_result(
        self, store: CacheStore, monkeypatch: pytest.MonkeyPatch
    ) -> None:
        real_open = open

        def full_disk_open(path, mode="r", *args, **kwargs):
            if str(path).endswith(".tmp"):
                return io.BufferedWriter(_FullDisk())
            return real_open(path, mode, *args, **kwargs)

        monkeypatch.setattr(cache_store, "open", full_disk_open, raising=False)
        size = 3 * 1024 * 1024
        session, out, _ = _session(
            store, _py(f"import os, sys\nsys.stdout.buffer.write(os.urandom({size}))")
        )
        result = session.run()

        assert result.exit_code == 0
        assert result.cached is False
        assert result.error is not None
        assert len(out.getvalue()) == size
        assert store.entries() == []


class TestStdin:
    """The child reads the invoking process's stdin."""

    def test_stdin_is_inherited(self, tmp_path: Path) -> None:
        root = tmp_path / "cache"
        script = textwrap.dedent(
            f"""
            import sys
            from pathlib import Path
            from cmdcache.execution.capture import CaptureSession
            from cmdcache.storage.cache_store import CacheStore

            child = [sys.executable, "-c", "import sys; sys.stdout.write(sys.stdin.read())"]
            store = CacheStore(Path({str(root)!r}))
            sys.exit(CaptureSession(store, {KEY!r}, child).run().exit_code)
            """
        )
        src_dir = str(Path(cmdcache.__file__).resolve().parents[1])
        env = {**os.environ, "PYTHONPATH": os.pathsep.join(
            p for p in (src_dir, os.environ.get("PYTHONPATH")) if p
        )}
        completed = subprocess.run(
            [sys.executable, "-c", script],
            input=b"piped data",
            capture_output=True,
            env=env,
            timeout=60,
        )

        assert completed.returncode == 0, completed.stderr
        assert completed.stdout == b"piped data"
        records = _read_entry(CacheStore(root))
        stdout = b"".join(r.payload for r in records if r.tag is StreamTag.STDOUT)
        assert stdout == b"piped data"
        assert records[-1].exit_code == 0
