"""Shared fixtures for cmdcache tests."""

from __future__ import annotations

import io
from pathlib import Path

import pytest

from cmdcache.recording.models import Record, StreamTag, exit_record
from cmdcache.storage.cache_store import CacheStore


@pytest.fixture
def store(tmp_path: Path) -> CacheStore:
    """CacheStore rooted in a fresh temp directory."""
    return CacheStore(tmp_path / "cache")


@pytest.fixture
def sample_records() -> list[Record]:
    """A short interleaved capture ending with exit code 0."""
    return [
        Record(elapsed_ms=12, tag=StreamTag.STDOUT, payload=b"hello\n"),
        Record(elapsed_ms=250, tag=StreamTag.STDERR, payload=b"warning: slow\n"),
        Record(elapsed_ms=500, tag=StreamTag.STDOUT, payload=b"done\n"),
        exit_record(0),
    ]


@pytest.fixture
def outputs() -> tuple[io.BytesIO, io.BytesIO]:
    """(stdout, stderr) binary sinks."""
    return io.BytesIO(), io.BytesIO()
