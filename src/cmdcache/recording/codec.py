"""Streaming MessagePack codec for Record sequences.

Each record is one self-delimiting MessagePack map appended to the
stream:

    {"T": elapsed_ms, "Id": tag, "Buf": payload}

The key names match entries written by earlier cmdcache releases, so
old cache files keep replaying. Neither side buffers more than one
record, and neither side knows about compression.
"""

from __future__ import annotations

import zlib
from collections.abc import Iterator
from typing import Any, BinaryIO

import msgpack

from cmdcache.recording.models import Record

# Bytes pulled from the source per read
DEFAULT_CHUNK_SIZE = 64 * 1024


class RecordEncodeError(Exception):
    """Raised when a record cannot be packed or written to the sink."""


class RecordDecodeError(Exception):
    """Raised when the stream holds a truncated or malformed record.

    Attributes:
        offset: Byte offset (in the decoded stream) of the bad record.
    """

    def __init__(self, message: str, offset: int) -> None:
        self.offset = offset
        super().__init__(f"{message} (at byte {offset})")


def record_to_wire(record: Record) -> dict[str, Any]:
    """Map a Record onto its wire dictionary."""
    return {"T": record.elapsed_ms, "Id": int(record.tag), "Buf": record.payload}


def record_from_wire(obj: Any) -> Record:
    """Build a Record from a decoded wire object.

    Raises:
        ValueError: If obj is not a well-formed record map.
    """
    if not isinstance(obj, dict):
        raise ValueError(f"expected a record map, got {type(obj).__name__}")
    try:
        elapsed, tag, payload = obj["T"], obj["Id"], obj["Buf"]
    except KeyError as exc:
        raise ValueError(f"record map is missing key {exc.args[0]!r}") from exc
    if not isinstance(elapsed, int) or isinstance(elapsed, bool):
        raise ValueError(f"elapsed time must be an integer, got {elapsed!r}")
    if not isinstance(tag, int) or isinstance(tag, bool):
        raise ValueError(f"stream tag must be an integer, got {tag!r}")
    if isinstance(payload, str):
        payload = payload.encode("utf-8", errors="surrogateescape")
    if not isinstance(payload, bytes):
        raise ValueError(f"payload must be bytes, got {type(payload).__name__}")
    return Record(elapsed_ms=elapsed, tag=tag, payload=payload)


class RecordEncoder:
    """Append encoded records to an open binary sink."""

    def __init__(self, sink: BinaryIO) -> None:
        self._sink = sink
        self._packer = msgpack.Packer(use_bin_type=True)
        self.records_written = 0

    def write(self, record: Record) -> None:
        """Encode one record and append it to the sink.

        Raises:
            RecordEncodeError: If packing or the underlying write fails.
        """
        try:
            self._sink.write(self._packer.pack(record_to_wire(record)))
        except (OSError, TypeError, ValueError) as exc:
            raise RecordEncodeError(
                f"Failed to write {record.tag.name} record: {exc}"
            ) from exc
        self.records_written += 1


class RecordDecoder:
    """Iterate records from a binary source.

    Iteration stops cleanly only when the source is exhausted on a
    record boundary. Anything else -- trailing partial bytes, invalid
    MessagePack, a map that is not a record, or a read error from the
    source (such as a corrupt gzip stream) -- raises RecordDecodeError.
    """

    def __init__(self, source: BinaryIO, chunk_size: int = DEFAULT_CHUNK_SIZE) -> None:
        self._source = source
        self._chunk_size = chunk_size
        self._unpacker = msgpack.Unpacker(raw=False)
        self._fed = 0
        # Offset just past the last complete record
        self._boundary = 0
        self._eof = False

    def __iter__(self) -> Iterator[Record]:
        return self

    def __next__(self) -> Record:
        while True:
            try:
                obj = self._unpacker.unpack()
            except msgpack.OutOfData:
                if not self._eof:
                    self._fill()
                    continue
                if self._boundary < self._fed:
                    raise RecordDecodeError(
                        f"Truncated record: {self._fed - self._boundary} trailing bytes",
                        self._boundary,
                    ) from None
                raise StopIteration from None
            except ValueError as exc:
                raise RecordDecodeError(
                    f"Malformed record: {exc}", self._boundary
                ) from exc
            offset = self._boundary
            self._boundary = self._unpacker.tell()
            try:
                return record_from_wire(obj)
            except ValueError as exc:
                raise RecordDecodeError(f"Invalid record: {exc}", offset) from exc

    def _fill(self) -> None:
        try:
            chunk = self._source.read(self._chunk_size)
        except (OSError, EOFError, zlib.error) as exc:
            raise RecordDecodeError(
                f"Failed to read record stream: {exc}", self._fed
            ) from exc
        if not chunk:
            self._eof = True
            return
        self._unpacker.feed(chunk)
        self._fed += len(chunk)
