"""Record types flowing through capture, encoding and replay.

These are plain dataclasses (not Pydantic) because one Record is built
for every chunk read from a child process pipe.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import IntEnum


class StreamTag(IntEnum):
    """Which logical stream a Record belongs to."""

    STDOUT = 1
    STDERR = 2
    EXIT_STATUS = 127


@dataclass(frozen=True)
class Record:
    """One captured unit: relative timing, stream tag and raw bytes.

    Attributes:
        elapsed_ms: Milliseconds since the producer's previous emission.
        tag: Stream the payload belongs to.
        payload: Raw bytes. For EXIT_STATUS, exactly one byte holding
            the process exit code.
    """

    elapsed_ms: int
    tag: StreamTag
    payload: bytes

    def __post_init__(self) -> None:
        if self.elapsed_ms < 0:
            raise ValueError(f"elapsed_ms must be non-negative, got {self.elapsed_ms}")
        # Accept plain ints from decoded data
        object.__setattr__(self, "tag", StreamTag(self.tag))
        if self.tag is StreamTag.EXIT_STATUS and len(self.payload) != 1:
            raise ValueError(
                f"EXIT_STATUS payload must be exactly one byte, got {len(self.payload)}"
            )

    @property
    def is_terminal(self) -> bool:
        return self.tag is StreamTag.EXIT_STATUS

    @property
    def exit_code(self) -> int:
        """Exit code carried by an EXIT_STATUS record."""
        if not self.is_terminal:
            raise ValueError(f"{self.tag.name} record carries no exit code")
        return self.payload[0]


def exit_record(code: int) -> Record:
    """Build the terminal record for an exit code in 0-255."""
    if not 0 <= code <= 255:
        raise ValueError(f"Exit code must fit in one byte, got {code}")
    return Record(elapsed_ms=0, tag=StreamTag.EXIT_STATUS, payload=bytes([code]))
