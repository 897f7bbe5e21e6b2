"""Recording subpackage for record capture, encoding, and replay.

Provides the Record model, the stream multiplexer that merges child
output into one ordered channel, the streaming MessagePack codec, and
ReplaySession for re-emitting cached entries.
"""

from cmdcache.recording.codec import (
    RecordDecodeError,
    RecordDecoder,
    RecordEncodeError,
    RecordEncoder,
)
from cmdcache.recording.models import Record, StreamTag, exit_record
from cmdcache.recording.multiplexer import StreamMultiplexer, StreamProducer
from cmdcache.recording.replayer import ReplaySession

__all__ = [
    "Record",
    "RecordDecodeError",
    "RecordDecoder",
    "RecordEncodeError",
    "RecordEncoder",
    "ReplaySession",
    "StreamMultiplexer",
    "StreamProducer",
    "StreamTag",
    "exit_record",
]
