"""cmdcache execution - capture sessions and the replay-or-capture runner."""

from cmdcache.execution.capture import (
    CaptureResult,
    CaptureSession,
    CommandStartError,
    exit_code_from_returncode,
)
from cmdcache.execution.runner import CachedCommandRunner, run_passthrough

__all__ = [
    "CachedCommandRunner",
    "CaptureResult",
    "CaptureSession",
    "CommandStartError",
    "exit_code_from_returncode",
    "run_passthrough",
]
