"""
Demultiplexer for Docker's attach/exec stream format.

Non-TTY containers interleave stdout and stderr on one connection as frames:

    byte 0      stream type (1 = stdout, 2 = stderr)
    bytes 1-3   padding
    bytes 4-7   payload length, big-endian uint32
    payload

Chunks arrive split at arbitrary byte boundaries, so partial headers and
payloads are buffered until a whole frame is present.
"""

import struct
from datetime import datetime, timezone
from typing import Callable, List, Optional

from genstack.containers.models import AppLogEntry, LogLevel, LogStream

HEADER_SIZE = 8
STDERR_STREAM_TYPE = 2

_LENGTH = struct.Struct(">I")


def classify_log_level(message: str) -> LogLevel:
    lowered = message.lower()
    if "error" in lowered:
        return LogLevel.ERROR
    if "warn" in lowered:
        return LogLevel.WARN
    return LogLevel.INFO


class LogStreamDemultiplexer:
    """Feed raw chunks in, get one AppLogEntry per complete non-empty frame out."""

    def __init__(self, on_entry: Optional[Callable[[AppLogEntry], None]] = None):
        self.on_entry = on_entry
        self._buffer = bytearray()

    @property
    def pending_bytes(self) -> int:
        return len(self._buffer)

    def feed(self, chunk: bytes) -> List[AppLogEntry]:
        """
        Consume ``chunk`` and emit every frame it completes.

        Returns:
            The entries emitted by this call, in stream order
        """
        self._buffer.extend(chunk)
        emitted: List[AppLogEntry] = []

        while len(self._buffer) >= HEADER_SIZE:
            stream_type = self._buffer[0]
            (size,) = _LENGTH.unpack_from(self._buffer, 4)
            frame_end = HEADER_SIZE + size
            if len(self._buffer) < frame_end:
                break

            payload = bytes(self._buffer[HEADER_SIZE:frame_end])
            del self._buffer[:frame_end]

            message = payload.decode("utf-8", errors="replace").strip()
            if not message:
                continue

            entry = AppLogEntry(
                timestamp=datetime.now(timezone.utc),
                stream=LogStream.STDERR if stream_type == STDERR_STREAM_TYPE else LogStream.STDOUT,
                level=classify_log_level(message),
                message=message,
            )
            emitted.append(entry)
            if self.on_entry is not None:
                self.on_entry(entry)

        return emitted

    def reset(self) -> None:
        self._buffer.clear()
