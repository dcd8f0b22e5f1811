"""Line framer — splits an arbitrary byte stream into newline-delimited frames.

The assistant CLIs write one JSON object per line, but the pipe hands
us chunks of whatever size the OS chose.  ``LineFramer`` accumulates
bytes, returns every complete line, and carries the partial remainder
into the next ``feed()`` call.  Frames are bytes so a multi-byte UTF-8
sequence split across two chunks is never decoded half-way.

A line that grows past ``max_frame_bytes`` without a newline is
discarded up to its terminating newline and counted in ``overflows``;
the frames around it are unaffected.
"""

from __future__ import annotations

DEFAULT_MAX_FRAME_BYTES: int = 8 * 1024 * 1024  # 8 MiB


class LineFramer:
    """Stateful newline frame splitter.

    Usage::

        framer = LineFramer()
        for chunk in chunks:
            for frame in framer.feed(chunk):
                handle(frame)
        tail = framer.flush()
        if tail is not None:
            handle(tail)
    """

    __slots__ = ("_buffer", "_max", "_discarding", "overflows")

    def __init__(self, max_frame_bytes: int = DEFAULT_MAX_FRAME_BYTES) -> None:
        if max_frame_bytes < 1:
            raise ValueError("max_frame_bytes must be >= 1")
        self._buffer = bytearray()
        self._max = max_frame_bytes
        self._discarding = False
        self.overflows = 0

    def feed(self, chunk: bytes) -> list[bytes]:
        """Add *chunk* and return every frame it completed (newline stripped)."""
        if not chunk:
            return []
        self._buffer.extend(chunk)

        frames: list[bytes] = []
        start = 0
        while True:
            idx = self._buffer.find(b"\n", start)
            if idx < 0:
                break
            if self._discarding:
                # Tail of an oversized line; drop it.
                self._discarding = False
            else:
                frames.append(_strip_cr(bytes(self._buffer[start:idx])))
            start = idx + 1
        if start:
            del self._buffer[:start]

        if len(self._buffer) > self._max:
            self._buffer.clear()
            if not self._discarding:
                self._discarding = True
                self.overflows += 1
        elif self._discarding:
            self._buffer.clear()
        return frames

    def flush(self) -> bytes | None:
        """Return the unterminated remainder at end of stream, if any."""
        discarding = self._discarding
        self._discarding = False
        if not self._buffer or discarding:
            self._buffer.clear()
            return None
        tail = _strip_cr(bytes(self._buffer))
        self._buffer.clear()
        return tail

    @property
    def pending(self) -> int:
        """Number of buffered bytes not yet returned as a frame."""
        return len(self._buffer)


def _strip_cr(frame: bytes) -> bytes:
    return frame[:-1] if frame.endswith(b"\r") else frame
