"""
In-process pipe connecting a producer thread to a consumer.

The pipe holds at most ``depth`` chunks; a writer blocks once it is full,
so a slow reader throttles the producer. The writer can close the pipe
with an exception, which the reader then raises instead of reporting
end-of-stream. Closing the reader makes further writes fail with
``BrokenPipeError``.
"""

from __future__ import annotations

import io
import threading
from collections import deque

__all__ = ["PipeReader", "PipeWriter", "pipe"]


class _PipeState:
    def __init__(self, depth: int) -> None:
        if depth <= 0:
            raise ValueError(f"pipe depth must be positive, got {depth}")
        self.depth = depth
        self.cond = threading.Condition()
        self.chunks: deque[memoryview] = deque()
        self.write_closed = False
        self.read_closed = False
        self.error: BaseException | None = None


class PipeReader(io.RawIOBase):
    """Readable end of a :func:`pipe`."""

    def __init__(self, state: _PipeState) -> None:
        super().__init__()
        self._state = state

    def readable(self) -> bool:
        return True

    def readinto(self, buffer) -> int:  # type: ignore[override]
        if self.closed:
            raise ValueError("read from closed pipe")
        state = self._state
        view = memoryview(buffer).cast("B")
        with state.cond:
            while not state.chunks and not state.write_closed and not state.read_closed:
                state.cond.wait()
            if state.read_closed:
                raise ValueError("read from closed pipe")
            if not state.chunks:
                if state.error is not None:
                    raise state.error
                return 0
            chunk = state.chunks[0]
            n = min(len(view), len(chunk))
            view[:n] = chunk[:n]
            if n == len(chunk):
                state.chunks.popleft()
            else:
                state.chunks[0] = chunk[n:]
            state.cond.notify_all()
            return n

    def close(self) -> None:
        if not self.closed:
            with self._state.cond:
                self._state.read_closed = True
                self._state.chunks.clear()
                self._state.cond.notify_all()
        super().close()


class PipeWriter(io.RawIOBase):
    """Writable end of a :func:`pipe`."""

    def __init__(self, state: _PipeState) -> None:
        super().__init__()
        self._state = state

    def writable(self) -> bool:
        return True

    def write(self, data) -> int:  # type: ignore[override]
        if self.closed:
            raise ValueError("write to closed pipe")
        chunk = memoryview(bytes(data))
        if not chunk:
            return 0
        state = self._state
        with state.cond:
            while len(state.chunks) >= state.depth and not state.read_closed:
                state.cond.wait()
            if state.read_closed:
                raise BrokenPipeError("write to pipe with closed reader")
            state.chunks.append(chunk)
            state.cond.notify_all()
        return len(chunk)

    def close_with_error(self, error: BaseException) -> None:
        """Close the pipe so that the reader raises *error*."""
        with self._state.cond:
            if self._state.error is None:
                self._state.error = error
            # Pending data is dropped so the reader sees the failure next.
            self._state.chunks.clear()
        self.close()

    def close(self) -> None:
        if not self.closed:
            with self._state.cond:
                self._state.write_closed = True
                self._state.cond.notify_all()
        super().close()


def pipe(depth: int = 16) -> tuple[PipeReader, PipeWriter]:
    """Create a connected ``(reader, writer)`` pair."""
    state = _PipeState(depth)
    return PipeReader(state), PipeWriter(state)
