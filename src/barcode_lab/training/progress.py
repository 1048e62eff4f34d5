from __future__ import annotations

from typing import Protocol

from barcode_lab.logging import get_logger


class ProgressSink(Protocol):
    def report(self, fraction: float, message: str) -> None: ...


class NullProgress:
    def report(self, fraction: float, message: str) -> None:
        return None


class ScaledProgress:
    """Map a child's ``[0, 1]`` progress onto ``[start, end]`` of a parent sink."""

    def __init__(self, parent: ProgressSink, start: float, end: float) -> None:
        if end < start:
            raise ValueError(f"progress range is inverted: start={start} end={end}")
        self._parent = parent
        self._start = float(start)
        self._end = float(end)

    def report(self, fraction: float, message: str) -> None:
        f = max(0.0, min(1.0, float(fraction)))
        emit_progress(self._parent, self._start + (self._end - self._start) * f, message)


def emit_progress(sink: ProgressSink | None, fraction: float, message: str) -> None:
    if sink is None:
        return
    try:
        sink.report(max(0.0, min(1.0, float(fraction))), message)
    except (RuntimeError, ValueError, TypeError) as exc:
        get_logger().error("progress_sink_failed error=%s", exc)
        raise
