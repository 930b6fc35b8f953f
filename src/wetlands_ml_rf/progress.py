"""Progress reporting for window compositing and lazy dask evaluation."""

from __future__ import annotations

import logging
import threading

from dask.diagnostics import ProgressBar

LOGGER = logging.getLogger(__name__)

# dask callbacks are registered process-wide, so only one bar may be active.
_ACTIVE_BAR = threading.RLock()


def format_duration(seconds: float) -> str:
    if seconds >= 3600:
        return f"{seconds / 3600:.2f} h"
    if seconds >= 60:
        minutes = int(seconds // 60)
        remainder = seconds % 60
        return f"{minutes}m {remainder:.2f}s"
    if seconds >= 1:
        return f"{seconds:.2f}s"
    return f"{seconds * 1e3:.2f} ms"


class WindowProgress:
    """Logger-backed counter over the seasonal windows of a run."""

    def __init__(self, total: int) -> None:
        self.total = total
        self.completed = 0
        self.skipped = 0

    def start(self, label: str) -> None:
        LOGGER.info("Starting window %d/%d: %s", self.completed + self.skipped + 1, self.total, label)

    def finish(self, label: str) -> None:
        self.completed += 1
        LOGGER.info("Finished window %d/%d: %s", self.completed + self.skipped, self.total, label)

    def skip(self, label: str, reason: str) -> None:
        self.skipped += 1
        LOGGER.warning(
            "Skipping window %s (%s); progress %d/%d.",
            label,
            reason,
            self.completed + self.skipped,
            self.total,
        )


class LoggingProgressBar(ProgressBar):
    """Dask progress bar that emits percent updates via logging.

    Entering the bar serialises dask computations across threads, so
    concurrent jobs report their own progress under their own label.
    """

    def __init__(self, label: str, step: int = 10) -> None:
        super().__init__(minimum=1.0)
        self.label = label
        self.step = max(step, 1)
        self._last_percent = -self.step
        self._file = None

    def __enter__(self) -> "LoggingProgressBar":
        _ACTIVE_BAR.acquire()
        try:
            return super().__enter__()
        except BaseException:
            _ACTIVE_BAR.release()
            raise

    def __exit__(self, *args) -> None:
        try:
            super().__exit__(*args)
        finally:
            _ACTIVE_BAR.release()

    def _draw_bar(self, frac, elapsed):
        percent = int(frac * 100)
        if percent >= self._last_percent + self.step or (percent >= 100 > self._last_percent):
            LOGGER.info("%s progress: %d%% (elapsed %s)", self.label, percent, format_duration(elapsed))
            self._last_percent = percent


__all__ = ["format_duration", "WindowProgress", "LoggingProgressBar"]
