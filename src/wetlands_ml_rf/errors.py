"""Exception hierarchy shared by the wetlands_ml_rf pipeline."""

from __future__ import annotations

from typing import Optional, Sequence


class WetlandsError(Exception):
    """Base class for every error raised by the pipeline."""


class ConfigurationError(WetlandsError, ValueError):
    """Bad or missing input parameters, reported before any compute."""


class EmptyCollectionError(WetlandsError):
    """No source images remain for a window after filtering."""

    def __init__(self, sensor: str, window_label: str, detail: str = "") -> None:
        self.sensor = sensor
        self.window_label = window_label
        message = f"No {sensor} images available for window '{window_label}'"
        if detail:
            message = f"{message} ({detail})"
        super().__init__(message)


class EmptyRegionError(WetlandsError):
    """A region holds no eligible labelled pixels for any class."""

    def __init__(self, region: str, detail: str = "") -> None:
        self.region = region
        message = f"Region '{region}' contains no eligible pixels"
        if detail:
            message = f"{message} ({detail})"
        super().__init__(message)


class BandCollisionError(WetlandsError):
    """Two bands of a feature stack resolved to the same name."""

    def __init__(self, names: Sequence[str]) -> None:
        self.names = tuple(names)
        super().__init__(f"Duplicate band names in feature stack: {', '.join(self.names)}")


class ResourceLimitError(WetlandsError):
    """A request is too large for the compute backend."""

    def __init__(self, what: str, requested: int, limit: int) -> None:
        self.what = what
        self.requested = requested
        self.limit = limit
        super().__init__(f"{what} requires {requested} pixels, exceeding the limit of {limit}")


class UndefinedMetricError(WetlandsError, ArithmeticError):
    """A metric is undefined for a degenerate confusion matrix."""


class PipelineRunError(WetlandsError):
    """Terminal failure of a run, naming where it stopped and what was produced."""

    def __init__(
        self,
        stage: str,
        cause: BaseException,
        region: Optional[str] = None,
        window: Optional[str] = None,
        produced: Sequence[str] = (),
    ) -> None:
        self.stage = stage
        self.cause = cause
        self.region = region
        self.window = window
        self.produced = tuple(produced)
        where = [f"stage={stage}"]
        if region:
            where.append(f"region={region}")
        if window:
            where.append(f"window={window}")
        produced_text = ", ".join(self.produced) if self.produced else "nothing"
        super().__init__(
            f"Run failed ({'; '.join(where)}): {cause}. Last produced: {produced_text}"
        )


__all__ = [
    "WetlandsError",
    "ConfigurationError",
    "EmptyCollectionError",
    "EmptyRegionError",
    "BandCollisionError",
    "ResourceLimitError",
    "UndefinedMetricError",
    "PipelineRunError",
]
