"""Confusion matrix accuracy statistics for classified samples.

Rows of the matrix are reference classes and columns are predicted classes,
both restricted to the non-zero classes observed. Accuracy terms follow the
remote sensing convention:

* overall accuracy = trace / total
* producer's accuracy (recall) = diagonal / row total
* consumer's accuracy (precision) = diagonal / column total
* Cohen's kappa = (observed - expected) / (1 - expected), with
  expected = sum(row_total * column_total) / total ** 2
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Dict, Optional, Sequence, Tuple

import numpy as np
import pandas as pd

from .errors import ConfigurationError, UndefinedMetricError
from .sampling import NO_DATA_CLASS, PREDICTION_COLUMN, SampleSet

LOGGER = logging.getLogger(__name__)


@dataclass(frozen=True, eq=False)
class ConfusionMatrix:
    matrix: np.ndarray
    classes: Tuple[int, ...]

    def __post_init__(self) -> None:
        matrix = np.array(self.matrix, dtype="int64", copy=True)
        if matrix.ndim != 2 or matrix.shape[0] != matrix.shape[1]:
            raise ConfigurationError(f"Confusion matrix must be square, got shape {matrix.shape}")
        if matrix.shape[0] != len(self.classes):
            raise ConfigurationError("Confusion matrix size does not match its class list")
        if (matrix < 0).any():
            raise ConfigurationError("Confusion matrix counts cannot be negative")
        matrix.setflags(write=False)
        object.__setattr__(self, "matrix", matrix)
        object.__setattr__(self, "classes", tuple(int(c) for c in self.classes))

    @classmethod
    def from_labels(
        cls,
        reference: Sequence[int],
        predicted: Sequence[int],
        classes: Optional[Sequence[int]] = None,
    ) -> "ConfusionMatrix":
        reference = np.asarray(reference, dtype="int64")
        predicted = np.asarray(predicted, dtype="int64")
        if reference.shape != predicted.shape:
            raise ConfigurationError(
                f"Reference ({reference.size}) and predicted ({predicted.size}) labels differ in length"
            )
        keep = (reference != NO_DATA_CLASS) & (predicted != NO_DATA_CLASS)
        dropped = int((~keep).sum())
        if dropped:
            LOGGER.warning("Ignoring %d record(s) labelled as no-data", dropped)
        reference = reference[keep]
        predicted = predicted[keep]

        if classes is None:
            classes = np.union1d(reference, predicted)
        classes = tuple(int(c) for c in classes if int(c) != NO_DATA_CLASS)
        position = {c: i for i, c in enumerate(classes)}
        unknown = set(np.union1d(reference, predicted).tolist()).difference(position)
        if unknown:
            raise ConfigurationError(f"Labels {sorted(unknown)} are outside classes {list(classes)}")

        matrix = np.zeros((len(classes), len(classes)), dtype="int64")
        if reference.size:
            rows = np.array([position[int(c)] for c in reference])
            cols = np.array([position[int(c)] for c in predicted])
            np.add.at(matrix, (rows, cols), 1)
        return cls(matrix, classes)

    @property
    def total(self) -> int:
        return int(self.matrix.sum())

    @property
    def trace(self) -> int:
        return int(np.trace(self.matrix))

    @property
    def row_totals(self) -> np.ndarray:
        return self.matrix.sum(axis=1)

    @property
    def column_totals(self) -> np.ndarray:
        return self.matrix.sum(axis=0)

    def overall_accuracy(self) -> float:
        if self.total == 0:
            raise UndefinedMetricError("Overall accuracy is undefined for an empty confusion matrix")
        return self.trace / self.total

    def producers_accuracy(self) -> Dict[int, float]:
        diagonal = np.diag(self.matrix).astype("float64")
        with np.errstate(invalid="ignore", divide="ignore"):
            values = diagonal / self.row_totals
        return {c: float(v) for c, v in zip(self.classes, values)}

    def consumers_accuracy(self) -> Dict[int, float]:
        diagonal = np.diag(self.matrix).astype("float64")
        with np.errstate(invalid="ignore", divide="ignore"):
            values = diagonal / self.column_totals
        return {c: float(v) for c, v in zip(self.classes, values)}

    def expected_accuracy(self) -> float:
        if self.total == 0:
            raise UndefinedMetricError("Expected accuracy is undefined for an empty confusion matrix")
        total = float(self.total)
        return float((self.row_totals * self.column_totals).sum()) / (total * total)

    def kappa(self) -> float:
        if self.total == 0:
            raise UndefinedMetricError("Kappa is undefined for an empty confusion matrix")
        expected = self.expected_accuracy()
        if np.isclose(expected, 1.0):
            raise UndefinedMetricError("Kappa is undefined when expected agreement equals 1")
        return (self.overall_accuracy() - expected) / (1.0 - expected)

    def to_frame(self) -> pd.DataFrame:
        return pd.DataFrame(
            self.matrix,
            index=pd.Index(self.classes, name="reference"),
            columns=pd.Index(self.classes, name="predicted"),
        )

    def to_list(self) -> list:
        return self.matrix.tolist()

    def summary(self) -> Dict[str, Any]:
        """Accuracy report; undefined metrics are reported as ``None``."""

        report: Dict[str, Any] = {
            "classes": list(self.classes),
            "matrix": self.to_list(),
            "total": self.total,
            "producers_accuracy": self.producers_accuracy(),
            "consumers_accuracy": self.consumers_accuracy(),
        }
        for key, metric in (("overall_accuracy", self.overall_accuracy), ("kappa", self.kappa)):
            try:
                report[key] = metric()
            except UndefinedMetricError as exc:
                LOGGER.warning("%s", exc)
                report[key] = None
        return report


def evaluate_samples(
    samples: SampleSet,
    predicted: Optional[Sequence[int]] = None,
    prediction_column: str = PREDICTION_COLUMN,
) -> ConfusionMatrix:
    """Error matrix of ``samples`` against predictions given or stored in ``prediction_column``."""

    if predicted is None:
        if prediction_column not in samples.records:
            raise ConfigurationError(f"Samples have no '{prediction_column}' column to evaluate")
        predicted = samples.records[prediction_column].to_numpy()
    if len(predicted) != len(samples):
        raise ConfigurationError(
            f"Got {len(predicted)} prediction(s) for {len(samples)} sample record(s)"
        )
    return ConfusionMatrix.from_labels(samples.labels(), predicted)


__all__ = ["ConfusionMatrix", "evaluate_samples"]
