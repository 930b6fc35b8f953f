"""Random forest classifier adapter for sample sets and feature stacks."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Dict, Optional, Protocol, Tuple

import numpy as np
import xarray as xr
from sklearn.ensemble import RandomForestClassifier

from .config import ClassifierSettings
from .errors import ConfigurationError
from .evaluation import ConfusionMatrix
from .grid import region_mask
from .regions import Region
from .sampling import NO_DATA_CLASS, PREDICTION_COLUMN, SampleSet
from .stacking import FeatureStack

LOGGER = logging.getLogger(__name__)


class Classifier(Protocol):
    feature_names: Tuple[str, ...]

    def predict(self, features: np.ndarray) -> np.ndarray:
        """Return one class per row of ``features``."""


@dataclass(frozen=True)
class TrainedClassifier:
    """A fitted random forest bound to the feature band order it was trained on."""

    estimator: RandomForestClassifier
    feature_names: Tuple[str, ...]
    training_matrix: ConfusionMatrix

    def predict(self, features: np.ndarray) -> np.ndarray:
        features = np.asarray(features, dtype="float64")
        if features.ndim != 2 or features.shape[1] != len(self.feature_names):
            raise ConfigurationError(
                f"Expected {len(self.feature_names)} feature column(s), got shape {features.shape}"
            )
        predicted = np.full(features.shape[0], NO_DATA_CLASS, dtype="int64")
        valid = np.isfinite(features).all(axis=1)
        if valid.any():
            predicted[valid] = self.estimator.predict(features[valid])
        return predicted

    def explain(self) -> Dict[str, float]:
        """Feature importance per band name."""
        return {
            name: float(value)
            for name, value in zip(self.feature_names, self.estimator.feature_importances_)
        }

    def classify_samples(self, samples: SampleSet, column: str = PREDICTION_COLUMN) -> SampleSet:
        if tuple(samples.feature_names) != self.feature_names:
            raise ConfigurationError("Sample feature bands differ from the training feature bands")
        return samples.with_predictions(self.predict(samples.features()), column)

    def classify_stack(self, stack: FeatureStack, region: Optional[Region] = None) -> xr.DataArray:
        """Lazy uint8 (y, x) class raster; missing features and pixels outside ``region`` are 0."""

        if stack.feature_names != self.feature_names:
            raise ConfigurationError("Feature stack bands differ from the training feature bands")
        features = stack.features
        if features.chunks is not None:
            features = features.chunk({"band": -1})
        estimator_predict = self.predict

        def _predict_block(block: np.ndarray) -> np.ndarray:
            flat = block.reshape(-1, block.shape[-1])
            return estimator_predict(flat).astype("uint8").reshape(block.shape[:-1])

        classified = xr.apply_ufunc(
            _predict_block,
            features,
            input_core_dims=[["band"]],
            dask="parallelized",
            output_dtypes=[np.uint8],
        ).rename("classification")
        if region is not None:
            inside = region_mask(stack.data, region.geometry)
            classified = classified.where(inside, NO_DATA_CLASS).astype("uint8")
        if stack.data.rio.crs is not None:
            classified.rio.write_crs(stack.data.rio.crs, inplace=True)
        return classified


def train_random_forest(samples: SampleSet, settings: ClassifierSettings = ClassifierSettings()) -> TrainedClassifier:
    if len(samples) == 0:
        raise ConfigurationError("Cannot train a classifier on an empty sample set")
    estimator = RandomForestClassifier(
        n_estimators=settings.number_of_trees,
        min_samples_leaf=settings.min_leaf_population,
        max_samples=settings.bag_fraction,
        bootstrap=True,
        random_state=settings.seed,
        n_jobs=-1,
    )
    features = samples.features()
    labels = samples.labels()
    LOGGER.info(
        "Training random forest (%d trees) on %d record(s) x %d feature(s)",
        settings.number_of_trees,
        features.shape[0],
        features.shape[1],
    )
    estimator.fit(features, labels)
    training_matrix = ConfusionMatrix.from_labels(labels, estimator.predict(features))
    return TrainedClassifier(estimator, tuple(samples.feature_names), training_matrix)


__all__ = ["Classifier", "TrainedClassifier", "train_random_forest"]
