"""Class-stratified point sampling over labelled feature stacks."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Dict, Mapping, Optional, Sequence, Tuple

import numpy as np
import pandas as pd
import xarray as xr
from dask import compute as dask_compute

from .errors import ConfigurationError, EmptyRegionError, ResourceLimitError
from .grid import region_mask
from .progress import LoggingProgressBar
from .regions import Region
from .stacking import TARGET_BAND, FeatureStack

LOGGER = logging.getLogger(__name__)

NO_DATA_CLASS = 0
CLASS_NAMES: Dict[int, str] = {0: "no-data", 1: "non-wetland", 2: "wetland", 3: "water"}
REGION_COLUMN = "region"
RANDOM_COLUMN = "random"
PREDICTION_COLUMN = "classification"


@dataclass(frozen=True)
class SampleSet:
    """Sampled feature vectors with their reference class and region tag.

    ``partial_classes`` maps every class that could not reach the requested
    count to the number of records actually drawn.
    """

    records: pd.DataFrame
    feature_names: Tuple[str, ...]
    class_column: str = TARGET_BAND
    points_per_class: Optional[int] = None
    partial_classes: Mapping[int, int] = field(default_factory=dict)

    def __post_init__(self) -> None:
        missing = [name for name in (*self.feature_names, self.class_column) if name not in self.records]
        if missing:
            raise ConfigurationError(f"Sample records lack column(s) {missing}")

    def __len__(self) -> int:
        return len(self.records)

    @property
    def is_partial(self) -> bool:
        return bool(self.partial_classes)

    def class_counts(self) -> Dict[int, int]:
        counts = self.records[self.class_column].value_counts().sort_index()
        return {int(key): int(value) for key, value in counts.items()}

    def features(self) -> np.ndarray:
        return self.records.loc[:, list(self.feature_names)].to_numpy(dtype="float64")

    def labels(self) -> np.ndarray:
        return self.records[self.class_column].to_numpy(dtype="int64")

    def _derive(self, records: pd.DataFrame) -> "SampleSet":
        counts = records[self.class_column].value_counts()
        partial = {
            cls: int(counts.get(cls, 0))
            for cls in self.partial_classes
            if int(counts.get(cls, 0)) > 0
        }
        return SampleSet(
            records.reset_index(drop=True),
            self.feature_names,
            self.class_column,
            self.points_per_class,
            partial,
        )

    def with_random_column(self, seed: int = 0, column: str = RANDOM_COLUMN) -> "SampleSet":
        records = self.records.copy()
        records[column] = np.random.default_rng(seed).uniform(0.0, 1.0, size=len(records))
        return SampleSet(records, self.feature_names, self.class_column, self.points_per_class, dict(self.partial_classes))

    def split(
        self,
        threshold: float = 0.6,
        seed: int = 0,
        column: str = RANDOM_COLUMN,
    ) -> Tuple["SampleSet", "SampleSet"]:
        """Split on a uniform random column: ``< threshold`` trains, ``>= threshold`` validates."""

        if not 0.0 < threshold < 1.0:
            raise ConfigurationError("Split threshold must lie strictly between 0 and 1.")
        source = self if column in self.records else self.with_random_column(seed, column)
        below = source.records[column] < threshold
        return source._derive(source.records[below]), source._derive(source.records[~below])

    def with_predictions(self, predicted: Sequence[int], column: str = PREDICTION_COLUMN) -> "SampleSet":
        if len(predicted) != len(self.records):
            raise ConfigurationError(
                f"Got {len(predicted)} prediction(s) for {len(self.records)} sample record(s)"
            )
        records = self.records.copy()
        records[column] = np.asarray(predicted, dtype="int64")
        return SampleSet(records, self.feature_names, self.class_column, self.points_per_class, dict(self.partial_classes))


class StratifiedSampler:
    """Draw a fixed number of pixels per class inside a region at a given spacing."""

    def __init__(
        self,
        region: Region,
        scale: float,
        seed: int = 0,
        max_pixels: Optional[int] = None,
        drop_nulls: bool = True,
        keep_geometries: bool = False,
    ) -> None:
        if scale <= 0:
            raise ConfigurationError("Sampling scale must be positive.")
        self.region = region
        self.scale = float(scale)
        self.seed = seed
        self.max_pixels = max_pixels
        self.drop_nulls = drop_nulls
        self.keep_geometries = keep_geometries

    def _stride(self, array: xr.DataArray) -> int:
        res_x, _ = array.rio.resolution()
        return max(1, int(round(self.scale / abs(res_x))))

    def _candidate_grid(self, stack: FeatureStack, class_band: str) -> Tuple[np.ndarray, int]:
        labels = stack.data.sel(band=class_band)
        stride = self._stride(labels)
        considered = len(range(0, labels.sizes["y"], stride)) * len(range(0, labels.sizes["x"], stride))
        if self.max_pixels is not None and considered > self.max_pixels:
            raise ResourceLimitError(f"Stratified sample over {self.region.name}", considered, self.max_pixels)

        inside = region_mask(labels, self.region.geometry)
        subsampled = labels.isel(y=slice(None, None, stride), x=slice(None, None, stride))
        with LoggingProgressBar(f"Class band over {self.region.name}"):
            (values,) = dask_compute(subsampled.data)
        values = np.asarray(values, dtype="float64")
        values[~inside.values[::stride, ::stride]] = np.nan
        return values, stride

    def sample(
        self,
        stack: FeatureStack,
        points_per_class: int,
        class_band: str = TARGET_BAND,
    ) -> SampleSet:
        """Sample ``points_per_class`` pixels for every non-zero class found in the region.

        Classes with fewer eligible pixels are returned whole and reported in
        ``SampleSet.partial_classes``.
        """

        if int(points_per_class) != points_per_class or points_per_class <= 0:
            raise ConfigurationError("points_per_class must be a positive integer.")
        if class_band not in stack.band_names:
            raise ConfigurationError(f"Class band '{class_band}' not found in the feature stack.")

        values, stride = self._candidate_grid(stack, class_band)
        eligible = np.isfinite(values) & (values != NO_DATA_CLASS)
        if not eligible.any():
            raise EmptyRegionError(self.region.name, f"no labelled pixels at {self.scale:g} m spacing")

        rng = np.random.default_rng(self.seed)
        classes = np.unique(values[eligible]).astype("int64")
        chosen_rows = []
        chosen_cols = []
        chosen_classes = []
        partial: Dict[int, int] = {}
        for cls in classes:
            flat = np.flatnonzero(eligible & (values == cls))
            if flat.size < points_per_class:
                partial[int(cls)] = int(flat.size)
                LOGGER.warning(
                    "Class %d (%s) has %d eligible pixel(s) in %s; requested %d. Returning all of them.",
                    cls,
                    CLASS_NAMES.get(int(cls), "unknown"),
                    flat.size,
                    self.region.name,
                    points_per_class,
                )
                picked = flat
            else:
                picked = np.sort(rng.choice(flat, size=int(points_per_class), replace=False))
            rows, cols = np.unravel_index(picked, values.shape)
            chosen_rows.append(rows * stride)
            chosen_cols.append(cols * stride)
            chosen_classes.append(np.full(picked.size, cls, dtype="int64"))

        rows = np.concatenate(chosen_rows)
        cols = np.concatenate(chosen_cols)
        classes_drawn = np.concatenate(chosen_classes)
        records = self._gather(stack, rows, cols, classes_drawn, class_band)
        feature_names = tuple(name for name in stack.band_names if name != class_band)
        samples = SampleSet(records, feature_names, class_band, int(points_per_class), partial)
        if self.drop_nulls:
            samples = self._drop_nulls(samples)
        LOGGER.info("Sampled %d record(s) in %s: %s", len(samples), self.region.name, samples.class_counts())
        return samples

    def _gather(
        self,
        stack: FeatureStack,
        rows: np.ndarray,
        cols: np.ndarray,
        classes: np.ndarray,
        class_band: str,
    ) -> pd.DataFrame:
        features = stack.data.drop_sel(band=class_band)
        points = features.isel(
            y=xr.DataArray(rows, dims="sample"),
            x=xr.DataArray(cols, dims="sample"),
        )
        with LoggingProgressBar(f"Sample features over {self.region.name}"):
            (values,) = dask_compute(points.transpose("sample", "band").data)
        names = [str(name) for name in features["band"].values]
        records = pd.DataFrame(np.asarray(values, dtype="float64"), columns=names)
        records[class_band] = classes
        records[REGION_COLUMN] = self.region.name
        if self.keep_geometries:
            records["x"] = stack.data["x"].values[cols]
            records["y"] = stack.data["y"].values[rows]
        return records

    def _drop_nulls(self, samples: SampleSet) -> SampleSet:
        complete = samples.records.loc[:, list(samples.feature_names)].notna().all(axis=1)
        dropped = int((~complete).sum())
        if not dropped:
            return samples
        LOGGER.warning("Dropping %d sample record(s) with missing feature values", dropped)
        kept = samples.records[complete].reset_index(drop=True)
        counts = kept[samples.class_column].value_counts()
        partial = dict(samples.partial_classes)
        for cls in samples.class_counts():
            count = int(counts.get(cls, 0))
            if samples.points_per_class is not None and count < samples.points_per_class:
                partial[cls] = count
        return SampleSet(kept, samples.feature_names, samples.class_column, samples.points_per_class, partial)

    def sample_split(
        self,
        stack: FeatureStack,
        points_per_class: int,
        threshold: float = 0.6,
    ) -> Tuple[SampleSet, SampleSet]:
        """Single-raster mode: one stratified sample split by a random column."""
        return self.sample(stack, points_per_class).split(threshold, seed=self.seed)

    def sample_dual(
        self,
        training_stack: FeatureStack,
        validation_stack: FeatureStack,
        training_points: int,
        validation_points: int,
    ) -> Tuple[SampleSet, SampleSet]:
        """Dual-raster mode: independent samples from training and validation label rasters."""

        if training_stack.feature_names != validation_stack.feature_names:
            raise ConfigurationError("Training and validation stacks must share the same feature bands.")
        training = self.sample(training_stack, training_points)
        validator = StratifiedSampler(
            self.region,
            self.scale,
            seed=self.seed + 1,
            max_pixels=self.max_pixels,
            drop_nulls=self.drop_nulls,
            keep_geometries=self.keep_geometries,
        )
        validation = validator.sample(validation_stack, validation_points)
        return training, validation


__all__ = [
    "NO_DATA_CLASS",
    "CLASS_NAMES",
    "SampleSet",
    "StratifiedSampler",
]
