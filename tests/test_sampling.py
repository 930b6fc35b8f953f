from __future__ import annotations

import numpy as np
import pytest
import xarray as xr
from shapely.geometry import box

from conftest import CRS
from wetlands_ml_rf.errors import EmptyRegionError, ResourceLimitError
from wetlands_ml_rf.regions import Region
from wetlands_ml_rf.sampling import REGION_COLUMN, SampleSet, StratifiedSampler
from wetlands_ml_rf.stacking import TARGET_BAND, FeatureStack


def _stack(grid, labels: np.ndarray) -> FeatureStack:
    ys, xs = grid.coords()
    rows, cols = np.indices(labels.shape)
    data = np.stack([labels.astype("float32"), rows.astype("float32"), cols.astype("float32")])
    array = xr.DataArray(
        data,
        dims=("band", "y", "x"),
        coords={"band": [TARGET_BAND, "row_summer2021", "col_summer2021"], "y": ys, "x": xs},
    )
    array.rio.write_crs(CRS, inplace=True)
    return FeatureStack(array)


def _uneven_labels() -> np.ndarray:
    labels = np.ones((20, 20), dtype="uint8")
    labels[10:18] = 2
    labels[18:] = 3
    return labels


def test_exact_count_per_class_without_class_zero(grid, region) -> None:
    labels = _uneven_labels()
    labels[:, :2] = 0
    samples = StratifiedSampler(region, 10.0, seed=3).sample(_stack(grid, labels), 25)

    assert samples.class_counts() == {1: 25, 2: 25, 3: 25}
    assert not samples.is_partial
    assert (samples.labels() != 0).all()
    assert samples.feature_names == ("row_summer2021", "col_summer2021")
    assert (samples.records[REGION_COLUMN] == "Stockholm").all()


def test_records_match_their_pixels_and_are_unique(grid, region) -> None:
    sampler = StratifiedSampler(region, 10.0, seed=1, keep_geometries=True)
    samples = sampler.sample(_stack(grid, _uneven_labels()), 30)
    records = samples.records

    assert not records.duplicated(subset=["x", "y"]).any()
    rows = records["row_summer2021"].astype(int).to_numpy()
    np.testing.assert_array_equal(_uneven_labels()[rows, records["col_summer2021"].astype(int)], samples.labels())


def test_under_filled_class_returns_all_its_pixels(grid, region) -> None:
    samples = StratifiedSampler(region, 10.0).sample(_stack(grid, _uneven_labels()), 100)

    assert samples.class_counts() == {1: 100, 2: 100, 3: 40}
    assert samples.partial_classes == {3: 40}
    assert samples.is_partial


def test_sampling_is_reproducible_for_a_seed(grid, region) -> None:
    stack = _stack(grid, _uneven_labels())
    first = StratifiedSampler(region, 10.0, seed=7).sample(stack, 10)
    second = StratifiedSampler(region, 10.0, seed=7).sample(stack, 10)
    other = StratifiedSampler(region, 10.0, seed=8).sample(stack, 10)
    np.testing.assert_array_equal(first.features(), second.features())
    assert not np.array_equal(first.features(), other.features())


def test_only_pixels_inside_region_are_drawn(grid, region) -> None:
    minx, miny, maxx, maxy = region.geometry.bounds
    top_half = Region("Stockholm", box(minx, maxy - 100.0, maxx, maxy), CRS)
    samples = StratifiedSampler(top_half, 10.0).sample(_stack(grid, _uneven_labels()), 20)

    assert samples.class_counts() == {1: 20}
    assert samples.records["row_summer2021"].max() < 10


def test_coarser_scale_thins_candidates(grid, region) -> None:
    samples = StratifiedSampler(region, 20.0, keep_geometries=True).sample(_stack(grid, _uneven_labels()), 500)
    assert len(samples) == 100
    assert (samples.records["row_summer2021"] % 2 == 0).all()
    assert (samples.records["col_summer2021"] % 2 == 0).all()


def test_region_without_labels_raises(grid, region) -> None:
    with pytest.raises(EmptyRegionError, match="Stockholm"):
        StratifiedSampler(region, 10.0).sample(_stack(grid, np.zeros((20, 20))), 5)


def test_pixel_budget_is_enforced(grid, region) -> None:
    with pytest.raises(ResourceLimitError):
        StratifiedSampler(region, 10.0, max_pixels=100).sample(_stack(grid, _uneven_labels()), 5)


def test_records_with_missing_features_are_dropped_and_reported(grid, region) -> None:
    stack = _stack(grid, _uneven_labels())
    data = stack.data.copy()
    data[1, 18:, :] = np.nan
    samples = StratifiedSampler(region, 10.0).sample(FeatureStack(data), 40)

    assert 3 not in samples.class_counts()
    assert samples.partial_classes[3] == 0


def test_split_partitions_by_random_column(grid, region) -> None:
    samples = StratifiedSampler(region, 10.0).sample(_stack(grid, _uneven_labels()), 50)
    training, validation = samples.split(0.6, seed=2)

    assert len(training) + len(validation) == len(samples)
    assert (training.records["random"] < 0.6).all()
    assert (validation.records["random"] >= 0.6).all()
    assert isinstance(training, SampleSet)


def test_dual_mode_samples_each_label_raster(grid, region) -> None:
    training_stack = _stack(grid, _uneven_labels())
    validation_labels = np.full((20, 20), 2, dtype="uint8")
    validation_stack = training_stack.with_label(
        xr.DataArray(validation_labels, dims=("y", "x"), coords={"y": grid.coords()[0], "x": grid.coords()[1]})
    )

    training, validation = StratifiedSampler(region, 10.0).sample_dual(training_stack, validation_stack, 10, 15)

    assert training.class_counts() == {1: 10, 2: 10, 3: 10}
    assert validation.class_counts() == {2: 15}
