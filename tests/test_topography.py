from __future__ import annotations

from pathlib import Path

import numpy as np
import pytest
import rasterio
from scipy import ndimage

from conftest import SIZE, write_raster
from wetlands_ml_rf.errors import ConfigurationError
from wetlands_ml_rf.topography import load_topography, write_topography_layers
from wetlands_ml_rf.topography.processing import _compute_slope, _compute_tpi


def test_write_topography_layers_writes_one_raster_per_layer(tmp_path: Path) -> None:
    dem = np.linspace(0, 100, 64, dtype="float32").reshape(8, 8)
    dem_path = write_raster(tmp_path / "dem.tif", dem, dtype="float32", resolution=1.0)

    written = write_topography_layers(dem_path, tmp_path / "topo", tpi_radii=(2.0, 4.0))

    assert set(written) == {"slope", "tpi", "tpi_4"}
    for name, path in written.items():
        with rasterio.open(path) as src:
            assert src.count == 1
            assert src.get_band_description(1) == name
            assert src.dtypes[0] == "float32"


def test_slope_of_a_flat_plane_is_zero_and_of_a_ramp_is_45_degrees() -> None:
    assert np.allclose(_compute_slope(np.full((5, 5), 3.0), 1.0), 0.0)
    ramp = np.tile(np.arange(5, dtype="float32"), (5, 1))
    assert np.allclose(_compute_slope(ramp, 1.0), 45.0)


def _reference_tpi(dem: np.ndarray, radius: float, pixel_size: float) -> np.ndarray:
    kernel_size = int(max(radius / pixel_size, 1))
    footprint = np.ones((kernel_size * 2 + 1, kernel_size * 2 + 1))
    mean_filtered = ndimage.generic_filter(dem, np.nanmean, footprint=footprint, mode="nearest")
    return (dem - mean_filtered).astype("float32")


def test_compute_tpi_matches_nan_aware_moving_mean() -> None:
    rng = np.random.default_rng(1234)
    dem = rng.uniform(0, 50, size=(64, 64)).astype("float32")
    dem[10:15, 40:45] = np.nan
    pixel_size = 1.0

    for radius in (3.0, 7.0):
        expected = _reference_tpi(dem, radius, pixel_size)
        current = _compute_tpi(dem, radius, pixel_size)

        mask = np.isfinite(expected)
        assert np.allclose(current[mask], expected[mask], atol=1e-3)


def test_load_topography_resamples_onto_grid(tmp_path: Path, grid) -> None:
    coarse = np.arange((SIZE // 2) ** 2, dtype="float32").reshape(SIZE // 2, SIZE // 2)
    write_raster(tmp_path / "slope.tif", coarse, dtype="float32", resolution=20.0)
    write_raster(tmp_path / "tpi.tif", coarse * 0.5, dtype="float32", resolution=20.0)

    stack = load_topography(("slope", "tpi"), tmp_path, grid)

    assert list(stack["band"].values) == ["slope", "tpi"]
    assert stack.sizes["y"] == grid.height and stack.sizes["x"] == grid.width
    np.testing.assert_allclose(stack["x"].values, grid.coords()[1])


def test_load_topography_reports_missing_layer(tmp_path: Path, grid) -> None:
    with pytest.raises(ConfigurationError, match="twi"):
        load_topography(("twi",), tmp_path, grid)
