from __future__ import annotations

from pathlib import Path

import geopandas as gpd
import numpy as np
import pandas as pd
import pytest
import rasterio
import xarray as xr
from rasterio.transform import from_origin
from shapely.geometry import box

from wetlands_ml_rf.grid import GridSpec
from wetlands_ml_rf.regions import Region

ORIGIN_X = 600000.0
ORIGIN_Y = 6500200.0
RESOLUTION = 10.0
SIZE = 20
CRS = "EPSG:3006"

OPTICAL_BANDS = ["B2", "B3", "B4", "B8", "QA60", "MSK_CLDPRB", "B1"]


def label_array() -> np.ndarray:
    """Rows 0-6 class 1, rows 7-13 class 2, rows 14-19 class 3; column 0 is no-data."""
    labels = np.ones((SIZE, SIZE), dtype="uint8")
    labels[7:14] = 2
    labels[14:] = 3
    labels[:, 0] = 0
    return labels


@pytest.fixture
def region() -> Region:
    geometry = box(ORIGIN_X, ORIGIN_Y - SIZE * RESOLUTION, ORIGIN_X + SIZE * RESOLUTION, ORIGIN_Y)
    return Region("Stockholm", geometry, CRS, code=1, bbox_latlon=(18.0, 58.6, 18.01, 58.61))


@pytest.fixture
def grid(region: Region) -> GridSpec:
    return GridSpec.from_region(region, RESOLUTION)


@pytest.fixture
def optical_series(grid: GridSpec) -> xr.DataArray:
    ys, xs = grid.coords()
    times = pd.to_datetime(["2021-05-01", "2021-06-10", "2021-07-15", "2021-08-20"])
    classes = label_array().astype("float64")
    data = np.zeros((len(times), len(OPTICAL_BANDS), SIZE, SIZE), dtype="float64")
    data[:, 0] = 200.0
    data[:, 1] = 300.0
    data[:, 2] = 500.0
    data[:, 3] = 1000.0 * np.maximum(classes, 1)
    data[:, 6] = 100.0
    # The 2021-08-20 granule is too cloudy and must be filtered out.
    data[3, 3] = 9999.0
    return xr.DataArray(
        data,
        dims=("time", "band", "y", "x"),
        coords={
            "time": times,
            "band": OPTICAL_BANDS,
            "y": ys,
            "x": xs,
            "eo:cloud_cover": ("time", [5.0, 5.0, 10.0, 50.0]),
        },
    )


@pytest.fixture
def sar_series(grid: GridSpec) -> xr.DataArray:
    ys, xs = grid.coords()
    times = pd.to_datetime(["2021-06-05", "2021-07-05"])
    data = np.zeros((len(times), 2, SIZE, SIZE), dtype="float64")
    data[0, 0] = -10.0
    data[0, 1] = -20.0
    # Ascending pass, excluded by the orbit filter.
    data[1, 0] = -5.0
    data[1, 1] = -6.0
    return xr.DataArray(
        data,
        dims=("time", "band", "y", "x"),
        coords={
            "time": times,
            "band": ["VV", "VH"],
            "y": ys,
            "x": xs,
            "sar:instrument_mode": ("time", ["IW", "IW"]),
            "sar:polarizations": ("time", ["VV,VH", "VV,VH"]),
            "sat:orbit_state": ("time", ["descending", "ascending"]),
        },
    )


@pytest.fixture
def collections(optical_series: xr.DataArray, sar_series: xr.DataArray):
    return {"sentinel-2-l2a": optical_series, "sentinel-1-grd": sar_series}


def write_raster(path: Path, data: np.ndarray, dtype: str = "uint8", resolution: float = RESOLUTION) -> Path:
    profile = {
        "driver": "GTiff",
        "height": data.shape[0],
        "width": data.shape[1],
        "count": 1,
        "dtype": dtype,
        "transform": from_origin(ORIGIN_X, ORIGIN_Y, resolution, resolution),
        "crs": CRS,
    }
    with rasterio.open(path, "w", **profile) as dst:
        dst.write(data.astype(dtype), 1)
    return path


@pytest.fixture
def label_path(tmp_path: Path) -> Path:
    return write_raster(tmp_path / "labels.tif", label_array())


@pytest.fixture
def boundaries_path(tmp_path: Path, region: Region) -> Path:
    path = tmp_path / "counties.gpkg"
    gdf = gpd.GeoDataFrame(
        {"LANSKOD": [1, 3], "name": ["Stockholm", "Uppsala"]},
        geometry=[region.geometry, box(0, 0, 10, 10)],
        crs=CRS,
    )
    gdf.to_file(path, driver="GPKG")
    return path
