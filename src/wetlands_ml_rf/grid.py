"""Working pixel grid shared by every raster of a run."""

from __future__ import annotations

import math
from dataclasses import dataclass
from pathlib import Path
from typing import Tuple, Union

import numpy as np
import rasterio
import rioxarray
import xarray as xr
from affine import Affine
from rasterio.enums import Resampling
from rasterio.features import geometry_mask
from rasterio.vrt import WarpedVRT
from shapely.geometry.base import BaseGeometry

from .regions import Region

DEFAULT_CHUNKS = 2048


@dataclass(frozen=True)
class GridSpec:
    """North-up grid with square pixels, bounds snapped to the resolution."""

    crs: str
    resolution: float
    bounds: Tuple[float, float, float, float]

    @classmethod
    def from_region(cls, region: Region, resolution: float) -> "GridSpec":
        minx, miny, maxx, maxy = region.geometry.bounds
        snapped = (
            math.floor(minx / resolution) * resolution,
            math.floor(miny / resolution) * resolution,
            math.ceil(maxx / resolution) * resolution,
            math.ceil(maxy / resolution) * resolution,
        )
        return cls(region.crs, float(resolution), snapped)

    @property
    def width(self) -> int:
        return int(round((self.bounds[2] - self.bounds[0]) / self.resolution))

    @property
    def height(self) -> int:
        return int(round((self.bounds[3] - self.bounds[1]) / self.resolution))

    @property
    def transform(self) -> Affine:
        return Affine(self.resolution, 0.0, self.bounds[0], 0.0, -self.resolution, self.bounds[3])

    def coords(self) -> Tuple[np.ndarray, np.ndarray]:
        half = self.resolution / 2
        xs = self.bounds[0] + half + self.resolution * np.arange(self.width)
        ys = self.bounds[3] - half - self.resolution * np.arange(self.height)
        return ys, xs


def same_grid(left: xr.DataArray, right: xr.DataArray) -> bool:
    if left.sizes["y"] != right.sizes["y"] or left.sizes["x"] != right.sizes["x"]:
        return False
    return bool(
        np.allclose(left["y"].values, right["y"].values)
        and np.allclose(left["x"].values, right["x"].values)
    )


def align_to(array: xr.DataArray, template: xr.DataArray, resampling: Resampling) -> xr.DataArray:
    """Return ``array`` on the grid of ``template``; no-op when grids already match."""

    if same_grid(array, template):
        return array.assign_coords(y=template["y"].values, x=template["x"].values)
    aligned = array.rio.reproject_match(template, resampling=resampling)
    return aligned.assign_coords(y=template["y"].values, x=template["x"].values)


def open_aligned_raster(
    path: Union[str, Path],
    grid: GridSpec,
    resampling: Resampling,
    chunks: int = DEFAULT_CHUNKS,
) -> xr.DataArray:
    """Open ``path`` lazily, warped onto ``grid`` (band, y, x) with its nodata as NaN."""

    with rasterio.open(path) as src:
        with WarpedVRT(
            src,
            crs=grid.crs,
            transform=grid.transform,
            width=grid.width,
            height=grid.height,
            resampling=resampling,
        ) as vrt:
            array = rioxarray.open_rasterio(vrt, chunks={"x": chunks, "y": chunks}, masked=True)
    ys, xs = grid.coords()
    return array.assign_coords(y=ys, x=xs).astype("float32")


def region_mask(array: xr.DataArray, geometry: BaseGeometry) -> xr.DataArray:
    """Boolean (y, x) mask of pixels whose centre falls inside ``geometry``."""

    inside = geometry_mask(
        [geometry],
        out_shape=(array.sizes["y"], array.sizes["x"]),
        transform=array.rio.transform(recalc=True),
        invert=True,
    )
    return xr.DataArray(inside, dims=("y", "x"), coords={"y": array["y"], "x": array["x"]})


__all__ = ["GridSpec", "same_grid", "align_to", "open_aligned_raster", "region_mask"]
