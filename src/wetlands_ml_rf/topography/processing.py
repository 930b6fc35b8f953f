"""Static topographic layers: loading onto the working grid and DEM derivatives."""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Dict, Iterable, Optional, Sequence

import numpy as np
import rasterio
import xarray as xr
from rasterio.enums import Resampling
from scipy import ndimage

from ..errors import ConfigurationError
from ..grid import DEFAULT_CHUNKS, GridSpec, open_aligned_raster
from ..stacking import FLOAT_NODATA

LOGGER = logging.getLogger(__name__)

DEFAULT_TPI_RADII = (30.0, 150.0)


def load_topography(
    layers: Sequence[str],
    directory: Path,
    grid: GridSpec,
    chunks: int = DEFAULT_CHUNKS,
) -> Optional[xr.DataArray]:
    """Open ``{directory}/{layer}.tif`` for each layer, bilinear-resampled onto ``grid``."""

    if not layers:
        return None
    bands = []
    for layer in layers:
        path = Path(directory) / f"{layer}.tif"
        if not path.exists():
            raise ConfigurationError(f"Topographic layer '{layer}' not found at {path}")
        LOGGER.info("Topographic layer %s <- %s", layer, path)
        array = open_aligned_raster(path, grid, Resampling.bilinear, chunks=chunks)
        bands.append(array.isel(band=[0]).assign_coords(band=[layer]).reset_coords(drop=True))
    stack = bands[0] if len(bands) == 1 else xr.concat(bands, dim="band")
    stack.rio.write_crs(grid.crs, inplace=True)
    return stack


def _compute_slope(dem: np.ndarray, pixel_size: float) -> np.ndarray:
    dz_dy, dz_dx = np.gradient(dem, pixel_size)
    slope = np.degrees(np.arctan(np.hypot(dz_dx, dz_dy)))
    return slope.astype("float32")


def _box_mean(dem: np.ndarray, radius_pixels: int) -> np.ndarray:
    """Mean over a square window, ignoring missing cells."""

    if radius_pixels <= 0:
        return dem.astype("float32", copy=False)

    window_size = radius_pixels * 2 + 1
    valid = np.isfinite(dem).astype("float32")
    values = np.nan_to_num(dem, nan=0.0).astype("float32") * valid

    total = ndimage.uniform_filter(values, size=window_size, mode="nearest")
    count = ndimage.uniform_filter(valid, size=window_size, mode="nearest")
    with np.errstate(invalid="ignore", divide="ignore"):
        mean = total / count
    mean[count == 0] = np.nan
    return mean.astype("float32")


def _compute_tpi(dem: np.ndarray, radius: float, pixel_size: float) -> np.ndarray:
    radius_pixels = int(max(radius / pixel_size, 1))
    return (dem - _box_mean(dem, radius_pixels)).astype("float32")


def derive_topography(
    dem: np.ndarray,
    pixel_size: float,
    tpi_radii: Iterable[float] = DEFAULT_TPI_RADII,
) -> Dict[str, np.ndarray]:
    """Slope (degrees) plus one TPI layer per radius; the first radius is named ``tpi``."""

    dem = dem.astype("float32")
    layers = {"slope": _compute_slope(dem, pixel_size)}
    for index, radius in enumerate(tpi_radii):
        name = "tpi" if index == 0 else f"tpi_{int(radius)}"
        layers[name] = _compute_tpi(dem, radius, pixel_size)
    return layers


def write_topography_layers(
    dem_path: Path,
    output_dir: Path,
    tpi_radii: Iterable[float] = DEFAULT_TPI_RADII,
) -> Dict[str, Path]:
    """Write one single-band GeoTIFF per derivative next to each other in ``output_dir``."""

    with rasterio.open(dem_path) as src:
        dem = src.read(1, masked=True).filled(np.nan).astype("float32")
        res_x, res_y = src.res
        pixel_size = float((abs(res_x) + abs(res_y)) / 2)
        profile = {
            "driver": "GTiff",
            "height": src.height,
            "width": src.width,
            "count": 1,
            "dtype": "float32",
            "transform": src.transform,
            "crs": src.crs,
            "nodata": FLOAT_NODATA,
            "compress": "deflate",
            "tiled": True,
            "BIGTIFF": "IF_SAFER",
        }

    dem_mask = ~np.isfinite(dem)

    output_dir.mkdir(parents=True, exist_ok=True)
    written: Dict[str, Path] = {}
    for name, values in derive_topography(dem, pixel_size, tpi_radii).items():
        values = values.copy()
        values[dem_mask | ~np.isfinite(values)] = FLOAT_NODATA
        path = output_dir / f"{name}.tif"
        with rasterio.open(path, "w", **profile) as dst:
            dst.write(values, 1)
            dst.set_band_description(1, name)
        written[name] = path
        LOGGER.info("Wrote %s -> %s", name, path)
    return written


__all__ = ["load_topography", "derive_topography", "write_topography_layers", "DEFAULT_TPI_RADII"]
