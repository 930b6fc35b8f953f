"""Assembly of the ordered, named feature stack fed to sampling and classification."""

from __future__ import annotations

import logging
from collections import Counter
from dataclasses import dataclass
from functools import reduce
from pathlib import Path
from typing import Optional, Sequence, Tuple

import numpy as np
import rasterio
import rioxarray  # noqa: F401 - registers the rio accessor
import xarray as xr
from rasterio.enums import Resampling

from .errors import BandCollisionError, ConfigurationError
from .grid import align_to

LOGGER = logging.getLogger(__name__)

TARGET_BAND = "target"
FLOAT_NODATA = -9999.0


def _duplicates(names: Sequence[str]) -> Tuple[str, ...]:
    return tuple(sorted(name for name, count in Counter(names).items() if count > 1))


@dataclass(frozen=True)
class FeatureStack:
    """(band, y, x) raster whose first band is the label, followed by feature bands."""

    data: xr.DataArray

    def __post_init__(self) -> None:
        if tuple(self.data.dims) != ("band", "y", "x"):
            raise ConfigurationError(f"Feature stack must have dims (band, y, x), got {self.data.dims}")
        names = self.band_names
        if not names or names[0] != TARGET_BAND:
            raise ConfigurationError(f"The first band of a feature stack must be '{TARGET_BAND}'")
        duplicates = _duplicates(names)
        if duplicates:
            raise BandCollisionError(duplicates)

    @property
    def band_names(self) -> Tuple[str, ...]:
        return tuple(str(name) for name in self.data["band"].values)

    @property
    def feature_names(self) -> Tuple[str, ...]:
        return self.band_names[1:]

    @property
    def label(self) -> xr.DataArray:
        return self.data.isel(band=0)

    @property
    def features(self) -> xr.DataArray:
        return self.data.isel(band=slice(1, None))

    def with_label(self, label: xr.DataArray) -> "FeatureStack":
        """Same features under a different label raster (e.g. independent validation labels)."""
        label_band = _as_label_band(align_to(_squeeze_single_band(label), self.label, Resampling.nearest))
        data = _append(label_band, self.features)
        return FeatureStack(_carry_georeference(data, self.data))


def _squeeze_single_band(array: xr.DataArray) -> xr.DataArray:
    if "band" in array.dims:
        if array.sizes["band"] != 1:
            raise ConfigurationError("The label raster must have exactly one band.")
        array = array.isel(band=0)
    return array.reset_coords(drop=True).drop_vars("band", errors="ignore")


def _as_label_band(label: xr.DataArray) -> xr.DataArray:
    return label.astype("float32").expand_dims(band=[TARGET_BAND])


def _carry_georeference(data: xr.DataArray, like: xr.DataArray) -> xr.DataArray:
    if like.rio.crs is not None:
        data.rio.write_crs(like.rio.crs, inplace=True)
    return data


def _append(stack: xr.DataArray, addition: xr.DataArray) -> xr.DataArray:
    existing = [str(name) for name in stack["band"].values]
    incoming = [str(name) for name in addition["band"].values]
    duplicates = _duplicates(existing + incoming)
    if duplicates:
        raise BandCollisionError(duplicates)
    addition = addition.reset_coords(drop=True).astype("float32")
    return xr.concat([stack.reset_coords(drop=True), addition], dim="band", join="override")


def assemble_feature_stack(
    label: xr.DataArray,
    composites: Sequence[xr.DataArray],
    topography: Optional[xr.DataArray] = None,
) -> FeatureStack:
    """Concatenate label, window composites (in the given order) and topography.

    The grid of the first composite (or of the label when there are none) is the
    working grid. Labels are aligned with nearest neighbour, topography with
    bilinear interpolation and composites already share the grid.
    """

    label_band = _squeeze_single_band(label)
    template = composites[0].isel(band=0) if composites else label_band
    start = _as_label_band(align_to(label_band, template, Resampling.nearest))

    aligned = [align_to(composite, template, Resampling.bilinear) for composite in composites]
    data = reduce(_append, aligned, start)

    if topography is not None:
        topo = align_to(topography, template, Resampling.bilinear)
        data = _append(data, topo)

    data = _carry_georeference(data.transpose("band", "y", "x"), template)
    stack = FeatureStack(data)
    LOGGER.info(
        "Assembled feature stack with %d feature band(s) on a %dx%d grid",
        len(stack.feature_names),
        data.sizes["x"],
        data.sizes["y"],
    )
    return stack


def write_feature_stack(stack: FeatureStack, path: Path, nodata: float = FLOAT_NODATA) -> Path:
    """Write ``stack`` as a float32 GeoTIFF with band descriptions (computes the stack)."""

    path.parent.mkdir(parents=True, exist_ok=True)
    LOGGER.info("Writing feature stack to %s", path.name)
    array = stack.data.fillna(nodata)
    array = array.assign_coords({"band": np.arange(1, array.sizes["band"] + 1)})
    array.rio.write_nodata(nodata, inplace=True)
    array.rio.to_raster(
        path,
        dtype="float32",
        compress="deflate",
        tiled=True,
        BIGTIFF="IF_SAFER",
    )

    with rasterio.open(path, "r+") as dst:
        for idx, label in enumerate(stack.band_names, start=1):
            dst.set_band_description(idx, label)
    return path


__all__ = [
    "TARGET_BAND",
    "FLOAT_NODATA",
    "FeatureStack",
    "assemble_feature_stack",
    "write_feature_stack",
]
