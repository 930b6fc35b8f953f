"""Tabular and raster artifacts written at the end of a run."""

from __future__ import annotations

import json
import logging
from pathlib import Path
from typing import Mapping

import geopandas as gpd
import pandas as pd
import rioxarray  # noqa: F401 - registers the rio accessor
import xarray as xr
from dask import compute as dask_compute
from rasterio.enums import Resampling

from .errors import ResourceLimitError
from .evaluation import ConfusionMatrix
from .progress import LoggingProgressBar
from .regions import Region
from .sampling import NO_DATA_CLASS, SampleSet

LOGGER = logging.getLogger(__name__)


def write_feature_importance(importance: Mapping[str, float], path: Path) -> Path:
    path.parent.mkdir(parents=True, exist_ok=True)
    table = pd.DataFrame(
        {"band": list(importance.keys()), "importance": list(importance.values())}
    ).sort_values("importance", ascending=False, kind="stable")
    table.to_csv(path, index=False)
    LOGGER.info("Feature importance written -> %s", path)
    return path


def write_accuracy_matrices(
    training: ConfusionMatrix,
    validation: ConfusionMatrix,
    path: Path,
) -> Path:
    """One-row CSV holding both matrices as nested arrays, plus their class order."""

    path.parent.mkdir(parents=True, exist_ok=True)
    table = pd.DataFrame(
        [
            {
                "training_classes": json.dumps(list(training.classes)),
                "training_confusion_matrix": json.dumps(training.to_list()),
                "validation_classes": json.dumps(list(validation.classes)),
                "validation_error_matrix": json.dumps(validation.to_list()),
            }
        ]
    )
    table.to_csv(path, index=False)
    LOGGER.info("Accuracy matrices written -> %s", path)
    return path


def write_sample_table(samples: SampleSet, path: Path) -> Path:
    path.parent.mkdir(parents=True, exist_ok=True)
    samples.records.to_csv(path, index=False)
    LOGGER.info("Sample table (%d records) written -> %s", len(samples), path)
    return path


def write_classified_raster(
    classified: xr.DataArray,
    region: Region,
    path: Path,
    crs: str = "EPSG:3006",
    pixel_size: float = 10.0,
    max_pixels: int = 3_784_216_672_400,
) -> Path:
    """Reproject the class raster to ``crs``/``pixel_size``, clip to the region and write it."""

    path.parent.mkdir(parents=True, exist_ok=True)
    minx, miny, maxx, maxy = region.geometry.bounds
    requested = int(round((maxx - minx) / pixel_size)) * int(round((maxy - miny) / pixel_size))
    if requested > max_pixels:
        raise ResourceLimitError(f"Classified raster of {region.name}", requested, max_pixels)

    with LoggingProgressBar(f"Classifying {region.name}"):
        (computed,) = dask_compute(classified)
    computed = computed.astype("uint8")
    computed.rio.write_nodata(NO_DATA_CLASS, inplace=True)
    if computed.rio.crs is None:
        computed.rio.write_crs(region.crs, inplace=True)

    output = computed.rio.reproject(
        crs,
        resolution=pixel_size,
        resampling=Resampling.nearest,
        nodata=NO_DATA_CLASS,
    )
    clip_geometry = gpd.GeoSeries([region.geometry], crs=region.crs).to_crs(crs).iloc[0]
    output = output.rio.clip([clip_geometry], drop=True, all_touched=False)
    output.rio.write_nodata(NO_DATA_CLASS, inplace=True)
    output.rio.to_raster(path, dtype="uint8", compress="deflate", tiled=True, BIGTIFF="IF_SAFER")
    LOGGER.info("Classified raster written -> %s", path)
    return path


__all__ = [
    "write_feature_importance",
    "write_accuracy_matrices",
    "write_sample_table",
    "write_classified_raster",
]
