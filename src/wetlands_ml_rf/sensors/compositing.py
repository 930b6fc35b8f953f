"""Seasonal Sentinel-1 / Sentinel-2 compositing.

Both branches are pure functions of (series, window, settings): they mask the
series, reduce it over time and rename the result with the window label. The
returned arrays stay lazy until the caller computes them.
"""

from __future__ import annotations

import logging
from typing import Sequence, Tuple

import numpy as np
import xarray as xr
from skimage.morphology import binary_dilation

from ..config import OpticalSettings, RunConfig, SarSettings
from ..grid import GridSpec
from ..regions import Region
from ..seasons import TemporalWindow
from .sources import CollectionQuery, CollectionSource, PropertyFilter

LOGGER = logging.getLogger(__name__)

SAR = "sar"
OPTICAL = "optical"


def normalized_difference(first: xr.DataArray, second: xr.DataArray) -> xr.DataArray:
    """``(first - second) / (first + second)``, missing where the sum is zero."""

    total = first + second
    return ((first - second) / total.where(total != 0)).astype("float32")


def rename_for_window(composite: xr.DataArray, window: TemporalWindow) -> xr.DataArray:
    names = [window.suffixed(str(band)) for band in composite["band"].values]
    return composite.assign_coords(band=names)


def _append_band(composite: xr.DataArray, band: xr.DataArray, name: str) -> xr.DataArray:
    band = band.drop_vars("band", errors="ignore").expand_dims(band=[name])
    return xr.concat([composite, band], dim="band")


def mask_sar_edges(series: xr.DataArray, threshold: float) -> xr.DataArray:
    """Drop pixels below ``threshold`` dB in any polarisation (swath edge artefacts)."""

    edge = (series < threshold).any(dim="band")
    return series.where(~edge)


def sar_composite(
    series: xr.DataArray,
    window: TemporalWindow,
    settings: SarSettings,
    bands: Sequence[str],
    indices: Sequence[str] = (),
) -> xr.DataArray:
    selected = series.sel(band=list(bands))
    if settings.convert_to_db:
        selected = 10 * np.log10(selected.where(selected > 0))
    masked = mask_sar_edges(selected, settings.edge_threshold)
    composite = masked.mean(dim="time", skipna=True).astype("float32")

    if "NDPI" in indices:
        ndpi = normalized_difference(composite.sel(band="VV"), composite.sel(band="VH"))
        composite = _append_band(composite, ndpi, "NDPI")
    return rename_for_window(composite, window)


def build_optical_mask(series: xr.DataArray, settings: OpticalSettings) -> xr.DataArray:
    """Per-image (time, y, x) validity mask from QA bits, cloud probability and aerosol bands."""

    qa = series.sel(band=settings.qa_band)
    bits = 0
    for bit in settings.qa_bits:
        bits |= 1 << bit
    clear_qa = qa.notnull() & ((qa.fillna(0).astype("int64") & bits) == 0)
    low_probability = series.sel(band=settings.cloud_probability_band) <= settings.max_cloud_probability
    low_aerosol = series.sel(band=settings.aerosol_band) <= settings.max_aerosol
    mask = (clear_qa & low_probability & low_aerosol).reset_coords(drop=True)

    if settings.mask_dilation > 0:
        cloudy = ~mask
        iterations = settings.mask_dilation

        def _dilate(arr: np.ndarray) -> np.ndarray:
            result = arr
            for _ in range(iterations):
                result = binary_dilation(result)
            return result

        dilated = xr.apply_ufunc(
            _dilate,
            cloudy,
            input_core_dims=[["y", "x"]],
            output_core_dims=[["y", "x"]],
            vectorize=True,
            dask="parallelized",
            output_dtypes=[bool],
        )
        mask = mask & ~dilated
    return mask


def optical_composite(
    series: xr.DataArray,
    window: TemporalWindow,
    settings: OpticalSettings,
    bands: Sequence[str],
    indices: Sequence[str] = (),
) -> xr.DataArray:
    mask = build_optical_mask(series, settings)
    spectral = series.sel(band=list(bands))
    masked = spectral.where(mask)
    composite = masked.median(dim="time", skipna=True).astype("float32")

    if "NDVI" in indices:
        ndvi = normalized_difference(
            composite.sel(band=settings.nir_band), composite.sel(band=settings.red_band)
        )
        composite = _append_band(composite, ndvi, "NDVI")
    if "NDWI" in indices:
        ndwi = normalized_difference(
            composite.sel(band=settings.green_band), composite.sel(band=settings.nir_band)
        )
        composite = _append_band(composite, ndwi, "NDWI")
    return rename_for_window(composite, window)


class SensorCompositor:
    """Build the per-window band set (optical bands first, then SAR) for one region."""

    def __init__(
        self,
        source: CollectionSource,
        region: Region,
        grid: GridSpec,
        config: RunConfig,
    ) -> None:
        self.source = source
        self.region = region
        self.grid = grid
        self.config = config

    def sar_query(self, window: TemporalWindow) -> CollectionQuery:
        settings = self.config.sar
        filters = (
            PropertyFilter(settings.instrument_mode_property, "eq", settings.instrument_mode),
            PropertyFilter(settings.polarizations_property, "contains", settings.polarization),
            PropertyFilter(settings.orbit_state_property, "eq", settings.orbit_state),
        )
        return CollectionQuery(
            collection=settings.collection,
            sensor=SAR,
            bands=tuple(self.config.bands.sar),
            window=window,
            region=self.region,
            grid=self.grid,
            filters=filters,
        )

    def optical_query(self, window: TemporalWindow) -> CollectionQuery:
        settings = self.config.optical
        bands: Tuple[str, ...] = tuple(self.config.bands.optical)
        extra = tuple(band for band in settings.mask_bands if band not in bands)
        return CollectionQuery(
            collection=settings.collection,
            sensor=OPTICAL,
            bands=bands + extra,
            window=window,
            region=self.region,
            grid=self.grid,
            filters=(PropertyFilter(settings.cloud_cover_property, "lt", settings.max_cloud_cover),),
        )

    def sar(self, window: TemporalWindow) -> xr.DataArray:
        series = self.source.load(self.sar_query(window))
        LOGGER.info("Window %s: SAR mean over %d acquisition(s)", window.label, series.sizes["time"])
        return sar_composite(
            series, window, self.config.sar, self.config.bands.sar, self.config.bands.indices
        )

    def optical(self, window: TemporalWindow) -> xr.DataArray:
        series = self.source.load(self.optical_query(window))
        LOGGER.info("Window %s: optical median over %d granule(s)", window.label, series.sizes["time"])
        return optical_composite(
            series,
            window,
            self.config.optical,
            self.config.bands.optical,
            self.config.bands.indices,
        )

    def composite(self, window: TemporalWindow) -> xr.DataArray:
        """Return the window's band set; raises EmptyCollectionError when a sensor has no data."""

        parts = []
        if self.config.bands.optical:
            parts.append(self.optical(window))
        if self.config.bands.sar:
            parts.append(self.sar(window))
        combined = parts[0] if len(parts) == 1 else xr.concat(
            [part.reset_coords(drop=True) for part in parts], dim="band", join="override"
        )
        combined.rio.write_crs(self.grid.crs, inplace=True)
        return combined


__all__ = [
    "normalized_difference",
    "rename_for_window",
    "mask_sar_edges",
    "sar_composite",
    "build_optical_mask",
    "optical_composite",
    "SensorCompositor",
]
