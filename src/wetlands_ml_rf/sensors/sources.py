"""Image collection sources standing in for the remote geospatial compute service.

A source turns a :class:`CollectionQuery` into a lazy ``(time, band, y, x)``
array. Nothing is read until the caller computes a reduction of it.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Dict, List, Mapping, Optional, Protocol, Tuple

import numpy as np
import pandas as pd
import rioxarray  # noqa: F401 - registers the rio accessor
import stackstac
import xarray as xr
from pystac import Item
from pystac_client import Client
from shapely.geometry import box, mapping

from ..errors import ConfigurationError, EmptyCollectionError, ResourceLimitError
from ..grid import DEFAULT_CHUNKS, GridSpec
from ..regions import Region
from ..seasons import TemporalWindow

LOGGER = logging.getLogger(__name__)

FILTER_OPERATORS = ("eq", "lt", "lte", "gt", "gte", "contains")


@dataclass(frozen=True)
class PropertyFilter:
    """Predicate on per-image metadata, e.g. ``eo:cloud_cover < 20``."""

    name: str
    op: str
    value: Any

    def __post_init__(self) -> None:
        if self.op not in FILTER_OPERATORS:
            raise ConfigurationError(f"Unsupported filter operator '{self.op}'")

    def matches(self, properties: Mapping[str, Any]) -> bool:
        if self.name not in properties:
            return False
        actual = properties[self.name]
        if actual is None or (np.isscalar(actual) and pd.isna(actual)):
            return False
        if self.op == "contains":
            if isinstance(actual, str):
                actual = [part.strip() for part in actual.split(",")]
            return self.value in list(actual)
        if self.op == "eq":
            return _normalise(actual) == _normalise(self.value)
        if self.op == "lt":
            return actual < self.value
        if self.op == "lte":
            return actual <= self.value
        if self.op == "gt":
            return actual > self.value
        return actual >= self.value

    def as_stac_query(self) -> Optional[Dict[str, Any]]:
        if self.op == "contains":
            return None
        return {self.op: self.value}


def _normalise(value: Any) -> Any:
    return value.lower() if isinstance(value, str) else value


@dataclass(frozen=True)
class CollectionQuery:
    collection: str
    sensor: str
    bands: Tuple[str, ...]
    window: TemporalWindow
    region: Region
    grid: GridSpec
    filters: Tuple[PropertyFilter, ...] = ()


class CollectionSource(Protocol):
    def load(self, query: CollectionQuery) -> xr.DataArray:
        """Return the filtered image series as a lazy (time, band, y, x) array."""


def _check_size(query: CollectionQuery, series: xr.DataArray, max_pixels: Optional[int]) -> None:
    if max_pixels is None:
        return
    requested = int(series.sizes["time"]) * int(series.sizes["y"]) * int(series.sizes["x"])
    if requested > max_pixels:
        raise ResourceLimitError(
            f"{query.sensor} series for {query.window.label}", requested, max_pixels
        )


class StacCollectionSource:
    """Query a STAC API and stack matching items onto the working grid with stackstac."""

    def __init__(
        self,
        url: str,
        asset_map: Optional[Mapping[str, Mapping[str, str]]] = None,
        chunks: int = DEFAULT_CHUNKS,
        max_pixels: Optional[int] = None,
    ) -> None:
        self.url = url
        self.asset_map = {key: dict(value) for key, value in (asset_map or {}).items()}
        self.chunks = chunks
        self.max_pixels = max_pixels
        self._client: Optional[Client] = None

    @property
    def client(self) -> Client:
        if self._client is None:
            LOGGER.info("Opening STAC API %s", self.url)
            self._client = Client.open(self.url)
        return self._client

    def search(self, query: CollectionQuery) -> List[Item]:
        window = query.window
        stac_query: Dict[str, Dict[str, Any]] = {}
        local_filters: List[PropertyFilter] = []
        for item_filter in query.filters:
            clause = item_filter.as_stac_query()
            if clause is None:
                local_filters.append(item_filter)
            else:
                stac_query.setdefault(item_filter.name, {}).update(clause)

        search = self.client.search(
            collections=[query.collection],
            intersects=mapping(box(*query.region.bounds_latlon)),
            datetime=f"{window.start_date.isoformat()}/{window.end_date.isoformat()}",
            query=stac_query or None,
        )
        items: Dict[str, Item] = {}
        for item in search.items():
            # STAC ranges are closed; windows are half-open.
            if item.datetime is not None and not window.contains(item.datetime.date()):
                continue
            if all(item_filter.matches(item.properties) for item_filter in local_filters):
                items[item.id] = item
        LOGGER.info(
            "Window %s: %d %s item(s) in %s",
            window.label,
            len(items),
            query.sensor,
            query.collection,
        )
        return sorted(items.values(), key=lambda item: (item.datetime, item.id))

    def load(self, query: CollectionQuery) -> xr.DataArray:
        items = self.search(query)
        if not items:
            raise EmptyCollectionError(query.sensor, query.window.label, query.collection)
        mapping_for_collection = self.asset_map.get(query.collection, {})
        assets = [mapping_for_collection.get(band, band) for band in query.bands]
        missing = [asset for asset in assets if asset not in items[0].assets]
        if missing:
            raise ConfigurationError(
                f"Collection {query.collection} items lack asset(s) {missing}"
            )
        epsg = int(query.grid.crs.split(":")[-1])
        series = stackstac.stack(
            items,
            assets=assets,
            epsg=epsg,
            resolution=query.grid.resolution,
            bounds=query.grid.bounds,
            chunksize={"x": self.chunks, "y": self.chunks},
            dtype="float64",
            fill_value=np.nan,
            rescale=False,
            properties=False,
            xy_coords="center",
        )
        series = series.reset_coords(drop=True).assign_coords(band=list(query.bands))
        series.rio.write_crs(query.grid.crs, inplace=True)
        _check_size(query, series, self.max_pixels)
        return series


class ArrayCollectionSource:
    """Serve collections held as in-memory or file-backed ``(time, band, y, x)`` arrays.

    Per-image metadata is read from non-dimension coordinates along ``time``,
    named like the STAC properties (``eo:cloud_cover``, ``sat:orbit_state``...).
    """

    def __init__(
        self,
        collections: Mapping[str, xr.DataArray],
        max_pixels: Optional[int] = None,
    ) -> None:
        self.collections = dict(collections)
        self.max_pixels = max_pixels

    def load(self, query: CollectionQuery) -> xr.DataArray:
        if query.collection not in self.collections:
            raise EmptyCollectionError(query.sensor, query.window.label, f"unknown collection {query.collection}")
        series = self.collections[query.collection]
        missing = [band for band in query.bands if band not in series["band"].values]
        if missing:
            raise ConfigurationError(f"Collection {query.collection} lacks band(s) {missing}")

        dates = pd.DatetimeIndex(series["time"].values).date
        keep = np.array([query.window.contains(day) for day in dates], dtype=bool)
        for index in np.flatnonzero(keep):
            properties = {
                name: _scalar(coord.values[index])
                for name, coord in series.coords.items()
                if coord.dims == ("time",) and name != "time"
            }
            if not all(item_filter.matches(properties) for item_filter in query.filters):
                keep[index] = False
        if not keep.any():
            raise EmptyCollectionError(query.sensor, query.window.label, query.collection)

        selected = series.isel(time=np.flatnonzero(keep)).sel(band=list(query.bands))
        minx, miny, maxx, maxy = query.grid.bounds
        ys = selected["y"].values
        y_slice = slice(maxy, miny) if ys.size > 1 and ys[0] > ys[-1] else slice(miny, maxy)
        selected = selected.sel(x=slice(minx, maxx), y=y_slice)
        selected = _coarsen_to(selected, query.grid.resolution)
        _check_size(query, selected, self.max_pixels)
        return selected


def _coarsen_to(series: xr.DataArray, resolution: float) -> xr.DataArray:
    """Block-average ``series`` onto a grid coarser by a whole factor."""

    xs = series["x"].values
    if xs.size < 2:
        return series
    factor = int(round(resolution / abs(float(xs[1] - xs[0]))))
    if factor <= 1:
        return series
    return series.coarsen(y=factor, x=factor, boundary="trim").mean()


def _scalar(value: Any) -> Any:
    return value.item() if isinstance(value, np.generic) else value


__all__ = [
    "PropertyFilter",
    "CollectionQuery",
    "CollectionSource",
    "StacCollectionSource",
    "ArrayCollectionSource",
]
