"""Static region tables and region geometry resolution."""

from __future__ import annotations

import logging
from dataclasses import dataclass, replace
from pathlib import Path
from typing import Dict, Optional, Tuple

import geopandas as gpd
from shapely.geometry import box
from shapely.geometry.base import BaseGeometry

from .errors import ConfigurationError

LOGGER = logging.getLogger(__name__)

REGION_CODE_ATTRIBUTE = "LANSKOD"
NATIONAL_REGION = "Sweden"
NATIONAL_ALIASES = {"sweden", "all"}

# Region code as stored in the boundary layer. Codes 2, 11, 15 and 16 are unused.
REGION_CODES: Dict[str, int] = {
    "Stockholm": 1,
    "Uppsala": 3,
    "Sodermanland": 4,
    "Ostergotland": 5,
    "Jonkoping": 6,
    "Kronoberg": 7,
    "Kalmar": 8,
    "Gotland": 9,
    "Blekinge": 10,
    "Skane": 12,
    "Halland": 13,
    "VastraGotaland": 14,
    "Varmland": 17,
    "Orebro": 18,
    "Vastmanland": 19,
    "Dalarna": 20,
    "Gavleborg": 21,
    "Vasternorrland": 22,
    "Jamtland": 23,
    "Vasterbotten": 24,
    "Norrbotten": 25,
}

# (min_lon, min_lat, max_lon, max_lat) in EPSG:4326
REGION_BBOXES: Dict[str, Tuple[float, float, float, float]] = {
    "Stockholm": (17.2147, 58.688, 19.7237, 60.3146),
    "Uppsala": (16.6567, 59.3516, 18.9345, 60.6744),
    "Sodermanland": (15.6086, 58.4985, 17.7656, 59.5456),
    "Ostergotland": (14.4027, 57.6836, 17.1262, 59.0209),
    "Jonkoping": (13.0213, 56.8663, 15.6767, 58.1868),
    "Kronoberg": (13.2799, 56.3477, 15.8429, 57.236),
    "Kalmar": (15.3347, 56.1832, 17.2832, 58.1471),
    "Gotland": (17.9273, 56.8751, 19.4033, 58.4298),
    "Blekinge": (14.3874, 55.949, 16.0736, 56.5031),
    "Skane": (12.432, 55.3225, 14.5941, 56.5356),
    "Halland": (11.8119, 56.2984, 13.7158, 57.6192),
    "VastraGotaland": (10.9231, 57.1011, 14.7879, 59.2924),
    "Varmland": (11.5418, 58.6971, 14.4879, 61.075),
    "Orebro": (14.2613, 58.6438, 15.8211, 60.1085),
    "Vastmanland": (15.414, 59.1856, 17.0048, 60.206),
    "Dalarna": (12.0866, 59.8278, 16.8206, 62.2818),
    "Gavleborg": (14.4338, 60.1765, 17.6936, 62.3436),
    "Vasternorrland": (14.7693, 62.0984, 19.3636, 64.0379),
    "Jamtland": (11.7697, 61.5351, 17.1597, 65.1049),
    "Vasterbotten": (14.2933, 63.3353, 22.0705, 66.3443),
    "Norrbotten": (15.3589, 64.9372, 25.4839, 69.1492),
    NATIONAL_REGION: (10.9231, 55.0, 25.4839, 69.1492),
}

# Simplification tolerance in metres for boundaries that exceed backend memory otherwise.
SIMPLIFY_TOLERANCE: Dict[str, float] = {
    "Norrbotten": 30.0,
    "Jamtland": 30.0,
    "Vasternorrland": 20.0,
    "Vasterbotten": 20.0,
    "Uppsala": 10.0,
    "VastraGotaland": 10.0,
    "Varmland": 10.0,
}


@dataclass(frozen=True)
class Region:
    """A named area of interest with its geometry expressed in ``crs``."""

    name: str
    geometry: BaseGeometry
    crs: str
    code: Optional[int] = None
    bbox_latlon: Optional[Tuple[float, float, float, float]] = None

    @property
    def bounds_latlon(self) -> Tuple[float, float, float, float]:
        if self.bbox_latlon is not None:
            return self.bbox_latlon
        series = gpd.GeoSeries([self.geometry], crs=self.crs).to_crs(4326)
        return tuple(float(v) for v in series.total_bounds)

    def simplified(self, tolerance: float) -> "Region":
        if tolerance <= 0:
            return self
        geometry = self.geometry.simplify(tolerance, preserve_topology=True)
        return replace(self, geometry=geometry)


def canonical_region_name(name: str) -> str:
    candidate = name.strip()
    if candidate.lower() in NATIONAL_ALIASES:
        return NATIONAL_REGION
    lookup = {key.lower(): key for key in REGION_BBOXES}
    if candidate.lower() not in lookup:
        raise ConfigurationError(
            f"Unknown region '{name}'. Supported: {sorted(REGION_BBOXES)} or 'all'."
        )
    return lookup[candidate.lower()]


def _bbox_geometry(name: str, crs: str) -> BaseGeometry:
    series = gpd.GeoSeries([box(*REGION_BBOXES[name])], crs=4326).to_crs(crs)
    return series.iloc[0]


def load_region(
    name: str,
    crs: str,
    boundaries_path: Optional[Path] = None,
    code_attribute: str = REGION_CODE_ATTRIBUTE,
) -> Region:
    """Resolve ``name`` to a region geometry, simplified per the static tolerance table."""

    region_name = canonical_region_name(name)
    bbox = REGION_BBOXES[region_name]
    code = REGION_CODES.get(region_name)

    if region_name == NATIONAL_REGION or boundaries_path is None:
        if boundaries_path is None and region_name != NATIONAL_REGION:
            LOGGER.warning("No boundary layer configured; using the bounding box of %s.", region_name)
        return Region(region_name, _bbox_geometry(region_name, crs), crs, code, bbox)

    gdf = gpd.read_file(boundaries_path)
    if code_attribute not in gdf.columns:
        raise ConfigurationError(
            f"Boundary layer {boundaries_path} lacks the '{code_attribute}' attribute."
        )
    selected = gdf[gdf[code_attribute].astype(int) == code]
    if selected.empty:
        raise ConfigurationError(
            f"No features with {code_attribute} == {code} ({region_name}) in {boundaries_path}."
        )
    if selected.crs is None:
        LOGGER.warning("Boundary layer %s has no CRS; assuming EPSG:4326.", boundaries_path)
        selected = selected.set_crs(4326)
    geometry = selected.to_crs(crs).geometry.union_all()
    if not geometry.is_valid:
        geometry = geometry.buffer(0)

    region = Region(region_name, geometry, crs, code, bbox)
    tolerance = SIMPLIFY_TOLERANCE.get(region_name, 0.0)
    if tolerance:
        LOGGER.info("Simplifying %s boundary with tolerance %.0f m", region_name, tolerance)
        region = region.simplified(tolerance)
    return region


__all__ = [
    "REGION_CODES",
    "REGION_BBOXES",
    "SIMPLIFY_TOLERANCE",
    "NATIONAL_REGION",
    "Region",
    "canonical_region_name",
    "load_region",
]
