"""Sentinel-1 and Sentinel-2 collection access and seasonal compositing."""

from .compositing import (
    SensorCompositor,
    build_optical_mask,
    mask_sar_edges,
    normalized_difference,
    optical_composite,
    sar_composite,
)
from .sources import (
    ArrayCollectionSource,
    CollectionQuery,
    CollectionSource,
    PropertyFilter,
    StacCollectionSource,
)

__all__ = [
    "ArrayCollectionSource",
    "CollectionQuery",
    "CollectionSource",
    "PropertyFilter",
    "SensorCompositor",
    "StacCollectionSource",
    "build_optical_mask",
    "mask_sar_edges",
    "normalized_difference",
    "optical_composite",
    "sar_composite",
]
