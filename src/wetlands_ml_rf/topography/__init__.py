"""Topographic feature layers."""

from .processing import DEFAULT_TPI_RADII, derive_topography, load_topography, write_topography_layers

__all__ = ["DEFAULT_TPI_RADII", "derive_topography", "load_topography", "write_topography_layers"]
