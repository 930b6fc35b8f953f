from pathlib import Path

import pytest

from wetlands_ml_rf.errors import ConfigurationError
from wetlands_ml_rf.grid import GridSpec
from wetlands_ml_rf.regions import NATIONAL_REGION, canonical_region_name, load_region


def test_region_names_are_case_insensitive() -> None:
    assert canonical_region_name("stockholm") == "Stockholm"
    assert canonical_region_name("ALL") == NATIONAL_REGION


def test_unknown_region_is_a_configuration_error() -> None:
    with pytest.raises(ConfigurationError, match="Atlantis"):
        canonical_region_name("Atlantis")


def test_region_is_selected_by_code_from_boundary_layer(boundaries_path: Path, region) -> None:
    loaded = load_region("Stockholm", "EPSG:3006", boundaries_path)
    assert loaded.code == 1
    assert loaded.geometry.equals(region.geometry)
    assert loaded.bounds_latlon == (17.2147, 58.688, 19.7237, 60.3146)


def test_region_missing_from_boundary_layer(boundaries_path: Path) -> None:
    with pytest.raises(ConfigurationError, match="LANSKOD"):
        load_region("Skane", "EPSG:3006", boundaries_path)


def test_national_region_uses_bounding_box() -> None:
    loaded = load_region("all", "EPSG:3006")
    assert loaded.name == NATIONAL_REGION
    minx, miny, maxx, maxy = loaded.geometry.bounds
    assert minx < maxx and miny < maxy


def test_grid_snaps_region_bounds_to_resolution(region) -> None:
    grid = GridSpec.from_region(region, 30.0)
    assert grid.bounds == (600000.0, 6499980.0, 600210.0, 6500220.0)
    assert (grid.width, grid.height) == (7, 8)
    ys, xs = grid.coords()
    assert xs[0] == 600015.0 and ys[0] == 6500205.0
