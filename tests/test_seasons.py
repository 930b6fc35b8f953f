from datetime import date

import pytest

from wetlands_ml_rf.errors import ConfigurationError
from wetlands_ml_rf.seasons import TemporalWindow, plan_windows, season_window


def test_winter_is_labelled_by_its_start_year() -> None:
    window = season_window(2021, "winter")
    assert window.label == "winter2020"
    assert window.start_date == date(2020, 12, 1)
    assert window.end_date == date(2021, 3, 1)


def test_fall_end_wraps_to_next_years_winter_breakpoint() -> None:
    window = season_window(2021, "fall")
    assert window.label == "fall2021"
    assert window.start_date == date(2021, 9, 1)
    assert window.end_date == date(2022, 12, 1)


@pytest.mark.parametrize(
    "season, start, end",
    [
        ("spring", date(2021, 3, 1), date(2021, 6, 1)),
        ("summer", date(2021, 6, 1), date(2021, 9, 1)),
    ],
)
def test_spring_and_summer_follow_breakpoints(season, start, end) -> None:
    window = season_window(2021, season)
    assert (window.start_date, window.end_date) == (start, end)
    assert window.label == f"{season}2021"


def test_windows_are_half_open() -> None:
    window = season_window(2021, "summer")
    assert window.contains(date(2021, 6, 1))
    assert window.contains(date(2021, 8, 31))
    assert not window.contains(date(2021, 9, 1))


def test_plan_orders_by_year_then_season_order() -> None:
    windows = plan_windows([2020, 2021], ["fall", "spring"])
    assert [w.label for w in windows] == ["spring2020", "fall2020", "spring2021", "fall2021"]


def test_plan_labels_are_unique_across_years() -> None:
    windows = plan_windows([2019, 2020, 2021], ["winter", "spring", "summer", "fall"])
    labels = [w.label for w in windows]
    assert len(labels) == len(set(labels)) == 12


@pytest.mark.parametrize("years, seasons", [([], ["summer"]), ([2021], []), ([2021], ["monsoon"])])
def test_plan_rejects_bad_input(years, seasons) -> None:
    with pytest.raises(ConfigurationError):
        plan_windows(years, seasons)


def test_window_must_end_after_it_starts() -> None:
    with pytest.raises(ConfigurationError):
        TemporalWindow("broken", date(2021, 6, 1), date(2021, 6, 1))


def test_suffixed_band_name() -> None:
    assert season_window(2021, "summer").suffixed("NDVI") == "NDVI_summer2021"
