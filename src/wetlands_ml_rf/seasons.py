"""Seasonal date windows used to group imagery into composites."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import date
from typing import Iterable, List, Sequence, Tuple

from .errors import ConfigurationError

SEASON_ORDER: Tuple[str, ...] = ("winter", "spring", "summer", "fall")
# (month, day) at which each season starts
SEASON_BREAKS: Tuple[Tuple[int, int], ...] = ((12, 1), (3, 1), (6, 1), (9, 1))


@dataclass(frozen=True)
class TemporalWindow:
    """Half-open date range ``[start_date, end_date)`` for one season of one year."""

    label: str
    start_date: date
    end_date: date

    def __post_init__(self) -> None:
        if self.end_date <= self.start_date:
            raise ConfigurationError(
                f"Window '{self.label}' ends ({self.end_date}) before it starts ({self.start_date})"
            )

    def contains(self, day: date) -> bool:
        return self.start_date <= day < self.end_date

    def suffixed(self, base: str) -> str:
        return f"{base}_{self.label}"


def season_window(year: int, season: str) -> TemporalWindow:
    if season not in SEASON_ORDER:
        raise ConfigurationError(f"Unsupported season '{season}'. Supported: {list(SEASON_ORDER)}")
    index = SEASON_ORDER.index(season)
    start_month, start_day = SEASON_BREAKS[index]

    if season == "winter":
        # Winter belongs to the spring that follows it but is labelled by its start year.
        end_month, end_day = SEASON_BREAKS[1]
        return TemporalWindow(
            label=f"winter{year - 1}",
            start_date=date(year - 1, start_month, start_day),
            end_date=date(year, end_month, end_day),
        )
    if season == "fall":
        end_month, end_day = SEASON_BREAKS[0]
        return TemporalWindow(
            label=f"fall{year}",
            start_date=date(year, start_month, start_day),
            end_date=date(year + 1, end_month, end_day),
        )
    end_month, end_day = SEASON_BREAKS[index + 1]
    return TemporalWindow(
        label=f"{season}{year}",
        start_date=date(year, start_month, start_day),
        end_date=date(year, end_month, end_day),
    )


def plan_windows(years: Sequence[int], seasons: Iterable[str]) -> List[TemporalWindow]:
    """Return windows per year in winter/spring/summer/fall order, limited to ``seasons``."""

    requested = {season.strip().lower() for season in seasons}
    if not years:
        raise ConfigurationError("At least one year is required to plan seasonal windows.")
    if not requested:
        raise ConfigurationError("At least one season is required to plan seasonal windows.")
    unknown = requested.difference(SEASON_ORDER)
    if unknown:
        raise ConfigurationError(
            f"Unsupported season(s) {sorted(unknown)}. Supported: {list(SEASON_ORDER)}"
        )

    windows: List[TemporalWindow] = []
    for year in years:
        for season in SEASON_ORDER:
            if season in requested:
                windows.append(season_window(int(year), season))
    return windows


__all__ = ["SEASON_ORDER", "SEASON_BREAKS", "TemporalWindow", "season_window", "plan_windows"]
