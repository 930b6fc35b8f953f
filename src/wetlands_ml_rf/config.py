"""Run configuration objects for the seasonal wetlands classification pipeline."""

from __future__ import annotations

import json
from dataclasses import dataclass, field, fields, is_dataclass, replace
from enum import Enum
from pathlib import Path
from typing import Any, Dict, Optional, Tuple, Union

from .errors import ConfigurationError
from .seasons import SEASON_ORDER

SUPPORTED_INDICES: Tuple[str, ...] = ("NDVI", "NDWI", "NDPI")
EMPTY_WINDOW_POLICIES: Tuple[str, ...] = ("fail", "skip")


class LabelMode(str, Enum):
    """Which label source feeds the target band and how samples are separated."""

    VMI = "vmi"
    DIGITIZED = "digitized"
    DUAL = "dual"

    @property
    def default_scale(self) -> float:
        return 100.0 if self is LabelMode.VMI else 10.0

    @property
    def uses_random_split(self) -> bool:
        return self is not LabelMode.DUAL

    @property
    def code(self) -> int:
        return {LabelMode.VMI: 1, LabelMode.DIGITIZED: 2, LabelMode.DUAL: 2}[self]


@dataclass(frozen=True)
class BandSelection:
    sar: Tuple[str, ...] = ("VV", "VH")
    optical: Tuple[str, ...] = ("B2", "B3", "B4", "B8")
    indices: Tuple[str, ...] = ("NDVI", "NDWI")
    topography: Tuple[str, ...] = ()

    def __post_init__(self) -> None:
        unknown = set(self.indices).difference(SUPPORTED_INDICES)
        if unknown:
            raise ConfigurationError(
                f"Unsupported indices {sorted(unknown)}. Supported: {list(SUPPORTED_INDICES)}"
            )
        if not self.sar and not self.optical:
            raise ConfigurationError("Select at least one SAR or optical band.")
        for group in (self.sar, self.optical, self.indices, self.topography):
            if len(set(group)) != len(group):
                raise ConfigurationError(f"Duplicate band names in selection {list(group)}")


@dataclass(frozen=True)
class SarSettings:
    """Sentinel-1 GRD selection and edge masking parameters (values in dB)."""

    collection: str = "sentinel-1-grd"
    instrument_mode: str = "IW"
    polarization: str = "VV"
    orbit_state: str = "descending"
    edge_threshold: float = -30.0
    convert_to_db: bool = False
    instrument_mode_property: str = "sar:instrument_mode"
    polarizations_property: str = "sar:polarizations"
    orbit_state_property: str = "sat:orbit_state"
    # band name -> STAC asset key
    assets: Dict[str, str] = field(default_factory=lambda: {"VV": "vv", "VH": "vh"})


@dataclass(frozen=True)
class OpticalSettings:
    """Sentinel-2 surface reflectance selection and cloud masking parameters."""

    collection: str = "sentinel-2-l2a"
    max_cloud_cover: float = 20.0
    cloud_cover_property: str = "eo:cloud_cover"
    qa_band: str = "QA60"
    qa_bits: Tuple[int, ...] = (10, 11)
    cloud_probability_band: str = "MSK_CLDPRB"
    max_cloud_probability: float = 5.0
    aerosol_band: str = "B1"
    max_aerosol: float = 1800.0
    nir_band: str = "B8"
    red_band: str = "B4"
    green_band: str = "B3"
    mask_dilation: int = 0
    assets: Dict[str, str] = field(
        default_factory=lambda: {"B1": "coastal", "B2": "blue", "B3": "green", "B4": "red", "B8": "nir"}
    )

    def __post_init__(self) -> None:
        if not 0 < self.max_cloud_cover <= 100:
            raise ConfigurationError("max_cloud_cover must be within (0, 100].")
        if self.mask_dilation < 0:
            raise ConfigurationError("mask_dilation cannot be negative.")

    @property
    def mask_bands(self) -> Tuple[str, ...]:
        return (self.qa_band, self.cloud_probability_band, self.aerosol_band)


@dataclass(frozen=True)
class SamplingSettings:
    train_points_per_class: int = 5000
    validation_points_per_class: int = 10000
    split_fraction: float = 0.6
    scale: Optional[float] = None
    seed: int = 0
    keep_geometries: bool = False

    def __post_init__(self) -> None:
        if self.train_points_per_class <= 0 or self.validation_points_per_class <= 0:
            raise ConfigurationError("points_per_class must be a positive integer.")
        if not 0.0 < self.split_fraction < 1.0:
            raise ConfigurationError("split_fraction must lie strictly between 0 and 1.")
        if self.scale is not None and self.scale <= 0:
            raise ConfigurationError("Sampling scale must be positive.")


@dataclass(frozen=True)
class ClassifierSettings:
    number_of_trees: int = 80
    min_leaf_population: int = 1
    bag_fraction: Optional[float] = None
    seed: int = 0

    def __post_init__(self) -> None:
        if self.number_of_trees <= 0:
            raise ConfigurationError("number_of_trees must be positive.")
        if self.bag_fraction is not None and not 0.0 < self.bag_fraction <= 1.0:
            raise ConfigurationError("bag_fraction must lie within (0, 1].")


@dataclass(frozen=True)
class ExportSettings:
    output_dir: Path = Path("outputs")
    crs: str = "EPSG:3006"
    pixel_size: float = 10.0
    max_pixels: int = 3_784_216_672_400
    interactive_timeout: float = 300.0
    export_sample_tables: bool = True
    max_retries: int = 3

    def __post_init__(self) -> None:
        if self.pixel_size <= 0:
            raise ConfigurationError("Export pixel size must be positive.")
        if self.interactive_timeout <= 0:
            raise ConfigurationError("interactive_timeout must be positive.")
        if self.max_retries < 0:
            raise ConfigurationError("max_retries cannot be negative.")


@dataclass(frozen=True)
class RunConfig:
    """Immutable description of one pipeline run, passed to every component."""

    region: str
    label_path: Path
    years: Tuple[int, ...] = (2021,)
    seasons: Tuple[str, ...] = ("summer",)
    label_mode: LabelMode = LabelMode.DIGITIZED
    validation_label_path: Optional[Path] = None
    topography_dir: Optional[Path] = None
    boundaries_path: Optional[Path] = None
    stac_url: Optional[str] = None
    crs: str = "EPSG:3006"
    resolution: float = 10.0
    verbose: bool = False
    on_empty_window: str = "fail"
    bands: BandSelection = field(default_factory=BandSelection)
    sar: SarSettings = field(default_factory=SarSettings)
    optical: OpticalSettings = field(default_factory=OpticalSettings)
    sampling: SamplingSettings = field(default_factory=SamplingSettings)
    classifier: ClassifierSettings = field(default_factory=ClassifierSettings)
    export: ExportSettings = field(default_factory=ExportSettings)

    def __post_init__(self) -> None:
        if not self.region or not self.region.strip():
            raise ConfigurationError("A region name is required.")
        if not self.years:
            raise ConfigurationError("At least one year is required.")
        if not self.seasons:
            raise ConfigurationError("At least one season is required.")
        unknown = {season.lower() for season in self.seasons}.difference(SEASON_ORDER)
        if unknown:
            raise ConfigurationError(
                f"Unsupported season(s) {sorted(unknown)}. Supported: {list(SEASON_ORDER)}"
            )
        if self.label_mode is LabelMode.DUAL and self.validation_label_path is None:
            raise ConfigurationError("label_mode 'dual' requires a validation label raster.")
        if self.bands.topography and self.topography_dir is None:
            raise ConfigurationError("Topographic layers were requested without a topography_dir.")
        if self.on_empty_window not in EMPTY_WINDOW_POLICIES:
            raise ConfigurationError(
                f"on_empty_window must be one of {list(EMPTY_WINDOW_POLICIES)}"
            )
        if self.resolution <= 0:
            raise ConfigurationError("Working resolution must be positive.")
        if self.stac_url:
            self._check_asset_mappings()
        if "NDPI" in self.bands.indices and not {"VV", "VH"}.issubset(self.bands.sar):
            raise ConfigurationError("NDPI requires both VV and VH SAR bands.")
        optical_needs = {
            "NDVI": (self.optical.nir_band, self.optical.red_band),
            "NDWI": (self.optical.green_band, self.optical.nir_band),
        }
        for index, required in optical_needs.items():
            if index in self.bands.indices and not set(required).issubset(self.bands.optical):
                raise ConfigurationError(f"{index} requires optical bands {list(required)}")

    def _check_asset_mappings(self) -> None:
        """Every band requested from the STAC API needs an asset key."""

        missing = [band for band in self.bands.sar if band not in self.sar.assets]
        if self.bands.optical:
            requested = tuple(self.bands.optical) + self.optical.mask_bands
            missing += [band for band in requested if band not in self.optical.assets]
        if missing:
            raise ConfigurationError(
                f"No STAC asset mapped for band(s) {sorted(set(missing))}. Add them to "
                "sar.assets / optical.assets, mapping a band to itself when the catalogue "
                "uses the band name as asset key."
            )

    @property
    def sampling_scale(self) -> float:
        if self.sampling.scale is not None:
            return self.sampling.scale
        return self.label_mode.default_scale

    def with_overrides(self, **changes: Any) -> "RunConfig":
        return replace(self, **{key: value for key, value in changes.items() if value is not None})

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "RunConfig":
        return _build_dataclass(cls, data)

    @classmethod
    def from_json(cls, path: Union[str, Path]) -> "RunConfig":
        config_path = Path(path).expanduser()
        if not config_path.exists():
            raise ConfigurationError(f"Configuration file not found: {config_path}")
        try:
            payload = json.loads(config_path.read_text(encoding="utf-8"))
        except json.JSONDecodeError as exc:
            raise ConfigurationError(f"Invalid JSON in {config_path}: {exc}") from exc
        if not isinstance(payload, dict):
            raise ConfigurationError(f"Configuration {config_path} must hold a JSON object.")
        return cls.from_dict(payload)


_NESTED = {
    "bands": BandSelection,
    "sar": SarSettings,
    "optical": OpticalSettings,
    "sampling": SamplingSettings,
    "classifier": ClassifierSettings,
    "export": ExportSettings,
}
_PATHS = {"label_path", "validation_label_path", "topography_dir", "boundaries_path", "output_dir"}


def _build_dataclass(cls, data: Dict[str, Any]):
    known = {f.name for f in fields(cls)}
    unknown = set(data).difference(known)
    if unknown:
        raise ConfigurationError(f"Unknown {cls.__name__} option(s): {sorted(unknown)}")
    kwargs: Dict[str, Any] = {}
    for key, value in data.items():
        if key in _NESTED and isinstance(value, dict):
            value = _build_dataclass(_NESTED[key], value)
        elif key in _PATHS and value is not None:
            value = Path(value)
        elif key == "label_mode":
            try:
                value = LabelMode(value)
            except ValueError as exc:
                raise ConfigurationError(
                    f"Unknown label_mode '{value}'. Supported: {[m.value for m in LabelMode]}"
                ) from exc
        elif isinstance(value, list):
            value = tuple(value)
        kwargs[key] = value
    try:
        return cls(**kwargs)
    except TypeError as exc:
        raise ConfigurationError(f"Invalid {cls.__name__} options: {exc}") from exc


def config_to_dict(config: Any) -> Dict[str, Any]:
    """Return a JSON-serialisable view of ``config``."""

    result: Dict[str, Any] = {}
    for item in fields(config):
        value = getattr(config, item.name)
        if is_dataclass(value):
            value = config_to_dict(value)
        elif isinstance(value, Enum):
            value = value.value
        elif isinstance(value, Path):
            value = str(value)
        elif isinstance(value, tuple):
            value = list(value)
        result[item.name] = value
    return result


__all__ = [
    "SUPPORTED_INDICES",
    "LabelMode",
    "BandSelection",
    "SarSettings",
    "OpticalSettings",
    "SamplingSettings",
    "ClassifierSettings",
    "ExportSettings",
    "RunConfig",
    "config_to_dict",
]
