"""End-to-end run: windows -> composites -> feature stack -> samples -> classifier -> artifacts."""

from __future__ import annotations

import logging
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Callable, Dict, Iterator, List, Optional, Tuple, Type, TypeVar

import xarray as xr
from rasterio.enums import Resampling

from .classifier import TrainedClassifier, train_random_forest
from .config import LabelMode, RunConfig
from .errors import (
    ConfigurationError,
    EmptyCollectionError,
    PipelineRunError,
    ResourceLimitError,
    WetlandsError,
)
from .evaluation import ConfusionMatrix, evaluate_samples
from .export import (
    write_accuracy_matrices,
    write_classified_raster,
    write_feature_importance,
    write_sample_table,
)
from .grid import GridSpec, open_aligned_raster
from .jobs import Job, JobRunner
from .progress import WindowProgress
from .regions import SIMPLIFY_TOLERANCE, Region, canonical_region_name, load_region
from .sampling import SampleSet, StratifiedSampler
from .seasons import TemporalWindow, plan_windows
from .sensors import CollectionSource, SensorCompositor, StacCollectionSource
from .stacking import FeatureStack, assemble_feature_stack
from .topography import load_topography

LOGGER = logging.getLogger(__name__)

T = TypeVar("T")

RUN_EPOCH = datetime(2022, 3, 8)
DEFAULT_RETRY_TOLERANCE = 10.0


def run_label(config: RunConfig, now: Optional[datetime] = None) -> str:
    """``{region}_run{minutes since 2022-03-08}``, plus ``_lm{code}`` for single-raster modes."""

    now = now or datetime.now()
    minutes = int((now - RUN_EPOCH).total_seconds() // 60)
    label = f"{canonical_region_name(config.region)}_run{minutes}"
    if config.label_mode.uses_random_split:
        label += f"_lm{config.label_mode.code}"
    return label


def retry_with_reduced_precision(
    operation: Callable[[Region, float], T],
    region: Region,
    scale: float,
    max_retries: int = 3,
) -> T:
    """Call ``operation(region, scale)``, simplifying and coarsening after each ResourceLimitError."""

    tolerance = SIMPLIFY_TOLERANCE.get(region.name) or DEFAULT_RETRY_TOLERANCE
    current_region = region
    current_scale = scale
    attempt = 0
    while True:
        try:
            return operation(current_region, current_scale)
        except ResourceLimitError as exc:
            if attempt == max_retries:
                raise
            attempt += 1
            tolerance *= 2
            current_scale *= 2
            LOGGER.warning(
                "%s Retrying (%d/%d) with geometry tolerance %.0f m and scale %.0f m.",
                exc,
                attempt,
                max_retries,
                tolerance,
                current_scale,
            )
            current_region = region.simplified(tolerance)


@dataclass
class RunResult:
    label: str
    windows: List[str]
    feature_names: Tuple[str, ...]
    training_matrix: ConfusionMatrix
    validation_matrix: ConfusionMatrix
    importance: Dict[str, float]
    outputs: Dict[str, Path] = field(default_factory=dict)
    jobs: List[Job] = field(default_factory=list)
    degraded_windows: List[str] = field(default_factory=list)
    diagnostics: Optional[Dict[str, object]] = None


class _RunTracker:
    """Remembers what a run produced so failures can report it."""

    def __init__(self, region: str) -> None:
        self.region = region
        self.produced: List[str] = []

    def add(self, item: str) -> None:
        self.produced.append(item)

    @contextmanager
    def stage(
        self,
        name: str,
        window: Optional[str] = None,
        passthrough: Tuple[Type[WetlandsError], ...] = (),
    ) -> Iterator[None]:
        try:
            yield
        except (PipelineRunError,) + passthrough:
            raise
        except WetlandsError as exc:
            LOGGER.error("Stage '%s' failed: %s", name, exc)
            raise PipelineRunError(name, exc, self.region, window, self.produced) from exc


def _check_inputs(config: RunConfig) -> None:
    for path in (config.label_path, config.validation_label_path, config.boundaries_path):
        if path is not None and not Path(path).exists():
            raise ConfigurationError(f"Input not found: {path}")


def _composites(
    source: CollectionSource,
    windows: List[TemporalWindow],
    config: RunConfig,
    tracker: _RunTracker,
    region: Region,
    resolution: float,
) -> Tuple[GridSpec, List[xr.DataArray], List[str]]:
    """Composite every window on a working grid at ``resolution``.

    ResourceLimitError is left unwrapped so the caller can retry on a coarser grid.
    """

    grid = GridSpec.from_region(region, resolution)
    LOGGER.info(
        "Working grid %dx%d at %.0f m for %s", grid.width, grid.height, grid.resolution, region.name
    )
    compositor = SensorCompositor(source, region, grid, config)
    progress = WindowProgress(len(windows))
    composites: List[xr.DataArray] = []
    degraded: List[str] = []
    for window in windows:
        progress.start(window.label)
        with tracker.stage("composite", window.label, passthrough=(ResourceLimitError,)):
            try:
                composite = compositor.composite(window)
            except EmptyCollectionError as exc:
                if config.on_empty_window != "skip":
                    raise
                progress.skip(window.label, str(exc))
                degraded.append(window.label)
                continue
        progress.finish(window.label)
        composites.append(composite)
    if not composites:
        raise PipelineRunError(
            "composite",
            EmptyCollectionError("satellite", ", ".join(degraded)),
            tracker.region,
            None,
            tracker.produced,
        )
    return grid, composites, degraded


def _sample(
    config: RunConfig,
    stack: FeatureStack,
    validation_stack: Optional[FeatureStack],
    region: Region,
    scale: float,
) -> Tuple[SampleSet, SampleSet]:
    settings = config.sampling
    sampler = StratifiedSampler(
        region,
        scale,
        seed=settings.seed,
        max_pixels=config.export.max_pixels,
        keep_geometries=settings.keep_geometries,
    )
    if config.label_mode is LabelMode.DUAL:
        return sampler.sample_dual(
            stack,
            validation_stack,
            settings.train_points_per_class,
            settings.validation_points_per_class,
        )
    return sampler.sample_split(stack, settings.train_points_per_class, settings.split_fraction)


def _diagnostics(
    training: SampleSet,
    classifier: TrainedClassifier,
    validation_matrix: ConfusionMatrix,
) -> Dict[str, object]:
    report: Dict[str, object] = {
        "first_training_record": training.records.iloc[0].to_dict() if len(training) else None,
        "training": classifier.training_matrix.summary(),
        "validation": validation_matrix.summary(),
    }
    LOGGER.info("First training record: %s", report["first_training_record"])
    LOGGER.info("Training accuracy: %s", report["training"]["overall_accuracy"])
    LOGGER.info("Validation accuracy: %s", report["validation"]["overall_accuracy"])
    LOGGER.info("Validation kappa: %s", report["validation"]["kappa"])
    LOGGER.info("Producer's accuracy: %s", report["validation"]["producers_accuracy"])
    LOGGER.info("Consumer's accuracy: %s", report["validation"]["consumers_accuracy"])
    return report


def run_pipeline(
    config: RunConfig,
    source: Optional[CollectionSource] = None,
    runner: Optional[JobRunner] = None,
    now: Optional[datetime] = None,
) -> RunResult:
    """Execute one run. Large exports are submitted to ``runner`` and returned as jobs.

    When no runner is given a private one is used and the run waits for its jobs.
    """

    own_runner = runner is None
    runner = runner or JobRunner()
    label = run_label(config, now)
    tracker = _RunTracker(config.region)
    output_dir = config.export.output_dir / label
    LOGGER.info("Run %s: region=%s label_mode=%s", label, config.region, config.label_mode.value)

    try:
        with tracker.stage("inputs"):
            _check_inputs(config)
            windows = plan_windows(config.years, config.seasons)
            region = load_region(config.region, config.crs, config.boundaries_path)
            if source is None:
                if not config.stac_url:
                    raise ConfigurationError(
                        "No imagery source: set stac_url or pass a collection source."
                    )
                source = StacCollectionSource(
                    config.stac_url,
                    asset_map={
                        config.sar.collection: config.sar.assets,
                        config.optical.collection: config.optical.assets,
                    },
                    max_pixels=config.export.max_pixels,
                )
        tracker.add(f"{len(windows)} window(s)")
        tracker.add(f"region {region.name}")

        with tracker.stage("composite"):
            grid, composites, degraded = retry_with_reduced_precision(
                lambda reg, resolution: _composites(
                    source, windows, config, tracker, reg, resolution
                ),
                region,
                config.resolution,
                config.export.max_retries,
            )
        for window in windows:
            if window.label not in degraded:
                tracker.add(f"composite {window.label}")

        with tracker.stage("feature stack"):
            label_raster = open_aligned_raster(config.label_path, grid, Resampling.nearest)
            topography = None
            if config.bands.topography:
                topography = load_topography(config.bands.topography, config.topography_dir, grid)
            stack = assemble_feature_stack(label_raster, composites, topography)
            validation_stack = None
            if config.label_mode is LabelMode.DUAL:
                validation_label = open_aligned_raster(
                    config.validation_label_path, grid, Resampling.nearest
                )
                validation_stack = stack.with_label(validation_label)
        tracker.add("feature stack")

        with tracker.stage("sampling"):
            training, validation = retry_with_reduced_precision(
                lambda reg, scale: runner.submit(
                    f"Stratified sampling over {reg.name}",
                    _sample,
                    config,
                    stack,
                    validation_stack,
                    reg,
                    scale,
                ).wait(),
                region,
                config.sampling_scale,
                config.export.max_retries,
            )
        tracker.add(f"{len(training)} training / {len(validation)} validation record(s)")

        with tracker.stage("training"):
            classifier = train_random_forest(training, config.classifier)
            classified_validation = classifier.classify_samples(validation)
            validation_matrix = evaluate_samples(classified_validation)
        tracker.add("classifier")

        result = RunResult(
            label=label,
            windows=[window.label for window in windows],
            feature_names=stack.feature_names,
            training_matrix=classifier.training_matrix,
            validation_matrix=validation_matrix,
            importance=classifier.explain(),
            degraded_windows=degraded,
        )

        if config.verbose:
            result.diagnostics = runner.run_interactive(
                "Diagnostics",
                _diagnostics,
                config.export.interactive_timeout,
                training,
                classifier,
                validation_matrix,
            )

        with tracker.stage("export"):
            result.outputs["feature_importance"] = write_feature_importance(
                result.importance, output_dir / f"{label}_feature_importance.csv"
            )
            tracker.add(result.outputs["feature_importance"].name)
            result.outputs["accuracy"] = write_accuracy_matrices(
                classifier.training_matrix, validation_matrix, output_dir / f"{label}_accuracy.csv"
            )
            tracker.add(result.outputs["accuracy"].name)

            raster_path = output_dir / f"{label}_classified.tif"
            result.outputs["classified"] = raster_path
            classified = classifier.classify_stack(stack, region)
            result.jobs.append(
                runner.submit(
                    f"Export {raster_path.name}",
                    retry_with_reduced_precision,
                    lambda reg, pixel_size: write_classified_raster(
                        classified,
                        reg,
                        raster_path,
                        crs=config.export.crs,
                        pixel_size=pixel_size,
                        max_pixels=config.export.max_pixels,
                    ),
                    region,
                    config.export.pixel_size,
                    config.export.max_retries,
                )
            )
            if config.export.export_sample_tables:
                for name, samples in (
                    ("training", classifier.classify_samples(training)),
                    ("validation", classified_validation),
                ):
                    path = output_dir / f"{label}_{name}_samples.csv"
                    result.outputs[f"{name}_samples"] = path
                    result.jobs.append(
                        runner.submit(f"Export {path.name}", write_sample_table, samples, path)
                    )

        if own_runner:
            with tracker.stage("export"):
                for job in result.jobs:
                    job.wait()
                    tracker.add(job.name)
        LOGGER.info("Run %s finished with %d job(s)", label, len(result.jobs))
        return result
    finally:
        if own_runner:
            runner.shutdown(wait=True)


__all__ = ["RUN_EPOCH", "RunResult", "run_label", "retry_with_reduced_precision", "run_pipeline"]
