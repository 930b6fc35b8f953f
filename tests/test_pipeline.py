from __future__ import annotations

import json
from datetime import datetime
from pathlib import Path

import numpy as np
import pandas as pd
import pytest
import rasterio

from conftest import write_raster
from wetlands_ml_rf.config import (
    ClassifierSettings,
    ExportSettings,
    LabelMode,
    RunConfig,
    SamplingSettings,
)
from wetlands_ml_rf.errors import EmptyCollectionError, PipelineRunError, ResourceLimitError
from wetlands_ml_rf.jobs import COMPLETED, JobRunner
from wetlands_ml_rf.pipeline import retry_with_reduced_precision, run_label, run_pipeline
from wetlands_ml_rf.sensors import ArrayCollectionSource

NOW = datetime(2022, 3, 9, 0, 30)


def _config(tmp_path: Path, label_path: Path, boundaries_path: Path, **kwargs) -> RunConfig:
    options = dict(
        region="Stockholm",
        label_path=label_path,
        boundaries_path=boundaries_path,
        years=(2021,),
        seasons=("summer",),
        sampling=SamplingSettings(train_points_per_class=40, validation_points_per_class=30, seed=5),
        classifier=ClassifierSettings(number_of_trees=15, seed=2),
        export=ExportSettings(output_dir=tmp_path / "out"),
    )
    options.update(kwargs)
    return RunConfig(**options)


def test_run_label_counts_minutes_since_epoch(tmp_path: Path) -> None:
    config = RunConfig(region="Stockholm", label_path=tmp_path / "l.tif")
    assert run_label(config, NOW) == "Stockholm_run1470_lm2"
    vmi = RunConfig(region="Uppsala", label_path=tmp_path / "l.tif", label_mode=LabelMode.VMI)
    assert run_label(vmi, NOW) == "Uppsala_run1470_lm1"
    dual = RunConfig(
        region="Uppsala",
        label_path=tmp_path / "l.tif",
        label_mode=LabelMode.DUAL,
        validation_label_path=tmp_path / "v.tif",
    )
    assert run_label(dual, NOW) == "Uppsala_run1470"


def test_retry_simplifies_geometry_and_coarsens_scale(region) -> None:
    calls = []

    def _operation(current_region, scale):
        calls.append((current_region, scale))
        if len(calls) < 3:
            raise ResourceLimitError("sample", 10, 5)
        return "ok"

    assert retry_with_reduced_precision(_operation, region, 10.0, max_retries=3) == "ok"
    assert [scale for _, scale in calls] == [10.0, 20.0, 40.0]
    assert calls[0][0] is region
    assert calls[1][0] is not region


def test_retry_gives_up_after_max_retries(region) -> None:
    def _operation(current_region, scale):
        raise ResourceLimitError("sample", 10, 5)

    with pytest.raises(ResourceLimitError):
        retry_with_reduced_precision(_operation, region, 10.0, max_retries=2)


def test_end_to_end_run_exports_artifacts(tmp_path, label_path, boundaries_path, collections) -> None:
    config = _config(tmp_path, label_path, boundaries_path)

    result = run_pipeline(config, source=ArrayCollectionSource(collections), now=NOW)

    assert result.label == "Stockholm_run1470_lm2"
    assert result.windows == ["summer2021"]
    assert result.feature_names[0] == "B2_summer2021"
    assert result.validation_matrix.classes == (1, 2, 3)
    assert result.validation_matrix.overall_accuracy() > 0.9
    assert set(result.importance) == set(result.feature_names)
    assert all(job.status == COMPLETED for job in result.jobs)

    importance = pd.read_csv(result.outputs["feature_importance"])
    assert list(importance.columns) == ["band", "importance"]

    accuracy = pd.read_csv(result.outputs["accuracy"])
    matrix = json.loads(accuracy.loc[0, "validation_error_matrix"])
    assert len(matrix) == 3 and all(len(row) == 3 for row in matrix)

    with rasterio.open(result.outputs["classified"]) as src:
        assert src.dtypes[0] == "uint8"
        assert src.nodata == 0
        assert str(src.crs) == "EPSG:3006"
        classes = set(src.read(1).ravel().tolist())
    assert classes <= {0, 1, 2, 3}
    assert {1, 2, 3} <= classes

    training = pd.read_csv(result.outputs["training_samples"])
    assert {"target", "classification", "region"} <= set(training.columns)


def test_dual_mode_evaluates_independent_labels(
    tmp_path, label_path, boundaries_path, collections
) -> None:
    validation_path = write_raster(tmp_path / "validation.tif", np.full((20, 20), 2, dtype="uint8"))
    config = _config(
        tmp_path,
        label_path,
        boundaries_path,
        label_mode=LabelMode.DUAL,
        validation_label_path=validation_path,
    )

    with JobRunner() as runner:
        result = run_pipeline(config, source=ArrayCollectionSource(collections), runner=runner, now=NOW)
        runner.wait_all(timeout=60)

    assert result.label == "Stockholm_run1470"
    assert result.validation_matrix.to_frame().loc[2].sum() == result.validation_matrix.total


def test_empty_window_fails_run_naming_window(tmp_path, label_path, boundaries_path, collections) -> None:
    config = _config(tmp_path, label_path, boundaries_path, seasons=("winter", "summer"))

    with pytest.raises(PipelineRunError) as excinfo:
        run_pipeline(config, source=ArrayCollectionSource(collections), now=NOW)

    error = excinfo.value
    assert error.window == "winter2020"
    assert error.stage == "composite"
    assert isinstance(error.cause, EmptyCollectionError)
    assert "region Stockholm" in error.produced
    assert "winter2020" in str(error)


def test_empty_window_can_be_skipped(tmp_path, label_path, boundaries_path, collections) -> None:
    config = _config(
        tmp_path, label_path, boundaries_path, seasons=("winter", "summer"), on_empty_window="skip"
    )

    result = run_pipeline(config, source=ArrayCollectionSource(collections), now=NOW)

    assert result.degraded_windows == ["winter2020"]
    assert all(name.endswith("summer2021") for name in result.feature_names)


def test_missing_label_raster_fails_before_compositing(tmp_path, boundaries_path, collections) -> None:
    config = _config(tmp_path, tmp_path / "missing.tif", boundaries_path)
    with pytest.raises(PipelineRunError) as excinfo:
        run_pipeline(config, source=ArrayCollectionSource(collections), now=NOW)
    assert excinfo.value.stage == "inputs"
    assert excinfo.value.produced == ()


def test_verbose_run_collects_diagnostics(tmp_path, label_path, boundaries_path, collections) -> None:
    config = _config(tmp_path, label_path, boundaries_path, verbose=True)
    result = run_pipeline(config, source=ArrayCollectionSource(collections), now=NOW)
    assert result.diagnostics is not None
    assert result.diagnostics["validation"]["classes"] == [1, 2, 3]
    assert result.diagnostics["first_training_record"]["region"] == "Stockholm"


class _RecordingSource(ArrayCollectionSource):
    def __init__(self, collections, max_pixels=None) -> None:
        super().__init__(collections, max_pixels=max_pixels)
        self.resolutions = []

    def load(self, query):
        self.resolutions.append(query.grid.resolution)
        return super().load(query)


def test_oversized_composites_and_export_retry_on_coarser_grids(
    tmp_path, label_path, boundaries_path, collections
) -> None:
    config = _config(
        tmp_path,
        label_path,
        boundaries_path,
        export=ExportSettings(output_dir=tmp_path / "out", max_pixels=300),
    )
    source = _RecordingSource(collections, max_pixels=300)

    result = run_pipeline(config, source=source, now=NOW)

    # Two clear optical granules at 10 m are 800 pixels; at 20 m both sensors fit.
    assert source.resolutions == [10.0, 20.0, 20.0]
    assert result.feature_names[0] == "B2_summer2021"
    assert all(job.status == COMPLETED for job in result.jobs)
    with rasterio.open(result.outputs["classified"]) as src:
        assert src.res == (20.0, 20.0)


def test_composites_fail_once_retries_are_exhausted(
    tmp_path, label_path, boundaries_path, collections
) -> None:
    config = _config(
        tmp_path,
        label_path,
        boundaries_path,
        export=ExportSettings(output_dir=tmp_path / "out", max_retries=1),
    )
    source = _RecordingSource(collections, max_pixels=10)

    with pytest.raises(PipelineRunError) as excinfo:
        run_pipeline(config, source=source, now=NOW)

    assert excinfo.value.stage == "composite"
    assert isinstance(excinfo.value.cause, ResourceLimitError)
    assert source.resolutions == [10.0, 20.0]


def test_run_without_source_or_stac_endpoint_fails_on_inputs(
    tmp_path, label_path, boundaries_path
) -> None:
    config = _config(tmp_path, label_path, boundaries_path)
    with pytest.raises(PipelineRunError) as excinfo:
        run_pipeline(config, now=NOW)
    assert excinfo.value.stage == "inputs"
    assert "stac_url" in str(excinfo.value.cause)


def test_validation_matrix_counts_every_validation_record(
    tmp_path, label_path, boundaries_path, collections
) -> None:
    config = _config(tmp_path, label_path, boundaries_path)

    result = run_pipeline(config, source=ArrayCollectionSource(collections), now=NOW)

    validation = pd.read_csv(result.outputs["validation_samples"])
    matrix = result.validation_matrix
    assert matrix.total == len(validation) > 0
    assert int(matrix.to_frame().values.sum()) == len(validation)
    producers = matrix.producers_accuracy()
    weighted = sum(
        producers[cls] * total for cls, total in zip(matrix.classes, matrix.row_totals) if total > 0
    )
    assert weighted == pytest.approx(matrix.trace)
