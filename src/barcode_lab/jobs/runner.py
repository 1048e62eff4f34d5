from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass
from pathlib import Path
from typing import Protocol

from barcode_lab.errors import CancellationToken, ErrorCode, TrainingError
from barcode_lab.logging import get_logger
from barcode_lab.training.fitter import ModelFitter
from barcode_lab.training.metrics import EvaluationMetrics
from barcode_lab.training.options import (
    GridSearchOptions,
    HyperparameterConfiguration,
    RandomSearchOptions,
    TuningStrategy,
)
from barcode_lab.training.progress import ProgressSink, emit_progress
from barcode_lab.training.trial import TrialExecutor, TrialResult
from barcode_lab.training.tuning import HyperparameterTuner, TuningResult

from .types import TrainingRequest


@dataclass(frozen=True)
class JobOutcome:
    metrics: EvaluationMetrics | None
    model_path: Path | None
    tuning: TuningResult | None = None
    # set when the run finished without a usable model
    error: str | None = None


class JobRunner(Protocol):
    def run(
        self, request: TrainingRequest, progress: ProgressSink, cancel: CancellationToken
    ) -> JobOutcome: ...


class _TuningProgressBridge:
    """Reports search progress to a job as the fraction of finished trials."""

    def __init__(self, sink: ProgressSink) -> None:
        self._sink = sink

    def on_tuning_started(self, total_trials: int) -> None:
        emit_progress(self._sink, 0.0, f"search started with {total_trials} trials")

    def on_trial_started(self, trial_number: int, total_trials: int) -> None:
        return None

    def on_trial_completed(self, result: TrialResult, completed: int, total_trials: int) -> None:
        status = "ok" if result.succeeded else "failed"
        emit_progress(
            self._sink,
            completed / total_trials if total_trials > 0 else 1.0,
            f"trial {result.trial_number}/{total_trials} {status}",
        )

    def on_tuning_completed(self, result: TuningResult) -> None:
        emit_progress(self._sink, 1.0, f"search finished after {result.total_trials} trials")

    def on_tuning_failed(self, error: str) -> None:
        get_logger().info("job_search_failed error=%s", error)


class TrainingJobRunner:
    """Default runner: one trial for a plain request, a full search when tuning is set."""

    def __init__(
        self, fitter: ModelFitter, *, default_parallelism: Callable[[], int] | None = None
    ) -> None:
        self._fitter = fitter
        self._default_parallelism = default_parallelism

    def run(
        self, request: TrainingRequest, progress: ProgressSink, cancel: CancellationToken
    ) -> JobOutcome:
        if request.tuning is not None:
            return self._run_search(request, progress, cancel)
        config = HyperparameterConfiguration(
            learning_rate=request.learning_rate,
            epochs=request.epochs,
            batch_size=request.batch_size,
            validation_split=request.validation_split,
            augmentation=request.augmentation,
            balancing=request.balancing,
        )
        executor = TrialExecutor(self._fitter, request.output_dir, request.training_dir)
        result = executor.run(config, 1, 1, cancel, progress)
        if not result.succeeded:
            return JobOutcome(metrics=None, model_path=None, error=result.error)
        return JobOutcome(metrics=result.metrics, model_path=result.model_path)

    def _run_search(
        self, request: TrainingRequest, progress: ProgressSink, cancel: CancellationToken
    ) -> JobOutcome:
        tuner = HyperparameterTuner(self._fitter, default_parallelism=self._default_parallelism)
        opts = request.tuning
        bridge = _TuningProgressBridge(progress)
        if isinstance(opts, GridSearchOptions):
            outcome = tuner.tune(
                request.training_dir,
                request.output_dir,
                TuningStrategy.grid_search,
                grid=opts,
                progress=bridge,
                cancel=cancel,
            )
        elif isinstance(opts, RandomSearchOptions):
            outcome = tuner.tune(
                request.training_dir,
                request.output_dir,
                TuningStrategy.random_search,
                random_search=opts,
                progress=bridge,
                cancel=cancel,
            )
        else:
            raise TrainingError(ErrorCode.missing_search_options)
        best = outcome.best_trial
        if best is None:
            return JobOutcome(
                metrics=None,
                model_path=None,
                tuning=outcome,
                error=f"all {outcome.total_trials} trials failed",
            )
        return JobOutcome(metrics=best.metrics, model_path=best.model_path, tuning=outcome)
