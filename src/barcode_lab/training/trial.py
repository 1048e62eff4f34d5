from __future__ import annotations

from dataclasses import dataclass
from datetime import UTC, datetime
from pathlib import Path

from barcode_lab.errors import CancellationToken, OperationCancelledError
from barcode_lab.logging import get_logger

from .fitter import FitResult, ModelFitter
from .metrics import EvaluationMetrics, failed_metrics
from .options import HyperparameterConfiguration
from .progress import ProgressSink


@dataclass(frozen=True)
class TrialResult:
    trial_id: str
    trial_number: int
    configuration: HyperparameterConfiguration
    metrics: EvaluationMetrics
    model_path: Path | None
    started_at: datetime
    finished_at: datetime
    succeeded: bool
    error: str | None = None

    def __post_init__(self) -> None:
        if self.finished_at < self.started_at:
            raise ValueError("trial finished before it started")

    @property
    def duration_s(self) -> float:
        return (self.finished_at - self.started_at).total_seconds()

    def to_dict(self) -> dict[str, object]:
        return {
            "trial_id": self.trial_id,
            "trial_number": self.trial_number,
            "configuration": self.configuration.to_dict(),
            "metrics": self.metrics.to_dict(),
            "model_path": str(self.model_path) if self.model_path is not None else None,
            "started_at": self.started_at.isoformat(),
            "finished_at": self.finished_at.isoformat(),
            "duration_s": self.duration_s,
            "succeeded": self.succeeded,
            "error": self.error,
        }


@dataclass(frozen=True)
class TrialSuccess:
    fit: FitResult


@dataclass(frozen=True)
class TrialFailure:
    message: str


TrialOutcome = TrialSuccess | TrialFailure


def _describe(exc: Exception) -> str:
    msg = str(exc)
    name = exc.__class__.__name__
    return f"{name}: {msg[:300]}" if msg else name


class TrialExecutor:
    """Runs one hyperparameter configuration and never lets a failure escape.

    Cancellation is the only exception that propagates.
    """

    def __init__(self, fitter: ModelFitter, output_dir: Path, training_dir: Path) -> None:
        self._fitter = fitter
        self._output_dir = output_dir
        self._training_dir = training_dir

    def trial_dir(self, config: HyperparameterConfiguration) -> Path:
        return self._output_dir / f"trial-{config.id}"

    def _attempt(
        self,
        config: HyperparameterConfiguration,
        cancel: CancellationToken | None,
        progress: ProgressSink | None,
    ) -> TrialOutcome:
        out_dir = self.trial_dir(config)
        try:
            out_dir.mkdir(parents=True, exist_ok=True)
            fit = self._fitter.fit(
                self._training_dir,
                out_dir,
                learning_rate=config.learning_rate,
                epochs=config.epochs,
                batch_size=config.batch_size,
                validation_split=config.validation_split,
                augmentation=config.augmentation,
                balancing=config.balancing,
                progress=progress,
                cancel=cancel,
            )
        except OperationCancelledError:
            raise
        except Exception as exc:  # trial isolation: any setup or fit failure fails the trial
            get_logger().warning(
                "trial_fit_failed trial_id=%s error=%s", config.id, exc, exc_info=True
            )
            return TrialFailure(message=_describe(exc))
        return TrialSuccess(fit=fit)

    def run(
        self,
        config: HyperparameterConfiguration,
        trial_number: int,
        total_trials: int,
        cancel: CancellationToken | None,
        progress: ProgressSink | None = None,
    ) -> TrialResult:
        log = get_logger()
        if cancel is not None:
            cancel.raise_if_cancelled()
        log.info(
            "trial_started trial=%d total=%d trial_id=%s lr=%s epochs=%d batch_size=%d",
            trial_number,
            total_trials,
            config.id,
            config.learning_rate,
            config.epochs,
            config.batch_size,
        )
        started = datetime.now(UTC)
        outcome = self._attempt(config, cancel, progress)
        finished = datetime.now(UTC)

        if isinstance(outcome, TrialSuccess):
            result = TrialResult(
                trial_id=config.id,
                trial_number=trial_number,
                configuration=config,
                metrics=outcome.fit.metrics,
                model_path=outcome.fit.model_path,
                started_at=started,
                finished_at=finished,
                succeeded=True,
            )
            log.info(
                "trial_completed trial=%d accuracy=%.4f macro_f1=%.4f duration_s=%.2f",
                trial_number,
                result.metrics.accuracy,
                result.metrics.macro_f1,
                result.duration_s,
            )
            return result

        log.info("trial_failed trial=%d error=%s", trial_number, outcome.message)
        return TrialResult(
            trial_id=config.id,
            trial_number=trial_number,
            configuration=config,
            metrics=failed_metrics(),
            model_path=None,
            started_at=started,
            finished_at=finished,
            succeeded=False,
            error=outcome.message,
        )
