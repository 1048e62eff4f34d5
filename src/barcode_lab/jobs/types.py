from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum
from pathlib import Path
from typing import Final, Literal

from barcode_lab.errors import ConfigurationError, ErrorCode
from barcode_lab.training.metrics import EvaluationMetrics
from barcode_lab.training.options import (
    AugmentationOptions,
    BalancingOptions,
    GridSearchOptions,
    HyperparameterSpace,
    MetricType,
    RandomSearchOptions,
    validate_grid_options,
    validate_random_options,
    validate_training_params,
)
from barcode_lab.training.recommendations import space_preset

INTERRUPTED_MESSAGE: Final[str] = "Service restarted; training job was interrupted"


class JobState(str, Enum):
    queued = "queued"
    running = "running"
    completed = "completed"
    failed = "failed"
    cancelled = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in (JobState.completed, JobState.failed, JobState.cancelled)


_ALLOWED: Final[dict[JobState, frozenset[JobState]]] = {
    JobState.queued: frozenset({JobState.running, JobState.cancelled, JobState.failed}),
    JobState.running: frozenset({JobState.completed, JobState.failed, JobState.cancelled}),
    JobState.completed: frozenset(),
    JobState.failed: frozenset(),
    JobState.cancelled: frozenset(),
}


def can_transition(current: JobState, target: JobState) -> bool:
    return target in _ALLOWED[current]


TuningOptions = GridSearchOptions | RandomSearchOptions


@dataclass(frozen=True)
class TrainingRequest:
    training_dir: Path
    output_dir: Path
    learning_rate: float = 0.01
    epochs: int = 50
    batch_size: int = 20
    validation_split: float | None = None
    augmentation: AugmentationOptions = field(default_factory=AugmentationOptions)
    balancing: BalancingOptions = field(default_factory=BalancingOptions)
    notes: str | None = None
    tuning: TuningOptions | None = None

    @property
    def mode(self) -> Literal["single", "grid_search", "random_search"]:
        if isinstance(self.tuning, GridSearchOptions):
            return "grid_search"
        if isinstance(self.tuning, RandomSearchOptions):
            return "random_search"
        return "single"

    def validate(self) -> None:
        if not str(self.training_dir).strip():
            raise ConfigurationError(ErrorCode.train_dir_empty)
        if not str(self.output_dir).strip():
            raise ConfigurationError(ErrorCode.output_dir_empty)
        if not self.training_dir.is_dir():
            raise ConfigurationError(
                ErrorCode.train_dir_not_found, f"training dir not found: {self.training_dir}"
            )
        if isinstance(self.tuning, GridSearchOptions):
            validate_grid_options(self.tuning)
        elif isinstance(self.tuning, RandomSearchOptions):
            validate_random_options(self.tuning)
        else:
            validate_training_params(
                learning_rate=self.learning_rate,
                epochs=self.epochs,
                batch_size=self.batch_size,
                validation_split=self.validation_split,
                augmentation=self.augmentation,
                balancing=self.balancing,
            )

    def to_dict(self) -> dict[str, object]:
        return {
            "training_dir": str(self.training_dir),
            "output_dir": str(self.output_dir),
            "learning_rate": self.learning_rate,
            "epochs": self.epochs,
            "batch_size": self.batch_size,
            "validation_split": self.validation_split,
            "augmentation": self.augmentation.to_dict(),
            "balancing": self.balancing.to_dict(),
            "notes": self.notes,
            "tuning": tuning_to_dict(self.tuning) if self.tuning is not None else None,
        }

    @staticmethod
    def from_dict(data: Mapping[str, object]) -> TrainingRequest:
        vs = data.get("validation_split")
        aug = data.get("augmentation")
        bal = data.get("balancing")
        tun = data.get("tuning")
        notes = data.get("notes")
        return TrainingRequest(
            training_dir=Path(str(data.get("training_dir", ""))),
            output_dir=Path(str(data.get("output_dir", ""))),
            learning_rate=float(str(data.get("learning_rate", 0.01))),
            epochs=int(str(data.get("epochs", 50))),
            batch_size=int(str(data.get("batch_size", 20))),
            validation_split=None if vs is None else float(str(vs)),
            augmentation=(
                AugmentationOptions.from_dict(aug)
                if isinstance(aug, Mapping)
                else AugmentationOptions()
            ),
            balancing=(
                BalancingOptions.from_dict(bal) if isinstance(bal, Mapping) else BalancingOptions()
            ),
            notes=notes if isinstance(notes, str) else None,
            tuning=tuning_from_dict(tun) if isinstance(tun, Mapping) else None,
        )


def _space_to_dict(space: HyperparameterSpace) -> dict[str, object]:
    return {
        "learning_rates": list(space.learning_rates),
        "epochs": list(space.epochs),
        "batch_sizes": list(space.batch_sizes),
        "validation_splits": (
            list(space.validation_splits) if space.validation_splits is not None else None
        ),
        "augmentation_sets": [a.to_dict() for a in space.augmentation_sets or ()],
        "balancing_sets": [b.to_dict() for b in space.balancing_sets or ()],
    }


def tuning_to_dict(opts: TuningOptions) -> dict[str, object]:
    out: dict[str, object] = {
        "strategy": "grid_search" if isinstance(opts, GridSearchOptions) else "random_search",
        "space": _space_to_dict(opts.space),
        "parallel": opts.parallel,
        "max_parallel_trials": opts.max_parallel_trials,
        "early_stopping": opts.early_stopping,
        "metric": opts.metric.value,
    }
    if isinstance(opts, RandomSearchOptions):
        out["number_of_trials"] = opts.number_of_trials
        out["seed"] = opts.seed
    return out


def tuning_from_dict(
    data: Mapping[str, object], *, sample_count: int | None = None
) -> TuningOptions:
    """Parse search options; ``strategy`` picks grid or random search.

    ``space`` is either a table of candidates or the name of a preset space;
    the ``recommended`` preset sizes itself from ``sample_count``.
    """
    space_raw = data.get("space")
    if isinstance(space_raw, str):
        space = space_preset(space_raw, sample_count)
    elif isinstance(space_raw, Mapping):
        space = HyperparameterSpace.from_dict(space_raw)
    else:
        raise ConfigurationError(ErrorCode.missing_search_options, "search 'space' is required")
    parallel = bool(data.get("parallel", True))
    max_parallel = int(str(data.get("max_parallel_trials", 0)))
    early = bool(data.get("early_stopping", False))
    metric = MetricType(str(data.get("metric", MetricType.accuracy.value)))
    strategy = str(data.get("strategy", "grid_search"))
    if strategy == "grid_search":
        return GridSearchOptions(
            space=space,
            parallel=parallel,
            max_parallel_trials=max_parallel,
            early_stopping=early,
            metric=metric,
        )
    if strategy == "random_search":
        return RandomSearchOptions(
            space=space,
            number_of_trials=int(str(data.get("number_of_trials", 0))),
            seed=int(str(data.get("seed", 42))),
            parallel=parallel,
            max_parallel_trials=max_parallel,
            early_stopping=early,
            metric=metric,
        )
    raise ConfigurationError(ErrorCode.unknown_strategy, f"unknown strategy: {strategy}")


def _parse_ts(raw: object) -> datetime | None:
    if not isinstance(raw, str) or not raw:
        return None
    return datetime.fromisoformat(raw)


@dataclass(frozen=True)
class Job:
    """Immutable snapshot of one training job; every change builds a new snapshot."""

    job_id: str
    request: TrainingRequest
    state: JobState = JobState.queued
    progress: float = 0.0
    created_at: datetime = field(default_factory=lambda: datetime.now(UTC))
    started_at: datetime | None = None
    finished_at: datetime | None = None
    error: str | None = None
    metrics: EvaluationMetrics | None = None
    model_path: str | None = None
    tuning: dict[str, object] | None = None

    def to_dict(self) -> dict[str, object]:
        return {
            "job_id": self.job_id,
            "request": self.request.to_dict(),
            "state": self.state.value,
            "progress": self.progress,
            "created_at": self.created_at.isoformat(),
            "started_at": self.started_at.isoformat() if self.started_at else None,
            "finished_at": self.finished_at.isoformat() if self.finished_at else None,
            "error": self.error,
            "metrics": self.metrics.to_dict() if self.metrics is not None else None,
            "model_path": self.model_path,
            "tuning": self.tuning,
        }

    @staticmethod
    def from_dict(data: Mapping[str, object]) -> Job:
        req = data.get("request")
        met = data.get("metrics")
        tun = data.get("tuning")
        err = data.get("error")
        mp = data.get("model_path")
        return Job(
            job_id=str(data["job_id"]),
            request=TrainingRequest.from_dict(req if isinstance(req, Mapping) else {}),
            state=JobState(str(data.get("state", JobState.queued.value))),
            progress=float(str(data.get("progress", 0.0))),
            created_at=_parse_ts(data.get("created_at")) or datetime.now(UTC),
            started_at=_parse_ts(data.get("started_at")),
            finished_at=_parse_ts(data.get("finished_at")),
            error=err if isinstance(err, str) else None,
            metrics=EvaluationMetrics.from_dict(met) if isinstance(met, Mapping) else None,
            model_path=mp if isinstance(mp, str) else None,
            tuning=dict(tun) if isinstance(tun, Mapping) else None,
        )
