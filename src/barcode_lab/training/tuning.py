from __future__ import annotations

import itertools
import random
import threading
import uuid
from collections.abc import Callable, Sequence
from concurrent.futures import FIRST_COMPLETED, Future, ThreadPoolExecutor, wait
from dataclasses import dataclass
from datetime import UTC, datetime
from enum import Enum
from pathlib import Path
from typing import Final, Protocol

from barcode_lab.errors import (
    CancellationToken,
    ConfigurationError,
    ErrorCode,
    OperationCancelledError,
)
from barcode_lab.logging import get_logger

from .fitter import ModelFitter
from .metrics import is_improvement, metric_value
from .options import (
    GridSearchOptions,
    HyperparameterConfiguration,
    HyperparameterSpace,
    MetricType,
    RandomSearchOptions,
    TuningStrategy,
    validate_grid_options,
    validate_random_options,
)
from .resources import default_parallelism as _cpu_parallelism
from .trial import TrialExecutor, TrialResult

EARLY_STOP_WINDOW: Final[int] = 4


class TuningState(str, Enum):
    not_started = "not_started"
    running = "running"
    completed = "completed"
    failed = "failed"


class TuningProgress(Protocol):
    def on_tuning_started(self, total_trials: int) -> None: ...

    def on_trial_started(self, trial_number: int, total_trials: int) -> None: ...

    def on_trial_completed(
        self, result: TrialResult, completed: int, total_trials: int
    ) -> None: ...

    def on_tuning_completed(self, result: TuningResult) -> None: ...

    def on_tuning_failed(self, error: str) -> None: ...


@dataclass(frozen=True)
class TuningResult:
    tuning_id: str
    strategy: TuningStrategy
    metric: MetricType
    trials: tuple[TrialResult, ...]
    best_trial: TrialResult | None
    started_at: datetime
    finished_at: datetime
    training_dir: Path
    output_dir: Path
    stopped_early: bool = False

    @property
    def total_trials(self) -> int:
        return len(self.trials)

    @property
    def successful_trials(self) -> int:
        return sum(1 for t in self.trials if t.succeeded)

    @property
    def failed_trials(self) -> int:
        return sum(1 for t in self.trials if not t.succeeded)

    def to_dict(self) -> dict[str, object]:
        return {
            "tuning_id": self.tuning_id,
            "strategy": self.strategy.value,
            "metric": self.metric.value,
            "trials": [t.to_dict() for t in self.trials],
            "best_trial": self.best_trial.to_dict() if self.best_trial is not None else None,
            "total_trials": self.total_trials,
            "successful_trials": self.successful_trials,
            "failed_trials": self.failed_trials,
            "started_at": self.started_at.isoformat(),
            "finished_at": self.finished_at.isoformat(),
            "training_dir": str(self.training_dir),
            "output_dir": str(self.output_dir),
            "stopped_early": self.stopped_early,
        }


def generate_grid(space: HyperparameterSpace) -> list[HyperparameterConfiguration]:
    """Cartesian product of every dimension, learning rate varying slowest."""
    combos = itertools.product(
        space.learning_rates,
        space.epochs,
        space.batch_sizes,
        space.resolved_validation_splits(),
        space.resolved_augmentation_sets(),
        space.resolved_balancing_sets(),
    )
    return [
        HyperparameterConfiguration(
            learning_rate=lr,
            epochs=ep,
            batch_size=bs,
            validation_split=vs,
            augmentation=aug,
            balancing=bal,
        )
        for lr, ep, bs, vs, aug, bal in combos
    ]


def generate_random(
    space: HyperparameterSpace, n: int, seed: int
) -> list[HyperparameterConfiguration]:
    rng = random.Random(seed)
    vss = space.resolved_validation_splits()
    augs = space.resolved_augmentation_sets()
    bals = space.resolved_balancing_sets()
    out: list[HyperparameterConfiguration] = []
    for _ in range(n):
        out.append(
            HyperparameterConfiguration(
                learning_rate=space.learning_rates[rng.randrange(len(space.learning_rates))],
                epochs=space.epochs[rng.randrange(len(space.epochs))],
                batch_size=space.batch_sizes[rng.randrange(len(space.batch_sizes))],
                validation_split=vss[rng.randrange(len(vss))],
                augmentation=augs[rng.randrange(len(augs))],
                balancing=bals[rng.randrange(len(bals))],
            )
        )
    return out


def should_stop_early(trials: Sequence[TrialResult], metric: MetricType) -> bool:
    if len(trials) < EARLY_STOP_WINDOW:
        return False
    window = trials[-EARLY_STOP_WINDOW:]
    if not all(t.succeeded for t in window):
        return False
    reference = metric_value(window[0].metrics, metric)
    return not any(
        is_improvement(metric_value(t.metrics, metric), reference, metric) for t in window[1:]
    )


def select_best_trial(trials: Sequence[TrialResult], metric: MetricType) -> TrialResult | None:
    best: TrialResult | None = None
    best_value = 0.0
    for t in trials:
        if not t.succeeded:
            continue
        value = metric_value(t.metrics, metric)
        if best is None or is_improvement(value, best_value, metric):
            best = t
            best_value = value
    return best


@dataclass(frozen=True)
class _Plan:
    configs: list[HyperparameterConfiguration]
    parallel: bool
    max_parallel: int
    early_stopping: bool
    metric: MetricType


class HyperparameterTuner:
    """Runs grid or random search over a ``ModelFitter``.

    A tuner instance drives one search at a time; ``state`` reflects the most
    recent call to ``tune``.
    """

    def __init__(
        self,
        fitter: ModelFitter,
        *,
        default_parallelism: Callable[[], int] | None = None,
    ) -> None:
        self._fitter = fitter
        self._default_parallelism = default_parallelism or _cpu_parallelism
        self._state = TuningState.not_started
        self._state_lock = threading.Lock()

    @property
    def state(self) -> TuningState:
        with self._state_lock:
            return self._state

    def _set_state(self, state: TuningState) -> None:
        with self._state_lock:
            self._state = state

    def _plan(
        self,
        training_dir: Path,
        output_dir: Path,
        strategy: TuningStrategy,
        grid: GridSearchOptions | None,
        random_search: RandomSearchOptions | None,
    ) -> _Plan:
        if not str(training_dir).strip():
            raise ConfigurationError(ErrorCode.train_dir_empty)
        if not training_dir.is_dir():
            raise ConfigurationError(
                ErrorCode.train_dir_not_found, f"training dir not found: {training_dir}"
            )
        if not str(output_dir).strip():
            raise ConfigurationError(ErrorCode.output_dir_empty)
        if strategy is TuningStrategy.grid_search:
            if grid is None:
                raise ConfigurationError(ErrorCode.missing_search_options)
            validate_grid_options(grid)
            return _Plan(
                configs=generate_grid(grid.space),
                parallel=grid.parallel,
                max_parallel=grid.max_parallel_trials,
                early_stopping=grid.early_stopping,
                metric=grid.metric,
            )
        if strategy is TuningStrategy.random_search:
            if random_search is None:
                raise ConfigurationError(ErrorCode.missing_search_options)
            validate_random_options(random_search)
            return _Plan(
                configs=generate_random(
                    random_search.space, random_search.number_of_trials, random_search.seed
                ),
                parallel=random_search.parallel,
                max_parallel=random_search.max_parallel_trials,
                early_stopping=random_search.early_stopping,
                metric=random_search.metric,
            )
        raise ConfigurationError(ErrorCode.unknown_strategy, f"unknown strategy: {strategy}")

    def tune(
        self,
        training_dir: Path,
        output_dir: Path,
        strategy: TuningStrategy,
        grid: GridSearchOptions | None = None,
        random_search: RandomSearchOptions | None = None,
        progress: TuningProgress | None = None,
        cancel: CancellationToken | None = None,
    ) -> TuningResult:
        log = get_logger()
        token = cancel or CancellationToken()
        token.raise_if_cancelled()
        plan = self._plan(training_dir, output_dir, strategy, grid, random_search)

        tuning_id = uuid.uuid4().hex
        started = datetime.now(UTC)
        executor = TrialExecutor(self._fitter, output_dir, training_dir)
        total = len(plan.configs)
        self._set_state(TuningState.running)
        log.info(
            "tuning_started tuning_id=%s strategy=%s trials=%d parallel=%s metric=%s",
            tuning_id,
            strategy.value,
            total,
            plan.parallel,
            plan.metric.value,
        )
        if progress is not None:
            progress.on_tuning_started(total)

        try:
            if plan.parallel:
                trials = self._run_parallel(executor, plan, token, progress)
                stopped = False
            else:
                trials, stopped = self._run_sequential(executor, plan, token, progress)
        except OperationCancelledError:
            self._set_state(TuningState.failed)
            log.info("tuning_cancelled tuning_id=%s", tuning_id)
            if progress is not None:
                progress.on_tuning_failed("cancelled")
            raise
        except Exception as exc:
            self._set_state(TuningState.failed)
            log.error("tuning_failed tuning_id=%s error=%s", tuning_id, exc)
            if progress is not None:
                progress.on_tuning_failed(str(exc))
            raise

        result = TuningResult(
            tuning_id=tuning_id,
            strategy=strategy,
            metric=plan.metric,
            trials=tuple(trials),
            best_trial=select_best_trial(trials, plan.metric),
            started_at=started,
            finished_at=datetime.now(UTC),
            training_dir=training_dir,
            output_dir=output_dir,
            stopped_early=stopped,
        )
        self._set_state(TuningState.completed)
        best = result.best_trial
        log.info(
            "tuning_completed tuning_id=%s trials=%d succeeded=%d failed=%d best_trial=%s "
            "stopped_early=%s",
            tuning_id,
            result.total_trials,
            result.successful_trials,
            result.failed_trials,
            best.trial_number if best is not None else None,
            stopped,
        )
        if progress is not None:
            progress.on_tuning_completed(result)
        return result

    def _run_sequential(
        self,
        executor: TrialExecutor,
        plan: _Plan,
        cancel: CancellationToken,
        progress: TuningProgress | None,
    ) -> tuple[list[TrialResult], bool]:
        total = len(plan.configs)
        trials: list[TrialResult] = []
        for number, config in enumerate(plan.configs, start=1):
            cancel.raise_if_cancelled()
            if progress is not None:
                progress.on_trial_started(number, total)
            result = executor.run(config, number, total, cancel)
            trials.append(result)
            if progress is not None:
                progress.on_trial_completed(result, len(trials), total)
            if plan.early_stopping and should_stop_early(trials, plan.metric):
                get_logger().info(
                    "tuning_early_stop completed=%d total=%d metric=%s",
                    len(trials),
                    total,
                    plan.metric.value,
                )
                return trials, True
        return trials, False

    def _run_parallel(
        self,
        executor: TrialExecutor,
        plan: _Plan,
        cancel: CancellationToken,
        progress: TuningProgress | None,
    ) -> list[TrialResult]:
        total = len(plan.configs)
        if total == 0:
            return []
        workers = plan.max_parallel if plan.max_parallel > 0 else self._default_parallelism()
        workers = max(1, min(int(workers), total))
        counter = itertools.count(1)
        counter_lock = threading.Lock()
        results: list[TrialResult] = []

        def _next_number() -> int:
            with counter_lock:
                return next(counter)

        def _run_one(config: HyperparameterConfiguration) -> TrialResult:
            cancel.raise_if_cancelled()
            number = _next_number()
            if progress is not None:
                progress.on_trial_started(number, total)
            return executor.run(config, number, total, cancel)

        get_logger().info("tuning_parallel workers=%d trials=%d", workers, total)
        with ThreadPoolExecutor(max_workers=workers, thread_name_prefix="trial") as pool:
            pending: set[Future[TrialResult]] = {pool.submit(_run_one, c) for c in plan.configs}
            try:
                while pending:
                    done, pending = wait(pending, return_when=FIRST_COMPLETED)
                    for fut in done:
                        result = fut.result()
                        results.append(result)
                        if progress is not None:
                            progress.on_trial_completed(result, len(results), total)
            except BaseException:
                for fut in pending:
                    fut.cancel()
                raise
        return results
