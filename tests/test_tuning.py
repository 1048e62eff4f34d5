from __future__ import annotations

import json
import sys
import threading
from datetime import UTC, datetime
from pathlib import Path

import pytest

from barcode_lab.errors import (
    CancellationToken,
    ConfigurationError,
    ErrorCode,
    OperationCancelledError,
)
from barcode_lab.training.metrics import EvaluationMetrics, failed_metrics
from barcode_lab.training.options import (
    GridSearchOptions,
    HyperparameterConfiguration,
    HyperparameterSpace,
    MetricType,
    RandomSearchOptions,
    TuningStrategy,
)
from barcode_lab.training.trial import TrialResult
from barcode_lab.training.tuning import (
    HyperparameterTuner,
    TuningResult,
    TuningState,
    generate_grid,
    generate_random,
    select_best_trial,
    should_stop_early,
)

from _helpers import FakeFitter, make_dataset, metrics_with


def _trial(n: int, acc: float | None, *, log_loss: float | None = None) -> TrialResult:
    now = datetime.now(UTC)
    ok = acc is not None
    return TrialResult(
        trial_id=f"t{n}",
        trial_number=n,
        configuration=HyperparameterConfiguration(learning_rate=0.01, epochs=1, batch_size=1),
        metrics=metrics_with(acc, log_loss=log_loss) if acc is not None else failed_metrics(),
        model_path=None,
        started_at=now,
        finished_at=now,
        succeeded=ok,
        error=None if ok else "boom",
    )


def _values(c: HyperparameterConfiguration) -> tuple[object, ...]:
    return (
        c.learning_rate,
        c.epochs,
        c.batch_size,
        c.validation_split,
        c.augmentation,
        c.balancing,
    )


SPACE_C = HyperparameterSpace(learning_rates=(0.01, 0.1), epochs=(10, 20), batch_sizes=(32,))


def test_grid_is_cartesian_product_lr_slowest() -> None:
    configs = generate_grid(SPACE_C)
    assert [(c.learning_rate, c.epochs, c.batch_size) for c in configs] == [
        (0.01, 10, 32),
        (0.01, 20, 32),
        (0.1, 10, 32),
        (0.1, 20, 32),
    ]
    assert len({c.id for c in configs}) == 4


def test_grid_includes_optional_dimensions() -> None:
    space = HyperparameterSpace(
        learning_rates=(0.01,), epochs=(1,), batch_sizes=(2, 4), validation_splits=(0.1, 0.3)
    )
    configs = generate_grid(space)
    assert len(configs) == 4
    assert {c.validation_split for c in configs} == {0.1, 0.3}


def test_random_same_seed_same_values() -> None:
    space = HyperparameterSpace(
        learning_rates=(0.001, 0.01, 0.1), epochs=(5, 10, 15), batch_sizes=(16, 32, 64)
    )
    a = generate_random(space, 5, 123)
    b = generate_random(space, 5, 123)
    assert len(a) == 5
    assert [_values(c) for c in a] == [_values(c) for c in b]
    # ids are fresh per configuration
    assert {c.id for c in a}.isdisjoint({c.id for c in b})
    for c in a:
        assert c.learning_rate in space.learning_rates
        assert c.epochs in space.epochs
        assert c.batch_size in space.batch_sizes


def test_random_different_seed_differs() -> None:
    space = HyperparameterSpace(
        learning_rates=(0.001, 0.01, 0.1), epochs=(5, 10, 15), batch_sizes=(16, 32, 64)
    )
    a = [_values(c) for c in generate_random(space, 8, 1)]
    b = [_values(c) for c in generate_random(space, 8, 2)]
    assert a != b


def test_early_stop_needs_full_window() -> None:
    trials = [_trial(1, 0.9), _trial(2, 0.5), _trial(3, 0.5)]
    assert not should_stop_early(trials, MetricType.accuracy)


def test_early_stop_when_window_does_not_improve() -> None:
    trials = [_trial(1, 0.9), _trial(2, 0.8), _trial(3, 0.9), _trial(4, 0.7)]
    assert should_stop_early(trials, MetricType.accuracy)


def test_no_early_stop_when_any_improves() -> None:
    trials = [_trial(1, 0.5), _trial(2, 0.4), _trial(3, 0.6), _trial(4, 0.3)]
    assert not should_stop_early(trials, MetricType.accuracy)


def test_no_early_stop_with_failed_trial_in_window() -> None:
    trials = [_trial(1, 0.9), _trial(2, None), _trial(3, 0.5), _trial(4, 0.5)]
    assert not should_stop_early(trials, MetricType.accuracy)


def test_early_stop_looks_at_last_window_only() -> None:
    trials = [_trial(1, 0.1), _trial(2, 0.9), _trial(3, 0.8), _trial(4, 0.8), _trial(5, 0.2)]
    assert should_stop_early(trials, MetricType.accuracy)


def test_early_stop_log_loss_is_minimized() -> None:
    trials = [_trial(i, 0.5, log_loss=v) for i, v in enumerate([0.5, 0.6, 0.7, 0.8], start=1)]
    assert should_stop_early(trials, MetricType.log_loss)
    better = [_trial(i, 0.5, log_loss=v) for i, v in enumerate([0.5, 0.6, 0.4, 0.8], start=1)]
    assert not should_stop_early(better, MetricType.log_loss)


def test_best_ignores_failed_and_takes_first_max() -> None:
    trials = [_trial(1, None), _trial(2, 0.7), _trial(3, 0.9), _trial(4, 0.9)]
    best = select_best_trial(trials, MetricType.accuracy)
    assert best is not None and best.trial_number == 3


def test_best_by_log_loss() -> None:
    trials = [_trial(1, 0.9, log_loss=0.4), _trial(2, 0.5, log_loss=0.2), _trial(3, None)]
    best = select_best_trial(trials, MetricType.log_loss)
    assert best is not None and best.trial_number == 2


def test_best_none_when_all_failed() -> None:
    assert select_best_trial([_trial(1, None), _trial(2, None)], MetricType.accuracy) is None
    assert select_best_trial([], MetricType.accuracy) is None


class _Recorder:
    def __init__(self) -> None:
        self.events: list[tuple[str, object]] = []
        self._lock = threading.Lock()

    def on_tuning_started(self, total_trials: int) -> None:
        self.events.append(("started", total_trials))

    def on_trial_started(self, trial_number: int, total_trials: int) -> None:
        with self._lock:
            self.events.append(("trial_started", trial_number))

    def on_trial_completed(self, result: TrialResult, completed: int, total_trials: int) -> None:
        self.events.append(("trial_completed", completed))

    def on_tuning_completed(self, result: TuningResult) -> None:
        self.events.append(("completed", result.total_trials))

    def on_tuning_failed(self, error: str) -> None:
        self.events.append(("failed", error))


def _train_dir(tmp_path: Path) -> Path:
    return make_dataset(tmp_path / "train", {"a": 2, "b": 2})


def test_sequential_grid_runs_every_config_and_picks_best(tmp_path: Path) -> None:
    fitter = FakeFitter(lambda lr, ep, bs: lr + ep / 100)
    tuner = HyperparameterTuner(fitter)
    assert tuner.state is TuningState.not_started
    rec = _Recorder()
    result = tuner.tune(
        _train_dir(tmp_path),
        tmp_path / "out",
        TuningStrategy.grid_search,
        grid=GridSearchOptions(space=SPACE_C, parallel=False),
        progress=rec,
    )
    assert tuner.state is TuningState.completed
    assert result.total_trials == 4
    assert result.successful_trials == 4 and result.failed_trials == 0
    assert [t.trial_number for t in result.trials] == [1, 2, 3, 4]
    assert result.best_trial is not None
    assert result.best_trial.configuration.learning_rate == 0.1
    assert result.best_trial.configuration.epochs == 20
    assert not result.stopped_early
    assert rec.events[0] == ("started", 4)
    assert rec.events[-1] == ("completed", 4)
    assert result.to_dict()["successful_trials"] == 4


def test_failed_trials_are_recorded_and_skipped(tmp_path: Path) -> None:
    def score(lr: float, ep: int, bs: int) -> float:
        if lr > 0.05:
            raise RuntimeError("diverged")
        return 0.5

    result = HyperparameterTuner(FakeFitter(score)).tune(
        _train_dir(tmp_path),
        tmp_path / "out",
        TuningStrategy.grid_search,
        grid=GridSearchOptions(space=SPACE_C, parallel=False),
    )
    assert result.total_trials == 4
    assert result.failed_trials == 2
    assert result.best_trial is not None
    assert result.best_trial.configuration.learning_rate == 0.01


def test_all_trials_failed_gives_no_best(tmp_path: Path) -> None:
    def score(lr: float, ep: int, bs: int) -> float:
        raise ValueError("bad")

    result = HyperparameterTuner(FakeFitter(score)).tune(
        _train_dir(tmp_path),
        tmp_path / "out",
        TuningStrategy.grid_search,
        grid=GridSearchOptions(space=SPACE_C, parallel=False),
    )
    assert result.best_trial is None
    assert result.failed_trials == 4


def test_sequential_early_stopping(tmp_path: Path) -> None:
    space = HyperparameterSpace(
        learning_rates=(0.5, 0.4, 0.3, 0.2, 0.1, 0.05), epochs=(1,), batch_sizes=(1,)
    )
    fitter = FakeFitter()
    result = HyperparameterTuner(fitter).tune(
        _train_dir(tmp_path),
        tmp_path / "out",
        TuningStrategy.grid_search,
        grid=GridSearchOptions(space=space, parallel=False, early_stopping=True),
    )
    assert result.stopped_early
    assert result.total_trials == 4
    assert len(fitter.calls) == 4


def test_parallel_random_search_numbers_trials_uniquely(tmp_path: Path) -> None:
    space = HyperparameterSpace(
        learning_rates=(0.01, 0.02, 0.03), epochs=(1, 2), batch_sizes=(4, 8)
    )
    rec = _Recorder()
    fitter = FakeFitter()
    result = HyperparameterTuner(fitter, default_parallelism=lambda: 3).tune(
        _train_dir(tmp_path),
        tmp_path / "out",
        TuningStrategy.random_search,
        random_search=RandomSearchOptions(space=space, number_of_trials=7, seed=5, parallel=True),
        progress=rec,
    )
    assert result.total_trials == 7
    assert sorted(t.trial_number for t in result.trials) == list(range(1, 8))
    started = sorted(n for kind, n in rec.events if kind == "trial_started")
    assert started == list(range(1, 8))
    completed = [n for kind, n in rec.events if kind == "trial_completed"]
    assert completed == list(range(1, 8))
    assert len(fitter.calls) == 7
    assert not result.stopped_early


def test_validation_errors_raise_before_any_fit(tmp_path: Path) -> None:
    fitter = FakeFitter()
    tuner = HyperparameterTuner(fitter)
    train = _train_dir(tmp_path)
    with pytest.raises(ConfigurationError) as ei:
        tuner.tune(train, tmp_path / "out", TuningStrategy.grid_search)
    assert ei.value.code is ErrorCode.missing_search_options
    with pytest.raises(ConfigurationError) as ei2:
        tuner.tune(
            train,
            tmp_path / "out",
            TuningStrategy.grid_search,
            grid=GridSearchOptions(
                space=HyperparameterSpace(learning_rates=(), epochs=(1,), batch_sizes=(1,))
            ),
        )
    assert ei2.value.code is ErrorCode.empty_learning_rates
    with pytest.raises(ConfigurationError) as ei3:
        tuner.tune(
            tmp_path / "missing",
            tmp_path / "out",
            TuningStrategy.grid_search,
            grid=GridSearchOptions(space=SPACE_C),
        )
    assert ei3.value.code is ErrorCode.train_dir_not_found
    with pytest.raises(ConfigurationError) as ei4:
        tuner.tune(
            train,
            tmp_path / "out",
            TuningStrategy.random_search,
            random_search=RandomSearchOptions(space=SPACE_C, number_of_trials=0),
        )
    assert ei4.value.code is ErrorCode.invalid_number_of_trials
    assert fitter.calls == []
    assert tuner.state is TuningState.not_started


def test_cancel_before_start(tmp_path: Path) -> None:
    token = CancellationToken()
    token.cancel()
    fitter = FakeFitter()
    with pytest.raises(OperationCancelledError):
        HyperparameterTuner(fitter).tune(
            _train_dir(tmp_path),
            tmp_path / "out",
            TuningStrategy.grid_search,
            grid=GridSearchOptions(space=SPACE_C),
            cancel=token,
        )
    assert fitter.calls == []


def test_cancel_mid_search_sets_failed_state(tmp_path: Path) -> None:
    token = CancellationToken()

    def score(lr: float, ep: int, bs: int) -> float:
        token.cancel()
        return 0.5

    tuner = HyperparameterTuner(FakeFitter(score))
    rec = _Recorder()
    with pytest.raises(OperationCancelledError):
        tuner.tune(
            _train_dir(tmp_path),
            tmp_path / "out",
            TuningStrategy.grid_search,
            grid=GridSearchOptions(space=SPACE_C, parallel=False),
            progress=rec,
            cancel=token,
        )
    assert tuner.state is TuningState.failed
    assert rec.events[-1] == ("failed", "cancelled")


def test_cancel_reaches_in_flight_parallel_trials(tmp_path: Path) -> None:
    token = CancellationToken()
    both_running = threading.Barrier(2, timeout=5.0)
    woke: list[int] = []
    lock = threading.Lock()

    def score(lr: float, ep: int, bs: int) -> float:
        if both_running.wait() == 0:
            token.cancel()
        token.wait(5.0)
        with lock:
            woke.append(1)
        token.raise_if_cancelled()
        return 0.5

    fitter = FakeFitter(score)
    tuner = HyperparameterTuner(fitter)
    rec = _Recorder()
    with pytest.raises(OperationCancelledError):
        tuner.tune(
            _train_dir(tmp_path),
            tmp_path / "out",
            TuningStrategy.grid_search,
            grid=GridSearchOptions(space=SPACE_C, parallel=True, max_parallel_trials=2),
            progress=rec,
            cancel=token,
        )
    assert len(woke) == 2
    assert len(fitter.calls) == 2
    assert tuner.state is TuningState.failed
    assert rec.events[-1] == ("failed", "cancelled")


def test_result_survives_json_with_failed_trials(tmp_path: Path) -> None:
    def score(lr: float, ep: int, bs: int) -> float:
        if lr == 0.1:
            raise RuntimeError("diverged")
        return 0.7

    result = HyperparameterTuner(FakeFitter(score)).tune(
        _train_dir(tmp_path),
        tmp_path / "out",
        TuningStrategy.grid_search,
        grid=GridSearchOptions(space=SPACE_C, parallel=False),
    )
    data = result.to_dict()
    back = json.loads(json.dumps(data, allow_nan=False))
    assert back == data
    failed = [t for t in back["trials"] if not t["succeeded"]]
    assert len(failed) == 2
    assert failed[0]["metrics"]["log_loss"] == sys.float_info.max
    assert EvaluationMetrics.from_dict(failed[0]["metrics"]).log_loss == sys.float_info.max
    assert back["best_trial"]["metrics"]["accuracy"] == 0.7


def test_result_without_best_trial_survives_json(tmp_path: Path) -> None:
    def score(lr: float, ep: int, bs: int) -> float:
        raise RuntimeError("out of memory")

    result = HyperparameterTuner(FakeFitter(score)).tune(
        _train_dir(tmp_path),
        tmp_path / "out",
        TuningStrategy.grid_search,
        grid=GridSearchOptions(space=SPACE_C, parallel=False),
    )
    back = json.loads(json.dumps(result.to_dict(), allow_nan=False))
    assert back["best_trial"] is None
    assert back["successful_trials"] == 0 and back["failed_trials"] == 4
    assert {t["error"] for t in back["trials"]} == {"RuntimeError: out of memory"}
