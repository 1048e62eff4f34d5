from __future__ import annotations

import argparse
import json
import sys
import tomllib
from collections.abc import Mapping
from dataclasses import dataclass, replace
from pathlib import Path

from barcode_lab.config import AppConfig, Settings
from barcode_lab.errors import CancellationToken, ConfigurationError
from barcode_lab.events.training import Publisher, RedisPublisher
from barcode_lab.jobs import (
    InMemoryJobStore,
    JobState,
    JobStore,
    RedisJobStore,
    TrainingJobManager,
    TrainingJobRunner,
    TrainingRequest,
)
from barcode_lab.jobs.types import tuning_from_dict
from barcode_lab.logging import get_logger, init_logging
from barcode_lab.training.fitter import ModelFitter
from barcode_lab.training.options import (
    AugmentationOptions,
    BalancingOptions,
    GridSearchOptions,
    TuningStrategy,
)
from barcode_lab.training.recommendations import (
    SPACE_PRESET_NAMES,
    TrainingProfileType,
    training_profile,
)
from barcode_lab.training.resources import default_parallelism, detect_resource_limits
from barcode_lab.training.samples import scan_training_dir
from barcode_lab.training.torch_fitter import TorchModelFitter
from barcode_lab.training.tuning import HyperparameterTuner


@dataclass(frozen=True)
class _Wiring:
    store: JobStore
    publisher: Publisher | None
    channel: str
    fitter: ModelFitter
    max_concurrent_jobs: int
    max_parallel_trials: int
    data_root: Path = AppConfig.data_root
    artifacts_root: Path = AppConfig.artifacts_root


def _load_settings() -> Settings:
    """Settings provider; tests monkeypatch this for isolation."""
    return Settings.load()


def _build_wiring(s: Settings) -> _Wiring:
    url = s.redis.url.strip()
    store: JobStore = RedisJobStore(url, key=s.redis.jobs_key) if url else InMemoryJobStore()
    publisher: Publisher | None = RedisPublisher(url) if url else None
    parallel = s.training.max_parallel_trials or default_parallelism()
    limits = detect_resource_limits(parallel_trials=parallel)
    return _Wiring(
        store=store,
        publisher=publisher,
        channel=s.redis.events_channel,
        fitter=TorchModelFitter(device=s.training.device, threads=limits.torch_threads),
        max_concurrent_jobs=s.training.max_concurrent_jobs,
        max_parallel_trials=s.training.max_parallel_trials,
        data_root=s.app.data_root,
        artifacts_root=s.app.artifacts_root,
    )


def _read_toml(path: Path) -> dict[str, object]:
    try:
        raw: object = tomllib.loads(path.read_text(encoding="utf-8"))
    except OSError as exc:
        raise RuntimeError(f"Failed to read TOML: {path}") from exc
    except tomllib.TOMLDecodeError as exc:
        raise RuntimeError(f"Invalid TOML: {path}") from exc
    return dict(raw) if isinstance(raw, dict) else {}


def _table(data: Mapping[str, object], key: str) -> Mapping[str, object] | None:
    tab = data.get(key)
    return tab if isinstance(tab, Mapping) else None


def _build_parser() -> argparse.ArgumentParser:
    ap = argparse.ArgumentParser(description="Train noread-reason classifiers")
    sub = ap.add_subparsers(dest="command", required=True)

    tr = sub.add_parser("train", help="Run one training job and print the finished job")
    tr.add_argument("--training-dir", default=None, help="One sub-directory per label")
    tr.add_argument("--output-dir", default=None)
    tr.add_argument(
        "--profile",
        choices=[p.value for p in TrainingProfileType],
        default=TrainingProfileType.standard.value,
        help="Preset the flags below fall back to",
    )
    tr.add_argument("--lr", type=float, default=None)
    tr.add_argument("--epochs", type=int, default=None)
    tr.add_argument("--batch-size", type=int, default=None)
    tr.add_argument("--validation-split", type=float, default=None)
    tr.add_argument(
        "--options", default=None, help="TOML file with [augmentation] and [balancing] tables"
    )
    tr.add_argument("--notes", default=None)

    tu = sub.add_parser("tune", help="Run a hyperparameter search and print the result")
    tu.add_argument("--training-dir", default=None)
    tu.add_argument("--output-dir", default=None)
    tu.add_argument(
        "--search", default=None, help="TOML file with strategy, [space] and search options"
    )
    tu.add_argument(
        "--space",
        choices=list(SPACE_PRESET_NAMES),
        default=None,
        help="Preset search space; replaces any space in --search",
    )
    return ap


def _dirs(ns: argparse.Namespace, w: _Wiring) -> tuple[Path, Path]:
    # unset directories fall back to the configured app roots
    training_dir = Path(str(ns.training_dir)) if ns.training_dir else w.data_root
    output_dir = Path(str(ns.output_dir)) if ns.output_dir else w.artifacts_root
    return training_dir, output_dir


def _cmd_train(ns: argparse.Namespace, w: _Wiring) -> int:
    opts = _read_toml(Path(str(ns.options))) if ns.options else {}
    aug = _table(opts, "augmentation")
    bal = _table(opts, "balancing")
    profile = training_profile(TrainingProfileType(str(ns.profile)))
    training_dir, output_dir = _dirs(ns, w)
    split = ns.validation_split if ns.validation_split is not None else profile.validation_split
    request = TrainingRequest(
        training_dir=training_dir,
        output_dir=output_dir,
        learning_rate=float(ns.lr) if ns.lr is not None else profile.learning_rate,
        epochs=int(ns.epochs) if ns.epochs is not None else profile.epochs,
        batch_size=int(ns.batch_size) if ns.batch_size is not None else profile.batch_size,
        validation_split=float(split) if split is not None else None,
        augmentation=AugmentationOptions.from_dict(aug) if aug else profile.augmentation,
        balancing=BalancingOptions.from_dict(bal) if bal else profile.balancing,
        notes=str(ns.notes) if ns.notes else None,
    )
    manager = TrainingJobManager(
        w.store,
        TrainingJobRunner(w.fitter),
        max_concurrent_jobs=w.max_concurrent_jobs,
        publisher=w.publisher,
        channel=w.channel,
    )
    job_id = manager.submit(request)
    manager.run_next(block=False)
    job = manager.get_status(job_id)
    if job is None:
        raise RuntimeError(f"job vanished: {job_id}")
    print(json.dumps(job.to_dict(), indent=2))
    return 0 if job.state is JobState.completed else 1


def _cmd_tune(ns: argparse.Namespace, w: _Wiring) -> int:
    raw = _read_toml(Path(str(ns.search))) if ns.search else {}
    if ns.space:
        raw["space"] = str(ns.space)
    training_dir, output_dir = _dirs(ns, w)
    # only the recommended preset needs the dataset size
    count = len(scan_training_dir(training_dir)) if raw.get("space") == "recommended" else None
    search = tuning_from_dict(raw, sample_count=count)
    if search.max_parallel_trials == 0 and w.max_parallel_trials > 0:
        search = replace(search, max_parallel_trials=w.max_parallel_trials)
    tuner = HyperparameterTuner(w.fitter)
    if isinstance(search, GridSearchOptions):
        result = tuner.tune(
            training_dir,
            output_dir,
            TuningStrategy.grid_search,
            grid=search,
            cancel=CancellationToken(),
        )
    else:
        result = tuner.tune(
            training_dir,
            output_dir,
            TuningStrategy.random_search,
            random_search=search,
            cancel=CancellationToken(),
        )
    print(json.dumps(result.to_dict(), indent=2))
    return 0 if result.best_trial is not None else 1


def main(argv: list[str] | None = None) -> int:
    init_logging()
    ns = _build_parser().parse_args(argv)
    w = _build_wiring(_load_settings())
    try:
        if ns.command == "train":
            return _cmd_train(ns, w)
        return _cmd_tune(ns, w)
    except ConfigurationError as exc:
        get_logger().error("cli_configuration_error code=%s", exc.code.value)
        print(json.dumps({"error": exc.code.value, "message": exc.message}), file=sys.stderr)
        return 2


if __name__ == "__main__":  # pragma: no cover - script entry
    raise SystemExit(main())
