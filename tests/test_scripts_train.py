from __future__ import annotations

import json
from dataclasses import replace
from pathlib import Path

import pytest
import scripts.train as train_script
from scripts.train import _build_wiring, _Wiring
from scripts.train import main as train_main

from barcode_lab.config import AppConfig, RedisConfig, Settings, TrainingConfig
from barcode_lab.jobs import InMemoryJobStore
from barcode_lab.logging import get_logger
from barcode_lab.training.torch_fitter import TorchModelFitter

from _helpers import FakeFitter, RecordingPublisher, make_dataset


def _settings(**training: object) -> Settings:
    return Settings(
        app=AppConfig(),
        training=TrainingConfig(**training),  # type: ignore[arg-type]
        redis=RedisConfig(),
    )


@pytest.fixture
def wiring(monkeypatch: pytest.MonkeyPatch) -> _Wiring:
    w = _Wiring(
        store=InMemoryJobStore(),
        publisher=RecordingPublisher(),
        channel="test:events",
        fitter=FakeFitter(lambda lr, ep, bs: 0.6),
        max_concurrent_jobs=1,
        max_parallel_trials=2,
    )
    monkeypatch.setattr(train_script, "init_logging", lambda style="auto": get_logger())
    monkeypatch.setattr(train_script, "_load_settings", lambda: _settings())
    monkeypatch.setattr(train_script, "_build_wiring", lambda s: w)
    return w


def test_build_wiring_without_redis_uses_memory_store() -> None:
    w = _build_wiring(_settings(max_parallel_trials=2))
    assert isinstance(w.store, InMemoryJobStore)
    assert w.publisher is None
    assert isinstance(w.fitter, TorchModelFitter)
    assert w.channel == "barcode_lab:events"


def test_train_command_runs_job(
    tmp_path: Path, wiring: _Wiring, capsys: pytest.CaptureFixture[str]
) -> None:
    train = make_dataset(tmp_path / "train", {"truncated": 2, "stained_or_obstructed": 2})
    opts = tmp_path / "opts.toml"
    opts.write_text(
        '[balancing]\nstrategy = "over_sample"\n\n[augmentation]\nenabled = true\n',
        encoding="utf-8",
    )
    rc = train_main(
        [
            "train",
            "--training-dir",
            str(train),
            "--output-dir",
            str(tmp_path / "out"),
            "--epochs",
            "3",
            "--options",
            str(opts),
        ]
    )
    assert rc == 0
    job = json.loads(capsys.readouterr().out)
    assert job["state"] == "completed"
    assert job["metrics"]["accuracy"] == 0.6
    assert job["request"]["epochs"] == 3
    assert job["request"]["balancing"]["strategy"] == "over_sample"
    assert job["request"]["augmentation"]["enabled"] is True
    assert isinstance(wiring.publisher, RecordingPublisher)
    assert wiring.publisher.messages and wiring.publisher.messages[0][0] == "test:events"


def test_train_command_invalid_params_exit_2(
    tmp_path: Path, wiring: _Wiring, capsys: pytest.CaptureFixture[str]
) -> None:
    train = make_dataset(tmp_path / "train", {"a": 1})
    rc = train_main(
        ["train", "--training-dir", str(train), "--output-dir", str(tmp_path), "--lr", "0"]
    )
    assert rc == 2
    err = json.loads(capsys.readouterr().err)
    assert err["error"] == "invalid_learning_rate"


def test_tune_command_random_search(
    tmp_path: Path, wiring: _Wiring, capsys: pytest.CaptureFixture[str]
) -> None:
    train = make_dataset(tmp_path / "train", {"a": 2, "b": 2})
    search = tmp_path / "search.toml"
    search.write_text(
        "\n".join(
            [
                'strategy = "random_search"',
                "number_of_trials = 3",
                "seed = 4",
                "parallel = false",
                "",
                "[space]",
                "learning_rates = [0.01, 0.1]",
                "epochs = [1, 2]",
                "batch_sizes = [4]",
            ]
        ),
        encoding="utf-8",
    )
    rc = train_main(
        [
            "tune",
            "--training-dir",
            str(train),
            "--output-dir",
            str(tmp_path / "out"),
            "--search",
            str(search),
        ]
    )
    assert rc == 0
    result = json.loads(capsys.readouterr().out)
    assert result["strategy"] == "random_search"
    assert result["total_trials"] == 3
    assert result["best_trial"]["metrics"]["accuracy"] == 0.6


def test_tune_command_missing_space_exit_2(
    tmp_path: Path, wiring: _Wiring, capsys: pytest.CaptureFixture[str]
) -> None:
    search = tmp_path / "search.toml"
    search.write_text('strategy = "grid_search"\n', encoding="utf-8")
    rc = train_main(
        [
            "tune",
            "--training-dir",
            str(tmp_path),
            "--output-dir",
            str(tmp_path / "out"),
            "--search",
            str(search),
        ]
    )
    assert rc == 2
    assert json.loads(capsys.readouterr().err)["error"] == "missing_search_options"


def test_directories_default_to_app_roots(
    tmp_path: Path,
    wiring: _Wiring,
    monkeypatch: pytest.MonkeyPatch,
    capsys: pytest.CaptureFixture[str],
) -> None:
    train = make_dataset(tmp_path / "data", {"a": 2, "b": 2})
    rooted = replace(wiring, data_root=train, artifacts_root=tmp_path / "models")
    monkeypatch.setattr(train_script, "_build_wiring", lambda s: rooted)
    assert train_main(["train", "--epochs", "1"]) == 0
    job = json.loads(capsys.readouterr().out)
    assert job["request"]["training_dir"] == str(train)
    assert job["request"]["output_dir"] == str(tmp_path / "models")


def test_train_profile_sets_unflagged_params(
    tmp_path: Path, wiring: _Wiring, capsys: pytest.CaptureFixture[str]
) -> None:
    train = make_dataset(tmp_path / "train", {"a": 2, "b": 2})
    argv = ["train", "--training-dir", str(train), "--output-dir", str(tmp_path / "out")]
    assert train_main([*argv, "--profile", "high_quality", "--epochs", "7"]) == 0
    req = json.loads(capsys.readouterr().out)["request"]
    assert req["epochs"] == 7
    assert req["batch_size"] == 16
    assert req["learning_rate"] == 0.005
    assert req["validation_split"] == 0.2
    assert req["augmentation"]["copies_per_sample"] == 2
    assert req["balancing"]["strategy"] == "over_sample"


def test_train_defaults_to_standard_profile(
    tmp_path: Path, wiring: _Wiring, capsys: pytest.CaptureFixture[str]
) -> None:
    train = make_dataset(tmp_path / "train", {"a": 2, "b": 2})
    rc = train_main(["train", "--training-dir", str(train), "--output-dir", str(tmp_path)])
    assert rc == 0
    req = json.loads(capsys.readouterr().out)["request"]
    assert (req["learning_rate"], req["epochs"], req["batch_size"]) == (0.01, 50, 20)
    assert req["augmentation"]["enabled"] is False


def test_tune_with_recommended_space_preset(
    tmp_path: Path, wiring: _Wiring, capsys: pytest.CaptureFixture[str]
) -> None:
    train = make_dataset(tmp_path / "train", {"a": 2, "b": 2})
    search = tmp_path / "search.toml"
    search.write_text(
        'strategy = "random_search"\nnumber_of_trials = 2\nparallel = false\n',
        encoding="utf-8",
    )
    rc = train_main(
        [
            "tune",
            "--training-dir",
            str(train),
            "--output-dir",
            str(tmp_path / "out"),
            "--search",
            str(search),
            "--space",
            "recommended",
        ]
    )
    assert rc == 0
    result = json.loads(capsys.readouterr().out)
    assert result["total_trials"] == 2
    for trial in result["trials"]:
        cfg = trial["configuration"]
        assert cfg["batch_size"] in (8, 10, 16)
        assert cfg["balancing"]["strategy"] == "over_sample"


def test_tune_space_preset_without_search_file(
    tmp_path: Path, wiring: _Wiring, capsys: pytest.CaptureFixture[str]
) -> None:
    train = make_dataset(tmp_path / "train", {"a": 2, "b": 2})
    argv = ["tune", "--training-dir", str(train), "--output-dir", str(tmp_path / "out")]
    assert train_main([*argv, "--space", "quick_debug"]) == 0
    result = json.loads(capsys.readouterr().out)
    assert result["strategy"] == "grid_search"
    assert result["total_trials"] == 8
