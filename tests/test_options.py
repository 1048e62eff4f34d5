from __future__ import annotations

from pathlib import Path

import pytest

from barcode_lab.errors import ConfigurationError, ErrorCode
from barcode_lab.training.options import (
    AugmentationOptions,
    BalancingOptions,
    BalancingStrategy,
    GridSearchOptions,
    HyperparameterSpace,
    RandomSearchOptions,
    validate_augmentation,
    validate_balancing,
    validate_grid_options,
    validate_random_options,
    validate_training_params,
)
from barcode_lab.training.samples import (
    NoreadReason,
    Sample,
    group_by_label,
    label_distribution,
    scan_training_dir,
)

from _helpers import make_dataset


def _space(**kw: object) -> HyperparameterSpace:
    base: dict[str, object] = {
        "learning_rates": (0.01,),
        "epochs": (5,),
        "batch_sizes": (8,),
    }
    base.update(kw)
    return HyperparameterSpace(**base)  # type: ignore[arg-type]


def _params(**kw: object) -> dict[str, object]:
    base: dict[str, object] = {
        "learning_rate": 0.01,
        "epochs": 10,
        "batch_size": 16,
        "validation_split": 0.2,
        "augmentation": AugmentationOptions(),
        "balancing": BalancingOptions(),
    }
    base.update(kw)
    return base


def test_valid_params_pass() -> None:
    validate_training_params(**_params())  # type: ignore[arg-type]
    validate_training_params(**_params(validation_split=None))  # type: ignore[arg-type]


@pytest.mark.parametrize(
    ("changes", "code"),
    [
        ({"learning_rate": 0.0}, ErrorCode.invalid_learning_rate),
        ({"learning_rate": 1.5}, ErrorCode.invalid_learning_rate),
        ({"epochs": 0}, ErrorCode.invalid_epochs),
        ({"epochs": 501}, ErrorCode.invalid_epochs),
        ({"batch_size": 0}, ErrorCode.invalid_batch_size),
        ({"batch_size": 513}, ErrorCode.invalid_batch_size),
        ({"validation_split": 1.2}, ErrorCode.invalid_validation_split),
    ],
)
def test_invalid_params(changes: dict[str, object], code: ErrorCode) -> None:
    with pytest.raises(ConfigurationError) as ei:
        validate_training_params(**_params(**changes))  # type: ignore[arg-type]
    assert ei.value.code is code


def test_boundaries_are_inclusive() -> None:
    validate_training_params(  # type: ignore[arg-type]
        **_params(learning_rate=1.0, epochs=500, batch_size=512, validation_split=1.0)
    )
    low = _params(epochs=1, batch_size=1, validation_split=0.0)
    validate_training_params(**low)  # type: ignore[arg-type]


def test_augmentation_validation() -> None:
    validate_augmentation(AugmentationOptions())
    with pytest.raises(ConfigurationError):
        validate_augmentation(AugmentationOptions(copies_per_sample=-1))
    with pytest.raises(ConfigurationError):
        validate_augmentation(AugmentationOptions(hflip_probability=1.5))
    with pytest.raises(ConfigurationError):
        validate_augmentation(AugmentationOptions(brightness_lower=1.2, brightness_upper=1.1))
    with pytest.raises(ConfigurationError):
        validate_augmentation(AugmentationOptions(evaluation_copies_per_sample=0))


def test_balancing_validation() -> None:
    validate_balancing(BalancingOptions(strategy=BalancingStrategy.over_sample))
    with pytest.raises(ConfigurationError) as ei:
        validate_balancing(BalancingOptions(target_per_class=-2))
    assert ei.value.code is ErrorCode.invalid_balancing


@pytest.mark.parametrize(
    ("space", "code"),
    [
        (_space(learning_rates=()), ErrorCode.empty_learning_rates),
        (_space(epochs=()), ErrorCode.empty_epochs),
        (_space(batch_sizes=()), ErrorCode.empty_batch_sizes),
        (_space(learning_rates=(0.01, 2.0)), ErrorCode.invalid_learning_rate),
        (_space(validation_splits=(0.2, -0.1)), ErrorCode.invalid_validation_split),
    ],
)
def test_grid_space_validation(space: HyperparameterSpace, code: ErrorCode) -> None:
    with pytest.raises(ConfigurationError) as ei:
        validate_grid_options(GridSearchOptions(space=space))
    assert ei.value.code is code


def test_random_options_validation() -> None:
    validate_random_options(RandomSearchOptions(space=_space(), number_of_trials=3))
    with pytest.raises(ConfigurationError) as ei:
        validate_random_options(RandomSearchOptions(space=_space(), number_of_trials=0))
    assert ei.value.code is ErrorCode.invalid_number_of_trials
    with pytest.raises(ConfigurationError) as ei2:
        validate_random_options(
            RandomSearchOptions(space=_space(), number_of_trials=2, max_parallel_trials=-1)
        )
    assert ei2.value.code is ErrorCode.invalid_max_parallel_trials


def test_default_messages_are_filled() -> None:
    err = ConfigurationError(ErrorCode.empty_epochs)
    assert err.message == "Epoch candidates must not be empty."
    assert str(err) == err.message


def test_augmentation_from_dict_coerces_types() -> None:
    opts = AugmentationOptions.from_dict(
        {"enabled": True, "copies_per_sample": "3", "rotation_angles": [90, 180], "seed": 5}
    )
    assert opts.enabled is True
    assert opts.copies_per_sample == 3
    assert opts.rotation_angles == (90.0, 180.0)
    assert opts.seed == 5
    assert AugmentationOptions.from_dict(opts.to_dict()) == opts
    with pytest.raises(ConfigurationError):
        AugmentationOptions.from_dict({"rotation_angles": 5})


def test_balancing_from_dict() -> None:
    opts = BalancingOptions.from_dict({"strategy": "under_sample", "target_per_class": 4})
    assert opts.strategy is BalancingStrategy.under_sample
    assert opts.target_per_class == 4
    assert BalancingOptions.from_dict(opts.to_dict()) == opts


def test_space_from_dict() -> None:
    space = HyperparameterSpace.from_dict(
        {
            "learning_rates": [0.01, 0.1],
            "epochs": [3],
            "batch_sizes": [4, 8],
            "balancing_sets": [{"strategy": "over_sample"}],
        }
    )
    assert space.learning_rates == (0.01, 0.1)
    assert space.validation_splits is None
    assert space.resolved_validation_splits() == (0.2,)
    assert space.resolved_balancing_sets()[0].strategy is BalancingStrategy.over_sample
    assert space.resolved_augmentation_sets() == (AugmentationOptions(),)


def test_scan_training_dir(tmp_path: Path) -> None:
    root = make_dataset(tmp_path / "train", {"truncated": 2, "blurry_or_out_of_focus": 1})
    (root / "notes.txt").write_text("ignored", encoding="utf-8")
    (root / "truncated" / "readme.md").write_text("ignored", encoding="utf-8")
    samples = scan_training_dir(root)
    assert [s.label for s in samples] == ["blurry_or_out_of_focus", "truncated", "truncated"]
    assert label_distribution(samples) == {"blurry_or_out_of_focus": 1, "truncated": 2}
    assert list(group_by_label(samples)) == ["blurry_or_out_of_focus", "truncated"]
    assert NoreadReason(samples[0].label) is NoreadReason.blurry_or_out_of_focus


def test_scan_drops_unreadable_images(tmp_path: Path) -> None:
    root = make_dataset(tmp_path / "train", {"truncated": 2})
    (root / "truncated" / "broken.png").write_bytes(b"not an image")
    samples = scan_training_dir(root)
    assert [s.image_path.name for s in samples] == ["truncated_000.png", "truncated_001.png"]


def test_scan_missing_dir(tmp_path: Path) -> None:
    with pytest.raises(ConfigurationError) as ei:
        scan_training_dir(tmp_path / "nope")
    assert ei.value.code is ErrorCode.train_dir_not_found


def test_sample_requires_label() -> None:
    with pytest.raises(ValueError):
        Sample(image_path=Path("a.png"), label="  ")
