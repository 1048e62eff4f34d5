from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass, field
from enum import Enum
from typing import Final

from barcode_lab.errors import ConfigurationError, ErrorCode

from .options import (
    AugmentationOptions,
    BalancingOptions,
    BalancingStrategy,
    HyperparameterSpace,
)

SMALL_DATASET_SAMPLES: Final[int] = 500
MEDIUM_DATASET_SAMPLES: Final[int] = 2000

_NO_AUG: Final[AugmentationOptions] = AugmentationOptions(enabled=False)
_NO_BAL: Final[BalancingOptions] = BalancingOptions(strategy=BalancingStrategy.none)
_OVER: Final[BalancingOptions] = BalancingOptions(strategy=BalancingStrategy.over_sample)
_UNDER: Final[BalancingOptions] = BalancingOptions(strategy=BalancingStrategy.under_sample)


def _augment(
    copies: int, rotation: float, brightness: float, vflip: float | None = None
) -> AugmentationOptions:
    return AugmentationOptions(
        enabled=True,
        copies_per_sample=copies,
        rotation_enabled=True,
        rotation_probability=rotation,
        hflip_enabled=True,
        hflip_probability=0.5,
        vflip_enabled=vflip is not None,
        vflip_probability=0.2 if vflip is None else vflip,
        brightness_enabled=True,
        brightness_probability=brightness,
    )


def quick_debug_space() -> HyperparameterSpace:
    """Four small trials for checking that a dataset trains at all."""
    return HyperparameterSpace(
        learning_rates=(0.01, 0.05),
        epochs=(10, 20),
        batch_sizes=(10, 20),
        validation_splits=(0.2,),
        augmentation_sets=(_NO_AUG,),
        balancing_sets=(_NO_BAL,),
    )


def standard_space() -> HyperparameterSpace:
    return HyperparameterSpace(
        learning_rates=(0.001, 0.005, 0.01, 0.05),
        epochs=(30, 50, 70),
        batch_sizes=(10, 20, 32),
        validation_splits=(0.2, 0.3),
        augmentation_sets=(_NO_AUG, _augment(1, rotation=0.6, brightness=0.6)),
        balancing_sets=(_NO_BAL, _OVER),
    )


def fine_grained_space() -> HyperparameterSpace:
    """Wide grid for squeezing out the best model; meant for random search."""
    return HyperparameterSpace(
        learning_rates=(0.0001, 0.0005, 0.001, 0.005, 0.01, 0.02, 0.05),
        epochs=(20, 30, 50, 70, 100),
        batch_sizes=(8, 10, 16, 20, 32, 64),
        validation_splits=(0.15, 0.2, 0.25, 0.3),
        augmentation_sets=(
            _NO_AUG,
            _augment(1, rotation=0.5, brightness=0.5),
            _augment(2, rotation=0.7, brightness=0.7, vflip=0.3),
        ),
        balancing_sets=(_NO_BAL, _OVER, _UNDER),
    )


def recommended_space(sample_count: int) -> HyperparameterSpace:
    """Pick a space sized to the dataset.

    Small sets lean on augmentation and over-sampling with longer schedules;
    large sets search bigger batches over shorter schedules without either.
    """
    if sample_count < SMALL_DATASET_SAMPLES:
        return HyperparameterSpace(
            learning_rates=(0.001, 0.005, 0.01),
            epochs=(50, 70, 100),
            batch_sizes=(8, 10, 16),
            validation_splits=(0.2,),
            augmentation_sets=(_augment(2, rotation=0.7, brightness=0.6),),
            balancing_sets=(_OVER,),
        )
    if sample_count < MEDIUM_DATASET_SAMPLES:
        return HyperparameterSpace(
            learning_rates=(0.001, 0.005, 0.01, 0.02),
            epochs=(30, 50, 70),
            batch_sizes=(16, 20, 32),
            validation_splits=(0.2, 0.25),
            augmentation_sets=(_NO_AUG, _augment(1, rotation=0.6, brightness=0.6)),
            balancing_sets=(_NO_BAL, _OVER),
        )
    return HyperparameterSpace(
        learning_rates=(0.001, 0.005, 0.01, 0.02, 0.05),
        epochs=(20, 30, 50),
        batch_sizes=(20, 32, 64),
        validation_splits=(0.2, 0.3),
        augmentation_sets=(_NO_AUG,),
        balancing_sets=(_NO_BAL,),
    )


_SPACE_PRESETS: Final[dict[str, Callable[[], HyperparameterSpace]]] = {
    "quick_debug": quick_debug_space,
    "standard": standard_space,
    "fine_grained": fine_grained_space,
}

SPACE_PRESET_NAMES: Final[tuple[str, ...]] = (*_SPACE_PRESETS, "recommended")


def space_preset(name: str, sample_count: int | None = None) -> HyperparameterSpace:
    """Resolve a named search space; ``recommended`` needs the dataset size."""
    if name == "recommended":
        if sample_count is None:
            raise ConfigurationError(
                ErrorCode.missing_search_options, "recommended space needs a sample count"
            )
        return recommended_space(sample_count)
    build = _SPACE_PRESETS.get(name)
    if build is None:
        raise ConfigurationError(
            ErrorCode.missing_search_options, f"unknown search space preset: {name}"
        )
    return build()


class TrainingProfileType(str, Enum):
    debug = "debug"
    standard = "standard"
    high_quality = "high_quality"


@dataclass(frozen=True)
class TrainingProfile:
    """Single-run hyperparameters for one speed/quality trade-off."""

    profile_type: TrainingProfileType
    learning_rate: float
    epochs: int
    batch_size: int
    validation_split: float | None = None
    augmentation: AugmentationOptions = field(default_factory=AugmentationOptions)
    balancing: BalancingOptions = field(default_factory=BalancingOptions)


_PROFILES: Final[dict[TrainingProfileType, TrainingProfile]] = {
    TrainingProfileType.debug: TrainingProfile(
        profile_type=TrainingProfileType.debug,
        learning_rate=0.05,
        epochs=10,
        batch_size=20,
    ),
    # matches the single-run request defaults
    TrainingProfileType.standard: TrainingProfile(
        profile_type=TrainingProfileType.standard,
        learning_rate=0.01,
        epochs=50,
        batch_size=20,
    ),
    TrainingProfileType.high_quality: TrainingProfile(
        profile_type=TrainingProfileType.high_quality,
        learning_rate=0.005,
        epochs=100,
        batch_size=16,
        validation_split=0.2,
        augmentation=_augment(2, rotation=0.7, brightness=0.6),
        balancing=_OVER,
    ),
}


def training_profile(
    profile_type: TrainingProfileType = TrainingProfileType.standard,
) -> TrainingProfile:
    return _PROFILES[profile_type]
