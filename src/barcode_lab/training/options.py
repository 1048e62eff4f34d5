from __future__ import annotations

import uuid
from collections.abc import Mapping, Sequence
from dataclasses import asdict, dataclass, field
from enum import Enum
from typing import Final

from barcode_lab.errors import ConfigurationError, ErrorCode

DEFAULT_VALIDATION_SPLIT: Final[float] = 0.2
MAX_EPOCHS: Final[int] = 500
MAX_BATCH_SIZE: Final[int] = 512


class BalancingStrategy(str, Enum):
    none = "none"
    over_sample = "over_sample"
    under_sample = "under_sample"


class MetricType(str, Enum):
    accuracy = "accuracy"
    macro_f1 = "macro_f1"
    micro_f1 = "micro_f1"
    log_loss = "log_loss"

    @property
    def higher_is_better(self) -> bool:
        return self is not MetricType.log_loss


class TuningStrategy(str, Enum):
    grid_search = "grid_search"
    random_search = "random_search"


@dataclass(frozen=True)
class BalancingOptions:
    strategy: BalancingStrategy = BalancingStrategy.none
    target_per_class: int | None = None
    shuffle: bool = True
    seed: int = 42

    def to_dict(self) -> dict[str, object]:
        return {
            "strategy": self.strategy.value,
            "target_per_class": self.target_per_class,
            "shuffle": self.shuffle,
            "seed": self.seed,
        }

    @staticmethod
    def from_dict(data: Mapping[str, object]) -> BalancingOptions:
        target = data.get("target_per_class")
        return BalancingOptions(
            strategy=BalancingStrategy(str(data.get("strategy", "none"))),
            target_per_class=None if target is None else int(str(target)),
            shuffle=bool(data.get("shuffle", True)),
            seed=int(str(data.get("seed", 42))),
        )


@dataclass(frozen=True)
class AugmentationOptions:
    enabled: bool = False
    copies_per_sample: int = 1
    evaluation_copies_per_sample: int = 1
    rotation_enabled: bool = True
    rotation_angles: tuple[float, ...] = (-15.0, -10.0, -5.0, 5.0, 10.0, 15.0)
    rotation_probability: float = 0.7
    hflip_enabled: bool = True
    hflip_probability: float = 0.5
    vflip_enabled: bool = False
    vflip_probability: float = 0.2
    brightness_enabled: bool = True
    brightness_probability: float = 0.6
    brightness_lower: float = 0.85
    brightness_upper: float = 1.15
    shuffle: bool = True
    seed: int = 42

    def to_dict(self) -> dict[str, object]:
        out = asdict(self)
        out["rotation_angles"] = list(self.rotation_angles)
        return out

    @staticmethod
    def from_dict(data: Mapping[str, object]) -> AugmentationOptions:
        base = AugmentationOptions()
        kwargs: dict[str, object] = {}
        for name, default in asdict(base).items():
            if name not in data:
                continue
            raw = data[name]
            if name == "rotation_angles":
                if not isinstance(raw, list | tuple):
                    raise ConfigurationError(
                        ErrorCode.invalid_augmentation, "rotation_angles must be a list"
                    )
                kwargs[name] = tuple(float(str(a)) for a in raw)
            elif isinstance(default, bool):
                kwargs[name] = bool(raw)
            elif isinstance(default, int):
                kwargs[name] = int(str(raw))
            else:
                kwargs[name] = float(str(raw))
        return AugmentationOptions(**kwargs)  # type: ignore[arg-type]


@dataclass(frozen=True)
class HyperparameterConfiguration:
    learning_rate: float
    epochs: int
    batch_size: int
    validation_split: float | None = DEFAULT_VALIDATION_SPLIT
    augmentation: AugmentationOptions = field(default_factory=AugmentationOptions)
    balancing: BalancingOptions = field(default_factory=BalancingOptions)
    id: str = field(default_factory=lambda: uuid.uuid4().hex)

    def to_dict(self) -> dict[str, object]:
        return {
            "id": self.id,
            "learning_rate": self.learning_rate,
            "epochs": self.epochs,
            "batch_size": self.batch_size,
            "validation_split": self.validation_split,
            "augmentation": self.augmentation.to_dict(),
            "balancing": self.balancing.to_dict(),
        }


@dataclass(frozen=True)
class HyperparameterSpace:
    learning_rates: tuple[float, ...]
    epochs: tuple[int, ...]
    batch_sizes: tuple[int, ...]
    validation_splits: tuple[float, ...] | None = None
    augmentation_sets: tuple[AugmentationOptions, ...] | None = None
    balancing_sets: tuple[BalancingOptions, ...] | None = None

    def resolved_validation_splits(self) -> tuple[float, ...]:
        return self.validation_splits or (DEFAULT_VALIDATION_SPLIT,)

    def resolved_augmentation_sets(self) -> tuple[AugmentationOptions, ...]:
        return self.augmentation_sets or (AugmentationOptions(),)

    def resolved_balancing_sets(self) -> tuple[BalancingOptions, ...]:
        return self.balancing_sets or (BalancingOptions(),)

    @staticmethod
    def from_dict(data: Mapping[str, object]) -> HyperparameterSpace:
        def _seq(key: str) -> Sequence[object]:
            v = data.get(key, [])
            if not isinstance(v, list | tuple):
                raise ConfigurationError(ErrorCode.missing_search_options, f"{key} must be a list")
            return v

        def _maps(key: str) -> list[Mapping[str, object]]:
            return [m for m in _seq(key) if isinstance(m, Mapping)]

        vs = data.get("validation_splits")
        aug = _maps("augmentation_sets") if "augmentation_sets" in data else []
        bal = _maps("balancing_sets") if "balancing_sets" in data else []
        return HyperparameterSpace(
            learning_rates=tuple(float(str(v)) for v in _seq("learning_rates")),
            epochs=tuple(int(str(v)) for v in _seq("epochs")),
            batch_sizes=tuple(int(str(v)) for v in _seq("batch_sizes")),
            validation_splits=(
                tuple(float(str(v)) for v in _seq("validation_splits")) if vs is not None else None
            ),
            augmentation_sets=tuple(AugmentationOptions.from_dict(m) for m in aug) or None,
            balancing_sets=tuple(BalancingOptions.from_dict(m) for m in bal) or None,
        )


@dataclass(frozen=True)
class GridSearchOptions:
    space: HyperparameterSpace
    parallel: bool = True
    max_parallel_trials: int = 0
    early_stopping: bool = False
    metric: MetricType = MetricType.accuracy


@dataclass(frozen=True)
class RandomSearchOptions:
    space: HyperparameterSpace
    number_of_trials: int
    seed: int = 42
    parallel: bool = True
    max_parallel_trials: int = 0
    early_stopping: bool = False
    metric: MetricType = MetricType.accuracy


def validate_learning_rate(lr: float) -> None:
    if not (0.0 < lr <= 1.0):
        raise ConfigurationError(
            ErrorCode.invalid_learning_rate, f"learning rate must be in (0, 1]: {lr}"
        )


def validate_epochs(epochs: int) -> None:
    if not (1 <= epochs <= MAX_EPOCHS):
        raise ConfigurationError(ErrorCode.invalid_epochs, f"epochs must be in [1, 500]: {epochs}")


def validate_batch_size(batch_size: int) -> None:
    if not (1 <= batch_size <= MAX_BATCH_SIZE):
        raise ConfigurationError(
            ErrorCode.invalid_batch_size, f"batch size must be in [1, 512]: {batch_size}"
        )


def validate_validation_split(ratio: float | None) -> None:
    if ratio is not None and not (0.0 <= ratio <= 1.0):
        raise ConfigurationError(
            ErrorCode.invalid_validation_split, f"validation split must be in [0, 1]: {ratio}"
        )


def _check_probability(value: float, name: str) -> None:
    if not (0.0 <= value <= 1.0):
        raise ConfigurationError(
            ErrorCode.invalid_augmentation, f"{name} must be in [0, 1]: {value}"
        )


def validate_augmentation(opts: AugmentationOptions) -> None:
    if opts.copies_per_sample < 0:
        raise ConfigurationError(
            ErrorCode.invalid_augmentation, "copies_per_sample must not be negative"
        )
    if opts.evaluation_copies_per_sample < 1:
        raise ConfigurationError(
            ErrorCode.invalid_augmentation, "evaluation_copies_per_sample must be at least 1"
        )
    _check_probability(opts.rotation_probability, "rotation_probability")
    _check_probability(opts.hflip_probability, "hflip_probability")
    _check_probability(opts.vflip_probability, "vflip_probability")
    _check_probability(opts.brightness_probability, "brightness_probability")
    if opts.brightness_lower <= 0 or opts.brightness_upper <= 0:
        raise ConfigurationError(
            ErrorCode.invalid_augmentation, "brightness range must be positive"
        )
    if opts.brightness_lower > opts.brightness_upper:
        raise ConfigurationError(
            ErrorCode.invalid_augmentation, "brightness_lower must not exceed brightness_upper"
        )


def validate_balancing(opts: BalancingOptions) -> None:
    if opts.target_per_class is not None and opts.target_per_class < 0:
        raise ConfigurationError(
            ErrorCode.invalid_balancing, "target_per_class must not be negative"
        )


def validate_training_params(
    *,
    learning_rate: float,
    epochs: int,
    batch_size: int,
    validation_split: float | None,
    augmentation: AugmentationOptions,
    balancing: BalancingOptions,
) -> None:
    validate_learning_rate(learning_rate)
    validate_epochs(epochs)
    validate_batch_size(batch_size)
    validate_validation_split(validation_split)
    validate_augmentation(augmentation)
    validate_balancing(balancing)


def validate_space(space: HyperparameterSpace) -> None:
    if not space.learning_rates:
        raise ConfigurationError(ErrorCode.empty_learning_rates)
    if not space.epochs:
        raise ConfigurationError(ErrorCode.empty_epochs)
    if not space.batch_sizes:
        raise ConfigurationError(ErrorCode.empty_batch_sizes)
    for lr in space.learning_rates:
        validate_learning_rate(lr)
    for ep in space.epochs:
        validate_epochs(ep)
    for bs in space.batch_sizes:
        validate_batch_size(bs)
    for ratio in space.validation_splits or ():
        validate_validation_split(ratio)


def validate_grid_options(opts: GridSearchOptions) -> None:
    validate_space(opts.space)
    if opts.max_parallel_trials < 0:
        raise ConfigurationError(ErrorCode.invalid_max_parallel_trials)


def validate_random_options(opts: RandomSearchOptions) -> None:
    validate_space(opts.space)
    if opts.number_of_trials <= 0:
        raise ConfigurationError(ErrorCode.invalid_number_of_trials)
    if opts.max_parallel_trials < 0:
        raise ConfigurationError(ErrorCode.invalid_max_parallel_trials)
