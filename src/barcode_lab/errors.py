from __future__ import annotations

import threading
from enum import Enum
from typing import Final


class ErrorCode(str, Enum):
    train_dir_empty = "train_dir_empty"
    train_dir_not_found = "train_dir_not_found"
    output_dir_empty = "output_dir_empty"
    missing_search_options = "missing_search_options"
    unknown_strategy = "unknown_strategy"
    empty_learning_rates = "empty_learning_rates"
    empty_epochs = "empty_epochs"
    empty_batch_sizes = "empty_batch_sizes"
    invalid_learning_rate = "invalid_learning_rate"
    invalid_epochs = "invalid_epochs"
    invalid_batch_size = "invalid_batch_size"
    invalid_validation_split = "invalid_validation_split"
    invalid_number_of_trials = "invalid_number_of_trials"
    invalid_max_parallel_trials = "invalid_max_parallel_trials"
    invalid_augmentation = "invalid_augmentation"
    invalid_balancing = "invalid_balancing"
    no_training_samples = "no_training_samples"
    training_failed = "training_failed"
    invalid_transition = "invalid_transition"
    job_not_found = "job_not_found"
    cancelled = "cancelled"


_DEFAULT_MESSAGE: Final[dict[ErrorCode, str]] = {
    ErrorCode.train_dir_empty: "Training directory path must not be empty.",
    ErrorCode.train_dir_not_found: "Training directory does not exist.",
    ErrorCode.output_dir_empty: "Output directory path must not be empty.",
    ErrorCode.missing_search_options: "Search options are required for the chosen strategy.",
    ErrorCode.unknown_strategy: "Unknown tuning strategy.",
    ErrorCode.empty_learning_rates: "Learning rate candidates must not be empty.",
    ErrorCode.empty_epochs: "Epoch candidates must not be empty.",
    ErrorCode.empty_batch_sizes: "Batch size candidates must not be empty.",
    ErrorCode.invalid_learning_rate: "Learning rate must be in (0, 1].",
    ErrorCode.invalid_epochs: "Epochs must be in [1, 500].",
    ErrorCode.invalid_batch_size: "Batch size must be in [1, 512].",
    ErrorCode.invalid_validation_split: "Validation split must be in [0, 1].",
    ErrorCode.invalid_number_of_trials: "Number of trials must be greater than 0.",
    ErrorCode.invalid_max_parallel_trials: "Max parallel trials must not be negative.",
    ErrorCode.invalid_augmentation: "Invalid data augmentation options.",
    ErrorCode.invalid_balancing: "Invalid data balancing options.",
    ErrorCode.no_training_samples: "No training samples found.",
    ErrorCode.training_failed: "Training run failed.",
    ErrorCode.invalid_transition: "Invalid job state transition.",
    ErrorCode.job_not_found: "Job not found.",
    ErrorCode.cancelled: "Operation was cancelled.",
}


def default_message(code: ErrorCode) -> str:
    return _DEFAULT_MESSAGE.get(code, "")


class BarcodeLabError(Exception):
    def __init__(self, code: ErrorCode, message: str | None = None) -> None:
        msg = message if message is not None else default_message(code)
        super().__init__(msg)
        self.code = code
        self.message = msg


class ConfigurationError(BarcodeLabError):
    """Invalid request, options or search space; raised before any work starts."""


class TrainingError(BarcodeLabError):
    """Failure inside a single training run."""


class InvalidTransitionError(BarcodeLabError):
    def __init__(self, job_id: str, current: str, target: str) -> None:
        super().__init__(
            ErrorCode.invalid_transition,
            f"job {job_id}: cannot move from {current} to {target}",
        )
        self.job_id = job_id
        self.current = current
        self.target = target


class OperationCancelledError(Exception):
    """Control signal: the caller asked to stop. Never converted into a failure."""

    def __init__(self, message: str | None = None) -> None:
        super().__init__(message or default_message(ErrorCode.cancelled))


class CancellationToken:
    def __init__(self) -> None:
        self._event = threading.Event()

    def cancel(self) -> None:
        self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def raise_if_cancelled(self) -> None:
        if self._event.is_set():
            raise OperationCancelledError()

    def wait(self, timeout: float | None = None) -> bool:
        return self._event.wait(timeout)
