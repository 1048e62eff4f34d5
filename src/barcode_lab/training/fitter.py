from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
from typing import Protocol

from barcode_lab.errors import CancellationToken

from .metrics import EvaluationMetrics
from .options import AugmentationOptions, BalancingOptions
from .progress import ProgressSink


@dataclass(frozen=True)
class FitResult:
    model_path: Path
    metrics: EvaluationMetrics


class ModelFitter(Protocol):
    """Trains one model from a labelled image directory.

    Implementations write their artifacts under ``output_dir`` and raise
    ``OperationCancelledError`` when ``cancel`` fires. Any other exception is
    treated by callers as a failed run.
    """

    def fit(
        self,
        training_dir: Path,
        output_dir: Path,
        *,
        learning_rate: float,
        epochs: int,
        batch_size: int,
        validation_split: float | None,
        augmentation: AugmentationOptions,
        balancing: BalancingOptions,
        progress: ProgressSink | None,
        cancel: CancellationToken | None,
    ) -> FitResult: ...
