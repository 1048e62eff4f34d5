from __future__ import annotations

import threading
from collections.abc import Sequence
from dataclasses import replace
from pathlib import Path
from typing import Final

import torch
from torch.optim import AdamW

from barcode_lab.errors import CancellationToken, ErrorCode, TrainingError
from barcode_lab.logging import get_logger

from .artifacts import new_run_id, write_artifacts
from .augment import augment_samples
from .balance import balance_samples
from .dataset import IMAGE_SIZE, make_loader, stratified_split
from .fitter import FitResult
from .loops import predict, train_epoch
from .metrics import (
    AugmentationImpact,
    DatasetSummary,
    EvaluationComparison,
    EvaluationMetrics,
    compute_metrics,
)
from .model import BarcodeNet
from .options import (
    DEFAULT_VALIDATION_SPLIT,
    AugmentationOptions,
    BalancingOptions,
    BalancingStrategy,
)
from .progress import NullProgress, ProgressSink, ScaledProgress, emit_progress
from .samples import Sample, label_distribution, scan_training_dir

_FIT_START: Final[float] = 0.2
_FIT_END: Final[float] = 0.9
_WEIGHT_DECAY: Final[float] = 1e-2

# model init draws from torch's global generator
_INIT_LOCK = threading.Lock()


class TorchModelFitter:
    """Default ``ModelFitter``: a small CNN trained with AdamW on CPU or CUDA."""

    def __init__(self, *, device: str = "cpu", threads: int = 0, seed: int = 42) -> None:
        self._device = torch.device(device)
        self._threads = int(threads)
        self._seed = int(seed)

    def _evaluate(
        self,
        model: BarcodeNet,
        samples: Sequence[Sample],
        labels: list[str],
        index: dict[str, int],
        batch_size: int,
    ) -> EvaluationMetrics:
        loader = make_loader(samples, index, batch_size=batch_size, shuffle=False, seed=self._seed)
        pred = predict(model, loader, self._device)
        rows = [{labels[i]: p for i, p in enumerate(row)} for row in pred.probabilities]
        return compute_metrics(
            [labels[i] for i in pred.truths],
            [labels[i] for i in pred.predicted],
            labels=labels,
            probabilities=rows,
        )

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
    ) -> FitResult:
        log = get_logger()
        token = cancel or CancellationToken()
        if self._threads > 0:
            torch.set_num_threads(self._threads)

        samples = scan_training_dir(training_dir)
        if not samples:
            raise TrainingError(ErrorCode.no_training_samples, f"no images in {training_dir}")
        labels = sorted({s.label for s in samples})
        index = {lab: i for i, lab in enumerate(labels)}
        emit_progress(progress, 0.05, f"scanned {len(samples)} samples in {len(labels)} classes")
        token.raise_if_cancelled()

        ratio = DEFAULT_VALIDATION_SPLIT if validation_split is None else float(validation_split)
        split = stratified_split(samples, ratio, self._seed)
        balanced = balance_samples(split.train, balancing)
        emit_progress(progress, 0.1, f"balanced to {len(balanced.samples)} samples")
        token.raise_if_cancelled()

        aug = augment_samples(
            balanced.samples, augmentation, output_dir / "augmented", cancel=token
        )
        train_set = balanced.samples + aug.samples
        emit_progress(progress, _FIT_START, f"augmented {aug.generated} samples")

        with _INIT_LOCK:
            torch.manual_seed(self._seed)
            model = BarcodeNet(len(labels)).to(self._device)
        optimizer = AdamW(model.parameters(), lr=learning_rate, weight_decay=_WEIGHT_DECAY)
        loader = make_loader(
            train_set, index, batch_size=batch_size, shuffle=True, seed=self._seed
        )
        log.info(
            "fit_started classes=%d train=%d validation=%d epochs=%d batch_size=%d lr=%s",
            len(labels),
            len(train_set),
            len(split.validation),
            epochs,
            batch_size,
            learning_rate,
        )
        epoch_progress = ScaledProgress(progress or NullProgress(), _FIT_START, _FIT_END)
        for ep in range(1, epochs + 1):
            token.raise_if_cancelled()
            stats = train_epoch(
                model, loader, optimizer, device=self._device, epoch=ep, cancel=token
            )
            epoch_progress.report(ep / epochs, f"epoch {ep}/{epochs} loss={stats.mean_loss:.4f}")
        token.raise_if_cancelled()

        # an empty hold-out falls back to scoring the training split
        held_out = split.validation or split.train
        metrics = self._evaluate(model, held_out, labels, index, batch_size)
        comparison: EvaluationComparison | None = None
        if augmentation.enabled and split.validation:
            eval_aug = augment_samples(
                split.validation,
                augmentation,
                output_dir / "evaluation_augmented",
                copies_override=augmentation.evaluation_copies_per_sample,
                cancel=token,
            )
            if eval_aug.samples:
                comparison = EvaluationComparison(
                    original_samples=len(split.validation),
                    augmented_samples=eval_aug.generated,
                    original=metrics,
                    augmented=self._evaluate(model, eval_aug.samples, labels, index, batch_size),
                )
        impact = AugmentationImpact(
            augmentation_applied=aug.generated > 0,
            balancing_applied=balancing.strategy is not BalancingStrategy.none,
            dataset=DatasetSummary(
                original_samples=len(split.train),
                balanced_samples=len(balanced.samples),
                augmented_samples=aug.generated,
                total_samples=len(train_set),
                original_distribution=label_distribution(split.train),
                balanced_distribution=balanced.distribution,
                final_distribution=label_distribution(train_set),
                operation_usage=dict(aug.usage),
            ),
            evaluation=comparison,
        )
        metrics = replace(metrics, impact=impact)

        run_id = new_run_id()
        model_path = write_artifacts(
            out_dir=output_dir,
            run_id=run_id,
            model_state=model.state_dict(),
            labels=labels,
            image_size=IMAGE_SIZE,
            params={
                "learning_rate": float(learning_rate),
                "epochs": int(epochs),
                "batch_size": int(batch_size),
                "validation_split": ratio,
                "device": str(self._device),
                "seed": self._seed,
                "augmentation": augmentation.to_dict(),
                "balancing": balancing.to_dict(),
            },
            metrics=metrics,
        )
        emit_progress(progress, 1.0, f"evaluation done accuracy={metrics.accuracy:.4f}")
        log.info(
            "fit_completed run_id=%s accuracy=%.4f macro_f1=%.4f",
            run_id,
            metrics.accuracy,
            metrics.macro_f1,
        )
        return FitResult(model_path=model_path, metrics=metrics)
