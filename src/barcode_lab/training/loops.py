from __future__ import annotations

import time
from collections.abc import Iterable
from dataclasses import dataclass

import torch
import torch.nn.functional as F  # noqa: N812
from torch import Tensor, nn
from torch.optim.optimizer import Optimizer

from barcode_lab.errors import CancellationToken
from barcode_lab.logging import get_logger

Batches = Iterable[tuple[Tensor, Tensor]]


@dataclass(frozen=True)
class EpochStats:
    epoch: int
    mean_loss: float
    samples: int
    seconds: float


@dataclass(frozen=True)
class Predictions:
    truths: list[int]
    predicted: list[int]
    probabilities: list[list[float]]


def train_epoch(
    model: nn.Module,
    batches: Batches,
    optimizer: Optimizer,
    *,
    device: torch.device,
    epoch: int,
    cancel: CancellationToken,
) -> EpochStats:
    """Run one optimisation pass; the token is checked before every batch."""
    model.train()
    seen = 0
    weighted = 0.0
    started = time.perf_counter()
    for x, y in batches:
        cancel.raise_if_cancelled()
        optimizer.zero_grad(set_to_none=True)
        loss = F.cross_entropy(model(x.to(device)), y.to(device))
        loss.backward()
        optimizer.step()
        seen += int(y.size(0))
        weighted += float(loss.item()) * int(y.size(0))
    stats = EpochStats(
        epoch=epoch,
        mean_loss=weighted / seen if seen else 0.0,
        samples=seen,
        seconds=time.perf_counter() - started,
    )
    get_logger().debug(
        "epoch_done epoch=%d loss=%.4f samples=%d duration_s=%.2f",
        stats.epoch,
        stats.mean_loss,
        stats.samples,
        stats.seconds,
    )
    return stats


def predict(model: nn.Module, batches: Batches, device: torch.device) -> Predictions:
    model.eval()
    out = Predictions(truths=[], predicted=[], probabilities=[])
    with torch.inference_mode():
        for x, y in batches:
            p = F.softmax(model(x.to(device)), dim=1).cpu()
            out.truths.extend(int(v) for v in y.tolist())
            out.predicted.extend(int(v) for v in p.argmax(dim=1).tolist())
            out.probabilities.extend([float(v) for v in row] for row in p.tolist())
    return out
