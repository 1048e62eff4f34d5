from __future__ import annotations

import math
import sys
from collections.abc import Mapping, Sequence
from dataclasses import dataclass, field
from typing import Final

from .options import MetricType

WORST_LOG_LOSS: Final[float] = sys.float_info.max
_EPS: Final[float] = 1e-15


@dataclass(frozen=True)
class ConfusionMatrix:
    labels: tuple[str, ...]
    # counts[i][j]: truth labels[i] predicted as labels[j]
    counts: tuple[tuple[int, ...], ...]

    @property
    def total(self) -> int:
        return sum(sum(row) for row in self.counts)

    def to_dict(self) -> dict[str, object]:
        return {"labels": list(self.labels), "counts": [list(r) for r in self.counts]}

    @staticmethod
    def from_dict(data: Mapping[str, object]) -> ConfusionMatrix:
        labels = data.get("labels", [])
        counts = data.get("counts", [])
        if not isinstance(labels, list) or not isinstance(counts, list):
            raise ValueError("confusion matrix must hold 'labels' and 'counts' lists")
        rows = tuple(tuple(int(str(v)) for v in row) for row in counts if isinstance(row, list))
        return ConfusionMatrix(labels=tuple(str(x) for x in labels), counts=rows)


@dataclass(frozen=True)
class ClassMetrics:
    label: str
    precision: float
    recall: float
    f1: float
    support: int


@dataclass(frozen=True)
class DatasetSummary:
    original_samples: int
    balanced_samples: int
    augmented_samples: int
    total_samples: int
    original_distribution: dict[str, int] = field(default_factory=dict)
    balanced_distribution: dict[str, int] = field(default_factory=dict)
    final_distribution: dict[str, int] = field(default_factory=dict)
    operation_usage: dict[str, int] = field(default_factory=dict)


@dataclass(frozen=True)
class EvaluationComparison:
    """Held-out metrics before and after re-augmenting the held-out set."""

    original_samples: int
    augmented_samples: int
    original: EvaluationMetrics
    augmented: EvaluationMetrics

    def deltas(self) -> dict[str, float]:
        o, a = self.original, self.augmented
        return {
            "accuracy": a.accuracy - o.accuracy,
            "macro_precision": a.macro_precision - o.macro_precision,
            "macro_recall": a.macro_recall - o.macro_recall,
            "macro_f1": a.macro_f1 - o.macro_f1,
            "micro_precision": a.micro_precision - o.micro_precision,
            "micro_recall": a.micro_recall - o.micro_recall,
            "micro_f1": a.micro_f1 - o.micro_f1,
        }


@dataclass(frozen=True)
class AugmentationImpact:
    augmentation_applied: bool
    balancing_applied: bool
    dataset: DatasetSummary
    evaluation: EvaluationComparison | None = None

    def to_dict(self) -> dict[str, object]:
        ds = self.dataset
        out: dict[str, object] = {
            "augmentation_applied": self.augmentation_applied,
            "balancing_applied": self.balancing_applied,
            "dataset": {
                "original_samples": ds.original_samples,
                "balanced_samples": ds.balanced_samples,
                "augmented_samples": ds.augmented_samples,
                "total_samples": ds.total_samples,
                "original_distribution": dict(ds.original_distribution),
                "balanced_distribution": dict(ds.balanced_distribution),
                "final_distribution": dict(ds.final_distribution),
                "operation_usage": dict(ds.operation_usage),
            },
            "evaluation": None,
        }
        ev = self.evaluation
        if ev is not None:
            out["evaluation"] = {
                "original_samples": ev.original_samples,
                "augmented_samples": ev.augmented_samples,
                "original": ev.original.summary(),
                "augmented": ev.augmented.summary(),
                "deltas": ev.deltas(),
            }
        return out


@dataclass(frozen=True)
class EvaluationMetrics:
    accuracy: float
    macro_precision: float
    macro_recall: float
    macro_f1: float
    micro_precision: float
    micro_recall: float
    micro_f1: float
    log_loss: float | None
    confusion: ConfusionMatrix
    per_class: tuple[ClassMetrics, ...] = ()
    impact: AugmentationImpact | None = None

    def summary(self) -> dict[str, float | None]:
        return {
            "accuracy": self.accuracy,
            "macro_precision": self.macro_precision,
            "macro_recall": self.macro_recall,
            "macro_f1": self.macro_f1,
            "micro_precision": self.micro_precision,
            "micro_recall": self.micro_recall,
            "micro_f1": self.micro_f1,
            "log_loss": self.log_loss,
        }

    def to_dict(self) -> dict[str, object]:
        out: dict[str, object] = dict(self.summary())
        out["confusion_matrix"] = self.confusion.to_dict()
        out["per_class"] = [
            {
                "label": c.label,
                "precision": c.precision,
                "recall": c.recall,
                "f1": c.f1,
                "support": c.support,
            }
            for c in self.per_class
        ]
        out["augmentation_impact"] = self.impact.to_dict() if self.impact is not None else None
        return out

    @staticmethod
    def from_dict(data: Mapping[str, object]) -> EvaluationMetrics:
        """Rebuild metrics from ``to_dict`` output.

        The augmentation impact report is informational and is not restored.
        """

        def _f(key: str) -> float:
            return float(str(data.get(key, 0.0)))

        ll = data.get("log_loss")
        cm = data.get("confusion_matrix")
        per_raw = data.get("per_class", [])
        per: list[ClassMetrics] = []
        if isinstance(per_raw, list):
            for item in per_raw:
                if isinstance(item, Mapping):
                    per.append(
                        ClassMetrics(
                            label=str(item.get("label", "")),
                            precision=float(str(item.get("precision", 0.0))),
                            recall=float(str(item.get("recall", 0.0))),
                            f1=float(str(item.get("f1", 0.0))),
                            support=int(str(item.get("support", 0))),
                        )
                    )
        return EvaluationMetrics(
            accuracy=_f("accuracy"),
            macro_precision=_f("macro_precision"),
            macro_recall=_f("macro_recall"),
            macro_f1=_f("macro_f1"),
            micro_precision=_f("micro_precision"),
            micro_recall=_f("micro_recall"),
            micro_f1=_f("micro_f1"),
            log_loss=None if ll is None else float(str(ll)),
            confusion=(
                ConfusionMatrix.from_dict(cm)
                if isinstance(cm, Mapping)
                else ConfusionMatrix(labels=(), counts=())
            ),
            per_class=tuple(per),
        )


def _safe_div(num: float, den: float) -> float:
    return num / den if den > 0 else 0.0


def _f1(p: float, r: float) -> float:
    return 2.0 * p * r / (p + r) if (p + r) > 0 else 0.0


def confusion_matrix(
    y_true: Sequence[str], y_pred: Sequence[str], labels: Sequence[str] | None = None
) -> ConfusionMatrix:
    if len(y_true) != len(y_pred):
        raise ValueError(f"length mismatch: {len(y_true)} truths vs {len(y_pred)} predictions")
    labs = tuple(labels) if labels is not None else tuple(sorted(set(y_true) | set(y_pred)))
    index = {lab: i for i, lab in enumerate(labs)}
    grid = [[0] * len(labs) for _ in labs]
    for t, p in zip(y_true, y_pred, strict=True):
        if t not in index or p not in index:
            raise ValueError(f"label outside label set: truth={t} pred={p}")
        grid[index[t]][index[p]] += 1
    return ConfusionMatrix(labels=labs, counts=tuple(tuple(r) for r in grid))


def log_loss(y_true: Sequence[str], probabilities: Sequence[Mapping[str, float]]) -> float:
    if len(y_true) != len(probabilities):
        raise ValueError("length mismatch between truths and probability rows")
    if not y_true:
        return 0.0
    total = 0.0
    for t, row in zip(y_true, probabilities, strict=True):
        p = min(1.0, max(_EPS, float(row.get(t, 0.0))))
        total += -math.log(p)
    return total / len(y_true)


def compute_metrics(
    y_true: Sequence[str],
    y_pred: Sequence[str],
    labels: Sequence[str] | None = None,
    probabilities: Sequence[Mapping[str, float]] | None = None,
) -> EvaluationMetrics:
    cm = confusion_matrix(y_true, y_pred, labels)
    n = len(cm.labels)
    per: list[ClassMetrics] = []
    tp_sum = fp_sum = fn_sum = 0
    for i, lab in enumerate(cm.labels):
        tp = cm.counts[i][i]
        fp = sum(cm.counts[r][i] for r in range(n)) - tp
        fn = sum(cm.counts[i]) - tp
        tp_sum += tp
        fp_sum += fp
        fn_sum += fn
        p = _safe_div(tp, tp + fp)
        r = _safe_div(tp, tp + fn)
        per.append(ClassMetrics(label=lab, precision=p, recall=r, f1=_f1(p, r), support=tp + fn))

    micro_p = _safe_div(tp_sum, tp_sum + fp_sum)
    micro_r = _safe_div(tp_sum, tp_sum + fn_sum)
    return EvaluationMetrics(
        accuracy=_safe_div(sum(cm.counts[i][i] for i in range(n)), cm.total),
        macro_precision=_safe_div(sum(c.precision for c in per), len(per)),
        macro_recall=_safe_div(sum(c.recall for c in per), len(per)),
        macro_f1=_safe_div(sum(c.f1 for c in per), len(per)),
        micro_precision=micro_p,
        micro_recall=micro_r,
        micro_f1=_f1(micro_p, micro_r),
        log_loss=log_loss(y_true, probabilities) if probabilities is not None else None,
        confusion=cm,
        per_class=tuple(per),
    )


def failed_metrics() -> EvaluationMetrics:
    return EvaluationMetrics(
        accuracy=0.0,
        macro_precision=0.0,
        macro_recall=0.0,
        macro_f1=0.0,
        micro_precision=0.0,
        micro_recall=0.0,
        micro_f1=0.0,
        log_loss=WORST_LOG_LOSS,
        confusion=ConfusionMatrix(labels=(), counts=()),
    )


def metric_value(metrics: EvaluationMetrics, metric: MetricType) -> float:
    if metric is MetricType.macro_f1:
        return metrics.macro_f1
    if metric is MetricType.micro_f1:
        return metrics.micro_f1
    if metric is MetricType.log_loss:
        return metrics.log_loss if metrics.log_loss is not None else WORST_LOG_LOSS
    return metrics.accuracy


def is_improvement(candidate: float, reference: float, metric: MetricType) -> bool:
    if metric.higher_is_better:
        return candidate > reference
    return candidate < reference
