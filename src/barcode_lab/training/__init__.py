from __future__ import annotations

from .fitter import FitResult, ModelFitter
from .metrics import EvaluationMetrics, compute_metrics
from .options import (
    AugmentationOptions,
    BalancingOptions,
    BalancingStrategy,
    GridSearchOptions,
    HyperparameterConfiguration,
    HyperparameterSpace,
    MetricType,
    RandomSearchOptions,
    TuningStrategy,
)
from .recommendations import (
    TrainingProfile,
    TrainingProfileType,
    recommended_space,
    training_profile,
)
from .trial import TrialExecutor, TrialResult
from .tuning import HyperparameterTuner, TuningResult, TuningState

__all__ = [
    "AugmentationOptions",
    "BalancingOptions",
    "BalancingStrategy",
    "EvaluationMetrics",
    "FitResult",
    "GridSearchOptions",
    "HyperparameterConfiguration",
    "HyperparameterSpace",
    "HyperparameterTuner",
    "MetricType",
    "ModelFitter",
    "RandomSearchOptions",
    "TrainingProfile",
    "TrainingProfileType",
    "TrialExecutor",
    "TrialResult",
    "TuningResult",
    "TuningState",
    "TuningStrategy",
    "compute_metrics",
    "recommended_space",
    "training_profile",
]
