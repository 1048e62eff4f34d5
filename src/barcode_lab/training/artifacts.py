from __future__ import annotations

import json
import secrets
from collections.abc import Mapping
from datetime import UTC, datetime
from pathlib import Path

import torch
from torch import Tensor

from barcode_lab.logging import get_logger

from .metrics import EvaluationMetrics


def new_run_id() -> str:
    run_ts = datetime.now(UTC).strftime("%Y%m%d-%H%M%S")
    return f"{run_ts}-{secrets.token_hex(3)}"


def write_artifacts(
    *,
    out_dir: Path,
    run_id: str,
    model_state: Mapping[str, Tensor],
    labels: list[str],
    image_size: int,
    params: Mapping[str, object],
    metrics: EvaluationMetrics,
) -> Path:
    """Save ``model-<run_id>.pt`` and a ``manifest.json`` describing it.

    Returns the model path.
    """
    out_dir.mkdir(parents=True, exist_ok=True)
    model_path = out_dir / f"model-{run_id}.pt"
    torch.save(dict(model_state), model_path.as_posix())
    size = model_path.stat().st_size
    get_logger().info(f"model_saved run_id={run_id} size_bytes={size}")
    manifest = {
        "schema_version": "v1",
        "arch": "barcode_net",
        "run_id": run_id,
        "created_at": datetime.now(UTC).isoformat(),
        "labels": list(labels),
        "n_classes": len(labels),
        "image_size": int(image_size),
        "model_file": model_path.name,
        "params": dict(params),
        "metrics": metrics.summary(),
    }
    (out_dir / "manifest.json").write_text(json.dumps(manifest, indent=2), encoding="utf-8")
    return model_path
