from __future__ import annotations

import json
from dataclasses import dataclass
from datetime import UTC, datetime
from typing import Final, Literal, Protocol, TypedDict

from barcode_lab.logging import get_logger
from barcode_lab.redis_io import REDIS_ERRORS, RedisFactory, redis_from_url

DEFAULT_EVENTS_CHANNEL: Final[str] = "barcode_lab:events"


class StartedV1(TypedDict):
    type: Literal["barcode.train.started.v1"]
    job_id: str
    ts: str
    mode: Literal["single", "grid_search", "random_search"]
    training_dir: str
    epochs: int
    batch_size: int
    learning_rate: float


class ProgressV1(TypedDict):
    type: Literal["barcode.train.progress.v1"]
    job_id: str
    ts: str
    progress: float
    message: str


class CompletedV1(TypedDict):
    type: Literal["barcode.train.completed.v1"]
    job_id: str
    ts: str
    accuracy: float | None
    macro_f1: float | None
    model_path: str | None


class FailedV1(TypedDict):
    type: Literal["barcode.train.failed.v1"]
    job_id: str
    ts: str
    error_kind: ErrorKind
    message: str


class CancelledV1(TypedDict):
    type: Literal["barcode.train.cancelled.v1"]
    job_id: str
    ts: str


ErrorKind = Literal["user", "system"]

EventV1 = StartedV1 | ProgressV1 | CompletedV1 | FailedV1 | CancelledV1


def encode_event(ev: EventV1) -> str:
    return json.dumps(ev, separators=(",", ":"))


def _ts() -> str:
    return datetime.now(UTC).isoformat()


@dataclass(frozen=True)
class Context:
    job_id: str


def started(
    ctx: Context,
    *,
    mode: Literal["single", "grid_search", "random_search"],
    training_dir: str,
    epochs: int,
    batch_size: int,
    learning_rate: float,
) -> StartedV1:
    return {
        "type": "barcode.train.started.v1",
        "job_id": ctx.job_id,
        "ts": _ts(),
        "mode": mode,
        "training_dir": str(training_dir),
        "epochs": int(epochs),
        "batch_size": int(batch_size),
        "learning_rate": float(learning_rate),
    }


def progress(ctx: Context, *, value: float, message: str) -> ProgressV1:
    return {
        "type": "barcode.train.progress.v1",
        "job_id": ctx.job_id,
        "ts": _ts(),
        "progress": float(value),
        "message": message,
    }


def completed(
    ctx: Context, *, accuracy: float | None, macro_f1: float | None, model_path: str | None
) -> CompletedV1:
    return {
        "type": "barcode.train.completed.v1",
        "job_id": ctx.job_id,
        "ts": _ts(),
        "accuracy": float(accuracy) if accuracy is not None else None,
        "macro_f1": float(macro_f1) if macro_f1 is not None else None,
        "model_path": model_path,
    }


def failed(ctx: Context, *, error_kind: ErrorKind, message: str) -> FailedV1:
    return {
        "type": "barcode.train.failed.v1",
        "job_id": ctx.job_id,
        "ts": _ts(),
        "error_kind": error_kind,
        "message": message,
    }


def cancelled(ctx: Context) -> CancelledV1:
    return {"type": "barcode.train.cancelled.v1", "job_id": ctx.job_id, "ts": _ts()}


class Publisher(Protocol):
    def publish(self, channel: str, message: str) -> int: ...


class RedisPublisher:
    def __init__(self, url: str, *, redis_factory: RedisFactory | None = None) -> None:
        self._url = url
        self._redis_factory: RedisFactory = redis_factory or redis_from_url

    def publish(self, channel: str, message: str) -> int:
        try:
            client = self._redis_factory(self._url)
            out_val: int = int(client.publish(channel, message))
            return out_val
        except REDIS_ERRORS as e:
            get_logger().error("redis_publish_error error=%s", str(e))
            raise OSError(str(e)) from e


def publish_event(pub: Publisher | None, channel: str, event: EventV1) -> None:
    if pub is None:
        return
    try:
        pub.publish(channel, encode_event(event))
    except (OSError, ValueError):
        get_logger().debug("training_event_publish_failed type=%s", event["type"])
