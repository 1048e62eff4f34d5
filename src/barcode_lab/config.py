from __future__ import annotations

import os
import tomllib
from dataclasses import dataclass, replace
from pathlib import Path
from typing import Final

_DEFAULT_CONFIG_PATH: Final[Path] = Path("config/barcode_lab.toml")


@dataclass(frozen=True)
class AppConfig:
    data_root: Path = Path("/data/training")
    artifacts_root: Path = Path("/data/models")


@dataclass(frozen=True)
class TrainingConfig:
    max_concurrent_jobs: int = 1
    # 0 means derive from available CPU cores
    max_parallel_trials: int = 0
    device: str = "cpu"


@dataclass(frozen=True)
class RedisConfig:
    # Empty string disables the Redis job store and event publisher
    url: str = ""
    jobs_key: str = "barcode_lab:jobs"
    events_channel: str = "barcode_lab:events"


@dataclass(frozen=True)
class Settings:
    app: AppConfig
    training: TrainingConfig
    redis: RedisConfig

    @staticmethod
    def _toml_path() -> Path:
        env_val = os.getenv("BARCODE_LAB_CONFIG")
        if env_val:
            return Path(env_val)
        return _DEFAULT_CONFIG_PATH

    @classmethod
    def load(cls) -> Settings:
        # Env first, then TOML overrides when the file exists.
        base = cls(
            app=_load_app_from_env(),
            training=_load_training_from_env(),
            redis=_load_redis_from_env(),
        )
        cfg_path = cls._toml_path()
        if not cfg_path.exists():
            return base
        try:
            raw: object = tomllib.loads(cfg_path.read_text(encoding="utf-8"))
        except OSError as exc:
            raise RuntimeError(f"Failed to read config TOML: {cfg_path}") from exc
        except tomllib.TOMLDecodeError as exc:
            raise RuntimeError(f"Invalid TOML config: {cfg_path}") from exc
        return cls(
            app=_merge_app(base.app, _toml_table(raw, "app")),
            training=_merge_training(base.training, _toml_table(raw, "training")),
            redis=_merge_redis(base.redis, _toml_table(raw, "redis")),
        )


def _load_app_from_env() -> AppConfig:
    a = AppConfig()
    dr = os.getenv("APP__DATA_ROOT")
    ar = os.getenv("APP__ARTIFACTS_ROOT")
    if dr:
        a = replace(a, data_root=Path(dr))
    if ar:
        a = replace(a, artifacts_root=Path(ar))
    return a


def _load_training_from_env() -> TrainingConfig:
    t = TrainingConfig()
    mc = os.getenv("TRAINING__MAX_CONCURRENT_JOBS")
    mp = os.getenv("TRAINING__MAX_PARALLEL_TRIALS")
    dev = os.getenv("TRAINING__DEVICE")
    if mc is not None and mc.isdigit():
        t = replace(t, max_concurrent_jobs=_check_concurrency(int(mc)))
    if mp is not None and mp.isdigit():
        t = replace(t, max_parallel_trials=int(mp))
    if dev:
        t = replace(t, device=dev)
    return t


def _load_redis_from_env() -> RedisConfig:
    r = RedisConfig()
    url = os.getenv("REDIS__URL") or os.getenv("REDIS_URL")
    key = os.getenv("REDIS__JOBS_KEY")
    ch = os.getenv("REDIS__EVENTS_CHANNEL")
    if url is not None:
        r = replace(r, url=url)
    if key:
        r = replace(r, jobs_key=key)
    if ch:
        r = replace(r, events_channel=ch)
    return r


def _check_concurrency(value: int) -> int:
    if not (1 <= value <= 64):
        raise RuntimeError("max_concurrent_jobs out of range")
    return value


def _merge_app(base: AppConfig, data: dict[str, object]) -> AppConfig:
    out = base
    if "data_root" in data:
        out = replace(out, data_root=Path(str(data["data_root"])))
    if "artifacts_root" in data:
        out = replace(out, artifacts_root=Path(str(data["artifacts_root"])))
    return out


def _merge_training(base: TrainingConfig, data: dict[str, object]) -> TrainingConfig:
    out = base
    if "max_concurrent_jobs" in data:
        out = replace(
            out, max_concurrent_jobs=_check_concurrency(int(str(data["max_concurrent_jobs"])))
        )
    if "max_parallel_trials" in data:
        mp = int(str(data["max_parallel_trials"]))
        if mp < 0:
            raise RuntimeError("max_parallel_trials must not be negative")
        out = replace(out, max_parallel_trials=mp)
    if "device" in data:
        out = replace(out, device=str(data["device"]))
    return out


def _merge_redis(base: RedisConfig, data: dict[str, object]) -> RedisConfig:
    out = base
    if "url" in data:
        out = replace(out, url=str(data["url"]))
    if "jobs_key" in data:
        out = replace(out, jobs_key=str(data["jobs_key"]))
    if "events_channel" in data:
        out = replace(out, events_channel=str(data["events_channel"]))
    enabled = data.get("enabled")
    if isinstance(enabled, bool) and not enabled:
        out = replace(out, url="")
    return out


def _toml_table(raw: object, key: str) -> dict[str, object]:
    if isinstance(raw, dict):
        tab: object = raw.get(key, {})
        if isinstance(tab, dict):
            return {str(k): v for k, v in tab.items()}
    return {}
