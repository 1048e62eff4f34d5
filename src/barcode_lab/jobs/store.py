from __future__ import annotations

import json
import threading
from typing import Protocol

from barcode_lab.logging import get_logger
from barcode_lab.redis_io import REDIS_ERRORS, RedisFactory, redis_from_url

from .types import Job, JobState


class JobStore(Protocol):
    def add(self, job: Job) -> None: ...
    def update(self, job: Job) -> None: ...
    def get(self, job_id: str) -> Job | None: ...
    def by_state(self, state: JobState) -> list[Job]: ...
    def all(self) -> list[Job]: ...


class InMemoryJobStore:
    def __init__(self) -> None:
        self._jobs: dict[str, Job] = {}
        self._lock = threading.Lock()

    def add(self, job: Job) -> None:
        with self._lock:
            if job.job_id in self._jobs:
                raise ValueError(f"duplicate job id: {job.job_id}")
            self._jobs[job.job_id] = job

    def update(self, job: Job) -> None:
        with self._lock:
            if job.job_id not in self._jobs:
                raise KeyError(job.job_id)
            self._jobs[job.job_id] = job

    def get(self, job_id: str) -> Job | None:
        with self._lock:
            return self._jobs.get(job_id)

    def by_state(self, state: JobState) -> list[Job]:
        with self._lock:
            return [j for j in self._jobs.values() if j.state is state]

    def all(self) -> list[Job]:
        with self._lock:
            return sorted(self._jobs.values(), key=lambda j: j.created_at)


def _text(raw: str | bytes) -> str:
    return raw.decode("utf-8") if isinstance(raw, bytes) else raw


class RedisJobStore:
    """Jobs as JSON documents in one Redis hash, one field per job id."""

    def __init__(
        self, url: str, *, key: str, redis_factory: RedisFactory | None = None
    ) -> None:
        self._url = url
        self._key = key
        self._redis_factory: RedisFactory = redis_factory or redis_from_url

    def _write(self, job: Job) -> None:
        try:
            client = self._redis_factory(self._url, decode_responses=True)
            client.hset(self._key, job.job_id, json.dumps(job.to_dict(), separators=(",", ":")))
        except REDIS_ERRORS as e:
            get_logger().error("redis_job_write_error job_id=%s error=%s", job.job_id, str(e))
            raise

    def add(self, job: Job) -> None:
        self._write(job)

    def update(self, job: Job) -> None:
        self._write(job)

    def get(self, job_id: str) -> Job | None:
        try:
            client = self._redis_factory(self._url, decode_responses=True)
            raw = client.hget(self._key, job_id)
        except REDIS_ERRORS as e:
            get_logger().error("redis_job_read_error job_id=%s error=%s", job_id, str(e))
            raise
        if raw is None:
            return None
        return Job.from_dict(json.loads(_text(raw)))

    def all(self) -> list[Job]:
        try:
            client = self._redis_factory(self._url, decode_responses=True)
            raw = client.hgetall(self._key)
        except REDIS_ERRORS as e:
            get_logger().error("redis_job_list_error error=%s", str(e))
            raise
        jobs: list[Job] = []
        for field_name, doc in raw.items():
            try:
                jobs.append(Job.from_dict(json.loads(_text(doc))))
            except (ValueError, KeyError) as e:
                get_logger().warning(
                    "redis_job_decode_error job_id=%s error=%s", _text(field_name), str(e)
                )
        return sorted(jobs, key=lambda j: j.created_at)

    def by_state(self, state: JobState) -> list[Job]:
        return [j for j in self.all() if j.state is state]
