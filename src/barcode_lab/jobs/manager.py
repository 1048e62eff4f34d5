from __future__ import annotations

import queue
import threading
import uuid
from dataclasses import replace
from datetime import UTC, datetime
from typing import Final

from barcode_lab.errors import (
    BarcodeLabError,
    CancellationToken,
    ConfigurationError,
    ErrorCode,
    InvalidTransitionError,
    OperationCancelledError,
)
from barcode_lab.events import training as ev
from barcode_lab.events.training import DEFAULT_EVENTS_CHANNEL, Publisher, publish_event
from barcode_lab.job_context import job_id_var
from barcode_lab.logging import get_logger, log_event
from barcode_lab.redis_io import REDIS_ERRORS

from .runner import JobOutcome, JobRunner
from .store import JobStore
from .types import INTERRUPTED_MESSAGE, Job, JobState, TrainingRequest, can_transition

_DISPATCH_POLL_S: Final[float] = 0.5
_MAX_CONCURRENT_JOBS: Final[int] = 64


class _JobProgress:
    def __init__(self, manager: TrainingJobManager, job_id: str) -> None:
        self._manager = manager
        self._job_id = job_id

    def report(self, fraction: float, message: str) -> None:
        self._manager.update_progress(self._job_id, fraction, message)


def _summarize(exc: BaseException) -> str:
    msg = str(exc)
    name = exc.__class__.__name__
    return f"{name}: {msg[:300]}" if msg else name


class TrainingJobManager:
    """Queues training jobs and runs them on a bounded number of slots.

    The snapshot map is the source of truth for status reads; every change
    swaps in a new immutable ``Job`` under ``_lock`` and is then written
    through to the store under ``_write_lock``. Readers only take ``_lock``,
    so a slow store never delays ``get_status``. A failed write is logged and
    the in-memory state stays authoritative.
    """

    def __init__(
        self,
        store: JobStore,
        runner: JobRunner,
        *,
        max_concurrent_jobs: int = 1,
        publisher: Publisher | None = None,
        channel: str = DEFAULT_EVENTS_CHANNEL,
        recover: bool = True,
    ) -> None:
        if not (1 <= max_concurrent_jobs <= _MAX_CONCURRENT_JOBS):
            raise ValueError(f"max_concurrent_jobs must be in [1, 64]: {max_concurrent_jobs}")
        self._store = store
        self._runner = runner
        self._publisher = publisher
        self._channel = channel
        self._max_slots = int(max_concurrent_jobs)
        self._slots = threading.Semaphore(self._max_slots)
        self._in_use = 0
        self._lock = threading.Lock()
        # orders store writes; always taken before _lock
        self._write_lock = threading.Lock()
        self._jobs: dict[str, Job] = {j.job_id: j for j in store.all()}
        self._tokens: dict[str, CancellationToken] = {}
        self._queue: queue.Queue[str] = queue.Queue()
        self._stopping = threading.Event()
        self._workers: list[threading.Thread] = []
        if recover:
            self.recover_interrupted()

    # --- slots ---

    @property
    def max_concurrent_jobs(self) -> int:
        return self._max_slots

    @property
    def available_slots(self) -> int:
        with self._lock:
            return self._max_slots - self._in_use

    def acquire_slot(self, timeout: float | None = None) -> bool:
        if not self._slots.acquire(timeout=timeout):
            return False
        with self._lock:
            self._in_use += 1
        return True

    def release_slot(self) -> None:
        with self._lock:
            if self._in_use <= 0:
                raise RuntimeError("release_slot called without a held slot")
            self._in_use -= 1
        self._slots.release()

    # --- snapshots ---

    def _ctx(self, job_id: str) -> ev.Context:
        return ev.Context(job_id=job_id)

    def _persist(self, job: Job) -> None:
        # caller holds _write_lock
        try:
            self._store.update(job)
        except REDIS_ERRORS as exc:
            get_logger().error(
                "job_store_write_failed job_id=%s state=%s error=%s",
                job.job_id,
                job.state.value,
                exc,
            )

    def _replace(self, job_id: str, **changes: object) -> Job:
        with self._write_lock:
            with self._lock:
                current = self._jobs.get(job_id)
                if current is None:
                    raise BarcodeLabError(ErrorCode.job_not_found, f"job not found: {job_id}")
                target = changes.get("state")
                if isinstance(target, JobState) and not can_transition(current.state, target):
                    raise InvalidTransitionError(job_id, current.state.value, target.value)
                updated = replace(current, **changes)  # type: ignore[arg-type]
                self._jobs[job_id] = updated
            self._persist(updated)
        if updated.state is not current.state:
            log_event("job_state", {"job_id": job_id, "state": updated.state.value})
        return updated

    def transition(self, job_id: str, target: JobState, **changes: object) -> Job:
        """Move a job to ``target``; raises ``InvalidTransitionError`` for illegal moves."""
        return self._replace(job_id, state=target, **changes)

    def update_progress(self, job_id: str, fraction: float, message: str) -> Job | None:
        with self._write_lock:
            with self._lock:
                current = self._jobs.get(job_id)
                if current is None or current.state is not JobState.running:
                    return None
                value = max(current.progress, max(0.0, min(1.0, float(fraction))))
                updated = replace(current, progress=value)
                self._jobs[job_id] = updated
            self._persist(updated)
        get_logger().debug("job_progress job_id=%s progress=%.3f msg=%s", job_id, value, message)
        publish_event(
            self._publisher,
            self._channel,
            ev.progress(self._ctx(job_id), value=value, message=message),
        )
        return updated

    # --- public API ---

    def submit(self, request: TrainingRequest) -> str:
        request.validate()
        job = Job(job_id=uuid.uuid4().hex, request=request)
        with self._write_lock:
            # a store that cannot record the job rejects the submission
            self._store.add(job)
            with self._lock:
                self._jobs[job.job_id] = job
                self._tokens[job.job_id] = CancellationToken()
        self._queue.put(job.job_id)
        get_logger().info(
            "job_submitted job_id=%s mode=%s training_dir=%s",
            job.job_id,
            request.mode,
            request.training_dir,
        )
        return job.job_id

    def get_status(self, job_id: str) -> Job | None:
        with self._lock:
            return self._jobs.get(job_id)

    def list_jobs(self) -> list[Job]:
        with self._lock:
            jobs = list(self._jobs.values())
        return sorted(jobs, key=lambda j: j.created_at)

    def cancel(self, job_id: str) -> bool:
        updated: Job | None = None
        with self._write_lock:
            with self._lock:
                job = self._jobs.get(job_id)
                if job is None or job.state.is_terminal:
                    return False
                was_queued = job.state is JobState.queued
                token = self._tokens.pop(job_id, None) if was_queued else self._tokens.get(job_id)
                if token is not None:
                    token.cancel()
                if was_queued:
                    # checked and swapped under one lock so a worker cannot start it meanwhile
                    updated = replace(
                        job, state=JobState.cancelled, finished_at=datetime.now(UTC)
                    )
                    self._jobs[job_id] = updated
            if updated is not None:
                self._persist(updated)
        get_logger().info("job_cancel_requested job_id=%s state=%s", job_id, job.state.value)
        if was_queued:
            log_event("job_state", {"job_id": job_id, "state": JobState.cancelled.value})
            publish_event(self._publisher, self._channel, ev.cancelled(self._ctx(job_id)))
        return True

    def recover_interrupted(self) -> list[str]:
        """Fail every job a previous process left queued or running."""
        now = datetime.now(UTC)
        recovered: list[str] = []
        stale = self._store.by_state(JobState.queued) + self._store.by_state(JobState.running)
        for job in stale:
            failed = replace(
                job,
                state=JobState.failed,
                error=INTERRUPTED_MESSAGE,
                finished_at=now,
            )
            with self._write_lock:
                with self._lock:
                    if job.job_id in self._tokens:
                        # submitted by this process; not stale
                        continue
                    self._jobs[job.job_id] = failed
                self._persist(failed)
            recovered.append(job.job_id)
            get_logger().warning(
                "job_recovered_as_failed job_id=%s previous_state=%s", job.job_id, job.state.value
            )
            publish_event(
                self._publisher,
                self._channel,
                ev.failed(self._ctx(job.job_id), error_kind="system", message=INTERRUPTED_MESSAGE),
            )
        return recovered

    # --- execution ---

    def run_next(self, block: bool = True, timeout: float | None = None) -> str | None:
        """Take one job off the queue and run it in the calling thread."""
        while True:
            try:
                job_id = self._queue.get(block=block, timeout=timeout)
            except queue.Empty:
                return None
            try:
                job = self.get_status(job_id)
                if job is None or job.state is not JobState.queued:
                    continue
                self.acquire_slot()
                try:
                    self._execute(job_id)
                finally:
                    self.release_slot()
                return job_id
            finally:
                self._queue.task_done()

    def _execute(self, job_id: str) -> None:
        log = get_logger()
        ctx_token = job_id_var.set(job_id)
        try:
            with self._lock:
                cancel = self._tokens.setdefault(job_id, CancellationToken())
            try:
                job = self.transition(
                    job_id, JobState.running, started_at=datetime.now(UTC), progress=0.0
                )
            except InvalidTransitionError:
                # cancelled while waiting for a slot
                return
            req = job.request
            publish_event(
                self._publisher,
                self._channel,
                ev.started(
                    self._ctx(job_id),
                    mode=req.mode,
                    training_dir=str(req.training_dir),
                    epochs=req.epochs,
                    batch_size=req.batch_size,
                    learning_rate=req.learning_rate,
                ),
            )
            try:
                outcome = self._runner.run(req, _JobProgress(self, job_id), cancel)
            except OperationCancelledError:
                self.transition(job_id, JobState.cancelled, finished_at=datetime.now(UTC))
                publish_event(self._publisher, self._channel, ev.cancelled(self._ctx(job_id)))
                log.info("job_cancelled job_id=%s", job_id)
                return
            except ConfigurationError as exc:
                self._fail(job_id, "user", exc.message)
                return
            except Exception as exc:
                log.error("job_failed job_id=%s error=%s", job_id, exc, exc_info=True)
                self._fail(job_id, "system", _summarize(exc))
                return
            self._finish(job_id, outcome)
        finally:
            job_id_var.reset(ctx_token)
            with self._lock:
                self._tokens.pop(job_id, None)

    def _fail(self, job_id: str, kind: ev.ErrorKind, message: str, **changes: object) -> None:
        self.transition(
            job_id, JobState.failed, error=message, finished_at=datetime.now(UTC), **changes
        )
        publish_event(
            self._publisher,
            self._channel,
            ev.failed(self._ctx(job_id), error_kind=kind, message=message),
        )

    def _finish(self, job_id: str, outcome: JobOutcome) -> None:
        tuning = outcome.tuning.to_dict() if outcome.tuning is not None else None
        if outcome.error is not None or outcome.metrics is None:
            message = outcome.error or "training produced no metrics"
            self._fail(job_id, "system", message, tuning=tuning)
            return
        model_path = str(outcome.model_path) if outcome.model_path is not None else None
        self.transition(
            job_id,
            JobState.completed,
            progress=1.0,
            finished_at=datetime.now(UTC),
            metrics=outcome.metrics,
            model_path=model_path,
            tuning=tuning,
        )
        publish_event(
            self._publisher,
            self._channel,
            ev.completed(
                self._ctx(job_id),
                accuracy=outcome.metrics.accuracy,
                macro_f1=outcome.metrics.macro_f1,
                model_path=model_path,
            ),
        )
        get_logger().info(
            "job_completed job_id=%s accuracy=%.4f", job_id, outcome.metrics.accuracy
        )

    # --- background dispatch ---

    def _dispatch_loop(self) -> None:
        while not self._stopping.is_set():
            try:
                self.run_next(block=True, timeout=_DISPATCH_POLL_S)
            except Exception:
                # the worker outlives any single job
                get_logger().exception("job_dispatch_error")

    def start(self, workers: int | None = None) -> None:
        n = self._max_slots if workers is None else max(1, int(workers))
        self._stopping.clear()
        for i in range(n):
            t = threading.Thread(
                target=self._dispatch_loop, name=f"barcode-lab-job-{i}", daemon=True
            )
            t.start()
            self._workers.append(t)
        get_logger().info("job_dispatch_started workers=%d slots=%d", n, self._max_slots)

    def shutdown(self, wait: bool = True, cancel_running: bool = False) -> None:
        self._stopping.set()
        if cancel_running:
            with self._lock:
                tokens = list(self._tokens.values())
            for token in tokens:
                token.cancel()
        if wait:
            for t in self._workers:
                t.join()
        self._workers = []

    def wait_idle(self, timeout: float | None = None) -> bool:
        """Block until every submitted job has been taken off the queue and finished.

        Returns ``False`` when ``timeout`` elapses first.
        """
        q = self._queue
        with q.all_tasks_done:
            return q.all_tasks_done.wait_for(lambda: q.unfinished_tasks == 0, timeout)
