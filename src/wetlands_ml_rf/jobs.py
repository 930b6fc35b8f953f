"""Asynchronous job submission for long-running evaluations and exports.

Jobs are fire and forget: once submitted they run to completion. Callers keep
the returned :class:`Job` (or its ``job_id``) to poll status or wait.
"""

from __future__ import annotations

import logging
import time
import uuid
from concurrent.futures import Future, ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeout
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional, TypeVar

from .progress import format_duration

LOGGER = logging.getLogger(__name__)

T = TypeVar("T")

PENDING = "PENDING"
RUNNING = "RUNNING"
COMPLETED = "COMPLETED"
FAILED = "FAILED"


@dataclass
class Job:
    job_id: str
    name: str
    future: Future
    submitted_at: float = field(default_factory=time.monotonic)

    @property
    def status(self) -> str:
        if self.future.running():
            return RUNNING
        if not self.future.done():
            return PENDING
        return FAILED if self.future.exception() is not None else COMPLETED

    @property
    def done(self) -> bool:
        return self.future.done()

    def wait(self, timeout: Optional[float] = None) -> Any:
        """Block until the job finishes and return its result (re-raising its error)."""
        return self.future.result(timeout=timeout)


class JobRunner:
    """Thread pool that runs submitted jobs and tracks them by identifier.

    Jobs computing dask graphs under a LoggingProgressBar run one at a time.
    """

    def __init__(self, max_workers: int = 2) -> None:
        self._executor = ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="wetlands-job")
        self._jobs: Dict[str, Job] = {}

    def __enter__(self) -> "JobRunner":
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        self.shutdown(wait=True)

    def submit(self, name: str, fn: Callable[..., T], *args: Any, **kwargs: Any) -> Job:
        job_id = uuid.uuid4().hex[:12]

        def _run() -> T:
            started = time.perf_counter()
            LOGGER.info("Job %s (%s) started", job_id, name)
            try:
                result = fn(*args, **kwargs)
            except Exception:
                LOGGER.exception("Job %s (%s) failed", job_id, name)
                raise
            LOGGER.info(
                "Job %s (%s) completed in %s",
                job_id,
                name,
                format_duration(time.perf_counter() - started),
            )
            return result

        job = Job(job_id, name, self._executor.submit(_run))
        self._jobs[job_id] = job
        LOGGER.info("Submitted job %s: %s", job_id, name)
        return job

    def get(self, job_id: str) -> Job:
        return self._jobs[job_id]

    @property
    def jobs(self) -> List[Job]:
        return list(self._jobs.values())

    def statuses(self) -> Dict[str, str]:
        return {job_id: job.status for job_id, job in self._jobs.items()}

    def run_interactive(
        self,
        name: str,
        fn: Callable[..., T],
        timeout: float,
        *args: Any,
        **kwargs: Any,
    ) -> Optional[T]:
        """Run ``fn`` expecting an answer within ``timeout`` seconds; ``None`` on timeout."""

        job = self.submit(name, fn, *args, **kwargs)
        try:
            return job.wait(timeout=timeout)
        except FutureTimeout:
            LOGGER.warning(
                "%s did not finish within the interactive timeout (%s); job %s keeps running.",
                name,
                format_duration(timeout),
                job.job_id,
            )
            return None

    def wait_all(self, timeout: Optional[float] = None) -> Dict[str, str]:
        for job in self.jobs:
            try:
                job.wait(timeout=timeout)
            except FutureTimeout:
                LOGGER.warning("Job %s (%s) still running", job.job_id, job.name)
            except Exception as exc:
                LOGGER.error("Job %s (%s) failed: %s", job.job_id, job.name, exc)
        return self.statuses()

    def shutdown(self, wait: bool = True) -> None:
        self._executor.shutdown(wait=wait)


__all__ = ["PENDING", "RUNNING", "COMPLETED", "FAILED", "Job", "JobRunner"]
