from __future__ import annotations

import asyncio
import logging
import re
import time
import uuid
from typing import Awaitable, Callable

from .models import AskRequest, AskResult, Job, JobState
from .tools.errors import JobNotFoundError, error_kind

log = logging.getLogger(__name__)

BACKGROUND_WAIT_THRESHOLD_MS = 5 * 60 * 1000
_SLOW_MODEL_RE = re.compile(r"pro|thinking|research", re.IGNORECASE)


def should_run_in_background(request: AskRequest) -> bool:
    """Route long-running shapes of request to a job instead of blocking the caller."""
    if request.wants_research or request.wants_image:
        return True
    if request.model_mode in ("pro", "thinking"):
        return True
    if _SLOW_MODEL_RE.search(request.model or ""):
        return True
    return (request.wait_timeout_ms or 0) > BACKGROUND_WAIT_THRESHOLD_MS


def _wall_ms() -> int:
    return int(time.time() * 1000)


class JobScheduler:
    """In-memory job table; one worker task per job, evicted by TTL and cap."""

    def __init__(
        self,
        runner: Callable[[AskRequest], Awaitable[AskResult]],
        *,
        ttl_ms: int = 24 * 60 * 60 * 1000,
        max_jobs: int = 150,
        sleep: Callable[[float], Awaitable[None]] | None = None,
        clock: Callable[[], int] | None = None,
        id_factory: Callable[[], str] | None = None,
    ) -> None:
        self.runner = runner
        self.ttl_ms = ttl_ms
        self.max_jobs = max(1, max_jobs)
        self.sleep = sleep or asyncio.sleep
        self.clock = clock or _wall_ms
        self.id_factory = id_factory or (lambda: str(uuid.uuid4()))
        self._jobs: dict[str, Job] = {}
        self._tasks: set[asyncio.Task[None]] = set()

    def __len__(self) -> int:
        return len(self._jobs)

    def __contains__(self, job_id: object) -> bool:
        return job_id in self._jobs

    def submit(self, request: AskRequest) -> str:
        """Store a queued job and start its worker; never waits on the work itself."""
        self.sweep()
        job_id = self.id_factory()
        while job_id in self._jobs:
            job_id = self.id_factory()
        job = Job(id=job_id, input=request, created_at=self.clock())
        self._jobs[job_id] = job
        task = asyncio.get_running_loop().create_task(self._run(job))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        log.info("job %s queued", job_id)
        return job_id

    def status(self, job_id: str) -> Job:
        """Look a job up; expired and evicted jobs are not found."""
        self.sweep()
        job = self._jobs.get(job_id)
        if job is None:
            raise JobNotFoundError(f"ask_job_not_found: {job_id}")
        return job

    async def await_until(self, job_id: str, timeout_ms: int, poll_interval_ms: int = 2000) -> Job:
        """Sample the job until it is terminal or ``timeout_ms`` has passed; read-only."""
        started = self.clock()
        job = self.status(job_id)
        while not job.state.terminal:
            elapsed = self.clock() - started
            if elapsed >= timeout_ms:
                return job
            await self.sleep(min(poll_interval_ms, timeout_ms - elapsed) / 1000.0)
            job = self.status(job_id)
        return job

    async def _run(self, job: Job) -> None:
        if job.state is not JobState.QUEUED:
            return
        job.state = JobState.RUNNING
        job.started_at = self.clock()
        log.info("job %s running", job.id)
        try:
            job.result = await self.runner(job.input)
            job.state = JobState.SUCCEEDED
        except Exception as exc:  # noqa: BLE001
            job.error = str(exc)
            job.error_kind = error_kind(exc)
            job.state = JobState.FAILED
            log.warning("job %s failed (%s): %s", job.id, job.error_kind, exc)
        finally:
            job.finished_at = self.clock()
            log.info("job %s %s", job.id, job.state.value)
            self.sweep()

    def sweep(self) -> None:
        now = self.clock()
        for job_id, job in list(self._jobs.items()):
            if job.finished_at is not None and now - job.finished_at > self.ttl_ms:
                del self._jobs[job_id]
                log.debug("job %s expired", job_id)

        if len(self._jobs) <= self.max_jobs:
            return
        evictable = sorted(
            (job for job in self._jobs.values() if job.state.terminal),
            key=lambda job: (job.finished_at if job.finished_at is not None else job.created_at, job.created_at),
        )
        for job in evictable:
            if len(self._jobs) <= self.max_jobs:
                break
            del self._jobs[job.id]
            log.debug("job %s evicted (cap %d)", job.id, self.max_jobs)

    async def drain(self) -> None:
        """Wait for every in-flight worker; used on shutdown and in tests."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)
