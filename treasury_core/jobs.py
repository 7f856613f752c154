"""
Settlement Job Queue

At-least-once job execution for settlement work (webhook events, provider
requeries and the pending-entry sweep). A failing job is retried with
exponential backoff while its error is retryable and attempts remain;
otherwise it is moved to the ``dead_letter_jobs`` table for manual
reconciliation.

Recurring jobs (the clearance and budget-expiry sweeps) are queued again one
interval after each run ends, whether that run succeeded or was dead-lettered.
"""

import heapq
import itertools
import threading
import uuid
from abc import ABC, abstractmethod
from datetime import datetime, timedelta, timezone
from dataclasses import dataclass, replace
from typing import Any, Callable, Dict, List, Optional

from .storage import StorageInterface
from .audit import AuditTrail, AuditEventType
from .logging_config import get_logger, log_action

logger = get_logger("treasury.jobs")

JobHandler = Callable[[Dict[str, Any]], Any]


@dataclass(frozen=True)
class Job:
    id: str
    name: str
    payload: Dict[str, Any]
    max_attempts: int
    backoff_seconds: float
    run_at: datetime
    attempt: int = 0
    last_error: Optional[str] = None
    interval_seconds: Optional[float] = None

    def next_delay(self) -> float:
        """Backoff before the next attempt: backoff * 2**(attempt-1)"""
        return self.backoff_seconds * (2 ** max(self.attempt - 1, 0))


class JobQueue(ABC):
    """Contract the settlement reconciler needs from a job system"""

    @abstractmethod
    def register(self, name: str, handler: JobHandler) -> None:
        pass

    @abstractmethod
    def enqueue(self, name: str, payload: Dict[str, Any], attempts: Optional[int] = None,
                backoff_seconds: Optional[float] = None, delay_seconds: float = 0) -> Job:
        pass

    @abstractmethod
    def schedule_recurring(self, name: str, payload: Dict[str, Any], interval_seconds: float,
                           delay_seconds: Optional[float] = None) -> Job:
        """Run a job every ``interval_seconds``; the first run waits one interval unless ``delay_seconds`` is given"""
        pass

    @abstractmethod
    def run_pending(self, now: Optional[datetime] = None) -> int:
        """Run every job due at ``now``; returns how many attempts ran"""
        pass

    @abstractmethod
    def start(self, workers: int = 1) -> None:
        pass

    @abstractmethod
    def stop(self) -> None:
        pass

    @abstractmethod
    def dead_letters(self) -> List[Dict[str, Any]]:
        pass


class InMemoryJobQueue(JobQueue):
    """Process-local queue with worker threads; dead letters are persisted"""

    def __init__(
        self,
        storage: StorageInterface,
        audit_trail: AuditTrail,
        max_attempts: int = 4,
        backoff_seconds: float = 60.0,
        poll_interval: float = 0.5
    ):
        self.storage = storage
        self.audit_trail = audit_trail
        self.max_attempts = max_attempts
        self.backoff_seconds = backoff_seconds
        self.poll_interval = poll_interval
        self.dead_letter_table = "dead_letter_jobs"

        self._handlers: Dict[str, JobHandler] = {}
        self._heap: List[tuple] = []
        self._counter = itertools.count()
        self._lock = threading.Lock()
        self._stop = threading.Event()
        self._workers: List[threading.Thread] = []

    def register(self, name: str, handler: JobHandler) -> None:
        self._handlers[name] = handler

    def enqueue(self, name: str, payload: Dict[str, Any], attempts: Optional[int] = None,
                backoff_seconds: Optional[float] = None, delay_seconds: float = 0) -> Job:
        job = self._new_job(name, payload, attempts, backoff_seconds, delay_seconds)
        self._push(job)
        return job

    def schedule_recurring(self, name: str, payload: Dict[str, Any], interval_seconds: float,
                           delay_seconds: Optional[float] = None) -> Job:
        if interval_seconds <= 0:
            raise ValueError("Recurring interval must be positive")
        job = replace(
            self._new_job(name, payload, None, None,
                          interval_seconds if delay_seconds is None else delay_seconds),
            interval_seconds=interval_seconds,
        )
        self._push(job)
        logger.info(f"Scheduled {name} every {interval_seconds}s")
        return job

    def _new_job(self, name: str, payload: Dict[str, Any], attempts: Optional[int],
                 backoff_seconds: Optional[float], delay_seconds: float) -> Job:
        if name not in self._handlers:
            raise ValueError(f"No handler registered for job {name}")
        return Job(
            id=str(uuid.uuid4()),
            name=name,
            payload=dict(payload),
            max_attempts=attempts or self.max_attempts,
            backoff_seconds=self.backoff_seconds if backoff_seconds is None else backoff_seconds,
            run_at=datetime.now(timezone.utc) + timedelta(seconds=delay_seconds),
        )

    def _push(self, job: Job) -> None:
        with self._lock:
            heapq.heappush(self._heap, (job.run_at, next(self._counter), job))

    def _pop_due(self, now: datetime, boundary: int) -> Optional[Job]:
        with self._lock:
            if self._heap and self._heap[0][0] <= now and self._heap[0][1] < boundary:
                return heapq.heappop(self._heap)[2]
            return None

    def pending_count(self) -> int:
        with self._lock:
            return len(self._heap)

    def run_pending(self, now: Optional[datetime] = None) -> int:
        """
        Run every job due at ``now``.

        Jobs queued while draining (follow-ups a handler schedules, retries,
        the next run of a recurring job) wait for the next call.
        """
        now = now or datetime.now(timezone.utc)
        with self._lock:
            boundary = next(self._counter)
        ran = 0
        while True:
            job = self._pop_due(now, boundary)
            if job is None:
                return ran
            self._run(job, now)
            ran += 1

    def _run(self, job: Job, now: datetime) -> None:
        job = replace(job, attempt=job.attempt + 1)
        handler = self._handlers[job.name]
        try:
            handler(job.payload)
        except Exception as e:
            job = replace(job, last_error=f"{type(e).__name__}: {e}")
            if getattr(e, "retryable", False) and job.attempt < job.max_attempts:
                delay = job.next_delay()
                logger.warning(
                    f"Job {job.name} ({job.id}) attempt {job.attempt} failed, retrying in {delay}s: {e}"
                )
                self._push(replace(job, run_at=now + timedelta(seconds=delay)))
                return
            self._dead_letter(job)
        else:
            logger.debug(f"Job {job.name} ({job.id}) completed on attempt {job.attempt}")
        if job.interval_seconds:
            self._push(replace(
                job, id=str(uuid.uuid4()), attempt=0, last_error=None,
                run_at=now + timedelta(seconds=job.interval_seconds),
            ))

    def _dead_letter(self, job: Job) -> None:
        now = datetime.now(timezone.utc).isoformat()
        self.storage.save(self.dead_letter_table, job.id, {
            "id": job.id,
            "created_at": now,
            "updated_at": now,
            "name": job.name,
            "payload": job.payload,
            "attempts": job.attempt,
            "last_error": job.last_error,
        })
        self.audit_trail.log_event(
            AuditEventType.JOB_DEAD_LETTERED, "job", job.id,
            {"name": job.name, "attempts": job.attempt, "error": job.last_error}
        )
        log_action(logger, "error", f"Job {job.name} moved to dead letters after {job.attempt} attempts",
                   action="dead_letter", resource=f"job:{job.id}",
                   extra={"error": job.last_error, "payload": job.payload})

    def dead_letters(self) -> List[Dict[str, Any]]:
        return self.storage.load_all(self.dead_letter_table)

    def _worker_loop(self) -> None:
        while not self._stop.is_set():
            if self.run_pending() == 0:
                self._stop.wait(self.poll_interval)

    def start(self, workers: int = 1) -> None:
        if self._workers:
            return
        self._stop.clear()
        for index in range(workers):
            thread = threading.Thread(target=self._worker_loop, name=f"treasury-job-{index}", daemon=True)
            thread.start()
            self._workers.append(thread)
        logger.info(f"Started {workers} job workers")

    def stop(self) -> None:
        self._stop.set()
        for thread in self._workers:
            thread.join(timeout=5)
        self._workers = []
        logger.info("Job workers stopped")
