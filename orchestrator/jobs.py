"""
Orchestrator - Jobs.

============================================================
RESPONSIBILITY
============================================================
Job-level retry contract for sync runs and the selection of
connections that are due for a recurring sync.

============================================================
JOB CONTRACT
============================================================
- At most one in-flight run per job name; a concurrent
  submission is skipped and reported
- Every attempt runs under a timeout; a timeout is a
  retryable failure
- Retryable failure -> wait backoff[attempt-1] -> retry, up
  to max_attempts; exhaustion is a permanent failure
- SyncError subclasses flagged non-retryable (auth, missing
  credentials, inactive connection) fail immediately

============================================================
EVENTS
============================================================
sync.started, sync.succeeded, sync.failed,
sync.failed_permanently; each carries user_id, exchange,
job and attempt in the record's extra fields.

============================================================
"""

import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Awaitable, Callable, List, Optional, Set

from pydantic import ValidationError
from sqlalchemy.orm import sessionmaker

from reconciliation.config import RetryPolicy, SchedulerConfig
from reconciliation.engine import ReconciliationEngine
from reconciliation.errors import SyncError
from reconciliation.types import ConnectionSettings, SyncKind
from storage.database import transaction_scope
from storage.models.base import utcnow
from storage.models.journal import UserExchange
from storage.repositories.connections import ConnectionRepository

from .models import JobOutcome, JobStatus


logger = logging.getLogger(__name__)


# ============================================================
# JOB
# ============================================================

@dataclass
class SyncJob:
    """One schedulable sync run."""

    name: str
    user_id: int
    exchange: str
    kind: SyncKind
    policy: RetryPolicy
    run: Callable[[], Awaitable[Any]]

    @classmethod
    def build(
        cls,
        engine: ReconciliationEngine,
        kind: SyncKind,
        user_id: int,
        exchange: str,
        policy: RetryPolicy,
    ) -> "SyncJob":
        if kind is SyncKind.FULL:
            run = lambda: engine.full_sync(user_id, exchange)  # noqa: E731
        else:
            run = lambda: engine.quick_sync(user_id, exchange)  # noqa: E731
        return cls(
            name=f"{kind.value}:{user_id}:{exchange}",
            user_id=user_id,
            exchange=exchange,
            kind=kind,
            policy=policy,
            run=run,
        )


# ============================================================
# JOB RUNNER
# ============================================================

class JobRunner:
    """Runs sync jobs with timeout, bounded retry and overlap protection."""

    def __init__(self, sleep: Callable[[float], Awaitable[None]] = asyncio.sleep) -> None:
        self._sleep = sleep
        self._in_flight: Set[str] = set()

    def is_running(self, job_name: str) -> bool:
        return job_name in self._in_flight

    def _emit(self, level: int, event: str, job: SyncJob, attempt: int, message: str = "") -> None:
        logger.log(
            level,
            f"{event} job={job.name} attempt={attempt}/{job.policy.max_attempts}"
            + (f": {message}" if message else ""),
            extra={
                "event": event,
                "user_id": job.user_id,
                "exchange": job.exchange,
                "job": job.name,
                "attempt": attempt,
            },
        )

    async def run(self, job: SyncJob) -> JobOutcome:
        started_at = utcnow()

        if job.name in self._in_flight:
            logger.warning(f"Job {job.name} already in flight, skipping")
            return JobOutcome(
                job_name=job.name,
                status=JobStatus.SKIPPED,
                error="already in flight",
                started_at=started_at,
                finished_at=utcnow(),
            )

        self._in_flight.add(job.name)
        try:
            return await self._run_with_retry(job, started_at)
        finally:
            self._in_flight.discard(job.name)

    async def _run_with_retry(self, job: SyncJob, started_at: datetime) -> JobOutcome:
        policy = job.policy
        error: Optional[str] = None
        attempt = 0

        for attempt in range(1, policy.max_attempts + 1):
            self._emit(logging.INFO, "sync.started", job, attempt)

            try:
                result = await asyncio.wait_for(job.run(), timeout=policy.timeout_seconds)
            except asyncio.TimeoutError:
                error = f"timed out after {policy.timeout_seconds:.0f}s"
                retryable = True
            except SyncError as e:
                error = str(e)
                retryable = e.retryable
            except Exception as e:
                error = f"{type(e).__name__}: {e}"
                retryable = True
            else:
                self._emit(logging.INFO, "sync.succeeded", job, attempt)
                return JobOutcome(
                    job_name=job.name,
                    status=JobStatus.SUCCEEDED,
                    attempts=attempt,
                    result=result,
                    started_at=started_at,
                    finished_at=utcnow(),
                )

            if not retryable:
                self._emit(logging.ERROR, "sync.failed_permanently", job, attempt, f"{error} (not retryable)")
                break

            if attempt < policy.max_attempts:
                delay = policy.delay_for(attempt)
                self._emit(logging.WARNING, "sync.failed", job, attempt, f"{error}; retrying in {delay:.0f}s")
                await self._sleep(delay)
            else:
                self._emit(logging.ERROR, "sync.failed_permanently", job, attempt, f"{error} (attempts exhausted)")

        return JobOutcome(
            job_name=job.name,
            status=JobStatus.FAILED,
            attempts=attempt,
            error=error,
            started_at=started_at,
            finished_at=utcnow(),
        )


# ============================================================
# SCHEDULER
# ============================================================

class SyncScheduler:
    """
    Picks connections due for a recurring full sync and runs
    them through the JobRunner. Different connections run
    concurrently; they share no mutable state.
    """

    def __init__(
        self,
        session_factory: sessionmaker,
        engine: ReconciliationEngine,
        runner: Optional[JobRunner] = None,
        config: Optional[SchedulerConfig] = None,
    ) -> None:
        self._session_factory = session_factory
        self._engine = engine
        self._runner = runner or JobRunner()
        self._config = config or SchedulerConfig()

    @property
    def runner(self) -> JobRunner:
        return self._runner

    def full_sync_job(self, user_id: int, exchange: str) -> SyncJob:
        return SyncJob.build(self._engine, SyncKind.FULL, user_id, exchange, self._config.full_sync)

    def quick_sync_job(self, user_id: int, exchange: str) -> SyncJob:
        return SyncJob.build(self._engine, SyncKind.QUICK, user_id, exchange, self._config.quick_sync)

    def is_due(self, connection: UserExchange, now: datetime) -> bool:
        try:
            settings = ConnectionSettings.from_stored(connection.sync_settings)
        except ValidationError as e:
            logger.warning(
                f"Skipping connection user={connection.user_id} exchange={connection.exchange}: "
                f"invalid sync settings ({e.error_count()} errors)"
            )
            return False

        if not settings.auto_sync:
            return False
        if connection.last_sync_at is None:
            return True

        interval = max(
            self._config.min_resync_interval,
            self._config.full_sync_interval(settings.sync_interval_hours),
        )
        return now - connection.last_sync_at >= interval

    def due_connections(self, now: Optional[datetime] = None) -> List[UserExchange]:
        """Active auto-sync connections whose sync interval has elapsed."""
        now = now or utcnow()
        with transaction_scope(self._session_factory) as session:
            return [
                c for c in ConnectionRepository(session).list_active()
                if self.is_due(c, now)
            ]

    async def run_due(self, now: Optional[datetime] = None) -> List[JobOutcome]:
        due = self.due_connections(now)
        if not due:
            logger.info("No connections due for sync")
            return []

        logger.info(f"Running full sync for {len(due)} due connections")
        jobs = [self.full_sync_job(c.user_id, c.exchange) for c in due]
        return list(await asyncio.gather(*(self._runner.run(job) for job in jobs)))
