"""
Job Store & Scheduler

Durable queue on the ``pipeline_jobs`` table. Every state change is a
single conditional UPDATE whose WHERE clause restates the state it expects,
so concurrent workers can race on the same rows safely:

- enqueue:  insert-if-absent on ``dedupe_key`` (partial unique index)
- claim:    ``... WHERE id = :id AND status = 'pending' AND locked_by IS NULL``
- complete: ``... WHERE id = :id AND status = 'processing'``
- fail:     attempt + backoff, or terminal failed/dead
- recover:  stale leases and orphaned processing rows

Each operation runs in its own session/transaction and commits before
returning; callers never hold a transaction across external calls.
"""

from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Optional, Sequence, Union

from pydantic import BaseModel as PydanticModel
from sqlalchemy import func, or_, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from studyflow.core.config import settings
from studyflow.core.errors import JobNotFoundError, JobStateError
from studyflow.core.logging import get_logger
from studyflow.core.retry import RetryPolicy
from studyflow.db.base import utcnow
from studyflow.models import (
    ACTIVE_STATUSES,
    JOB_CATEGORIES,
    ContentUnitStatus,
    Job,
    JobStatus,
    PipelineStage,
)
from studyflow.schemas.jobs import parse_payload
from studyflow.services.units import mark_unit_failed, set_unit_state

logger = get_logger(__name__)

STALE_LEASE_MESSAGE = "Background processing timeout exceeded multiple times"
ORPHAN_MESSAGE = "Orphaned job exceeded recovery attempts"
STALE_LEASE_REASON = "Recovered: lease expired before the job finished"
ORPHAN_REASON = "Recovered: processing without a lock past the lease window"


@dataclass
class EnqueueResult:
    job: Job
    created: bool


@dataclass
class RecoveryReport:
    reset: list[int] = field(default_factory=list)
    dead: list[int] = field(default_factory=list)

    @property
    def total(self) -> int:
        return len(self.reset) + len(self.dead)


class JobStore:
    """
    Queue operations over ``pipeline_jobs``.

    Usage:
        store = JobStore(session_factory)
        await store.enqueue("embed", unit_id, {}, dedupe_key=f"unit:{unit_id}:embed")
        job = await store.claim("worker-1:123:abc")
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        retry_policy: Optional[RetryPolicy] = None,
        lease_seconds: Optional[int] = None,
        concurrency_limits: Optional[dict[str, int]] = None,
        claim_retries: Optional[int] = None,
        candidate_window: Optional[int] = None,
        max_attempts: Optional[int] = None,
    ):
        self.session_factory = session_factory
        self.retry_policy = retry_policy or RetryPolicy.from_settings()
        self.lease_seconds = lease_seconds or settings.JOB_LEASE_SECONDS
        self.concurrency_limits = concurrency_limits if concurrency_limits is not None else settings.concurrency_limits
        self.claim_retries = claim_retries or settings.CLAIM_MAX_RETRIES
        self.candidate_window = candidate_window or settings.CLAIM_CANDIDATE_WINDOW
        self.max_attempts = max_attempts or settings.JOB_MAX_ATTEMPTS

    # ========================================
    # Reads
    # ========================================

    async def get(self, job_id: int) -> Job:
        async with self.session_factory() as session:
            job = await session.get(Job, job_id)
            if job is None:
                raise JobNotFoundError(f"Job {job_id} not found")
            return job

    async def list_for_unit(self, content_unit_id: int) -> list[Job]:
        async with self.session_factory() as session:
            result = await session.execute(
                select(Job).where(Job.content_unit_id == content_unit_id).order_by(Job.created_at, Job.id)
            )
            return list(result.scalars().all())

    async def count_active(
        self,
        content_unit_id: int,
        job_type: str,
        exclude_job_id: Optional[int] = None,
    ) -> int:
        """Pending/processing jobs of one type for a unit (readiness gates)."""
        async with self.session_factory() as session:
            stmt = select(func.count(Job.id)).where(
                Job.content_unit_id == content_unit_id,
                Job.job_type == job_type,
                Job.status.in_(ACTIVE_STATUSES),
            )
            if exclude_job_id is not None:
                stmt = stmt.where(Job.id != exclude_job_id)
            return await session.scalar(stmt) or 0

    async def count_completed(
        self,
        content_unit_id: int,
        job_type: str,
        dedupe_keys: Optional[Sequence[str]] = None,
    ) -> int:
        """Distinct completed jobs of one type for a unit, optionally limited to ``dedupe_keys``."""
        async with self.session_factory() as session:
            stmt = select(func.count(func.distinct(Job.dedupe_key))).where(
                Job.content_unit_id == content_unit_id,
                Job.job_type == job_type,
                Job.status == JobStatus.COMPLETED.value,
            )
            if dedupe_keys is not None:
                stmt = stmt.where(Job.dedupe_key.in_(list(dedupe_keys)))
            return await session.scalar(stmt) or 0

    @staticmethod
    async def _find_by_dedupe_key(
        session: AsyncSession,
        dedupe_key: str,
        include_completed: bool,
    ) -> Optional[Job]:
        statuses = list(ACTIVE_STATUSES)
        if include_completed:
            statuses.append(JobStatus.COMPLETED.value)
        result = await session.execute(
            select(Job)
            .where(Job.dedupe_key == dedupe_key, Job.status.in_(statuses))
            .order_by(Job.id.desc())
            .limit(1)
        )
        return result.scalar_one_or_none()

    # ========================================
    # Enqueue
    # ========================================

    @staticmethod
    def _payload_dict(payload: Union[PydanticModel, dict[str, Any], None]) -> dict[str, Any]:
        return payload.model_dump() if isinstance(payload, PydanticModel) else dict(payload or {})

    def _new_job(
        self,
        job_type: str,
        content_unit_id: int,
        validated: PydanticModel,
        dedupe_key: Optional[str],
        max_attempts: Optional[int],
    ) -> Job:
        return Job(
            content_unit_id=content_unit_id,
            job_type=job_type,
            status=JobStatus.PENDING.value,
            payload=validated.model_dump(mode="json"),
            attempt_count=0,
            max_attempts=max_attempts or self.max_attempts,
            dedupe_key=dedupe_key,
        )

    async def enqueue(
        self,
        job_type: str,
        content_unit_id: int,
        payload: Union[PydanticModel, dict[str, Any], None] = None,
        dedupe_key: Optional[str] = None,
        include_completed: bool = False,
        max_attempts: Optional[int] = None,
    ) -> EnqueueResult:
        """
        Insert a pending job unless an equivalent one exists.

        Args:
            job_type: Stage to run
            content_unit_id: Owning unit
            payload: Payload model or dict; validated against ``job_type``
            dedupe_key: At most one pending/processing job per key
            include_completed: Also treat a completed job with the same key
                               as present (readiness gates)
            max_attempts: Override the configured attempt budget

        Returns:
            The new job (created=True) or the existing equivalent one
        """
        validated = parse_payload(job_type, self._payload_dict(payload))

        async with self.session_factory() as session:
            if dedupe_key:
                existing = await self._find_by_dedupe_key(session, dedupe_key, include_completed)
                if existing is not None:
                    logger.debug("job_enqueue_deduplicated", dedupe_key=dedupe_key, job_id=existing.id)
                    return EnqueueResult(job=existing, created=False)

            job = self._new_job(job_type, content_unit_id, validated, dedupe_key, max_attempts)
            session.add(job)
            try:
                await session.commit()
            except IntegrityError:
                # Lost the race against a concurrent enqueue of the same key
                await session.rollback()
                existing = await self._find_by_dedupe_key(session, dedupe_key, include_completed) if dedupe_key else None
                if existing is None:
                    raise
                logger.debug("job_enqueue_deduplicated", dedupe_key=dedupe_key, job_id=existing.id)
                return EnqueueResult(job=existing, created=False)

        logger.info(
            "job_enqueued",
            job_id=job.id,
            job_type=job_type,
            content_unit_id=content_unit_id,
            dedupe_key=dedupe_key,
        )
        return EnqueueResult(job=job, created=True)

    async def enqueue_many(
        self,
        job_type: str,
        content_unit_id: int,
        items: Sequence[tuple[Union[PydanticModel, dict[str, Any], None], Optional[str]]],
        include_completed: bool = False,
    ) -> list[EnqueueResult]:
        """
        Insert a fan-out of sibling jobs in one transaction.

        ``items`` are ``(payload, dedupe_key)`` pairs. Either every missing
        sibling is inserted or none is, so a downstream gate never sees a
        partially created fan-out. A dedupe collision with a concurrent
        writer rolls the batch back and retries it; the retry then finds the
        other writer's rows and reports them as existing.

        Returns:
            One result per item, in order
        """
        validated = [(parse_payload(job_type, self._payload_dict(payload)), key) for payload, key in items]

        for round_number in range(1, self.claim_retries + 1):
            async with self.session_factory() as session:
                results: list[EnqueueResult] = []
                for payload, key in validated:
                    existing = await self._find_by_dedupe_key(session, key, include_completed) if key else None
                    if existing is not None:
                        results.append(EnqueueResult(job=existing, created=False))
                        continue
                    job = self._new_job(job_type, content_unit_id, payload, key, None)
                    session.add(job)
                    results.append(EnqueueResult(job=job, created=True))

                try:
                    await session.commit()
                except IntegrityError:
                    await session.rollback()
                    logger.debug("job_batch_enqueue_collision", job_type=job_type, round=round_number)
                    if round_number == self.claim_retries:
                        raise
                    continue

            created = [r.job.id for r in results if r.created]
            logger.info(
                "jobs_enqueued",
                job_type=job_type,
                content_unit_id=content_unit_id,
                created=created,
                deduplicated=len(results) - len(created),
            )
            return results

        raise JobStateError(f"Could not enqueue {job_type} jobs for unit {content_unit_id}")

    # ========================================
    # Claim
    # ========================================

    async def _saturated_job_types(self, session: AsyncSession) -> list[str]:
        """Job types whose category is at its processing ceiling."""
        rows = (
            await session.execute(
                select(Job.job_type, func.count(Job.id))
                .where(Job.status == JobStatus.PROCESSING.value)
                .group_by(Job.job_type)
            )
        ).all()

        per_category: dict[str, int] = {}
        for job_type, count in rows:
            category = JOB_CATEGORIES.get(job_type, job_type)
            per_category[category] = per_category.get(category, 0) + count

        saturated_categories = {
            category
            for category, active in per_category.items()
            if category in self.concurrency_limits and active >= self.concurrency_limits[category]
        }
        return [
            job_type
            for job_type, category in JOB_CATEGORIES.items()
            if category in saturated_categories
        ]

    async def claim(self, worker_id: str) -> Optional[Job]:
        """
        Claim the oldest eligible pending job for ``worker_id``.

        Eligible: pending, unlocked, backoff elapsed, category below its
        ceiling. Candidates are tried in age order with a conditional
        update; losing every candidate to other workers starts a new round,
        up to ``claim_retries`` rounds.

        Returns:
            The claimed job (status processing) or None
        """
        for round_number in range(1, self.claim_retries + 1):
            async with self.session_factory() as session:
                now = utcnow()
                saturated = await self._saturated_job_types(session)

                stmt = (
                    select(Job.id)
                    .where(
                        Job.status == JobStatus.PENDING.value,
                        Job.locked_by.is_(None),
                        or_(Job.next_retry_at.is_(None), Job.next_retry_at <= now),
                    )
                    .order_by(Job.created_at, Job.id)
                    .limit(self.candidate_window)
                )
                if saturated:
                    stmt = stmt.where(Job.job_type.not_in(saturated))

                candidate_ids = list((await session.execute(stmt)).scalars().all())
                if not candidate_ids:
                    return None

                for job_id in candidate_ids:
                    result = await session.execute(
                        update(Job)
                        .where(
                            Job.id == job_id,
                            Job.status == JobStatus.PENDING.value,
                            Job.locked_by.is_(None),
                        )
                        .values(
                            status=JobStatus.PROCESSING.value,
                            locked_by=worker_id,
                            locked_at=now,
                            updated_at=now,
                        )
                        .execution_options(synchronize_session=False)
                    )
                    if result.rowcount == 1:
                        await session.commit()
                        job = await session.get(Job, job_id, populate_existing=True)
                        logger.info(
                            "job_claimed",
                            job_id=job_id,
                            job_type=job.job_type,
                            worker_id=worker_id,
                            attempt=job.attempt_count + 1,
                        )
                        return job

                await session.rollback()

            logger.debug("job_claim_collision", worker_id=worker_id, round=round_number)

        return None

    # ========================================
    # Complete / Fail
    # ========================================

    async def complete(
        self,
        job_id: int,
        result: Optional[dict[str, Any]] = None,
        worker_id: Optional[str] = None,
    ) -> bool:
        """
        Mark a processing job completed and release its lock.

        Returns False when the job is no longer processing (or is locked by
        someone else when ``worker_id`` is given), e.g. after the lease was
        reclaimed by the recovery sweep.
        """
        now = utcnow()
        stmt = update(Job).where(Job.id == job_id, Job.status == JobStatus.PROCESSING.value)
        if worker_id is not None:
            stmt = stmt.where(Job.locked_by == worker_id)

        async with self.session_factory() as session:
            outcome = await session.execute(
                stmt.values(
                    status=JobStatus.COMPLETED.value,
                    locked_by=None,
                    locked_at=None,
                    next_retry_at=None,
                    error_message=None,
                    result=result,
                    completed_at=now,
                    updated_at=now,
                ).execution_options(synchronize_session=False)
            )
            await session.commit()

        if outcome.rowcount != 1:
            logger.warning("job_complete_ignored", job_id=job_id, worker_id=worker_id)
            return False

        logger.info("job_completed", job_id=job_id)
        return True

    async def fail(self, job_id: int, message: str, retryable: bool = True) -> Job:
        """
        Record a failed attempt.

        Retryable failures with attempts left go back to ``pending`` with
        ``next_retry_at`` pushed out by the backoff policy. Otherwise the
        job becomes ``dead`` (retryable but exhausted) or ``failed``
        (permanent) and the owning content unit is marked failed.

        Raises:
            JobNotFoundError: unknown job id
        """
        async with self.session_factory() as session:
            job = await session.get(Job, job_id)
            if job is None:
                raise JobNotFoundError(f"Job {job_id} not found")
            if job.status != JobStatus.PROCESSING.value:
                logger.warning("job_fail_ignored", job_id=job_id, status=job.status)
                return job

            now = utcnow()
            attempts = job.attempt_count + 1
            values: dict[str, Any] = {
                "attempt_count": attempts,
                "error_message": message,
                "locked_by": None,
                "locked_at": None,
                "updated_at": now,
            }

            if retryable and attempts < job.max_attempts:
                delay = self.retry_policy.compute_delay(attempts - 1)
                values.update(status=JobStatus.PENDING.value, next_retry_at=now + timedelta(seconds=delay))
                terminal = False
            else:
                values.update(
                    status=JobStatus.DEAD.value if retryable else JobStatus.FAILED.value,
                    next_retry_at=None,
                )
                terminal = True
                delay = None

            outcome = await session.execute(
                update(Job)
                .where(Job.id == job_id, Job.status == JobStatus.PROCESSING.value)
                .values(**values)
                .execution_options(synchronize_session=False)
            )
            if outcome.rowcount != 1:
                await session.rollback()
                logger.warning("job_fail_ignored", job_id=job_id, status="changed")
                return await self.get(job_id)

            if terminal:
                await mark_unit_failed(session, job.content_unit_id, f"{job.job_type} failed: {message}")

            await session.commit()
            job = await session.get(Job, job_id, populate_existing=True)

        if terminal:
            logger.error(
                "job_failed_terminal",
                job_id=job_id,
                job_type=job.job_type,
                status=job.status,
                attempts=attempts,
                error=message,
            )
        else:
            logger.warning(
                "job_failed_will_retry",
                job_id=job_id,
                job_type=job.job_type,
                attempts=attempts,
                max_attempts=job.max_attempts,
                retry_in_seconds=round(delay, 2),
                error=message,
            )
        return job

    # ========================================
    # Recovery sweep
    # ========================================

    async def recover_stale(self, now: Optional[datetime] = None) -> RecoveryReport:
        """
        Heal jobs whose worker went away.

        Stale leases: locked (pending or processing) with ``locked_at``
        older than the lease window. Orphans: ``processing`` without a lock
        and not updated within the lease window. Both go back to pending
        with one more attempt counted, or to ``dead`` once the attempt
        budget is spent.
        """
        now = now or utcnow()
        cutoff = now - timedelta(seconds=self.lease_seconds)
        report = RecoveryReport()

        async with self.session_factory() as session:
            stale = (
                await session.execute(
                    select(Job.id, Job.content_unit_id, Job.job_type, Job.attempt_count, Job.max_attempts).where(
                        Job.status.in_(ACTIVE_STATUSES),
                        Job.locked_by.is_not(None),
                        Job.locked_at < cutoff,
                    )
                )
            ).all()
            orphans = (
                await session.execute(
                    select(Job.id, Job.content_unit_id, Job.job_type, Job.attempt_count, Job.max_attempts).where(
                        Job.status == JobStatus.PROCESSING.value,
                        Job.locked_by.is_(None),
                        Job.updated_at < cutoff,
                    )
                )
            ).all()

            for row in stale:
                guard = (
                    Job.id == row.id,
                    Job.status.in_(ACTIVE_STATUSES),
                    Job.locked_by.is_not(None),
                    Job.locked_at < cutoff,
                )
                await self._recover_row(session, row, guard, STALE_LEASE_REASON, STALE_LEASE_MESSAGE, now, report)

            for row in orphans:
                guard = (
                    Job.id == row.id,
                    Job.status == JobStatus.PROCESSING.value,
                    Job.locked_by.is_(None),
                    Job.updated_at < cutoff,
                )
                await self._recover_row(session, row, guard, ORPHAN_REASON, ORPHAN_MESSAGE, now, report)

            await session.commit()

        if report.total:
            logger.warning("stale_jobs_recovered", reset=report.reset, dead=report.dead)
        return report

    async def _recover_row(
        self,
        session: AsyncSession,
        row: Any,
        guard: Sequence[Any],
        reason: str,
        dead_message: str,
        now: datetime,
        report: RecoveryReport,
    ) -> None:
        common = {"locked_by": None, "locked_at": None, "updated_at": now}

        if row.attempt_count < row.max_attempts:
            outcome = await session.execute(
                update(Job)
                .where(*guard)
                .values(
                    status=JobStatus.PENDING.value,
                    attempt_count=row.attempt_count + 1,
                    error_message=reason,
                    **common,
                )
                .execution_options(synchronize_session=False)
            )
            if outcome.rowcount == 1:
                report.reset.append(row.id)
            return

        outcome = await session.execute(
            update(Job)
            .where(*guard)
            .values(status=JobStatus.DEAD.value, error_message=dead_message, **common)
            .execution_options(synchronize_session=False)
        )
        if outcome.rowcount == 1:
            report.dead.append(row.id)
            await mark_unit_failed(session, row.content_unit_id, f"{row.job_type} failed: {dead_message}")

    # ========================================
    # Operator actions
    # ========================================

    async def reset_job(self, job_id: int) -> Job:
        """
        Move a failed/dead job back to pending with a fresh attempt budget.

        Raises:
            JobNotFoundError: unknown job id
            JobStateError: job is not failed/dead, or an equivalent job is
                           already active under the same dedupe key
        """
        async with self.session_factory() as session:
            job = await session.get(Job, job_id)
            if job is None:
                raise JobNotFoundError(f"Job {job_id} not found")
            if job.status not in (JobStatus.FAILED.value, JobStatus.DEAD.value):
                raise JobStateError(f"Job {job_id} is {job.status}; only failed or dead jobs can be retried")

            content_unit_id = job.content_unit_id
            now = utcnow()
            try:
                outcome = await session.execute(
                    update(Job)
                    .where(Job.id == job_id, Job.status.in_((JobStatus.FAILED.value, JobStatus.DEAD.value)))
                    .values(
                        status=JobStatus.PENDING.value,
                        attempt_count=0,
                        error_message=None,
                        locked_by=None,
                        locked_at=None,
                        next_retry_at=None,
                        updated_at=now,
                    )
                    .execution_options(synchronize_session=False)
                )
            except IntegrityError as e:
                # Partial unique index: the same dedupe key is already pending/processing
                await session.rollback()
                raise JobStateError(f"An equivalent job is already active for job {job_id}") from e

            if outcome.rowcount != 1:
                await session.rollback()
                raise JobStateError(f"Job {job_id} changed state while being reset")

            await set_unit_state(
                session,
                content_unit_id,
                status=ContentUnitStatus.PROCESSING,
                stage=PipelineStage.QUEUED,
                allow_from_failed=True,
                error_message=None,
            )
            await session.commit()
            job = await session.get(Job, job_id, populate_existing=True)

        logger.info("job_reset", job_id=job_id, job_type=job.job_type, content_unit_id=job.content_unit_id)
        return job

    async def retry_failed_jobs(self, content_unit_id: int) -> list[int]:
        """Reset every failed/dead job of a unit. Returns the reset job ids."""
        async with self.session_factory() as session:
            job_ids = list(
                (
                    await session.execute(
                        select(Job.id)
                        .where(
                            Job.content_unit_id == content_unit_id,
                            Job.status.in_((JobStatus.FAILED.value, JobStatus.DEAD.value)),
                        )
                        .order_by(Job.id)
                    )
                ).scalars().all()
            )

        reset: list[int] = []
        for job_id in job_ids:
            try:
                await self.reset_job(job_id)
            except JobStateError as e:
                logger.warning("job_reset_skipped", job_id=job_id, reason=str(e))
                continue
            reset.append(job_id)

        logger.info("unit_failed_jobs_reset", content_unit_id=content_unit_id, count=len(reset))
        return reset

    # ========================================
    # Monitoring
    # ========================================

    async def stats(self) -> dict[str, Any]:
        """Counts by status and by type for active jobs, plus oldest pending age."""
        async with self.session_factory() as session:
            by_status = dict(
                (await session.execute(select(Job.status, func.count(Job.id)).group_by(Job.status))).all()
            )
            active_by_type = dict(
                (
                    await session.execute(
                        select(Job.job_type, func.count(Job.id))
                        .where(Job.status.in_(ACTIVE_STATUSES))
                        .group_by(Job.job_type)
                    )
                ).all()
            )
            oldest_pending = await session.scalar(
                select(func.min(Job.created_at)).where(Job.status == JobStatus.PENDING.value)
            )

        return {
            "by_status": {status.value: by_status.get(status.value, 0) for status in JobStatus},
            "active_by_type": active_by_type,
            "oldest_pending_at": oldest_pending.isoformat() if oldest_pending else None,
        }
