"""
Job Store.

Prediction-job lifecycle records, shard-routed by owning user. Status
changes follow one machine:

    pending    -> processing | cancelled
    processing -> submitted | failed | cancelled
    submitted  -> completed | failed

Writing the status a row already has is an idempotent refresh. Terminal
rows never move again.
"""

from datetime import datetime
from typing import Dict, Iterable, List, Optional

from sqlalchemy import func
from sqlalchemy.orm import Session

from diabetify.database.database import ShardRouter, utcnow
from diabetify.database.models import (
    ACTIVE_STATUSES, JOB_CANCELLED, JOB_FAILED, JOB_PENDING, JOB_PROCESSING,
    JOB_STATUSES, JOB_SUBMITTED, JOB_COMPLETED, TERMINAL_STATUSES, PredictionJob,
)
from diabetify.errors import InvalidTransition, NotFound
from diabetify.utils.logger import get_logger

logger = get_logger(__name__)

ALLOWED_TRANSITIONS = {
    JOB_PENDING: frozenset((JOB_PROCESSING, JOB_CANCELLED)),
    JOB_PROCESSING: frozenset((JOB_SUBMITTED, JOB_FAILED, JOB_CANCELLED)),
    JOB_SUBMITTED: frozenset((JOB_COMPLETED, JOB_FAILED)),
    JOB_COMPLETED: frozenset(),
    JOB_FAILED: frozenset(),
    JOB_CANCELLED: frozenset(),
}

CANCELLABLE_STATUSES = (JOB_PENDING, JOB_PROCESSING)


def can_transition(current: str, target: str) -> bool:
    return target in ALLOWED_TRANSITIONS.get(current, ())


def apply_status(db: Session, job_id: str, status: str,
                 error_message: str = None, prediction_id: int = None) -> PredictionJob:
    """
    Writes a status change inside an open session.

    Used directly when the change must commit together with other rows on
    the same shard (a prediction insert and its job completion).
    """
    if status not in JOB_STATUSES:
        raise InvalidTransition(f"Unknown job status '{status}'")

    job = db.get(PredictionJob, job_id)
    if job is None:
        raise NotFound(f"Job {job_id} not found")

    now = utcnow()
    if job.status != status and not can_transition(job.status, status):
        raise InvalidTransition(f"Job {job_id} cannot move from {job.status} to {status}")

    job.status = status
    job.updated_at = now
    if status in TERMINAL_STATUSES and job.completed_at is None:
        job.completed_at = now
    if error_message is not None:
        job.error_message = error_message
    if prediction_id is not None:
        job.prediction_id = prediction_id
    db.flush()
    return job


class JobStore:
    def __init__(self, router: ShardRouter):
        self.router = router

    # --- writes ---

    def save_job(self, job: PredictionJob) -> PredictionJob:
        now = utcnow()
        job.status = job.status or JOB_PENDING
        job.created_at = job.created_at or now
        job.updated_at = now

        def work(db):
            db.add(job)
            db.flush()
            return job

        return self.router.on_user_shard(job.user_id, work)

    def update_status(self, job_id: str, status: str, error_message: str = None,
                      prediction_id: int = None, user_id: int = None) -> PredictionJob:
        """
        Moves a job to `status`. With a user_id the write goes straight to
        that user's shard; without one the owning shard is found first.
        """
        if user_id is None:
            job = self.get_job(job_id)
            if job is None:
                raise NotFound(f"Job {job_id} not found")
            user_id = job.user_id

        return self.router.on_user_shard(
            user_id, lambda db: apply_status(db, job_id, status, error_message, prediction_id)
        )

    def transition_if(self, job_id: str, user_id: int, from_statuses: Iterable[str],
                      to_status: str, error_message: str = None) -> bool:
        """
        Compare-and-set status change. Returns False when the row is no longer
        in one of `from_statuses`, which is how racing writers (executor vs.
        cancel) find out they lost.
        """
        from_statuses = tuple(from_statuses)
        for current in from_statuses:
            if current != to_status and not can_transition(current, to_status):
                raise InvalidTransition(f"{current} -> {to_status} is not a valid transition")

        def work(db):
            now = utcnow()
            values = {PredictionJob.status: to_status, PredictionJob.updated_at: now}
            if to_status in TERMINAL_STATUSES:
                values[PredictionJob.completed_at] = now
            if error_message is not None:
                values[PredictionJob.error_message] = error_message
            return (
                db.query(PredictionJob)
                .filter(PredictionJob.id == job_id, PredictionJob.status.in_(from_statuses))
                .update(values, synchronize_session=False)
            )

        return self.router.on_user_shard(user_id, work) == 1

    def cancel_job(self, job_id: str, user_id: int) -> bool:
        cancelled = self.transition_if(job_id, user_id, CANCELLABLE_STATUSES, JOB_CANCELLED)
        if cancelled:
            logger.info(f"Job {job_id} cancelled by user {user_id}")
        return cancelled

    def delete_job(self, job_id: str, user_id: int) -> bool:
        def work(db):
            return db.query(PredictionJob).filter(PredictionJob.id == job_id).delete(synchronize_session=False)

        return self.router.on_user_shard(user_id, work) == 1

    def cleanup_old_jobs(self, older_than: datetime) -> int:
        """Deletes terminal jobs completed before `older_than` on every shard."""
        def work(db):
            return (
                db.query(PredictionJob)
                .filter(
                    PredictionJob.status.in_(TERMINAL_STATUSES),
                    PredictionJob.completed_at.isnot(None),
                    PredictionJob.completed_at < older_than,
                )
                .delete(synchronize_session=False)
            )

        deleted = sum(self.router.on_all_shards(work).values())
        if deleted:
            logger.info(f"Cleaned up {deleted} old jobs across all shards")
        return deleted

    # --- reads ---

    def get_job(self, job_id: str) -> Optional[PredictionJob]:
        # Job ids carry no user anchor
        return self.router.first_hit(lambda db: db.get(PredictionJob, job_id))

    def is_owned_by(self, job_id: str, user_id: int) -> bool:
        def work(db):
            return (
                db.query(PredictionJob)
                .filter(PredictionJob.id == job_id, PredictionJob.user_id == user_id)
                .count()
            )

        return self.router.on_user_shard(user_id, work) > 0

    def active_jobs_count(self, user_id: int) -> int:
        def work(db):
            return (
                db.query(PredictionJob)
                .filter(PredictionJob.user_id == user_id, PredictionJob.status.in_(ACTIVE_STATUSES))
                .count()
            )

        return self.router.on_user_shard(user_id, work)

    def get_jobs_by_user(self, user_id: int, limit: int = 20) -> List[PredictionJob]:
        def work(db):
            return (
                db.query(PredictionJob)
                .filter(PredictionJob.user_id == user_id)
                .order_by(PredictionJob.created_at.desc())
                .limit(limit)
                .all()
            )

        return self.router.on_user_shard(user_id, work)

    def get_jobs_by_user_and_status(self, user_id: int, status: str, limit: int = 20) -> List[PredictionJob]:
        def work(db):
            return (
                db.query(PredictionJob)
                .filter(PredictionJob.user_id == user_id, PredictionJob.status == status)
                .order_by(PredictionJob.created_at.desc())
                .limit(limit)
                .all()
            )

        return self.router.on_user_shard(user_id, work)

    def get_jobs_by_date_range(self, user_id: int, start: datetime, end: datetime) -> List[PredictionJob]:
        def work(db):
            return (
                db.query(PredictionJob)
                .filter(
                    PredictionJob.user_id == user_id,
                    PredictionJob.created_at >= start,
                    PredictionJob.created_at <= end,
                )
                .order_by(PredictionJob.created_at.desc())
                .all()
            )

        return self.router.on_user_shard(user_id, work)

    def get_jobs_by_status(self, status: str, limit: int = 50) -> List[PredictionJob]:
        """Cross-shard listing, oldest first, at most `limit` rows overall."""
        def work(db):
            return (
                db.query(PredictionJob)
                .filter(PredictionJob.status == status)
                .order_by(PredictionJob.created_at.asc())
                .limit(limit)
                .all()
            )

        jobs = []
        for rows in self.router.on_all_shards(work).values():
            jobs.extend(rows)
        jobs.sort(key=lambda j: j.created_at)
        return jobs[:limit]

    def get_pending_jobs(self, limit: int = 50) -> List[PredictionJob]:
        return self.get_jobs_by_status(JOB_PENDING, limit)

    def get_statistics(self, user_id: int) -> Dict[str, int]:
        def work(db):
            return (
                db.query(PredictionJob.status, func.count(PredictionJob.id))
                .filter(PredictionJob.user_id == user_id)
                .group_by(PredictionJob.status)
                .all()
            )

        stats = {status: 0 for status in JOB_STATUSES}
        for status, count in self.router.on_user_shard(user_id, work):
            stats[status] = count
        stats["total"] = sum(stats[s] for s in JOB_STATUSES)
        return stats
