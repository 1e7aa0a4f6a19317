import uuid
from datetime import timedelta

import pytest

from diabetify.database.database import utcnow
from diabetify.database.models import (
    JOB_CANCELLED, JOB_COMPLETED, JOB_FAILED, JOB_PENDING, JOB_PROCESSING, JOB_SUBMITTED,
    TERMINAL_STATUSES, PredictionJob,
)
from diabetify.errors import InvalidTransition, NotFound
from diabetify.repositories.jobs import JobStore


@pytest.fixture
def jobs(router):
    return JobStore(router)


def new_job(jobs, user_id, is_what_if=False, created_at=None):
    job = PredictionJob(id=str(uuid.uuid4()), user_id=user_id, is_what_if=is_what_if, created_at=created_at)
    return jobs.save_job(job)


def test_save_job_defaults_to_pending(jobs):
    job = new_job(jobs, 1)
    stored = jobs.get_job(job.id)
    assert stored.status == JOB_PENDING
    assert stored.completed_at is None
    assert stored.created_at is not None


def test_get_job_finds_jobs_on_any_shard(jobs, router):
    near = new_job(jobs, 1)
    far = new_job(jobs, 5001)
    assert jobs.get_job(near.id).user_id == 1
    assert jobs.get_job(far.id).user_id == 5001
    assert router.shards()["shard1"].run(lambda db: db.get(PredictionJob, far.id)) is None
    assert jobs.get_job("missing") is None


def test_full_lifecycle_sets_completed_at(jobs):
    job = new_job(jobs, 1)
    for status in (JOB_PROCESSING, JOB_SUBMITTED):
        updated = jobs.update_status(job.id, status, user_id=1)
        assert updated.completed_at is None
    done = jobs.update_status(job.id, JOB_COMPLETED, prediction_id=11, user_id=1)
    assert done.completed_at is not None
    assert done.prediction_id == 11


@pytest.mark.parametrize("path", [
    (JOB_CANCELLED,),
    (JOB_PROCESSING, JOB_CANCELLED),
    (JOB_PROCESSING, JOB_FAILED),
    (JOB_PROCESSING, JOB_SUBMITTED, JOB_FAILED),
    (JOB_PROCESSING, JOB_SUBMITTED, JOB_COMPLETED),
])
def test_terminal_jobs_always_have_completed_at(jobs, path):
    job = new_job(jobs, 2)
    for status in path:
        job = jobs.update_status(job.id, status)
    assert job.status in TERMINAL_STATUSES
    assert job.completed_at is not None


@pytest.mark.parametrize("path,bad", [
    ((), JOB_SUBMITTED),
    ((), JOB_COMPLETED),
    ((JOB_PROCESSING, JOB_SUBMITTED), JOB_CANCELLED),
    ((JOB_CANCELLED,), JOB_FAILED),
    ((JOB_PROCESSING, JOB_FAILED), JOB_COMPLETED),
    ((JOB_PROCESSING, JOB_SUBMITTED, JOB_COMPLETED), JOB_PENDING),
])
def test_transitions_outside_the_machine_are_refused(jobs, path, bad):
    job = new_job(jobs, 3)
    for status in path:
        jobs.update_status(job.id, status, user_id=3)
    with pytest.raises(InvalidTransition):
        jobs.update_status(job.id, bad, user_id=3)


def test_repeated_status_update_only_moves_updated_at(jobs):
    job = new_job(jobs, 4)
    jobs.update_status(job.id, JOB_PROCESSING, user_id=4)
    jobs.update_status(job.id, JOB_FAILED, error_message="Timeout", user_id=4)
    first = jobs.get_job(job.id).to_dict()
    jobs.update_status(job.id, JOB_FAILED, user_id=4)
    second = jobs.get_job(job.id).to_dict()

    first.pop("updatedAt")
    second.pop("updatedAt")
    assert first == second


def test_update_status_of_unknown_job_is_not_found(jobs):
    with pytest.raises(NotFound):
        jobs.update_status("nope", JOB_PROCESSING)
    with pytest.raises(NotFound):
        jobs.update_status("nope", JOB_PROCESSING, user_id=1)


def test_transition_if_is_compare_and_set(jobs):
    job = new_job(jobs, 5)
    assert jobs.transition_if(job.id, 5, (JOB_PENDING,), JOB_PROCESSING)
    assert not jobs.transition_if(job.id, 5, (JOB_PENDING,), JOB_PROCESSING)
    assert jobs.get_job(job.id).status == JOB_PROCESSING


def test_cancel_only_from_pending_or_processing(jobs):
    pending = new_job(jobs, 6)
    assert jobs.cancel_job(pending.id, 6)
    cancelled = jobs.get_job(pending.id)
    assert cancelled.status == JOB_CANCELLED
    assert cancelled.completed_at is not None

    submitted = new_job(jobs, 6)
    jobs.update_status(submitted.id, JOB_PROCESSING, user_id=6)
    jobs.update_status(submitted.id, JOB_SUBMITTED, user_id=6)
    assert not jobs.cancel_job(submitted.id, 6)
    assert jobs.get_job(submitted.id).status == JOB_SUBMITTED


def test_active_jobs_count_includes_submitted(jobs):
    a, b, c, d = (new_job(jobs, 7) for _ in range(4))
    jobs.update_status(b.id, JOB_PROCESSING, user_id=7)
    jobs.update_status(c.id, JOB_PROCESSING, user_id=7)
    jobs.update_status(c.id, JOB_SUBMITTED, user_id=7)
    jobs.cancel_job(d.id, 7)
    assert jobs.active_jobs_count(7) == 3
    assert jobs.active_jobs_count(8) == 0


def test_user_queries(jobs):
    old = new_job(jobs, 9, created_at=utcnow() - timedelta(days=3))
    recent = new_job(jobs, 9)
    jobs.cancel_job(recent.id, 9)
    new_job(jobs, 10)

    assert [j.id for j in jobs.get_jobs_by_user(9)] == [recent.id, old.id]
    assert [j.id for j in jobs.get_jobs_by_user(9, limit=1)] == [recent.id]
    assert [j.id for j in jobs.get_jobs_by_user_and_status(9, JOB_CANCELLED)] == [recent.id]

    window = jobs.get_jobs_by_date_range(9, utcnow() - timedelta(days=4), utcnow() - timedelta(days=2))
    assert [j.id for j in window] == [old.id]

    assert jobs.is_owned_by(old.id, 9)
    assert not jobs.is_owned_by(old.id, 10)


def test_statistics_per_status(jobs):
    new_job(jobs, 11)
    done = new_job(jobs, 11)
    for status in (JOB_PROCESSING, JOB_SUBMITTED, JOB_COMPLETED):
        jobs.update_status(done.id, status, user_id=11)

    stats = jobs.get_statistics(11)
    assert stats[JOB_PENDING] == 1
    assert stats[JOB_COMPLETED] == 1
    assert stats[JOB_FAILED] == 0
    assert stats["total"] == 2


def test_pending_jobs_span_shards_oldest_first(jobs):
    first = new_job(jobs, 5005, created_at=utcnow() - timedelta(minutes=5))
    second = new_job(jobs, 12, created_at=utcnow() - timedelta(minutes=1))
    taken = new_job(jobs, 12)
    jobs.update_status(taken.id, JOB_PROCESSING, user_id=12)

    assert [j.id for j in jobs.get_pending_jobs()] == [first.id, second.id]
    assert [j.id for j in jobs.get_pending_jobs(limit=1)] == [first.id]


def test_cleanup_removes_only_old_terminal_jobs(jobs, router):
    stale = new_job(jobs, 13)
    jobs.cancel_job(stale.id, 13)
    fresh = new_job(jobs, 5013)
    jobs.cancel_job(fresh.id, 5013)
    active = new_job(jobs, 5013)

    def backdate(db):
        db.get(PredictionJob, stale.id).completed_at = utcnow() - timedelta(days=8)

    router.on_user_shard(13, backdate)
    deleted = jobs.cleanup_old_jobs(utcnow() - timedelta(days=7))

    assert deleted == 1
    assert jobs.get_job(stale.id) is None
    assert jobs.get_job(fresh.id) is not None
    assert jobs.get_job(active.id) is not None


def test_delete_job(jobs):
    job = new_job(jobs, 14)
    assert jobs.delete_job(job.id, 14)
    assert not jobs.delete_job(job.id, 14)
    assert jobs.get_job(job.id) is None
