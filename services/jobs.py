import asyncio
from datetime import timedelta

from loguru import logger

import config
from database import for_update, run_after_commit, discard_after_commit
from models.common import utcnow
from models.job import ScheduledJob, JobStatus

# kind -> handler(db, job, now) returning True when it changed something
_handlers = {}


def register(kind: str):
    def decorator(fn):
        _handlers[kind] = fn
        return fn
    return decorator


def schedule_job(db, kind: str, entity_id: int, run_at, payload=None) -> ScheduledJob:
    job = ScheduledJob(kind=kind, entity_id=entity_id, run_at=run_at, payload=payload or {})
    db.add(job)
    return job


def pending_jobs(db, kind: str, entity_id: int):
    return db.query(ScheduledJob).filter(
        ScheduledJob.kind == kind,
        ScheduledJob.entity_id == entity_id,
        ScheduledJob.status == JobStatus.PENDING,
    ).all()


def cancel_jobs(db, kind: str, entity_id: int):
    for job in pending_jobs(db, kind, entity_id):
        job.status = JobStatus.SKIPPED
        job.finished_at = utcnow()


def run_due_jobs(session_factory, now=None) -> int:
    """Runs every pending job whose time has come, one transaction per job."""
    now = now or utcnow()
    db = session_factory()
    try:
        due = db.query(ScheduledJob.id).filter(
            ScheduledJob.status == JobStatus.PENDING,
            ScheduledJob.run_at <= now,
        ).order_by(ScheduledJob.run_at, ScheduledJob.id).all()
    finally:
        db.close()

    for (job_id,) in due:
        _run_one(session_factory, job_id, now)
    return len(due)


def _run_one(session_factory, job_id: int, now):
    db = session_factory()
    try:
        job = for_update(db.query(ScheduledJob).filter(
            ScheduledJob.id == job_id,
            ScheduledJob.status == JobStatus.PENDING,
        )).first()
        if not job:
            return

        handler = _handlers.get(job.kind)
        job.attempts = (job.attempts or 0) + 1
        if handler is None:
            job.status = JobStatus.FAILED
            job.last_error = f"no handler registered for {job.kind}"
            db.commit()
            logger.error(f"Job {job_id}: no handler for {job.kind}")
            return

        applied = handler(db, job, now)
        job.status = JobStatus.DONE if applied else JobStatus.SKIPPED
        job.finished_at = now
        db.commit()
        run_after_commit(db)
        logger.info(f"Job {job_id} ({job.kind} #{job.entity_id}) {'done' if applied else 'skipped'}")
    except Exception as e:
        db.rollback()
        discard_after_commit(db)
        logger.exception(f"Job {job_id} failed: {e}")
        _record_failure(db, job_id, now, e)
    finally:
        db.close()


def _record_failure(db, job_id: int, now, error: Exception):
    job = db.query(ScheduledJob).filter(ScheduledJob.id == job_id).first()
    if not job:
        return
    job.attempts = (job.attempts or 0) + 1
    job.last_error = str(error)
    if job.attempts >= config.JOB_MAX_ATTEMPTS:
        job.status = JobStatus.FAILED
        job.finished_at = now
    else:
        job.run_at = now + timedelta(minutes=job.attempts)
    db.commit()


async def run_forever(session_factory, interval: int = None):
    interval = interval or config.JOB_POLL_SECONDS
    while True:
        try:
            run_due_jobs(session_factory)
        except Exception as e:
            logger.exception(f"Job runner error: {e}")
        await asyncio.sleep(interval)
