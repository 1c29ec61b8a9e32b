"""Archive build job state transitions.

All transitions out of ``processing`` are conditional on the caller still
owning the claim (same status, worker id and attempt number), so a build that
lost its claim to the deadline sweeper cannot overwrite newer state, and an
overdue attempt is failed at most once.
"""

from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Optional

from sqlalchemy import func
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from satchel.archive.fingerprint import Fingerprint
from satchel.metadata import (
    ACTIVE_STATUSES,
    ARCHIVE_COMPLETED,
    ARCHIVE_FAILED,
    ARCHIVE_PENDING,
    ARCHIVE_PROCESSING,
    JOB_CANCELLED,
    JOB_COMPLETED,
    JOB_FAILED,
    JOB_PENDING,
    JOB_PROCESSING,
    PROGRESS_COMPLETED,
    ArchiveJob,
    GalleryArchive,
)

logger = logging.getLogger(__name__)

_ADMIT_ATTEMPTS = 2


def _now_utc() -> datetime:
    # Stored columns are naive UTC.
    return datetime.now(timezone.utc).replace(tzinfo=None)


@dataclass
class JobPolicy:
    max_attempts: int = 3
    backoff_seconds: int = 2
    backoff_max_seconds: int = 300

    @classmethod
    def from_settings(cls, config: Any) -> "JobPolicy":
        return cls(
            max_attempts=int(config.archive_max_attempts),
            backoff_seconds=int(config.archive_retry_backoff_seconds),
            backoff_max_seconds=int(config.archive_retry_backoff_max_seconds),
        )

    def backoff_for(self, attempts_used: int) -> int:
        return min(self.backoff_seconds * (2 ** max(attempts_used - 1, 0)), self.backoff_max_seconds)


@dataclass
class ClaimedBuild:
    job_id: uuid.UUID
    archive_id: uuid.UUID
    gallery_id: uuid.UUID
    storage_path: str
    worker_id: str
    attempt_no: int
    max_attempts: int
    deadline: datetime


def archive_storage_path(gallery_id: Any, version: int) -> str:
    return f"galleries/{gallery_id}/archives/{version}.zip"


def find_active_job(db: Session, gallery_id: uuid.UUID) -> Optional[ArchiveJob]:
    return (
        db.query(ArchiveJob)
        .filter(ArchiveJob.gallery_id == gallery_id, ArchiveJob.status.in_(ACTIVE_STATUSES))
        .first()
    )


def latest_completed_archive(db: Session, gallery_id: uuid.UUID) -> Optional[GalleryArchive]:
    return (
        db.query(GalleryArchive)
        .filter(GalleryArchive.gallery_id == gallery_id, GalleryArchive.status == ARCHIVE_COMPLETED)
        .order_by(GalleryArchive.version.desc())
        .first()
    )


def latest_job(db: Session, gallery_id: uuid.UUID) -> Optional[ArchiveJob]:
    return (
        db.query(ArchiveJob)
        .filter(ArchiveJob.gallery_id == gallery_id)
        .order_by(ArchiveJob.created_at.desc())
        .first()
    )


def next_archive_version(db: Session, gallery_id: uuid.UUID) -> int:
    current = db.query(func.max(GalleryArchive.version)).filter(GalleryArchive.gallery_id == gallery_id).scalar()
    return int(current or 0) + 1


def admit_job(
    db: Session,
    gallery_id: uuid.UUID,
    fingerprint: Fingerprint,
    *,
    priority: int,
    max_attempts: int,
) -> tuple[ArchiveJob, bool]:
    """Create a pending archive and job unless one is already active.

    Returns ``(job, created)``. Concurrent admissions for the same gallery
    collide on the active-job unique index; the loser gets the winner's job.
    """
    for attempt in range(_ADMIT_ATTEMPTS):
        existing = find_active_job(db, gallery_id)
        if existing is not None:
            return existing, False

        version = next_archive_version(db, gallery_id)
        now = _now_utc()
        archive = GalleryArchive(
            id=uuid.uuid4(),
            gallery_id=gallery_id,
            version=version,
            storage_path=archive_storage_path(gallery_id, version),
            fingerprint=fingerprint.value,
            image_count=fingerprint.asset_count,
            status=ARCHIVE_PENDING,
            created_at=now,
        )
        job = ArchiveJob(
            id=uuid.uuid4(),
            gallery_id=gallery_id,
            priority=priority,
            attempts=0,
            max_attempts=max_attempts,
            status=JOB_PENDING,
            run_at=now,
            created_at=now,
        )
        job.archive = archive
        db.add(archive)
        db.add(job)
        try:
            db.commit()
        except IntegrityError:
            db.rollback()
            existing = find_active_job(db, gallery_id)
            if existing is not None:
                logger.info(
                    "Concurrent archive admission for gallery %s joined job %s",
                    gallery_id,
                    existing.id,
                )
                return existing, False
            if attempt + 1 >= _ADMIT_ATTEMPTS:
                raise
            continue

        logger.info(
            "Admitted archive job %s for gallery %s (archive=%s version=%s priority=%s assets=%s)",
            job.id,
            gallery_id,
            archive.id,
            version,
            priority,
            fingerprint.asset_count,
        )
        return job, True
    raise RuntimeError(f"Could not admit archive job for gallery {gallery_id}")


def bump_priority(db: Session, job_id: uuid.UUID, priority: int) -> bool:
    updated = (
        db.query(ArchiveJob)
        .filter(
            ArchiveJob.id == job_id,
            ArchiveJob.status == JOB_PENDING,
            ArchiveJob.priority < priority,
        )
        .update({ArchiveJob.priority: priority}, synchronize_session=False)
    )
    db.commit()
    if updated:
        logger.info("Raised priority of archive job %s to %s", job_id, priority)
    return bool(updated)


def claim_job(
    db: Session,
    job_id: uuid.UUID,
    *,
    worker_id: str,
    timeout_seconds: int,
) -> Optional[ClaimedBuild]:
    """Atomically move one pending job to processing. None if someone else won."""
    now = _now_utc()
    deadline = now + timedelta(seconds=max(1, int(timeout_seconds)))
    updated = (
        db.query(ArchiveJob)
        .filter(
            ArchiveJob.id == job_id,
            ArchiveJob.status == JOB_PENDING,
            ArchiveJob.run_at <= now,
        )
        .update(
            {
                ArchiveJob.status: JOB_PROCESSING,
                ArchiveJob.attempts: ArchiveJob.attempts + 1,
                ArchiveJob.claimed_by: worker_id,
                ArchiveJob.claimed_at: now,
                ArchiveJob.started_at: now,
                ArchiveJob.deadline: deadline,
                ArchiveJob.finished_at: None,
                ArchiveJob.progress_phase: None,
                ArchiveJob.progress_current: 0,
                ArchiveJob.progress_total: 0,
                ArchiveJob.progress_updated_at: None,
            },
            synchronize_session=False,
        )
    )
    if updated != 1:
        db.rollback()
        return None

    archive_id = db.query(ArchiveJob.archive_id).filter(ArchiveJob.id == job_id).scalar()
    db.query(GalleryArchive).filter(GalleryArchive.id == archive_id).update(
        {GalleryArchive.status: ARCHIVE_PROCESSING},
        synchronize_session=False,
    )
    db.commit()

    job = db.get(ArchiveJob, job_id)
    claimed = ClaimedBuild(
        job_id=job.id,
        archive_id=job.archive_id,
        gallery_id=job.gallery_id,
        storage_path=job.archive.storage_path,
        worker_id=worker_id,
        attempt_no=int(job.attempts),
        max_attempts=int(job.max_attempts),
        deadline=job.deadline,
    )
    logger.info(
        "Claimed archive job %s gallery=%s attempt=%s/%s worker=%s",
        claimed.job_id,
        claimed.gallery_id,
        claimed.attempt_no,
        claimed.max_attempts,
        worker_id,
    )
    return claimed


def claim_next_job(
    db: Session,
    *,
    worker_id: str,
    timeout_seconds: int,
    scan_limit: int = 10,
) -> Optional[ClaimedBuild]:
    """Claim the most urgent eligible job: priority first, then FIFO."""
    now = _now_utc()
    query = (
        db.query(ArchiveJob.id)
        .filter(ArchiveJob.status == JOB_PENDING, ArchiveJob.run_at <= now)
        .order_by(ArchiveJob.priority.desc(), ArchiveJob.run_at.asc(), ArchiveJob.created_at.asc())
    )
    if db.bind is not None and db.bind.dialect.name == "postgresql":
        query = query.with_for_update(skip_locked=True)
    candidates = query.limit(scan_limit).all()
    for (job_id,) in candidates:
        claimed = claim_job(db, job_id, worker_id=worker_id, timeout_seconds=timeout_seconds)
        if claimed is not None:
            return claimed
    return None


def _owned(db: Session, claimed: ClaimedBuild):
    return db.query(ArchiveJob).filter(
        ArchiveJob.id == claimed.job_id,
        ArchiveJob.status == JOB_PROCESSING,
        ArchiveJob.claimed_by == claimed.worker_id,
        ArchiveJob.attempts == claimed.attempt_no,
    )


def record_progress(db: Session, claimed: ClaimedBuild, *, phase: str, current: int, total: int) -> bool:
    """Store the build phase on the job while the claim is still held."""
    updated = _owned(db, claimed).update(
        {
            ArchiveJob.progress_phase: phase,
            ArchiveJob.progress_current: current,
            ArchiveJob.progress_total: total,
            ArchiveJob.progress_updated_at: _now_utc(),
        },
        synchronize_session=False,
    )
    db.commit()
    return updated == 1


def complete_job(
    db: Session,
    claimed: ClaimedBuild,
    *,
    fingerprint: str,
    image_count: int,
    skipped_count: int,
    file_size_bytes: int,
    checksum: str,
) -> bool:
    now = _now_utc()
    updated = _owned(db, claimed).update(
        {
            ArchiveJob.status: JOB_COMPLETED,
            ArchiveJob.finished_at: now,
            ArchiveJob.claimed_by: None,
            ArchiveJob.deadline: None,
            ArchiveJob.last_error: None,
            ArchiveJob.progress_phase: PROGRESS_COMPLETED,
            ArchiveJob.progress_current: image_count + skipped_count,
            ArchiveJob.progress_total: image_count + skipped_count,
            ArchiveJob.progress_updated_at: now,
        },
        synchronize_session=False,
    )
    if updated != 1:
        db.rollback()
        logger.warning(
            "Archive job %s attempt %s finished after losing its claim; result discarded",
            claimed.job_id,
            claimed.attempt_no,
        )
        return False

    db.query(GalleryArchive).filter(GalleryArchive.id == claimed.archive_id).update(
        {
            GalleryArchive.status: ARCHIVE_COMPLETED,
            GalleryArchive.fingerprint: fingerprint,
            GalleryArchive.image_count: image_count,
            GalleryArchive.skipped_count: skipped_count,
            GalleryArchive.file_size_bytes: file_size_bytes,
            GalleryArchive.checksum: checksum,
            GalleryArchive.completed_at: now,
            GalleryArchive.error_message: None,
        },
        synchronize_session=False,
    )
    db.commit()
    logger.info(
        "Archive job %s completed: archive=%s entries=%s skipped=%s bytes=%s",
        claimed.job_id,
        claimed.archive_id,
        image_count,
        skipped_count,
        file_size_bytes,
    )
    return True


def fail_job(
    db: Session,
    claimed: ClaimedBuild,
    error_text: str,
    *,
    retryable: bool,
    policy: JobPolicy,
) -> Optional[str]:
    """Requeue with backoff or fail terminally. Returns the new job status.

    Returns None when the claim was already lost.
    """
    now = _now_utc()
    attempts_used = int(claimed.attempt_no)
    max_attempts = int(claimed.max_attempts or policy.max_attempts)
    should_requeue = bool(retryable and attempts_used < max_attempts)

    if should_requeue:
        delay_seconds = policy.backoff_for(attempts_used)
        job_values = {
            ArchiveJob.status: JOB_PENDING,
            ArchiveJob.run_at: now + timedelta(seconds=delay_seconds),
            ArchiveJob.claimed_by: None,
            ArchiveJob.claimed_at: None,
            ArchiveJob.started_at: None,
            ArchiveJob.deadline: None,
            ArchiveJob.last_error: error_text,
            ArchiveJob.progress_phase: None,
            ArchiveJob.progress_current: 0,
        }
        archive_values = {GalleryArchive.status: ARCHIVE_PENDING, GalleryArchive.error_message: error_text}
        new_status = JOB_PENDING
    else:
        job_values = {
            ArchiveJob.status: JOB_FAILED,
            ArchiveJob.finished_at: now,
            ArchiveJob.claimed_by: None,
            ArchiveJob.deadline: None,
            ArchiveJob.last_error: error_text,
        }
        archive_values = {GalleryArchive.status: ARCHIVE_FAILED, GalleryArchive.error_message: error_text}
        new_status = JOB_FAILED

    updated = _owned(db, claimed).update(job_values, synchronize_session=False)
    if updated != 1:
        db.rollback()
        logger.info(
            "Archive job %s attempt %s already finalized elsewhere; ignoring failure: %s",
            claimed.job_id,
            claimed.attempt_no,
            error_text,
        )
        return None

    db.query(GalleryArchive).filter(GalleryArchive.id == claimed.archive_id).update(
        archive_values,
        synchronize_session=False,
    )
    db.commit()

    if should_requeue:
        logger.warning(
            "Archive job %s failed (attempt %s/%s), requeued in %ss: %s",
            claimed.job_id,
            attempts_used,
            max_attempts,
            delay_seconds,
            error_text,
        )
    else:
        logger.error(
            "Archive job %s failed permanently after attempt %s/%s: %s",
            claimed.job_id,
            attempts_used,
            max_attempts,
            error_text,
        )
    return new_status


def sweep_overdue_jobs(db: Session, *, policy: JobPolicy, limit: int = 100) -> int:
    """Fail or requeue processing jobs whose deadline has passed."""
    now = _now_utc()
    overdue = (
        db.query(ArchiveJob)
        .filter(ArchiveJob.status == JOB_PROCESSING, ArchiveJob.deadline < now)
        .order_by(ArchiveJob.deadline.asc())
        .limit(limit)
        .all()
    )
    snapshots = [
        ClaimedBuild(
            job_id=job.id,
            archive_id=job.archive_id,
            gallery_id=job.gallery_id,
            storage_path="",
            worker_id=job.claimed_by,
            attempt_no=int(job.attempts),
            max_attempts=int(job.max_attempts),
            deadline=job.deadline,
        )
        for job in overdue
    ]
    db.rollback()

    released = 0
    for claimed in snapshots:
        error_text = f"Build exceeded deadline {claimed.deadline.isoformat()} (worker {claimed.worker_id})"
        if fail_job(db, claimed, error_text, retryable=True, policy=policy) is not None:
            released += 1
    if released:
        logger.warning("Deadline sweep released %s overdue archive job(s)", released)
    return released


def cancel_job(db: Session, job_id: uuid.UUID, *, reason: str = "cancelled") -> bool:
    now = _now_utc()
    archive_id = db.query(ArchiveJob.archive_id).filter(ArchiveJob.id == job_id).scalar()
    updated = (
        db.query(ArchiveJob)
        .filter(ArchiveJob.id == job_id, ArchiveJob.status.in_(ACTIVE_STATUSES))
        .update(
            {
                ArchiveJob.status: JOB_CANCELLED,
                ArchiveJob.finished_at: now,
                ArchiveJob.claimed_by: None,
                ArchiveJob.deadline: None,
                ArchiveJob.last_error: reason,
            },
            synchronize_session=False,
        )
    )
    if updated != 1:
        db.rollback()
        return False
    db.query(GalleryArchive).filter(GalleryArchive.id == archive_id).update(
        {GalleryArchive.status: ARCHIVE_FAILED, GalleryArchive.error_message: reason},
        synchronize_session=False,
    )
    db.commit()
    logger.info("Archive job %s cancelled: %s", job_id, reason)
    return True
