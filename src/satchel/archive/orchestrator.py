"""Archive cache lookup, single-flight admission and build lifecycle.

Per gallery the cache moves through::

    NONE -> BUILDING -> READY -> STALE -> BUILDING -> READY
    BUILDING -> FAILED (after the last allowed attempt)

``get_or_build`` is the one entry point readers use. It never starts a
second build for a gallery that already has one pending or processing, and
it never blocks a reader on a refresh when an older archive can be served.
"""

from __future__ import annotations

import logging
import os
import socket
import uuid
from dataclasses import dataclass
from typing import Any, Callable, Optional

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from satchel.archive.assembler import DEFAULT_CHUNK_SIZE
from satchel.archive.assets import coerce_uuid, load_gallery
from satchel.archive.builder import ArchiveBuilder, ArchiveProgress, BuildOutcome
from satchel.archive.fetcher import BoundedFetcher
from satchel.archive.fingerprint import Fingerprint, FingerprintComputer
from satchel.archive.jobs import (
    ClaimedBuild,
    JobPolicy,
    admit_job,
    bump_priority,
    cancel_job,
    claim_job,
    claim_next_job,
    complete_job,
    fail_job,
    find_active_job,
    latest_completed_archive,
    latest_job,
    record_progress,
    sweep_overdue_jobs,
)
from satchel.archive.notifications import (
    Notifier,
    notify_archive_recipients,
    resend_archive_notification,
    retry_failed_notifications,
)
from satchel.errors import ArchiveNotFoundError, ValidationError
from satchel.metadata import (
    JOB_FAILED,
    JOB_PROCESSING,
    ArchiveJob,
    ArchiveNotification,
    GalleryArchive,
)
from satchel.storage import ArchiveStore, AssetSource

logger = logging.getLogger(__name__)

READY = "ready"
PENDING = "pending"
FAILED = "failed"


@dataclass
class ArchiveHandle:
    """Result of ``get_or_build``.

    ``ready`` carries a completed archive (possibly ``stale`` while a refresh
    runs); ``pending`` carries the job to poll; ``failed`` carries the error
    of the last allowed attempt.
    """

    status: str
    gallery_id: uuid.UUID
    archive: Optional[GalleryArchive] = None
    job_id: Optional[uuid.UUID] = None
    stale: bool = False
    created: bool = False
    error: Optional[str] = None

    @property
    def archive_id(self) -> Optional[uuid.UUID]:
        return self.archive.id if self.archive is not None else None

    @property
    def is_ready(self) -> bool:
        return self.status == READY


@dataclass
class ArchiveStatus:
    """Read-only view of a gallery's archive state."""

    state: str  # none, pending, processing, ready, stale, failed
    gallery_id: uuid.UUID
    fingerprint: Fingerprint
    archive: Optional[GalleryArchive] = None
    job: Optional[ArchiveJob] = None


def build_worker_id(prefix: str = "") -> str:
    worker_id = f"{socket.gethostname()}:{os.getpid()}:{uuid.uuid4().hex[:8]}"
    return f"{prefix}{worker_id}" if prefix else worker_id


class _ProgressRecorder:
    """Writes build progress to the job row, at most ``steps`` times per phase."""

    def __init__(self, db: Session, claimed: ClaimedBuild, *, steps: int = 20):
        self.db = db
        self.claimed = claimed
        self.steps = steps
        self._phase = None
        self._recorded = 0

    def __call__(self, progress: ArchiveProgress) -> None:
        stride = max(1, progress.total // self.steps)
        if (
            progress.phase == self._phase
            and progress.current < progress.total
            and progress.current - self._recorded < stride
        ):
            return
        self._phase = progress.phase
        self._recorded = progress.current
        try:
            record_progress(
                self.db,
                self.claimed,
                phase=progress.phase,
                current=progress.current,
                total=progress.total,
            )
        except SQLAlchemyError:
            self.db.rollback()
            logger.warning("Could not record progress for job %s", self.claimed.job_id, exc_info=True)


class ArchiveOrchestrator:
    """Decides between serving, joining, enqueueing and building archives."""

    def __init__(
        self,
        builder: ArchiveBuilder,
        fingerprints: FingerprintComputer,
        *,
        notifier: Optional[Notifier] = None,
        link_builder: Optional[Callable[[GalleryArchive], str]] = None,
        policy: Optional[JobPolicy] = None,
        inline_threshold: int = 20,
        default_priority: int = 0,
        regenerate_priority: int = 10,
        job_timeout_seconds: int = 1800,
        inline_timeout_seconds: int = 120,
        notification_max_attempts: int = 3,
        notification_backoff_seconds: int = 60,
    ):
        self.builder = builder
        self.fingerprints = fingerprints
        self.notifier = notifier
        self.link_builder = link_builder
        self.policy = policy or JobPolicy()
        self.inline_threshold = inline_threshold
        self.default_priority = default_priority
        self.regenerate_priority = regenerate_priority
        self.job_timeout_seconds = job_timeout_seconds
        self.inline_timeout_seconds = inline_timeout_seconds
        self.notification_max_attempts = notification_max_attempts
        self.notification_backoff_seconds = notification_backoff_seconds

    @classmethod
    def from_settings(
        cls,
        config: Any,
        *,
        store: ArchiveStore,
        asset_source: AssetSource,
        notifier: Optional[Notifier] = None,
        link_builder: Optional[Callable[[GalleryArchive], str]] = None,
    ) -> "ArchiveOrchestrator":
        fingerprints = FingerprintComputer(config.archive_fingerprint_policy)
        fetcher = BoundedFetcher(asset_source.load_bytes, concurrency=config.archive_fetch_concurrency)
        builder = ArchiveBuilder(
            store,
            fetcher,
            fingerprints,
            failure_tolerance=config.archive_fetch_failure_tolerance,
            chunk_size=config.archive_stream_chunk_size or DEFAULT_CHUNK_SIZE,
        )
        return cls(
            builder,
            fingerprints,
            notifier=notifier,
            link_builder=link_builder,
            policy=JobPolicy.from_settings(config),
            inline_threshold=config.archive_inline_threshold,
            default_priority=config.archive_default_priority,
            regenerate_priority=config.archive_regenerate_priority,
            job_timeout_seconds=config.archive_job_timeout_seconds,
            inline_timeout_seconds=config.archive_inline_timeout_seconds,
            notification_max_attempts=config.archive_notification_max_attempts,
            notification_backoff_seconds=config.archive_notification_retry_backoff_seconds,
        )

    # Reader entry points

    def get_or_build(self, db: Session, gallery_id: Any, *, force: bool = False) -> ArchiveHandle:
        gallery = load_gallery(db, gallery_id)
        current = self.fingerprints.fingerprint(db, gallery.id)
        if current.is_empty:
            raise ValidationError(f"Gallery {gallery.id} has no assets to archive")

        latest = latest_completed_archive(db, gallery.id)
        if not force and self.fingerprints.is_fresh(latest, current):
            return ArchiveHandle(status=READY, gallery_id=gallery.id, archive=latest)

        active = find_active_job(db, gallery.id)
        if active is not None:
            if force:
                bump_priority(db, active.id, self.regenerate_priority)
            return self._join(gallery.id, active, latest, force=force)

        if latest is not None and not force:
            # Stale: keep serving the old archive while a refresh runs in the background.
            job, created = admit_job(
                db,
                gallery.id,
                current,
                priority=self.default_priority,
                max_attempts=self.policy.max_attempts,
            )
            if created:
                settled = self._settle_admission(db, gallery.id, job, current)
                if settled is not None:
                    return settled
            logger.info("Serving stale archive %s for gallery %s; refresh job %s", latest.id, gallery.id, job.id)
            return ArchiveHandle(
                status=READY,
                gallery_id=gallery.id,
                archive=latest,
                job_id=job.id,
                stale=True,
                created=created,
            )

        priority = self.regenerate_priority if force else self.default_priority
        job, created = admit_job(db, gallery.id, current, priority=priority, max_attempts=self.policy.max_attempts)
        if not created:
            return self._join(gallery.id, job, latest, force=force)
        if not force:
            settled = self._settle_admission(db, gallery.id, job, current)
            if settled is not None:
                return settled

        if current.asset_count <= self.inline_threshold:
            return self._build_inline(db, gallery.id, job.id)

        logger.info(
            "Queued archive job %s for gallery %s (%s assets)",
            job.id,
            gallery.id,
            current.asset_count,
        )
        return ArchiveHandle(status=PENDING, gallery_id=gallery.id, job_id=job.id, created=True)

    def regenerate(self, db: Session, gallery_id: Any) -> ArchiveHandle:
        return self.get_or_build(db, gallery_id, force=True)

    def get_status(self, db: Session, gallery_id: Any) -> ArchiveStatus:
        gallery = load_gallery(db, gallery_id)
        current = self.fingerprints.fingerprint(db, gallery.id)
        latest = latest_completed_archive(db, gallery.id)
        active = find_active_job(db, gallery.id)

        if latest is not None:
            state = "ready" if self.fingerprints.is_fresh(latest, current) else "stale"
            return ArchiveStatus(state=state, gallery_id=gallery.id, fingerprint=current, archive=latest, job=active)
        if active is not None:
            state = "processing" if active.status == JOB_PROCESSING else "pending"
            return ArchiveStatus(state=state, gallery_id=gallery.id, fingerprint=current, job=active)
        last = latest_job(db, gallery.id)
        if last is not None and last.status == JOB_FAILED:
            return ArchiveStatus(state="failed", gallery_id=gallery.id, fingerprint=current, job=last)
        return ArchiveStatus(state="none", gallery_id=gallery.id, fingerprint=current)

    # Build execution

    def run_claimed(self, db: Session, claimed: ClaimedBuild) -> BuildOutcome:
        """Build a claimed job and record the result."""
        outcome = self.builder.build(db, claimed, on_progress=_ProgressRecorder(db, claimed))
        # End the read transaction held across the build.
        db.rollback()

        if outcome.success:
            finalized = complete_job(
                db,
                claimed,
                fingerprint=outcome.fingerprint,
                image_count=outcome.image_count,
                skipped_count=outcome.skipped_count,
                file_size_bytes=outcome.file_size_bytes,
                checksum=outcome.checksum,
            )
            if not finalized:
                return BuildOutcome(success=False, error_text="Build finished after its claim was released")
            self.notify(db, claimed.archive_id)
            return outcome

        fail_job(db, claimed, outcome.error_text or "Archive build failed", retryable=outcome.retryable, policy=self.policy)
        return outcome

    def process_next(self, db: Session, *, worker_id: Optional[str] = None) -> Optional[BuildOutcome]:
        claimed = claim_next_job(db, worker_id=worker_id or build_worker_id(), timeout_seconds=self.job_timeout_seconds)
        if claimed is None:
            return None
        return self.run_claimed(db, claimed)

    def sweep(self, db: Session) -> int:
        return sweep_overdue_jobs(db, policy=self.policy)

    def cancel(self, db: Session, job_id: Any) -> bool:
        return cancel_job(db, job_id)

    def notify(self, db: Session, archive_id: uuid.UUID) -> int:
        if self.notifier is None:
            return 0
        archive = db.get(GalleryArchive, archive_id)
        if archive is None:
            return 0
        try:
            return notify_archive_recipients(db, archive, self.notifier, link_builder=self.link_builder)
        except Exception:
            db.rollback()
            logger.exception("Notification dispatch failed for archive %s", archive_id)
            return 0

    def retry_notifications(self, db: Session, *, limit: int = 50) -> int:
        if self.notifier is None:
            return 0
        return retry_failed_notifications(
            db,
            self.notifier,
            link_builder=self.link_builder,
            max_attempts=self.notification_max_attempts,
            backoff_seconds=self.notification_backoff_seconds,
            limit=limit,
        )

    def resend_notification(self, db: Session, archive_id: Any, email: str) -> ArchiveNotification:
        """Send the archive-ready message for ``archive_id`` to ``email`` again."""
        if self.notifier is None:
            raise ValidationError("Notifications are not configured")
        archive = db.get(GalleryArchive, coerce_uuid(archive_id, "archive id"))
        if archive is None:
            raise ArchiveNotFoundError(f"Archive {archive_id} not found")
        return resend_archive_notification(db, archive, self.notifier, email, link_builder=self.link_builder)

    # Internals

    def _settle_admission(
        self,
        db: Session,
        gallery_id: uuid.UUID,
        job: ArchiveJob,
        current: Fingerprint,
    ) -> Optional[ArchiveHandle]:
        """Drop a just-admitted job when a build for the same content finished first.

        An admission only commits while no other job is active, so any build
        that raced past the earlier freshness check is already completed here.
        """
        latest = latest_completed_archive(db, gallery_id)
        if not self.fingerprints.is_fresh(latest, current):
            return None
        cancel_job(db, job.id, reason=f"Superseded by archive {latest.id}")
        logger.info("Archive job %s superseded by archive %s for gallery %s", job.id, latest.id, gallery_id)
        return ArchiveHandle(status=READY, gallery_id=gallery_id, archive=latest)

    def _join(
        self,
        gallery_id: uuid.UUID,
        job: ArchiveJob,
        latest: Optional[GalleryArchive],
        *,
        force: bool,
    ) -> ArchiveHandle:
        if latest is not None and not force:
            return ArchiveHandle(status=READY, gallery_id=gallery_id, archive=latest, job_id=job.id, stale=True)
        return ArchiveHandle(status=PENDING, gallery_id=gallery_id, job_id=job.id)

    def _build_inline(self, db: Session, gallery_id: uuid.UUID, job_id: uuid.UUID) -> ArchiveHandle:
        claimed = claim_job(
            db,
            job_id,
            worker_id=build_worker_id("inline:"),
            timeout_seconds=self.inline_timeout_seconds,
        )
        if claimed is None:
            # A worker got there first.
            return ArchiveHandle(status=PENDING, gallery_id=gallery_id, job_id=job_id, created=True)

        outcome = self.run_claimed(db, claimed)
        if outcome.success:
            archive = db.get(GalleryArchive, claimed.archive_id)
            return ArchiveHandle(status=READY, gallery_id=gallery_id, archive=archive, job_id=job_id, created=True)

        job = db.get(ArchiveJob, job_id)
        if job is not None and job.status == JOB_FAILED:
            return ArchiveHandle(
                status=FAILED,
                gallery_id=gallery_id,
                job_id=job_id,
                created=True,
                error=job.last_error,
            )
        # Requeued with backoff; the worker takes the next attempt.
        return ArchiveHandle(status=PENDING, gallery_id=gallery_id, job_id=job_id, created=True)
