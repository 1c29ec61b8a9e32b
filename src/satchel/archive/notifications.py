"""Archive-ready notifications, delivered at most once per recipient.

Every send is recorded in ``archive_notifications``. Failed rows are picked
up again by ``retry_failed_notifications`` with exponential backoff until
their attempts run out; an owner can also resend to one address by hand.
"""

from __future__ import annotations

import logging
import uuid
from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Callable, Optional

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from satchel.errors import NotificationError, ValidationError
from satchel.metadata import (
    ARCHIVE_COMPLETED,
    NOTIFICATION_FAILED,
    NOTIFICATION_SENDING,
    NOTIFICATION_SENT,
    ArchiveNotification,
    Gallery,
    GalleryArchive,
    GalleryClient,
)

logger = logging.getLogger(__name__)

LinkBuilder = Callable[[GalleryArchive], str]


@dataclass(frozen=True)
class Recipient:
    email: str
    name: Optional[str] = None


@dataclass(frozen=True)
class ArchiveReference:
    """What a recipient is told about a finished archive."""

    archive_id: uuid.UUID
    gallery_id: uuid.UUID
    gallery_title: str
    version: int
    image_count: int
    file_size_bytes: Optional[int]
    download_url: Optional[str] = None


class Notifier(ABC):
    @abstractmethod
    def notify(self, recipient: Recipient, reference: ArchiveReference) -> None:
        """Deliver one notification; raise NotificationError on failure."""


def _now_utc() -> datetime:
    return datetime.now(timezone.utc).replace(tzinfo=None)


def _normalize_email(email: Optional[str]) -> str:
    return (email or "").strip().lower()


def archive_recipients(db: Session, gallery: Gallery) -> list[Recipient]:
    """Opted-in clients plus the owner, de-duplicated by email."""
    candidates = []
    if gallery.owner_email:
        candidates.append(Recipient(email=gallery.owner_email, name=None))
    clients = (
        db.query(GalleryClient)
        .filter(GalleryClient.gallery_id == gallery.id, GalleryClient.notify_on_archive.is_(True))
        .order_by(GalleryClient.created_at.asc(), GalleryClient.email.asc())
        .all()
    )
    candidates.extend(Recipient(email=client.email, name=client.name) for client in clients)

    seen = set()
    recipients = []
    for candidate in candidates:
        key = _normalize_email(candidate.email)
        if not key or key in seen:
            continue
        seen.add(key)
        recipients.append(Recipient(email=key, name=candidate.name))
    return recipients


def _recipient_for(db: Session, gallery: Gallery, email: str) -> Recipient:
    clients = db.query(GalleryClient).filter(GalleryClient.gallery_id == gallery.id).all()
    for candidate in clients:
        if _normalize_email(candidate.email) == email:
            return Recipient(email=email, name=candidate.name)
    return Recipient(email=email)


def _reference(gallery: Gallery, archive: GalleryArchive, link_builder: Optional[LinkBuilder]) -> ArchiveReference:
    return ArchiveReference(
        archive_id=archive.id,
        gallery_id=gallery.id,
        gallery_title=gallery.title,
        version=archive.version,
        image_count=archive.image_count,
        file_size_bytes=archive.file_size_bytes,
        download_url=link_builder(archive) if link_builder else None,
    )


def _deliver(
    db: Session,
    record: ArchiveNotification,
    recipient: Recipient,
    reference: ArchiveReference,
    notifier: Notifier,
) -> Optional[Exception]:
    """Send one reserved notification and record the outcome. Returns the failure, if any."""
    try:
        notifier.notify(recipient, reference)
    except Exception as exc:
        record.status = NOTIFICATION_FAILED
        record.error = str(exc)[:2000]
        db.commit()
        if isinstance(exc, NotificationError):
            logger.error("Archive %s notification to %s failed: %s", reference.archive_id, recipient.email, exc)
        else:
            logger.exception("Archive %s notification to %s raised", reference.archive_id, recipient.email)
        return exc

    record.status = NOTIFICATION_SENT
    record.error = None
    record.sent_at = _now_utc()
    db.commit()
    return None


def notify_archive_recipients(
    db: Session,
    archive: GalleryArchive,
    notifier: Notifier,
    *,
    link_builder: Optional[LinkBuilder] = None,
) -> int:
    """Notify every recipient of ``archive`` who has not been notified yet.

    Each recipient is reserved with an ``archive_notifications`` row before
    sending, so repeated calls for the same archive send nothing new.
    Failures are recorded and logged, never raised. Returns the number sent.
    """
    gallery = db.get(Gallery, archive.gallery_id)
    if gallery is None:
        return 0
    reference = _reference(gallery, archive, link_builder)

    sent = 0
    for recipient in archive_recipients(db, gallery):
        record = ArchiveNotification(
            archive_id=archive.id,
            recipient_email=recipient.email,
            status=NOTIFICATION_SENDING,
            attempts=1,
            last_attempt_at=_now_utc(),
        )
        db.add(record)
        try:
            db.commit()
        except IntegrityError:
            db.rollback()
            logger.debug("Archive %s already notified %s", archive.id, recipient.email)
            continue

        if _deliver(db, record, recipient, reference, notifier) is None:
            sent += 1

    if sent:
        logger.info("Archive %s: notified %s recipient(s)", archive.id, sent)
    return sent


def retry_backoff_seconds(attempts: int, base_seconds: int) -> int:
    return base_seconds * (2 ** max(attempts - 1, 0))


def retry_failed_notifications(
    db: Session,
    notifier: Notifier,
    *,
    link_builder: Optional[LinkBuilder] = None,
    max_attempts: int = 3,
    backoff_seconds: int = 60,
    limit: int = 50,
    now: Optional[datetime] = None,
) -> int:
    """Retry failed notifications of completed archives whose backoff has elapsed.

    A row is retried while it has fewer than ``max_attempts`` attempts; the
    wait after attempt ``n`` is ``backoff_seconds * 2 ** (n - 1)``. Each row
    is taken with a conditional update so concurrent retriers never send the
    same message twice. Returns the number sent.
    """
    now = now or _now_utc()
    candidates = (
        db.query(ArchiveNotification)
        .join(GalleryArchive, GalleryArchive.id == ArchiveNotification.archive_id)
        .filter(
            ArchiveNotification.status == NOTIFICATION_FAILED,
            ArchiveNotification.attempts < max_attempts,
            GalleryArchive.status == ARCHIVE_COMPLETED,
        )
        .order_by(ArchiveNotification.last_attempt_at.asc())
        .limit(limit)
        .all()
    )
    due = []
    for record in candidates:
        last_attempt = record.last_attempt_at or record.created_at
        if last_attempt + timedelta(seconds=retry_backoff_seconds(record.attempts, backoff_seconds)) <= now:
            due.append((record.id, record.archive_id, record.recipient_email, record.attempts))
    db.rollback()

    sent = 0
    for record_id, archive_id, email, attempts in due:
        taken = (
            db.query(ArchiveNotification)
            .filter(
                ArchiveNotification.id == record_id,
                ArchiveNotification.status == NOTIFICATION_FAILED,
                ArchiveNotification.attempts == attempts,
            )
            .update(
                {
                    ArchiveNotification.status: NOTIFICATION_SENDING,
                    ArchiveNotification.attempts: ArchiveNotification.attempts + 1,
                    ArchiveNotification.last_attempt_at: now,
                },
                synchronize_session=False,
            )
        )
        db.commit()
        if taken != 1:
            continue

        archive = db.get(GalleryArchive, archive_id)
        gallery = db.get(Gallery, archive.gallery_id)
        record = db.get(ArchiveNotification, record_id)
        logger.info("Retrying archive %s notification to %s (attempt %s)", archive_id, email, attempts + 1)
        failure = _deliver(db, record, _recipient_for(db, gallery, email), _reference(gallery, archive, link_builder), notifier)
        if failure is None:
            sent += 1

    if sent:
        logger.info("Notification retry sent %s message(s)", sent)
    return sent


def resend_archive_notification(
    db: Session,
    archive: GalleryArchive,
    notifier: Notifier,
    recipient_email: str,
    *,
    link_builder: Optional[LinkBuilder] = None,
) -> ArchiveNotification:
    """Send the archive-ready message to one address again, whatever happened before.

    The outcome is recorded on the recipient's row. Raises ``ValidationError``
    for an unfinished archive or a malformed address and re-raises the
    delivery error after recording it.
    """
    if archive.status != ARCHIVE_COMPLETED:
        raise ValidationError(f"Archive {archive.id} is not ready")
    email = _normalize_email(recipient_email)
    if "@" not in email:
        raise ValidationError(f"Invalid recipient email: {recipient_email!r}")
    gallery = db.get(Gallery, archive.gallery_id)

    now = _now_utc()
    record = _reserve_resend(db, archive.id, email, now)
    failure = _deliver(db, record, _recipient_for(db, gallery, email), _reference(gallery, archive, link_builder), notifier)
    if failure is not None:
        raise failure
    logger.info("Resent archive %s notification to %s", archive.id, email)
    return record


def _reserve_resend(db: Session, archive_id: uuid.UUID, email: str, now: datetime) -> ArchiveNotification:
    query = db.query(ArchiveNotification).filter(
        ArchiveNotification.archive_id == archive_id,
        ArchiveNotification.recipient_email == email,
    )
    record = query.first()
    if record is None:
        record = ArchiveNotification(
            archive_id=archive_id,
            recipient_email=email,
            status=NOTIFICATION_SENDING,
            attempts=1,
            last_attempt_at=now,
        )
        db.add(record)
        try:
            db.commit()
            return record
        except IntegrityError:
            db.rollback()
            record = query.one()

    record.status = NOTIFICATION_SENDING
    record.attempts = (record.attempts or 0) + 1
    record.last_attempt_at = now
    db.commit()
    return record
