"""Archive-ready notifications."""

from datetime import timedelta

import pytest

from satchel.archive.notifications import (
    archive_recipients,
    notify_archive_recipients,
    resend_archive_notification,
    retry_failed_notifications,
)
from satchel.errors import NotificationError, ValidationError
from satchel.metadata import ArchiveJob, ArchiveNotification, GalleryArchive
from satchel.worker import run_worker_once


def _build(test_db, orchestrator, gallery):
    handle = orchestrator.get_or_build(test_db, gallery.id)
    return test_db.get(GalleryArchive, handle.archive_id)


def test_recipients_are_owner_and_opted_in_clients(test_db, make_gallery, add_client):
    gallery = make_gallery(1, owner_email="Owner@Example.com")
    add_client(gallery, "client@example.com", name="Client")
    add_client(gallery, "OWNER@example.com", name="Owner Again")
    add_client(gallery, "quiet@example.com", notify=False)

    recipients = archive_recipients(test_db, gallery)

    assert [recipient.email for recipient in recipients] == ["owner@example.com", "client@example.com"]


def test_each_recipient_is_notified_once(test_db, orchestrator, make_gallery, add_client, notifier):
    gallery = make_gallery(2)
    add_client(gallery, "client@example.com")
    archive = _build(test_db, orchestrator, gallery)
    assert len(notifier.sent) == 2

    again = notify_archive_recipients(test_db, archive, notifier)

    assert again == 0
    assert len(notifier.sent) == 2
    assert test_db.query(ArchiveNotification).filter(ArchiveNotification.archive_id == archive.id).count() == 2


def test_notification_carries_archive_details(test_db, orchestrator, make_gallery, notifier):
    gallery = make_gallery(3, title="Beach Day")

    archive = _build(test_db, orchestrator, gallery)

    (_, reference), = notifier.sent
    assert reference.archive_id == archive.id
    assert reference.gallery_title == "Beach Day"
    assert reference.image_count == 3
    assert reference.file_size_bytes == archive.file_size_bytes
    assert str(archive.id) in reference.download_url


def test_failed_notification_does_not_affect_archive(test_db, orchestrator, make_gallery, add_client, notifier):
    gallery = make_gallery(2)
    add_client(gallery, "bounce@example.com")
    notifier.failing.add("bounce@example.com")

    archive = _build(test_db, orchestrator, gallery)

    assert archive.status == "completed"
    assert [recipient.email for recipient, _ in notifier.sent] == ["owner@example.com"]
    failed = (
        test_db.query(ArchiveNotification)
        .filter(ArchiveNotification.recipient_email == "bounce@example.com")
        .one()
    )
    assert failed.status == "failed"
    assert "mailbox rejected" in failed.error


def test_notifier_crash_is_contained(test_db, make_orchestrator, make_gallery, notifier, monkeypatch):
    orchestrator = make_orchestrator()

    def _explode(db, gallery):
        raise RuntimeError("recipient lookup failed")

    monkeypatch.setattr("satchel.archive.notifications.archive_recipients", _explode)
    gallery = make_gallery(2)

    handle = orchestrator.get_or_build(test_db, gallery.id)

    assert handle.is_ready
    assert notifier.sent == []


def _record(test_db, email):
    test_db.expire_all()
    return test_db.query(ArchiveNotification).filter(ArchiveNotification.recipient_email == email).one()


def test_failed_notification_is_retried(test_db, orchestrator, make_gallery, add_client, notifier):
    gallery = make_gallery(2)
    add_client(gallery, "bounce@example.com", name="Bounce")
    notifier.failing.add("bounce@example.com")
    _build(test_db, orchestrator, gallery)
    notifier.failing.clear()

    sent = retry_failed_notifications(test_db, notifier, backoff_seconds=0)

    assert sent == 1
    recipient, _ = notifier.sent[-1]
    assert recipient.email == "bounce@example.com"
    assert recipient.name == "Bounce"
    record = _record(test_db, "bounce@example.com")
    assert record.status == "sent"
    assert record.attempts == 2
    assert record.error is None
    assert record.sent_at is not None
    assert retry_failed_notifications(test_db, notifier, backoff_seconds=0) == 0


def test_retry_waits_for_exponential_backoff(test_db, orchestrator, make_gallery, add_client, notifier):
    gallery = make_gallery(2)
    add_client(gallery, "bounce@example.com")
    notifier.failing.add("bounce@example.com")
    _build(test_db, orchestrator, gallery)
    first_attempt = _record(test_db, "bounce@example.com").last_attempt_at

    early = first_attempt + timedelta(seconds=59)
    assert retry_failed_notifications(test_db, notifier, backoff_seconds=60, now=early) == 0
    assert _record(test_db, "bounce@example.com").attempts == 1

    due = first_attempt + timedelta(seconds=60)
    assert retry_failed_notifications(test_db, notifier, backoff_seconds=60, now=due) == 0
    record = _record(test_db, "bounce@example.com")
    assert record.attempts == 2
    assert record.status == "failed"

    # Second wait doubles.
    assert retry_failed_notifications(test_db, notifier, backoff_seconds=60, now=due + timedelta(seconds=119)) == 0
    assert _record(test_db, "bounce@example.com").attempts == 2
    assert retry_failed_notifications(test_db, notifier, backoff_seconds=60, now=due + timedelta(seconds=120)) == 0
    assert _record(test_db, "bounce@example.com").attempts == 3


def test_retry_stops_after_max_attempts(test_db, orchestrator, make_gallery, add_client, notifier):
    gallery = make_gallery(2)
    add_client(gallery, "bounce@example.com")
    notifier.failing.add("bounce@example.com")
    _build(test_db, orchestrator, gallery)

    for _ in range(5):
        retry_failed_notifications(test_db, notifier, max_attempts=3, backoff_seconds=0)

    record = _record(test_db, "bounce@example.com")
    assert record.attempts == 3
    assert record.status == "failed"
    notifier.failing.clear()
    assert retry_failed_notifications(test_db, notifier, max_attempts=3, backoff_seconds=0) == 0


def test_worker_batch_retries_failed_notifications(
    test_db, orchestrator, make_gallery, add_client, notifier, session_factory
):
    gallery = make_gallery(2)
    add_client(gallery, "bounce@example.com")
    notifier.failing.add("bounce@example.com")
    _build(test_db, orchestrator, gallery)
    notifier.failing.clear()

    result = run_worker_once(orchestrator=orchestrator, session_factory=session_factory)

    assert result.renotified == 1
    assert _record(test_db, "bounce@example.com").status == "sent"


def test_resend_notifies_one_recipient_again(test_db, orchestrator, make_gallery, notifier):
    gallery = make_gallery(2)
    archive = _build(test_db, orchestrator, gallery)
    assert len(notifier.sent) == 1

    record = resend_archive_notification(test_db, archive, notifier, "Owner@Example.com")

    assert record.recipient_email == "owner@example.com"
    assert record.status == "sent"
    assert record.attempts == 2
    assert [recipient.email for recipient, _ in notifier.sent] == ["owner@example.com", "owner@example.com"]


def test_resend_to_a_new_address_records_it(test_db, orchestrator, make_gallery, notifier):
    gallery = make_gallery(2)
    archive = _build(test_db, orchestrator, gallery)

    orchestrator.resend_notification(test_db, archive.id, "assistant@example.com")

    record = _record(test_db, "assistant@example.com")
    assert record.status == "sent"
    assert record.attempts == 1
    assert notifier.sent[-1][1].archive_id == archive.id


def test_resend_failure_is_recorded_and_raised(test_db, orchestrator, make_gallery, notifier):
    gallery = make_gallery(2)
    archive = _build(test_db, orchestrator, gallery)
    notifier.failing.add("owner@example.com")

    with pytest.raises(NotificationError):
        resend_archive_notification(test_db, archive, notifier, "owner@example.com")

    record = _record(test_db, "owner@example.com")
    assert record.status == "failed"
    assert "mailbox rejected" in record.error


def test_resend_requires_completed_archive_and_valid_email(test_db, orchestrator, make_gallery, notifier):
    pending = orchestrator.get_or_build(test_db, make_gallery(25).id)
    pending_archive = test_db.get(ArchiveJob, pending.job_id).archive
    ready = _build(test_db, orchestrator, make_gallery(2))

    with pytest.raises(ValidationError):
        resend_archive_notification(test_db, pending_archive, notifier, "owner@example.com")
    with pytest.raises(ValidationError):
        resend_archive_notification(test_db, ready, notifier, "not-an-address")
