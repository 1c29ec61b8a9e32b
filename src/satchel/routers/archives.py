"""Gallery archive request and status endpoints."""

from typing import Optional

from fastapi import APIRouter, Depends, Query
from fastapi.encoders import jsonable_encoder
from fastapi.responses import JSONResponse
from sqlalchemy.orm import Session

from satchel.access import Requester
from satchel.archive.delivery import CachedDelivery
from satchel.archive.orchestrator import FAILED, PENDING
from satchel.database import get_db
from satchel.dependencies import archive_http_exception, get_cached_delivery, get_requester
from satchel.errors import ArchiveError
from satchel.metadata import ArchiveJob, GalleryArchive

router = APIRouter(prefix="/api/v1/galleries", tags=["archives"])

_MESSAGES = {
    "ready": "Archive ready for download",
    "pending": "Archive is being prepared",
    "failed": "Archive generation failed",
}


def serialize_archive(archive: Optional[GalleryArchive]) -> Optional[dict]:
    if archive is None:
        return None
    return {
        "id": str(archive.id),
        "gallery_id": str(archive.gallery_id),
        "version": archive.version,
        "status": archive.status,
        "fingerprint": archive.fingerprint,
        "image_count": archive.image_count,
        "skipped_count": archive.skipped_count,
        "file_size_bytes": archive.file_size_bytes,
        "checksum": archive.checksum,
        "error_message": archive.error_message,
        "created_at": archive.created_at,
        "completed_at": archive.completed_at,
    }


def serialize_job(job: Optional[ArchiveJob]) -> Optional[dict]:
    if job is None:
        return None
    return {
        "id": str(job.id),
        "archive_id": str(job.archive_id),
        "gallery_id": str(job.gallery_id),
        "status": job.status,
        "priority": job.priority,
        "attempts": job.attempts,
        "max_attempts": job.max_attempts,
        "run_at": job.run_at,
        "claimed_by": job.claimed_by,
        "deadline": job.deadline,
        "last_error": job.last_error,
        "created_at": job.created_at,
        "started_at": job.started_at,
        "finished_at": job.finished_at,
        "progress": {
            "phase": job.progress_phase,
            "current": job.progress_current or 0,
            "total": job.progress_total or 0,
            "updated_at": job.progress_updated_at,
        },
    }


@router.post("/{gallery_id}/archive")
def request_archive(
    gallery_id: str,
    force: bool = Query(False, description="Regenerate even if a fresh archive exists (owner only)"),
    db: Session = Depends(get_db),
    requester: Requester = Depends(get_requester),
    delivery: CachedDelivery = Depends(get_cached_delivery),
):
    """Return a download link for the gallery archive, building it if needed.

    Small galleries are built during the request. Larger ones are queued and
    answered with 202 and a job id to poll. A stale archive is still served
    (``stale: true``) while a refresh runs in the background.
    """
    try:
        result = delivery.request(db, gallery_id, requester, force=force)
    except ArchiveError as exc:
        raise archive_http_exception(exc)

    handle = result.handle
    body = {
        "status": handle.status,
        "gallery_id": str(handle.gallery_id),
        "job_id": str(handle.job_id) if handle.job_id else None,
        "stale": handle.stale,
        "archive": serialize_archive(handle.archive),
        "download_url": result.download_url,
        "filename": result.filename,
        "error": handle.error,
        "message": _MESSAGES.get(handle.status, handle.status),
    }
    status_code = 202 if handle.status == PENDING else 200
    if handle.status == FAILED:
        status_code = 500
    return JSONResponse(status_code=status_code, content=jsonable_encoder(body))


@router.get("/{gallery_id}/archive")
def get_archive_status(
    gallery_id: str,
    db: Session = Depends(get_db),
    requester: Requester = Depends(get_requester),
    delivery: CachedDelivery = Depends(get_cached_delivery),
):
    """Report archive state without starting any work."""
    try:
        archive_status = delivery.status(db, gallery_id, requester)
    except ArchiveError as exc:
        raise archive_http_exception(exc)

    return {
        "state": archive_status.state,
        "gallery_id": str(archive_status.gallery_id),
        "asset_count": archive_status.fingerprint.asset_count,
        "fingerprint": archive_status.fingerprint.value,
        "archive": serialize_archive(archive_status.archive),
        "job": serialize_job(archive_status.job),
    }


@router.post("/{gallery_id}/archives/{archive_id}/resend")
def resend_archive_notification(
    gallery_id: str,
    archive_id: str,
    email: str = Query(..., description="Recipient to notify again"),
    db: Session = Depends(get_db),
    requester: Requester = Depends(get_requester),
    delivery: CachedDelivery = Depends(get_cached_delivery),
):
    """Send the archive-ready email for a completed archive to one recipient again (owner only)."""
    try:
        record = delivery.resend(db, gallery_id, archive_id, requester, email)
    except ArchiveError as exc:
        raise archive_http_exception(exc)

    return {
        "success": True,
        "archive_id": str(record.archive_id),
        "recipient_email": record.recipient_email,
        "status": record.status,
        "attempts": record.attempts,
        "sent_at": record.sent_at,
    }
