"""Archive job processing and inspection endpoints."""

from fastapi import APIRouter, Depends, HTTPException, Query
from sqlalchemy.orm import Session

from satchel.access import AccessPolicy, Requester
from satchel.archive.assets import coerce_uuid, load_gallery
from satchel.archive.orchestrator import ArchiveOrchestrator
from satchel.database import get_db
from satchel.dependencies import (
    archive_http_exception,
    get_access_policy,
    get_orchestrator,
    get_requester,
    get_session_factory,
    require_cron_secret,
)
from satchel.errors import ArchiveError
from satchel.metadata import ArchiveJob
from satchel.routers.archives import serialize_job
from satchel.worker import run_worker_once

router = APIRouter(prefix="/api/v1/archive-jobs", tags=["archive-jobs"])


def _load_job_for(db: Session, job_id: str, requester: Requester, access_policy: AccessPolicy):
    try:
        job_uuid = coerce_uuid(job_id, "job id")
        job = db.get(ArchiveJob, job_uuid)
        if job is None:
            raise HTTPException(status_code=404, detail=f"Archive job {job_uuid} not found")
        gallery = load_gallery(db, job.gallery_id)
        access_policy.require(gallery, requester)
    except ArchiveError as exc:
        raise archive_http_exception(exc)
    return job, gallery


@router.post("/process", dependencies=[Depends(require_cron_secret)])
def process_archive_jobs(
    limit: int = Query(5, ge=1, le=50),
    orchestrator: ArchiveOrchestrator = Depends(get_orchestrator),
    session_factory=Depends(get_session_factory),
):
    """Scheduler hook: release overdue builds, then run up to ``limit`` queued jobs."""
    result = run_worker_once(max_jobs=limit, orchestrator=orchestrator, session_factory=session_factory)
    return {"success": True, **result.as_dict()}


@router.get("/{job_id}")
def get_archive_job(
    job_id: str,
    db: Session = Depends(get_db),
    requester: Requester = Depends(get_requester),
    access_policy: AccessPolicy = Depends(get_access_policy),
):
    job, _ = _load_job_for(db, job_id, requester, access_policy)
    return serialize_job(job)


@router.post("/{job_id}/cancel")
def cancel_archive_job(
    job_id: str,
    db: Session = Depends(get_db),
    requester: Requester = Depends(get_requester),
    access_policy: AccessPolicy = Depends(get_access_policy),
    orchestrator: ArchiveOrchestrator = Depends(get_orchestrator),
):
    job, gallery = _load_job_for(db, job_id, requester, access_policy)
    if not AccessPolicy.is_owner(gallery, requester):
        raise HTTPException(status_code=403, detail="Only the gallery owner can cancel archive jobs")
    if not orchestrator.cancel(db, job.id):
        raise HTTPException(status_code=409, detail=f"Archive job {job.id} is not active")
    return {"id": str(job.id), "status": "cancelled"}
