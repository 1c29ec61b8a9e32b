"""Archive download endpoints: signed-URL redirects and direct streaming."""

from typing import Iterator, Optional

from fastapi import APIRouter, Depends, HTTPException, Query, Request
from fastapi.responses import JSONResponse, RedirectResponse, Response, StreamingResponse
from sqlalchemy.orm import Session

from satchel.access import Requester
from satchel.archive.delivery import CachedDelivery, DirectStreamDelivery
from satchel.database import get_db
from satchel.dependencies import (
    archive_http_exception,
    get_cached_delivery,
    get_direct_delivery,
    get_requester,
)
from satchel.errors import ArchiveError
from satchel.metadata import ARCHIVE_COMPLETED, ARCHIVE_FAILED
from satchel.ratelimit import limiter
from satchel.settings import settings

router = APIRouter(prefix="/api/v1", tags=["downloads"])


def _with_first_chunk(first_chunk: Optional[bytes], chunks: Iterator[bytes]) -> Iterator[bytes]:
    if first_chunk is not None:
        yield first_chunk
    yield from chunks


@router.get("/galleries/{gallery_id}/download-turbo")
@limiter.limit(settings.archive_turbo_rate_limit)
def download_turbo(
    request: Request,
    gallery_id: str,
    db: Session = Depends(get_db),
    requester: Requester = Depends(get_requester),
    delivery: DirectStreamDelivery = Depends(get_direct_delivery),
):
    """Stream a freshly assembled ZIP of the gallery. Nothing is stored.

    The first chunk is produced before headers are sent, so authorization,
    empty galleries and an unreachable first asset become error statuses.
    A failure after that ends the transfer early.
    """
    try:
        stream = delivery.open(db, gallery_id, requester)
        first_chunk = next(stream.chunks, None)
    except ArchiveError as exc:
        raise archive_http_exception(exc)

    return StreamingResponse(
        _with_first_chunk(first_chunk, stream.chunks),
        media_type=stream.content_type,
        headers={
            "Content-Disposition": f'attachment; filename="{stream.filename}"',
            "Cache-Control": "no-cache",
            "X-Content-Type-Options": "nosniff",
        },
    )


@router.api_route("/archives/{archive_id}/download", methods=["GET", "HEAD"])
def download_archive(
    request: Request,
    archive_id: str,
    token: Optional[str] = Query(None, description="Signed download token from the notification email"),
    db: Session = Depends(get_db),
    requester: Requester = Depends(get_requester),
    delivery: CachedDelivery = Depends(get_cached_delivery),
):
    """Redirect to a signed URL for a stored archive.

    HEAD reports readiness: 200 with the archive size when completed, 202 with
    ``X-Archive-Status`` while it is still being built.
    """
    try:
        archive, gallery = delivery.resolve_archive(db, archive_id, requester, token)
    except ArchiveError as exc:
        raise archive_http_exception(exc)

    headers = {"X-Archive-Status": archive.status}
    if archive.status == ARCHIVE_FAILED:
        raise HTTPException(status_code=410, detail=archive.error_message or "Archive build failed", headers=headers)

    if archive.status != ARCHIVE_COMPLETED:
        if request.method == "HEAD":
            return Response(status_code=202, headers=headers)
        return JSONResponse(
            status_code=202,
            content={"status": archive.status, "message": "Archive is being prepared"},
            headers=headers,
        )

    if request.method == "HEAD":
        headers.update({
            "Content-Type": "application/zip",
            "Content-Length": str(archive.file_size_bytes or 0),
        })
        return Response(status_code=200, headers=headers)

    try:
        url = delivery.signed_url(archive, delivery.filename_for(archive, gallery))
    except ArchiveError as exc:
        raise archive_http_exception(exc)
    return RedirectResponse(url, status_code=302)
