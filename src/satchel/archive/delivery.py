"""Delivery strategies: cached archives behind signed URLs, or direct streaming."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Iterator, Optional

from sqlalchemy.orm import Session

from satchel.access import AccessPolicy, Requester
from satchel.archive.assembler import (
    DEFAULT_CHUNK_SIZE,
    ZIP_CONTENT_TYPE,
    archive_filename,
    assemble,
    bundle_entries,
)
from satchel.archive.assets import AssetRef, coerce_uuid, load_gallery, load_gallery_assets
from satchel.archive.fetcher import BoundedFetcher
from satchel.archive.orchestrator import READY, ArchiveHandle, ArchiveOrchestrator, ArchiveStatus
from satchel.cache import TTLCache
from satchel.download_tokens import verify_download_token
from satchel.errors import ArchiveNotFoundError, AuthorizationError, ValidationError
from satchel.metadata import ArchiveNotification, Gallery, GalleryArchive
from satchel.storage import ArchiveStore

logger = logging.getLogger(__name__)


@dataclass
class DeliveryResult:
    handle: ArchiveHandle
    download_url: Optional[str] = None
    filename: Optional[str] = None


@dataclass
class DirectStream:
    filename: str
    content_type: str
    chunks: Iterator[bytes]
    asset_count: int


class CachedDelivery:
    """Serve stored archives through time-limited signed URLs."""

    def __init__(
        self,
        orchestrator: ArchiveOrchestrator,
        store: ArchiveStore,
        access_policy: AccessPolicy,
        *,
        url_cache: Optional[TTLCache] = None,
        url_ttl_seconds: int = 3600,
        token_secret: Optional[str] = None,
    ):
        self.orchestrator = orchestrator
        self.store = store
        self.access_policy = access_policy
        self.url_ttl_seconds = url_ttl_seconds
        # Cached URLs must expire before their signatures do.
        self.url_cache = url_cache if url_cache is not None else TTLCache(max(1, url_ttl_seconds - 300))
        self.token_secret = token_secret

    def request(self, db: Session, gallery_id: Any, requester: Requester, *, force: bool = False) -> DeliveryResult:
        gallery = load_gallery(db, gallery_id)
        self.access_policy.require(gallery, requester)
        if force and not AccessPolicy.is_owner(gallery, requester):
            raise AuthorizationError("Only the gallery owner can regenerate its archive")

        handle = self.orchestrator.get_or_build(db, gallery.id, force=force)
        if handle.status != READY or handle.archive is None:
            return DeliveryResult(handle=handle)
        filename = self.filename_for(handle.archive, gallery)
        return DeliveryResult(handle=handle, download_url=self.signed_url(handle.archive, filename), filename=filename)

    def status(self, db: Session, gallery_id: Any, requester: Requester) -> ArchiveStatus:
        gallery = load_gallery(db, gallery_id)
        self.access_policy.require(gallery, requester)
        return self.orchestrator.get_status(db, gallery.id)

    def resolve_archive(
        self,
        db: Session,
        archive_id: Any,
        requester: Requester,
        token: Optional[str] = None,
    ) -> tuple[GalleryArchive, Gallery]:
        """Load an archive the requester may download, by token or by gallery access."""
        archive_uuid = coerce_uuid(archive_id, "archive id")
        archive = db.get(GalleryArchive, archive_uuid)
        if archive is None:
            raise ArchiveNotFoundError(f"Archive {archive_uuid} not found")
        gallery = load_gallery(db, archive.gallery_id)
        if not verify_download_token(archive.id, token, secret=self.token_secret):
            self.access_policy.require(gallery, requester)
        return archive, gallery

    def resend(
        self,
        db: Session,
        gallery_id: Any,
        archive_id: Any,
        requester: Requester,
        email: str,
    ) -> ArchiveNotification:
        """Owner-only: send the archive-ready message for one archive to ``email`` again."""
        gallery = load_gallery(db, gallery_id)
        if not AccessPolicy.is_owner(gallery, requester):
            raise AuthorizationError("Only the gallery owner can resend archive notifications")
        archive = db.get(GalleryArchive, coerce_uuid(archive_id, "archive id"))
        if archive is None or archive.gallery_id != gallery.id:
            raise ArchiveNotFoundError(f"Archive {archive_id} not found in gallery {gallery.id}")
        return self.orchestrator.resend_notification(db, archive.id, email)

    def signed_url(self, archive: GalleryArchive, filename: Optional[str] = None) -> str:
        # The signed URL embeds the download filename, so both identify the entry.
        key = (archive.storage_path, filename)
        return self.url_cache.get_or_set(
            key,
            lambda: self.store.signed_url(archive.storage_path, self.url_ttl_seconds, filename=filename),
        )

    def invalidate(self, archive: GalleryArchive) -> None:
        storage_path = archive.storage_path
        self.url_cache.invalidate_matching(lambda key: key[0] == storage_path)

    @staticmethod
    def filename_for(archive: GalleryArchive, gallery: Gallery) -> str:
        built_on = archive.completed_at.date() if archive.completed_at else None
        return archive_filename(gallery.title, on=built_on)


class DirectStreamDelivery:
    """Fetch and assemble straight into the response. Nothing is persisted.

    Any asset failure aborts the stream: the transfer ends truncated rather
    than as a valid bundle with files silently missing.
    """

    def __init__(
        self,
        fetcher: BoundedFetcher,
        access_policy: AccessPolicy,
        *,
        chunk_size: int = DEFAULT_CHUNK_SIZE,
    ):
        self.fetcher = fetcher
        self.access_policy = access_policy
        self.chunk_size = chunk_size

    def open(self, db: Session, gallery_id: Any, requester: Requester) -> DirectStream:
        gallery = load_gallery(db, gallery_id)
        self.access_policy.require(gallery, requester)
        assets = load_gallery_assets(db, gallery.id)
        if not assets:
            raise ValidationError(f"Gallery {gallery.id} has no assets to download")
        logger.info("Opening direct stream for gallery %s (%s assets)", gallery.id, len(assets))
        return DirectStream(
            filename=archive_filename(gallery.title),
            content_type=ZIP_CONTENT_TYPE,
            chunks=self._stream(assets, gallery.title),
            asset_count=len(assets),
        )

    def _stream(self, assets: list[AssetRef], title: str) -> Iterator[bytes]:
        results = self.fetcher.fetch(assets)
        entries = bundle_entries(results, title=title, total=len(assets), max_failures=0)
        chunks = assemble(entries, chunk_size=self.chunk_size)
        try:
            yield from chunks
        finally:
            chunks.close()
            entries.close()
            results.close()
