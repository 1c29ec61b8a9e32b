"""Executes one claimed archive build: fetch, assemble, persist."""

from __future__ import annotations

import hashlib
import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Callable, Iterable, Iterator, Optional

from sqlalchemy.orm import Session

from satchel.archive.assembler import ZIP_CONTENT_TYPE, DEFAULT_CHUNK_SIZE, assemble, bundle_entries, max_failures_for
from satchel.archive.assets import load_gallery, load_gallery_assets
from satchel.archive.fetcher import BoundedFetcher, FetchResult
from satchel.archive.fingerprint import FingerprintComputer
from satchel.archive.jobs import ClaimedBuild
from satchel.errors import BuildTimeoutError, ValidationError, is_retryable
from satchel.metadata import (
    PROGRESS_COMPLETED,
    PROGRESS_DOWNLOADING,
    PROGRESS_INITIALIZING,
    PROGRESS_UPLOADING,
)
from satchel.storage import ArchiveStore

logger = logging.getLogger(__name__)


def _now_utc() -> datetime:
    return datetime.now(timezone.utc).replace(tzinfo=None)


@dataclass
class BuildOutcome:
    success: bool
    error_text: Optional[str] = None
    retryable: bool = False
    fingerprint: Optional[str] = None
    image_count: int = 0
    skipped_count: int = 0
    file_size_bytes: int = 0
    checksum: Optional[str] = None


@dataclass(frozen=True)
class ArchiveProgress:
    phase: str
    current: int
    total: int
    message: str = ""


ProgressCallback = Callable[[ArchiveProgress], None]


def _report_fetches(
    results: Iterable[FetchResult],
    total: int,
    on_progress: ProgressCallback,
) -> Iterator[FetchResult]:
    count = 0
    for result in results:
        count += 1
        on_progress(ArchiveProgress(PROGRESS_DOWNLOADING, count, total, f"Fetched {count} of {total} assets"))
        yield result
    # Remaining bytes are the tail of the upload.
    on_progress(ArchiveProgress(PROGRESS_UPLOADING, total, total, "Finishing upload"))


class _MeteredStream:
    """Hashes and counts bytes on their way to storage; enforces the deadline."""

    def __init__(self, chunks: Iterable[bytes], deadline: Optional[datetime], clock: Callable[[], datetime]):
        self._chunks = chunks
        self._deadline = deadline
        self._clock = clock
        self._digest = hashlib.sha256()
        self.size = 0

    def _check_deadline(self) -> None:
        if self._deadline is not None and self._clock() > self._deadline:
            raise BuildTimeoutError(f"Build exceeded deadline {self._deadline.isoformat()}")

    def __iter__(self) -> Iterator[bytes]:
        for chunk in self._chunks:
            self._check_deadline()
            self._digest.update(chunk)
            self.size += len(chunk)
            yield chunk
        self._check_deadline()

    def hexdigest(self) -> str:
        return self._digest.hexdigest()


class ArchiveBuilder:
    """Builds the bundle for a claimed job and uploads it to the archive store."""

    def __init__(
        self,
        store: ArchiveStore,
        fetcher: BoundedFetcher,
        fingerprints: FingerprintComputer,
        *,
        failure_tolerance: float = 0.1,
        chunk_size: int = DEFAULT_CHUNK_SIZE,
        clock: Callable[[], datetime] = _now_utc,
    ):
        self.store = store
        self.fetcher = fetcher
        self.fingerprints = fingerprints
        self.failure_tolerance = failure_tolerance
        self.chunk_size = chunk_size
        self._clock = clock

    def build(
        self,
        db: Session,
        claimed: ClaimedBuild,
        on_progress: Optional[ProgressCallback] = None,
    ) -> BuildOutcome:
        """Build and upload the archive for ``claimed``.

        ``on_progress`` is called on the building thread: once when the asset
        list is loaded, once per fetched asset, when the upload is finishing
        and when it has completed.
        """
        report = on_progress or (lambda progress: None)
        results = counted = entries = chunks = None
        try:
            gallery = load_gallery(db, claimed.gallery_id)
            title = gallery.title
            assets = load_gallery_assets(db, gallery.id)
            # Fingerprint of the snapshot actually bundled.
            current = self.fingerprints.compute(assets)
            if current.is_empty:
                raise ValidationError(f"Gallery {gallery.id} has no assets to archive")
            total = len(assets)
            report(ArchiveProgress(PROGRESS_INITIALIZING, 0, total, f"Preparing {total} assets"))

            skipped = []
            results = self.fetcher.fetch(assets)
            counted = _report_fetches(results, total, report)
            entries = bundle_entries(
                counted,
                title=title,
                total=total,
                max_failures=max_failures_for(total, self.failure_tolerance),
                on_skip=skipped.append,
            )
            chunks = assemble(entries, chunk_size=self.chunk_size)
            metered = _MeteredStream(chunks, claimed.deadline, self._clock)
            self.store.upload(claimed.storage_path, metered, content_type=ZIP_CONTENT_TYPE)
            report(ArchiveProgress(PROGRESS_COMPLETED, total, total, f"Uploaded {metered.size} bytes"))

            return BuildOutcome(
                success=True,
                fingerprint=current.value,
                image_count=len(assets) - len(skipped),
                skipped_count=len(skipped),
                file_size_bytes=metered.size,
                checksum=metered.hexdigest(),
            )
        except Exception as exc:
            logger.warning(
                "Archive build failed for job %s attempt %s: %s",
                claimed.job_id,
                claimed.attempt_no,
                exc,
            )
            return BuildOutcome(
                success=False,
                error_text=str(exc) or exc.__class__.__name__,
                retryable=is_retryable(exc),
            )
        finally:
            # Stop in-flight fetches when the build is abandoned.
            for generator in (chunks, entries, counted, results):
                if generator is not None:
                    generator.close()
