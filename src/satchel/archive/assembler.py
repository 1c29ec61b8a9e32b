"""Streaming store-only ZIP assembly."""

from __future__ import annotations

import logging
import math
import os
import re
import zipfile
from dataclasses import dataclass
from datetime import date, datetime
from typing import Callable, Iterable, Iterator, Optional

from satchel.archive.fetcher import FetchResult
from satchel.errors import AssemblyError, FetchError

logger = logging.getLogger(__name__)

DEFAULT_CHUNK_SIZE = 64 * 1024
ZIP_CONTENT_TYPE = "application/zip"

_SLUG_RE = re.compile(r"[^a-z0-9]+")
_EXT_RE = re.compile(r"[^a-z0-9]")
_ZIP_EPOCH = (1980, 1, 1, 0, 0, 0)


@dataclass
class BundleEntry:
    name: str
    data: bytes
    modified: Optional[datetime] = None


def slugify(value: Optional[str], max_length: int = 30, fallback: str = "gallery") -> str:
    slug = _SLUG_RE.sub("-", (value or "").lower()).strip("-")
    slug = slug[:max_length].strip("-")
    return slug or fallback


def entry_name(title: Optional[str], sequence: int, total: int, original_filename: Optional[str]) -> str:
    """Deterministic entry name: ``<title-slug>-<0001>.<ext>``."""
    width = max(4, len(str(max(total, 1))))
    extension = _EXT_RE.sub("", os.path.splitext(original_filename or "")[1].lower())[:10]
    base = f"{slugify(title)}-{sequence:0{width}d}"
    return f"{base}.{extension}" if extension else base


def archive_filename(title: Optional[str], on: Optional[date] = None) -> str:
    day = on or date.today()
    return f"{slugify(title)}-gallery-{day.isoformat()}.zip"


def max_failures_for(total: int, tolerance: float) -> int:
    """Number of assets a build may drop before aborting."""
    if tolerance <= 0 or total <= 0:
        return 0
    return int(math.floor(total * min(tolerance, 1.0)))


def bundle_entries(
    results: Iterable[FetchResult],
    *,
    title: Optional[str],
    total: int,
    max_failures: int = 0,
    on_skip: Optional[Callable[[FetchResult], None]] = None,
) -> Iterator[BundleEntry]:
    """Turn ordered fetch results into named bundle entries.

    Failed fetches are skipped until more than ``max_failures`` have failed,
    at which point ``FetchError`` is raised and the bundle is abandoned.
    """
    failures = 0
    for result in results:
        if result.error is not None:
            failures += 1
            if failures > max_failures:
                raise FetchError(
                    f"{failures} of {total} assets failed to fetch: {result.error}",
                    asset_id=result.error.asset_id,
                ) from result.error
            logger.warning("Skipping asset %s after fetch failure: %s", result.error.asset_id, result.error)
            if on_skip is not None:
                on_skip(result)
            continue
        asset = result.asset
        yield BundleEntry(
            name=entry_name(title, result.index + 1, total, getattr(asset, "original_filename", None)),
            data=result.data or b"",
            modified=getattr(asset, "updated_at", None),
        )


class _StreamSink:
    """Unseekable write target; forces zipfile to emit data descriptors."""

    def __init__(self):
        self._buffer = bytearray()

    def write(self, data) -> int:
        self._buffer += data
        return len(data)

    def flush(self) -> None:
        return None

    def close(self) -> None:
        return None

    def drain(self, chunk_size: int) -> Iterator[bytes]:
        if not self._buffer:
            return
        data = bytes(self._buffer)
        self._buffer.clear()
        for start in range(0, len(data), chunk_size):
            yield data[start:start + chunk_size]


def _zip_info(entry: BundleEntry) -> zipfile.ZipInfo:
    date_time = _ZIP_EPOCH
    if entry.modified is not None and entry.modified.year >= 1980:
        date_time = entry.modified.timetuple()[:6]
    info = zipfile.ZipInfo(entry.name, date_time=date_time)
    info.compress_type = zipfile.ZIP_STORED
    info.external_attr = 0o644 << 16
    return info


def assemble(entries: Iterable[BundleEntry], *, chunk_size: int = DEFAULT_CHUNK_SIZE) -> Iterator[bytes]:
    """Yield a store-only ZIP stream for ``entries``.

    Bytes for an entry are yielded before the next entry is pulled, so the
    total archive size never needs to be known and at most one entry is
    buffered. Errors from ``entries`` propagate unchanged; no central
    directory is written for an abandoned bundle.
    """
    sink = _StreamSink()
    bundle = zipfile.ZipFile(sink, mode="w", compression=zipfile.ZIP_STORED, allowZip64=True)
    count = 0
    for entry in entries:
        try:
            bundle.writestr(_zip_info(entry), entry.data)
        except (OSError, ValueError, zipfile.LargeZipFile) as exc:
            raise AssemblyError(f"Failed to write bundle entry {entry.name}: {exc}") from exc
        count += 1
        yield from sink.drain(chunk_size)
    try:
        bundle.close()
    except (OSError, ValueError, zipfile.LargeZipFile) as exc:
        raise AssemblyError(f"Failed to finalize bundle: {exc}") from exc
    yield from sink.drain(chunk_size)
    logger.debug("Assembled bundle with %s entries", count)
