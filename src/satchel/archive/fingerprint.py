"""Content fingerprints used to decide whether a stored archive is still valid.

A fingerprint is a short string derived from a gallery's current asset set.
An archive is fresh when it completed and the fingerprint recorded at build
time equals the gallery's fingerprint now. Which mutations invalidate an
archive depends on the policy:

- ``count``: additions and removals that change the asset count.
- ``count_mtime``: the above plus any asset modification (replacement
  bumps ``updated_at``). Default.
- ``membership``: any change to the set of asset ids.
- ``ordered``: any change to ids, display order or modification times.
"""

from __future__ import annotations

import hashlib
import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Callable, Dict, Optional, Sequence

from sqlalchemy.orm import Session

from satchel.archive.assets import AssetRef, load_gallery_assets
from satchel.metadata import ARCHIVE_COMPLETED

logger = logging.getLogger(__name__)

EMPTY_FINGERPRINT = "empty"

FingerprintPolicy = Callable[[Sequence[AssetRef]], str]


@dataclass(frozen=True)
class Fingerprint:
    value: str
    asset_count: int

    @property
    def is_empty(self) -> bool:
        return self.value == EMPTY_FINGERPRINT


def _timestamp(value: Optional[datetime]) -> str:
    return value.isoformat() if value else "-"


def _sha256(parts: Sequence[str]) -> str:
    return hashlib.sha256(",".join(parts).encode("utf-8")).hexdigest()


def _count_policy(assets: Sequence[AssetRef]) -> str:
    return f"n{len(assets)}"


def _count_mtime_policy(assets: Sequence[AssetRef]) -> str:
    stamps = [asset.updated_at for asset in assets if asset.updated_at is not None]
    latest = max(stamps) if stamps else None
    return f"n{len(assets)}:t{_timestamp(latest)}"


def _membership_policy(assets: Sequence[AssetRef]) -> str:
    return "m:" + _sha256(sorted(asset.id for asset in assets))


def _ordered_policy(assets: Sequence[AssetRef]) -> str:
    return "o:" + _sha256([f"{asset.id}@{asset.position}@{_timestamp(asset.updated_at)}" for asset in assets])


_POLICIES: Dict[str, FingerprintPolicy] = {
    "count": _count_policy,
    "count_mtime": _count_mtime_policy,
    "membership": _membership_policy,
    "ordered": _ordered_policy,
}


def register_fingerprint_policy(name: str, policy: FingerprintPolicy) -> None:
    """Register a custom fingerprint policy under ``name``."""
    key = (name or "").strip().lower()
    if not key:
        raise ValueError("Fingerprint policy name is required")
    _POLICIES[key] = policy


def available_policies() -> list[str]:
    return sorted(_POLICIES)


class FingerprintComputer:
    """Computes gallery fingerprints under one configured policy."""

    def __init__(self, policy: str = "count_mtime"):
        key = (policy or "").strip().lower()
        if key not in _POLICIES:
            raise ValueError(f"Unknown fingerprint policy: {policy}")
        self.policy_name = key
        self._policy = _POLICIES[key]

    def compute(self, assets: Sequence[AssetRef]) -> Fingerprint:
        if not assets:
            return Fingerprint(EMPTY_FINGERPRINT, 0)
        return Fingerprint(self._policy(assets), len(assets))

    def fingerprint(self, db: Session, gallery_id: Any) -> Fingerprint:
        return self.compute(load_gallery_assets(db, gallery_id))

    @staticmethod
    def is_fresh(archive: Any, current: Fingerprint) -> bool:
        if archive is None or current.is_empty:
            return False
        return archive.status == ARCHIVE_COMPLETED and archive.fingerprint == current.value
