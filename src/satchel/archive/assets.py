"""Gallery and asset snapshots read by the archive pipeline."""

from __future__ import annotations

import uuid
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Optional

from sqlalchemy.orm import Session

from satchel.errors import GalleryNotFoundError, ValidationError
from satchel.metadata import Gallery, GalleryImage


@dataclass(frozen=True)
class AssetRef:
    """Detached view of one source asset; safe to hand to fetch threads."""

    id: str
    storage_key: str
    original_filename: str
    position: int
    updated_at: Optional[datetime] = None


def coerce_uuid(value: Any, label: str = "id") -> uuid.UUID:
    if isinstance(value, uuid.UUID):
        return value
    try:
        return uuid.UUID(str(value))
    except (ValueError, TypeError, AttributeError):
        raise ValidationError(f"Invalid {label}: {value!r}")


def load_gallery(db: Session, gallery_id: Any) -> Gallery:
    gallery_uuid = coerce_uuid(gallery_id, "gallery id")
    gallery = db.query(Gallery).filter(Gallery.id == gallery_uuid).first()
    if gallery is None:
        raise GalleryNotFoundError(f"Gallery {gallery_uuid} not found")
    return gallery


def gallery_images_query(db: Session, gallery_id: uuid.UUID):
    """Images of a gallery in display order."""
    return (
        db.query(GalleryImage)
        .filter(GalleryImage.gallery_id == gallery_id)
        .order_by(GalleryImage.position.asc(), GalleryImage.created_at.asc(), GalleryImage.id.asc())
    )


def load_gallery_assets(db: Session, gallery_id: Any) -> list[AssetRef]:
    gallery_uuid = coerce_uuid(gallery_id, "gallery id")
    return [
        AssetRef(
            id=str(image.id),
            storage_key=image.storage_key,
            original_filename=image.original_filename,
            position=int(image.position or 0),
            updated_at=image.updated_at,
        )
        for image in gallery_images_query(db, gallery_uuid)
    ]
