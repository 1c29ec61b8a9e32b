"""Gallery and archive persistence models."""

from datetime import datetime
import uuid

from sqlalchemy import Column, String, Integer, BigInteger, DateTime, Boolean, Text, ForeignKey, Index, UniqueConstraint, text
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import declarative_base, relationship


Base = declarative_base()

ARCHIVE_PENDING = "pending"
ARCHIVE_PROCESSING = "processing"
ARCHIVE_COMPLETED = "completed"
ARCHIVE_FAILED = "failed"

JOB_PENDING = "pending"
JOB_PROCESSING = "processing"
JOB_COMPLETED = "completed"
JOB_FAILED = "failed"
JOB_CANCELLED = "cancelled"

# Build progress phases recorded on the job row.
PROGRESS_INITIALIZING = "initializing"
PROGRESS_DOWNLOADING = "downloading"
PROGRESS_UPLOADING = "uploading"
PROGRESS_COMPLETED = "completed"

NOTIFICATION_SENDING = "sending"
NOTIFICATION_SENT = "sent"
NOTIFICATION_FAILED = "failed"

# Statuses covered by the one-active-build-per-gallery indexes.
ACTIVE_STATUSES = (JOB_PENDING, JOB_PROCESSING)
_ACTIVE_WHERE = "status IN ('pending', 'processing')"


class Gallery(Base):
    """A photographer's gallery. Owned by the gallery service; read-only here."""

    __tablename__ = "galleries"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    title = Column(String(255), nullable=False)
    owner_id = Column(String(255), nullable=False, index=True)
    owner_email = Column(String(255), nullable=True)  # also notified when an archive is ready
    is_public = Column(Boolean, nullable=False, default=False)
    download_enabled = Column(Boolean, nullable=False, default=True)
    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    images = relationship("GalleryImage", back_populates="gallery", order_by="GalleryImage.position")
    clients = relationship("GalleryClient", back_populates="gallery")


class GalleryImage(Base):
    """A source asset belonging to a gallery, in display order."""

    __tablename__ = "gallery_images"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    gallery_id = Column(UUID(as_uuid=True), ForeignKey("galleries.id", ondelete="CASCADE"), nullable=False)
    storage_key = Column(String(1024), nullable=False)  # object key in the source bucket
    original_filename = Column(String(512), nullable=False)
    position = Column(Integer, nullable=False, default=0)
    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    gallery = relationship("Gallery", back_populates="images")

    __table_args__ = (
        Index("idx_gallery_images_gallery_position", "gallery_id", "position"),
    )


class GalleryClient(Base):
    """A client contact who may opt in to archive-ready notifications."""

    __tablename__ = "gallery_clients"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    gallery_id = Column(UUID(as_uuid=True), ForeignKey("galleries.id", ondelete="CASCADE"), nullable=False, index=True)
    email = Column(String(255), nullable=False)
    name = Column(String(255), nullable=True)
    notify_on_archive = Column(Boolean, nullable=False, default=False)
    created_at = Column(DateTime, default=datetime.utcnow)

    gallery = relationship("Gallery", back_populates="clients")

    __table_args__ = (
        UniqueConstraint("gallery_id", "email", name="uq_gallery_clients_gallery_email"),
    )


class GalleryArchive(Base):
    """A versioned ZIP bundle of a gallery's assets."""

    __tablename__ = "gallery_archives"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    gallery_id = Column(UUID(as_uuid=True), ForeignKey("galleries.id", ondelete="CASCADE"), nullable=False)
    version = Column(Integer, nullable=False)
    storage_path = Column(String(1024), nullable=False)  # galleries/{gallery_id}/archives/{version}.zip
    fingerprint = Column(String(128), nullable=False)
    image_count = Column(Integer, nullable=False, default=0)
    skipped_count = Column(Integer, nullable=False, default=0)
    file_size_bytes = Column(BigInteger, nullable=True)
    checksum = Column(String(64), nullable=True)  # sha256 hex
    status = Column(String(20), nullable=False, default=ARCHIVE_PENDING)
    error_message = Column(Text, nullable=True)
    created_at = Column(DateTime, nullable=False, default=datetime.utcnow)
    completed_at = Column(DateTime, nullable=True)

    job = relationship("ArchiveJob", back_populates="archive", uselist=False)

    __table_args__ = (
        UniqueConstraint("gallery_id", "version", name="uq_gallery_archives_gallery_version"),
        Index("idx_gallery_archives_gallery_status", "gallery_id", "status"),
        Index(
            "uq_gallery_archives_active_gallery",
            "gallery_id",
            unique=True,
            postgresql_where=text(_ACTIVE_WHERE),
            sqlite_where=text(_ACTIVE_WHERE),
        ),
    )


class ArchiveJob(Base):
    """Build job for one archive version. At most one active job per gallery."""

    __tablename__ = "archive_jobs"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    archive_id = Column(
        UUID(as_uuid=True),
        ForeignKey("gallery_archives.id", ondelete="CASCADE"),
        nullable=False,
        unique=True,
    )
    gallery_id = Column(UUID(as_uuid=True), ForeignKey("galleries.id", ondelete="CASCADE"), nullable=False)
    priority = Column(Integer, nullable=False, default=0)  # higher runs first
    attempts = Column(Integer, nullable=False, default=0)
    max_attempts = Column(Integer, nullable=False, default=3)
    status = Column(String(20), nullable=False, default=JOB_PENDING)
    run_at = Column(DateTime, nullable=False, default=datetime.utcnow)  # earliest eligible claim time
    claimed_at = Column(DateTime, nullable=True)
    claimed_by = Column(String(255), nullable=True)
    deadline = Column(DateTime, nullable=True)
    last_error = Column(Text, nullable=True)
    created_at = Column(DateTime, nullable=False, default=datetime.utcnow)
    started_at = Column(DateTime, nullable=True)
    finished_at = Column(DateTime, nullable=True)
    progress_phase = Column(String(20), nullable=True)
    progress_current = Column(Integer, nullable=False, default=0)
    progress_total = Column(Integer, nullable=False, default=0)
    progress_updated_at = Column(DateTime, nullable=True)

    archive = relationship("GalleryArchive", back_populates="job")

    __table_args__ = (
        Index("idx_archive_jobs_claim_order", "status", "priority", "run_at"),
        Index("idx_archive_jobs_status_deadline", "status", "deadline"),
        Index(
            "uq_archive_jobs_active_gallery",
            "gallery_id",
            unique=True,
            postgresql_where=text(_ACTIVE_WHERE),
            sqlite_where=text(_ACTIVE_WHERE),
        ),
    )


class ArchiveNotification(Base):
    """Delivery record for one recipient of one archive."""

    __tablename__ = "archive_notifications"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    archive_id = Column(
        UUID(as_uuid=True),
        ForeignKey("gallery_archives.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    recipient_email = Column(String(255), nullable=False)  # lower-cased
    status = Column(String(20), nullable=False, default=NOTIFICATION_SENDING)  # sending, sent, failed
    error = Column(Text, nullable=True)
    attempts = Column(Integer, nullable=False, default=1)
    last_attempt_at = Column(DateTime, nullable=True)
    created_at = Column(DateTime, nullable=False, default=datetime.utcnow)
    sent_at = Column(DateTime, nullable=True)

    __table_args__ = (
        UniqueConstraint("archive_id", "recipient_email", name="uq_archive_notifications_archive_email"),
        Index("idx_archive_notifications_status_attempt", "status", "last_attempt_at"),
    )
