"""Test configuration and fixtures."""

import threading
import uuid
from datetime import datetime, timedelta
from types import SimpleNamespace

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

from satchel.archive.notifications import Notifier
from satchel.archive.orchestrator import ArchiveOrchestrator
from satchel.errors import NotificationError, StorageError
from satchel.metadata import Base, Gallery, GalleryClient, GalleryImage
from satchel.storage import ArchiveStore, AssetSource


class FakeArchiveStore(ArchiveStore):
    """In-memory archive store; a failing upload leaves nothing behind."""

    def __init__(self):
        self.objects = {}
        self.sign_calls = 0
        self.uploads = 0

    def upload(self, key, chunks, content_type="application/zip"):
        self.uploads += 1
        buffer = bytearray()
        for chunk in chunks:
            buffer += chunk
        self.objects[key] = bytes(buffer)
        return key

    def download(self, reference):
        return self.objects[reference]

    def signed_url(self, reference, ttl_seconds, filename=None):
        self.sign_calls += 1
        name = f"&filename={filename}" if filename else ""
        return f"https://storage.test/{reference}?expires={ttl_seconds}&sig={self.sign_calls}{name}"

    def delete(self, reference):
        self.objects.pop(reference, None)


class FakeAssetSource(AssetSource):
    """Serves asset bytes from a dict keyed by storage key."""

    def __init__(self):
        self.data = {}
        self.failing = set()
        self.calls = []
        self._lock = threading.Lock()

    def load_bytes(self, asset):
        with self._lock:
            self.calls.append(asset.storage_key)
        if asset.storage_key in self.failing:
            raise IOError(f"source unavailable: {asset.storage_key}")
        return self.data[asset.storage_key]


class RecordingNotifier(Notifier):
    def __init__(self):
        self.sent = []
        self.failing = set()

    def notify(self, recipient, reference):
        if recipient.email in self.failing:
            raise NotificationError(f"mailbox rejected {recipient.email}")
        self.sent.append((recipient, reference))


def _config(**overrides):
    values = dict(
        archive_inline_threshold=20,
        archive_fetch_concurrency=4,
        archive_max_attempts=3,
        archive_job_timeout_seconds=1800,
        archive_inline_timeout_seconds=120,
        archive_retry_backoff_seconds=0,
        archive_retry_backoff_max_seconds=0,
        archive_fetch_failure_tolerance=0.1,
        archive_fingerprint_policy="count_mtime",
        archive_default_priority=0,
        archive_regenerate_priority=10,
        archive_stream_chunk_size=4096,
        archive_notification_max_attempts=3,
        archive_notification_retry_backoff_seconds=0,
    )
    values.update(overrides)
    return SimpleNamespace(**values)


@pytest.fixture
def engine(tmp_path):
    """File-backed sqlite so sessions opened by workers see committed rows."""
    db_engine = create_engine(
        f"sqlite:///{tmp_path / 'archives.db'}",
        connect_args={"check_same_thread": False, "timeout": 30},
    )
    Base.metadata.create_all(db_engine)
    yield db_engine
    Base.metadata.drop_all(db_engine)
    db_engine.dispose()


@pytest.fixture
def session_factory(engine):
    return sessionmaker(bind=engine)


@pytest.fixture
def test_db(session_factory):
    """Create test database session."""
    session = session_factory()
    yield session
    session.close()


@pytest.fixture
def archive_store():
    return FakeArchiveStore()


@pytest.fixture
def asset_source():
    return FakeAssetSource()


@pytest.fixture
def notifier():
    return RecordingNotifier()


@pytest.fixture
def archive_config():
    return _config()


@pytest.fixture
def make_orchestrator(archive_store, asset_source, notifier):
    """Build an orchestrator over the fakes, with optional config overrides."""

    def _make(**overrides):
        return ArchiveOrchestrator.from_settings(
            _config(**overrides),
            store=archive_store,
            asset_source=asset_source,
            notifier=notifier,
            link_builder=lambda archive: f"https://app.test/api/v1/archives/{archive.id}/download?token=t",
        )

    return _make


@pytest.fixture
def orchestrator(make_orchestrator):
    return make_orchestrator()


@pytest.fixture
def make_gallery(test_db, asset_source):
    """Create a gallery with ``image_count`` images whose bytes the fake source serves."""

    def _make(
        image_count=3,
        *,
        title="Summer Wedding",
        owner_id="owner-1",
        owner_email="owner@example.com",
        is_public=False,
        download_enabled=True,
    ):
        gallery = Gallery(
            id=uuid.uuid4(),
            title=title,
            owner_id=owner_id,
            owner_email=owner_email,
            is_public=is_public,
            download_enabled=download_enabled,
        )
        test_db.add(gallery)
        test_db.flush()
        add_images(gallery, image_count)
        test_db.commit()
        return gallery

    def add_images(gallery, count, *, start=None):
        existing = test_db.query(GalleryImage).filter(GalleryImage.gallery_id == gallery.id).count()
        first = existing if start is None else start
        base_time = datetime(2026, 10, 1, 12, 0, 0)
        images = []
        for offset in range(count):
            position = first + offset
            key = f"galleries/{gallery.id}/originals/{position:04d}.jpg"
            asset_source.data[key] = f"image-{gallery.id}-{position}".encode("utf-8") * 16
            image = GalleryImage(
                id=uuid.uuid4(),
                gallery_id=gallery.id,
                storage_key=key,
                original_filename=f"IMG_{position:04d}.JPG",
                position=position,
                updated_at=base_time + timedelta(minutes=position),
            )
            test_db.add(image)
            images.append(image)
        test_db.commit()
        return images

    _make.add_images = add_images
    return _make


@pytest.fixture
def add_client(test_db):
    def _add(gallery, email, *, name=None, notify=True):
        client = GalleryClient(
            id=uuid.uuid4(),
            gallery_id=gallery.id,
            email=email,
            name=name,
            notify_on_archive=notify,
        )
        test_db.add(client)
        test_db.commit()
        return client

    return _add


@pytest.fixture
def failing_store():
    """Archive store whose uploads always fail after consuming the stream."""

    class _FailingStore(FakeArchiveStore):
        def upload(self, key, chunks, content_type="application/zip"):
            for _ in chunks:
                pass
            raise StorageError("bucket rejected the upload")

    return _FailingStore()
