"""Archive object storage and source-asset retrieval backends."""

from __future__ import annotations

import logging
import threading
from abc import ABC, abstractmethod
from datetime import timedelta
from typing import Any, Iterable, Optional
from urllib.parse import quote

import httpx
from google.api_core import exceptions as gcs_exceptions
from google.cloud import storage

from satchel.errors import ArchiveError, StorageError

logger = logging.getLogger(__name__)


class ArchiveStore(ABC):
    """Durable storage for built bundles."""

    @abstractmethod
    def upload(self, key: str, chunks: Iterable[bytes], content_type: str = "application/zip") -> str:
        """Stream chunks into a new object and return its reference.

        Archive errors raised by the chunk iterator propagate unchanged and
        leave no object behind.
        """

    @abstractmethod
    def download(self, reference: str) -> bytes:
        """Return the full object bytes."""

    @abstractmethod
    def signed_url(self, reference: str, ttl_seconds: int, filename: Optional[str] = None) -> str:
        """Return a time-limited URL for direct client download."""

    @abstractmethod
    def delete(self, reference: str) -> None:
        """Remove an object if present."""


class AssetSource(ABC):
    """Retrieves original asset bytes by storage key."""

    @abstractmethod
    def load_bytes(self, asset: Any) -> bytes:
        """Return the bytes for ``asset.storage_key``."""

    def close(self) -> None:
        return None


class GCSArchiveStore(ArchiveStore):
    """Archive store backed by a Google Cloud Storage bucket."""

    def __init__(
        self,
        bucket_name: str,
        *,
        project: Optional[str] = None,
        client: Optional[Any] = None,
        signing_service_account: Optional[str] = None,
    ):
        self.bucket_name = bucket_name
        self._client = client or storage.Client(project=project)
        self._bucket = self._client.bucket(bucket_name)
        self._signing_service_account = signing_service_account
        self._credentials = None
        self._credentials_lock = threading.Lock()

    def upload(self, key: str, chunks: Iterable[bytes], content_type: str = "application/zip") -> str:
        blob = self._bucket.blob(key)
        try:
            with blob.open("wb", content_type=content_type) as writer:
                for chunk in chunks:
                    writer.write(chunk)
        except ArchiveError:
            self._discard(blob)
            raise
        except Exception as exc:
            self._discard(blob)
            raise StorageError(f"Failed to upload gs://{self.bucket_name}/{key}: {exc}") from exc
        logger.info("Uploaded archive object gs://%s/%s", self.bucket_name, key)
        return key

    def download(self, reference: str) -> bytes:
        try:
            return self._bucket.blob(reference).download_as_bytes()
        except Exception as exc:
            raise StorageError(f"Failed to download gs://{self.bucket_name}/{reference}: {exc}") from exc

    def signed_url(self, reference: str, ttl_seconds: int, filename: Optional[str] = None) -> str:
        blob = self._bucket.blob(reference)
        kwargs = {
            "version": "v4",
            "expiration": timedelta(seconds=ttl_seconds),
            "method": "GET",
        }
        if filename:
            kwargs["response_disposition"] = f'attachment; filename="{filename}"'
        try:
            if self._signing_service_account:
                # Sign through IAM signBlob when running without a private key.
                kwargs["service_account_email"] = self._signing_service_account
                kwargs["access_token"] = self._access_token()
            return blob.generate_signed_url(**kwargs)
        except Exception as exc:
            raise StorageError(f"Failed to sign gs://{self.bucket_name}/{reference}: {exc}") from exc

    def delete(self, reference: str) -> None:
        try:
            self._bucket.blob(reference).delete()
        except gcs_exceptions.NotFound:
            return
        except Exception as exc:
            raise StorageError(f"Failed to delete gs://{self.bucket_name}/{reference}: {exc}") from exc

    def _discard(self, blob) -> None:
        try:
            blob.delete()
        except gcs_exceptions.NotFound:
            return
        except Exception:
            logger.warning("Could not remove partial archive object %s", blob.name, exc_info=True)

    def _access_token(self) -> str:
        import google.auth
        from google.auth.transport import requests as google_requests

        with self._credentials_lock:
            if self._credentials is None:
                self._credentials, _ = google.auth.default(
                    scopes=["https://www.googleapis.com/auth/cloud-platform"]
                )
            if not self._credentials.token or not self._credentials.valid:
                self._credentials.refresh(google_requests.Request())
            return self._credentials.token


class GCSAssetSource(AssetSource):
    """Reads originals from the gallery image bucket."""

    def __init__(
        self,
        bucket_name: str,
        *,
        project: Optional[str] = None,
        client: Optional[Any] = None,
        timeout_seconds: float = 60.0,
    ):
        self.bucket_name = bucket_name
        self._client = client or storage.Client(project=project)
        self._bucket = self._client.bucket(bucket_name)
        self._timeout_seconds = timeout_seconds

    def load_bytes(self, asset: Any) -> bytes:
        return self._bucket.blob(asset.storage_key).download_as_bytes(timeout=self._timeout_seconds)


class HttpAssetSource(AssetSource):
    """Reads originals over HTTP(S) from a CDN or origin base URL."""

    def __init__(self, base_url: str, *, timeout_seconds: float = 60.0, client: Optional[httpx.Client] = None):
        if not base_url and client is None:
            raise ValueError("HttpAssetSource requires base_url")
        self._client = client or httpx.Client(
            base_url=base_url.rstrip("/") + "/",
            timeout=timeout_seconds,
            follow_redirects=True,
        )

    def load_bytes(self, asset: Any) -> bytes:
        response = self._client.get(quote(str(asset.storage_key).lstrip("/")))
        response.raise_for_status()
        return response.content

    def close(self) -> None:
        self._client.close()


def create_archive_store(config: Any) -> ArchiveStore:
    """Instantiate the archive store from settings."""
    return GCSArchiveStore(
        config.archive_bucket_name,
        project=config.gcp_project_id,
        signing_service_account=config.signing_service_account,
    )


def create_asset_source(config: Any) -> AssetSource:
    """Instantiate the configured source-asset backend."""
    normalized = (config.asset_source or "gcs").strip().lower()
    if normalized == "gcs":
        return GCSAssetSource(
            config.storage_bucket_name,
            project=config.gcp_project_id,
            timeout_seconds=config.asset_fetch_timeout_seconds,
        )
    if normalized == "http":
        return HttpAssetSource(config.asset_base_url, timeout_seconds=config.asset_fetch_timeout_seconds)
    raise ValueError(f"Unsupported asset source: {config.asset_source}")
