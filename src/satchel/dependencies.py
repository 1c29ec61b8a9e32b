"""Shared dependencies for FastAPI endpoints."""

import hmac
from typing import Optional

from fastapi import Depends, Header, HTTPException, Query, Request, status

from satchel.access import AccessPolicy, GalleryAccessPolicy, Requester
from satchel.archive.delivery import CachedDelivery, DirectStreamDelivery
from satchel.archive.notifications import Notifier
from satchel.archive.orchestrator import ArchiveOrchestrator
from satchel.cache import TTLCache
from satchel.database import SessionLocal, get_db
from satchel.email import ResendArchiveNotifier
from satchel.errors import (
    ArchiveError,
    ArchiveNotFoundError,
    AuthorizationError,
    FetchError,
    GalleryNotFoundError,
    NotificationError,
    StorageError,
    ValidationError,
)
from satchel.services import (
    build_cached_delivery,
    build_direct_delivery,
    build_orchestrator,
    build_url_cache,
)
from satchel.settings import settings
from satchel.storage import ArchiveStore, AssetSource, create_archive_store, create_asset_source

__all__ = [
    "get_db",
    "get_session_factory",
    "get_requester",
    "get_access_policy",
    "get_archive_store",
    "get_asset_source",
    "get_notifier",
    "get_url_cache",
    "get_orchestrator",
    "get_cached_delivery",
    "get_direct_delivery",
    "require_cron_secret",
    "archive_http_exception",
]


def get_session_factory():
    """Session factory for endpoints that open their own sessions (batch processing)."""
    return SessionLocal


async def get_requester(x_user_id: Optional[str] = Header(None, alias="X-User-ID")) -> Requester:
    """Identity forwarded by the upstream auth layer; anonymous when absent."""
    user_id = (x_user_id or "").strip() or None
    return Requester(user_id=user_id)


def get_access_policy() -> AccessPolicy:
    return GalleryAccessPolicy()


def get_archive_store(request: Request) -> ArchiveStore:
    store = getattr(request.app.state, "archive_store", None)
    if store is None:
        store = create_archive_store(settings)
        request.app.state.archive_store = store
    return store


def get_asset_source(request: Request) -> AssetSource:
    source = getattr(request.app.state, "asset_source", None)
    if source is None:
        source = create_asset_source(settings)
        request.app.state.asset_source = source
    return source


def get_notifier() -> Notifier:
    return ResendArchiveNotifier()


def get_url_cache(request: Request) -> TTLCache:
    cache = getattr(request.app.state, "signed_url_cache", None)
    if cache is None:
        cache = build_url_cache(settings)
        request.app.state.signed_url_cache = cache
    return cache


def get_orchestrator(
    store: ArchiveStore = Depends(get_archive_store),
    asset_source: AssetSource = Depends(get_asset_source),
    notifier: Notifier = Depends(get_notifier),
) -> ArchiveOrchestrator:
    return build_orchestrator(settings, store=store, asset_source=asset_source, notifier=notifier)


def get_cached_delivery(
    orchestrator: ArchiveOrchestrator = Depends(get_orchestrator),
    store: ArchiveStore = Depends(get_archive_store),
    access_policy: AccessPolicy = Depends(get_access_policy),
    url_cache: TTLCache = Depends(get_url_cache),
) -> CachedDelivery:
    return build_cached_delivery(orchestrator, store, settings, access_policy=access_policy, url_cache=url_cache)


def get_direct_delivery(
    asset_source: AssetSource = Depends(get_asset_source),
    access_policy: AccessPolicy = Depends(get_access_policy),
) -> DirectStreamDelivery:
    return build_direct_delivery(asset_source, settings, access_policy=access_policy)


async def require_cron_secret(
    authorization: Optional[str] = Header(None),
    secret: Optional[str] = Query(None),
) -> None:
    """Accept ``Authorization: Bearer <cron_secret>`` or ``?secret=<cron_secret>``."""
    expected = settings.cron_secret
    if not expected:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail="Cron secret not configured")
    provided = secret or ""
    if authorization and authorization.lower().startswith("bearer "):
        provided = authorization[7:].strip()
    if not hmac.compare_digest(provided.encode("utf-8"), expected.encode("utf-8")):
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Unauthorized")


def archive_http_exception(exc: ArchiveError) -> HTTPException:
    """Map an archive error to the HTTP error returned to clients."""
    if isinstance(exc, (GalleryNotFoundError, ArchiveNotFoundError)):
        return HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc))
    if isinstance(exc, ValidationError):
        return HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc))
    if isinstance(exc, AuthorizationError):
        return HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail=str(exc))
    if isinstance(exc, (FetchError, StorageError, NotificationError)):
        return HTTPException(status_code=status.HTTP_502_BAD_GATEWAY, detail=str(exc))
    return HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail=str(exc))
