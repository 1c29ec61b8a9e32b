"""Construction of archive services from settings."""

from typing import Any, Optional

from satchel.access import AccessPolicy, GalleryAccessPolicy
from satchel.archive.delivery import CachedDelivery, DirectStreamDelivery
from satchel.archive.fetcher import BoundedFetcher
from satchel.archive.notifications import Notifier
from satchel.archive.orchestrator import ArchiveOrchestrator
from satchel.cache import TTLCache
from satchel.download_tokens import build_download_link
from satchel.email import ResendArchiveNotifier
from satchel.settings import settings
from satchel.storage import ArchiveStore, AssetSource, create_archive_store, create_asset_source


def build_link_builder(config: Any = settings):
    def _link(archive) -> str:
        return build_download_link(
            archive.id,
            base_url=config.app_url,
            secret=config.download_token_secret,
            ttl_seconds=config.archive_email_link_ttl_seconds,
        )

    return _link


def build_orchestrator(
    config: Any = settings,
    *,
    store: Optional[ArchiveStore] = None,
    asset_source: Optional[AssetSource] = None,
    notifier: Optional[Notifier] = None,
) -> ArchiveOrchestrator:
    if notifier is None:
        notifier = ResendArchiveNotifier()
    return ArchiveOrchestrator.from_settings(
        config,
        store=store or create_archive_store(config),
        asset_source=asset_source or create_asset_source(config),
        notifier=notifier,
        link_builder=build_link_builder(config),
    )


def build_url_cache(config: Any = settings) -> TTLCache:
    return TTLCache(config.archive_signed_url_cache_seconds)


def build_cached_delivery(
    orchestrator: ArchiveOrchestrator,
    store: ArchiveStore,
    config: Any = settings,
    *,
    access_policy: Optional[AccessPolicy] = None,
    url_cache: Optional[TTLCache] = None,
) -> CachedDelivery:
    return CachedDelivery(
        orchestrator,
        store,
        access_policy or GalleryAccessPolicy(),
        url_cache=url_cache if url_cache is not None else build_url_cache(config),
        url_ttl_seconds=config.archive_signed_url_ttl_seconds,
        token_secret=config.download_token_secret,
    )


def build_direct_delivery(
    asset_source: AssetSource,
    config: Any = settings,
    *,
    access_policy: Optional[AccessPolicy] = None,
) -> DirectStreamDelivery:
    return DirectStreamDelivery(
        BoundedFetcher(asset_source.load_bytes, concurrency=config.archive_fetch_concurrency),
        access_policy or GalleryAccessPolicy(),
        chunk_size=config.archive_stream_chunk_size,
    )
