"""Archive storage and asset source abstractions."""

from .providers import (
    ArchiveStore,
    AssetSource,
    GCSArchiveStore,
    GCSAssetSource,
    HttpAssetSource,
    create_archive_store,
    create_asset_source,
)

__all__ = [
    "ArchiveStore",
    "AssetSource",
    "GCSArchiveStore",
    "GCSAssetSource",
    "HttpAssetSource",
    "create_archive_store",
    "create_asset_source",
]
