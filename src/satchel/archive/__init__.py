"""Gallery archive building, caching and delivery."""

from .assembler import BundleEntry, archive_filename, assemble, bundle_entries, entry_name
from .builder import ArchiveBuilder, BuildOutcome
from .delivery import CachedDelivery, DeliveryResult, DirectStream, DirectStreamDelivery
from .fetcher import BoundedFetcher, FetchResult
from .fingerprint import EMPTY_FINGERPRINT, Fingerprint, FingerprintComputer, register_fingerprint_policy
from .jobs import ClaimedBuild, JobPolicy
from .notifications import ArchiveReference, Notifier, Recipient
from .orchestrator import ArchiveHandle, ArchiveOrchestrator, ArchiveStatus

__all__ = [
    "ArchiveBuilder",
    "ArchiveHandle",
    "ArchiveOrchestrator",
    "ArchiveReference",
    "ArchiveStatus",
    "BoundedFetcher",
    "BuildOutcome",
    "BundleEntry",
    "CachedDelivery",
    "ClaimedBuild",
    "DeliveryResult",
    "DirectStream",
    "DirectStreamDelivery",
    "EMPTY_FINGERPRINT",
    "FetchResult",
    "Fingerprint",
    "FingerprintComputer",
    "JobPolicy",
    "Notifier",
    "Recipient",
    "archive_filename",
    "assemble",
    "bundle_entries",
    "entry_name",
    "register_fingerprint_policy",
]
