"""Download authorization for galleries."""

from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Optional

from satchel.errors import AuthorizationError


@dataclass(frozen=True)
class Requester:
    """Identity established by the upstream auth layer (None for anonymous)."""

    user_id: Optional[str] = None

    @property
    def is_anonymous(self) -> bool:
        return not self.user_id


class AccessPolicy(ABC):
    """Decides whether a requester may download a gallery."""

    @abstractmethod
    def can_access(self, gallery: Any, requester: Requester) -> bool:
        ...

    def require(self, gallery: Any, requester: Requester) -> None:
        if not self.can_access(gallery, requester):
            raise AuthorizationError(f"Not allowed to download gallery {gallery.id}")

    @staticmethod
    def is_owner(gallery: Any, requester: Requester) -> bool:
        return bool(requester.user_id) and str(requester.user_id) == str(gallery.owner_id)


class GalleryAccessPolicy(AccessPolicy):
    """Downloads must be enabled, and the requester must own the gallery or it must be public."""

    def can_access(self, gallery: Any, requester: Requester) -> bool:
        if not gallery.download_enabled:
            return False
        if self.is_owner(gallery, requester):
            return True
        return bool(gallery.is_public)
