"""Signed, expiring archive download tokens."""

from datetime import datetime, timedelta, timezone
from typing import Any, Optional

from jose import JWTError, jwt

from satchel.settings import settings

_ALGORITHM = "HS256"
_PURPOSE = "archive-download"


def generate_download_token(
    archive_id: Any,
    *,
    secret: Optional[str] = None,
    ttl_seconds: Optional[int] = None,
    now: Optional[datetime] = None,
) -> str:
    """Create a token granting download of one archive until it expires."""
    issued_at = now or datetime.now(timezone.utc)
    ttl = int(ttl_seconds if ttl_seconds is not None else settings.archive_email_link_ttl_seconds)
    claims = {
        "sub": str(archive_id),
        "purpose": _PURPOSE,
        "iat": int(issued_at.timestamp()),
        "exp": int((issued_at + timedelta(seconds=ttl)).timestamp()),
    }
    return jwt.encode(claims, secret or settings.download_token_secret, algorithm=_ALGORITHM)


def verify_download_token(archive_id: Any, token: Optional[str], *, secret: Optional[str] = None) -> bool:
    """Return True if ``token`` is a valid, unexpired token for ``archive_id``."""
    if not token:
        return False
    try:
        claims = jwt.decode(token, secret or settings.download_token_secret, algorithms=[_ALGORITHM])
    except JWTError:
        return False
    return claims.get("purpose") == _PURPOSE and claims.get("sub") == str(archive_id)


def build_download_link(
    archive_id: Any,
    *,
    base_url: Optional[str] = None,
    secret: Optional[str] = None,
    ttl_seconds: Optional[int] = None,
) -> str:
    token = generate_download_token(archive_id, secret=secret, ttl_seconds=ttl_seconds)
    base = (base_url or settings.app_url).rstrip("/")
    return f"{base}/api/v1/archives/{archive_id}/download?token={token}"
