"""Email sending via Resend API."""

import html
import logging
from typing import Optional

import resend

from satchel.archive.notifications import ArchiveReference, Notifier, Recipient
from satchel.errors import NotificationError
from satchel.settings import settings

logger = logging.getLogger(__name__)


def _resend_configured() -> bool:
    if not settings.email_resend_api_key:
        logger.error("EMAIL_RESEND_API_KEY not configured - cannot send email")
        return False
    return True


def _masked_api_key() -> str:
    raw = str(settings.email_resend_api_key or "").strip()
    if not raw:
        return "(missing)"
    if len(raw) <= 10:
        return f"{raw[:2]}***"
    return f"{raw[:6]}...{raw[-4:]}"


def _extract_resend_message_id(response: object) -> Optional[str]:
    if isinstance(response, dict):
        value = response.get("id")
        return str(value).strip() if value else None
    value = getattr(response, "id", None)
    return str(value).strip() if value else None


def _format_size(num_bytes: Optional[int]) -> str:
    if not num_bytes:
        return "unknown size"
    size = float(num_bytes)
    for unit in ("bytes", "KB", "MB", "GB"):
        if size < 1024 or unit == "GB":
            return f"{size:.0f} {unit}" if unit == "bytes" else f"{size:.1f} {unit}"
        size /= 1024
    return f"{num_bytes} bytes"


def send_archive_ready_email(
    to_email: str,
    gallery_title: str,
    download_link: Optional[str],
    image_count: int,
    file_size_bytes: Optional[int] = None,
    recipient_name: Optional[str] = None,
) -> bool:
    """Send an "archive ready" email via Resend.

    Args:
        to_email: Recipient email address
        gallery_title: Gallery display title
        download_link: Signed download link (optional)
        image_count: Number of photos in the archive
        file_size_bytes: Archive size for display (optional)
        recipient_name: Greeting name (optional)

    Returns:
        True if email sent successfully, False otherwise
    """
    if not _resend_configured():
        return False

    resend.api_key = settings.email_resend_api_key

    title = html.escape(gallery_title or "Your gallery")
    greeting = f"Hi {html.escape(recipient_name)}," if recipient_name else "Hi,"
    size_text = _format_size(file_size_bytes)
    expiry_days = max(1, int(settings.archive_email_link_ttl_seconds) // 86400)
    link_html = (
        f'<p><a href="{html.escape(download_link)}" '
        'style="display:inline-block;padding:10px 18px;background:#111827;color:#ffffff;'
        'border-radius:8px;text-decoration:none;">Download photos</a></p>'
        if download_link
        else ""
    )
    html_body = f"""
    <html>
    <body style="font-family:-apple-system,BlinkMacSystemFont,'Segoe UI',Roboto,sans-serif;color:#111827;">
      <p>{greeting}</p>
      <p>The download for <strong>{title}</strong> is ready: {image_count} photos, {size_text}.</p>
      {link_html}
      <p style="color:#6b7280;font-size:13px;">This link expires in {expiry_days} days.</p>
    </body>
    </html>
    """
    text_body = (
        f"{greeting}\n\n"
        f"The download for {gallery_title or 'your gallery'} is ready: {image_count} photos, {size_text}.\n"
        + (f"\nDownload: {download_link}\n" if download_link else "")
        + f"\nThis link expires in {expiry_days} days.\n"
    )

    params = {
        "from": settings.email_from_address,
        "to": [to_email],
        "subject": f'Your photos from "{gallery_title}" are ready' if gallery_title else "Your photos are ready",
        "html": html_body,
        "text": text_body,
    }

    try:
        response = resend.Emails.send(params)
    except Exception as exc:
        logger.error(
            "Resend send failed for %s (key=%s): %s",
            to_email,
            _masked_api_key(),
            exc,
        )
        return False

    message_id = _extract_resend_message_id(response)
    logger.info("Archive email sent to %s (message_id=%s)", to_email, message_id or "unknown")
    return True


class ResendArchiveNotifier(Notifier):
    """Notifier that emails recipients through Resend."""

    def notify(self, recipient: Recipient, reference: ArchiveReference) -> None:
        sent = send_archive_ready_email(
            to_email=recipient.email,
            gallery_title=reference.gallery_title,
            download_link=reference.download_url,
            image_count=reference.image_count,
            file_size_bytes=reference.file_size_bytes,
            recipient_name=recipient.name,
        )
        if not sent:
            raise NotificationError(f"Archive email to {recipient.email} was not sent")
