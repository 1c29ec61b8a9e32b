"""Archive commands: request, inspect, stream and process gallery archives."""

import sys
from typing import Optional

import click

from satchel.access import GalleryAccessPolicy, Requester
from satchel.archive.orchestrator import FAILED, PENDING
from satchel.cli.base import CliCommand
from satchel.errors import ArchiveError
from satchel.services import build_direct_delivery, build_orchestrator
from satchel.settings import settings
from satchel.storage import create_asset_source
from satchel.worker import run_loop, run_worker_once


def _format_size(num_bytes: Optional[int]) -> str:
    if not num_bytes:
        return "-"
    size = float(num_bytes)
    for unit in ("B", "KB", "MB", "GB"):
        if size < 1024 or unit == "GB":
            return f"{size:.1f} {unit}" if unit != "B" else f"{int(size)} B"
        size /= 1024
    return f"{size:.1f} GB"


@click.command(name='request-archive')
@click.argument('gallery_id')
@click.option('--force', is_flag=True, default=False, help='Regenerate even if a fresh archive exists')
def request_archive_command(gallery_id: str, force: bool):
    """Return the gallery archive, building small galleries immediately and queueing large ones."""
    with RequestArchiveCommand() as cmd:
        cmd.run(gallery_id=gallery_id, force=force)


class RequestArchiveCommand(CliCommand):

    def run(self, *, gallery_id, force):
        gallery = self.load_gallery(gallery_id)
        orchestrator = build_orchestrator(settings)
        try:
            handle = orchestrator.get_or_build(self.db, gallery.id, force=force)
        except ArchiveError as exc:
            raise click.ClickException(str(exc))

        if handle.status == FAILED:
            raise click.ClickException(f"Archive build failed: {handle.error}")
        if handle.status == PENDING:
            click.echo(f"Archive queued for gallery {gallery.id}: job {handle.job_id}")
            return

        archive = handle.archive
        suffix = " (stale; refresh queued)" if handle.stale else ""
        click.echo(f"Archive ready for gallery {gallery.id}{suffix}")
        click.echo(f"  archive:  {archive.id} (version {archive.version})")
        click.echo(f"  images:   {archive.image_count} ({archive.skipped_count or 0} skipped)")
        click.echo(f"  size:     {_format_size(archive.file_size_bytes)}")
        click.echo(f"  path:     {archive.storage_path}")


@click.command(name='archive-status')
@click.argument('gallery_id')
def archive_status_command(gallery_id: str):
    """Show archive and job state for a gallery without starting any work."""
    with ArchiveStatusCommand() as cmd:
        cmd.run(gallery_id=gallery_id)


class ArchiveStatusCommand(CliCommand):

    def run(self, *, gallery_id):
        gallery = self.load_gallery(gallery_id)
        orchestrator = build_orchestrator(settings)
        status = orchestrator.get_status(self.db, gallery.id)

        click.echo(f"Gallery:     {gallery.title} ({gallery.id})")
        click.echo(f"State:       {status.state}")
        click.echo(f"Assets:      {status.fingerprint.asset_count}")
        click.echo(f"Fingerprint: {status.fingerprint.value}")
        if status.archive is not None:
            archive = status.archive
            click.echo(
                f"Archive:     v{archive.version} {archive.status} "
                f"{archive.image_count} images, {_format_size(archive.file_size_bytes)}"
            )
        if status.job is not None:
            job = status.job
            click.echo(
                f"Job:         {job.id} {job.status} priority={job.priority} "
                f"attempts={job.attempts}/{job.max_attempts}"
            )
            if job.progress_phase:
                click.echo(f"Progress:    {job.progress_phase} {job.progress_current}/{job.progress_total}")
            if job.last_error:
                click.echo(f"Last error:  {job.last_error}")


@click.command(name='stream-archive')
@click.argument('gallery_id')
@click.option('--output', '-o', type=click.Path(dir_okay=False, writable=True), default=None,
              help='Write the ZIP here instead of stdout')
def stream_archive_command(gallery_id: str, output: Optional[str]):
    """Assemble a gallery ZIP on the fly without storing it."""
    with StreamArchiveCommand() as cmd:
        cmd.run(gallery_id=gallery_id, output=output)


class StreamArchiveCommand(CliCommand):

    def run(self, *, gallery_id, output):
        gallery = self.load_gallery(gallery_id)
        delivery = build_direct_delivery(create_asset_source(settings), settings, access_policy=GalleryAccessPolicy())
        try:
            # Acting as the owner from the command line.
            stream = delivery.open(self.db, gallery.id, Requester(user_id=gallery.owner_id))
        except ArchiveError as exc:
            raise click.ClickException(str(exc))

        target = output or stream.filename
        written = 0
        sink = open(output, "wb") if output else sys.stdout.buffer
        try:
            for chunk in stream.chunks:
                sink.write(chunk)
                written += len(chunk)
        except ArchiveError as exc:
            raise click.ClickException(f"Stream aborted after {written} bytes: {exc}")
        finally:
            if output:
                sink.close()
            else:
                sink.flush()
        if output:
            click.echo(f"Wrote {stream.asset_count} images ({_format_size(written)}) to {target}", err=True)


@click.command(name='process-archives')
@click.option('--limit', default=5, show_default=True, type=int, help='Maximum jobs to build in this batch')
def process_archives_command(limit: int):
    """Release overdue builds, then build up to LIMIT queued archives."""
    with ProcessArchivesCommand() as cmd:
        cmd.run(limit=limit)


class ProcessArchivesCommand(CliCommand):

    def run(self, *, limit):
        result = run_worker_once(
            max_jobs=limit,
            orchestrator=build_orchestrator(settings),
            session_factory=self.Session,
        )
        click.echo(
            f"released={result.released} processed={result.processed} "
            f"succeeded={result.succeeded} failed={result.failed} renotified={result.renotified}"
        )


@click.command(name='retry-notifications')
@click.option('--limit', default=50, show_default=True, type=int, help='Maximum failed notifications to retry')
def retry_notifications_command(limit: int):
    """Retry failed archive-ready emails whose backoff has elapsed."""
    with RetryNotificationsCommand() as cmd:
        cmd.run(limit=limit)


class RetryNotificationsCommand(CliCommand):

    def run(self, *, limit):
        sent = build_orchestrator(settings).retry_notifications(self.db, limit=limit)
        click.echo(f"Resent {sent} notification(s)")


@click.command(name='resend-notification')
@click.argument('archive_id')
@click.argument('email')
def resend_notification_command(archive_id: str, email: str):
    """Send the archive-ready email for ARCHIVE_ID to EMAIL again."""
    with ResendNotificationCommand() as cmd:
        cmd.run(archive_id=archive_id, email=email)


class ResendNotificationCommand(CliCommand):

    def run(self, *, archive_id, email):
        try:
            record = build_orchestrator(settings).resend_notification(self.db, archive_id, email)
        except ArchiveError as exc:
            raise click.ClickException(str(exc))
        click.echo(f"Sent archive {record.archive_id} to {record.recipient_email} (attempt {record.attempts})")


@click.command(name='run-worker')
@click.option('--once', is_flag=True, default=False, help='Process at most one job and exit')
@click.option('--poll-seconds', default=5.0, show_default=True, type=float, help='Idle wait between claims')
def run_worker_command(once: bool, poll_seconds: float):
    """Run the archive worker loop in the foreground."""
    with RunWorkerCommand() as cmd:
        cmd.run(once=once, poll_seconds=poll_seconds)


class RunWorkerCommand(CliCommand):

    def run(self, *, once, poll_seconds):
        click.echo("Starting archive worker (Ctrl+C to stop)")
        try:
            run_loop(
                once=once,
                poll_seconds=poll_seconds,
                orchestrator=build_orchestrator(settings),
                session_factory=self.Session,
            )
        except KeyboardInterrupt:
            click.echo("Worker stopped")
