"""Satchel CLI entry point with lazy command registration."""

from __future__ import annotations

import click

_COMMANDS_REGISTERED = False


def _register_commands_once() -> None:
    global _COMMANDS_REGISTERED
    if _COMMANDS_REGISTERED:
        return

    from .commands import archives

    cli.add_command(archives.request_archive_command, name="request-archive")
    cli.add_command(archives.archive_status_command, name="archive-status")
    cli.add_command(archives.stream_archive_command, name="stream-archive")
    cli.add_command(archives.process_archives_command, name="process-archives")
    cli.add_command(archives.run_worker_command, name="run-worker")
    cli.add_command(archives.retry_notifications_command, name="retry-notifications")
    cli.add_command(archives.resend_notification_command, name="resend-notification")

    _COMMANDS_REGISTERED = True


class _LazyCLIGroup(click.Group):
    def list_commands(self, ctx):
        _register_commands_once()
        return super().list_commands(ctx)

    def get_command(self, ctx, cmd_name):
        _register_commands_once()
        return super().get_command(ctx, cmd_name)


@click.group(cls=_LazyCLIGroup)
def cli():
    """Satchel CLI for building and inspecting gallery archives."""
    pass


if __name__ == "__main__":
    cli()
