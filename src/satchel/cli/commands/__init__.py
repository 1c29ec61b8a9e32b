"""CLI commands package."""

from . import archives

__all__ = [
    'archives',
]
