"""Satchel API routers package."""

from . import archives
from . import downloads
from . import jobs
