"""Storage package providing persistence utilities for the KOL monitor."""

from .models import Subscriber
from .sqlite_repository import SQLiteRepository

__all__ = ["SQLiteRepository", "Subscriber"]
