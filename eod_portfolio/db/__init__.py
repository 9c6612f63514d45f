"""Database base class and the injectable engine/session wrapper."""

from .base import Base
from .database import Database

__all__ = ["Base", "Database"]
