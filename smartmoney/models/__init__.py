"""SQLAlchemy ORM models."""

from smartmoney.models.base import Base
from smartmoney.models.cache_records import CacheRecord

__all__ = ["Base", "CacheRecord"]
