"""CacheRecord model — SQL backing table for the key-value cache store."""

from datetime import datetime, timezone

from sqlalchemy import JSON, DateTime, Float, String
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import Mapped, mapped_column

from smartmoney.models.base import Base


class CacheRecord(Base):
    """One serialized cache entry, addressed by its namespaced key."""

    __tablename__ = "cache_records"

    key: Mapped[str] = mapped_column(String(256), primary_key=True)
    value: Mapped[dict] = mapped_column(
        JSON().with_variant(JSONB(), "postgresql"), nullable=False,
    )
    expires_at: Mapped[float | None] = mapped_column(Float, nullable=True, index=True)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=lambda: datetime.now(timezone.utc),
    )
