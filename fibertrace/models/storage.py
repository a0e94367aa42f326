from datetime import UTC, datetime

from sqlalchemy import DateTime, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from fibertrace.db import LocalBase


class LocalKeyValue(LocalBase):
    """One durable key of the on-device store (a collection snapshot, sync metadata, the timer)."""

    __tablename__ = "local_kv_entries"

    key: Mapped[str] = mapped_column(String(160), primary_key=True)
    value: Mapped[str] = mapped_column(Text, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=lambda: datetime.now(UTC), onupdate=lambda: datetime.now(UTC)
    )
