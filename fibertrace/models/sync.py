import uuid
from datetime import UTC, datetime

from sqlalchemy import JSON, Boolean, DateTime, Index, Integer, String, UniqueConstraint, Uuid
from sqlalchemy.orm import Mapped, mapped_column

from fibertrace.db import Base


class ServerRecord(Base):
    """Authoritative copy of a synced record, stored as its serialized payload."""

    __tablename__ = "sync_server_records"
    __table_args__ = (
        UniqueConstraint("collection", "record_id", name="uq_sync_server_records_collection_record"),
        Index("ix_sync_server_records_collection_received", "collection", "received_at"),
    )

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    collection: Mapped[str] = mapped_column(String(40), nullable=False)
    record_id: Mapped[str] = mapped_column(String(80), nullable=False)
    kind: Mapped[str] = mapped_column(String(40), nullable=False)
    payload: Mapped[dict] = mapped_column(JSON, nullable=False)
    revision: Mapped[int] = mapped_column(Integer, default=0)
    origin_device: Mapped[str | None] = mapped_column(String(120))
    # origin device + creation time; tells a renumbered replay from an id collision
    identity_key: Mapped[str] = mapped_column(String(200), nullable=False, index=True)
    is_deleted: Mapped[bool] = mapped_column(Boolean, default=False)
    record_updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    received_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=lambda: datetime.now(UTC)
    )
