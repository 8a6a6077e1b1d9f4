"""ORM models for provider telemetry events."""

from __future__ import annotations

from sqlalchemy import Column, DateTime, Index, Integer, String, Text, func

from .database import Base


class ProviderEvent(Base):
    __tablename__ = "provider_events"

    id = Column(Integer, primary_key=True, autoincrement=True)
    ts = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    level = Column(String(16), nullable=False)
    kind = Column(String(64), nullable=False)
    correlation_id = Column(String(64))
    provider = Column(String(100))
    instance_id = Column(String(200))
    error_code = Column(String(128))
    message = Column(String(512))
    meta = Column(Text)

    __table_args__ = (
        Index("ix_provider_events_ts", "ts"),
        Index("ix_provider_events_kind_ts", "kind", "ts"),
    )
