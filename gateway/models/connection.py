"""Service connection ORM model."""

from __future__ import annotations

from datetime import datetime
from typing import TYPE_CHECKING, Any

from sqlalchemy import DateTime, ForeignKey, String, Text, UniqueConstraint
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import Mapped, mapped_column, relationship

from gateway.db.base import Base, TimestampMixin

if TYPE_CHECKING:
    from gateway.models.device_session import DeviceSession

CONNECTION_STATUS_ACTIVE = "active"


class Connection(Base, TimestampMixin):
    """Credential binding between one device session and one external service."""

    __tablename__ = "connections"
    __table_args__ = (
        UniqueConstraint(
            "device_session_id", "service_name", name="uq_connections_device_session_service"
        ),
    )

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    device_session_id: Mapped[str] = mapped_column(
        String(64), ForeignKey("device_sessions.id", ondelete="CASCADE"), nullable=False
    )
    service_name: Mapped[str] = mapped_column(String(32), nullable=False)
    access_token: Mapped[str] = mapped_column(Text, nullable=False)
    refresh_token: Mapped[str | None] = mapped_column(Text, nullable=True)
    expires_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    status: Mapped[str] = mapped_column(
        String(16), nullable=False, default=CONNECTION_STATUS_ACTIVE
    )
    service_metadata: Mapped[dict[str, Any]] = mapped_column(JSONB, nullable=False, default=dict)

    device_session: Mapped[DeviceSession] = relationship(back_populates="connections")
