"""Device session ORM model."""

from __future__ import annotations

from typing import TYPE_CHECKING

from sqlalchemy import String
from sqlalchemy.orm import Mapped, mapped_column, relationship

from gateway.db.base import Base, TimestampMixin

if TYPE_CHECKING:
    from gateway.models.connection import Connection


class DeviceSession(Base, TimestampMixin):
    """Anonymous identity for one client install, independent of any provider account."""

    __tablename__ = "device_sessions"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)

    connections: Mapped[list[Connection]] = relationship(
        back_populates="device_session",
        cascade="all, delete-orphan",
        passive_deletes=True,
    )
