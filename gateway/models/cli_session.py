"""CLI bearer session ORM model."""

from __future__ import annotations

from datetime import datetime
from uuid import UUID, uuid4

from sqlalchemy import DateTime, Index, String
from sqlalchemy.dialects.postgresql import UUID as PGUUID
from sqlalchemy.orm import Mapped, mapped_column

from gateway.db.base import Base, TimestampMixin


class CliSession(Base, TimestampMixin):
    """One issued session/refresh token pair.

    The device session is referenced by value only; the signed `device_session_id`
    claim in the session token is the binding of record.
    """

    __tablename__ = "cli_sessions"
    __table_args__ = (Index("ix_cli_sessions_expires_at", "expires_at"),)

    id: Mapped[UUID] = mapped_column(PGUUID(as_uuid=True), primary_key=True, default=uuid4)
    device_session_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    hashed_session_token: Mapped[str] = mapped_column(String(64), nullable=False, unique=True)
    hashed_refresh_token: Mapped[str] = mapped_column(String(64), nullable=False, unique=True)
    expires_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    device_info: Mapped[str | None] = mapped_column(String(512), nullable=True)
