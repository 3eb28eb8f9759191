"""Database package exports."""

from gateway.db.base import Base
from gateway.db.session import dispose_engine, get_engine, get_session_factory

__all__ = ["Base", "dispose_engine", "get_engine", "get_session_factory"]
