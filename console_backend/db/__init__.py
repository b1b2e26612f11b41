"""Database package — async SQLAlchemy engine, session factory, models and the SQL module repository."""
from .engine import get_engine, get_session_factory, dispose_engine
from .base import Base

__all__ = ["get_engine", "get_session_factory", "dispose_engine", "Base"]
