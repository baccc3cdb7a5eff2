"""Database package for the commerce platform."""
from .connection import close_db, get_session_factory, init_db
from .models import Base

__all__ = ["Base", "close_db", "get_session_factory", "init_db"]
