"""Database session and engine."""

from commission_engine.db.session import AsyncSessionLocal, build_engine, engine, get_db, get_db_context

__all__ = ["AsyncSessionLocal", "build_engine", "engine", "get_db", "get_db_context"]
