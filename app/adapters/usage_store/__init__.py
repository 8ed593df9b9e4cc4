"""Durable usage stores (fallback and statistics source for the limiter)."""

from app.adapters.usage_store.base import AbstractUsageStore
from app.adapters.usage_store.sqlalchemy_store import Base, IPUsageLimit, SQLAlchemyUsageStore

__all__ = [
    "AbstractUsageStore",
    "Base",
    "IPUsageLimit",
    "SQLAlchemyUsageStore",
]
