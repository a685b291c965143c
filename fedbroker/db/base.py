"""Declarative base for fedbroker SQLAlchemy models."""

from sqlalchemy.orm import DeclarativeBase


class BaseEntity(DeclarativeBase):
    """Base class for all fedbroker database entities."""
