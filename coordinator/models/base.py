"""Declarative base for all ORM models."""

from __future__ import annotations

import uuid

from sqlalchemy.orm import DeclarativeBase


class Base(DeclarativeBase):
    """Base class for coordinator tables."""


def new_uuid() -> str:
    """Primary key factory for string-keyed tables."""
    return str(uuid.uuid4())
