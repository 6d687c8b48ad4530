"""Shared column helpers for SQLModel tables."""

from __future__ import annotations

import uuid
from enum import Enum

from sqlalchemy import Column
from sqlalchemy import Enum as SAEnum


def enum_column(enum_cls: type[Enum], *, index: bool = False, nullable: bool = False) -> Column:
    """String-backed enum column storing member *values* (``"pending_drop"``).

    Values rather than names keep raw SQL predicates in partial indexes
    readable and portable between SQLite and PostgreSQL.
    """
    return Column(
        SAEnum(
            enum_cls,
            values_callable=lambda members: [m.value for m in members],
            native_enum=False,
            length=32,
            validate_strings=True,
        ),
        index=index,
        nullable=nullable,
    )


def new_id(prefix: str) -> str:
    """Generate a prefixed identifier, e.g. ``asg-1a2b3c4d5e6f``."""
    return f"{prefix}-{uuid.uuid4().hex[:12]}"
