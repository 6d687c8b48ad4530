"""Hive and Cell data models.

Hive status (site level) and cell status (slot level) are orthogonal: a hive
under maintenance still has available cells, it just does not accept drops.
"""

from datetime import datetime
from enum import Enum
from typing import Optional

from sqlalchemy import UniqueConstraint
from sqlmodel import Field, SQLModel

from keyhive.models.types import enum_column
from keyhive.utils.datetime import utcnow


class HiveStatus(str, Enum):
    ACTIVE = "active"
    IDLE = "idle"  # Registered, no drops yet
    MAINTENANCE = "maintenance"
    OFFLINE = "offline"


class CellStatus(str, Enum):
    AVAILABLE = "available"
    OCCUPIED = "occupied"
    MAINTENANCE = "maintenance"
    OFFLINE = "offline"


class Hive(SQLModel, table=True):
    """Hive - partner-operated drop point."""

    __tablename__ = "hives"

    id: str = Field(primary_key=True)
    partner_id: str = Field(index=True)

    name: str = Field(unique=True)
    location_name: Optional[str] = Field(default=None)
    address: Optional[str] = Field(default=None)
    city: Optional[str] = Field(default=None)
    country: Optional[str] = Field(default=None)
    latitude: Optional[float] = Field(default=None)
    longitude: Optional[float] = Field(default=None)

    total_cells: int = Field(default=0)
    status: HiveStatus = Field(
        default=HiveStatus.IDLE, sa_column=enum_column(HiveStatus, index=True)
    )

    created_at: datetime = Field(default_factory=utcnow)

    @property
    def accepts_drops(self) -> bool:
        return self.status in (HiveStatus.ACTIVE, HiveStatus.IDLE)


class Cell(SQLModel, table=True):
    """Cell - one lockable slot in a hive.

    ``status`` is a cache of occupancy; the source of truth is the set of
    assignments still holding the cell. Both are changed in one transaction.
    """

    __tablename__ = "cells"
    __table_args__ = (UniqueConstraint("hive_id", "cell_number", name="uq_cells_hive_number"),)

    id: str = Field(primary_key=True)
    hive_id: str = Field(foreign_key="hives.id", index=True)
    cell_number: str
    hardware_id: Optional[str] = Field(default=None, unique=True)

    status: CellStatus = Field(
        default=CellStatus.AVAILABLE, sa_column=enum_column(CellStatus, index=True)
    )
    last_heartbeat: Optional[datetime] = Field(default=None)

    created_at: datetime = Field(default_factory=utcnow)
