"""NFC fob data model."""

from datetime import datetime
from enum import Enum
from typing import Optional

from sqlmodel import Field, SQLModel

from keyhive.models.types import enum_column
from keyhive.utils.datetime import utcnow


class FobStatus(str, Enum):
    AVAILABLE = "available"
    ASSIGNED = "assigned"
    DAMAGED = "damaged"


class NfcFob(SQLModel, table=True):
    """NfcFob - physical access tag bound to a hive slot while assigned."""

    __tablename__ = "nfc_fobs"

    id: str = Field(primary_key=True)
    fob_uid: str = Field(unique=True)
    fob_serial: str = Field(unique=True)
    fob_name: Optional[str] = Field(default=None)

    status: FobStatus = Field(
        default=FobStatus.AVAILABLE, sa_column=enum_column(FobStatus, index=True)
    )

    # Stocking hive (kept on release) and current slot label (cleared on release)
    assigned_hive_id: Optional[str] = Field(default=None, foreign_key="hives.id", index=True)
    assigned_slot: Optional[str] = Field(default=None)

    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)
