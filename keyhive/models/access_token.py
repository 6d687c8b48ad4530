"""AccessToken data model.

Single-use credential derived from an assignment code. Only the SHA-256 hash
of the code is stored.
"""

from datetime import datetime
from enum import Enum
from typing import Optional

from sqlmodel import Field, SQLModel

from keyhive.models.types import enum_column
from keyhive.utils.datetime import utcnow


class TokenType(str, Enum):
    QR = "qr"
    NFC = "nfc"
    OTP = "otp"


class TokenPurpose(str, Enum):
    DROP_OFF = "drop_off"
    PICKUP = "pickup"


class AccessToken(SQLModel, table=True):
    """AccessToken - hashed one-time credential for an assignment."""

    __tablename__ = "access_tokens"

    id: str = Field(primary_key=True)
    key_assignment_id: str = Field(foreign_key="key_assignments.id", index=True)

    token_type: TokenType = Field(default=TokenType.OTP, sa_column=enum_column(TokenType))
    purpose: TokenPurpose = Field(
        default=TokenPurpose.PICKUP, sa_column=enum_column(TokenPurpose)
    )
    token_hash: str = Field(index=True)

    expires_at: datetime
    used_at: Optional[datetime] = Field(default=None)
    revoked_at: Optional[datetime] = Field(default=None)

    created_by: Optional[str] = Field(default=None)
    created_at: datetime = Field(default_factory=utcnow)

    def is_expired(self, now: datetime | None = None) -> bool:
        return (now or utcnow()) > self.expires_at

    @property
    def is_outstanding(self) -> bool:
        """Neither consumed nor revoked."""
        return self.used_at is None and self.revoked_at is None
