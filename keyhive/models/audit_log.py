"""AuditLog data model.

Written by ``DatabaseAuditSink``; never read by the lifecycle itself.
"""

from datetime import datetime
from typing import Any, Optional

from sqlalchemy import JSON, Column
from sqlmodel import Field, SQLModel

from keyhive.utils.datetime import utcnow


class AuditLog(SQLModel, table=True):
    """AuditLog - one recorded action on an entity."""

    __tablename__ = "audit_logs"

    id: str = Field(primary_key=True)
    entity_type: str = Field(index=True)
    entity_id: str = Field(index=True)
    action: str

    actor_id: Optional[str] = Field(default=None, index=True)
    actor_role: Optional[str] = Field(default=None)

    details: dict[str, Any] = Field(default_factory=dict, sa_column=Column(JSON))

    created_at: datetime = Field(default_factory=utcnow, index=True)
