"""SQLModel data models."""

from keyhive.models.key import Key, KeyStatus, KeyType, PackageType
from keyhive.models.hive import Cell, CellStatus, Hive, HiveStatus
from keyhive.models.nfc_fob import FobStatus, NfcFob
from keyhive.models.assignment import (
    ALLOWED_TRANSITIONS,
    AssignmentState,
    KeyAssignment,
    can_transition,
)
from keyhive.models.access_token import AccessToken, TokenPurpose, TokenType
from keyhive.models.dispute import Dispute, DisputeOutcome, DisputeStatus
from keyhive.models.audit_log import AuditLog

__all__ = [
    "ALLOWED_TRANSITIONS",
    "AccessToken",
    "AssignmentState",
    "AuditLog",
    "Cell",
    "CellStatus",
    "Dispute",
    "DisputeOutcome",
    "DisputeStatus",
    "FobStatus",
    "Hive",
    "HiveStatus",
    "Key",
    "KeyAssignment",
    "KeyStatus",
    "KeyType",
    "NfcFob",
    "PackageType",
    "TokenPurpose",
    "TokenType",
    "can_transition",
]
