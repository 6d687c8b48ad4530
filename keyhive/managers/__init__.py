"""Manager layer - business logic."""

from keyhive.managers.assignment import AssignmentManager
from keyhive.managers.hive import HiveRegistry
from keyhive.managers.key import KeyManager

__all__ = ["AssignmentManager", "HiveRegistry", "KeyManager"]
