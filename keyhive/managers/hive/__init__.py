from keyhive.managers.hive.registry import HiveRegistry

__all__ = ["HiveRegistry"]
