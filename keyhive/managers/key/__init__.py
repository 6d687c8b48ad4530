from keyhive.managers.key.key import KeyListItem, KeyManager

__all__ = ["KeyListItem", "KeyManager"]
