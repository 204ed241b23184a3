from .ignore import IgnoreMatcher

__all__ = ["IgnoreMatcher"]
