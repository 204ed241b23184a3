from . import read_file, watch_inspection

__all__ = ["read_file", "watch_inspection"]
