from .json_store import JsonFileStore
from .memory import MemoryStore

__all__ = ["JsonFileStore", "MemoryStore"]
