from .sqlite_store import MemorySlot, SQLiteSlot

__all__ = ["MemorySlot", "SQLiteSlot"]
