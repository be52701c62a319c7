"""
Three-tier memory (process, run, invocation) and the decision/pattern journal.
"""

from .journal import MemoryJournal
from .store import (
    ENGINE_READER,
    MemoryEntry,
    MemoryReader,
    MemoryStore,
    MemoryTier,
    ScopedMemory,
)

__all__ = [
    "ENGINE_READER",
    "MemoryEntry",
    "MemoryJournal",
    "MemoryReader",
    "MemoryStore",
    "MemoryTier",
    "ScopedMemory",
]
