from .loops import MemoryLoopsMixin
from .memories import MemoryRecordsMixin
from .messages import MemoryMessagesMixin
from .schema import MemorySchemaMixin
from .sessions import MemorySessionsMixin
from .spine import MemorySummarySpineMixin

__all__ = [
    "MemorySchemaMixin",
    "MemoryRecordsMixin",
    "MemoryLoopsMixin",
    "MemorySessionsMixin",
    "MemoryMessagesMixin",
    "MemorySummarySpineMixin",
]
