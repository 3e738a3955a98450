from .curator import MemoryCurator
from .judge import ExtractionJudge
from .postgres_store import PostgresMemoryStore
from .service import MemoryService
from .store import MemoryStore

__all__ = ["ExtractionJudge", "MemoryCurator", "MemoryService", "MemoryStore", "PostgresMemoryStore"]
