from .assembler import ContextAssembler
from .payload import ContextMemory, ContextPayload

__all__ = ["ContextAssembler", "ContextMemory", "ContextPayload"]
