from .lifecycle import SessionLifecycleManager
from .summarizer import SessionSummarizer

__all__ = ["SessionLifecycleManager", "SessionSummarizer"]
