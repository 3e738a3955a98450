from .continuity_client import ContinuityClient
from .embeddings import EmbeddingClient
from .llm_client import ChatCompletionClient

__all__ = ["ChatCompletionClient", "ContinuityClient", "EmbeddingClient"]
