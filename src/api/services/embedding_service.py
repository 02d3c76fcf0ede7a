"""
Embedding Service

Turns text into fixed-length vectors through an OpenAI-compatible embeddings
endpoint. Uses the LangChain Embeddings interface.
"""
import logging
import math
from typing import List, Optional

from ..config import settings
from ..errors import ConfigurationError

logger = logging.getLogger(__name__)


def cosine_similarity(v1: List[float], v2: List[float]) -> float:
    """Cosine similarity in [-1, 1]; -1.0 for empty or mismatched vectors."""
    if not v1 or not v2 or len(v1) != len(v2):
        return -1.0
    dot = sum(a * b for a, b in zip(v1, v2))
    norm1 = math.sqrt(sum(a * a for a in v1))
    norm2 = math.sqrt(sum(b * b for b in v2))
    if norm1 == 0 or norm2 == 0:
        return -1.0
    return dot / (norm1 * norm2)


class EmbeddingService:
    """Service for single and batch text embedding"""

    def __init__(
        self,
        *,
        model: Optional[str] = None,
        api_key: Optional[str] = None,
        base_url: Optional[str] = None,
        batch_size: Optional[int] = None,
    ):
        self.model = model or settings.embedding_model
        self.api_key = api_key if api_key is not None else settings.openai_api_key
        self.base_url = base_url if base_url is not None else settings.openai_base_url
        self.batch_size = max(1, int(batch_size or settings.embedding_batch_size))
        self._embeddings = None

    def is_configured(self) -> bool:
        return bool(self.api_key)

    def get_embedding_function(self):
        """Build (once) the LangChain embeddings client."""
        if self._embeddings is not None:
            return self._embeddings
        if not self.is_configured():
            raise ConfigurationError("Embedding API key is not configured")

        from langchain_openai import OpenAIEmbeddings

        kwargs = {
            "model": self.model,
            "api_key": self.api_key,
            "check_embedding_ctx_length": False,
            "chunk_size": self.batch_size,
        }
        if self.base_url:
            kwargs["base_url"] = self.base_url
        logger.info("Using embedding model: %s (batch_size=%s)", self.model, self.batch_size)
        self._embeddings = OpenAIEmbeddings(**kwargs)
        return self._embeddings

    async def embed(self, text: str) -> List[float]:
        text = str(text or "").strip()
        if not text:
            raise ValueError("Cannot embed empty text")
        return await self.get_embedding_function().aembed_query(text)

    async def embed_batch(self, texts: List[str]) -> List[List[float]]:
        cleaned = [str(text or "").strip() for text in texts]
        if not cleaned:
            return []
        if any(not text for text in cleaned):
            raise ValueError("Cannot embed empty text")
        return await self.get_embedding_function().aembed_documents(cleaned)
