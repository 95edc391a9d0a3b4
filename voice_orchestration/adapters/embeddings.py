import logging
from typing import List

from openai import AsyncOpenAI

from ..config import Settings

logger = logging.getLogger(__name__)


class EmbeddingError(Exception):
    pass


class EmbeddingGenerator:
    """Converts text to a fixed-dimension vector with the OpenAI embeddings API."""

    def __init__(self, client: AsyncOpenAI, model: str, dimension: int):
        self.client = client
        self.model = model
        self.dimension = dimension

    @classmethod
    def from_settings(cls, settings: Settings) -> "EmbeddingGenerator":
        client = AsyncOpenAI(
            api_key=settings.OPENAI_API_KEY,
            timeout=settings.EMBEDDING_TIMEOUT_SECONDS,
            max_retries=0,
        )
        return cls(client, settings.EMBEDDING_MODEL, settings.EMBEDDING_DIMENSION)

    async def embed(self, text: str) -> List[float]:
        if not text.strip():
            raise EmbeddingError("cannot embed empty text")
        try:
            response = await self.client.embeddings.create(
                model=self.model, input=text, dimensions=self.dimension
            )
        except Exception as e:
            raise EmbeddingError(f"embedding request failed: {e}") from e
        vector = list(response.data[0].embedding)
        if len(vector) != self.dimension:
            raise EmbeddingError(f"expected {self.dimension} dimensions, got {len(vector)}")
        return vector
