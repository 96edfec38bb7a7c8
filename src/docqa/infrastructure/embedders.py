"""Query embedders, one per embedding space.

- ``OpenAIEmbedder``: remote space (text-embedding-3-small, 1536 dims).
- ``SentenceTransformerEmbedder``: local space (all-MiniLM-L6-v2, 384 dims),
  loaded lazily and run in a worker thread.
"""

from __future__ import annotations

import asyncio
import threading

from loguru import logger
from openai import AsyncOpenAI


class OpenAIEmbedder:
    """Remote-space embeddings via the OpenAI embeddings API."""

    def __init__(self, client: AsyncOpenAI, model: str = "text-embedding-3-small", dimensions: int = 1536) -> None:
        self.client = client
        self.model = model
        self._dimensions = dimensions

    async def embed(self, text: str) -> list[float]:
        response = await self.client.embeddings.create(
            input=text.replace("\n", " "),
            model=self.model,
            dimensions=self._dimensions,
        )
        # Plain floats for sqlite-vec serialize_float32
        return [float(x) for x in response.data[0].embedding]

    @property
    def dimension(self) -> int:
        return self._dimensions


class SentenceTransformerEmbedder:
    """Local-space embeddings with sentence-transformers on CPU.

    The model is loaded on first use; ``sentence-transformers`` is an
    optional dependency (``pip install docqa-orchestrator[local-embeddings]``).
    """

    def __init__(
        self,
        model_name: str = "sentence-transformers/all-MiniLM-L6-v2",
        dimensions: int = 384,
        device: str = "cpu",
    ) -> None:
        self.model_name = model_name
        self.device = device
        self._dimensions = dimensions
        self._model = None
        self._load_lock = threading.Lock()

    def _get_model(self):
        with self._load_lock:
            if self._model is None:
                from sentence_transformers import SentenceTransformer

                logger.info("Loading local embedding model {}", self.model_name)
                self._model = SentenceTransformer(self.model_name, device=self.device)
        return self._model

    def embed_sync(self, text: str) -> list[float]:
        vector = self._get_model().encode(
            text, normalize_embeddings=True, show_progress_bar=False, convert_to_numpy=True
        )
        return [float(x) for x in vector]

    async def embed(self, text: str) -> list[float]:
        return await asyncio.to_thread(self.embed_sync, text)

    @property
    def dimension(self) -> int:
        return self._dimensions
