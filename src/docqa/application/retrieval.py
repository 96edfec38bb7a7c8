"""Dispatch to the hybrid retrieval operation matching an embedding space."""

from __future__ import annotations

import asyncio
import time

from loguru import logger

from docqa.application.exceptions import RetrievalError
from docqa.domain.models import EmbeddingSpace, RetrievalResult
from docqa.domain.protocols import IHybridRetrievalService


class RetrievalGateway:
    """Thin adapter over an ``IHybridRetrievalService``.

    Picks the remote or local operation, forwards the owner-resolved chunk
    limit, and bounds the call with a deadline.  Ranking is the service's
    business: results are returned in service order.
    """

    def __init__(self, service: IHybridRetrievalService, timeout: float = 20.0) -> None:
        self.service = service
        self.timeout = timeout

    async def retrieve(
        self,
        query_vector: list[float],
        query_text: str,
        document_slugs: list[str],
        limit: int,
        space: EmbeddingSpace,
    ) -> RetrievalResult:
        if len(query_vector) != space.dimensions:
            raise RetrievalError(
                f"Query vector has {len(query_vector)} dimensions, "
                f"expected {space.dimensions} for the {space} space"
            )

        search = (
            self.service.search_remote_hybrid
            if space is EmbeddingSpace.REMOTE
            else self.service.search_local_hybrid
        )

        start = time.perf_counter()
        try:
            async with asyncio.timeout(self.timeout):
                chunks = await search(query_vector, query_text, list(document_slugs), limit)
        except TimeoutError as exc:
            raise RetrievalError(f"Retrieval timed out after {self.timeout:g}s") from exc
        except RetrievalError:
            raise
        except Exception as exc:
            raise RetrievalError(str(exc)) from exc
        elapsed_ms = int((time.perf_counter() - start) * 1000)

        logger.info(
            "Retrieved {} chunks | space={} documents={} limit={} took={}ms",
            len(chunks),
            space,
            "+".join(document_slugs),
            limit,
            elapsed_ms,
        )
        return RetrievalResult(chunks=list(chunks), space=space, elapsed_ms=elapsed_ms)
