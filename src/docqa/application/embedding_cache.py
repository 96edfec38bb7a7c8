"""Query-embedding memoisation keyed by (normalised text, embedding space)."""

from __future__ import annotations

import asyncio
from collections import OrderedDict
from collections.abc import Awaitable, Callable

from loguru import logger

from docqa.application.exceptions import EmbeddingError
from docqa.domain.models import EmbeddingSpace

ComputeFn = Callable[[str], Awaitable[list[float]]]


def cache_key(text: str, space: EmbeddingSpace) -> tuple[str, str]:
    return " ".join(text.split()).lower(), space.value


class EmbeddingCache:
    """Bounded LRU cache with in-flight de-duplication.

    Concurrent misses for the same key share one computation, so a
    (text, space) pair never yields two different cached vectors.  A
    failed computation is never stored.
    """

    def __init__(self, capacity: int = 1000) -> None:
        self.capacity = max(capacity, 1)
        self._entries: OrderedDict[tuple[str, str], list[float]] = OrderedDict()
        self._pending: dict[tuple[str, str], asyncio.Future[list[float]]] = {}
        self.hits = 0
        self.misses = 0

    async def get(self, text: str, space: EmbeddingSpace, compute: ComputeFn) -> list[float]:
        key = cache_key(text, space)

        cached = self._entries.get(key)
        if cached is not None:
            self._entries.move_to_end(key)
            self.hits += 1
            logger.debug("Embedding cache hit | space={}", space)
            return cached

        pending = self._pending.get(key)
        if pending is not None:
            self.hits += 1
            return await asyncio.shield(pending)

        self.misses += 1
        future: asyncio.Future[list[float]] = asyncio.get_running_loop().create_future()
        self._pending[key] = future
        try:
            vector = await compute(text)
        except EmbeddingError as exc:
            future.set_exception(exc)
            raise
        except Exception as exc:
            error = EmbeddingError(f"{type(exc).__name__}: {exc}")
            future.set_exception(error)
            raise error from exc
        except BaseException as exc:
            # Cancellation of the computing request must not strand waiters.
            future.set_exception(EmbeddingError(f"Embedding cancelled: {type(exc).__name__}"))
            raise
        else:
            future.set_result(vector)
            self._store(key, vector)
            return vector
        finally:
            self._pending.pop(key, None)
            # Mark the outcome retrieved so failures nobody awaited do not warn at GC.
            future.exception()

    def _store(self, key: tuple[str, str], vector: list[float]) -> None:
        self._entries[key] = vector
        self._entries.move_to_end(key)
        while len(self._entries) > self.capacity:
            self._entries.popitem(last=False)

    def clear(self) -> None:
        self._entries.clear()

    def __len__(self) -> int:
        return len(self._entries)

    def stats(self) -> dict:
        return {
            "size": len(self._entries),
            "capacity": self.capacity,
            "hits": self.hits,
            "misses": self.misses,
        }
