"""Generation dispatch: backend enum -> concrete invocation + display name."""

from __future__ import annotations

import asyncio
import time
from collections.abc import AsyncIterator, Mapping
from dataclasses import dataclass

from loguru import logger

from docqa.application.exceptions import GenerationError
from docqa.domain.models import Backend
from docqa.domain.protocols import GenerationRequest, IGenerationBackend


@dataclass(frozen=True)
class BackendBinding:
    """One row of the dispatch table."""

    backend: IGenerationBackend
    display_name: str


class GenerationDispatcher:
    """Invokes the selected generation backend, buffered or incrementally.

    Adding a backend is a table edit: pass another ``Backend -> BackendBinding``
    entry.  Backend failures surface as ``GenerationError``; fragments already
    relayed in incremental mode are not retracted.
    """

    def __init__(self, table: Mapping[Backend, BackendBinding], timeout: float = 120.0) -> None:
        self.table = dict(table)
        self.timeout = timeout

    def binding(self, backend: Backend) -> BackendBinding:
        try:
            return self.table[backend]
        except KeyError:
            raise GenerationError(f"No generation backend configured for '{backend}'") from None

    def actual_model(self, backend: Backend) -> str:
        """User-visible model name for logging and responses."""
        binding = self.table.get(backend)
        return binding.display_name if binding else str(backend)

    async def generate(self, backend: Backend, request: GenerationRequest) -> str:
        binding = self.binding(backend)
        start = time.perf_counter()
        try:
            async with asyncio.timeout(self.timeout):
                answer = await binding.backend.generate(request)
        except TimeoutError as exc:
            raise GenerationError(f"Generation timed out after {self.timeout:g}s") from exc
        except GenerationError:
            raise
        except Exception as exc:
            raise GenerationError(str(exc) or type(exc).__name__) from exc

        logger.info(
            "Generation completed | model={} took={}ms chars={}",
            binding.display_name,
            int((time.perf_counter() - start) * 1000),
            len(answer),
        )
        return answer

    async def stream(self, backend: Backend, request: GenerationRequest) -> AsyncIterator[str]:
        """Yield answer fragments as the backend produces them.

        The deadline covers the whole generation; each wait for the next
        fragment is bounded by whatever time remains.
        """
        binding = self.binding(backend)
        loop = asyncio.get_running_loop()
        deadline = loop.time() + self.timeout
        fragments = binding.backend.stream(request)
        emitted = 0
        try:
            while True:
                try:
                    async with asyncio.timeout_at(deadline):
                        fragment = await anext(fragments)
                except StopAsyncIteration:
                    break
                except TimeoutError as exc:
                    raise GenerationError(
                        f"Generation timed out after {self.timeout:g}s"
                    ) from exc
                except GenerationError:
                    raise
                except Exception as exc:
                    raise GenerationError(str(exc) or type(exc).__name__) from exc
                if fragment:
                    emitted += 1
                    yield fragment
        finally:
            aclose = getattr(fragments, "aclose", None)
            if aclose is not None:
                await aclose()
            logger.debug("Stream closed | model={} fragments={}", binding.display_name, emitted)
