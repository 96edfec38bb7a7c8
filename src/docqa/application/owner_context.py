"""Resolve tenant configuration for the documents of one request."""

from __future__ import annotations

import asyncio

from loguru import logger

from docqa.domain.models import DocumentOwnerRow, OwnerContext
from docqa.domain.protocols import IDocumentRegistry


class OwnerContextResolver:
    """Fetches chunk quota and forced-backend settings for 1..N documents.

    Lookups fan out per document.  A lookup failure never fails the
    request: the resolver falls back to the numeric default quota.
    """

    def __init__(self, registry: IDocumentRegistry, default_chunk_limit: int = 50) -> None:
        self.registry = registry
        self.default_chunk_limit = default_chunk_limit

    async def resolve(self, slugs: list[str]) -> OwnerContext:
        try:
            found = await asyncio.gather(*(self.registry.get_owner_row(slug) for slug in slugs))
        except Exception as exc:
            logger.warning(
                "Could not resolve owner context, using default chunk limit ({}): {}",
                self.default_chunk_limit,
                exc,
            )
            return OwnerContext(chunk_limit=self.default_chunk_limit)

        rows = [row for row in found if row is not None]
        context = self.build(rows, requested=len(slugs))
        logger.info(
            "Owner context | owner={} chunk_limit={} ({})",
            context.owner_name or "unknown",
            context.chunk_limit,
            context.chunk_limit_source,
        )
        return context

    def build(self, rows: list[DocumentOwnerRow], requested: int) -> OwnerContext:
        """Apply the quota rule: the tenant quota only when one tenant owns every document."""
        owners = {row.owner_slug for row in rows}
        if not rows or len(rows) < requested or len(owners) > 1:
            mixed = len(owners) > 1
            return OwnerContext(
                chunk_limit=self.default_chunk_limit,
                owner_slug="mixed" if mixed else None,
                owner_name="Multiple Owners" if mixed else None,
                rows=rows,
            )

        first = rows[0]
        if first.owner_chunk_limit:
            limit, source = first.owner_chunk_limit, "owner"
        else:
            limit, source = self.default_chunk_limit, "default"
        return OwnerContext(
            chunk_limit=limit,
            chunk_limit_source=source,
            owner_slug=first.owner_slug,
            owner_name=first.owner_name,
            owner_forced_backend=first.owner_forced_backend,
            rows=rows,
        )
