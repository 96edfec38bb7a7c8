"""Owner/document-scoped forced-backend policy.

Precedence: a document-level override beats an owner-level one, and across
several documents any disagreement (or any document asking for reasoning)
escalates to the reasoning variant.  Only the fast/reasoning family is ever
overridden; every other requested backend passes through untouched.
"""

from __future__ import annotations

from loguru import logger

from docqa.domain.models import Backend, ModelOverrideDecision, OwnerContext, OverrideSource


def decide_backend(
    requested: Backend,
    document_slugs: list[str],
    owner: OwnerContext | None,
) -> ModelOverrideDecision:
    """Compute the effective backend for a request."""
    if not requested.overridable or owner is None:
        return ModelOverrideDecision(requested=requested, effective=requested)

    if len(document_slugs) == 1:
        decision = _single_document(requested, document_slugs[0], owner)
    else:
        decision = _multi_document(requested, document_slugs, owner)

    if decision.applied:
        logger.info(
            "Forced backend override | requested={} effective={} source={} reason={}",
            decision.requested,
            decision.effective,
            decision.source,
            decision.reason,
        )
    return decision


def _single_document(requested: Backend, slug: str, owner: OwnerContext) -> ModelOverrideDecision:
    document_override = owner.document_override(slug)
    if document_override is not None:
        return ModelOverrideDecision(
            requested=requested,
            effective=document_override,
            source=OverrideSource.DOCUMENT,
            reason=f"Document-level override: {slug}",
        )
    if owner.owner_forced_backend is not None:
        return ModelOverrideDecision(
            requested=requested,
            effective=owner.owner_forced_backend,
            source=OverrideSource.OWNER,
            reason=f"Owner-level override: {owner.owner_name}",
        )
    return ModelOverrideDecision(requested=requested, effective=requested)


def _multi_document(
    requested: Backend, slugs: list[str], owner: OwnerContext
) -> ModelOverrideDecision:
    overrides = [
        backend for backend in (owner.document_override(slug) for slug in slugs) if backend is not None
    ]

    if overrides:
        wants_reasoning = Backend.REASONING in overrides
        conflicting = len(set(overrides)) > 1
        listed = ", ".join(str(b) for b in overrides)
        if wants_reasoning or conflicting:
            why = "reasoning required" if wants_reasoning else "conflicting overrides"
            return ModelOverrideDecision(
                requested=requested,
                effective=Backend.REASONING,
                source=OverrideSource.MULTI_DOCUMENT_REASONING,
                reason=f"Multi-document override: {why} ({listed})",
            )
        return ModelOverrideDecision(
            requested=requested,
            effective=overrides[0],
            source=OverrideSource.MULTI_DOCUMENT_CONSENSUS,
            reason=f"Multi-document override: all documents agree ({overrides[0]})",
        )

    if owner.single_owner and owner.owner_forced_backend is not None:
        return ModelOverrideDecision(
            requested=requested,
            effective=owner.owner_forced_backend,
            source=OverrideSource.OWNER,
            reason=f"Owner-level override: {owner.owner_name}",
        )
    return ModelOverrideDecision(requested=requested, effective=requested)
