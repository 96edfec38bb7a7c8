"""Tests for per-document access resolution."""

from __future__ import annotations

import pytest

from docqa.application.access import AccessResolver
from docqa.application.exceptions import AccessDenial, AccessError


@pytest.fixture()
def resolver(registry) -> AccessResolver:
    return AccessResolver(registry)


def _docs(registry, *slugs):
    return [registry.documents[s] for s in slugs]


class TestOpenAndAuthenticated:
    async def test_open_document_allows_anonymous(self, resolver, registry):
        await resolver.resolve(_docs(registry, "policy-a"), user_id=None)

    async def test_authenticated_requires_identity(self, resolver, registry):
        with pytest.raises(AccessError) as exc_info:
            await resolver.resolve(_docs(registry, "members"), user_id=None)
        assert exc_info.value.kind is AccessDenial.AUTH_REQUIRED
        assert exc_info.value.hints()["requires_auth"] is True

    async def test_authenticated_allows_any_identity(self, resolver, registry):
        await resolver.resolve(_docs(registry, "members"), user_id="user-1")

    async def test_fast_path_skips_grant_lookups(self, resolver, registry):
        await resolver.resolve(_docs(registry, "policy-a", "members"), user_id="user-1")
        assert registry.grant_lookups == 0


class TestPasscode:
    async def test_missing_passcode_for_anonymous(self, resolver, registry):
        with pytest.raises(AccessError) as exc_info:
            await resolver.resolve(_docs(registry, "secret"), user_id=None)
        err = exc_info.value
        assert err.status_code == 403
        assert err.kind is AccessDenial.PASSCODE_REQUIRED
        hints = err.hints()
        assert hints["requires_passcode"] is True
        assert hints["requires_auth"] is False
        assert hints["document"] == "secret"

    async def test_correct_passcode(self, resolver, registry):
        await resolver.resolve(_docs(registry, "secret"), user_id=None, passcode="letmein")

    async def test_passcode_whitespace_is_ignored(self, resolver, registry):
        await resolver.resolve(_docs(registry, "secret"), user_id=None, passcode="  letmein ")

    async def test_wrong_passcode(self, resolver, registry):
        with pytest.raises(AccessError) as exc_info:
            await resolver.resolve(_docs(registry, "secret"), user_id=None, passcode="nope")
        assert exc_info.value.kind is AccessDenial.PASSCODE_INCORRECT

    async def test_grant_bypasses_passcode(self, resolver, registry):
        registry.grants.add(("user-1", "doc-secret"))
        await resolver.resolve(_docs(registry, "secret"), user_id="user-1")


class TestRestricted:
    async def test_anonymous_gets_auth_required(self, resolver, registry):
        with pytest.raises(AccessError) as exc_info:
            await resolver.resolve(_docs(registry, "vault"), user_id=None)
        assert exc_info.value.kind is AccessDenial.AUTH_REQUIRED

    async def test_identity_without_grant_denied(self, resolver, registry):
        with pytest.raises(AccessError) as exc_info:
            await resolver.resolve(_docs(registry, "vault"), user_id="user-1")
        assert exc_info.value.kind is AccessDenial.DENIED
        assert "permission" in exc_info.value.message

    async def test_identity_with_grant_allowed(self, resolver, registry):
        registry.grants.add(("user-1", "doc-vault"))
        await resolver.resolve(_docs(registry, "vault"), user_id="user-1")


class TestMultiDocument:
    async def test_first_denial_in_request_order_wins(self, resolver, registry):
        with pytest.raises(AccessError) as exc_info:
            await resolver.resolve(_docs(registry, "policy-a", "secret", "vault"), user_id=None)
        assert exc_info.value.document == "secret"

    async def test_all_documents_must_pass(self, resolver, registry):
        registry.grants.add(("user-1", "doc-vault"))
        with pytest.raises(AccessError):
            await resolver.resolve(_docs(registry, "vault", "secret"), user_id="user-1")

    async def test_mixed_levels_allowed_when_each_passes(self, resolver, registry):
        registry.grants.add(("user-1", "doc-vault"))
        await resolver.resolve(
            _docs(registry, "policy-a", "members", "vault", "secret"),
            user_id="user-1",
            passcode="letmein",
        )
