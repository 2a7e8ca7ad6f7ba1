"""Tests for signed access/refresh tokens and refresh rotation."""

import base64
import json
from unittest.mock import patch

import pytest

from storefront_auth.config import Settings
from storefront_auth.service.errors import TokenInvalidError
from storefront_auth.service.tokens import TokenKind, TokenService


@pytest.fixture
def identity(store):
    return store.create_identity("buyer@example.com", "buyer", "hash")


@pytest.fixture
def tokens(store, settings, clock):
    return TokenService(store, settings, clock=clock)


def _segments(token):
    header, payload, signature = token.split(".")
    pad = lambda s: s + "=" * ((4 - len(s) % 4) % 4)  # noqa: E731
    return (
        json.loads(base64.urlsafe_b64decode(pad(header))),
        json.loads(base64.urlsafe_b64decode(pad(payload))),
        signature,
    )


def _encode(data):
    return base64.urlsafe_b64encode(json.dumps(data).encode()).decode().rstrip("=")


class TestAccessTokens:
    def test_claims(self, tokens, identity, settings):
        token = tokens.issue_access_token(identity.id, identity.email, False)

        header, payload, _ = _segments(token)
        assert header == {"alg": "HS256", "typ": "JWT"}
        assert payload["sub"] == identity.id
        assert payload["token_type"] == "access"
        assert payload["iss"] == settings.jwt_issuer
        assert payload["aud"] == settings.jwt_audience
        assert payload["exp"] - payload["iat"] == 15 * 60

    def test_verify_round_trip(self, tokens, identity):
        token = tokens.issue_access_token(identity.id, identity.email, True)

        payload = tokens.verify(token, TokenKind.ACCESS)

        assert payload["email"] == "buyer@example.com"
        assert payload["is_admin"] is True

    def test_expired(self, tokens, identity, clock):
        token = tokens.issue_access_token(identity.id, identity.email, False)

        clock.advance(minutes=15)

        assert tokens.verify(token, TokenKind.ACCESS) is None

    def test_kinds_are_not_interchangeable(self, tokens, identity):
        access = tokens.issue_access_token(identity.id, identity.email, False)
        refresh = tokens.issue_refresh_token(identity.id, "a" * 32)

        assert tokens.verify(access, TokenKind.REFRESH) is None
        assert tokens.verify(refresh, TokenKind.ACCESS) is None
        assert tokens.verify(refresh, TokenKind.REFRESH)["jti"] == "a" * 32

    def test_alg_none_rejected(self, tokens, identity):
        token = tokens.issue_access_token(identity.id, identity.email, False)
        _, payload, _ = _segments(token)

        forged = f"{_encode({'alg': 'none', 'typ': 'JWT'})}.{_encode(payload)}."

        assert tokens.verify(forged, TokenKind.ACCESS) is None

    def test_tampered_payload_rejected(self, tokens, identity):
        token = tokens.issue_access_token(identity.id, identity.email, False)
        header, payload, signature = token.split(".")
        _, claims, _ = _segments(token)
        claims["is_admin"] = True

        assert tokens.verify(f"{header}.{_encode(claims)}.{signature}", TokenKind.ACCESS) is None

    def test_foreign_issuer_rejected(self, store, identity, clock):
        ours = TokenService(
            store,
            Settings(jwt_secret="x" * 40, refresh_secret="y" * 40, jwt_issuer="storefront"),
            clock=clock,
        )
        theirs = TokenService(
            store,
            Settings(jwt_secret="x" * 40, refresh_secret="y" * 40, jwt_issuer="elsewhere"),
            clock=clock,
        )

        token = theirs.issue_access_token(identity.id, identity.email, False)

        assert ours.verify(token, TokenKind.ACCESS) is None

    @pytest.mark.parametrize("garbage", ["", "abc", "a.b", "a.b.c.d", "!!!.???.***"])
    def test_garbage_rejected(self, tokens, garbage):
        assert tokens.verify(garbage, TokenKind.ACCESS) is None

    @pytest.mark.parametrize("kind", [TokenKind.ACCESS, TokenKind.REFRESH])
    def test_non_ascii_signature_rejected(self, tokens, identity, kind):
        token = tokens.issue_refresh_token(identity.id, "b" * 32)
        head, body, _ = token.split(".")

        assert tokens.verify(f"{head}.{body}.\u00e9\u00e9\u00e9", kind) is None

    def test_non_ascii_header_rejected(self, tokens, identity):
        token = tokens.issue_access_token(identity.id, identity.email, False)
        _, body, signature = token.split(".")

        assert tokens.verify(f"\u00e9.{body}.{signature}", TokenKind.ACCESS) is None


class TestRefreshRotation:
    def test_issue_pair_persists_refresh_row(self, tokens, identity, store, clock):
        pair = tokens.issue_pair(identity, device_info="Desktop", ip_address="203.0.113.9")

        row = store.get_refresh_token(pair.refresh_token, clock.now)
        assert row.identity_id == identity.id
        assert row.device_info == "Desktop"
        assert pair.refresh_expires_at == clock.now + tokens.refresh_ttl

    def test_rotate_replaces_row(self, tokens, identity, store, clock):
        pair = tokens.issue_pair(identity, device_info="Desktop", ip_address="203.0.113.9")

        rotated_identity, new_pair = tokens.rotate(pair.refresh_token)

        assert rotated_identity.id == identity.id
        assert store.get_refresh_token(pair.refresh_token, clock.now) is None
        replacement = store.get_refresh_token(new_pair.refresh_token, clock.now)
        assert replacement.device_info == "Desktop"
        assert replacement.ip_address == "203.0.113.9"

    def test_replay_is_audited(self, tokens, identity):
        pair = tokens.issue_pair(identity)
        tokens.rotate(pair.refresh_token)

        with patch("storefront_auth.service.tokens.audit_event") as audit:
            with pytest.raises(TokenInvalidError) as excinfo:
                tokens.rotate(pair.refresh_token)

        assert excinfo.value.reason == "not_found"
        audit.assert_called_once()
        assert audit.call_args[0][0] == "refresh_token_replay"

    def test_revoked_token_cannot_rotate(self, tokens, identity):
        pair = tokens.issue_pair(identity)

        assert tokens.revoke(pair.refresh_token) is True
        with pytest.raises(TokenInvalidError):
            tokens.rotate(pair.refresh_token)

    def test_expired_refresh_token(self, tokens, identity, clock):
        pair = tokens.issue_pair(identity)

        clock.advance(days=7)

        with pytest.raises(TokenInvalidError) as excinfo:
            tokens.rotate(pair.refresh_token)
        assert excinfo.value.reason == "signature_or_claims"

    def test_revoke_all(self, tokens, identity, store, clock):
        first = tokens.issue_pair(identity)
        second = tokens.issue_pair(identity)

        assert tokens.revoke_all(identity.id) == 2
        assert store.get_refresh_token(first.refresh_token, clock.now) is None
        assert store.get_refresh_token(second.refresh_token, clock.now) is None

    def test_unknown_identity(self, tokens, store, identity):
        pair = tokens.issue_pair(identity)
        store.anonymize_identity(identity.id, identity.created_at)

        with pytest.raises(TokenInvalidError) as excinfo:
            tokens.rotate(pair.refresh_token)
        assert excinfo.value.reason == "identity_missing"
