"""Unit tests for token issuance, validation, refresh and key rotation."""

import base64
import json
from datetime import timedelta

import pytest

from sessiontrust.service.tokens import ACCESS, REFRESH, SigningKeyRing, TokenService


def _segment(data: dict) -> str:
    return base64.urlsafe_b64encode(json.dumps(data).encode()).decode().rstrip("=")


class TestIssueAndValidate:
    def test_access_token_round_trip(self, token_service):
        token = token_service.issue_access_token("user-1", "a@example.com")
        claims = token_service.validate(token)

        assert claims is not None
        assert claims.user_id == "user-1"
        assert claims.email == "a@example.com"
        assert claims.token_type == ACCESS
        assert claims.expires_at - claims.issued_at == 15 * 60

    def test_refresh_token_is_long_lived(self, token_service):
        claims = token_service.validate(token_service.issue_refresh_token("u", "u@example.com"))
        assert claims.token_type == REFRESH
        assert claims.expires_at - claims.issued_at == 7 * 24 * 3600

    def test_each_token_has_unique_jti(self, token_service):
        first = token_service.issue_access_token("u", "u@example.com")
        second = token_service.issue_access_token("u", "u@example.com")
        assert first != second

    def test_expired_token_rejected(self, token_service, clock):
        token = token_service.issue_access_token("u", "u@example.com")
        clock.advance(minutes=14, seconds=59)
        assert token_service.validate(token) is not None
        clock.advance(seconds=1)
        assert token_service.validate(token) is None

    def test_leeway_extends_expiry(self, settings, clock):
        service = TokenService.from_settings(
            settings.model_copy(update={"token_clock_skew_seconds": 30}), clock=clock
        )
        token = service.issue_access_token("u", "u@example.com")
        clock.advance(minutes=15, seconds=10)
        assert service.validate(token) is not None

    def test_token_from_the_future_rejected(self, token_service, clock):
        clock.advance(hours=1)
        token = token_service.issue_access_token("u", "u@example.com")
        clock.advance(hours=-1)
        assert token_service.validate(token) is None

    def test_expected_type_enforced(self, token_service):
        refresh = token_service.issue_refresh_token("u", "u@example.com")
        assert token_service.validate(refresh, expected_type=ACCESS) is None
        assert token_service.validate(refresh, expected_type=REFRESH) is not None


class TestTampering:
    def test_signature_byte_flip_rejected(self, token_service):
        token = token_service.issue_access_token("u", "u@example.com")
        header, payload, signature = token.split(".")
        flipped = ("B" if signature[0] != "B" else "C") + signature[1:]
        assert token_service.validate(f"{header}.{payload}.{flipped}") is None

    def test_payload_change_rejected(self, token_service):
        token = token_service.issue_access_token("u", "u@example.com")
        header, _, signature = token.split(".")
        forged = _segment(
            {"iss": "sessiontrust", "user_id": "admin", "email": "x@example.com",
             "token_type": "access", "jti": "j", "iat": 0, "exp": 9999999999}
        )
        assert token_service.validate(f"{header}.{forged}.{signature}") is None

    def test_alg_none_rejected(self, token_service):
        token = token_service.issue_access_token("u", "u@example.com")
        _, payload, _ = token.split(".")
        header = _segment({"alg": "none", "typ": "JWT", "kid": "primary"})
        assert token_service.validate(f"{header}.{payload}.") is None

    @pytest.mark.parametrize(
        "garbage",
        ["", "abc", "a.b", "a.b.c.d", "!!!.???.***", "eyJhbGciOiJIUzI1NiJ9.e30.sïg"],
    )
    def test_malformed_tokens_rejected(self, token_service, garbage):
        assert token_service.validate(garbage) is None

    def test_non_string_rejected(self, token_service):
        assert token_service.validate(None) is None  # type: ignore[arg-type]

    def test_wrong_issuer_rejected(self, settings, clock):
        other = TokenService.from_settings(
            settings.model_copy(update={"jwt_issuer": "someone-else"}), clock=clock
        )
        mine = TokenService.from_settings(settings, clock=clock)
        assert mine.validate(other.issue_access_token("u", "u@example.com")) is None

    def test_other_secret_rejected(self, settings, clock):
        other = TokenService(SigningKeyRing("primary", {"primary": "a-different-secret"}), clock=clock)
        mine = TokenService.from_settings(settings, clock=clock)
        assert mine.validate(other.issue_access_token("u", "u@example.com")) is None


class TestKeyRotation:
    def test_rotated_ring_still_accepts_old_tokens(self, token_service):
        old_token = token_service.issue_access_token("u", "u@example.com")
        token_service.rotate_signing_key("next", "brand-new-signing-secret")
        new_token = token_service.issue_access_token("u", "u@example.com")

        assert token_service.key_ring.active_kid == "next"
        assert token_service.validate(old_token) is not None
        assert token_service.validate(new_token) is not None

    def test_retired_key_no_longer_verifies(self, token_service):
        old_token = token_service.issue_access_token("u", "u@example.com")
        token_service.rotate_signing_key("next", "brand-new-signing-secret")
        token_service.key_ring = token_service.key_ring.retire("primary")
        assert token_service.validate(old_token) is None

    def test_unknown_kid_rejected(self, clock):
        signer = TokenService(SigningKeyRing("k2", {"k2": "secret-two"}), clock=clock)
        verifier = TokenService(SigningKeyRing("k1", {"k1": "secret-two"}), clock=clock)
        assert verifier.validate(signer.issue_access_token("u", "u@example.com")) is None

    def test_cannot_retire_active_key(self):
        ring = SigningKeyRing("k1", {"k1": "s1"})
        with pytest.raises(ValueError):
            ring.retire("k1")

    def test_cannot_reuse_key_id(self):
        ring = SigningKeyRing("k1", {"k1": "s1"})
        with pytest.raises(ValueError):
            ring.rotate("k1", "s2")

    def test_active_key_needs_secret(self):
        with pytest.raises(ValueError):
            SigningKeyRing("k1", {})

    def test_previous_keys_from_settings(self, settings, clock):
        legacy = TokenService(SigningKeyRing("old", {"old": "legacy-secret"}), clock=clock)
        token = legacy.issue_access_token("u", "u@example.com")
        service = TokenService.from_settings(
            settings.model_copy(update={"jwt_previous_keys": {"old": "legacy-secret"}}),
            clock=clock,
        )
        assert service.validate(token) is not None


class TestRefresh:
    def test_refresh_mints_access_token(self, token_service):
        refresh = token_service.issue_refresh_token("u", "u@example.com")
        access = token_service.refresh(refresh, lambda _: True)

        claims = token_service.validate(access, expected_type=ACCESS)
        assert claims.user_id == "u"
        assert claims.email == "u@example.com"

    def test_refresh_requires_active_session(self, token_service):
        refresh = token_service.issue_refresh_token("u", "u@example.com")
        assert token_service.refresh(refresh, lambda _: False) is None

    def test_access_token_cannot_refresh(self, token_service):
        access = token_service.issue_access_token("u", "u@example.com")
        assert token_service.refresh(access, lambda _: True) is None

    def test_expired_refresh_token_rejected(self, token_service, clock):
        refresh = token_service.issue_refresh_token("u", "u@example.com")
        clock.advance(days=7, seconds=1)
        assert token_service.refresh(refresh, lambda _: True) is None

    def test_session_lookup_receives_token(self, token_service):
        refresh = token_service.issue_refresh_token("u", "u@example.com")
        seen = []
        token_service.refresh(refresh, lambda tok: seen.append(tok) or True)
        assert seen == [refresh]

    def test_refresh_ttl_independent_of_access_ttl(self, settings, clock):
        service = TokenService.from_settings(
            settings.model_copy(update={"access_token_ttl_minutes": 1}), clock=clock
        )
        assert service.access_ttl == timedelta(minutes=1)
        assert service.refresh_ttl == timedelta(days=7)
