from __future__ import annotations

import base64
import binascii
import hashlib
import hmac
import json
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, Mapping, Optional

from sessiontrust.config import Settings
from sessiontrust.logging import get_logger

logger = get_logger(__name__)

ACCESS = "access"
REFRESH = "refresh"
_ALGORITHM = "HS256"


@dataclass(frozen=True)
class SigningKeyRing:
    """One active signing key plus every key still accepted for verification."""

    active_kid: str
    keys: Mapping[str, str] = field(default_factory=dict)

    def __post_init__(self) -> None:
        if not self.keys.get(self.active_kid):
            raise ValueError(f"active key {self.active_kid!r} has no secret")

    @classmethod
    def from_settings(cls, settings: Settings) -> "SigningKeyRing":
        keys = dict(settings.jwt_previous_keys)
        keys[settings.jwt_key_id] = settings.jwt_secret or ""
        return cls(active_kid=settings.jwt_key_id, keys=keys)

    @property
    def signing_secret(self) -> str:
        return self.keys[self.active_kid]

    def secret_for(self, kid: Optional[str]) -> Optional[str]:
        if not kid:
            return None
        return self.keys.get(kid)

    def rotate(self, kid: str, secret: str) -> "SigningKeyRing":
        """Promote a new signing key; earlier keys keep verifying until retired."""
        if kid in self.keys:
            raise ValueError(f"key id {kid!r} already in ring")
        return SigningKeyRing(active_kid=kid, keys={**self.keys, kid: secret})

    def retire(self, kid: str) -> "SigningKeyRing":
        if kid == self.active_kid:
            raise ValueError("cannot retire the active signing key")
        remaining = {k: v for k, v in self.keys.items() if k != kid}
        return SigningKeyRing(active_kid=self.active_kid, keys=remaining)


@dataclass(frozen=True)
class TokenClaims:
    user_id: str
    email: str
    token_type: str
    issued_at: int
    expires_at: int
    jti: str


class TokenService:
    """Signs and verifies HS256 bearer tokens carrying ``user_id``/``email`` claims."""

    def __init__(
        self,
        key_ring: SigningKeyRing,
        *,
        issuer: str = "sessiontrust",
        access_ttl: timedelta = timedelta(minutes=15),
        refresh_ttl: timedelta = timedelta(days=7),
        leeway: timedelta = timedelta(0),
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self.key_ring = key_ring
        self.issuer = issuer
        self.access_ttl = access_ttl
        self.refresh_ttl = refresh_ttl
        self.leeway = leeway
        self._clock = clock or (lambda: datetime.now(timezone.utc))

    @classmethod
    def from_settings(
        cls, settings: Settings, *, clock: Optional[Callable[[], datetime]] = None
    ) -> "TokenService":
        return cls(
            SigningKeyRing.from_settings(settings),
            issuer=settings.jwt_issuer,
            access_ttl=timedelta(minutes=settings.access_token_ttl_minutes),
            refresh_ttl=timedelta(minutes=settings.refresh_token_ttl_minutes),
            leeway=timedelta(seconds=settings.token_clock_skew_seconds),
            clock=clock,
        )

    def rotate_signing_key(self, kid: str, secret: str) -> None:
        self.key_ring = self.key_ring.rotate(kid, secret)
        logger.info("jwt_signing_key_rotated", kid=kid, verification_keys=len(self.key_ring.keys))

    def issue_access_token(self, user_id: str, email: str) -> str:
        return self._issue(user_id, email, ACCESS, self.access_ttl)

    def issue_refresh_token(self, user_id: str, email: str) -> str:
        return self._issue(user_id, email, REFRESH, self.refresh_ttl)

    def validate(
        self, token: str, *, expected_type: Optional[str] = None
    ) -> Optional[TokenClaims]:
        """Return claims for a well-formed, correctly signed, unexpired token, else None.

        Signature mismatch, malformed structure and expiry all collapse into
        None so callers cannot build an oracle out of the distinction.
        """
        payload = self._decode_jwt(token)
        if payload is None:
            return None
        try:
            claims = TokenClaims(
                user_id=str(payload["user_id"]),
                email=str(payload["email"]),
                token_type=str(payload["token_type"]),
                issued_at=int(payload["iat"]),
                expires_at=int(payload["exp"]),
                jti=str(payload["jti"]),
            )
        except (KeyError, TypeError, ValueError):
            return None
        if payload.get("iss") != self.issuer:
            return None
        if expected_type and claims.token_type != expected_type:
            return None
        now = self._clock().timestamp()
        leeway = self.leeway.total_seconds()
        if claims.expires_at <= now - leeway:
            return None
        if claims.issued_at > now + leeway:
            return None
        return claims

    def refresh(
        self, refresh_token: str, session_is_active: Callable[[str], bool]
    ) -> Optional[str]:
        """Mint a new access token; the refresh token itself is not rotated.

        ``session_is_active`` looks up the session bound to the refresh token
        and reports whether it is effectively active.
        """
        claims = self.validate(refresh_token, expected_type=REFRESH)
        if claims is None:
            return None
        if not session_is_active(refresh_token):
            return None
        return self.issue_access_token(claims.user_id, claims.email)

    def _issue(self, user_id: str, email: str, token_type: str, ttl: timedelta) -> str:
        now = self._clock()
        payload = {
            "iss": self.issuer,
            "user_id": user_id,
            "email": email,
            "token_type": token_type,
            "jti": str(uuid.uuid4()),
            "iat": int(now.timestamp()),
            "exp": int((now + ttl).timestamp()),
        }
        return self._encode_jwt(payload)

    def _encode_segment(self, data: bytes) -> str:
        return base64.urlsafe_b64encode(data).decode("utf-8").rstrip("=")

    def _decode_segment(self, segment: str) -> bytes:
        padding = "=" * ((4 - len(segment) % 4) % 4)
        return base64.urlsafe_b64decode(segment + padding)

    def _sign(self, secret: str, signing_input: str) -> str:
        return self._encode_segment(
            hmac.new(secret.encode(), signing_input.encode(), hashlib.sha256).digest()
        )

    def _encode_jwt(self, payload: Dict[str, Any]) -> str:
        header = {"alg": _ALGORITHM, "typ": "JWT", "kid": self.key_ring.active_kid}
        header_enc = self._encode_segment(json.dumps(header, separators=(",", ":")).encode())
        payload_enc = self._encode_segment(json.dumps(payload, separators=(",", ":")).encode())
        signing_input = f"{header_enc}.{payload_enc}"
        return f"{signing_input}.{self._sign(self.key_ring.signing_secret, signing_input)}"

    def _decode_jwt(self, token: str) -> Optional[Dict[str, Any]]:
        if not isinstance(token, str):
            return None
        try:
            header_b64, payload_b64, sig_b64 = token.split(".")
        except ValueError:
            return None

        try:
            header = json.loads(self._decode_segment(header_b64))
        except (binascii.Error, ValueError, UnicodeDecodeError):
            logger.debug("jwt_header_decode_failed")
            return None
        if not isinstance(header, dict):
            return None
        # Reject anything but HS256 to rule out algorithm confusion
        if header.get("alg") != _ALGORITHM:
            logger.warning("jwt_invalid_algorithm", alg=header.get("alg"))
            return None
        secret = self.key_ring.secret_for(header.get("kid"))
        if secret is None:
            logger.debug("jwt_unknown_key_id", kid=header.get("kid"))
            return None

        expected_sig = self._sign(secret, f"{header_b64}.{payload_b64}")
        if not sig_b64.isascii() or not hmac.compare_digest(expected_sig, sig_b64):
            return None
        try:
            payload = json.loads(self._decode_segment(payload_b64))
        except (binascii.Error, ValueError, UnicodeDecodeError) as exc:
            logger.warning("jwt_payload_decode_failed", error=str(exc))
            return None
        return payload if isinstance(payload, dict) else None


__all__ = ["ACCESS", "REFRESH", "SigningKeyRing", "TokenClaims", "TokenService"]
