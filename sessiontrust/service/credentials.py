"""Password hashing, TOTP enrollment/verification and MFA backup codes."""

from __future__ import annotations

import base64
import hashlib
import hmac
import re
import secrets
import time
from dataclasses import dataclass
from typing import Callable, List, Optional
from urllib.parse import quote, urlencode

from argon2 import PasswordHasher, Type
from argon2.exceptions import HashingError, InvalidHash, VerificationError

from sessiontrust.logging import get_logger
from sessiontrust.service.errors import HashingFailure

logger = get_logger(__name__)

TOTP_INTERVAL_SECONDS = 30
TOTP_DIGITS = 6
TOTP_SKEW_STEPS = 1
TOTP_SECRET_BYTES = 20
BACKUP_CODE_COUNT = 10
BACKUP_CODE_GROUP = 5

_TOTP_CODE = re.compile(r"^\d{6}$")


@dataclass(frozen=True)
class MFAEnrollment:
    secret: str
    enrollment_uri: str


class CredentialService:
    """Stateless credential primitives; no persistence of its own."""

    def __init__(
        self,
        *,
        mfa_issuer: str = "SessionManagement",
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.mfa_issuer = mfa_issuer
        self._clock = clock
        self._pwd_hasher = PasswordHasher(type=Type.ID)
        # Verified against for unknown accounts so both paths cost one argon2 run
        self._dummy_hash = self._pwd_hasher.hash(secrets.token_urlsafe(16))

    def hash(self, password: str) -> str:
        try:
            return self._pwd_hasher.hash(password)
        except HashingError as exc:
            logger.error("password_hash_failed", error=str(exc))
            raise HashingFailure("Failed to process password") from exc

    def verify(self, password_hash: str, password: str) -> bool:
        """Constant-time check; a malformed hash reads as a plain mismatch."""
        try:
            return self._pwd_hasher.verify(password_hash, password)
        except (InvalidHash, VerificationError):
            return False

    def burn_verification(self, password: str) -> None:
        self.verify(self._dummy_hash, password)

    def issue_mfa_secret(self, account_label: str) -> MFAEnrollment:
        secret = base64.b32encode(secrets.token_bytes(TOTP_SECRET_BYTES)).decode("ascii").rstrip("=")
        label = quote(f"{self.mfa_issuer}:{account_label}", safe="")
        params = urlencode(
            {
                "secret": secret,
                "issuer": self.mfa_issuer,
                "algorithm": "SHA1",
                "digits": TOTP_DIGITS,
                "period": TOTP_INTERVAL_SECONDS,
            }
        )
        return MFAEnrollment(secret=secret, enrollment_uri=f"otpauth://totp/{label}?{params}")

    def verify_mfa_code(self, code: Optional[str], secret: Optional[str]) -> bool:
        if not code or not secret:
            return False
        normalized = code.strip().upper()
        if not _TOTP_CODE.match(normalized):
            return False
        now = self._clock()
        for offset in range(-TOTP_SKEW_STEPS, TOTP_SKEW_STEPS + 1):
            generated = self.generate_totp(secret, now + offset * TOTP_INTERVAL_SECONDS)
            # SECURITY: constant-time comparison to prevent timing attacks
            if generated and hmac.compare_digest(generated, normalized):
                return True
        return False

    def generate_totp(self, secret: str, timestamp: float) -> str:
        padded = secret.strip().upper() + "=" * ((8 - len(secret.strip()) % 8) % 8)
        try:
            key = base64.b32decode(padded, casefold=True)
        except ValueError:
            logger.warning("totp_secret_invalid")
            return ""
        counter = int(timestamp // TOTP_INTERVAL_SECONDS).to_bytes(8, "big")
        digest = hmac.new(key, counter, hashlib.sha1).digest()
        offset = digest[-1] & 0x0F
        code_int = (int.from_bytes(digest[offset : offset + 4], "big") & 0x7FFFFFFF) % (
            10**TOTP_DIGITS
        )
        return str(code_int).zfill(TOTP_DIGITS)

    def generate_backup_codes(self) -> List[str]:
        codes = []
        for _ in range(BACKUP_CODE_COUNT):
            raw = base64.b32encode(secrets.token_bytes(10)).decode("ascii")[: BACKUP_CODE_GROUP * 2]
            codes.append(f"{raw[:BACKUP_CODE_GROUP]}-{raw[BACKUP_CODE_GROUP:]}")
        return codes

    @staticmethod
    def hash_backup_code(code: str) -> str:
        normalized = code.strip().upper().replace("-", "").replace(" ", "")
        return hashlib.sha256(normalized.encode()).hexdigest()


__all__ = ["CredentialService", "MFAEnrollment"]
