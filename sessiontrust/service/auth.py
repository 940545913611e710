from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable, List, Mapping, Optional, Protocol, Union

from sessiontrust.logging import get_logger
from sessiontrust.service.anomaly import AnomalyDetector, AnomalyVerdict
from sessiontrust.service.credentials import CredentialService
from sessiontrust.service.devices import DeviceRegistry
from sessiontrust.service.errors import (
    AccountInactiveError,
    DuplicateEmailError,
    InvalidCredentialsError,
    InvalidMFACodeError,
    InvalidTokenError,
    MFANotEnabledError,
    TransientError,
    UserNotFoundError,
)
from sessiontrust.service.events import FailureReason, SecurityEventEmitter, SecurityOutcome
from sessiontrust.service.schemas import DeviceInfo, LoginRequest, RegisterRequest, parse_request
from sessiontrust.service.sessions import SessionLifecycleManager, SessionStatus
from sessiontrust.service.tokens import ACCESS, TokenService
from sessiontrust.storage.errors import ConstraintViolation
from sessiontrust.storage.models import Device, NetworkContext, Session, User

logger = get_logger(__name__)

UNKNOWN_DEVICE_NAME = "Unknown Device"
UNKNOWN_DEVICE_TYPE = "unknown"


class UserStore(Protocol):
    def create_user(
        self,
        email: str,
        password_hash: str,
        *,
        full_name: Optional[str] = None,
        is_active: bool = True,
    ) -> User: ...

    def get_user(self, user_id: str) -> Optional[User]: ...

    def get_user_by_email(self, email: str) -> Optional[User]: ...

    def set_user_mfa(self, user_id: str, secret: Optional[str]) -> User: ...

    def replace_backup_codes(self, user_id: str, code_hashes: List[str]) -> None: ...

    def consume_backup_code(self, user_id: str, code_hash: str) -> bool: ...


@dataclass
class RegisterResult:
    user_id: str
    access_token: str
    refresh_token: str
    # None when session bookkeeping failed; the tokens are still valid
    session_id: Optional[str] = None
    device_id: Optional[str] = None


@dataclass
class LoginSuccess:
    user_id: str
    session_id: str
    access_token: str
    refresh_token: str
    device_id: Optional[str] = None
    anomaly: Optional[AnomalyVerdict] = None


@dataclass
class MFARequired:
    """Password accepted but a second factor is still needed. Not an error."""

    message: str = "MFA code required"
    mfa_required: bool = True


LoginResult = Union[LoginSuccess, MFARequired]


@dataclass
class TokenIdentity:
    user_id: str
    email: str


@dataclass
class MFAEnrollmentResult:
    secret: str
    enrollment_uri: str
    backup_codes: List[str] = field(default_factory=list)


@dataclass
class UserProfile:
    id: str
    email: str
    full_name: Optional[str]
    is_active: bool
    mfa_enabled: bool
    created_at: datetime
    updated_at: datetime


@dataclass
class SessionView:
    id: str
    user_id: str
    device_id: Optional[str]
    device_name: str
    device_type: str
    ip_address: Optional[str]
    user_agent: Optional[str]
    location_country: Optional[str]
    location_city: Optional[str]
    status: SessionStatus
    created_at: datetime
    expires_at: datetime
    revoked_at: Optional[datetime] = None
    is_current: bool = False

    @property
    def is_active(self) -> bool:
        return self.status is SessionStatus.ACTIVE


@dataclass
class DeviceList:
    devices: List[Device]
    total: int
    trusted_count: int


class AuthService:
    """Registration, login, token and MFA flows plus session/device pass-throughs.

    Every operation follows the same split: primary-path failures (bad
    credentials, token signing, hashing) raise ``ServiceError`` subclasses,
    while audit recording goes through the fire-and-forget emitter and can
    never change the result handed back to the caller.
    """

    def __init__(
        self,
        store: UserStore,
        credentials: CredentialService,
        tokens: TokenService,
        devices: DeviceRegistry,
        sessions: SessionLifecycleManager,
        detector: AnomalyDetector,
        events: SecurityEventEmitter,
        *,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self.store = store
        self.credentials = credentials
        self.tokens = tokens
        self.devices = devices
        self.sessions = sessions
        self.detector = detector
        self.events = events
        self._clock = clock or (lambda: datetime.now(timezone.utc))
        self.logger = logger

    def _now(self) -> datetime:
        return self._clock()

    async def register(self, request: RegisterRequest | Mapping[str, Any]) -> RegisterResult:
        req = parse_request(RegisterRequest, request)
        network = req.device_info.to_network_context()
        password_hash = self.credentials.hash(req.password)
        try:
            user = self.store.create_user(
                req.email, password_hash, full_name=req.full_name, is_active=True
            )
        except ConstraintViolation as exc:
            raise DuplicateEmailError(
                "Email already registered", detail={"field": "email"}
            ) from exc

        access_token = self.tokens.issue_access_token(user.id, user.email)
        refresh_token = self.tokens.issue_refresh_token(user.id, user.email)

        device_id, _ = self._resolve_device(user.id, req.device_info)
        session_id: Optional[str] = None
        try:
            session = self.sessions.create_session(user.id, device_id, refresh_token, network)
            session_id = session.id
        except ConstraintViolation as exc:
            # The result carries no session id, so a missing session only
            # surfaces later as a failed refresh
            self.logger.warning("register_session_create_failed", user_id=user.id, error=str(exc))

        self.events.record(SecurityOutcome.registered(user.id, session_id, device_id, network))
        self.logger.info("user_registered", user_id=user.id, session_id=session_id)
        return RegisterResult(
            user_id=user.id,
            access_token=access_token,
            refresh_token=refresh_token,
            session_id=session_id,
            device_id=device_id,
        )

    async def login(self, request: LoginRequest | Mapping[str, Any]) -> LoginResult:
        req = parse_request(LoginRequest, request)
        network = req.device_info.to_network_context()

        user = self.store.get_user_by_email(req.email)
        if not user:
            # Same argon2 cost as a real account so timing does not reveal existence
            self.credentials.burn_verification(req.password)
            self._login_failed(FailureReason.USER_NOT_FOUND, network)
            raise InvalidCredentialsError()
        if not self.credentials.verify(user.password_hash, req.password):
            self._login_failed(FailureReason.INVALID_PASSWORD, network, user_id=user.id)
            raise InvalidCredentialsError()
        if not user.is_active:
            self._login_failed(FailureReason.ACCOUNT_INACTIVE, network, user_id=user.id)
            raise AccountInactiveError()

        if user.mfa_enabled:
            if not req.mfa_code:
                self._login_failed(FailureReason.MFA_REQUIRED, network, user_id=user.id)
                return MFARequired()
            if not self._check_mfa_code(user, req.mfa_code):
                self._login_failed(FailureReason.INVALID_MFA_CODE, network, user_id=user.id)
                raise InvalidMFACodeError()

        access_token = self.tokens.issue_access_token(user.id, user.email)
        refresh_token = self.tokens.issue_refresh_token(user.id, user.email)

        now = self._now()
        device_id, is_new_device = self._resolve_device(user.id, req.device_info)
        previous = self._previous_login(user.id, before=now)
        verdict = self.detector.detect(
            network.location,
            previous.location if previous else None,
            previous.created_at if previous else None,
            is_new_device,
            now=now,
        )

        try:
            session = self.sessions.create_session(user.id, device_id, refresh_token, network)
        except ConstraintViolation as exc:
            self.logger.error("login_session_create_failed", user_id=user.id, error=str(exc))
            raise TransientError("Unable to create session, please retry") from exc

        self.events.record(SecurityOutcome.logged_in(user.id, session.id, device_id, network))
        if verdict is not None:
            self.logger.warning(
                "login_anomaly_detected",
                user_id=user.id,
                session_id=session.id,
                anomaly=verdict.kind.value,
                severity=verdict.severity.value,
            )
            self.events.record(
                SecurityOutcome.anomaly(
                    verdict, user.id, session_id=session.id, device_id=device_id, network=network
                )
            )
        self.logger.info("user_login", user_id=user.id, session_id=session.id, device_id=device_id)
        return LoginSuccess(
            user_id=user.id,
            session_id=session.id,
            access_token=access_token,
            refresh_token=refresh_token,
            device_id=device_id,
            anomaly=verdict,
        )

    async def validate_token(self, token: str) -> TokenIdentity:
        claims = self.tokens.validate(token, expected_type=ACCESS)
        if claims is None:
            raise InvalidTokenError()
        return TokenIdentity(user_id=claims.user_id, email=claims.email)

    async def refresh_token(self, refresh_token: str) -> str:
        access_token = self.tokens.refresh(refresh_token, self.sessions.is_refresh_token_active)
        if access_token is None:
            raise InvalidTokenError("Invalid refresh token")
        return access_token

    async def enable_mfa(self, user_id: str) -> MFAEnrollmentResult:
        user = self._require_user(user_id)
        enrollment = self.credentials.issue_mfa_secret(user.email)
        backup_codes = self.credentials.generate_backup_codes()
        try:
            self.store.set_user_mfa(user.id, enrollment.secret)
            self.store.replace_backup_codes(
                user.id, [self.credentials.hash_backup_code(code) for code in backup_codes]
            )
        except ConstraintViolation as exc:
            raise UserNotFoundError("User not found", detail={"user_id": user_id}) from exc
        self.events.record(SecurityOutcome.mfa_enabled(user.id))
        self.logger.info("mfa_enabled", user_id=user.id)
        return MFAEnrollmentResult(
            secret=enrollment.secret,
            enrollment_uri=enrollment.enrollment_uri,
            backup_codes=backup_codes,
        )

    async def verify_mfa(self, user_id: str, code: str) -> bool:
        user = self._require_mfa_user(user_id)
        if not self._check_mfa_code(user, code):
            raise InvalidMFACodeError()
        return True

    async def disable_mfa(self, user_id: str, code: str) -> None:
        user = self._require_mfa_user(user_id)
        if not self._check_mfa_code(user, code):
            raise InvalidMFACodeError()
        self.store.set_user_mfa(user.id, None)
        self.store.replace_backup_codes(user.id, [])
        self.events.record(SecurityOutcome.mfa_disabled(user.id))
        self.logger.info("mfa_disabled", user_id=user.id)

    async def get_user_profile(self, user_id: str) -> UserProfile:
        user = self._require_user(user_id)
        return UserProfile(
            id=user.id,
            email=user.email,
            full_name=user.full_name,
            is_active=user.is_active,
            mfa_enabled=user.mfa_enabled,
            created_at=user.created_at,
            updated_at=user.updated_at,
        )

    async def get_user_sessions(
        self,
        user_id: str,
        *,
        include_inactive: bool = False,
        current_session_id: Optional[str] = None,
    ) -> List[SessionView]:
        sessions = self.sessions.list_sessions(user_id, include_inactive=include_inactive)
        views = [self._session_view(s, current_session_id) for s in sessions]
        # Active first, newest first within each group
        views.sort(key=lambda v: v.created_at, reverse=True)
        views.sort(key=lambda v: not v.is_active)
        return views

    async def get_session_details(self, session_id: str, user_id: str) -> SessionView:
        session = self.sessions.get_owned_session(session_id, user_id)
        return self._session_view(session, None)

    async def revoke_session(self, session_id: str, user_id: str) -> bool:
        revoked = self.sessions.revoke(session_id, user_id)
        if revoked:
            self.events.record(SecurityOutcome.session_revoked(user_id, session_id))
        return revoked

    async def revoke_all_sessions(
        self, user_id: str, except_session_id: Optional[str] = None
    ) -> int:
        revoked_count = self.sessions.revoke_all(user_id, except_session_id)
        self.events.record(SecurityOutcome.all_sessions_revoked(user_id, revoked_count))
        return revoked_count

    async def get_user_devices(self, user_id: str) -> DeviceList:
        devices = self.devices.list_devices(user_id)
        return DeviceList(
            devices=devices,
            total=len(devices),
            trusted_count=sum(1 for d in devices if d.is_trusted),
        )

    async def trust_device(self, device_id: str, user_id: str) -> Device:
        device = self.devices.trust(device_id, user_id=user_id)
        self.events.record(SecurityOutcome.device_trusted(user_id, device.id))
        return device

    def _require_user(self, user_id: str) -> User:
        user = self.store.get_user(user_id)
        if not user:
            raise UserNotFoundError("User not found", detail={"user_id": user_id})
        return user

    def _require_mfa_user(self, user_id: str) -> User:
        user = self._require_user(user_id)
        if not user.mfa_enabled or not user.mfa_secret:
            raise MFANotEnabledError("MFA not enabled", detail={"user_id": user_id})
        return user

    def _check_mfa_code(self, user: User, code: str) -> bool:
        """TOTP first; otherwise spend a matching unused backup code."""
        if self.credentials.verify_mfa_code(code, user.mfa_secret):
            return True
        if not code or not code.strip():
            return False
        consumed = self.store.consume_backup_code(
            user.id, self.credentials.hash_backup_code(code)
        )
        if consumed:
            self.logger.info("mfa_backup_code_used", user_id=user.id)
        return consumed

    def _resolve_device(
        self, user_id: str, device_info: DeviceInfo
    ) -> tuple[Optional[str], bool]:
        try:
            return self.devices.resolve(
                device_info.fingerprint, user_id, device_info.to_device_meta()
            )
        except ConstraintViolation as exc:
            # Unknown novelty reads as a known device so no new_device alert fires
            self.logger.warning("device_resolve_failed", user_id=user_id, error=str(exc))
            return None, False

    def _previous_login(self, user_id: str, *, before: datetime) -> Optional[Session]:
        return self.sessions.latest_located_session(user_id, before=before)

    def _login_failed(
        self,
        reason: FailureReason,
        network: NetworkContext,
        *,
        user_id: Optional[str] = None,
    ) -> None:
        self.logger.info("login_failed", reason=reason.value, user_id=user_id)
        self.events.record(SecurityOutcome.login_failed(reason, network, user_id=user_id))

    def _session_view(self, session: Session, current_session_id: Optional[str]) -> SessionView:
        device = self.devices.get(session.device_id) if session.device_id else None
        location = session.location
        return SessionView(
            id=session.id,
            user_id=session.user_id,
            device_id=session.device_id,
            device_name=(device.name if device and device.name else UNKNOWN_DEVICE_NAME),
            device_type=(
                device.device_type if device and device.device_type else UNKNOWN_DEVICE_TYPE
            ),
            ip_address=session.ip_address,
            user_agent=session.user_agent,
            location_country=location.country if location else None,
            location_city=location.city if location else None,
            status=self.sessions.get_effective_status(session),
            created_at=session.created_at,
            expires_at=session.expires_at,
            revoked_at=session.revoked_at,
            is_current=session.id == current_session_id,
        )


__all__ = [
    "AuthService",
    "DeviceList",
    "LoginResult",
    "LoginSuccess",
    "MFAEnrollmentResult",
    "MFARequired",
    "RegisterResult",
    "SessionView",
    "TokenIdentity",
    "UserProfile",
    "UserStore",
]
