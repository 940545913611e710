from __future__ import annotations

import asyncio
import time
import uuid
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Callable, List, Optional, Protocol, Set, Tuple

from sessiontrust.logging import get_logger
from sessiontrust.service.anomaly import AnomalyVerdict, Severity
from sessiontrust.storage.models import AuditEvent, NetworkContext, SecurityAlert

logger = get_logger(__name__)


class AuditStore(Protocol):
    def create_audit_event(self, event: AuditEvent) -> None: ...

    def create_security_alert(self, alert: SecurityAlert) -> None: ...


class SecurityEventType(str, Enum):
    USER_REGISTERED = "user_registered"
    USER_LOGIN = "user_login"
    LOGIN_FAILED = "login_failed"
    SESSION_REVOKED = "session_revoked"
    ALL_SESSIONS_REVOKED = "all_sessions_revoked"
    DEVICE_TRUSTED = "device_trusted"
    MFA_ENABLED = "mfa_enabled"
    MFA_DISABLED = "mfa_disabled"
    ANOMALY_DETECTED = "anomaly_detected"


class FailureReason(str, Enum):
    USER_NOT_FOUND = "user_not_found"
    ACCOUNT_INACTIVE = "account_inactive"
    INVALID_PASSWORD = "invalid_password"
    MFA_REQUIRED = "mfa_required"
    INVALID_MFA_CODE = "invalid_mfa_code"


# event type -> (category, severity)
_CLASSIFICATION = {
    SecurityEventType.USER_REGISTERED: ("authentication", Severity.INFO),
    SecurityEventType.USER_LOGIN: ("authentication", Severity.INFO),
    SecurityEventType.LOGIN_FAILED: ("authentication", Severity.WARNING),
    SecurityEventType.SESSION_REVOKED: ("session_management", Severity.INFO),
    SecurityEventType.ALL_SESSIONS_REVOKED: ("session_management", Severity.WARNING),
    SecurityEventType.DEVICE_TRUSTED: ("security", Severity.INFO),
    SecurityEventType.MFA_ENABLED: ("security", Severity.INFO),
    SecurityEventType.MFA_DISABLED: ("security", Severity.INFO),
    SecurityEventType.ANOMALY_DETECTED: ("security", Severity.MEDIUM),
}


@dataclass(frozen=True)
class SecurityOutcome:
    """Something the core decided that must leave an audit trail."""

    event_type: SecurityEventType
    user_id: Optional[str] = None
    session_id: Optional[str] = None
    device_id: Optional[str] = None
    network: Optional[NetworkContext] = None
    failure_reason: Optional[FailureReason] = None
    revoked_count: Optional[int] = None
    verdict: Optional[AnomalyVerdict] = None

    @property
    def success(self) -> bool:
        return self.event_type is not SecurityEventType.LOGIN_FAILED

    @classmethod
    def registered(cls, user_id: str, session_id: Optional[str], device_id: Optional[str],
                   network: Optional[NetworkContext]) -> "SecurityOutcome":
        return cls(SecurityEventType.USER_REGISTERED, user_id, session_id, device_id, network)

    @classmethod
    def logged_in(cls, user_id: str, session_id: str, device_id: Optional[str],
                  network: Optional[NetworkContext]) -> "SecurityOutcome":
        return cls(SecurityEventType.USER_LOGIN, user_id, session_id, device_id, network)

    @classmethod
    def login_failed(cls, reason: FailureReason, network: Optional[NetworkContext], *,
                     user_id: Optional[str] = None) -> "SecurityOutcome":
        return cls(SecurityEventType.LOGIN_FAILED, user_id=user_id, network=network,
                   failure_reason=reason)

    @classmethod
    def session_revoked(cls, user_id: str, session_id: str,
                        network: Optional[NetworkContext] = None) -> "SecurityOutcome":
        return cls(SecurityEventType.SESSION_REVOKED, user_id, session_id, network=network)

    @classmethod
    def all_sessions_revoked(cls, user_id: str, revoked_count: int,
                             network: Optional[NetworkContext] = None) -> "SecurityOutcome":
        return cls(SecurityEventType.ALL_SESSIONS_REVOKED, user_id, network=network,
                   revoked_count=revoked_count)

    @classmethod
    def device_trusted(cls, user_id: str, device_id: str) -> "SecurityOutcome":
        return cls(SecurityEventType.DEVICE_TRUSTED, user_id, device_id=device_id)

    @classmethod
    def mfa_enabled(cls, user_id: str) -> "SecurityOutcome":
        return cls(SecurityEventType.MFA_ENABLED, user_id)

    @classmethod
    def mfa_disabled(cls, user_id: str) -> "SecurityOutcome":
        return cls(SecurityEventType.MFA_DISABLED, user_id)

    @classmethod
    def anomaly(cls, verdict: AnomalyVerdict, user_id: str, *,
                session_id: Optional[str] = None, device_id: Optional[str] = None,
                network: Optional[NetworkContext] = None) -> "SecurityOutcome":
        return cls(SecurityEventType.ANOMALY_DETECTED, user_id, session_id, device_id,
                   network, verdict=verdict)


class SecurityEventEmitter:
    """Fire-and-forget recorder for audit events and security alerts.

    ``record`` never raises and never blocks on the store. Each outcome is
    turned into records immediately, then written by a detached task that
    retries every write up to ``max_attempts`` times. Callers that need the
    writes settled (shutdown, tests) await ``drain``.
    """

    def __init__(
        self,
        store: AuditStore,
        *,
        max_attempts: int = 3,
        retry_delay: float = 0.05,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self.store = store
        self.max_attempts = max(1, max_attempts)
        self.retry_delay = retry_delay
        self._clock = clock or (lambda: datetime.now(timezone.utc))
        self._pending: Set[asyncio.Task] = set()

    @property
    def pending(self) -> int:
        return len(self._pending)

    def record(self, outcome: SecurityOutcome) -> None:
        try:
            writes = self._build_writes(outcome)
        except Exception as exc:
            logger.error(
                "security_event_build_failed",
                event_type=outcome.event_type.value,
                error=str(exc),
            )
            return
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            self._deliver_sync(outcome.event_type.value, writes)
            return
        task = loop.create_task(self._deliver(outcome.event_type.value, writes))
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)

    async def drain(self) -> None:
        while self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)

    def _build_writes(self, outcome: SecurityOutcome) -> List[Tuple[str, Callable[[], None]]]:
        now = self._clock()
        network = outcome.network or NetworkContext()
        location = network.location
        category, severity = _CLASSIFICATION[outcome.event_type]
        if outcome.failure_reason is FailureReason.MFA_REQUIRED:
            severity = Severity.INFO
        metadata: dict = {}
        if outcome.revoked_count is not None:
            metadata["revoked_count"] = outcome.revoked_count
        verdict = outcome.verdict
        if verdict is not None:
            severity = verdict.severity
            metadata.update({"anomaly": verdict.kind.value, **verdict.details})

        event = AuditEvent(
            id=str(uuid.uuid4()),
            event_type=outcome.event_type.value,
            category=category,
            severity=severity.value,
            success=outcome.success,
            user_id=outcome.user_id,
            session_id=outcome.session_id,
            device_id=outcome.device_id,
            ip_address=network.ip_address,
            user_agent=network.user_agent,
            location_country=location.country if location else None,
            location_city=location.city if location else None,
            failure_reason=outcome.failure_reason.value if outcome.failure_reason else None,
            metadata=metadata or None,
            created_at=now,
        )
        writes: List[Tuple[str, Callable[[], None]]] = [
            ("audit_event", lambda: self.store.create_audit_event(event))
        ]
        if verdict is not None and outcome.user_id:
            alert = SecurityAlert(
                id=str(uuid.uuid4()),
                user_id=outcome.user_id,
                alert_type=verdict.kind.value,
                severity=verdict.severity.value,
                description=verdict.description,
                metadata=dict(verdict.details) or None,
                ip_address=network.ip_address,
                location_country=location.country if location else None,
                location_city=location.city if location else None,
                created_at=now,
            )
            writes.append(("security_alert", lambda: self.store.create_security_alert(alert)))
        return writes

    async def _deliver(self, event_type: str, writes: List[Tuple[str, Callable[[], None]]]) -> None:
        for kind, write in writes:
            for attempt in range(1, self.max_attempts + 1):
                try:
                    write()
                    break
                except Exception as exc:
                    if attempt >= self.max_attempts:
                        logger.error(
                            "security_event_delivery_failed",
                            event_type=event_type,
                            record=kind,
                            attempts=attempt,
                            error=str(exc),
                        )
                        break
                    logger.warning(
                        "security_event_delivery_retry",
                        event_type=event_type,
                        record=kind,
                        attempt=attempt,
                        error=str(exc),
                    )
                    await asyncio.sleep(self.retry_delay * attempt)

    def _deliver_sync(self, event_type: str, writes: List[Tuple[str, Callable[[], None]]]) -> None:
        for kind, write in writes:
            for attempt in range(1, self.max_attempts + 1):
                try:
                    write()
                    break
                except Exception as exc:
                    if attempt >= self.max_attempts:
                        logger.error(
                            "security_event_delivery_failed",
                            event_type=event_type,
                            record=kind,
                            attempts=attempt,
                            error=str(exc),
                        )
                        break
                    time.sleep(self.retry_delay * attempt)


__all__ = [
    "AuditStore",
    "FailureReason",
    "SecurityEventEmitter",
    "SecurityEventType",
    "SecurityOutcome",
]
