from __future__ import annotations

from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Callable, List, Optional, Protocol

from sessiontrust.logging import get_logger
from sessiontrust.service.devices import DeviceRegistry
from sessiontrust.service.errors import AuthorizationError, NotFoundError, ValidationError
from sessiontrust.storage.models import NetworkContext, Session

logger = get_logger(__name__)

SESSION_TTL = timedelta(days=7)


class SessionStore(Protocol):
    def create_session(self, session: Session) -> Session: ...

    def get_session(self, session_id: str) -> Optional[Session]: ...

    def get_session_by_refresh_token(self, refresh_token: str) -> Optional[Session]: ...

    def list_user_sessions(self, user_id: str) -> List[Session]: ...

    def revoke_session(self, session_id: str, revoked_at: datetime) -> bool: ...


class SessionStatus(str, Enum):
    ACTIVE = "active"
    EXPIRED = "expired"
    REVOKED = "revoked"


class SessionLifecycleManager:
    """Creates, inspects and revokes sessions.

    A session moves from ACTIVE to EXPIRED purely with the passage of time and
    from ACTIVE to REVOKED by an explicit call; both are terminal. Only the
    revocation is written to the store, expiry is always derived.
    """

    def __init__(
        self,
        store: SessionStore,
        devices: DeviceRegistry,
        *,
        ttl: timedelta = SESSION_TTL,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self.store = store
        self.devices = devices
        self.ttl = ttl
        self._clock = clock or (lambda: datetime.now(timezone.utc))

    def _now(self) -> datetime:
        return self._clock()

    def create_session(
        self,
        user_id: str,
        device_id: Optional[str],
        refresh_token: str,
        network: Optional[NetworkContext] = None,
    ) -> Session:
        if device_id is not None:
            device = self.devices.get(device_id)
            if not device or device.user_id != user_id:
                raise ValidationError(
                    "device does not belong to session user",
                    detail={"device_id": device_id},
                )
        session = Session.new(
            user_id,
            refresh_token,
            device_id=device_id,
            network=network,
            ttl=self.ttl,
            now=self._now(),
        )
        created = self.store.create_session(session)
        logger.info(
            "session_created",
            session_id=created.id,
            user_id=user_id,
            device_id=device_id,
            expires_at=created.expires_at.isoformat(),
        )
        return created

    def get_effective_status(self, session: Session) -> SessionStatus:
        if session.revoked_at is not None or not session.is_active:
            return SessionStatus.REVOKED
        if self._now() >= session.expires_at:
            return SessionStatus.EXPIRED
        return SessionStatus.ACTIVE

    def is_effectively_active(self, session: Session) -> bool:
        return self.get_effective_status(session) is SessionStatus.ACTIVE

    def is_refresh_token_active(self, refresh_token: str) -> bool:
        session = self.store.get_session_by_refresh_token(refresh_token)
        return bool(session and self.is_effectively_active(session))

    def get_owned_session(self, session_id: str, requesting_user_id: str) -> Session:
        session = self.store.get_session(session_id)
        if not session:
            raise NotFoundError("Session not found", detail={"session_id": session_id})
        if session.user_id != requesting_user_id:
            logger.warning(
                "session_ownership_mismatch",
                session_id=session_id,
                requesting_user_id=requesting_user_id,
            )
            raise AuthorizationError("Unauthorized", detail={"session_id": session_id})
        return session

    def revoke(self, session_id: str, requesting_user_id: str) -> bool:
        """Revoke an owned session; returns False if it was already revoked or expired."""
        session = self.get_owned_session(session_id, requesting_user_id)
        # Revoked and Expired are terminal
        if self.get_effective_status(session) is not SessionStatus.ACTIVE:
            return False
        revoked = self.store.revoke_session(session_id, self._now())
        if revoked:
            logger.info("session_revoked", session_id=session_id, user_id=requesting_user_id)
        return revoked

    def revoke_all(self, user_id: str, except_session_id: Optional[str] = None) -> int:
        now = self._now()
        revoked_count = 0
        for session in self.store.list_user_sessions(user_id):
            if session.id == except_session_id:
                continue
            if not self.is_effectively_active(session):
                continue
            if self.store.revoke_session(session.id, now):
                revoked_count += 1
        logger.info(
            "sessions_revoked",
            user_id=user_id,
            revoked_count=revoked_count,
            kept_session_id=except_session_id,
        )
        return revoked_count

    def list_sessions(self, user_id: str, *, include_inactive: bool = False) -> List[Session]:
        sessions = self.store.list_user_sessions(user_id)
        if include_inactive:
            return sessions
        return [s for s in sessions if self.is_effectively_active(s)]

    def latest_located_session(
        self, user_id: str, *, before: Optional[datetime] = None
    ) -> Optional[Session]:
        """Most recent session that recorded coordinates, used as anomaly history."""
        for session in self.store.list_user_sessions(user_id):
            if before is not None and session.created_at >= before:
                continue
            if session.location is not None and session.location.has_coordinates:
                return session
        return None


__all__ = ["SESSION_TTL", "SessionLifecycleManager", "SessionStatus", "SessionStore"]
