from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Dict, Optional


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class User:
    id: str
    email: str
    password_hash: str
    full_name: Optional[str] = None
    is_active: bool = True
    mfa_enabled: bool = False
    # Non-null exactly when mfa_enabled is true
    mfa_secret: Optional[str] = None
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)


@dataclass(frozen=True)
class Location:
    """Geographic context of a request; every part may be unknown."""

    country: Optional[str] = None
    city: Optional[str] = None
    latitude: Optional[float] = None
    longitude: Optional[float] = None

    @property
    def has_coordinates(self) -> bool:
        return self.latitude is not None and self.longitude is not None

    @property
    def is_empty(self) -> bool:
        return (
            self.country is None
            and self.city is None
            and not self.has_coordinates
        )

    def label(self) -> str:
        parts = [part for part in (self.city, self.country) if part]
        return ", ".join(parts) if parts else "Unknown"


@dataclass(frozen=True)
class NetworkContext:
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None
    location: Optional[Location] = None


@dataclass
class Device:
    id: str
    user_id: str
    fingerprint: str
    name: Optional[str] = None
    device_type: Optional[str] = None
    os: Optional[str] = None
    browser: Optional[str] = None
    is_trusted: bool = False
    first_seen_at: datetime = field(default_factory=utcnow)
    last_seen_at: datetime = field(default_factory=utcnow)
    created_at: datetime = field(default_factory=utcnow)

    @classmethod
    def new(
        cls,
        user_id: str,
        fingerprint: str,
        *,
        name: Optional[str] = None,
        device_type: Optional[str] = None,
        os: Optional[str] = None,
        browser: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> "Device":
        seen = now or utcnow()
        return cls(
            id=str(uuid.uuid4()),
            user_id=user_id,
            fingerprint=fingerprint,
            name=name,
            device_type=device_type,
            os=os,
            browser=browser,
            is_trusted=False,
            first_seen_at=seen,
            last_seen_at=seen,
            created_at=seen,
        )


@dataclass
class Session:
    id: str
    user_id: str
    refresh_token: str
    created_at: datetime
    expires_at: datetime
    device_id: Optional[str] = None
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None
    location: Optional[Location] = None
    is_active: bool = True
    revoked_at: Optional[datetime] = None

    @classmethod
    def new(
        cls,
        user_id: str,
        refresh_token: str,
        *,
        device_id: Optional[str] = None,
        network: Optional[NetworkContext] = None,
        ttl: timedelta = timedelta(days=7),
        now: Optional[datetime] = None,
    ) -> "Session":
        created = now or utcnow()
        network = network or NetworkContext()
        return cls(
            id=str(uuid.uuid4()),
            user_id=user_id,
            refresh_token=refresh_token,
            created_at=created,
            expires_at=created + ttl,
            device_id=device_id,
            ip_address=network.ip_address,
            user_agent=network.user_agent,
            location=network.location,
            is_active=True,
        )


@dataclass
class BackupCode:
    id: str
    user_id: str
    code_hash: str
    is_used: bool = False
    used_at: Optional[datetime] = None
    created_at: datetime = field(default_factory=utcnow)


@dataclass
class AuditEvent:
    id: str
    event_type: str
    category: str
    severity: str
    success: bool
    user_id: Optional[str] = None
    session_id: Optional[str] = None
    device_id: Optional[str] = None
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None
    location_country: Optional[str] = None
    location_city: Optional[str] = None
    failure_reason: Optional[str] = None
    metadata: Dict | None = None
    created_at: datetime = field(default_factory=utcnow)


@dataclass
class SecurityAlert:
    id: str
    user_id: str
    alert_type: str
    severity: str
    description: str
    metadata: Dict | None = None
    ip_address: Optional[str] = None
    location_country: Optional[str] = None
    location_city: Optional[str] = None
    is_resolved: bool = False
    resolved_at: Optional[datetime] = None
    created_at: datetime = field(default_factory=utcnow)
