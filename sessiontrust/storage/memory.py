from __future__ import annotations

import base64
import hashlib
import json
import threading
import uuid
from dataclasses import asdict, replace
from datetime import datetime
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Tuple

from cryptography.fernet import Fernet, InvalidToken

from sessiontrust.logging import get_logger
from sessiontrust.storage.errors import ConstraintViolation
from sessiontrust.storage.models import (
    AuditEvent,
    BackupCode,
    Device,
    Location,
    SecurityAlert,
    Session,
    User,
    utcnow,
)


class MemoryStore:
    """In-process backing store implementing the user, device, session and audit stores.

    All reads return copies so callers never mutate stored rows behind the
    store's back. When ``fs_root`` is given the state is snapshotted to
    ``<fs_root>/state/memory_store.json`` after every write.
    """

    def __init__(
        self, fs_root: str | None = None, *, mfa_encryption_key: str | None = None
    ) -> None:
        self.logger = get_logger(__name__)
        self.users: Dict[str, User] = {}
        self.devices: Dict[str, Device] = {}
        self.sessions: Dict[str, Session] = {}
        self.backup_codes: Dict[str, List[BackupCode]] = {}
        self.audit_events: List[AuditEvent] = []
        self.security_alerts: List[SecurityAlert] = []
        # RLock so composite operations can call the single-row helpers
        self._data_lock = threading.RLock()
        self.fs_root = Path(fs_root) if fs_root else None
        if self.fs_root is not None:
            self.fs_root.mkdir(parents=True, exist_ok=True)
        if not mfa_encryption_key and self.fs_root is not None:
            raise RuntimeError("A persistent store needs a stable MFA encryption key")
        self._mfa_cipher = self._build_mfa_cipher(mfa_encryption_key)
        self._load_state()

    @staticmethod
    def _derive_cipher_key(key_material: str) -> bytes:
        return base64.urlsafe_b64encode(hashlib.sha256(key_material.encode()).digest())

    def _build_mfa_cipher(self, key_material: str | None) -> Fernet:
        if not key_material:
            return Fernet(Fernet.generate_key())
        try:
            return Fernet(self._derive_cipher_key(key_material))
        except Exception as exc:
            raise RuntimeError("Unable to initialize MFA cipher") from exc

    def _encrypt_mfa_secret(self, secret: Optional[str]) -> Optional[str]:
        if not secret:
            return None
        return self._mfa_cipher.encrypt(secret.encode()).decode()

    def _decrypt_mfa_secret(self, secret: Optional[str]) -> Optional[str]:
        if not secret:
            return None
        try:
            return self._mfa_cipher.decrypt(secret.encode()).decode()
        except InvalidToken:
            self.logger.error("mfa_secret_decrypt_failed")
            raise

    def _public_user(self, user: User) -> User:
        return replace(user, mfa_secret=self._decrypt_mfa_secret(user.mfa_secret))

    # users
    def create_user(
        self,
        email: str,
        password_hash: str,
        *,
        full_name: Optional[str] = None,
        is_active: bool = True,
    ) -> User:
        with self._data_lock:
            normalized = email.strip().lower()
            if any(existing.email == normalized for existing in self.users.values()):
                raise ConstraintViolation("email already exists", {"field": "email"})
            now = utcnow()
            user = User(
                id=str(uuid.uuid4()),
                email=normalized,
                password_hash=password_hash,
                full_name=full_name,
                is_active=is_active,
                created_at=now,
                updated_at=now,
            )
            self.users[user.id] = user
            self._persist_state()
            return replace(user)

    def get_user(self, user_id: str) -> Optional[User]:
        with self._data_lock:
            user = self.users.get(user_id)
            return self._public_user(user) if user else None

    def get_user_by_email(self, email: str) -> Optional[User]:
        normalized = email.strip().lower()
        with self._data_lock:
            user = next((u for u in self.users.values() if u.email == normalized), None)
            return self._public_user(user) if user else None

    def set_user_mfa(self, user_id: str, secret: Optional[str]) -> User:
        """Enable MFA with ``secret``, or disable it when ``secret`` is None."""
        with self._data_lock:
            user = self.users.get(user_id)
            if not user:
                raise ConstraintViolation("user not found for mfa", {"user_id": user_id})
            user.mfa_secret = self._encrypt_mfa_secret(secret)
            user.mfa_enabled = user.mfa_secret is not None
            user.updated_at = utcnow()
            self._persist_state()
            return self._public_user(user)

    def set_user_active(self, user_id: str, is_active: bool) -> Optional[User]:
        with self._data_lock:
            user = self.users.get(user_id)
            if not user:
                return None
            user.is_active = is_active
            user.updated_at = utcnow()
            self._persist_state()
            return self._public_user(user)

    def replace_backup_codes(self, user_id: str, code_hashes: List[str]) -> None:
        with self._data_lock:
            if user_id not in self.users:
                raise ConstraintViolation(
                    "user not found for backup codes", {"user_id": user_id}
                )
            self.backup_codes[user_id] = [
                BackupCode(id=str(uuid.uuid4()), user_id=user_id, code_hash=digest)
                for digest in code_hashes
            ]
            self._persist_state()

    def consume_backup_code(self, user_id: str, code_hash: str) -> bool:
        with self._data_lock:
            for code in self.backup_codes.get(user_id, []):
                if not code.is_used and code.code_hash == code_hash:
                    code.is_used = True
                    code.used_at = utcnow()
                    self._persist_state()
                    return True
            return False

    def count_unused_backup_codes(self, user_id: str) -> int:
        with self._data_lock:
            return sum(1 for code in self.backup_codes.get(user_id, []) if not code.is_used)

    # devices
    def get_device(self, device_id: str) -> Optional[Device]:
        with self._data_lock:
            device = self.devices.get(device_id)
            return replace(device) if device else None

    def get_device_by_fingerprint(self, user_id: str, fingerprint: str) -> Optional[Device]:
        with self._data_lock:
            device = next(
                (
                    d
                    for d in self.devices.values()
                    if d.user_id == user_id and d.fingerprint == fingerprint
                ),
                None,
            )
            return replace(device) if device else None

    def get_or_create_device(
        self, user_id: str, fingerprint: str, factory: Callable[[], Device]
    ) -> Tuple[Device, bool]:
        """Atomic insert-or-fetch keyed by ``(user_id, fingerprint)``."""
        with self._data_lock:
            existing = self.get_device_by_fingerprint(user_id, fingerprint)
            if existing:
                return existing, False
            if user_id not in self.users:
                raise ConstraintViolation("user does not exist", {"user_id": user_id})
            device = factory()
            if device.user_id != user_id or device.fingerprint != fingerprint:
                raise ConstraintViolation(
                    "device does not match lookup key",
                    {"user_id": user_id, "fingerprint": fingerprint},
                )
            self.devices[device.id] = device
            self._persist_state()
            return replace(device), True

    def touch_device(self, device_id: str, seen_at: datetime) -> None:
        with self._data_lock:
            device = self.devices.get(device_id)
            if not device:
                return
            device.last_seen_at = seen_at
            self._persist_state()

    def set_device_trusted(self, device_id: str) -> Optional[Device]:
        with self._data_lock:
            device = self.devices.get(device_id)
            if not device:
                return None
            device.is_trusted = True
            self._persist_state()
            return replace(device)

    def list_user_devices(self, user_id: str) -> List[Device]:
        with self._data_lock:
            results = [replace(d) for d in self.devices.values() if d.user_id == user_id]
        return sorted(results, key=lambda d: d.last_seen_at, reverse=True)

    # sessions
    def create_session(self, session: Session) -> Session:
        with self._data_lock:
            if session.user_id not in self.users:
                raise ConstraintViolation("user does not exist", {"user_id": session.user_id})
            if session.device_id is not None:
                device = self.devices.get(session.device_id)
                if not device or device.user_id != session.user_id:
                    raise ConstraintViolation(
                        "device not owned by session user",
                        {"device_id": session.device_id, "user_id": session.user_id},
                    )
            if any(s.refresh_token == session.refresh_token for s in self.sessions.values()):
                raise ConstraintViolation("refresh token already bound", {"field": "refresh_token"})
            stored = replace(session)
            self.sessions[stored.id] = stored
            self._persist_state()
            return replace(stored)

    def get_session(self, session_id: str) -> Optional[Session]:
        with self._data_lock:
            sess = self.sessions.get(session_id)
            return replace(sess) if sess else None

    def get_session_by_refresh_token(self, refresh_token: str) -> Optional[Session]:
        with self._data_lock:
            sess = next(
                (s for s in self.sessions.values() if s.refresh_token == refresh_token),
                None,
            )
            return replace(sess) if sess else None

    def list_user_sessions(self, user_id: str) -> List[Session]:
        with self._data_lock:
            results = [replace(s) for s in self.sessions.values() if s.user_id == user_id]
        return sorted(results, key=lambda s: s.created_at, reverse=True)

    def revoke_session(self, session_id: str, revoked_at: datetime) -> bool:
        """Mark a session revoked; returns False when it was already revoked or missing."""
        with self._data_lock:
            sess = self.sessions.get(session_id)
            if not sess or not sess.is_active or sess.revoked_at is not None:
                return False
            sess.is_active = False
            sess.revoked_at = revoked_at
            self._persist_state()
            return True

    # audit
    def create_audit_event(self, event: AuditEvent) -> None:
        with self._data_lock:
            self.audit_events.append(replace(event))
            self._persist_state()

    def create_security_alert(self, alert: SecurityAlert) -> None:
        with self._data_lock:
            self.security_alerts.append(replace(alert))
            self._persist_state()

    def list_audit_events(self, user_id: Optional[str] = None) -> List[AuditEvent]:
        with self._data_lock:
            return [
                replace(e)
                for e in self.audit_events
                if user_id is None or e.user_id == user_id
            ]

    def list_security_alerts(self, user_id: Optional[str] = None) -> List[SecurityAlert]:
        with self._data_lock:
            return [
                replace(a)
                for a in self.security_alerts
                if user_id is None or a.user_id == user_id
            ]

    # persistence
    def _state_path(self) -> Optional[Path]:
        if self.fs_root is None:
            return None
        state_dir = self.fs_root / "state"
        state_dir.mkdir(parents=True, exist_ok=True)
        return state_dir / "memory_store.json"

    @staticmethod
    def _serialize(obj: Any) -> Any:
        if isinstance(obj, datetime):
            return obj.isoformat()
        if isinstance(obj, dict):
            return {k: MemoryStore._serialize(v) for k, v in obj.items()}
        if isinstance(obj, list):
            return [MemoryStore._serialize(v) for v in obj]
        return obj

    @staticmethod
    def _parse_dt(raw: Optional[str]) -> Optional[datetime]:
        return datetime.fromisoformat(raw) if raw else None

    def _persist_state(self) -> None:
        path = self._state_path()
        if path is None:
            return
        state = {
            "users": [asdict(u) for u in self.users.values()],
            "devices": [asdict(d) for d in self.devices.values()],
            "sessions": [asdict(s) for s in self.sessions.values()],
            "backup_codes": [asdict(c) for codes in self.backup_codes.values() for c in codes],
            "audit_events": [asdict(e) for e in self.audit_events],
            "security_alerts": [asdict(a) for a in self.security_alerts],
        }
        tmp_path = path.with_suffix(".tmp")
        tmp_path.write_text(json.dumps(self._serialize(state)))
        tmp_path.replace(path)

    def _load_state(self) -> bool:
        path = self._state_path()
        if path is None or not path.exists():
            return False
        try:
            data = json.loads(path.read_text())
        except (OSError, json.JSONDecodeError) as exc:
            self.logger.error("memory_store_load_failed", error=str(exc), path=str(path))
            raise
        dt_fields = {
            "created_at", "updated_at", "first_seen_at", "last_seen_at",
            "expires_at", "revoked_at", "used_at", "resolved_at",
        }

        def _revive(raw: dict) -> dict:
            return {k: self._parse_dt(v) if k in dt_fields else v for k, v in raw.items()}

        for raw in data.get("users", []):
            user = User(**_revive(raw))
            self.users[user.id] = user
        for raw in data.get("devices", []):
            device = Device(**_revive(raw))
            self.devices[device.id] = device
        for raw in data.get("sessions", []):
            revived = _revive(raw)
            location = revived.get("location")
            revived["location"] = Location(**location) if location else None
            sess = Session(**revived)
            self.sessions[sess.id] = sess
        for raw in data.get("backup_codes", []):
            code = BackupCode(**_revive(raw))
            self.backup_codes.setdefault(code.user_id, []).append(code)
        self.audit_events = [AuditEvent(**_revive(raw)) for raw in data.get("audit_events", [])]
        self.security_alerts = [
            SecurityAlert(**_revive(raw)) for raw in data.get("security_alerts", [])
        ]
        self.logger.info("memory_store_loaded", users=len(self.users), sessions=len(self.sessions))
        return True


__all__ = ["MemoryStore"]
