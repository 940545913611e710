from __future__ import annotations

import threading
from datetime import timedelta
from typing import Optional

from sessiontrust.config import Settings, get_settings, reset_settings_cache
from sessiontrust.logging import get_logger
from sessiontrust.service.anomaly import AnomalyDetector
from sessiontrust.service.auth import AuthService
from sessiontrust.service.credentials import CredentialService
from sessiontrust.service.devices import DeviceRegistry
from sessiontrust.service.events import SecurityEventEmitter
from sessiontrust.service.sessions import SessionLifecycleManager
from sessiontrust.service.tokens import TokenService
from sessiontrust.storage.memory import MemoryStore

logger = get_logger(__name__)


class Runtime:
    """Holds the store and the singleton service instances."""

    def __init__(self, settings: Optional[Settings] = None):
        self.settings = settings or get_settings()
        logger.info(
            "runtime_init_started",
            test_mode=self.settings.test_mode,
            persistent=bool(self.settings.shared_fs_root),
        )

        try:
            self.store = MemoryStore(
                fs_root=self.settings.shared_fs_root,
                mfa_encryption_key=self.settings.mfa_encryption_key or self.settings.jwt_secret,
            )
        except Exception as exc:
            logger.error(
                "runtime_store_init_failed",
                error_type=type(exc).__name__,
                error=str(exc),
            )
            raise

        self.credentials = CredentialService(mfa_issuer=self.settings.mfa_issuer)
        self.tokens = TokenService.from_settings(self.settings)
        self.devices = DeviceRegistry(self.store)
        self.sessions = SessionLifecycleManager(
            self.store,
            self.devices,
            ttl=timedelta(hours=self.settings.session_ttl_hours),
        )
        self.detector = AnomalyDetector(
            max_speed_kmh=self.settings.impossible_travel_speed_kmh,
            min_distance_km=self.settings.impossible_travel_min_distance_km,
        )
        self.events = SecurityEventEmitter(
            self.store,
            max_attempts=self.settings.event_max_attempts,
            retry_delay=self.settings.event_retry_delay_seconds,
        )
        self.auth = AuthService(
            self.store,
            self.credentials,
            self.tokens,
            self.devices,
            self.sessions,
            self.detector,
            self.events,
        )
        logger.info("runtime_init_completed", signing_kid=self.tokens.key_ring.active_kid)


runtime: Runtime | None = None
_runtime_lock = threading.Lock()


def get_runtime() -> Runtime:
    """Get or create the Runtime singleton in a thread-safe manner.

    Double-checked locking: the unlocked read is the fast path, the second
    check under the lock prevents two threads building competing runtimes.
    """
    global runtime
    if runtime is not None:
        return runtime
    with _runtime_lock:
        if runtime is None:
            runtime = Runtime()
        return runtime


def reset_runtime_for_tests() -> Runtime:
    """Reinitialize the runtime singleton for isolated test runs."""
    global runtime

    with _runtime_lock:
        reset_settings_cache()
        settings = get_settings()
        if not settings.test_mode:
            raise RuntimeError("runtime reset is only allowed in TEST_MODE")
        runtime = Runtime(settings)
        return runtime


__all__ = ["Runtime", "get_runtime", "reset_runtime_for_tests"]
