from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Callable, List, Optional, Protocol, Tuple

from sessiontrust.logging import get_logger
from sessiontrust.service.errors import AuthorizationError, NotFoundError, ValidationError
from sessiontrust.storage.models import Device

logger = get_logger(__name__)


class DeviceStore(Protocol):
    def get_device(self, device_id: str) -> Optional[Device]: ...

    def get_or_create_device(
        self, user_id: str, fingerprint: str, factory: Callable[[], Device]
    ) -> Tuple[Device, bool]: ...

    def touch_device(self, device_id: str, seen_at: datetime) -> None: ...

    def set_device_trusted(self, device_id: str) -> Optional[Device]: ...

    def list_user_devices(self, user_id: str) -> List[Device]: ...


@dataclass(frozen=True)
class DeviceMeta:
    name: Optional[str] = None
    device_type: Optional[str] = None
    os: Optional[str] = None
    browser: Optional[str] = None


class DeviceRegistry:
    """Maps client fingerprints to per-user device records."""

    def __init__(
        self, store: DeviceStore, *, clock: Optional[Callable[[], datetime]] = None
    ) -> None:
        self.store = store
        self._clock = clock or (lambda: datetime.now(timezone.utc))

    def resolve(
        self, fingerprint: str, user_id: str, meta: Optional[DeviceMeta] = None
    ) -> Tuple[str, bool]:
        """Return ``(device_id, is_new)``, registering an untrusted device on first sight."""
        if not fingerprint or not fingerprint.strip():
            raise ValidationError("device fingerprint is required")
        meta = meta or DeviceMeta()
        now = self._clock()

        def _factory() -> Device:
            return Device.new(
                user_id,
                fingerprint,
                name=meta.name,
                device_type=meta.device_type,
                os=meta.os,
                browser=meta.browser,
                now=now,
            )

        device, created = self.store.get_or_create_device(user_id, fingerprint, _factory)
        if created:
            logger.info("device_registered", device_id=device.id, user_id=user_id)
        else:
            self.store.touch_device(device.id, now)
        return device.id, created

    def trust(self, device_id: str, *, user_id: Optional[str] = None) -> Device:
        device = self.store.get_device(device_id)
        if not device:
            raise NotFoundError("Device not found", detail={"device_id": device_id})
        if user_id is not None and device.user_id != user_id:
            raise AuthorizationError("Unauthorized", detail={"device_id": device_id})
        trusted = self.store.set_device_trusted(device_id)
        if not trusted:
            raise NotFoundError("Device not found", detail={"device_id": device_id})
        logger.info("device_trusted", device_id=device_id, user_id=trusted.user_id)
        return trusted

    def get(self, device_id: str) -> Optional[Device]:
        return self.store.get_device(device_id)

    def list_devices(self, user_id: str) -> List[Device]:
        return self.store.list_user_devices(user_id)


__all__ = ["DeviceMeta", "DeviceRegistry", "DeviceStore"]
