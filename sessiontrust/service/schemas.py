from __future__ import annotations

import re
import unicodedata
from typing import Any, Mapping, Optional, Type, TypeVar

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic import ValidationError as PydanticValidationError

from sessiontrust.service.devices import DeviceMeta
from sessiontrust.service.errors import ValidationError
from sessiontrust.storage.models import Location, NetworkContext

MAX_FINGERPRINT_LENGTH = 256
MAX_TEXT_LENGTH = 512

_ZERO_WIDTH = re.compile("[\u200b\u200c\u200d\ufeff]")
_EMAIL_LOCAL_PART = re.compile(r"^[a-zA-Z0-9.!#$%&'*+/=?^_`{|}~-]+$")
_EMAIL_DOMAIN_LABEL = re.compile(r"^[a-zA-Z0-9](?:[a-zA-Z0-9-]{0,61}[a-zA-Z0-9])?$")


def _normalize_unicode(value: str) -> str:
    """NFKC-normalize and strip zero-width characters that could be used for spoofing."""
    return unicodedata.normalize("NFKC", _ZERO_WIDTH.sub("", value))


def _validate_email(value: str) -> str:
    if not isinstance(value, str):
        raise ValueError("email must be a string")
    normalized = _normalize_unicode(value.strip().lower())
    if len(normalized) > 254:
        raise ValueError("email address too long")
    if len(normalized) < 3:
        raise ValueError("email address too short")
    local, sep, domain = normalized.partition("@")
    if not sep or not local or not domain:
        raise ValueError("invalid email address")
    if len(local) > 64:
        raise ValueError("email local part too long")
    if not _EMAIL_LOCAL_PART.match(local):
        raise ValueError("invalid email address format")
    domain_parts = domain.split(".")
    if len(domain_parts) < 2:
        raise ValueError("invalid email address format")
    for label in domain_parts:
        if len(label) > 63 or not _EMAIL_DOMAIN_LABEL.match(label):
            raise ValueError("invalid email address format")
    return normalized


def _validate_password_strength(value: str) -> str:
    if len(value) < 8:
        raise ValueError("password must be at least 8 characters")
    if len(value) > 128:
        raise ValueError("password must be at most 128 characters")
    return value


def _blank_to_none(value: Any) -> Any:
    if isinstance(value, str):
        value = value.strip()
        return value or None
    return value


class DeviceInfo(BaseModel):
    """Client-reported device and network context attached to register/login."""

    model_config = ConfigDict(extra="ignore")

    fingerprint: str = Field(..., min_length=1, max_length=MAX_FINGERPRINT_LENGTH)
    name: Optional[str] = Field(default=None, max_length=MAX_TEXT_LENGTH)
    device_type: Optional[str] = Field(default=None, max_length=64)
    os: Optional[str] = Field(default=None, max_length=MAX_TEXT_LENGTH)
    browser: Optional[str] = Field(default=None, max_length=MAX_TEXT_LENGTH)
    ip_address: Optional[str] = Field(default=None, max_length=64)
    user_agent: Optional[str] = Field(default=None, max_length=MAX_TEXT_LENGTH)
    country: Optional[str] = Field(default=None, max_length=128)
    city: Optional[str] = Field(default=None, max_length=128)
    latitude: Optional[float] = Field(default=None, ge=-90, le=90)
    longitude: Optional[float] = Field(default=None, ge=-180, le=180)

    @field_validator("fingerprint", mode="before")
    @classmethod
    def _strip_fingerprint(cls, value: Any) -> Any:
        return value.strip() if isinstance(value, str) else value

    @field_validator(
        "name", "device_type", "os", "browser", "ip_address", "user_agent", "country", "city",
        mode="before",
    )
    @classmethod
    def _empty_means_absent(cls, value: Any) -> Any:
        # Clients send "" and null interchangeably; both mean unknown
        return _blank_to_none(value)

    def to_location(self) -> Optional[Location]:
        location = Location(
            country=self.country,
            city=self.city,
            latitude=self.latitude,
            longitude=self.longitude,
        )
        return None if location.is_empty else location

    def to_network_context(self) -> NetworkContext:
        return NetworkContext(
            ip_address=self.ip_address,
            user_agent=self.user_agent,
            location=self.to_location(),
        )

    def to_device_meta(self) -> DeviceMeta:
        return DeviceMeta(
            name=self.name,
            device_type=self.device_type,
            os=self.os,
            browser=self.browser,
        )


class RegisterRequest(BaseModel):
    email: str
    password: str
    full_name: Optional[str] = Field(default=None, max_length=256)
    device_info: DeviceInfo

    @field_validator("email")
    @classmethod
    def _validate_register_email(cls, value: str) -> str:
        return _validate_email(value)

    @field_validator("password")
    @classmethod
    def _validate_password(cls, value: str) -> str:
        return _validate_password_strength(value)

    @field_validator("full_name", mode="before")
    @classmethod
    def _strip_full_name(cls, value: Any) -> Any:
        return _blank_to_none(value)


class LoginRequest(BaseModel):
    email: str
    password: str = Field(..., min_length=1, max_length=128)
    mfa_code: Optional[str] = Field(default=None, max_length=16)
    device_info: DeviceInfo

    @field_validator("email")
    @classmethod
    def _validate_login_email(cls, value: str) -> str:
        return _validate_email(value)

    @field_validator("mfa_code", mode="before")
    @classmethod
    def _strip_mfa_code(cls, value: Any) -> Any:
        return _blank_to_none(value)


RequestT = TypeVar("RequestT", bound=BaseModel)


def parse_request(model: Type[RequestT], data: RequestT | Mapping[str, Any]) -> RequestT:
    """Validate raw input into ``model``, raising the service ValidationError on failure."""
    if isinstance(data, model):
        return data
    try:
        return model.model_validate(data)
    except PydanticValidationError as exc:
        errors = [
            {"field": ".".join(str(part) for part in err.get("loc", ())), "message": err.get("msg")}
            for err in exc.errors()
        ]
        raise ValidationError("invalid request", detail={"errors": errors}) from exc


__all__ = ["DeviceInfo", "LoginRequest", "RegisterRequest", "parse_request"]
