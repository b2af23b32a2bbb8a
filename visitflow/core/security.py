"""JWT handling for identities issued by the external identity provider."""

from dataclasses import dataclass
from datetime import UTC, datetime, timedelta
from enum import Enum
from typing import Any

from jose import JWTError, jwt

from visitflow.config import settings


class Role(str, Enum):
    """Caller roles recognised by the engine surface."""

    PATIENT = "patient"
    RECEPTIONIST = "receptionist"
    DOCTOR = "doctor"
    ADMIN = "admin"


STAFF_ROLES = frozenset({Role.RECEPTIONIST, Role.DOCTOR, Role.ADMIN})


@dataclass(frozen=True)
class Identity:
    """Authenticated caller as asserted by the identity provider."""

    subject_id: str
    role: Role

    @property
    def is_staff(self) -> bool:
        return self.role in STAFF_ROLES

    @property
    def is_admin(self) -> bool:
        return self.role is Role.ADMIN


def create_access_token(
    data: dict[str, Any],
    expires_delta: timedelta | None = None,
) -> str:
    """
    Create a JWT access token.

    Used by tooling and tests; production tokens come from the identity
    provider sharing ``JWT_SECRET_KEY``.

    Args:
        data: Payload data to encode
        expires_delta: Optional expiration time delta

    Returns:
        Encoded JWT token
    """
    to_encode = data.copy()

    if expires_delta:
        expire = datetime.now(UTC) + expires_delta
    else:
        expire = datetime.now(UTC) + timedelta(minutes=settings.access_token_expire_minutes)

    to_encode.update(
        {
            "exp": expire,
            "iat": datetime.now(UTC),
            "type": "access",
        }
    )

    return jwt.encode(
        to_encode,
        settings.jwt_secret_key,
        algorithm=settings.jwt_algorithm,
    )


def decode_access_token(token: str) -> dict[str, Any] | None:
    """
    Decode and validate a JWT access token.

    Args:
        token: JWT token to decode

    Returns:
        Decoded payload or None if invalid
    """
    try:
        payload = jwt.decode(
            token,
            settings.jwt_secret_key,
            algorithms=[settings.jwt_algorithm],
        )

        # Verify token type
        if payload.get("type") != "access":
            return None

        return payload
    except JWTError:
        return None


def identity_from_payload(payload: dict[str, Any]) -> Identity | None:
    """Build an identity from decoded claims, or None if claims are incomplete."""
    subject = payload.get("sub")
    if not subject or not isinstance(subject, str):
        return None

    try:
        role = Role(payload.get("role", Role.PATIENT.value))
    except ValueError:
        return None

    return Identity(subject_id=subject, role=role)
