"""FastAPI dependencies."""

from typing import Annotated

from fastapi import Depends
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from visitflow.config import settings
from visitflow.core.exceptions import ForbiddenException, UnauthorizedException
from visitflow.core.redis_client import get_redis_client
from visitflow.core.security import Identity, Role, decode_access_token, identity_from_payload
from visitflow.database import get_session_factory
from visitflow.services.visit_engine import VisitLifecycleEngine, build_visit_engine

# Security
security = HTTPBearer(auto_error=False)

_engine: VisitLifecycleEngine | None = None


def get_visit_engine() -> VisitLifecycleEngine:
    """Get or create the process-wide engine."""
    global _engine

    if _engine is None:
        _engine = build_visit_engine(
            settings,
            session_factory=get_session_factory(),
            redis_client=get_redis_client(),
        )

    return _engine


def reset_visit_engine() -> None:
    """Forget the process-wide engine after shutdown."""
    global _engine
    _engine = None


async def get_current_identity(
    credentials: Annotated[HTTPAuthorizationCredentials | None, Depends(security)],
) -> Identity:
    """
    Extract the caller identity from the bearer JWT.

    Raises:
        UnauthorizedException: If the token is missing, invalid or expired
    """
    if credentials is None:
        raise UnauthorizedException("Not authenticated")

    payload = decode_access_token(credentials.credentials)
    if payload is None:
        raise UnauthorizedException("Could not validate credentials")

    identity = identity_from_payload(payload)
    if identity is None:
        raise UnauthorizedException("Could not validate credentials")

    return identity


async def get_current_patient(
    identity: Annotated[Identity, Depends(get_current_identity)],
) -> Identity:
    """Require a patient caller."""
    if identity.role is not Role.PATIENT:
        raise ForbiddenException("Patient access required")
    return identity


async def get_current_staff(
    identity: Annotated[Identity, Depends(get_current_identity)],
) -> Identity:
    """Require a receptionist, doctor or admin caller."""
    if not identity.is_staff:
        raise ForbiddenException("Staff access required")
    return identity


# Type aliases for dependency injection
CurrentIdentity = Annotated[Identity, Depends(get_current_identity)]
CurrentPatient = Annotated[Identity, Depends(get_current_patient)]
CurrentStaff = Annotated[Identity, Depends(get_current_staff)]
VisitEngine = Annotated[VisitLifecycleEngine, Depends(get_visit_engine)]
