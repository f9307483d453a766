"""API dependencies for dependency injection."""

import logging
from collections.abc import Generator
from typing import Annotated
from uuid import UUID

from fastapi import Depends, HTTPException, Request, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from jose import JWTError, jwt
from sqlmodel import Session

from app.config import get_settings
from app.db.session import get_session
from app.models.user import User
from app.services.delivery_queue import DeliveryQueue, get_delivery_queue
from app.services.job_trigger import (
    PROCESS_PATH,
    SIGNATURE_HEADER,
    JobSignatureError,
    JobTriggerClient,
    get_job_trigger,
    verify_signature,
)
from app.workers.runner import NotificationCycleRunner

logger = logging.getLogger(__name__)

security = HTTPBearer()


def get_db_session() -> Generator[Session, None, None]:
    """Get database session dependency."""
    yield from get_session()


DBSession = Annotated[Session, Depends(get_db_session)]


def get_current_user(
    session: DBSession,
    credentials: Annotated[HTTPAuthorizationCredentials, Depends(security)],
) -> User:
    """Get current authenticated user from JWT token."""
    settings = get_settings()
    token = credentials.credentials
    credentials_exception = HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail="Invalid or expired token",
        headers={"WWW-Authenticate": "Bearer"},
    )

    try:
        payload = jwt.decode(
            token,
            settings.BETTER_AUTH_SECRET,
            algorithms=[settings.JWT_ALGORITHM],
        )
        subject: str | None = payload.get("sub")
        if subject is None:
            raise credentials_exception
        user_id = UUID(subject)
    except (JWTError, ValueError):
        raise credentials_exception

    user = session.get(User, user_id)
    if user is None:
        raise credentials_exception

    return user


CurrentUser = Annotated[User, Depends(get_current_user)]


def require_admin(current_user: CurrentUser) -> User:
    """Only administrators may author notification rules."""
    if not current_user.is_admin:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Administrator access required",
        )
    return current_user


AdminUser = Annotated[User, Depends(require_admin)]


async def verify_job_signature(request: Request) -> bytes:
    """Reject processing calls that are not signed by the job trigger.

    Returns:
        The raw request body that the signature covers
    """
    body = await request.body()
    try:
        verify_signature(
            request.headers.get(SIGNATURE_HEADER),
            body,
            url=f"{get_settings().APP_URL.rstrip('/')}{PROCESS_PATH}",
        )
    except JobSignatureError as e:
        logger.warning(
            "Rejected unsigned processing request",
            extra={"error": str(e), "client": request.client.host if request.client else None},
        )
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid signature",
        )
    return body


SignedBody = Annotated[bytes, Depends(verify_job_signature)]


def get_queue() -> DeliveryQueue:
    return get_delivery_queue()


Queue = Annotated[DeliveryQueue, Depends(get_queue)]


def get_trigger() -> JobTriggerClient:
    return get_job_trigger()


JobTrigger = Annotated[JobTriggerClient, Depends(get_trigger)]


def get_cycle_runner() -> NotificationCycleRunner:
    return NotificationCycleRunner()


CycleRunner = Annotated[NotificationCycleRunner, Depends(get_cycle_runner)]
