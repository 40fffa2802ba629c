"""
FastAPI dependencies for dependency injection.

Provides database sessions, use case instances, and
authentication dependencies for route handlers.
"""

from collections.abc import AsyncGenerator
from typing import Annotated

from fastapi import Depends
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from parkingmate.application.detection_processor import DetectionEventProcessor
from parkingmate.application.guest_validation import GuestValidationService
from parkingmate.application.locking import KeyedLockRegistry, get_lock_registry
from parkingmate.application.notification_outbox import OutboxDispatcher
from parkingmate.application.registration_flow import RegistrationService
from parkingmate.core.security import check_rate_limit, verify_api_key
from parkingmate.infrastructure.db.session import get_session_factory
from parkingmate.infrastructure.email.notifier import Notifier, get_notifier


def get_db_session_factory() -> async_sessionmaker[AsyncSession]:
    """Session factory used by every use case (overridden in tests)."""
    return get_session_factory()


def get_email_notifier() -> Notifier:
    return get_notifier()


def get_locks() -> KeyedLockRegistry:
    return get_lock_registry()


SessionFactory = Annotated[async_sessionmaker[AsyncSession], Depends(get_db_session_factory)]
EmailNotifier = Annotated[Notifier, Depends(get_email_notifier)]
Locks = Annotated[KeyedLockRegistry, Depends(get_locks)]


async def get_db_session(factory: SessionFactory) -> AsyncGenerator[AsyncSession, None]:
    """
    Dependency that provides a read-only database session.

    Yields:
        AsyncSession: Session closed after the request.
    """
    async with factory() as session:
        yield session


# Type aliases for cleaner route signatures
Session = Annotated[AsyncSession, Depends(get_db_session)]
ApiKeyAuth = Annotated[None, Depends(verify_api_key)]
RateLimited = Annotated[None, Depends(check_rate_limit)]


async def get_outbox_dispatcher(
    factory: SessionFactory,
    notifier: EmailNotifier,
) -> OutboxDispatcher:
    """
    Dependency to get the outbox dispatcher.

    Args:
        factory: Session factory.
        notifier: Email notifier.

    Returns:
        OutboxDispatcher: Dispatcher bound to the notifier.
    """
    return OutboxDispatcher(factory, notifier)


Dispatcher = Annotated[OutboxDispatcher, Depends(get_outbox_dispatcher)]


async def get_detection_processor(
    factory: SessionFactory,
    dispatcher: Dispatcher,
    locks: Locks,
) -> DetectionEventProcessor:
    """
    Dependency to get the detection processor.

    Returns:
        DetectionEventProcessor: Configured use case instance.
    """
    return DetectionEventProcessor(factory, dispatcher=dispatcher, locks=locks)


async def get_guest_validation_service(
    factory: SessionFactory,
    locks: Locks,
) -> GuestValidationService:
    return GuestValidationService(factory, locks=locks)


async def get_registration_service(
    factory: SessionFactory,
    dispatcher: Dispatcher,
    locks: Locks,
) -> RegistrationService:
    return RegistrationService(factory, dispatcher=dispatcher, locks=locks)


# Type aliases for use case dependencies
Processor = Annotated[DetectionEventProcessor, Depends(get_detection_processor)]
GuestValidation = Annotated[GuestValidationService, Depends(get_guest_validation_service)]
Registration = Annotated[RegistrationService, Depends(get_registration_service)]
