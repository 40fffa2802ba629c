"""
Transactional outbox dispatch.

Business transactions only write outbox rows. Once they commit, the
dispatcher claims each row (pending -> sending), hands it to the notifier and
records the result. A failed or interrupted send leaves the row FAILED for a
later retry and never affects the business state that queued it.
"""

import asyncio
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Iterable

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from parkingmate.core.config import get_settings
from parkingmate.core.logging import get_logger
from parkingmate.domain.models import OutboxKind, OutboxMessage, utcnow
from parkingmate.infrastructure.db.repository import OutboxRepository
from parkingmate.infrastructure.email.notifier import Notifier, get_notifier

logger = get_logger(__name__)


@dataclass
class DispatchReport:
    """Result of one dispatch run."""

    sent: list[str] = field(default_factory=list)
    failed: list[str] = field(default_factory=list)
    skipped: list[str] = field(default_factory=list)

    @property
    def attempted(self) -> int:
        return len(self.sent) + len(self.failed)


class OutboxDispatcher:
    """
    Sends queued notifications after commit.

    A claim holds a message in SENDING for a lease. A message whose send is
    interrupted is released as FAILED; one whose dispatcher died outright is
    picked up again by ``dispatch_pending`` once the lease has run out.

    Example:
        dispatcher = OutboxDispatcher(session_factory, notifier)
        report = await dispatcher.dispatch(["<outbox id>"])
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        notifier: Notifier | None = None,
        timeout_seconds: float | None = None,
        claim_lease: timedelta | None = None,
    ):
        """
        Initialize dispatcher.

        Args:
            session_factory: Factory for short dispatch transactions.
            notifier: Optional custom notifier.
            timeout_seconds: Upper bound for one send.
            claim_lease: How long a claimed message may stay in SENDING.
        """
        settings = get_settings()
        self._session_factory = session_factory
        self._notifier = notifier or get_notifier()
        self._timeout = timeout_seconds or settings.notifier_timeout_seconds
        self._claim_lease = claim_lease or settings.outbox_claim_lease

    async def dispatch(
        self,
        message_ids: Iterable[str],
        include_failed: bool = False,
        stale_before: datetime | None = None,
    ) -> DispatchReport:
        """
        Send the given outbox messages.

        Messages another dispatcher already claimed are skipped.

        Args:
            message_ids: Outbox ids, usually those a transaction just queued.
            include_failed: Retry messages whose previous attempt failed.
            stale_before: Also take over messages claimed before this time.

        Returns:
            DispatchReport: Ids grouped by result.
        """
        report = DispatchReport()
        for message_id in message_ids:
            message = await self._claim(message_id, include_failed, stale_before)
            if message is None:
                report.skipped.append(message_id)
                continue

            try:
                delivered, error = await self._deliver(message)
                await self._finish(message.id, delivered, error)
            except BaseException:
                await self._release(message.id)
                raise
            (report.sent if delivered else report.failed).append(message.id)
        return report

    async def dispatch_after_commit(self, message_ids: list[str]) -> DispatchReport:
        """
        Dispatch messages a transaction just committed.

        The business state is already durable, so a dispatch failure is only
        logged; the messages stay in the outbox for a later retry.
        """
        if not message_ids:
            return DispatchReport()
        try:
            return await self.dispatch(message_ids)
        except Exception as e:
            logger.error("outbox_dispatch_failed", outbox_ids=message_ids, error=str(e))
            return DispatchReport(failed=list(message_ids))

    async def dispatch_pending(self, limit: int = 50) -> DispatchReport:
        """
        Retry every pending, failed or abandoned message, oldest first.

        Args:
            limit: Maximum messages to attempt.

        Returns:
            DispatchReport: Ids grouped by result.
        """
        stale_before = utcnow() - self._claim_lease
        async with self._session_factory() as session:
            pending = await OutboxRepository(session).list_pending(
                limit=limit,
                stale_before=stale_before,
            )
        logger.info("outbox_dispatch_started", count=len(pending))
        return await self.dispatch(
            [m.id for m in pending],
            include_failed=True,
            stale_before=stale_before,
        )

    async def _claim(
        self,
        message_id: str,
        include_failed: bool,
        stale_before: datetime | None,
    ) -> OutboxMessage | None:
        async with self._session_factory() as session:
            repo = OutboxRepository(session)
            claimed = await repo.claim(
                message_id,
                utcnow(),
                include_failed=include_failed,
                stale_before=stale_before,
            )
            if not claimed:
                await session.rollback()
                return None
            message = await repo.get_by_id(message_id)
            await session.commit()
        return message

    async def _release(self, message_id: str) -> None:
        """Return an interrupted send to FAILED so a retry picks it up."""
        try:
            async with self._session_factory() as session:
                await OutboxRepository(session).mark_failed(message_id, "dispatch interrupted")
                await session.commit()
        except Exception as e:
            # The claim lease still expires and hands the message to a retry
            logger.error("outbox_release_failed", outbox_id=message_id, error=str(e))
            return
        logger.warning("outbox_message_released", outbox_id=message_id)

    async def _deliver(self, message: OutboxMessage) -> tuple[bool, str | None]:
        try:
            delivered = await asyncio.wait_for(self._send(message), timeout=self._timeout)
        except asyncio.TimeoutError:
            logger.error("notification_timeout", outbox_id=message.id, kind=message.kind.value)
            return False, "timeout"
        except Exception as e:
            logger.error(
                "notification_send_failed",
                outbox_id=message.id,
                kind=message.kind.value,
                error=str(e),
            )
            return False, str(e)
        return delivered, None if delivered else "rejected by provider"

    async def _send(self, message: OutboxMessage) -> bool:
        payload = message.payload
        if message.kind == OutboxKind.REGISTRATION_INVITE:
            return await self._notifier.send_registration_invite(
                message.recipient_email,
                message.recipient_name,
                payload["token"],
                int(payload.get("expires_hours", 0)),
            )
        return await self._notifier.send_otp(
            message.recipient_email,
            message.recipient_name,
            payload["code"],
            int(payload.get("expires_minutes", 0)),
        )

    async def _finish(self, message_id: str, delivered: bool, error: str | None) -> None:
        async with self._session_factory() as session:
            repo = OutboxRepository(session)
            if delivered:
                await repo.mark_sent(message_id, utcnow())
            else:
                await repo.mark_failed(message_id, error or "unknown error")
            await session.commit()

        if delivered:
            logger.info("outbox_message_sent", outbox_id=message_id)
        else:
            logger.warning("outbox_message_failed", outbox_id=message_id, error=error)
