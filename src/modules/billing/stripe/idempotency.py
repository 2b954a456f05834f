"""At-most-once gate for Stripe webhook deliveries."""

from dataclasses import dataclass
from datetime import datetime, timedelta, timezone

from sqlalchemy import insert, select, update
from sqlalchemy.exc import IntegrityError

from src.core.base import BaseService
from src.database.models import ProcessedEvent, ProcessedEventStatus
from src.utils.settings.stripe import StripeSettings


@dataclass(frozen=True)
class ClaimResult:
    already_processed: bool
    reclaimed: bool = False


class EventIdempotencyGate(BaseService):
    """Claims event ids through the primary key on ``processed_events``.

    The first delivery inserts a ``claimed`` row; any concurrent or later
    delivery of the same id hits the unique constraint and is reported as
    already processed. A claim left unfinished longer than the configured
    timeout may be taken over by exactly one later delivery.
    """

    def __init__(self, db, claim_timeout_seconds: int | None = None):
        super().__init__(db)
        if claim_timeout_seconds is None:
            claim_timeout_seconds = StripeSettings().STRIPE_EVENT_CLAIM_TIMEOUT_SECONDS
        self.claim_timeout_seconds = claim_timeout_seconds

    async def claim(self, event_id: str, event_type: str | None = None) -> ClaimResult:
        try:
            await self.db.execute(
                insert(ProcessedEvent).values(
                    event_id=event_id,
                    event_type=event_type,
                    status=ProcessedEventStatus.CLAIMED.value,
                    claimed_at=datetime.now(timezone.utc),
                )
            )
            await self.db.commit()
            return ClaimResult(already_processed=False)
        except IntegrityError:
            await self.db.rollback()

        if await self._take_over_stale_claim(event_id):
            self.logger.warning("Reclaimed stale event claim", event_id=event_id)
            return ClaimResult(already_processed=False, reclaimed=True)

        self.logger.info("Duplicate event delivery skipped", event_id=event_id)
        return ClaimResult(already_processed=True)

    async def mark_completed(self, event_id: str) -> None:
        await self._finish(event_id, ProcessedEventStatus.COMPLETED)

    async def mark_failed(self, event_id: str, reason: str) -> None:
        await self._finish(event_id, ProcessedEventStatus.FAILED, reason[:2000])

    async def get(self, event_id: str) -> ProcessedEvent | None:
        result = await self.db.execute(
            select(ProcessedEvent).where(ProcessedEvent.event_id == event_id)
        )
        return result.scalar_one_or_none()

    async def _take_over_stale_claim(self, event_id: str) -> bool:
        if self.claim_timeout_seconds <= 0:
            return False

        now = datetime.now(timezone.utc)
        cutoff = now - timedelta(seconds=self.claim_timeout_seconds)
        result = await self.db.execute(
            update(ProcessedEvent)
            .where(
                ProcessedEvent.event_id == event_id,
                ProcessedEvent.status == ProcessedEventStatus.CLAIMED.value,
                ProcessedEvent.claimed_at < cutoff,
            )
            .values(claimed_at=now)
            .execution_options(synchronize_session=False)
        )
        await self.db.commit()
        return result.rowcount == 1

    async def _finish(
        self,
        event_id: str,
        status: ProcessedEventStatus,
        error_message: str | None = None,
    ) -> None:
        await self.db.execute(
            update(ProcessedEvent)
            .where(ProcessedEvent.event_id == event_id)
            .values(
                status=status.value,
                error_message=error_message,
                completed_at=datetime.now(timezone.utc),
            )
            .execution_options(synchronize_session=False)
        )
        await self.db.commit()
