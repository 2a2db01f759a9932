"""
Durable event inbox.

Every aggregate mutation in the engine is the side effect of processing an
entry from this store. The lifecycle of an entry:

    new → processing → done
                     → failed → processing (retry, after backoff)
                     → dead   (terminal, needs an operator)

Claims are exclusive: a compare-and-set UPDATE (``WHERE status IN ('new',
'failed')``) decides which worker wins each entry, and on PostgreSQL the
candidate SELECT also takes ``FOR UPDATE SKIP LOCKED`` so concurrent workers
skip each other's rows instead of blocking. Payloads are decoded into their
typed variants here, once; undecodable entries go straight to dead.

A real broker with claim/ack/nack semantics could replace the table without
changing callers.
"""

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Optional

from pydantic import BaseModel, ValidationError
from sqlalchemy import and_, case, or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from settlement_engine.audit.logger import log_event
from settlement_engine.config import settings
from settlement_engine.engine.errors import ConflictError, NotFoundError
from settlement_engine.engine.retry import next_attempt_at
from settlement_engine.models.enums import EventStatus
from settlement_engine.models.events import decode_payload, encode_payload
from settlement_engine.models.tables import EventEntry

logger = logging.getLogger("settlement_engine.event_store")

MAX_ERROR_LENGTH = 2000


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class ClaimedEvent:
    """An event handed exclusively to one worker."""

    id: int
    kind: str
    payload: BaseModel
    attempt_count: int
    dedup_key: Optional[str] = None


class EventStore:
    def __init__(
        self,
        session_factory: async_sessionmaker,
        max_attempts: Optional[int] = None,
        base_delay: Optional[float] = None,
        max_delay: Optional[float] = None,
    ):
        self._sessions = session_factory
        self.max_attempts = max_attempts if max_attempts is not None else settings.max_event_attempts
        self.base_delay = base_delay if base_delay is not None else settings.retry_base_delay_seconds
        self.max_delay = max_delay if max_delay is not None else settings.retry_max_delay_seconds

    # -- producing -----------------------------------------------------------

    async def append(
        self,
        payload: BaseModel,
        dedup_key: Optional[str] = None,
        scheduled_on: Optional[datetime] = None,
        session: Optional[AsyncSession] = None,
    ) -> int:
        """
        Persist a new event in status ``new`` and return its id.

        Never processes the event. With a ``dedup_key`` that is already
        stored, returns the existing entry's id instead of adding a second
        one. Passing ``session`` enlists the insert in the caller's
        transaction (outbox style); otherwise the entry is committed here.
        """
        if session is None:
            async with self._sessions() as own_session:
                event_id = await self._append(own_session, payload, dedup_key, scheduled_on)
                await own_session.commit()
                return event_id
        return await self._append(session, payload, dedup_key, scheduled_on)

    async def _append(
        self,
        session: AsyncSession,
        payload: BaseModel,
        dedup_key: Optional[str],
        scheduled_on: Optional[datetime],
    ) -> int:
        if dedup_key is not None:
            existing = await session.execute(
                select(EventEntry.id).where(EventEntry.dedup_key == dedup_key)
            )
            existing_id = existing.scalar_one_or_none()
            if existing_id is not None:
                logger.info("Duplicate event %s ignored (entry #%d)", dedup_key, existing_id)
                return existing_id

        now = _utcnow()
        entry = EventEntry(
            kind=payload.kind,
            payload=encode_payload(payload),
            dedup_key=dedup_key,
            status=EventStatus.NEW.value,
            attempt_count=0,
            scheduled_on=scheduled_on or now,
            created_at=now,
            status_updated_at=now,
        )
        session.add(entry)
        await session.flush()
        logger.debug("Appended event #%d %s", entry.id, entry.kind)
        return entry.id

    # -- consuming -----------------------------------------------------------

    async def claim_batch(self, limit: int) -> list[ClaimedEvent]:
        """
        Claim up to ``limit`` due events for this worker.

        Eligible: ``new``, or ``failed`` below the attempt limit, with
        ``scheduled_on`` in the past. Returned events are ``processing``
        and belong to the caller until it calls complete() or fail().
        """
        now = _utcnow()
        claimable = [EventStatus.NEW.value, EventStatus.FAILED.value]

        async with self._sessions() as session:
            result = await session.execute(
                select(EventEntry.id)
                .where(
                    or_(
                        EventEntry.status == EventStatus.NEW.value,
                        and_(
                            EventEntry.status == EventStatus.FAILED.value,
                            EventEntry.attempt_count < self.max_attempts,
                        ),
                    ),
                    EventEntry.scheduled_on <= now,
                )
                .order_by(EventEntry.id)
                .limit(limit)
                .with_for_update(skip_locked=True)
            )
            candidate_ids = list(result.scalars().all())

            claimed_ids = []
            for event_id in candidate_ids:
                won = await session.execute(
                    update(EventEntry)
                    .where(EventEntry.id == event_id, EventEntry.status.in_(claimable))
                    .values(status=EventStatus.PROCESSING.value, status_updated_at=now)
                )
                if won.rowcount == 1:
                    claimed_ids.append(event_id)
            await session.commit()

            if not claimed_ids:
                return []

            rows = await session.execute(
                select(EventEntry)
                .where(EventEntry.id.in_(claimed_ids))
                .order_by(EventEntry.id)
                .execution_options(populate_existing=True)
            )
            entries = list(rows.scalars().all())

        claimed: list[ClaimedEvent] = []
        for entry in entries:
            try:
                payload = decode_payload(entry.payload)
            except ValidationError as e:
                logger.error("Event #%d (%s) has an invalid payload: %s", entry.id, entry.kind, e)
                await self.fail(entry.id, f"Invalid payload: {e}", permanent=True)
                continue
            claimed.append(ClaimedEvent(
                id=entry.id,
                kind=entry.kind,
                payload=payload,
                attempt_count=entry.attempt_count,
                dedup_key=entry.dedup_key,
            ))

        logger.debug("Claimed %d event(s)", len(claimed))
        return claimed

    async def complete(self, event_id: int) -> bool:
        """processing → done. Returns False if the entry was not processing."""
        async with self._sessions() as session:
            result = await session.execute(
                update(EventEntry)
                .where(EventEntry.id == event_id, EventEntry.status == EventStatus.PROCESSING.value)
                .values(status=EventStatus.DONE.value, status_updated_at=_utcnow(), last_error=None)
            )
            await session.commit()

        if result.rowcount != 1:
            logger.warning("Cannot complete event #%d: it is not being processed", event_id)
            return False
        return True

    async def fail(
        self,
        event_id: int,
        reason: str,
        permanent: bool = False,
        retry_after: Optional[float] = None,
    ) -> EventStatus:
        """
        Record a failed processing attempt.

        Increments the attempt count and stores the reason. The entry becomes
        ``dead`` when the failure is permanent or the attempt limit is
        reached, otherwise ``failed`` and re-claimable after the backoff
        delay. Safe to call for an entry that is no longer processing: the
        call is then a no-op returning the current status.
        """
        async with self._sessions() as session:
            status = await self._fail(session, event_id, reason, permanent, retry_after)
            await session.commit()
        return status

    async def _fail(
        self,
        session: AsyncSession,
        event_id: int,
        reason: str,
        permanent: bool,
        retry_after: Optional[float],
    ) -> EventStatus:
        result = await session.execute(
            select(EventEntry)
            .where(EventEntry.id == event_id)
            .with_for_update()
            .execution_options(populate_existing=True)
        )
        entry = result.scalars().first()
        if entry is None:
            raise NotFoundError(f"Event not found: {event_id}")

        if entry.status != EventStatus.PROCESSING.value:
            logger.warning(
                "Cannot fail event #%d: status is %s, not processing", event_id, entry.status
            )
            return EventStatus(entry.status)

        now = _utcnow()
        entry.attempt_count += 1
        entry.last_error = reason[:MAX_ERROR_LENGTH]
        entry.status_updated_at = now

        if permanent or entry.attempt_count >= self.max_attempts:
            entry.status = EventStatus.DEAD.value
            logger.error(
                "Event #%d (%s) is dead after %d attempt(s): %s",
                entry.id,
                entry.kind,
                entry.attempt_count,
                reason,
            )
            await log_event(session, "event_dead", event_id=entry.id, details={
                "kind": entry.kind,
                "attempts": entry.attempt_count,
                "permanent": permanent,
                "reason": reason[:500],
            })
        else:
            entry.status = EventStatus.FAILED.value
            entry.scheduled_on = next_attempt_at(
                entry.attempt_count,
                base_delay=self.base_delay,
                max_delay=self.max_delay,
                now=now,
                retry_after=retry_after,
            )
            logger.warning(
                "Event #%d (%s) failed attempt %d/%d, retry at %s: %s",
                entry.id,
                entry.kind,
                entry.attempt_count,
                self.max_attempts,
                entry.scheduled_on.isoformat(),
                reason,
            )
            await log_event(session, "event_failed", event_id=entry.id, details={
                "kind": entry.kind,
                "attempt": entry.attempt_count,
                "reason": reason[:500],
            })

        return EventStatus(entry.status)

    async def release(self, event_ids: list[int]) -> int:
        """
        Give back claimed entries that were never attempted.

        processing → new (or failed, if attempted before), due now, with the
        attempt count untouched. Returns how many entries were released.
        """
        if not event_ids:
            return 0
        now = _utcnow()
        async with self._sessions() as session:
            result = await session.execute(
                update(EventEntry)
                .where(EventEntry.id.in_(event_ids), EventEntry.status == EventStatus.PROCESSING.value)
                .values(
                    status=case(
                        (EventEntry.attempt_count > 0, EventStatus.FAILED.value),
                        else_=EventStatus.NEW.value,
                    ),
                    scheduled_on=now,
                    status_updated_at=now,
                )
            )
            await session.commit()
        logger.info("Released %d unprocessed event(s): %s", result.rowcount, event_ids)
        return result.rowcount

    async def reset_stuck(self, threshold_seconds: Optional[int] = None) -> list[int]:
        """
        Fail entries left in ``processing`` longer than the threshold.

        A worker that crashed mid-event never calls complete() or fail();
        its entries are counted as a failed attempt and retried (or dead).
        """
        threshold = threshold_seconds if threshold_seconds is not None else settings.stuck_event_threshold_seconds
        cutoff = _utcnow() - timedelta(seconds=threshold)

        async with self._sessions() as session:
            result = await session.execute(
                select(EventEntry.id).where(
                    EventEntry.status == EventStatus.PROCESSING.value,
                    EventEntry.status_updated_at < cutoff,
                )
            )
            stuck_ids = list(result.scalars().all())
            for event_id in stuck_ids:
                await self._fail(session, event_id, f"Stuck in processing for more than {threshold}s", False, None)
            await session.commit()

        if stuck_ids:
            logger.warning("Reset %d stuck event(s): %s", len(stuck_ids), stuck_ids)
        return stuck_ids

    # -- operator surface ----------------------------------------------------

    async def get(self, event_id: int) -> Optional[EventEntry]:
        async with self._sessions() as session:
            return await session.get(EventEntry, event_id)

    async def list_by_status(self, status: EventStatus, limit: int = 100) -> list[EventEntry]:
        async with self._sessions() as session:
            result = await session.execute(
                select(EventEntry)
                .where(EventEntry.status == status.value)
                .order_by(EventEntry.id)
                .limit(limit)
            )
            return list(result.scalars().all())

    async def list_dead(self, limit: int = 100) -> list[EventEntry]:
        return await self.list_by_status(EventStatus.DEAD, limit=limit)

    async def requeue_dead(self, event_id: int) -> EventEntry:
        """Give a dead event a fresh retry budget after an operator fixed the cause."""
        async with self._sessions() as session:
            entry = await session.get(EventEntry, event_id, with_for_update=True)
            if entry is None:
                raise NotFoundError(f"Event not found: {event_id}")
            if entry.status != EventStatus.DEAD.value:
                raise ConflictError(f"Event {event_id} is {entry.status}, only dead events can be requeued")

            now = _utcnow()
            entry.status = EventStatus.NEW.value
            entry.attempt_count = 0
            entry.scheduled_on = now
            entry.status_updated_at = now
            await log_event(session, "event_requeued", event_id=entry.id, details={
                "kind": entry.kind,
                "last_error": (entry.last_error or "")[:500],
            })
            await session.commit()
            logger.info("Requeued dead event #%d (%s)", entry.id, entry.kind)
            return entry
