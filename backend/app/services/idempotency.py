"""Idempotency guard for inbound billing facts and provider events."""
import logging
from datetime import datetime
from uuid import uuid4

import redis.asyncio as redis
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.ext.asyncio import AsyncSession

from app.config import settings
from app.database import dialect_name
from app.models.processed_payment import ProcessedPayment

logger = logging.getLogger(__name__)

# Redis client for distributed locking and the event-id cache
redis_client = None


async def get_redis_client():
    """Get or create Redis client."""
    global redis_client
    if redis_client is None:
        redis_client = redis.from_url(settings.REDIS_URL, decode_responses=True)
    return redis_client


def _insert_for(db: AsyncSession):
    if dialect_name(db) == "postgresql":
        return pg_insert
    return sqlite_insert


async def record_if_new(db: AsyncSession, subscription_ref: str, external_payment_id: str) -> bool:
    """
    Record that a (subscription, payment) pair has been applied.

    A single INSERT ... ON CONFLICT DO NOTHING RETURNING against the unique
    key. Runs in the caller's transaction, so rolling the caller back also
    forgets the record.

    Returns:
        True if this call created the record, False if it already existed.
    """
    insert = _insert_for(db)
    stmt = (
        insert(ProcessedPayment)
        .values(
            uuid=str(uuid4()),
            billing_subject_ref=subscription_ref,
            external_payment_id=external_payment_id,
            recorded_at=datetime.utcnow(),
        )
        .on_conflict_do_nothing(index_elements=["billing_subject_ref", "external_payment_id"])
        .returning(ProcessedPayment.uuid)
    )
    result = await db.execute(stmt)
    created = result.scalar_one_or_none() is not None
    if not created:
        logger.info(f"Billing fact {subscription_ref}/{external_payment_id} already processed")
    return created


def _event_key(event_id: str) -> str:
    return f"ledger:event:{event_id}"


async def seen_recently(event_id: str | None) -> bool:
    """
    Check the short-lived event-id cache.

    Only a shortcut: Redis being unavailable means "not seen" and the
    durable record decides.
    """
    if not event_id:
        return False
    try:
        client = await get_redis_client()
        return bool(await client.exists(_event_key(event_id)))
    except Exception as e:
        logger.warning(f"Event cache lookup failed for {event_id}: {e}")
        return False


async def remember_event(event_id: str | None) -> None:
    """Mark an event id as handled for EVENT_CACHE_TTL_SECONDS."""
    if not event_id:
        return
    try:
        client = await get_redis_client()
        await client.set(_event_key(event_id), "1", ex=settings.EVENT_CACHE_TTL_SECONDS)
    except Exception as e:
        logger.warning(f"Failed to cache event {event_id}: {e}")
