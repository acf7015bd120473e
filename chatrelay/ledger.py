"""
Message ledger: dedupe of inbound messages and their reply status.

All functions take an open partition session and expect to run inside
``ConversationPartition.transaction()``; they never commit themselves.
"""

import logging
from dataclasses import dataclass
from typing import Any, Literal, Optional

from sqlalchemy import func, select, update
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.orm import Session

from chatrelay.models import ClientMessage

logger = logging.getLogger(__name__)

LedgerState = Literal["new", "pending", "replied"]


@dataclass(frozen=True)
class LedgerEntry:
    state: LedgerState
    knock_count: int
    created_at: int


def push_msg(
    db: Session,
    message_id: str,
    created_at: int,
    msg_type: str,
    payload: Any,
) -> LedgerEntry:
    """
    Record a sighting of an inbound message.

    The insert is conditional: a redelivery carrying an id we already hold
    never overwrites created_at, type or payload of the first sighting.

    Returns:
        LedgerEntry with state
        - "new": first sighting, row created with knock_count 0
        - "replied": already answered, knock_count untouched
        - "pending": not answered yet, knock_count incremented by one
    """
    result = db.execute(
        sqlite_insert(ClientMessage.__table__)
        .values(
            id=message_id,
            created_at=created_at,
            type=msg_type,
            payload=payload,
            replied=False,
            knock_count=0,
        )
        .on_conflict_do_nothing(index_elements=["id"])
    )
    if result.rowcount == 1:
        logger.info(f"New message recorded: {message_id}")
        return LedgerEntry(state="new", knock_count=0, created_at=created_at)

    # Only unreplied rows are knocked
    db.execute(
        update(ClientMessage)
        .where(ClientMessage.id == message_id, ClientMessage.replied.is_(False))
        .values(knock_count=ClientMessage.knock_count + 1)
    )
    row = db.execute(
        select(ClientMessage.replied, ClientMessage.knock_count, ClientMessage.created_at)
        .where(ClientMessage.id == message_id)
    ).one()

    if row.replied:
        logger.info(f"Redelivery of replied message: {message_id}")
        return LedgerEntry(state="replied", knock_count=row.knock_count, created_at=row.created_at)

    logger.info(f"Redelivery of pending message: {message_id}, knock_count={row.knock_count}")
    return LedgerEntry(state="pending", knock_count=row.knock_count, created_at=row.created_at)


def reply_msg(db: Session, message_id: str) -> int:
    """
    Mark a message replied.

    Returns:
        1 if the row moved from unreplied to replied, 0 if the id is unknown
        or the message was already replied.
    """
    result = db.execute(
        update(ClientMessage)
        .where(ClientMessage.id == message_id, ClientMessage.replied.is_(False))
        .values(replied=True)
    )
    updated = 1 if result.rowcount else 0
    logger.info(f"reply_msg {message_id}: updated={updated}")
    return updated


def get_message(db: Session, message_id: str) -> Optional[ClientMessage]:
    return db.get(ClientMessage, message_id)


def get_stats(db: Session) -> dict:
    """
    Counters for one partition.

    Computes:
    - total_messages: all messages ever seen
    - replied_messages / unreplied_messages
    - total_knocks: sum of knock_count over all messages
    - first_message_at / last_message_at: created_at bounds (None if empty)
    """
    total_messages = db.execute(select(func.count(ClientMessage.id))).scalar() or 0
    replied_messages = db.execute(
        select(func.count(ClientMessage.id)).where(ClientMessage.replied.is_(True))
    ).scalar() or 0
    total_knocks = db.execute(select(func.sum(ClientMessage.knock_count))).scalar() or 0
    first_message_at = db.execute(select(func.min(ClientMessage.created_at))).scalar()
    last_message_at = db.execute(select(func.max(ClientMessage.created_at))).scalar()

    logger.debug(f"Stats computed: {total_messages} messages, {replied_messages} replied")

    return {
        "total_messages": total_messages,
        "replied_messages": replied_messages,
        "unreplied_messages": total_messages - replied_messages,
        "total_knocks": total_knocks,
        "first_message_at": first_message_at,
        "last_message_at": last_message_at,
    }
