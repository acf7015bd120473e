"""
Reply queue: backend replies buffered per inbound message, in order.

Like the ledger, these functions run inside a partition transaction.
"""

import logging
from dataclasses import dataclass, field
from typing import Any, List, Literal

from sqlalchemy import func, insert, literal, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from chatrelay.errors import MessageReferenceError
from chatrelay.models import BackendReply, ClientMessage

logger = logging.getLogger(__name__)

BASE_SEQUENCE = 0

PeekStatus = Literal["replied", "ready", "pending"]


@dataclass(frozen=True)
class BufferedReply:
    sequence: int
    type: str
    payload: Any


@dataclass(frozen=True)
class ReplyPeek:
    status: PeekStatus
    messages: List[BufferedReply] = field(default_factory=list)


def push_reply(db: Session, related_id: str, reply_type: str, payload: Any) -> int:
    """
    Append a reply for ``related_id`` and return its sequence.

    The next sequence (max + 1, or BASE_SEQUENCE for the first reply) is
    computed by the same INSERT ... SELECT statement that writes the row.

    Raises:
        MessageReferenceError: no message with this id exists in the partition
    """
    replies = BackendReply.__table__
    next_sequence = (
        select(func.coalesce(func.max(replies.c.sequence) + 1, BASE_SEQUENCE))
        .where(replies.c.related_id == related_id)
        .scalar_subquery()
    )
    stmt = (
        insert(replies)
        .from_select(
            ["related_id", "sequence", "type", "payload"],
            select(
                literal(related_id),
                next_sequence,
                literal(reply_type),
                literal(payload, replies.c.payload.type),
            ),
        )
        .returning(replies.c.sequence)
    )
    try:
        sequence = db.execute(stmt).scalar_one()
    except IntegrityError as e:
        logger.warning(f"Reply pushed for unknown message: {related_id}")
        raise MessageReferenceError(related_id) from e

    logger.info(f"Reply buffered: related_id={related_id}, sequence={sequence}")
    return sequence


def list_replies(db: Session, related_id: str) -> List[BufferedReply]:
    rows = db.execute(
        select(BackendReply)
        .where(BackendReply.related_id == related_id)
        .order_by(BackendReply.sequence.asc())
    ).scalars().all()
    return [BufferedReply(sequence=r.sequence, type=r.type, payload=r.payload) for r in rows]


def peek_reply(db: Session, message_id: str) -> ReplyPeek:
    """
    Report what a redelivery of ``message_id`` can be answered with.

    Returns:
        ReplyPeek with status
        - "replied": the message is marked replied (terminal)
        - "ready": not marked replied, buffered replies in sequence order
        - "pending": nothing buffered yet (or the id is unknown)
    """
    replied = db.execute(
        select(ClientMessage.replied).where(ClientMessage.id == message_id)
    ).scalar()
    if replied:
        return ReplyPeek(status="replied")

    messages = list_replies(db, message_id)
    if messages:
        return ReplyPeek(status="ready", messages=messages)
    return ReplyPeek(status="pending")
