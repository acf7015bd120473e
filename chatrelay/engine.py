"""
Reconciliation engine for one conversation.

Composes the message ledger and the reply queue over a single partition
and applies the dead-letter policy. The slow inference call happens
outside the engine, between a push_msg that returns "new" and the
push_reply/reply_msg that follow it.

State machine per message::

    new -> pending -> replied
                   -> dead

"dead" is never stored. Each redelivery recomputes it from knock_count
and the time elapsed since the first sighting.
"""

import logging
from dataclasses import dataclass, field
from typing import Any, Callable, List, Literal

from sqlalchemy import desc, select

from chatrelay import ledger, reply_queue
from chatrelay.errors import ConfigError
from chatrelay.models import BackendReply, ClientMessage
from chatrelay.reply_queue import ReplyPeek
from chatrelay.storage import ConversationPartition
from chatrelay.utils import unix_now

logger = logging.getLogger(__name__)

DEFAULT_DEAD_KNOCK_THRESHOLD = 2
DEFAULT_DEAD_TIMEOUT_SECONDS = 3

PushState = Literal["new", "pending", "replied", "dead"]


@dataclass(frozen=True)
class PushResult:
    state: PushState
    knock_count: int = 0
    elapsed: int = 0


@dataclass(frozen=True)
class ContextEntry:
    user: dict
    agent: List[dict] = field(default_factory=list)


def validate_policy(dead_knock_threshold: int, dead_timeout_seconds: int) -> None:
    if dead_knock_threshold <= 0:
        raise ConfigError(f"dead_knock_threshold must be positive, got {dead_knock_threshold}")
    if dead_timeout_seconds <= 0:
        raise ConfigError(f"dead_timeout_seconds must be positive, got {dead_timeout_seconds}")


class ReconciliationEngine:
    """Dedupe, retry policy and reply buffering for one partition."""

    def __init__(
        self,
        partition: ConversationPartition,
        dead_knock_threshold: int = DEFAULT_DEAD_KNOCK_THRESHOLD,
        dead_timeout_seconds: int = DEFAULT_DEAD_TIMEOUT_SECONDS,
        clock: Callable[[], int] = unix_now,
    ):
        validate_policy(dead_knock_threshold, dead_timeout_seconds)
        self.partition = partition
        self.dead_knock_threshold = dead_knock_threshold
        self.dead_timeout_seconds = dead_timeout_seconds
        self.clock = clock

    def is_dead(self, knock_count: int, created_at: int, now: int) -> bool:
        # Both conditions: bursty retries alone, or one slow retry alone, are not abandonment
        return (
            knock_count >= self.dead_knock_threshold
            and now >= created_at + self.dead_timeout_seconds
        )

    def push_msg(self, message_id: str, created_at: int, msg_type: str, payload: Any) -> PushResult:
        with self.partition.transaction() as db:
            entry = ledger.push_msg(db, message_id, created_at, msg_type, payload)

        if entry.state == "new":
            return PushResult(state="new")

        now = self.clock()
        elapsed = now - entry.created_at
        if entry.state == "replied":
            return PushResult(state="replied", knock_count=entry.knock_count, elapsed=elapsed)

        if self.is_dead(entry.knock_count, entry.created_at, now):
            logger.warning(
                f"Message {message_id} is dead: knock_count={entry.knock_count}, elapsed={elapsed}s"
            )
            return PushResult(state="dead", knock_count=entry.knock_count, elapsed=elapsed)
        return PushResult(state="pending", knock_count=entry.knock_count, elapsed=elapsed)

    def reply_msg(self, message_id: str) -> int:
        with self.partition.transaction() as db:
            return ledger.reply_msg(db, message_id)

    def push_reply(self, related_id: str, reply_type: str, payload: Any, mark_replied: bool = False) -> int:
        """
        Buffer a reply. With ``mark_replied`` the message is also marked
        replied in the same transaction, so no redelivery can observe the
        reply as "ready" in between.
        """
        with self.partition.transaction() as db:
            sequence = reply_queue.push_reply(db, related_id, reply_type, payload)
            if mark_replied:
                ledger.reply_msg(db, related_id)
            return sequence

    def peek_reply(self, message_id: str) -> ReplyPeek:
        with self.partition.transaction() as db:
            return reply_queue.peek_reply(db, message_id)

    def get_context(self, n: int) -> List[ContextEntry]:
        """
        The ``n`` most recent messages, newest first, each with all its
        replies in sequence order. Never touches knock_count or replied.
        """
        if n <= 0:
            return []

        with self.partition.transaction() as db:
            messages = db.execute(
                select(ClientMessage)
                .order_by(desc(ClientMessage.created_at), desc(ClientMessage.id))
                .limit(n)
            ).scalars().all()
            if not messages:
                return []

            ids = [m.id for m in messages]
            replies = db.execute(
                select(BackendReply)
                .where(BackendReply.related_id.in_(ids))
                .order_by(BackendReply.related_id, BackendReply.sequence.asc())
            ).scalars().all()

            by_message = {message_id: [] for message_id in ids}
            for reply in replies:
                by_message[reply.related_id].append({"type": reply.type, "payload": reply.payload})

            return [
                ContextEntry(
                    user={"type": m.type, "payload": m.payload},
                    agent=by_message[m.id],
                )
                for m in messages
            ]

    def get_message(self, message_id: str):
        """Stored state of one message as a plain dict, or None."""
        with self.partition.transaction() as db:
            row = ledger.get_message(db, message_id)
            if row is None:
                return None
            return {
                "id": row.id,
                "created_at": row.created_at,
                "type": row.type,
                "payload": row.payload,
                "replied": bool(row.replied),
                "knock_count": row.knock_count,
            }

    def get_stats(self) -> dict:
        with self.partition.transaction() as db:
            return ledger.get_stats(db)

    def list_replies(self, message_id: str) -> List[reply_queue.BufferedReply]:
        with self.partition.transaction() as db:
            return reply_queue.list_replies(db, message_id)
