"""
Dispatcher: drives the reconciliation engine for each inbound delivery.

Decides per delivery whether to call the inference backend, wait for a
reply an earlier delivery is still computing, answer from the buffered
replies, or give up with the fallback text.
"""

import asyncio
import logging
import threading
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Awaitable, Callable, Dict, List, Optional, Tuple

from chatrelay.engine import PushResult, ReconciliationEngine, validate_policy
from chatrelay.errors import InferenceError, StorageError
from chatrelay.inference import InferenceBackend
from chatrelay.storage import PartitionRegistry
from chatrelay.utils import unix_now

logger = logging.getLogger(__name__)


class Outcome(str, Enum):
    ANSWER = "answer"      # reply text for the channel
    ACK = "ack"            # already answered earlier, nothing to send
    WAIT = "wait"          # still computing, let the channel redeliver
    FALLBACK = "fallback"  # dead letter or backend failure
    ERROR = "error"        # state unknown, storage failed


@dataclass(frozen=True)
class CanonicalMessage:
    """Decoded inbound message, as the channel adapter hands it over."""
    message_id: str
    remote_id: str
    local_id: str
    created_at: int
    type: str
    payload: dict


@dataclass(frozen=True)
class DispatchResult:
    outcome: Outcome
    state: Optional[str] = None
    knock_count: int = 0
    replies: List[str] = field(default_factory=list)


def reply_text(payload: dict) -> str:
    return (payload or {}).get("content") or ""


class Dispatcher:
    def __init__(
        self,
        registry: PartitionRegistry,
        backend: InferenceBackend,
        dead_knock_threshold: int = 2,
        dead_timeout_seconds: int = 3,
        channel_timeout_seconds: float = 4.5,
        poll_interval_seconds: float = 0.2,
        context_window: int = 6,
        fallback_reply: str = "",
        clock: Callable[[], int] = unix_now,
        monotonic: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        validate_policy(dead_knock_threshold, dead_timeout_seconds)
        self.registry = registry
        self.backend = backend
        self.dead_knock_threshold = dead_knock_threshold
        self.dead_timeout_seconds = dead_timeout_seconds
        self.channel_timeout_seconds = channel_timeout_seconds
        self.poll_interval_seconds = poll_interval_seconds
        self.context_window = context_window
        self.fallback_reply = fallback_reply
        self.clock = clock
        self.monotonic = monotonic
        self.sleep = sleep
        self._engines: Dict[Tuple[str, str], ReconciliationEngine] = {}
        self._lock = threading.Lock()

    def engine_for(self, remote_id: str, local_id: str) -> ReconciliationEngine:
        key = (remote_id, local_id)
        with self._lock:
            engine = self._engines.get(key)
            if engine is None:
                engine = ReconciliationEngine(
                    self.registry.get(remote_id, local_id),
                    dead_knock_threshold=self.dead_knock_threshold,
                    dead_timeout_seconds=self.dead_timeout_seconds,
                    clock=self.clock,
                )
                self._engines[key] = engine
            return engine

    async def dispatch(self, message: CanonicalMessage) -> DispatchResult:
        deadline = self.monotonic() + self.channel_timeout_seconds

        try:
            engine = self.engine_for(message.remote_id, message.local_id)
            pushed = engine.push_msg(message.message_id, message.created_at, message.type, message.payload)
        except StorageError as e:
            logger.error(f"push_msg failed for {message.message_id}, leaving it to redelivery: {e}")
            return DispatchResult(outcome=Outcome.ERROR)

        logger.info(
            f"Message {message.message_id}: state={pushed.state}, "
            f"knock_count={pushed.knock_count}, elapsed={pushed.elapsed}s"
        )

        if pushed.state == "new":
            return await self._first_sighting(engine, message, deadline)
        if pushed.state == "replied":
            return DispatchResult(outcome=Outcome.ACK, state="replied", knock_count=pushed.knock_count)
        if pushed.state == "dead":
            return self._dead_letter(engine, message, pushed)
        return await self._await_reply(engine, message, pushed, deadline)

    def _dead_letter(
        self,
        engine: ReconciliationEngine,
        message: CanonicalMessage,
        pushed: PushResult,
    ) -> DispatchResult:
        """
        Serve a reply that finished after the previous delivery gave up;
        only fall back when nothing was ever buffered.
        """
        try:
            peek = engine.peek_reply(message.message_id)
        except StorageError as e:
            logger.error(f"peek_reply failed for dead letter {message.message_id}: {e}")
            peek = None

        if peek is not None and peek.status == "ready":
            try:
                engine.reply_msg(message.message_id)
            except StorageError as e:
                logger.error(f"reply_msg failed for {message.message_id}: {e}")
            return DispatchResult(
                outcome=Outcome.ANSWER,
                state="dead",
                knock_count=pushed.knock_count,
                replies=[reply_text(m.payload) for m in peek.messages],
            )
        if peek is not None and peek.status == "replied":
            return DispatchResult(outcome=Outcome.ACK, state="replied", knock_count=pushed.knock_count)

        # Row stays unreplied so the dead letter can be inspected later
        return DispatchResult(
            outcome=Outcome.FALLBACK,
            state="dead",
            knock_count=pushed.knock_count,
            replies=[self.fallback_reply],
        )

    async def _first_sighting(
        self,
        engine: ReconciliationEngine,
        message: CanonicalMessage,
        deadline: float,
    ) -> DispatchResult:
        try:
            context = list(reversed(engine.get_context(self.context_window)))
        except StorageError as e:
            logger.error(f"Context read failed for {message.message_id}, continuing without history: {e}")
            context = []

        try:
            text = await self.backend.complete(context)
        except InferenceError as e:
            logger.error(f"Inference failed for {message.message_id}: {e}")
            return DispatchResult(outcome=Outcome.FALLBACK, state="new", replies=[self.fallback_reply])

        on_time = self.monotonic() <= deadline
        try:
            engine.push_reply(message.message_id, "text", {"content": text}, mark_replied=on_time)
            if not on_time:
                logger.info(f"Reply for {message.message_id} finished late, buffered for redelivery")
        except StorageError as e:
            logger.error(f"Could not store reply for {message.message_id}: {e}")

        return DispatchResult(outcome=Outcome.ANSWER, state="new", replies=[text])

    async def _await_reply(
        self,
        engine: ReconciliationEngine,
        message: CanonicalMessage,
        pushed: PushResult,
        deadline: float,
    ) -> DispatchResult:
        while True:
            try:
                peek = engine.peek_reply(message.message_id)
            except StorageError as e:
                logger.error(f"peek_reply failed for {message.message_id}: {e}")
                return DispatchResult(outcome=Outcome.ERROR, state="pending", knock_count=pushed.knock_count)

            if peek.status == "ready":
                try:
                    engine.reply_msg(message.message_id)
                except StorageError as e:
                    logger.error(f"reply_msg failed for {message.message_id}: {e}")
                return DispatchResult(
                    outcome=Outcome.ANSWER,
                    state="pending",
                    knock_count=pushed.knock_count,
                    replies=[reply_text(m.payload) for m in peek.messages],
                )
            if peek.status == "replied":
                return DispatchResult(outcome=Outcome.ACK, state="replied", knock_count=pushed.knock_count)

            if self.monotonic() + self.poll_interval_seconds > deadline:
                return DispatchResult(outcome=Outcome.WAIT, state="pending", knock_count=pushed.knock_count)
            await self.sleep(self.poll_interval_seconds)
