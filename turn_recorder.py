"""
Turn recorder.

Appends immutable conversation turns and keeps the session's running
analytics in step with them. The turn insert, the analytics recompute and
the message counter increment are committed to the store as one batch while
the session lock is held.
"""

import uuid
from collections import Counter
from typing import Any, Callable, Dict, List, Optional

from errors import SessionStoreError
from logger import get_logger
from models import (
    ConversationEvent, ConversationTurn, IntentCount, SessionStatistics,
    round_half_up
)
from models.document import to_document_value
from session_manager import SessionManager
from storage import SESSIONS, TURNS, FieldFilter, StoreError, Write

logger = get_logger(__name__)

TOP_INTENTS_LIMIT = 5


def running_average(old_avg: float, old_count: int, value: float) -> int:
    """Running mean rounded half up to an integer."""
    if old_count <= 0:
        return round_half_up(value)
    return round_half_up((old_avg * old_count + value) / (old_count + 1))


class TurnRecorder:
    """Records turns and derives per-session statistics from them."""

    def __init__(
        self,
        session_manager: SessionManager,
        event_sink: Optional[Callable[[ConversationEvent], None]] = None,
        history_limit: int = 50,
    ):
        self.sessions = session_manager
        self.store = session_manager.store
        self.event_sink = event_sink
        self.history_limit = history_limit
        session_manager.attach_turn_recorder(self)

    def add_turn(
        self,
        session_id: str,
        user_input: str,
        bot_response: str,
        intent: str,
        confidence: float,
        parameters: Optional[Dict[str, Any]] = None,
        response_time: int = 0,
        fulfillment_used: bool = False,
    ) -> ConversationTurn:
        """
        Append a turn and recompute the session analytics.

        Raises:
            SessionNotFoundError: If the session does not exist
            SessionStoreError: If the batch could not be committed
        """
        with self.sessions.locks.lock(session_id):
            session = self.sessions.require_session(session_id)
            now = self.sessions.clock()

            turn = ConversationTurn(
                id=uuid.uuid4().hex,
                session_id=session_id,
                user_input=user_input,
                bot_response=bot_response,
                intent=intent,
                confidence=confidence,
                parameters=parameters or {},
                response_time=response_time,
                fulfillment_used=fulfillment_used,
                sequence=session.message_count + 1,
                created_at=now,
            )

            old = session.analytics
            analytics = old.model_copy(update={
                "total_messages": old.total_messages + 1,
                "intents_triggered": [*old.intents_triggered, intent],
                "avg_response_time": running_average(
                    old.avg_response_time, old.total_messages, response_time
                ),
            })

            try:
                self.store.commit([
                    Write.set(TURNS, turn.id, turn.to_document()),
                    Write.update(SESSIONS, session_id, {
                        "analytics": to_document_value(analytics),
                        "last_activity": to_document_value(now),
                    }),
                    Write.increment(SESSIONS, session_id, "message_count"),
                ])
            except StoreError as e:
                logger.error(f"Failed to record turn: {e}", session_id=session_id, intent=intent)
                raise SessionStoreError(f"Failed to record turn for session: {session_id}", session_id) from e

            updated = session.model_copy(update={
                "analytics": analytics,
                "last_activity": now,
                "message_count": session.message_count + 1,
            })
            self.sessions.cache_session(updated)

        logger.debug(
            "Turn recorded",
            session_id=session_id,
            turn_id=turn.id,
            intent=intent,
            message_count=updated.message_count
        )
        self._emit(updated, turn)
        return turn

    def get_history(self, session_id: str, limit: Optional[int] = None) -> List[ConversationTurn]:
        """Most recent turns, oldest first. Empty on failure."""
        limit = self.history_limit if limit is None else limit
        if limit <= 0:
            return []
        try:
            docs = self.store.query(
                TURNS,
                [FieldFilter("session_id", "==", session_id)],
                order_by="sequence",
                descending=True,
                limit=limit,
            )
        except StoreError as e:
            logger.error(f"Failed to read history: {e}", session_id=session_id)
            return []

        turns = [ConversationTurn.from_document(doc) for doc in docs]
        turns.reverse()
        return turns

    def get_statistics(self, session_id: str) -> SessionStatistics:
        """
        Derive statistics from the session and its full turn log.

        Raises:
            SessionNotFoundError: If the session does not exist
        """
        session = self.sessions.require_session(session_id)

        try:
            docs = self.store.query(TURNS, [FieldFilter("session_id", "==", session_id)])
        except StoreError as e:
            logger.error(f"Failed to read turns for statistics: {e}", session_id=session_id)
            docs = []
        turns = [ConversationTurn.from_document(doc) for doc in docs]

        end = session.end_time or self.sessions.clock()
        duration = max(0, round((end - session.start_time).total_seconds()))

        intents = Counter(t.intent for t in turns)
        avg_confidence = round_half_up(sum(t.confidence for t in turns) / len(turns), 2) if turns else 0.0
        avg_response_time = (
            round_half_up(sum(t.response_time for t in turns) / len(turns)) if turns else 0
        )

        return SessionStatistics(
            session_id=session_id,
            duration=duration,
            message_count=session.message_count,
            unique_intents_count=len(intents),
            avg_confidence=avg_confidence,
            avg_response_time=avg_response_time,
            status=session.status.value,
            escalated=session.analytics.escalated,
            top_intents=[
                IntentCount(intent=name, count=count)
                for name, count in intents.most_common(TOP_INTENTS_LIMIT)
            ],
        )

    def _emit(self, session, turn: ConversationTurn) -> None:
        if self.event_sink is None:
            return
        event = ConversationEvent(
            session_id=session.id,
            turn_id=turn.id,
            user_id=session.user_id,
            intent=turn.intent,
            confidence=turn.confidence,
            response_time=turn.response_time,
            fulfilled=turn.fulfillment_used,
            escalated=session.analytics.escalated,
            platform=session.metadata.platform,
            language=session.metadata.language,
            parameters=turn.parameters,
            timestamp=turn.created_at,
        )
        try:
            self.event_sink(event)
        except Exception as e:
            # Analytics is derived data; the turn is already committed
            logger.error(f"Failed to deliver conversation event: {e}", session_id=session.id)
