"""
Conversation processor.

Handles one inbound turn end to end: resolve (or open) the session, record
the turn, count down active contexts once, run the context rules and hand
back the updated state. Also owns the process-wide service wiring.
"""

import threading
from typing import Optional

from analytics import AnalyticsAggregator, EventBuffer
from cache import InMemorySessionCache
from config import AppConfig, get_config
from connection import get_document_store
from context_service import ContextService
from locks import SessionLockRegistry
from logger import get_logger
from models import TurnRequest, TurnResponse
from rule_engine import RuleEngine
from session_manager import SessionManager
from storage import DocumentStore
from turn_recorder import TurnRecorder

logger = get_logger(__name__)


class ConversationProcessor:
    """Wires the session services together and processes turns."""

    def __init__(
        self,
        sessions: SessionManager,
        context: ContextService,
        turns: TurnRecorder,
        rules: RuleEngine,
        analytics: AnalyticsAggregator,
        events: Optional[EventBuffer] = None,
    ):
        self.sessions = sessions
        self.context = context
        self.turns = turns
        self.rules = rules
        self.analytics = analytics
        self.events = events

    @classmethod
    def build(cls, store: DocumentStore, config: Optional[AppConfig] = None, clock=None) -> "ConversationProcessor":
        """Assemble every service over one store."""
        config = config or AppConfig()
        extra = {"clock": clock} if clock is not None else {}

        sessions = SessionManager(
            store,
            cache=InMemorySessionCache(
                ttl_seconds=config.session_cache_seconds,
                capacity=config.session_cache_capacity,
            ),
            locks=SessionLockRegistry(),
            ttl_minutes=config.session_ttl_minutes,
            retention_days=config.session_retention_days,
            **extra
        )
        rules = RuleEngine(store, **extra)
        analytics = AnalyticsAggregator(store, **extra)
        events = EventBuffer(analytics, batch_size=config.analytics_batch_size)
        turns = TurnRecorder(sessions, event_sink=events.add, history_limit=config.history_limit)
        context = ContextService(
            sessions,
            rule_engine=rules,
            default_lifespan=config.default_context_lifespan,
        )
        return cls(sessions, context, turns, rules, analytics, events)

    def process_turn(self, request: TurnRequest) -> TurnResponse:
        """
        Record one conversational turn.

        A new session is opened when none is given, the given one does not
        exist, or it has already reached a terminal state.

        Raises:
            SessionStoreError: If the session or turn could not be persisted
        """
        session = self.sessions.get_session(request.session_id) if request.session_id else None
        created = False
        if session is None or session.is_terminal:
            if session is not None:
                logger.info(
                    "Opening new session, previous one is closed",
                    session_id=session.id,
                    status=session.status.value
                )
            session = self.sessions.create_session(
                user_id=request.user_id or (session.user_id if session else None),
                metadata=request.metadata,
            )
            created = True

        with self.sessions.locks.lock(session.id):
            turn = self.turns.add_turn(
                session.id,
                user_input=request.text,
                bot_response=request.bot_response,
                intent=request.detected_intent,
                confidence=request.confidence,
                parameters=request.parameters,
                response_time=request.response_time_ms,
                fulfillment_used=request.fulfillment_used,
            )
            self.context.decrement_context_lifespans(session.id)

            current = self.sessions.require_session(session.id)
            evaluation = self.context.evaluate_rules(current, {
                "type": "turn_processed",
                "intent": turn.intent,
                "confidence": turn.confidence,
                "parameters": turn.parameters,
                "text": turn.user_input,
            })
            current = self.sessions.require_session(session.id)

        logger.info(
            "Turn processed",
            session_id=current.id,
            intent=turn.intent,
            created_session=created,
            rules_fired=len(evaluation.fired)
        )
        return TurnResponse(
            session=current,
            turn=turn,
            created_session=created,
            triggered_intents=evaluation.triggered_intents,
            webhook_calls=evaluation.webhook_calls,
            statistics=self.turns.get_statistics(current.id),
        )

    def flush_analytics(self) -> int:
        return self.events.flush() if self.events is not None else 0


_processor: Optional[ConversationProcessor] = None
_processor_lock = threading.Lock()


def get_processor() -> ConversationProcessor:
    """Get or create the process-wide processor from configuration."""
    global _processor
    with _processor_lock:
        if _processor is None:
            config = get_config()
            _processor = ConversationProcessor.build(get_document_store(config), config)
            _processor.rules.load_rules()
        return _processor


def set_processor(processor: Optional[ConversationProcessor]) -> None:
    """Install a prebuilt processor (used by tests)."""
    global _processor
    with _processor_lock:
        _processor = processor


def reset_processor() -> None:
    """Flush pending analytics and drop the process-wide processor."""
    global _processor
    with _processor_lock:
        if _processor is not None:
            _processor.flush_analytics()
        _processor = None
