"""
Analytics aggregation.

Committed turns arrive as ConversationEvents through an in-process
EventBuffer and are folded into per-date (``daily-YYYY-MM-DD``) and
per-intent (``intent-<name>``) running totals in the ``metrics`` collection.
These aggregates are derived and best-effort: redelivery of a batch that
failed half-way may count some events twice, and they are never used to
rebuild a session or turn.
"""

import threading
from collections import Counter, defaultdict
from datetime import date, datetime
from typing import Callable, Dict, Iterable, List

from logger import get_logger
from models import (
    ConversationEvent, DailyMetrics, IntentCount, IntentMetrics, Session,
    SessionMetrics, SessionStatus, round_half_up, utc_now
)
from models.document import to_document_value
from storage import METRICS, SESSIONS, DocumentStore, FieldFilter, StoreError

logger = get_logger(__name__)

HOURS_PER_DAY = 24
TOP_INTENTS_LIMIT = 10
TOP_PARAMETERS_LIMIT = 5


def daily_doc_id(day: str) -> str:
    return f"daily-{day}"


def intent_doc_id(intent: str) -> str:
    return f"intent-{intent}"


def parse_day(value: str) -> str:
    """
    Normalize a ``YYYY-MM-DD`` string.

    Raises:
        ValueError: If the value is not a calendar date
    """
    return date.fromisoformat(value).isoformat()


class AnalyticsAggregator:
    """Maintains and reads the derived daily and per-intent aggregates."""

    def __init__(self, store: DocumentStore, clock: Callable[[], datetime] = utc_now):
        self.store = store
        self.clock = clock
        self._lock = threading.Lock()

    def process_events(self, events: Iterable[ConversationEvent]) -> int:
        """
        Fold a batch of events into the aggregates.

        Returns:
            Number of events processed

        Raises:
            StoreError: If an aggregate could not be written
        """
        events = list(events)
        if not events:
            return 0

        by_day: Dict[str, List[ConversationEvent]] = defaultdict(list)
        by_intent: Dict[str, List[ConversationEvent]] = defaultdict(list)
        for event in events:
            by_day[event.timestamp.date().isoformat()].append(event)
            by_intent[event.intent].append(event)

        with self._lock:
            for day, day_events in by_day.items():
                self._fold_daily(day, day_events)
            for intent, intent_events in by_intent.items():
                self._fold_intent(intent, intent_events)

        logger.debug("Processed conversation events", events=len(events), days=len(by_day), intents=len(by_intent))
        return len(events)

    def _fold_daily(self, day: str, events: List[ConversationEvent]) -> None:
        doc_id = daily_doc_id(day)
        doc = self.store.get(METRICS, doc_id) or {
            "date": day,
            "total_interactions": 0,
            "confidence_sum": 0.0,
            "response_time_sum": 0,
            "intents": {},
            "hourly_distribution": [0] * HOURS_PER_DAY,
            "users": [],
            "sessions": [],
        }

        users = set(doc.get("users", []))
        sessions = set(doc.get("sessions", []))
        intents = Counter(doc.get("intents", {}))
        hourly = list(doc.get("hourly_distribution") or [0] * HOURS_PER_DAY)

        for event in events:
            doc["total_interactions"] += 1
            doc["confidence_sum"] += event.confidence
            doc["response_time_sum"] += event.response_time
            intents[event.intent] += 1
            hourly[event.timestamp.hour] += 1
            sessions.add(event.session_id)
            if event.user_id:
                users.add(event.user_id)

        doc.update({
            "intents": dict(intents),
            "hourly_distribution": hourly,
            "users": sorted(users),
            "sessions": sorted(sessions),
            "unique_users": len(users),
            "unique_sessions": len(sessions),
            "updated_at": to_document_value(self.clock()),
        })
        self.store.set(METRICS, doc_id, doc)

    def _fold_intent(self, intent: str, events: List[ConversationEvent]) -> None:
        doc_id = intent_doc_id(intent)
        doc = self.store.get(METRICS, doc_id) or {
            "intent": intent,
            "count": 0,
            "confidence_sum": 0.0,
            "response_time_sum": 0,
            "fulfilled_count": 0,
            "escalated_count": 0,
            "parameter_counts": {},
        }

        parameters = Counter(doc.get("parameter_counts", {}))
        for event in events:
            doc["count"] += 1
            doc["confidence_sum"] += event.confidence
            doc["response_time_sum"] += event.response_time
            doc["fulfilled_count"] += int(event.fulfilled)
            doc["escalated_count"] += int(event.escalated)
            parameters.update(event.parameters.keys())

        doc["parameter_counts"] = dict(parameters)
        doc["updated_at"] = to_document_value(self.clock())
        self.store.set(METRICS, doc_id, doc)

    # ------------------------------------------------------------------
    # Readers
    # ------------------------------------------------------------------

    def get_daily_metrics(self, day: str) -> DailyMetrics:
        """Aggregate for one date; zeros when nothing was recorded."""
        day = parse_day(day)
        try:
            doc = self.store.get(METRICS, daily_doc_id(day))
        except StoreError as e:
            logger.error(f"Failed to read daily metrics: {e}", date=day)
            doc = None
        if not doc:
            return DailyMetrics(date=day)

        total = doc.get("total_interactions", 0)
        intents = Counter(doc.get("intents", {}))
        return DailyMetrics(
            date=day,
            total_interactions=total,
            avg_confidence=_average(doc.get("confidence_sum", 0.0), total, 2),
            avg_response_time=int(_average(doc.get("response_time_sum", 0), total, 0)),
            unique_users=doc.get("unique_users", len(doc.get("users", []))),
            unique_sessions=doc.get("unique_sessions", len(doc.get("sessions", []))),
            hourly_distribution=doc.get("hourly_distribution") or [0] * HOURS_PER_DAY,
            top_intents=_top(intents, TOP_INTENTS_LIMIT),
        )

    def get_intent_metrics(self, intent: str) -> IntentMetrics:
        """Running aggregate for one intent; zeros when never seen."""
        try:
            doc = self.store.get(METRICS, intent_doc_id(intent))
        except StoreError as e:
            logger.error(f"Failed to read intent metrics: {e}", intent=intent)
            doc = None
        if not doc:
            return IntentMetrics(intent=intent)

        count = doc.get("count", 0)
        parameters = Counter(doc.get("parameter_counts", {}))
        return IntentMetrics(
            intent=intent,
            total_requests=count,
            avg_confidence=_average(doc.get("confidence_sum", 0.0), count, 2),
            avg_response_time=int(_average(doc.get("response_time_sum", 0), count, 0)),
            fulfillment_rate=_average(doc.get("fulfilled_count", 0), count, 4),
            escalation_rate=_average(doc.get("escalated_count", 0), count, 4),
            top_parameters=[
                {"name": name, "count": n}
                for name, n in sorted(parameters.items(), key=lambda item: (-item[1], item[0]))[:TOP_PARAMETERS_LIMIT]
            ],
        )

    def get_session_metrics(self, start: datetime, end: datetime) -> SessionMetrics:
        """Aggregate over sessions whose start time falls in ``[start, end)``."""
        try:
            docs = self.store.query(SESSIONS, [
                FieldFilter("start_time", ">=", to_document_value(start)),
                FieldFilter("start_time", "<", to_document_value(end)),
            ])
        except StoreError as e:
            logger.error(f"Failed to read sessions for metrics: {e}")
            docs = []

        sessions = [Session.from_document(doc) for doc in docs]
        total = len(sessions)
        durations = [s.duration for s in sessions if s.duration is not None]
        scores = [s.analytics.satisfaction_score for s in sessions if s.analytics.satisfaction_score is not None]
        completed = sum(1 for s in sessions if s.status == SessionStatus.ENDED)
        escalated = sum(
            1 for s in sessions
            if s.analytics.escalated or s.status == SessionStatus.TRANSFERRED
        )

        return SessionMetrics(
            total_sessions=total,
            avg_duration=int(_average(sum(durations), len(durations), 0)),
            avg_messages_per_session=_average(sum(s.message_count for s in sessions), total, 2),
            completion_rate=_average(completed, total, 4),
            escalation_rate=_average(escalated, total, 4),
            satisfaction_avg=_average(sum(scores), len(scores), 2) if scores else None,
            computed_at=self.clock(),
        )


class EventBuffer:
    """
    Batches ConversationEvents in front of the aggregator.

    Delivery is at-least-once: a batch that fails to aggregate is put back
    at the head of the buffer and retried on the next flush.
    """

    def __init__(self, aggregator: AnalyticsAggregator, batch_size: int = 20):
        self.aggregator = aggregator
        self.batch_size = max(1, batch_size)
        self._pending: List[ConversationEvent] = []
        self._lock = threading.Lock()
        self._flush_lock = threading.Lock()

    def add(self, event: ConversationEvent) -> None:
        with self._lock:
            self._pending.append(event)
            full = len(self._pending) >= self.batch_size
        if full:
            self.flush()

    def flush(self) -> int:
        """Deliver everything buffered. Returns the number of events aggregated."""
        with self._flush_lock:
            batch = self._drain()
            if not batch:
                return 0
            try:
                processed = self.aggregator.process_events(batch)
            except StoreError as e:
                self._requeue(batch)
                logger.error(f"Failed to flush analytics events, will retry: {e}", events=len(batch))
                return 0
        return processed

    def __len__(self) -> int:
        with self._lock:
            return len(self._pending)

    def _drain(self) -> List[ConversationEvent]:
        with self._lock:
            batch, self._pending = self._pending, []
            return batch

    def _requeue(self, batch: List[ConversationEvent]) -> None:
        with self._lock:
            self._pending = batch + self._pending


def _average(total: float, count: int, digits: int) -> float:
    if not count:
        return 0.0
    return round_half_up(total / count, digits)


def _top(counts: Counter, limit: int) -> List[IntentCount]:
    ranked = sorted(counts.items(), key=lambda item: (-item[1], item[0]))[:limit]
    return [IntentCount(intent=name, count=n) for name, n in ranked]
