"""
Data models for derived analytics: events, statistics and aggregates.
"""

from datetime import datetime
from decimal import ROUND_HALF_UP, Decimal
from typing import Any, Dict, List, Optional, Union

from pydantic import BaseModel, Field

from .document import DocumentModel, utc_now


def round_half_up(value: float, digits: int = 0) -> Union[int, float]:
    """Round with ties going up (2.5 -> 3), returning an int when digits is 0."""
    rounded = Decimal(str(value)).quantize(Decimal(1).scaleb(-digits), rounding=ROUND_HALF_UP)
    return float(rounded) if digits else int(rounded)


class ConversationEvent(DocumentModel):
    """One committed turn, as delivered to the analytics aggregator."""
    session_id: str
    turn_id: str
    user_id: Optional[str] = None
    intent: str
    confidence: float = 0.0
    response_time: int = 0
    fulfilled: bool = False
    escalated: bool = False
    platform: str = "web"
    language: str = "pt-br"
    parameters: Dict[str, Any] = Field(default_factory=dict)
    timestamp: datetime = Field(default_factory=utc_now)


class IntentCount(BaseModel):
    intent: str
    count: int


class SessionStatistics(BaseModel):
    """Per-session statistics derived from the session and its turns."""
    session_id: str
    duration: int
    message_count: int
    unique_intents_count: int
    avg_confidence: float
    avg_response_time: int
    status: str
    escalated: bool
    top_intents: List[IntentCount] = Field(default_factory=list)


class DailyMetrics(BaseModel):
    """Per-date aggregate with zero-safe averages."""
    date: str
    total_interactions: int = 0
    avg_confidence: float = 0.0
    avg_response_time: int = 0
    unique_users: int = 0
    unique_sessions: int = 0
    hourly_distribution: List[int] = Field(default_factory=lambda: [0] * 24)
    top_intents: List[IntentCount] = Field(default_factory=list)


class IntentMetrics(BaseModel):
    """Per-intent running aggregate."""
    intent: str
    total_requests: int = 0
    avg_confidence: float = 0.0
    avg_response_time: int = 0
    fulfillment_rate: float = 0.0
    escalation_rate: float = 0.0
    top_parameters: List[Dict[str, Any]] = Field(default_factory=list)


class SessionMetrics(BaseModel):
    """Aggregate over all sessions started in a date range."""
    total_sessions: int = 0
    avg_duration: int = 0
    avg_messages_per_session: float = 0.0
    completion_rate: float = 0.0
    escalation_rate: float = 0.0
    satisfaction_avg: Optional[float] = None
    computed_at: datetime = Field(default_factory=utc_now)
