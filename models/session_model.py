"""
Data model for Session and ConversationTurn entities.
"""

from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field

from .context_models import ConversationContext
from .document import DocumentModel, utc_now


class SessionStatus(str, Enum):
    """Lifecycle states. Every state but ACTIVE is terminal."""
    ACTIVE = "active"
    ENDED = "ended"
    EXPIRED = "expired"
    TRANSFERRED = "transferred"


TERMINAL_STATUSES = frozenset({
    SessionStatus.ENDED,
    SessionStatus.EXPIRED,
    SessionStatus.TRANSFERRED,
})


class SessionMetadata(BaseModel):
    """Client information captured when the session is created."""
    model_config = ConfigDict(extra="allow")

    platform: str = "web"
    language: str = "pt-br"
    user_agent: str = "unknown"
    location: Optional[str] = None


class SessionAnalytics(BaseModel):
    """Running analytics snapshot embedded in the session."""
    total_messages: int = 0
    intents_triggered: List[str] = Field(default_factory=list)
    avg_response_time: int = 0
    satisfaction_score: Optional[float] = None
    escalated: bool = False


class ConversationTurn(DocumentModel):
    """Represents a single user-input / bot-response exchange."""
    model_config = ConfigDict(frozen=True)

    id: str
    session_id: str
    user_input: str
    bot_response: str
    intent: str
    confidence: float = Field(..., ge=0.0, le=1.0)
    parameters: Dict[str, Any] = Field(default_factory=dict)
    response_time: int = Field(default=0, ge=0)
    fulfillment_used: bool = False
    sequence: int = Field(default=0, ge=0)  # 1-based position within the session
    created_at: datetime = Field(default_factory=utc_now)


class Session(DocumentModel):
    """Represents one bounded multi-turn conversation."""
    id: str
    user_id: Optional[str] = None
    start_time: datetime = Field(default_factory=utc_now)
    end_time: Optional[datetime] = None
    last_activity: datetime = Field(default_factory=utc_now)
    message_count: int = 0
    status: SessionStatus = SessionStatus.ACTIVE
    metadata: SessionMetadata = Field(default_factory=SessionMetadata)
    analytics: SessionAnalytics = Field(default_factory=SessionAnalytics)
    context: ConversationContext = Field(default_factory=ConversationContext)

    end_reason: Optional[str] = None
    duration: Optional[int] = None  # seconds
    transfer_reason: Optional[str] = None
    transferred_to: Optional[str] = None
    transferred_at: Optional[datetime] = None

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    def idle_seconds(self, now: datetime) -> float:
        """Seconds since the last recorded activity."""
        return (now - self.last_activity).total_seconds()
