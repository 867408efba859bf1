"""
Request and response bodies for the HTTP surface.
"""

from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field

from .analytics_models import SessionStatistics
from .context_models import ContextAction, VariableSource, VariableType
from .session_model import ConversationTurn, Session


class CreateSessionRequest(BaseModel):
    """Model for session creation requests."""
    user_id: Optional[str] = None
    metadata: Dict[str, Any] = Field(default_factory=dict)


class TurnRequest(BaseModel):
    """One inbound conversational turn from the NLU webhook."""
    session_id: Optional[str] = None
    user_id: Optional[str] = None
    text: str = Field(..., min_length=1)
    bot_response: str = ""
    detected_intent: str = Field(..., min_length=1)
    confidence: float = Field(..., ge=0.0, le=1.0)
    parameters: Dict[str, Any] = Field(default_factory=dict)
    response_time_ms: int = Field(default=0, ge=0)
    fulfillment_used: bool = False
    metadata: Dict[str, Any] = Field(default_factory=dict)


class TurnResponse(BaseModel):
    """Updated state after a turn has been processed."""
    session: Session
    turn: ConversationTurn
    created_session: bool = False
    triggered_intents: List[str] = Field(default_factory=list)
    webhook_calls: List[ContextAction] = Field(default_factory=list)
    statistics: Optional[SessionStatistics] = None


class SetVariableRequest(BaseModel):
    value: Any = None
    type: Optional[VariableType] = None
    lifespan: Optional[int] = Field(default=None, description="Minutes until expiry")
    source: VariableSource = VariableSource.API


class ActiveContextRequest(BaseModel):
    name: str = Field(..., min_length=1)
    lifespan: Optional[int] = Field(default=None, ge=1, description="Turns until removal")


class MergeContextsRequest(BaseModel):
    source_session_id: str = Field(..., min_length=1)


class EndSessionRequest(BaseModel):
    reason: str = "user_ended"


class TransferRequest(BaseModel):
    reason: str = "user_request"
    target_agent: Optional[str] = None


class SatisfactionRequest(BaseModel):
    score: float = Field(..., ge=1.0, le=5.0)


class ApplyTemplateRequest(BaseModel):
    values: Dict[str, Any] = Field(default_factory=dict)


class RetentionRequest(BaseModel):
    retention_days: Optional[int] = Field(default=None, ge=1)


class RuleToggleRequest(BaseModel):
    enabled: bool


class ImportContextRequest(BaseModel):
    context: Dict[str, Any]
    overwrite: bool = False
