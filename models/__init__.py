"""Data models for the session context service."""

from .document import DocumentModel, utc_now
from .context_models import (
    VariableType, VariableSource, ContextVariable, ConversationContext,
    RuleActionType, ContextAction, ContextRule,
    TemplateVariable, ContextTemplate,
    infer_variable_type, format_active_context, parse_active_context
)
from .session_model import (
    SessionStatus, TERMINAL_STATUSES, SessionMetadata, SessionAnalytics,
    Session, ConversationTurn
)
from .analytics_models import (
    ConversationEvent, IntentCount, SessionStatistics,
    DailyMetrics, IntentMetrics, SessionMetrics, round_half_up
)
from .chat_models import (
    CreateSessionRequest, TurnRequest, TurnResponse,
    SetVariableRequest, ActiveContextRequest, MergeContextsRequest,
    EndSessionRequest, TransferRequest, SatisfactionRequest,
    ApplyTemplateRequest, RetentionRequest, RuleToggleRequest,
    ImportContextRequest
)

__all__ = [
    "DocumentModel", "utc_now",
    "VariableType", "VariableSource", "ContextVariable", "ConversationContext",
    "RuleActionType", "ContextAction", "ContextRule",
    "TemplateVariable", "ContextTemplate",
    "infer_variable_type", "format_active_context", "parse_active_context",
    "SessionStatus", "TERMINAL_STATUSES", "SessionMetadata", "SessionAnalytics",
    "Session", "ConversationTurn",
    "ConversationEvent", "IntentCount", "SessionStatistics",
    "DailyMetrics", "IntentMetrics", "SessionMetrics", "round_half_up",
    "CreateSessionRequest", "TurnRequest", "TurnResponse",
    "SetVariableRequest", "ActiveContextRequest", "MergeContextsRequest",
    "EndSessionRequest", "TransferRequest", "SatisfactionRequest",
    "ApplyTemplateRequest", "RetentionRequest", "RuleToggleRequest",
    "ImportContextRequest"
]
