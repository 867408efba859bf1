"""
Data models for context variables, active contexts, rules and templates.
"""

from datetime import datetime, timedelta
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple

from pydantic import BaseModel, Field, model_validator

from .document import DocumentModel, utc_now


class VariableType(str, Enum):
    """Explicit type tag stored with every context variable."""
    STRING = "string"
    NUMBER = "number"
    BOOLEAN = "boolean"
    OBJECT = "object"
    ARRAY = "array"
    NULL = "null"


class VariableSource(str, Enum):
    """Who set a context variable."""
    USER = "user"
    SYSTEM = "system"
    API = "api"
    WEBHOOK = "webhook"


def infer_variable_type(value: Any) -> VariableType:
    """Infer the type tag from the shape of a value."""
    if value is None:
        return VariableType.NULL
    if isinstance(value, (list, tuple)):
        return VariableType.ARRAY
    # bool is a subclass of int
    if isinstance(value, bool):
        return VariableType.BOOLEAN
    if isinstance(value, (int, float)):
        return VariableType.NUMBER
    if isinstance(value, str):
        return VariableType.STRING
    return VariableType.OBJECT


def value_matches_type(value: Any, var_type: VariableType) -> bool:
    """Check that a value agrees with an explicit type tag."""
    inferred = infer_variable_type(value)
    if var_type == VariableType.OBJECT:
        return isinstance(value, dict)
    return inferred == var_type


class ContextVariable(DocumentModel):
    """A named, optionally expiring value scoped to a session."""
    name: str = Field(..., min_length=1)
    value: Any = None
    type: VariableType = VariableType.NULL
    lifespan: Optional[int] = None  # minutes, None = permanent
    source: VariableSource = VariableSource.SYSTEM
    created_at: datetime = Field(default_factory=utc_now)
    expires_at: Optional[datetime] = None

    @model_validator(mode="before")
    @classmethod
    def _default_type(cls, data: Any) -> Any:
        if isinstance(data, dict) and data.get("type") is None:
            data = {**data, "type": infer_variable_type(data.get("value"))}
        return data

    @model_validator(mode="after")
    def _check_type(self) -> "ContextVariable":
        if not value_matches_type(self.value, self.type):
            raise ValueError(
                f"Value for '{self.name}' does not match declared type '{self.type.value}'"
            )
        return self

    @classmethod
    def build(
        cls,
        name: str,
        value: Any,
        var_type: Optional[VariableType] = None,
        lifespan: Optional[int] = None,
        source: VariableSource = VariableSource.SYSTEM,
        now: Optional[datetime] = None,
    ) -> "ContextVariable":
        """Create a variable, computing expiry only for a positive lifespan."""
        now = now or utc_now()
        expires_at = None
        if lifespan is not None and lifespan > 0:
            expires_at = now + timedelta(minutes=lifespan)
        return cls(
            name=name,
            value=value,
            type=var_type or infer_variable_type(value),
            lifespan=lifespan,
            source=source,
            created_at=now,
            expires_at=expires_at,
        )

    def is_expired(self, now: datetime) -> bool:
        """True once the expiry time has passed."""
        return self.expires_at is not None and self.expires_at < now


def format_active_context(name: str, lifespan: int) -> str:
    """Encode an active context as ``name:count``."""
    return f"{name}:{lifespan}"


def parse_active_context(entry: str) -> Tuple[str, int]:
    """
    Decode a ``name:count`` entry.

    Raises:
        ValueError: If the entry has no integer count
    """
    name, sep, count = entry.rpartition(":")
    if not sep or not name:
        raise ValueError(f"Malformed active context entry: {entry!r}")
    return name, int(count)


class ConversationContext(DocumentModel):
    """Variables and active contexts carried across turns of one session."""
    variables: Dict[str, ContextVariable] = Field(default_factory=dict)
    active_contexts: List[str] = Field(default_factory=list)

    def purge_expired(self, now: datetime) -> List[str]:
        """Drop expired variables in place and return their names."""
        expired = [name for name, var in self.variables.items() if var.is_expired(now)]
        for name in expired:
            del self.variables[name]
        return expired

    def values(self, now: datetime) -> Dict[str, Any]:
        """Values of all non-expired variables, metadata stripped."""
        return {
            name: var.value
            for name, var in self.variables.items()
            if not var.is_expired(now)
        }

    def active_context_names(self) -> List[str]:
        names = []
        for entry in self.active_contexts:
            try:
                names.append(parse_active_context(entry)[0])
            except ValueError:
                continue
        return names


class RuleActionType(str, Enum):
    SET = "set"
    UPDATE = "update"
    DELETE = "delete"
    TRIGGER_INTENT = "trigger_intent"
    CALL_WEBHOOK = "call_webhook"


class ContextAction(BaseModel):
    """What a rule does when its condition holds."""
    type: RuleActionType
    target: str = Field(..., min_length=1)
    value: Any = None
    parameters: Dict[str, Any] = Field(default_factory=dict)


class ContextRule(DocumentModel):
    """Condition -> action rule evaluated against session state."""
    id: Optional[str] = None
    name: str = Field(..., min_length=1)
    description: str = ""
    condition: str = Field(..., min_length=1)
    action: ContextAction
    priority: int = 0
    enabled: bool = True
    created_at: datetime = Field(default_factory=utc_now)


class TemplateVariable(BaseModel):
    name: str = Field(..., min_length=1)
    type: VariableType = VariableType.STRING
    default_value: Any = None
    required: bool = False


class ContextTemplate(DocumentModel):
    """Reusable set of variables applied to a session in one step."""
    id: Optional[str] = None
    name: str = Field(..., min_length=1)
    description: str = ""
    category: str = "general"
    variables: List[TemplateVariable] = Field(default_factory=list)
    created_at: datetime = Field(default_factory=utc_now)
