"""
Domain errors raised by the session, context and rule services.
"""


class SessionServiceError(Exception):
    """Base class for all session service errors."""
    pass


class SessionNotFoundError(SessionServiceError):
    """Raised when an operation requires a session that does not exist."""

    def __init__(self, session_id: str):
        self.session_id = session_id
        super().__init__(f"Session not found: {session_id}")


class SessionStoreError(SessionServiceError):
    """Persistence failure on a write path the caller depends on."""

    def __init__(self, message: str, session_id: str = None):
        self.session_id = session_id
        super().__init__(message)


class ContextError(SessionServiceError):
    """Invalid context variable or active context operation."""
    pass


class TemplateError(ContextError):
    """Context template missing or not applicable."""
    pass


class RuleError(SessionServiceError):
    """Context rule could not be stored or evaluated."""
    pass


class ExpressionError(RuleError):
    """Rule condition could not be parsed or evaluated."""
    pass
