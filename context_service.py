"""
Variable store and active-context tracker.

Context variables carry state across turns and may expire after a number of
minutes. Active contexts are ``name:count`` entries whose count drops by one
per processed turn. All reads and writes go through the SessionManager under
the session lock, and variable writes re-run the context rules.
"""

import uuid
from contextlib import ExitStack
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional

from errors import ContextError, TemplateError
from logger import get_logger
from models import (
    ContextTemplate, ContextVariable, ConversationContext, Session,
    VariableSource, VariableType, format_active_context, parse_active_context,
    utc_now
)
from rule_engine import RuleEngine, RuleEvaluation
from session_manager import SessionManager
from storage import CONTEXT_TEMPLATES, FieldFilter, StoreError

logger = get_logger(__name__)


class ContextService:
    """Session-scoped variables, active contexts and context templates."""

    def __init__(
        self,
        session_manager: SessionManager,
        rule_engine: Optional[RuleEngine] = None,
        clock: Optional[Callable[[], datetime]] = None,
        default_lifespan: int = 5,
    ):
        """
        Initialize the service.

        Args:
            session_manager: Owner of the session records
            rule_engine: Rules evaluated after variable writes (optional)
            clock: Source of the current time (defaults to the manager's)
            default_lifespan: Turns an active context lives when none is given
        """
        self.sessions = session_manager
        self.rule_engine = rule_engine
        self.clock = clock or session_manager.clock or utc_now
        self.default_lifespan = default_lifespan

    # ------------------------------------------------------------------
    # Variables
    # ------------------------------------------------------------------

    def set_variable(
        self,
        session_id: str,
        name: str,
        value: Any,
        var_type: Optional[VariableType] = None,
        lifespan: Optional[int] = None,
        source: VariableSource = VariableSource.SYSTEM,
    ) -> ContextVariable:
        """
        Set a context variable and evaluate rules with a ``variable_set`` event.

        Args:
            lifespan: Minutes until expiry; None or <= 0 keeps it until deleted

        Raises:
            SessionNotFoundError: If the session does not exist
            ContextError: If the value does not match the declared type
        """
        with self.sessions.locks.lock(session_id):
            session = self.sessions.require_session(session_id)
            try:
                variable = ContextVariable.build(
                    name, value, var_type=var_type, lifespan=lifespan, source=source, now=self.clock()
                )
            except ValueError as e:
                raise ContextError(f"Invalid context variable '{name}': {e}") from e

            context = session.context.model_copy(deep=True)
            context.variables[name] = variable
            session = self.sessions.update_session(session_id, {"context": context})

            logger.debug(
                "Context variable set",
                session_id=session_id,
                variable=name,
                type=variable.type.value,
                lifespan=lifespan
            )
            self.evaluate_rules(session, {"type": "variable_set", "name": name, "value": variable.value})
        return variable

    def get_variable(self, session_id: str, name: str) -> Any:
        """Value of a variable, or None if absent or expired (expired ones are deleted)."""
        with self.sessions.locks.lock(session_id):
            session = self.sessions.require_session(session_id)
            variable = session.context.variables.get(name)
            if variable is None:
                return None
            if variable.is_expired(self.clock()):
                context = session.context.model_copy(deep=True)
                del context.variables[name]
                self.sessions.update_session(session_id, {"context": context}, touch=False)
                logger.debug("Expired context variable removed", session_id=session_id, variable=name)
                return None
            return variable.value

    def delete_variable(self, session_id: str, name: str) -> bool:
        """Delete a variable. Returns False if it was not set."""
        with self.sessions.locks.lock(session_id):
            session = self.sessions.require_session(session_id)
            if name not in session.context.variables:
                return False
            context = session.context.model_copy(deep=True)
            del context.variables[name]
            self.sessions.update_session(session_id, {"context": context})
            return True

    def get_context(self, session_id: str) -> Dict[str, Any]:
        """Values of every live variable; expired ones are purged and the purge persisted."""
        with self.sessions.locks.lock(session_id):
            session = self.sessions.require_session(session_id)
            context = session.context.model_copy(deep=True)
            expired = context.purge_expired(self.clock())
            if expired:
                self.sessions.update_session(session_id, {"context": context}, touch=False)
                logger.debug("Purged expired context variables", session_id=session_id, variables=expired)
            return {name: var.value for name, var in context.variables.items()}

    # ------------------------------------------------------------------
    # Active contexts
    # ------------------------------------------------------------------

    def set_active_context(self, session_id: str, name: str, lifespan: Optional[int] = None) -> List[str]:
        """
        Activate ``name`` for ``lifespan`` turns, replacing any previous entry.

        Returns:
            The session's active context entries after the change
        """
        lifespan = self.default_lifespan if lifespan is None else lifespan
        if not name:
            raise ContextError("Active context name must not be empty")
        if lifespan <= 0:
            raise ContextError(f"Active context lifespan must be positive, got {lifespan}")

        with self.sessions.locks.lock(session_id):
            session = self.sessions.require_session(session_id)
            entries = [e for e in session.context.active_contexts if _entry_name(e) != name]
            entries.append(format_active_context(name, lifespan))
            self._save_active_contexts(session, entries, touch=True)
            return entries

    def is_context_active(self, session_id: str, name: str) -> bool:
        session = self.sessions.require_session(session_id)
        return name in self._parsed(session)

    def get_active_contexts(self, session_id: str) -> Dict[str, int]:
        """Active context names mapped to their remaining turns."""
        session = self.sessions.require_session(session_id)
        return self._parsed(session)

    def decrement_context_lifespans(self, session_id: str) -> List[str]:
        """
        Count down every active context by one turn, dropping those that reach 0.

        Must run exactly once per processed turn.

        Returns:
            Remaining active context entries
        """
        with self.sessions.locks.lock(session_id):
            session = self.sessions.require_session(session_id)
            if not session.context.active_contexts:
                return []

            remaining = []
            for entry in session.context.active_contexts:
                try:
                    name, count = parse_active_context(entry)
                except ValueError:
                    logger.warning("Dropping malformed active context", session_id=session_id, entry=entry)
                    continue
                if count - 1 > 0:
                    remaining.append(format_active_context(name, count - 1))

            self._save_active_contexts(session, remaining, touch=False)
            return remaining

    # ------------------------------------------------------------------
    # Whole-context operations
    # ------------------------------------------------------------------

    def merge_contexts(self, target_session_id: str, source_session_id: str) -> Dict[str, Any]:
        """
        Merge the source session's context into the target's.

        Target variables win on name collisions; active contexts are
        deduplicated by name, keeping the target's countdown.

        Returns:
            The target's variable values after the merge
        """
        if target_session_id == source_session_id:
            raise ContextError("Cannot merge a session's context into itself")

        with ExitStack() as stack:
            # Fixed acquisition order so two opposite merges cannot deadlock
            for session_id in sorted((target_session_id, source_session_id)):
                stack.enter_context(self.sessions.locks.lock(session_id))

            target = self.sessions.require_session(target_session_id)
            source = self.sessions.require_session(source_session_id)
            now = self.clock()

            context = target.context.model_copy(deep=True)
            for name, variable in source.context.variables.items():
                if name not in context.variables and not variable.is_expired(now):
                    context.variables[name] = variable.model_copy(deep=True)

            known = set(context.active_context_names())
            for entry in source.context.active_contexts:
                name = _entry_name(entry)
                if name is not None and name not in known:
                    context.active_contexts.append(entry)
                    known.add(name)

            self.sessions.update_session(target_session_id, {"context": context})

        logger.info(
            "Contexts merged",
            session_id=target_session_id,
            source_session_id=source_session_id,
            variables=len(context.variables)
        )
        return context.values(now)

    def clear_context(self, session_id: str) -> None:
        """Remove every variable and active context."""
        self.sessions.update_session(session_id, {"context": ConversationContext()})
        logger.debug("Context cleared", session_id=session_id)

    def export_context(self, session_id: str) -> Dict[str, Any]:
        """JSON-ready snapshot of the full context, metadata included."""
        session = self.sessions.require_session(session_id)
        return session.context.model_dump(mode="json")

    def import_context(self, session_id: str, data: Dict[str, Any], overwrite: bool = False) -> Dict[str, Any]:
        """
        Load a snapshot produced by ``export_context``.

        Imported variables replace same-named ones; with ``overwrite`` the
        existing context is discarded first.
        """
        try:
            imported = ConversationContext.model_validate(data)
        except ValueError as e:
            raise ContextError(f"Invalid context snapshot: {e}") from e

        with self.sessions.locks.lock(session_id):
            session = self.sessions.require_session(session_id)
            context = ConversationContext() if overwrite else session.context.model_copy(deep=True)
            context.variables.update(imported.variables)

            imported_names = set(imported.active_context_names())
            context.active_contexts = [
                e for e in context.active_contexts if _entry_name(e) not in imported_names
            ] + list(imported.active_contexts)

            self.sessions.update_session(session_id, {"context": context})
            return context.values(self.clock())

    # ------------------------------------------------------------------
    # Templates
    # ------------------------------------------------------------------

    def create_template(self, template: ContextTemplate) -> ContextTemplate:
        stored = template.model_copy(update={
            "id": template.id or uuid.uuid4().hex,
            "created_at": self.clock(),
        })
        try:
            self.sessions.store.set(CONTEXT_TEMPLATES, stored.id, stored.to_document())
        except StoreError as e:
            raise TemplateError(f"Failed to store template '{template.name}': {e}") from e
        logger.info("Context template created", template_id=stored.id, template=stored.name)
        return stored

    def get_template(self, template_id: str) -> Optional[ContextTemplate]:
        try:
            doc = self.sessions.store.get(CONTEXT_TEMPLATES, template_id)
        except StoreError as e:
            logger.error(f"Failed to read template: {e}", template_id=template_id)
            return None
        return ContextTemplate.from_document(doc) if doc else None

    def list_templates(self, category: Optional[str] = None) -> List[ContextTemplate]:
        filters = [FieldFilter("category", "==", category)] if category else []
        try:
            docs = self.sessions.store.query(CONTEXT_TEMPLATES, filters, order_by="name")
        except StoreError as e:
            logger.error(f"Failed to list templates: {e}")
            return []
        return [ContextTemplate.from_document(doc) for doc in docs]

    def apply_template(
        self,
        session_id: str,
        template_id: str,
        values: Optional[Dict[str, Any]] = None,
    ) -> Dict[str, Any]:
        """
        Set every template variable on a session in one write.

        Supplied values override defaults. Required variables without a value
        and values of the wrong type are rejected before anything is written.

        Returns:
            The variables set, by name
        """
        template = self.get_template(template_id)
        if template is None:
            raise TemplateError(f"Template not found: {template_id}")

        values = values or {}
        now = self.clock()
        variables: Dict[str, ContextVariable] = {}
        for declared in template.variables:
            value = values.get(declared.name, declared.default_value)
            if value is None:
                if declared.required:
                    raise TemplateError(f"Template '{template.name}' requires a value for '{declared.name}'")
                continue
            try:
                variables[declared.name] = ContextVariable.build(
                    declared.name, value, var_type=declared.type, source=VariableSource.SYSTEM, now=now
                )
            except ValueError as e:
                raise TemplateError(f"Invalid value for template variable '{declared.name}': {e}") from e

        with self.sessions.locks.lock(session_id):
            session = self.sessions.require_session(session_id)
            context = session.context.model_copy(deep=True)
            context.variables.update(variables)
            session = self.sessions.update_session(session_id, {"context": context})
            self.evaluate_rules(session, {"type": "template_applied", "template_id": template_id})

        logger.info("Context template applied", session_id=session_id, template_id=template_id)
        return {name: var.value for name, var in variables.items()}

    # ------------------------------------------------------------------
    # Rules
    # ------------------------------------------------------------------

    def evaluate_rules(self, session: Session, event: Dict[str, Any]) -> RuleEvaluation:
        """
        Run the rule engine on a copy of the session and persist any context change.

        Callers hold the session lock.
        """
        if self.rule_engine is None:
            return RuleEvaluation()

        working = session.model_copy(deep=True)
        evaluation = self.rule_engine.evaluate(working, event)
        if evaluation.changed:
            self.sessions.update_session(session.id, {"context": working.context}, touch=False)
        return evaluation

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _save_active_contexts(self, session: Session, entries: List[str], touch: bool) -> None:
        context = session.context.model_copy(update={"active_contexts": entries}, deep=True)
        self.sessions.update_session(session.id, {"context": context}, touch=touch)

    @staticmethod
    def _parsed(session: Session) -> Dict[str, int]:
        parsed = {}
        for entry in session.context.active_contexts:
            try:
                name, count = parse_active_context(entry)
            except ValueError:
                continue
            if count > 0:
                parsed[name] = count
        return parsed


def _entry_name(entry: str) -> Optional[str]:
    try:
        return parse_active_context(entry)[0]
    except ValueError:
        return None
