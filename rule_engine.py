"""
Context rule engine.

Rules are condition -> action pairs stored in the ``context_rules``
collection. Conditions are written in the sandboxed language of
``expression.py``; ``$name`` tokens are replaced with the JSON encoding of the
session's variable values before parsing.
"""

import threading
import uuid
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional

from errors import RuleError
from expression import Expression, is_truthy, substitute_variables
from logger import get_logger
from models import (
    ContextAction, ContextRule, ContextVariable, RuleActionType, Session,
    VariableSource, VariableType, utc_now
)
from storage import CONTEXT_RULES, DocumentStore, FieldFilter, StoreError

logger = get_logger(__name__)


@dataclass
class RuleEvaluation:
    """Outcome of evaluating every enabled rule against one event."""
    fired: List[str] = field(default_factory=list)
    failed: List[str] = field(default_factory=list)
    changed: bool = False
    triggered_intents: List[str] = field(default_factory=list)
    webhook_calls: List[ContextAction] = field(default_factory=list)


class RuleEngine:
    """Loads rules by priority and applies them to session contexts."""

    def __init__(self, store: DocumentStore, clock: Callable[[], datetime] = utc_now):
        self.store = store
        self.clock = clock
        self._rules: Optional[List[ContextRule]] = None
        self._lock = threading.Lock()

    # ------------------------------------------------------------------
    # Rule storage
    # ------------------------------------------------------------------

    def load_rules(self) -> List[ContextRule]:
        """
        Reload enabled rules, highest priority first.

        On a store failure the previously loaded rules stay in effect.
        """
        try:
            docs = self.store.query(
                CONTEXT_RULES,
                [FieldFilter("enabled", "==", True)],
                order_by="priority",
                descending=True,
            )
        except StoreError as e:
            logger.error(f"Failed to load context rules: {e}")
            with self._lock:
                return list(self._rules or [])

        rules = []
        for doc in docs:
            try:
                rules.append(ContextRule.from_document(doc))
            except ValueError as e:
                logger.warning(f"Skipping invalid stored rule: {e}", rule_id=doc.get("id"))

        with self._lock:
            self._rules = rules
        logger.info(f"Loaded {len(rules)} context rules")
        return list(rules)

    @property
    def rules(self) -> List[ContextRule]:
        with self._lock:
            loaded = self._rules
        if loaded is None:
            return self.load_rules()
        return list(loaded)

    def create_rule(self, rule: ContextRule, validate: bool = True) -> ContextRule:
        """
        Persist a rule and reload.

        Raises:
            ExpressionError: If ``validate`` is set and the condition does not parse
            RuleError: If the rule could not be stored
        """
        if validate:
            Expression(rule.condition)

        stored = rule.model_copy(update={
            "id": rule.id or uuid.uuid4().hex,
            "created_at": self.clock(),
        })
        try:
            self.store.set(CONTEXT_RULES, stored.id, stored.to_document())
        except StoreError as e:
            raise RuleError(f"Failed to store rule '{rule.name}': {e}") from e

        logger.info("Context rule created", rule_id=stored.id, rule=stored.name, priority=stored.priority)
        self.load_rules()
        return stored

    def list_rules(self, include_disabled: bool = True) -> List[ContextRule]:
        """All stored rules by descending priority."""
        filters = [] if include_disabled else [FieldFilter("enabled", "==", True)]
        try:
            docs = self.store.query(CONTEXT_RULES, filters, order_by="priority", descending=True)
        except StoreError as e:
            logger.error(f"Failed to list context rules: {e}")
            return []
        return [ContextRule.from_document(doc) for doc in docs]

    def delete_rule(self, rule_id: str) -> bool:
        """Delete a rule. Returns False if it did not exist."""
        try:
            if self.store.get(CONTEXT_RULES, rule_id) is None:
                return False
            self.store.delete(CONTEXT_RULES, rule_id)
        except StoreError as e:
            raise RuleError(f"Failed to delete rule '{rule_id}': {e}") from e

        logger.info("Context rule deleted", rule_id=rule_id)
        self.load_rules()
        return True

    def set_rule_enabled(self, rule_id: str, enabled: bool) -> bool:
        try:
            if self.store.get(CONTEXT_RULES, rule_id) is None:
                return False
            self.store.update(CONTEXT_RULES, rule_id, {"enabled": enabled})
        except StoreError as e:
            raise RuleError(f"Failed to update rule '{rule_id}': {e}") from e

        self.load_rules()
        return True

    # ------------------------------------------------------------------
    # Evaluation
    # ------------------------------------------------------------------

    def evaluate(self, session: Session, event: Dict[str, Any]) -> RuleEvaluation:
        """
        Evaluate enabled rules in priority order against ``session``.

        Variable actions mutate ``session.context`` in place; the caller
        persists the context when ``changed`` is set. A rule that fails to
        parse or evaluate is logged and skipped.
        """
        result = RuleEvaluation()

        for rule in self.rules:
            if not rule.enabled:
                continue
            try:
                if not self._condition_holds(rule, session, event):
                    continue
                self._apply(rule.action, session, result)
            except Exception as e:
                # One broken rule must not stop the rules after it
                result.failed.append(rule.name)
                logger.rule_fired(
                    rule.name,
                    rule.action.type.value,
                    False,
                    session_id=session.id,
                    error=str(e),
                    error_type=type(e).__name__
                )
                continue

            result.fired.append(rule.name)
            logger.rule_fired(rule.name, rule.action.type.value, True, session_id=session.id)

        return result

    def _condition_holds(self, rule: ContextRule, session: Session, event: Dict[str, Any]) -> bool:
        values = session.context.values(self.clock())
        condition = substitute_variables(rule.condition, values)
        scope = {
            "variables": values,
            "activeContexts": session.context.active_context_names(),
            "event": event,
            "sessionId": session.id,
            "userId": session.user_id,
        }
        return is_truthy(Expression(condition).evaluate(scope, values))

    def _apply(self, action: ContextAction, session: Session, result: RuleEvaluation) -> None:
        variables = session.context.variables
        now = self.clock()

        if action.type == RuleActionType.SET:
            variables[action.target] = ContextVariable.build(
                action.target,
                action.value,
                var_type=_declared_type(action),
                lifespan=action.parameters.get("lifespan"),
                source=VariableSource.SYSTEM,
                now=now,
            )
            result.changed = True

        elif action.type == RuleActionType.UPDATE:
            current = variables.get(action.target)
            if current is None or current.is_expired(now):
                variables[action.target] = ContextVariable.build(
                    action.target, action.value, var_type=_declared_type(action), now=now
                )
            else:
                value = action.value
                if isinstance(current.value, dict) and isinstance(value, dict):
                    value = {**current.value, **value}
                variables[action.target] = ContextVariable(
                    name=current.name,
                    value=value,
                    type=_declared_type(action),
                    lifespan=current.lifespan,
                    source=VariableSource.SYSTEM,
                    created_at=current.created_at,
                    expires_at=current.expires_at,
                )
            result.changed = True

        elif action.type == RuleActionType.DELETE:
            if variables.pop(action.target, None) is not None:
                result.changed = True

        elif action.type == RuleActionType.TRIGGER_INTENT:
            result.triggered_intents.append(action.target)

        elif action.type == RuleActionType.CALL_WEBHOOK:
            result.webhook_calls.append(action)


def _declared_type(action: ContextAction) -> Optional[VariableType]:
    declared = action.parameters.get("type")
    return VariableType(declared) if declared else None
