"""
Unit tests for the data models - validation, type inference and documents.
"""

import pytest
from datetime import datetime, timedelta, timezone
from pydantic import ValidationError

import sys
import os
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from models import (
    ContextVariable, ConversationContext, ConversationTurn, Session,
    SessionStatus, TurnRequest, VariableType, format_active_context,
    infer_variable_type, parse_active_context, round_half_up
)
from tests.test_logger import test_logger

NOW = datetime(2024, 3, 15, 10, 0, 0, tzinfo=timezone.utc)


class TestContextVariable:
    """Test suite for context variables."""

    def setup_method(self):
        test_logger.log_section("TESTING: models/context_models.py - ContextVariable")

    def test_type_inference(self):
        """Shapes map onto type tags; bool is not a number."""
        test_logger.log_test_start("context_models.py", "infer_variable_type", "shapes")

        try:
            assert infer_variable_type("hi") == VariableType.STRING
            assert infer_variable_type(3) == VariableType.NUMBER
            assert infer_variable_type(2.5) == VariableType.NUMBER
            assert infer_variable_type(True) == VariableType.BOOLEAN
            assert infer_variable_type([1, 2]) == VariableType.ARRAY
            assert infer_variable_type({"a": 1}) == VariableType.OBJECT
            assert infer_variable_type(None) == VariableType.NULL

            test_logger.log_test_pass("context_models.py", "infer_variable_type", "shapes")
        except Exception as e:
            test_logger.log_test_fail("context_models.py", "infer_variable_type", "shapes", str(e))
            raise

    def test_null_value_gets_null_type(self):
        """A missing value is tagged null, not string."""
        test_logger.log_test_start("context_models.py", "ContextVariable.build", "null_type")

        try:
            variable = ContextVariable.build("nickname", None, now=NOW)
            assert variable.type == VariableType.NULL
            assert variable.value is None

            test_logger.log_test_pass("context_models.py", "ContextVariable.build", "null_type")
        except Exception as e:
            test_logger.log_test_fail("context_models.py", "ContextVariable.build", "null_type", str(e))
            raise

    def test_declared_type_mismatch_rejected(self):
        test_logger.log_test_start("context_models.py", "ContextVariable", "type_mismatch")

        try:
            with pytest.raises(ValidationError):
                ContextVariable.build("score", "high", var_type=VariableType.NUMBER, now=NOW)

            test_logger.log_test_pass("context_models.py", "ContextVariable", "type_mismatch")
        except Exception as e:
            test_logger.log_test_fail("context_models.py", "ContextVariable", "type_mismatch", str(e))
            raise

    def test_expiry_only_for_positive_lifespan(self):
        """Zero or missing lifespan means the variable never expires."""
        test_logger.log_test_start("context_models.py", "ContextVariable.build", "lifespan")

        try:
            permanent = ContextVariable.build("a", 1, now=NOW)
            zero = ContextVariable.build("b", 1, lifespan=0, now=NOW)
            short = ContextVariable.build("c", 1, lifespan=1, now=NOW)

            assert permanent.expires_at is None
            assert zero.expires_at is None
            assert short.expires_at == NOW + timedelta(minutes=1)
            assert not short.is_expired(NOW + timedelta(seconds=59))
            assert short.is_expired(NOW + timedelta(seconds=61))

            test_logger.log_test_pass("context_models.py", "ContextVariable.build", "lifespan")
        except Exception as e:
            test_logger.log_test_fail("context_models.py", "ContextVariable.build", "lifespan", str(e))
            raise


class TestActiveContextEncoding:
    """Test suite for name:count entries."""

    def setup_method(self):
        test_logger.log_section("TESTING: models/context_models.py - Active Contexts")

    def test_round_trip(self):
        test_logger.log_test_start("context_models.py", "parse_active_context", "round_trip")

        try:
            assert format_active_context("promo", 3) == "promo:3"
            assert parse_active_context("promo:3") == ("promo", 3)
            assert parse_active_context("checkout:step:2") == ("checkout:step", 2)

            test_logger.log_test_pass("context_models.py", "parse_active_context", "round_trip")
        except Exception as e:
            test_logger.log_test_fail("context_models.py", "parse_active_context", "round_trip", str(e))
            raise

    @pytest.mark.parametrize("entry", ["promo", ":3", "promo:abc"])
    def test_malformed_entries(self, entry):
        test_logger.log_test_start("context_models.py", "parse_active_context", f"malformed_{entry}")

        try:
            with pytest.raises(ValueError):
                parse_active_context(entry)

            test_logger.log_test_pass("context_models.py", "parse_active_context", f"malformed_{entry}")
        except Exception as e:
            test_logger.log_test_fail("context_models.py", "parse_active_context", f"malformed_{entry}", str(e))
            raise

    def test_purge_expired(self):
        """Expired variables are removed in one pass and reported."""
        test_logger.log_test_start("context_models.py", "ConversationContext.purge_expired", "purge")

        try:
            context = ConversationContext(variables={
                "keep": ContextVariable.build("keep", 1, now=NOW),
                "drop": ContextVariable.build("drop", 2, lifespan=1, now=NOW),
            })
            later = NOW + timedelta(minutes=2)

            assert context.values(later) == {"keep": 1}
            assert context.purge_expired(later) == ["drop"]
            assert list(context.variables) == ["keep"]

            test_logger.log_test_pass("context_models.py", "ConversationContext.purge_expired", "purge")
        except Exception as e:
            test_logger.log_test_fail("context_models.py", "ConversationContext.purge_expired", "purge", str(e))
            raise


class TestSessionDocuments:
    """Test suite for Session and ConversationTurn persistence shapes."""

    def setup_method(self):
        test_logger.log_section("TESTING: models/session_model.py")

    def test_session_document_uses_epoch_seconds(self):
        test_logger.log_test_start("session_model.py", "Session.to_document", "timestamps")

        try:
            session = Session(id="s1", start_time=NOW, last_activity=NOW)
            session.context.variables["plan"] = ContextVariable.build("plan", "pro", lifespan=5, now=NOW)
            doc = session.to_document()

            assert doc["start_time"] == NOW.timestamp()
            assert doc["status"] == "active"
            assert doc["context"]["variables"]["plan"]["expires_at"] == (NOW + timedelta(minutes=5)).timestamp()

            loaded = Session.from_document(doc)
            assert loaded.start_time == NOW
            assert loaded.status == SessionStatus.ACTIVE
            assert loaded.context.variables["plan"].value == "pro"

            test_logger.log_test_pass("session_model.py", "Session.to_document", "timestamps")
        except Exception as e:
            test_logger.log_test_fail("session_model.py", "Session.to_document", "timestamps", str(e))
            raise

    def test_terminal_statuses(self):
        test_logger.log_test_start("session_model.py", "Session.is_terminal", "statuses")

        try:
            assert not Session(id="s", status=SessionStatus.ACTIVE).is_terminal
            for status in (SessionStatus.ENDED, SessionStatus.EXPIRED, SessionStatus.TRANSFERRED):
                assert Session(id="s", status=status).is_terminal

            test_logger.log_test_pass("session_model.py", "Session.is_terminal", "statuses")
        except Exception as e:
            test_logger.log_test_fail("session_model.py", "Session.is_terminal", "statuses", str(e))
            raise

    def test_turn_is_immutable_and_validated(self):
        test_logger.log_test_start("session_model.py", "ConversationTurn", "immutable")

        try:
            turn = ConversationTurn(
                id="t1", session_id="s1", user_input="hi", bot_response="hello",
                intent="greeting", confidence=0.9
            )
            with pytest.raises(ValidationError):
                turn.intent = "other"
            with pytest.raises(ValidationError):
                ConversationTurn(
                    id="t2", session_id="s1", user_input="hi", bot_response="",
                    intent="greeting", confidence=1.5
                )

            test_logger.log_test_pass("session_model.py", "ConversationTurn", "immutable")
        except Exception as e:
            test_logger.log_test_fail("session_model.py", "ConversationTurn", "immutable", str(e))
            raise

    def test_turn_request_requires_text_and_intent(self):
        test_logger.log_test_start("chat_models.py", "TurnRequest", "required_fields")

        try:
            with pytest.raises(ValidationError):
                TurnRequest(text="", detected_intent="greeting", confidence=0.5)
            with pytest.raises(ValidationError):
                TurnRequest(text="hi", confidence=0.5)

            request = TurnRequest(text="hi", detected_intent="greeting", confidence=0.5)
            assert request.session_id is None
            assert request.response_time_ms == 0

            test_logger.log_test_pass("chat_models.py", "TurnRequest", "required_fields")
        except Exception as e:
            test_logger.log_test_fail("chat_models.py", "TurnRequest", "required_fields", str(e))
            raise


class TestRounding:
    """Test suite for round_half_up."""

    def setup_method(self):
        test_logger.log_section("TESTING: analytics_models.py - round_half_up")

    @pytest.mark.parametrize("value,digits,expected", [
        (2.5, 0, 3),
        (3.5, 0, 4),
        (150.5, 0, 151),
        (2.4, 0, 2),
        (0.125, 2, 0.13),
        (0.665, 2, 0.67),
        (0.7, 2, 0.7),
    ])
    def test_ties_go_up(self, value, digits, expected):
        test_logger.log_test_start("analytics_models.py", "round_half_up", f"{value}/{digits}")

        try:
            result = round_half_up(value, digits)
            assert result == expected
            assert isinstance(result, int if digits == 0 else float)

            test_logger.log_test_pass("analytics_models.py", "round_half_up", f"{value}/{digits}")
        except Exception as e:
            test_logger.log_test_fail("analytics_models.py", "round_half_up", f"{value}/{digits}", str(e))
            raise
