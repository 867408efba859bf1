"""
Unit tests for turn_recorder.py - append-only turns, running analytics, statistics.
"""

import pytest

import sys
import os
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from errors import SessionNotFoundError, SessionStoreError
from storage import SESSIONS, TURNS, InMemoryDocumentStore, StoreError
from tests.test_logger import test_logger
from turn_recorder import TurnRecorder, running_average
from session_manager import SessionManager


class CommitFailingStore(InMemoryDocumentStore):
    def commit(self, writes):
        raise StoreError("commit rejected")


class TestAddTurn:
    """Test suite for TurnRecorder.add_turn."""

    def setup_method(self):
        test_logger.log_section("TESTING: turn_recorder.py - add_turn")

    def test_n_turns_are_appended_in_order(self, sessions, turns, store, clock):
        test_logger.log_test_start("turn_recorder.py", "add_turn", "append_only")

        try:
            session = sessions.create_session()
            for i in range(5):
                turns.add_turn(session.id, f"msg {i}", f"reply {i}", f"intent.{i % 2}", 0.8, response_time=100)

            history = turns.get_history(session.id)
            assert [t.user_input for t in history] == [f"msg {i}" for i in range(5)]
            assert [t.sequence for t in history] == [1, 2, 3, 4, 5]
            assert len(store.query(TURNS)) == 5

            refreshed = sessions.get_session(session.id)
            assert refreshed.message_count == 5
            assert refreshed.analytics.total_messages == 5
            assert store.get(SESSIONS, session.id)["message_count"] == 5

            test_logger.log_test_pass("turn_recorder.py", "add_turn", "append_only")
        except Exception as e:
            test_logger.log_test_fail("turn_recorder.py", "add_turn", "append_only", str(e))
            raise

    def test_running_average_response_time(self, sessions, turns):
        """Latencies 100, 200, 300 average to exactly 200."""
        test_logger.log_test_start("turn_recorder.py", "add_turn", "running_average")

        try:
            session = sessions.create_session()
            for latency in (100, 200, 300):
                turns.add_turn(session.id, "q", "a", "faq", 0.9, response_time=latency)

            analytics = sessions.get_session(session.id).analytics
            assert analytics.avg_response_time == 200
            assert analytics.intents_triggered == ["faq", "faq", "faq"]

            assert running_average(0, 0, 150) == 150
            assert running_average(150, 1, 250) == 200
            assert running_average(100, 2, 101) == 100

            test_logger.log_test_pass("turn_recorder.py", "add_turn", "running_average")
        except Exception as e:
            test_logger.log_test_fail("turn_recorder.py", "add_turn", "running_average", str(e))
            raise

    def test_turn_refreshes_last_activity(self, sessions, turns, clock):
        test_logger.log_test_start("turn_recorder.py", "add_turn", "last_activity")

        try:
            session = sessions.create_session()
            clock.advance(minutes=25)
            turns.add_turn(session.id, "still here", "great", "smalltalk", 0.7)
            clock.advance(minutes=25)

            assert sessions.get_session(session.id).last_activity.timestamp() == (
                session.start_time.timestamp() + 25 * 60
            )
            assert sessions.is_session_active(session.id)

            test_logger.log_test_pass("turn_recorder.py", "add_turn", "last_activity")
        except Exception as e:
            test_logger.log_test_fail("turn_recorder.py", "add_turn", "last_activity", str(e))
            raise

    def test_missing_session(self, turns):
        test_logger.log_test_start("turn_recorder.py", "add_turn", "missing_session")

        try:
            with pytest.raises(SessionNotFoundError):
                turns.add_turn("session_nope", "hi", "hello", "greeting", 0.5)

            test_logger.log_test_pass("turn_recorder.py", "add_turn", "missing_session")
        except Exception as e:
            test_logger.log_test_fail("turn_recorder.py", "add_turn", "missing_session", str(e))
            raise

    def test_commit_failure_leaves_nothing_behind(self, clock):
        """Turn, analytics and counter are written together or not at all."""
        test_logger.log_test_start("turn_recorder.py", "add_turn", "commit_failure")

        try:
            store = CommitFailingStore()
            manager = SessionManager(store, clock=clock)
            recorder = TurnRecorder(manager)
            session = manager.create_session()

            with pytest.raises(SessionStoreError):
                recorder.add_turn(session.id, "hi", "hello", "greeting", 0.5)

            assert store.query(TURNS) == []
            assert manager.get_session(session.id).message_count == 0
            assert manager.get_session(session.id).analytics.total_messages == 0

            test_logger.log_test_pass("turn_recorder.py", "add_turn", "commit_failure")
        except Exception as e:
            test_logger.log_test_fail("turn_recorder.py", "add_turn", "commit_failure", str(e))
            raise

    def test_event_sink_failure_does_not_fail_turn(self, clock):
        test_logger.log_test_start("turn_recorder.py", "add_turn", "sink_failure")

        try:
            received = []

            def sink(event):
                received.append(event)
                raise RuntimeError("analytics down")

            manager = SessionManager(InMemoryDocumentStore(), clock=clock)
            recorder = TurnRecorder(manager, event_sink=sink)
            session = manager.create_session("user-1")

            turn = recorder.add_turn(session.id, "hi", "hello", "greeting", 0.5, {"name": "Ana"}, 120, True)

            assert len(received) == 1
            assert received[0].turn_id == turn.id
            assert received[0].user_id == "user-1"
            assert received[0].fulfilled is True
            assert manager.get_session(session.id).message_count == 1

            test_logger.log_test_pass("turn_recorder.py", "add_turn", "sink_failure")
        except Exception as e:
            test_logger.log_test_fail("turn_recorder.py", "add_turn", "sink_failure", str(e))
            raise


class TestHistoryAndStatistics:
    """Test suite for get_history and get_statistics."""

    def setup_method(self):
        test_logger.log_section("TESTING: turn_recorder.py - History and Statistics")

    def test_history_returns_most_recent_oldest_first(self, sessions, turns):
        test_logger.log_test_start("turn_recorder.py", "get_history", "limit")

        try:
            session = sessions.create_session()
            for i in range(6):
                turns.add_turn(session.id, f"msg {i}", "ok", "faq", 0.9)

            history = turns.get_history(session.id, limit=3)
            assert [t.user_input for t in history] == ["msg 3", "msg 4", "msg 5"]
            assert turns.get_history("session_nope") == []

            test_logger.log_test_pass("turn_recorder.py", "get_history", "limit")
        except Exception as e:
            test_logger.log_test_fail("turn_recorder.py", "get_history", "limit", str(e))
            raise

    def test_statistics_scenario(self, sessions, turns, clock):
        """Two turns: count 2, confidence 0.7, response time 200."""
        test_logger.log_test_start("turn_recorder.py", "get_statistics", "scenario")

        try:
            session = sessions.create_session()
            turns.add_turn(session.id, "hi", "hello", "greeting", 0.9, response_time=150)
            clock.advance(seconds=40)
            turns.add_turn(session.id, "price?", "10 USD", "pricing", 0.5, response_time=250)
            clock.advance(seconds=20)

            stats = turns.get_statistics(session.id)
            assert stats.message_count == 2
            assert stats.avg_confidence == 0.7
            assert stats.avg_response_time == 200
            assert stats.unique_intents_count == 2
            assert stats.duration == 60
            assert stats.status == "active"
            assert stats.escalated is False
            assert {c.intent for c in stats.top_intents} == {"greeting", "pricing"}

            test_logger.log_test_pass("turn_recorder.py", "get_statistics", "scenario")
        except Exception as e:
            test_logger.log_test_fail("turn_recorder.py", "get_statistics", "scenario", str(e))
            raise

    def test_statistics_of_ended_session_use_end_time(self, sessions, turns, clock):
        test_logger.log_test_start("turn_recorder.py", "get_statistics", "ended_session")

        try:
            session = sessions.create_session()
            clock.advance(seconds=30)
            sessions.end_session(session.id)
            clock.advance(hours=2)

            stats = turns.get_statistics(session.id)
            assert stats.duration == 30
            assert stats.avg_confidence == 0.0
            assert stats.avg_response_time == 0
            assert stats.top_intents == []

            test_logger.log_test_pass("turn_recorder.py", "get_statistics", "ended_session")
        except Exception as e:
            test_logger.log_test_fail("turn_recorder.py", "get_statistics", "ended_session", str(e))
            raise

    def test_averages_round_half_up(self, sessions, turns):
        """Ties round up the way the dashboards expect (150.5 -> 151)."""
        test_logger.log_test_start("turn_recorder.py", "get_statistics", "half_up")

        try:
            session = sessions.create_session()
            turns.add_turn(session.id, "a", "b", "faq", 0.25, response_time=100)
            turns.add_turn(session.id, "c", "d", "faq", 0.0, response_time=201)

            assert sessions.get_session(session.id).analytics.avg_response_time == 151
            stats = turns.get_statistics(session.id)
            assert stats.avg_response_time == 151
            assert stats.avg_confidence == 0.13

            assert running_average(running_average(0, 0, 100), 1, 201) == 151
            assert running_average(0, 0, 2.5) == 3

            test_logger.log_test_pass("turn_recorder.py", "get_statistics", "half_up")
        except Exception as e:
            test_logger.log_test_fail("turn_recorder.py", "get_statistics", "half_up", str(e))
            raise

    def test_zero_limit_returns_no_history(self, sessions, turns):
        test_logger.log_test_start("turn_recorder.py", "get_history", "zero_limit")

        try:
            session = sessions.create_session()
            for i in range(3):
                turns.add_turn(session.id, f"msg {i}", "ok", "faq", 0.9)

            assert turns.get_history(session.id, limit=0) == []
            assert len(turns.get_history(session.id)) == 3

            test_logger.log_test_pass("turn_recorder.py", "get_history", "zero_limit")
        except Exception as e:
            test_logger.log_test_fail("turn_recorder.py", "get_history", "zero_limit", str(e))
            raise
