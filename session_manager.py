"""
Session lifecycle controller.

Creates, reads, updates and terminates conversation sessions on top of a
DocumentStore, with a read-through SessionCache and lazy expiry. Every state
change of a session runs under that session's lock.

States: active -> ended | expired | transferred. Terminal states are final;
lifecycle calls on a terminal session return the persisted record unchanged.
"""

import uuid
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, List, Optional

from cache import InMemorySessionCache, SessionCache
from errors import SessionNotFoundError, SessionServiceError, SessionStoreError
from locks import SessionLockRegistry
from logger import get_logger, log_function_call
from models import Session, SessionMetadata, SessionStatus, utc_now
from models.document import to_document_value
from storage import (
    SESSION_ANALYTICS, SESSIONS, TURNS, DocumentStore, FieldFilter, StoreError, Write
)

logger = get_logger(__name__)

DEFAULT_TRANSFER_TARGET = "available_agent"
TRANSFER_MESSAGE = "Transferring you to a human agent..."


class SessionManager:
    """Owns every Session record and its state transitions."""

    def __init__(
        self,
        store: DocumentStore,
        cache: Optional[SessionCache] = None,
        locks: Optional[SessionLockRegistry] = None,
        ttl_minutes: int = 30,
        retention_days: int = 90,
        clock: Callable[[], datetime] = utc_now,
    ):
        """
        Initialize the controller.

        Args:
            store: Document store holding sessions and turns
            cache: Session read cache (defaults to a 5 minute in-process cache)
            locks: Per-session lock registry shared with the other services
            ttl_minutes: Inactivity after which an active session expires
            retention_days: Age after which terminal sessions are purged
            clock: Source of the current time
        """
        self.store = store
        self.cache = cache if cache is not None else InMemorySessionCache()
        self.locks = locks if locks is not None else SessionLockRegistry()
        self.ttl_minutes = ttl_minutes
        self.retention_days = retention_days
        self.clock = clock
        self._turn_recorder = None

    def attach_turn_recorder(self, recorder) -> None:
        """Register the recorder used for synthetic system turns."""
        self._turn_recorder = recorder

    # ------------------------------------------------------------------
    # Creation and reads
    # ------------------------------------------------------------------

    def create_session(self, user_id: Optional[str] = None, metadata: Optional[Dict[str, Any]] = None) -> Session:
        """
        Create and persist a new active session.

        Raises:
            SessionStoreError: If the session could not be persisted
        """
        now = self.clock()
        session = Session(
            id=self._generate_session_id(now),
            user_id=user_id,
            start_time=now,
            last_activity=now,
            metadata=SessionMetadata(**(metadata or {})),
        )

        try:
            self.store.set(SESSIONS, session.id, session.to_document())
        except StoreError as e:
            logger.error(f"Failed to create session: {e}", user_id=user_id)
            raise SessionStoreError("Failed to create session") from e

        self.cache.put(session)
        logger.session_event(session.id, "created", user_id=user_id, platform=session.metadata.platform)
        return session

    def get_session(self, session_id: str) -> Optional[Session]:
        """
        Fetch a session, applying lazy expiry.

        Returns:
            The session (status EXPIRED if it just timed out), or None if it
            does not exist or could not be read
        """
        try:
            session = self._load(session_id)
        except StoreError as e:
            logger.error(f"Failed to read session: {e}", session_id=session_id)
            return None

        if session is None:
            return None

        try:
            return self._apply_lazy_expiry(session)
        except SessionNotFoundError:
            return None
        except SessionServiceError as e:
            # Persisting the transition failed; the caller still observes expiry
            logger.error(f"Failed to persist lazy expiry: {e}", session_id=session_id)
            return session.model_copy(update={"status": SessionStatus.EXPIRED})

    def require_session(self, session_id: str) -> Session:
        """
        Fetch a session that must exist, applying lazy expiry.

        Raises:
            SessionNotFoundError: If no such session exists
            SessionStoreError: If the store could not be read
        """
        try:
            session = self._load(session_id)
        except StoreError as e:
            logger.error(f"Failed to read session: {e}", session_id=session_id)
            raise SessionStoreError(f"Failed to read session: {session_id}", session_id) from e

        if session is None:
            raise SessionNotFoundError(session_id)
        return self._apply_lazy_expiry(session)

    def cache_session(self, session: Session) -> None:
        """Refresh the cache after a write made outside this controller."""
        if session.is_terminal:
            self.cache.evict(session.id)
        else:
            self.cache.put(session)

    def is_session_expired(self, session: Session) -> bool:
        """True when the session has been idle longer than the TTL."""
        return session.idle_seconds(self.clock()) > self.ttl_minutes * 60

    def is_session_active(self, session_id: str) -> bool:
        session = self.get_session(session_id)
        return session is not None and session.status == SessionStatus.ACTIVE

    def list_active_sessions(self, user_id: Optional[str] = None, limit: int = 50) -> List[Session]:
        """Active, non-stale sessions ordered by most recent activity."""
        filters = [FieldFilter("status", "==", SessionStatus.ACTIVE.value)]
        if user_id:
            filters.append(FieldFilter("user_id", "==", user_id))

        try:
            docs = self.store.query(SESSIONS, filters, order_by="last_activity", descending=True)
        except StoreError as e:
            logger.error(f"Failed to list active sessions: {e}", user_id=user_id)
            return []

        sessions = [Session.from_document(doc) for doc in docs]
        return [s for s in sessions if not self.is_session_expired(s)][:limit]

    # ------------------------------------------------------------------
    # Updates and transitions
    # ------------------------------------------------------------------

    def update_session(self, session_id: str, fields: Dict[str, Any], touch: bool = True) -> Session:
        """
        Merge fields into a session and refresh its last activity.

        Args:
            session_id: Session to update
            fields: Session attributes to replace
            touch: Set False for housekeeping writes that are not user activity

        Raises:
            SessionNotFoundError: If no such session exists
            SessionStoreError: If the update could not be persisted
            ValueError: If a field is not a session attribute
        """
        with self.locks.lock(session_id):
            session = self.require_session(session_id)
            return self._write(session, fields, touch=touch)

    def end_session(self, session_id: str, reason: str = "user_ended") -> Session:
        """
        End an active session.

        Terminal sessions are returned as persisted, without recomputing
        anything.
        """
        with self.locks.lock(session_id):
            session = self.require_session(session_id)
            if session.is_terminal:
                logger.info(
                    "End requested for terminal session",
                    session_id=session_id,
                    status=session.status.value
                )
                return session

            now = self.clock()
            ended = self._write(session, {
                "status": SessionStatus.ENDED,
                "end_time": now,
                "end_reason": reason,
                "duration": round((now - session.start_time).total_seconds()),
            })
            self.cache.evict(session_id)

        logger.session_event(session_id, "ended", reason=reason, duration=ended.duration)
        self.record_session_analytics(ended)
        return ended

    def expire_session(self, session_id: str) -> Session:
        """Mark an active session as expired (end reason 'timeout')."""
        with self.locks.lock(session_id):
            session = self._load(session_id)
            if session is None:
                raise SessionNotFoundError(session_id)
            if session.is_terminal:
                return session
            return self._expire(session)

    @log_function_call()
    def cleanup_expired_sessions(self) -> int:
        """
        Expire every active session idle past the TTL.

        Returns:
            Number of sessions transitioned to EXPIRED
        """
        cutoff = self.clock() - timedelta(minutes=self.ttl_minutes)
        try:
            docs = self.store.query(SESSIONS, [
                FieldFilter("status", "==", SessionStatus.ACTIVE.value),
                FieldFilter("last_activity", "<", cutoff.timestamp()),
            ])
        except StoreError as e:
            logger.error(f"Failed to scan for expired sessions: {e}")
            return 0

        expired_count = 0
        for doc in docs:
            session_id = doc.get("id")
            with self.locks.lock(session_id):
                try:
                    # Re-read under the lock: a live turn may have touched it
                    self.cache.evict(session_id)
                    session = self._load(session_id)
                    if session is None or session.is_terminal or not self.is_session_expired(session):
                        continue
                    self._expire(session)
                    expired_count += 1
                except (StoreError, SessionServiceError) as e:
                    logger.error(f"Failed to expire session: {e}", session_id=session_id)

        if expired_count:
            logger.info(f"Expired {expired_count} sessions", cutoff=cutoff.isoformat())
        return expired_count

    def transfer_to_human(
        self,
        session_id: str,
        reason: str = "user_request",
        target_agent: Optional[str] = None,
    ) -> Session:
        """
        Hand a session to a human agent.

        Marks the session transferred and escalated, then records a system
        turn documenting the handoff.
        """
        with self.locks.lock(session_id):
            session = self.require_session(session_id)
            if session.is_terminal:
                logger.info(
                    "Transfer requested for terminal session",
                    session_id=session_id,
                    status=session.status.value
                )
                return session

            target = target_agent or DEFAULT_TRANSFER_TARGET
            self._write(session, {
                "status": SessionStatus.TRANSFERRED,
                "transfer_reason": reason,
                "transferred_to": target,
                "transferred_at": self.clock(),
                "analytics": session.analytics.model_copy(update={"escalated": True}),
            })

            if self._turn_recorder is None:
                raise SessionServiceError("No turn recorder attached to the session manager")
            self._turn_recorder.add_turn(
                session_id,
                user_input="[SYSTEM]",
                bot_response=TRANSFER_MESSAGE,
                intent="system.transfer",
                confidence=1.0,
                parameters={"reason": reason, "target_agent": target},
                response_time=0,
                fulfillment_used=True,
            )
            transferred = self.require_session(session_id)

        logger.session_event(session_id, "transferred", reason=reason, target_agent=target)
        return transferred

    def record_satisfaction(self, session_id: str, score: float) -> Session:
        """Store a 1-5 satisfaction score in the session analytics."""
        if not 1 <= score <= 5:
            raise ValueError(f"Satisfaction score must be between 1 and 5, got {score}")

        with self.locks.lock(session_id):
            session = self.require_session(session_id)
            return self._write(session, {
                "analytics": session.analytics.model_copy(update={"satisfaction_score": score}),
            }, touch=False)

    def record_session_analytics(self, session: Session) -> None:
        """Write the final analytics snapshot of a finished session (best-effort)."""
        snapshot = {
            "session_id": session.id,
            "user_id": session.user_id,
            "start_time": session.start_time,
            "end_time": session.end_time or self.clock(),
            "duration": session.duration or 0,
            "message_count": session.message_count,
            "platform": session.metadata.platform,
            "language": session.metadata.language,
            "end_reason": session.end_reason or "unknown",
            "escalated": session.analytics.escalated,
            "avg_response_time": session.analytics.avg_response_time,
            "unique_intents": len(set(session.analytics.intents_triggered)),
            "satisfaction_score": session.analytics.satisfaction_score,
            "created_at": self.clock(),
        }
        try:
            self.store.set(SESSION_ANALYTICS, session.id, to_document_value(snapshot))
        except StoreError as e:
            logger.error(f"Failed to record session analytics: {e}", session_id=session.id)

    def purge_old_sessions(self, retention_days: Optional[int] = None) -> int:
        """
        Delete terminal sessions (and their turns) started before the retention cut.

        Returns:
            Number of sessions deleted
        """
        days = self.retention_days if retention_days is None else retention_days
        cutoff = self.clock() - timedelta(days=days)
        try:
            docs = self.store.query(SESSIONS, [FieldFilter("start_time", "<", cutoff.timestamp())])
        except StoreError as e:
            logger.error(f"Failed to scan sessions for retention: {e}")
            return 0

        purged = 0
        for doc in docs:
            session = Session.from_document(doc)
            if not session.is_terminal:
                continue
            with self.locks.lock(session.id):
                try:
                    turns = self.store.query(TURNS, [FieldFilter("session_id", "==", session.id)])
                    writes = [Write.delete(TURNS, t["id"]) for t in turns]
                    writes.append(Write.delete(SESSIONS, session.id))
                    self.store.commit(writes)
                    self.cache.evict(session.id)
                    purged += 1
                except StoreError as e:
                    logger.error(f"Failed to purge session: {e}", session_id=session.id)

        logger.info(f"Purged {purged} sessions", retention_days=days)
        return purged

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _load(self, session_id: str) -> Optional[Session]:
        """Cache, then store. Raises StoreError."""
        cached = self.cache.get(session_id)
        if cached is not None:
            return cached

        doc = self.store.get(SESSIONS, session_id)
        if doc is None:
            return None

        session = Session.from_document(doc)
        if not session.is_terminal:
            self.cache.put(session)
        return session

    def _apply_lazy_expiry(self, session: Session) -> Session:
        if session.status != SessionStatus.ACTIVE or not self.is_session_expired(session):
            return session

        with self.locks.lock(session.id):
            try:
                current = self._load(session.id)
            except StoreError as e:
                raise SessionStoreError(f"Failed to read session: {session.id}", session.id) from e
            if current is None:
                raise SessionNotFoundError(session.id)
            if current.status == SessionStatus.ACTIVE and self.is_session_expired(current):
                return self._expire(current)
            return current

    def _expire(self, session: Session) -> Session:
        expired = self._write(session, {
            "status": SessionStatus.EXPIRED,
            "end_time": self.clock(),
            "end_reason": "timeout",
        }, touch=False)
        self.cache.evict(session.id)
        logger.session_event(session.id, "expired", idle_seconds=round(session.idle_seconds(self.clock())))
        return expired

    def _write(self, session: Session, fields: Dict[str, Any], touch: bool = True) -> Session:
        """Merge fields, persist only the changed keys, refresh the cache."""
        unknown = set(fields) - (set(Session.model_fields) - {"id"})
        if unknown:
            raise ValueError(f"Unknown session fields: {sorted(unknown)}")

        changes = dict(fields)
        if touch:
            changes["last_activity"] = self.clock()

        data = session.model_dump()
        data.update(changes)
        updated = Session.model_validate(data)

        document = {key: to_document_value(getattr(updated, key)) for key in changes}
        try:
            self.store.update(SESSIONS, session.id, document)
        except StoreError as e:
            logger.error(f"Failed to update session: {e}", session_id=session.id, fields=sorted(changes))
            raise SessionStoreError(f"Failed to update session: {session.id}", session.id) from e

        self.cache_session(updated)
        return updated

    @staticmethod
    def _generate_session_id(now: datetime) -> str:
        return f"session_{int(now.timestamp() * 1000)}_{uuid.uuid4().hex[:12]}"
