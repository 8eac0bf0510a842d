"""
Funnel Session Persistence Layer.

Authoritative, durable record of each user's progress through a funnel,
plus the completion ledger that makes finalize exactly-once per session.

- flow_sessions: one row per session; answer data is merged, never replaced
- funnel_completions: one row per finalized (or finalizing) session

Expired sessions are kept for audit and reported as expired; completed
sessions are retained after the client clears its pointer.
"""

import json
import logging
import sqlite3
import uuid
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from enum import Enum
from pathlib import Path
from typing import Any, Dict, Iterator, Optional, Tuple

from funnel.errors import (
    InvalidStepIndexError,
    SessionCompletedError,
    SessionExpiredError,
    SessionNotFoundError,
    SessionOwnershipError,
)
from funnel.models import Funnel, FunnelSession, InvitePaymentStatus

logger = logging.getLogger(__name__)

DEFAULT_SESSION_TTL_HOURS = 168
DEFAULT_CLAIM_TIMEOUT_SECONDS = 300


def utcnow() -> datetime:
    """Naive UTC timestamp, matching the ISO strings stored in sqlite."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


class LookupStatus(str, Enum):
    FOUND = "found"
    EXPIRED = "expired"
    NOT_FOUND = "not_found"


@dataclass
class SessionLookup:
    """Result of reading a session by id."""
    status: LookupStatus
    session: Optional[FunnelSession] = None

    @property
    def found(self) -> bool:
        return self.status == LookupStatus.FOUND


class CompletionStatus(str, Enum):
    PENDING = "pending"
    COMPLETED = "completed"


@dataclass
class CompletionRecord:
    """Ledger entry for a finalized or finalizing session."""
    session_id: str
    status: CompletionStatus
    claimed_at: str
    enrollment_id: Optional[str] = None
    redirect_url: Optional[str] = None
    completed_at: Optional[str] = None
    result: Dict[str, Any] = field(default_factory=dict)


_SESSION_COLUMNS = """
    session_id, funnel_id, organization_id, program_id, invite_code, referrer_id,
    step_count, current_step_index, completed_step_indexes_json,
    highest_completed_step_index, data_json, user_id, linked_at,
    created_at, updated_at, expires_at, completed_at, payment_status
"""


class FunnelSessionPersistence:
    """
    SQLite-backed store for funnel flow sessions.

    Every mutating call runs in an immediate transaction so concurrent
    patches to the same session serialize on the database lock and each
    data merge sees the previous one.
    """

    def __init__(
        self,
        db_path: Optional[Path] = None,
        ttl_hours: int = DEFAULT_SESSION_TTL_HOURS,
        id_prefix: str = "flow_",
        claim_timeout_seconds: int = DEFAULT_CLAIM_TIMEOUT_SECONDS,
    ):
        """
        Initialize funnel session persistence.

        Args:
            db_path: Path to SQLite database file.
            ttl_hours: Absolute session lifetime in hours.
            id_prefix: Scheme prefix of generated session ids.
            claim_timeout_seconds: Age after which a pending completion
                claim is considered abandoned and may be re-claimed.
        """
        if db_path is None:
            from config.settings import get_funnel_settings
            db_path = get_funnel_settings().db_path
        self.db_path = Path(db_path)
        self.ttl_hours = ttl_hours
        self.id_prefix = id_prefix
        self.claim_timeout_seconds = claim_timeout_seconds
        self._ensure_tables_exist()

    def _ensure_tables_exist(self):
        """Create tables if they don't exist."""
        self.db_path.parent.mkdir(parents=True, exist_ok=True)

        with sqlite3.connect(self.db_path) as conn:
            cursor = conn.cursor()

            cursor.execute("""
                CREATE TABLE IF NOT EXISTS flow_sessions (
                    session_id TEXT PRIMARY KEY,
                    funnel_id TEXT NOT NULL,
                    organization_id TEXT,
                    program_id TEXT,
                    invite_code TEXT,
                    referrer_id TEXT,
                    step_count INTEGER NOT NULL DEFAULT 0,
                    current_step_index INTEGER NOT NULL DEFAULT 0,
                    completed_step_indexes_json TEXT NOT NULL DEFAULT '[]',
                    highest_completed_step_index INTEGER,
                    data_json TEXT NOT NULL DEFAULT '{}',
                    user_id TEXT,
                    linked_at TEXT,
                    created_at TEXT NOT NULL,
                    updated_at TEXT NOT NULL,
                    expires_at TEXT NOT NULL,
                    completed_at TEXT,
                    payment_status TEXT NOT NULL DEFAULT 'required'
                )
            """)

            cursor.execute("""
                CREATE TABLE IF NOT EXISTS funnel_completions (
                    session_id TEXT PRIMARY KEY,
                    status TEXT NOT NULL DEFAULT 'pending',
                    enrollment_id TEXT,
                    redirect_url TEXT,
                    result_json TEXT NOT NULL DEFAULT '{}',
                    claimed_at TEXT NOT NULL,
                    completed_at TEXT,
                    FOREIGN KEY (session_id) REFERENCES flow_sessions(session_id)
                )
            """)

            cursor.execute("""
                CREATE INDEX IF NOT EXISTS idx_flow_sessions_funnel
                ON flow_sessions(funnel_id)
            """)
            cursor.execute("""
                CREATE INDEX IF NOT EXISTS idx_flow_sessions_user
                ON flow_sessions(user_id)
            """)
            cursor.execute("""
                CREATE INDEX IF NOT EXISTS idx_flow_sessions_expires
                ON flow_sessions(expires_at)
            """)

            conn.commit()

        self._add_payment_status_column()

    def _add_payment_status_column(self):
        """Add payment_status to session tables created before it existed."""
        with sqlite3.connect(self.db_path) as conn:
            cursor = conn.cursor()
            cursor.execute("PRAGMA table_info(flow_sessions)")
            columns = {row[1] for row in cursor.fetchall()}

            if "payment_status" not in columns:
                cursor.execute(
                    "ALTER TABLE flow_sessions ADD COLUMN payment_status TEXT NOT NULL DEFAULT 'required'"
                )
            conn.commit()

    @contextmanager
    def _transaction(self) -> Iterator[sqlite3.Cursor]:
        """Immediate (write-locking) transaction."""
        conn = sqlite3.connect(self.db_path, isolation_level=None, timeout=10.0)
        try:
            cursor = conn.cursor()
            cursor.execute("BEGIN IMMEDIATE")
            try:
                yield cursor
            except BaseException:
                cursor.execute("ROLLBACK")
                raise
            cursor.execute("COMMIT")
        finally:
            conn.close()

    def new_session_id(self) -> str:
        return f"{self.id_prefix}{uuid.uuid4().hex}"

    # =========================================================================
    # SESSION METHODS
    # =========================================================================

    def create_session(
        self,
        funnel: Funnel,
        invite_code: Optional[str] = None,
        referrer_id: Optional[str] = None,
        payment_status: Optional[InvitePaymentStatus] = None,
    ) -> FunnelSession:
        """
        Create a fresh session at step 0 with empty answer data.

        Args:
            funnel: Funnel being traversed
            invite_code: Invite the user arrived with
            referrer_id: Referring user, if any
            payment_status: Resolved invite payment status; defaults to the
                funnel's default payment status

        Returns:
            The created FunnelSession
        """
        now = utcnow()
        session_id = self.new_session_id()
        if payment_status is None:
            payment_status = funnel.default_payment_status

        with self._transaction() as cursor:
            cursor.execute(f"""
                INSERT INTO flow_sessions ({_SESSION_COLUMNS})
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """, (
                session_id,
                funnel.id,
                funnel.organization_id,
                funnel.program_id,
                invite_code,
                referrer_id,
                len(funnel.steps),
                0,
                "[]",
                None,
                "{}",
                None,
                None,
                now.isoformat(),
                now.isoformat(),
                (now + timedelta(hours=self.ttl_hours)).isoformat(),
                None,
                InvitePaymentStatus(payment_status).value,
            ))

        logger.info(f"Created flow session {session_id} for funnel {funnel.id}")
        return self._require(session_id)

    def get_session(self, session_id: str) -> SessionLookup:
        """
        Load a session by ID.

        Returns:
            SessionLookup with status FOUND, EXPIRED (session included) or NOT_FOUND
        """
        session = self._load(session_id)
        if session is None:
            return SessionLookup(LookupStatus.NOT_FOUND)
        if session.is_expired(utcnow()):
            return SessionLookup(LookupStatus.EXPIRED, session)
        return SessionLookup(LookupStatus.FOUND, session)

    def patch_session(
        self,
        session_id: str,
        current_step_index: Optional[int] = None,
        completed_step_index: Optional[int] = None,
        data: Optional[Dict[str, Any]] = None,
    ) -> FunnelSession:
        """
        Apply a progress patch with merge semantics on ``data``.

        New keys overlay old ones; keys are never removed.

        Raises:
            SessionNotFoundError, SessionExpiredError, SessionCompletedError,
            InvalidStepIndexError
        """
        now = utcnow()

        with self._transaction() as cursor:
            session = self._load_with(cursor, session_id)
            self._check_writable(session, session_id, now)

            for label, index in (
                ("currentStepIndex", current_step_index),
                ("completedStepIndex", completed_step_index),
            ):
                if index is not None and not 0 <= index <= session.step_count:
                    raise InvalidStepIndexError(
                        f"{label} {index} outside funnel of {session.step_count} steps",
                        {"field": label, "value": index},
                    )
            if completed_step_index is not None and completed_step_index == session.step_count:
                raise InvalidStepIndexError(
                    f"completedStepIndex {completed_step_index} is not a step",
                    {"field": "completedStepIndex", "value": completed_step_index},
                )

            merged = {**session.data, **(data or {})}

            completed = list(session.completed_step_indexes)
            highest = session.highest_completed_step_index
            if completed_step_index is not None:
                if completed_step_index not in completed:
                    completed.append(completed_step_index)
                    completed.sort()
                highest = completed_step_index if highest is None else max(highest, completed_step_index)

            new_current = session.current_step_index if current_step_index is None else current_step_index

            cursor.execute("""
                UPDATE flow_sessions SET
                    current_step_index = ?,
                    completed_step_indexes_json = ?,
                    highest_completed_step_index = ?,
                    data_json = ?,
                    updated_at = ?
                WHERE session_id = ?
            """, (
                new_current,
                json.dumps(completed),
                highest,
                json.dumps(merged, default=str),
                now.isoformat(),
                session_id,
            ))

        return self._require(session_id)

    def link_user(self, session_id: str, user_id: str) -> Tuple[FunnelSession, bool]:
        """
        Link a session to an authenticated user.

        Returns:
            (session, already_linked). Linking the same user twice is a no-op.

        Raises:
            SessionNotFoundError, SessionExpiredError, SessionOwnershipError
        """
        now = utcnow()

        with self._transaction() as cursor:
            session = self._load_with(cursor, session_id)
            if session is None:
                raise SessionNotFoundError(f"Session {session_id} not found")
            if session.user_id == user_id:
                return session, True
            if session.user_id is not None:
                raise SessionOwnershipError(f"Session {session_id} is linked to another user")
            if session.is_expired(now):
                raise SessionExpiredError(f"Session {session_id} expired")

            cursor.execute("""
                UPDATE flow_sessions SET
                    user_id = ?,
                    linked_at = ?,
                    updated_at = ?
                WHERE session_id = ? AND user_id IS NULL
            """, (user_id, now.isoformat(), now.isoformat(), session_id))

        logger.info(f"Linked flow session {session_id} to user {user_id}")
        return self._require(session_id), False

    def cleanup_expired(self) -> int:
        """Remove expired sessions that were never completed."""
        now = utcnow().isoformat()

        with self._transaction() as cursor:
            cursor.execute("""
                DELETE FROM flow_sessions
                WHERE expires_at < ? AND completed_at IS NULL
                AND session_id NOT IN (SELECT session_id FROM funnel_completions)
            """, (now,))
            deleted = cursor.rowcount

        if deleted:
            logger.info(f"Cleaned up {deleted} expired flow sessions")
        return deleted

    # =========================================================================
    # COMPLETION LEDGER
    # =========================================================================

    def claim_completion(self, session_id: str) -> Tuple[bool, CompletionRecord]:
        """
        Claim the right to finalize a session.

        Returns:
            (claimed, record). ``claimed`` is False when another request holds
            a live claim or the session is already completed; ``record`` is
            then the existing ledger entry.
        """
        now = utcnow()
        stale_before = (now - timedelta(seconds=self.claim_timeout_seconds)).isoformat()

        with self._transaction() as cursor:
            existing = self._load_completion_with(cursor, session_id)
            if existing is not None:
                abandoned = (
                    existing.status == CompletionStatus.PENDING
                    and existing.claimed_at < stale_before
                )
                if not abandoned:
                    return False, existing
                logger.warning(f"Re-claiming abandoned completion for session {session_id}")
                cursor.execute(
                    "UPDATE funnel_completions SET claimed_at = ? WHERE session_id = ?",
                    (now.isoformat(), session_id),
                )
            else:
                cursor.execute("""
                    INSERT INTO funnel_completions (session_id, status, claimed_at)
                    VALUES (?, ?, ?)
                """, (session_id, CompletionStatus.PENDING.value, now.isoformat()))

        return True, self.get_completion(session_id)

    def record_completion(
        self,
        session_id: str,
        enrollment_id: str,
        redirect_url: Optional[str],
        result: Optional[Dict[str, Any]] = None,
    ) -> CompletionRecord:
        """Mark a claimed completion as done and the session as completed."""
        now = utcnow().isoformat()

        with self._transaction() as cursor:
            cursor.execute("""
                UPDATE funnel_completions SET
                    status = ?,
                    enrollment_id = ?,
                    redirect_url = ?,
                    result_json = ?,
                    completed_at = ?
                WHERE session_id = ?
            """, (
                CompletionStatus.COMPLETED.value,
                enrollment_id,
                redirect_url,
                json.dumps(result or {}, default=str),
                now,
                session_id,
            ))
            cursor.execute("""
                UPDATE flow_sessions SET
                    completed_at = ?,
                    current_step_index = step_count,
                    updated_at = ?
                WHERE session_id = ?
            """, (now, now, session_id))

        logger.info(f"Recorded completion of flow session {session_id} (enrollment {enrollment_id})")
        return self.get_completion(session_id)

    def release_completion(self, session_id: str) -> bool:
        """Drop a pending claim so the user can retry after a failure."""
        with self._transaction() as cursor:
            cursor.execute(
                "DELETE FROM funnel_completions WHERE session_id = ? AND status = ?",
                (session_id, CompletionStatus.PENDING.value),
            )
            return cursor.rowcount > 0

    def get_completion(self, session_id: str) -> Optional[CompletionRecord]:
        with sqlite3.connect(self.db_path) as conn:
            return self._load_completion_with(conn.cursor(), session_id)

    # =========================================================================
    # HELPERS
    # =========================================================================

    def _check_writable(self, session: Optional[FunnelSession], session_id: str, now: datetime) -> None:
        if session is None:
            raise SessionNotFoundError(f"Session {session_id} not found")
        if session.is_complete:
            raise SessionCompletedError(f"Session {session_id} already completed")
        if session.is_expired(now):
            raise SessionExpiredError(f"Session {session_id} expired")

    def _require(self, session_id: str) -> FunnelSession:
        session = self._load(session_id)
        if session is None:
            raise SessionNotFoundError(f"Session {session_id} not found")
        return session

    def _load(self, session_id: str) -> Optional[FunnelSession]:
        with sqlite3.connect(self.db_path) as conn:
            return self._load_with(conn.cursor(), session_id)

    def _load_with(self, cursor: sqlite3.Cursor, session_id: str) -> Optional[FunnelSession]:
        cursor.execute(
            f"SELECT {_SESSION_COLUMNS} FROM flow_sessions WHERE session_id = ?",
            (session_id,),
        )
        row = cursor.fetchone()
        if not row:
            return None

        return FunnelSession(
            id=row[0],
            funnel_id=row[1],
            organization_id=row[2],
            program_id=row[3],
            invite_code=row[4],
            referrer_id=row[5],
            step_count=row[6],
            current_step_index=row[7],
            completed_step_indexes=json.loads(row[8]) if row[8] else [],
            highest_completed_step_index=row[9],
            data=json.loads(row[10]) if row[10] else {},
            user_id=row[11],
            linked_at=datetime.fromisoformat(row[12]) if row[12] else None,
            created_at=datetime.fromisoformat(row[13]),
            updated_at=datetime.fromisoformat(row[14]),
            expires_at=datetime.fromisoformat(row[15]),
            completed_at=datetime.fromisoformat(row[16]) if row[16] else None,
            payment_status=InvitePaymentStatus(row[17]) if row[17] else InvitePaymentStatus.REQUIRED,
        )

    def _load_completion_with(self, cursor: sqlite3.Cursor, session_id: str) -> Optional[CompletionRecord]:
        cursor.execute("""
            SELECT session_id, status, claimed_at, enrollment_id,
                   redirect_url, completed_at, result_json
            FROM funnel_completions
            WHERE session_id = ?
        """, (session_id,))
        row = cursor.fetchone()
        if not row:
            return None

        return CompletionRecord(
            session_id=row[0],
            status=CompletionStatus(row[1]),
            claimed_at=row[2],
            enrollment_id=row[3],
            redirect_url=row[4],
            completed_at=row[5],
            result=json.loads(row[6]) if row[6] else {},
        )


# Global instance
_funnel_session_persistence: Optional[FunnelSessionPersistence] = None


def get_funnel_session_persistence() -> FunnelSessionPersistence:
    """Get the global funnel session persistence instance."""
    global _funnel_session_persistence
    if _funnel_session_persistence is None:
        from config.settings import get_funnel_settings
        settings = get_funnel_settings()
        _funnel_session_persistence = FunnelSessionPersistence(
            db_path=settings.db_path,
            ttl_hours=settings.session_ttl_hours,
            id_prefix=settings.session_id_prefix,
        )
    return _funnel_session_persistence
