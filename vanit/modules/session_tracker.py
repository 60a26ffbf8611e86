"""
Session Tracker Module - VanIt Boarding & Emergency Service
Author: VanIt Transport Team
Date: October 2026

This module tracks boarding sessions. A captain opens a session for a route
when requesting a QR code; students board against it until the captain ends
it, a newer session supersedes it, or its time-to-live lapses.

Features:
- One open session per (route, captain) pair, enforced under a pair lock,
  inside a single storage transaction, and by a partial unique index
- Lazy expiry: every read reports a lapsed open session as expired
- Idempotent session end with a single session_ended notification
- Periodic sweep that materializes expiry and archives old sessions
- Active session listings for captain panels and route monitors
"""

import logging
import threading
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, List, Optional

from vanit.modules.common import ErrorType, Result, from_timestamp, to_timestamp
from vanit.modules.entity_locks import EntityLocks
from vanit.modules.notification_fanout import SESSION_ENDED

STATUS_OPEN = 'open'
STATUS_EXPIRED = 'expired'
STATUS_ENDED = 'ended'

REASON_ENDED = 'ended'
REASON_SUPERSEDED = 'superseded'
REASON_EXPIRED = 'expired'


@dataclass
class BoardingSession:
    """Data class for a boarding session."""
    session_id: str
    token: str
    route_id: str
    captain_id: str
    status: str
    onboarded_count: int
    created_at: datetime
    expires_at: datetime
    ended_at: Optional[datetime] = None
    end_reason: Optional[str] = None
    archived_at: Optional[datetime] = None
    qr_payload: Optional[str] = None

    @property
    def is_open(self) -> bool:
        return self.status == STATUS_OPEN

    @classmethod
    def from_row(cls, row: Dict[str, Any], now: datetime) -> 'BoardingSession':
        """Build a session from a storage row, applying lazy expiry."""
        expires_at = from_timestamp(row['expires_at'])
        status = row['status']
        if status == STATUS_OPEN and now >= expires_at:
            status = STATUS_EXPIRED

        return cls(
            session_id=row['session_id'],
            token=row['token'],
            route_id=row['route_id'],
            captain_id=row['captain_id'],
            status=status,
            onboarded_count=row['onboarded_count'],
            created_at=from_timestamp(row['created_at']),
            expires_at=expires_at,
            ended_at=from_timestamp(row['ended_at']) or (expires_at if status == STATUS_EXPIRED else None),
            end_reason=row['end_reason'] or (REASON_EXPIRED if status == STATUS_EXPIRED else None),
            archived_at=from_timestamp(row['archived_at'])
        )

    def to_dict(self) -> Dict[str, Any]:
        data = {
            'session_id': self.session_id,
            'token': self.token,
            'route_id': self.route_id,
            'captain_id': self.captain_id,
            'status': self.status,
            'onboarded_count': self.onboarded_count,
            'created_at': to_timestamp(self.created_at),
            'expires_at': to_timestamp(self.expires_at),
            'ended_at': to_timestamp(self.ended_at),
            'end_reason': self.end_reason,
            'archived_at': to_timestamp(self.archived_at)
        }
        if self.qr_payload:
            data['qr_payload'] = self.qr_payload
        return data


class SessionTracker:
    """
    Boarding session lifecycle manager.
    Owns the open/expired/ended status of every session and the onboarded
    count aggregate; boarding events themselves belong to the validator.
    """

    def __init__(self, database_manager, qr_generator, notifier=None,
                 ttl: timedelta = timedelta(minutes=30),
                 archive_grace: timedelta = timedelta(minutes=60),
                 clock: Callable[[], datetime] = datetime.now,
                 locks: Optional[EntityLocks] = None):
        """
        Initialize the session tracker.

        Args:
            database_manager: Database manager instance
            qr_generator: QR generator used for tokens and QR payloads
            notifier: NotificationFanout receiving session_ended events
            ttl (timedelta): Lifetime of a session from creation
            archive_grace (timedelta): Time after close before archival
            clock: Callable returning the current time
            locks (EntityLocks): Shared per-entity lock registry
        """
        if ttl <= timedelta(0):
            raise ValueError("Session TTL must be positive")

        self.db = database_manager
        self.qr_generator = qr_generator
        self.notifier = notifier
        self.ttl = ttl
        self.archive_grace = archive_grace
        self.clock = clock
        self.locks = locks or EntityLocks()
        self.logger = logging.getLogger(__name__)

    def _with_payload(self, session: BoardingSession) -> BoardingSession:
        if session.is_open:
            session.qr_payload = self.qr_generator.build_session_payload(
                session.token, session.route_id, session.captain_id,
                session.created_at, session.expires_at
            )
        return session

    def open_session(self, route_id, captain_id) -> Result:
        """
        Open a new boarding session, superseding any open one for the pair.

        Args:
            route_id: Route identifier
            captain_id: Captain identifier

        Returns:
            Result: Success with the new BoardingSession (including its QR
            payload), or a validation error
        """
        route_id = str(route_id or '').strip()
        captain_id = str(captain_id or '').strip()
        if not route_id or not captain_id:
            return Result.fail(ErrorType.VALIDATION_ERROR, 'Route and captain are required')

        closed = []
        with self.locks.hold('pair', route_id, captain_id):
            now = self.clock()
            session = BoardingSession(
                session_id=uuid.uuid4().hex,
                token=self.qr_generator.generate_token(),
                route_id=route_id,
                captain_id=captain_id,
                status=STATUS_OPEN,
                onboarded_count=0,
                created_at=now,
                expires_at=now + self.ttl
            )

            with self.db.transaction() as conn:
                rows = conn.execute(
                    """SELECT * FROM boarding_sessions
                       WHERE route_id = ? AND captain_id = ? AND status = 'open'""",
                    (route_id, captain_id)
                ).fetchall()

                for row in rows:
                    prior = BoardingSession.from_row(dict(row), now)
                    if prior.is_open:
                        prior = self._close(conn, prior.session_id, STATUS_ENDED, now, REASON_SUPERSEDED)
                    else:
                        prior = self._close(conn, prior.session_id, STATUS_EXPIRED,
                                            prior.expires_at, REASON_EXPIRED)
                    if prior is not None:
                        closed.append(prior)

                conn.execute(
                    """INSERT INTO boarding_sessions
                       (session_id, token, route_id, captain_id, status, onboarded_count,
                        created_at, expires_at)
                       VALUES (?, ?, ?, ?, 'open', 0, ?, ?)""",
                    (session.session_id, session.token, route_id, captain_id,
                     to_timestamp(session.created_at), to_timestamp(session.expires_at))
                )

        for prior in closed:
            self.logger.info(f"Session {prior.session_id} closed ({prior.end_reason}) by new session "
                             f"{session.session_id} for route {route_id}, captain {captain_id}")
            self._notify_closed(prior)

        self.logger.info(f"Opened boarding session {session.session_id} for route {route_id}, "
                         f"captain {captain_id}, expires {session.expires_at.isoformat()}")
        return Result.ok(self._with_payload(session), 'Boarding session opened',
                         superseded=[prior.session_id for prior in closed])

    def _close(self, conn, session_id: str, status: str, ended_at: datetime,
               reason: str) -> Optional[BoardingSession]:
        """Move a stored-open session to a closed status inside a transaction."""
        cursor = conn.execute(
            """UPDATE boarding_sessions SET status = ?, ended_at = ?, end_reason = ?
               WHERE session_id = ? AND status = 'open'""",
            (status, to_timestamp(ended_at), reason, session_id)
        )
        if cursor.rowcount == 0:
            return None

        row = conn.execute("SELECT * FROM boarding_sessions WHERE session_id = ?",
                           (session_id,)).fetchone()
        return BoardingSession.from_row(dict(row), self.clock())

    def _notify_closed(self, session: Optional[BoardingSession]) -> None:
        if session is None or self.notifier is None:
            return
        self.notifier.notify(
            SESSION_ENDED,
            {'session': session.to_dict(), 'reason': session.end_reason},
            route_id=session.route_id,
            captain_id=session.captain_id
        )

    def get_session(self, session_id: str) -> Result:
        """Get a session by id with its effective status."""
        row = self.db.execute_query(
            "SELECT * FROM boarding_sessions WHERE session_id = ?",
            (session_id,),
            fetch_all=False
        )
        if not row:
            return Result.fail(ErrorType.NOT_FOUND, f"Boarding session {session_id} not found")
        return Result.ok(self._with_payload(BoardingSession.from_row(row, self.clock())))

    def get_session_by_token(self, token: str) -> Result:
        """Look up the session a QR token belongs to."""
        row = None
        if token:
            row = self.db.execute_query(
                "SELECT * FROM boarding_sessions WHERE token = ?",
                (token,),
                fetch_all=False
            )
        if not row:
            return Result.fail(ErrorType.UNKNOWN_TOKEN, 'Invalid or unrecognized QR code')
        return Result.ok(BoardingSession.from_row(row, self.clock()))

    def get_open_session(self, route_id) -> Result:
        """
        Get the current open, non-expired session for a route.

        When several captains serve one route the most recently opened
        session is returned.

        Args:
            route_id: Route identifier

        Returns:
            Result: Success with the BoardingSession, or not_found
        """
        now = self.clock()
        row = self.db.execute_query(
            """SELECT * FROM boarding_sessions
               WHERE route_id = ? AND status = 'open' AND expires_at > ?
               ORDER BY created_at DESC
               LIMIT 1""",
            (str(route_id), to_timestamp(now)),
            fetch_all=False
        )
        if not row:
            return Result.fail(ErrorType.NOT_FOUND, f"No open boarding session for route {route_id}")
        return Result.ok(self._with_payload(BoardingSession.from_row(row, now)))

    def get_active_sessions(self, captain_id=None, route_id=None) -> List[BoardingSession]:
        """
        List open, non-expired sessions, newest first.

        Args:
            captain_id: Restrict to one captain
            route_id: Restrict to one route

        Returns:
            List[BoardingSession]: Active sessions
        """
        now = self.clock()
        query = """SELECT * FROM boarding_sessions
                   WHERE status = 'open' AND expires_at > ? AND archived_at IS NULL"""
        params = [to_timestamp(now)]

        if captain_id is not None:
            query += " AND captain_id = ?"
            params.append(str(captain_id))

        if route_id is not None:
            query += " AND route_id = ?"
            params.append(str(route_id))

        query += " ORDER BY created_at DESC"

        rows = self.db.execute_query(query, tuple(params))
        return [self._with_payload(BoardingSession.from_row(row, now)) for row in rows]

    def end_session(self, session_id: str) -> Result:
        """
        End a boarding session.

        Ending a session that is already ended or expired succeeds without
        changing it and without a second notification.

        Args:
            session_id (str): Session id

        Returns:
            Result: Success with the session snapshot, or not_found
        """
        with self.locks.hold('session', session_id):
            now = self.clock()
            with self.db.transaction() as conn:
                row = conn.execute("SELECT * FROM boarding_sessions WHERE session_id = ?",
                                   (session_id,)).fetchone()
                if row is None:
                    closed, session = None, None
                else:
                    session = BoardingSession.from_row(dict(row), now)
                    if session.is_open:
                        closed = self._close(conn, session_id, STATUS_ENDED, now, REASON_ENDED)
                    elif row['status'] == STATUS_OPEN:
                        closed = self._close(conn, session_id, STATUS_EXPIRED,
                                             session.expires_at, REASON_EXPIRED)
                    else:
                        closed = None

        if session is None:
            self.logger.warning(f"End requested for unknown session {session_id}")
            return Result.fail(ErrorType.NOT_FOUND, f"Boarding session {session_id} not found")

        if closed is None:
            return Result.ok(session, f"Boarding session already {session.status}", already_closed=True)

        self._notify_closed(closed)
        self.logger.info(f"Boarding session {session_id} {closed.status} with "
                         f"{closed.onboarded_count} students onboard")

        if closed.end_reason == REASON_EXPIRED:
            return Result.ok(closed, 'Boarding session already expired', already_closed=True)
        return Result.ok(closed, 'Boarding session ended successfully', already_closed=False)

    def end_captain_session(self, captain_id, route_id=None) -> Result:
        """
        End the captain's open session(s), optionally limited to one route.

        Args:
            captain_id: Captain identifier
            route_id: Route identifier

        Returns:
            Result: Success with the ended sessions, or not_found
        """
        sessions = self.get_active_sessions(captain_id=captain_id, route_id=route_id)
        if not sessions:
            return Result.fail(ErrorType.NOT_FOUND, 'No active boarding session found')

        ended = [self.end_session(session.session_id).data for session in sessions]
        return Result.ok(ended, 'Boarding session ended successfully')

    def sweep_expired_sessions(self) -> Dict[str, int]:
        """
        Materialize lapsed sessions as expired and archive old closed sessions.

        Each lapsed session produces exactly one session_ended notification,
        whether it is closed here, by end_session or by a superseding open.

        Returns:
            Dict[str, int]: Number of sessions expired and archived
        """
        now = self.clock()
        lapsed = self.db.execute_query(
            """SELECT session_id, expires_at FROM boarding_sessions
               WHERE status = 'open' AND expires_at <= ?""",
            (to_timestamp(now),)
        )

        expired = 0
        for row in lapsed:
            with self.locks.hold('session', row['session_id']):
                with self.db.transaction() as conn:
                    closed = self._close(conn, row['session_id'], STATUS_EXPIRED,
                                         from_timestamp(row['expires_at']), REASON_EXPIRED)
            if closed is not None:
                expired += 1
                self._notify_closed(closed)

        cutoff = now - self.archive_grace
        archived = self.db.execute_update(
            """UPDATE boarding_sessions SET archived_at = ?
               WHERE status != 'open' AND archived_at IS NULL
               AND COALESCE(ended_at, expires_at) <= ?""",
            (to_timestamp(now), to_timestamp(cutoff))
        )

        if expired or archived:
            self.logger.info(f"Session sweep: {expired} expired, {archived} archived")
        return {'expired': expired, 'archived': archived}


class SessionSweeper:
    """Background thread running the session sweep at a fixed interval."""

    def __init__(self, session_tracker: SessionTracker, interval_seconds: float = 60):
        self.session_tracker = session_tracker
        self.interval_seconds = interval_seconds
        self.logger = logging.getLogger(__name__)
        self._stop_event = threading.Event()
        self._thread = None

    def start(self) -> None:
        if self._thread is not None and self._thread.is_alive():
            return
        self._stop_event.clear()
        self._thread = threading.Thread(target=self._run, name='session-sweeper', daemon=True)
        self._thread.start()
        self.logger.info(f"Session sweeper started (every {self.interval_seconds}s)")

    def _run(self) -> None:
        while not self._stop_event.wait(self.interval_seconds):
            try:
                self.session_tracker.sweep_expired_sessions()
            except Exception as e:
                # The next tick retries; correctness never depends on the sweep
                self.logger.error(f"Session sweep failed: {str(e)}")

        self.session_tracker.db.close_connection()

    def stop(self, timeout: float = 5) -> None:
        self._stop_event.set()
        if self._thread is not None and self._thread.is_alive():
            self._thread.join(timeout=timeout)
        self.logger.info("Session sweeper stopped")
