"""
Attendance Validator Module - VanIt Boarding & Emergency Service
Author: VanIt Transport Team
Date: October 2026

This module turns QR scans into boarding events. A student's device submits
what it decoded from the captain's QR code; the validator resolves it to a
boarding session and records the student as onboard exactly once.

Features:
- Scan payload normalization (raw token, signed JSON, base64 JSON)
- Session window validation with audit rows for rejected scans
- Idempotent boarding: repeated scans return the original event
- Atomic event insert and onboarded count increment
- Live boarding updates to admins, route monitors and the captain
- Attendance logs, student history and boarding statistics
"""

import logging
import sqlite3
from dataclasses import dataclass
from datetime import date, datetime, timedelta
from typing import Any, Callable, Dict, List, Optional

from vanit.modules.common import (ErrorType, Geolocation, Result,
                                  from_timestamp, to_timestamp)
from vanit.modules.entity_locks import EntityLocks
from vanit.modules.notification_fanout import BOARDING_UPDATE
from vanit.modules.session_tracker import BoardingSession


@dataclass
class BoardingEvent:
    """Data class for a boarding event."""
    id: Optional[int]
    session_id: str
    student_id: str
    route_id: str
    captain_id: str
    scanned_at: datetime
    is_valid: bool
    rejection_reason: Optional[str] = None
    geolocation: Optional[Geolocation] = None

    @classmethod
    def from_row(cls, row: Dict[str, Any]) -> 'BoardingEvent':
        geolocation = None
        if row['latitude'] is not None and row['longitude'] is not None:
            geolocation = Geolocation(row['latitude'], row['longitude'])

        return cls(
            id=row['id'],
            session_id=row['session_id'],
            student_id=row['student_id'],
            route_id=row['route_id'],
            captain_id=row['captain_id'],
            scanned_at=from_timestamp(row['scanned_at']),
            is_valid=bool(row['is_valid']),
            rejection_reason=row['rejection_reason'],
            geolocation=geolocation
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            'id': self.id,
            'session_id': self.session_id,
            'student_id': self.student_id,
            'route_id': self.route_id,
            'captain_id': self.captain_id,
            'scanned_at': to_timestamp(self.scanned_at),
            'is_valid': self.is_valid,
            'rejection_reason': self.rejection_reason,
            'geolocation': self.geolocation.to_dict() if self.geolocation else None
        }


class AttendanceValidator:
    """
    Boarding scan processor for QR code based van attendance.
    Records one valid boarding event per student per session and keeps an
    audit trail of every rejected scan against a closed session.
    """

    def __init__(self, database_manager, session_tracker, qr_generator, notifier=None,
                 clock: Callable[[], datetime] = datetime.now,
                 locks: Optional[EntityLocks] = None):
        """
        Initialize the attendance validator.

        Args:
            database_manager: Database manager instance
            session_tracker: SessionTracker owning the boarding sessions
            qr_generator: QR generator used to normalize scanned payloads
            notifier: NotificationFanout receiving boarding updates
            clock: Callable returning the current time
            locks (EntityLocks): Lock registry shared with the session tracker
        """
        self.db = database_manager
        self.session_tracker = session_tracker
        self.qr_generator = qr_generator
        self.notifier = notifier
        self.clock = clock
        self.locks = locks or session_tracker.locks
        self.logger = logging.getLogger(__name__)

    def record_scan(self, token_or_payload, student_id,
                    geolocation=None) -> Result:
        """
        Process a student's QR scan for boarding.

        Args:
            token_or_payload (str): Scanned QR data (raw token, signed JSON
                payload, or base64 of that JSON)
            student_id: Student identifier
            geolocation: Optional Geolocation, mapping or (lat, lon) tuple

        Returns:
            Result: Success with the BoardingEvent (``duplicate`` tells a
            repeat scan apart), or unknown_token / session_closed /
            validation_error
        """
        student_id = str(student_id or '').strip()
        if not student_id:
            return Result.fail(ErrorType.VALIDATION_ERROR, 'Student ID is required')

        try:
            location = Geolocation.from_value(geolocation)
        except (TypeError, ValueError) as e:
            return Result.fail(ErrorType.VALIDATION_ERROR, f'Invalid geolocation: {str(e)}')

        token = self.qr_generator.extract_token(token_or_payload)
        lookup = self.session_tracker.get_session_by_token(token)
        if not lookup.success:
            self.logger.warning(f"Rejected scan by student {student_id}: unknown token")
            return lookup

        session_id = lookup.data.session_id
        with self.locks.hold('session', session_id):
            try:
                outcome, event, session = self._apply_scan(
                    session_id, student_id, location, str(token_or_payload))
            except sqlite3.IntegrityError:
                # Another process boarded the same student first
                existing = self._find_valid_event(session_id, student_id)
                if existing is None:
                    raise
                outcome, event, session = 'duplicate', existing, None

        if outcome == 'closed':
            self.logger.warning(f"Scan by student {student_id} rejected: session {session_id} "
                                f"is {event.rejection_reason}")
            return Result.fail(ErrorType.SESSION_CLOSED,
                               f"Boarding session has {event.rejection_reason}. Ask the captain for a new QR code.",
                               data=event)

        if outcome == 'duplicate':
            self.logger.info(f"Duplicate scan by student {student_id} on session {session_id}")
            return Result.ok(event, 'Already boarded on this session', duplicate=True)

        self.logger.info(f"Student {student_id} boarded route {session.route_id} "
                         f"(session {session_id}, {session.onboarded_count} onboard)")

        if self.notifier is not None:
            self.notifier.notify(
                BOARDING_UPDATE,
                {'session': session.to_dict(), 'event': event.to_dict()},
                route_id=session.route_id,
                captain_id=session.captain_id
            )

        return Result.ok(event, 'Boarding recorded successfully', duplicate=False,
                         onboarded_count=session.onboarded_count)

    def validate_scan(self, token_or_payload) -> Result:
        """
        Check a scanned QR code without recording a boarding.

        Returns:
            Result: Success with the BoardingSession and ``valid`` telling
            whether it still accepts boardings, or unknown_token
        """
        token = self.qr_generator.extract_token(token_or_payload)
        lookup = self.session_tracker.get_session_by_token(token)
        if not lookup.success:
            return lookup

        session = lookup.data
        if session.is_open:
            return Result.ok(session, 'QR code is valid', valid=True)
        return Result.ok(session, f"Boarding session has {session.status}", valid=False)

    def _apply_scan(self, session_id: str, student_id: str, location: Optional[Geolocation],
                    scan_payload: str):
        """Check the session window and write the scan in one transaction."""
        with self.db.transaction() as conn:
            now = self.clock()
            row = conn.execute("SELECT * FROM boarding_sessions WHERE session_id = ?",
                               (session_id,)).fetchone()
            session = BoardingSession.from_row(dict(row), now)

            if not session.is_open:
                event = self._insert_event(conn, session, student_id, now, False,
                                           session.status, location, scan_payload)
                return 'closed', event, session

            existing = self._valid_event(conn, session_id, student_id)
            if existing is not None:
                return 'duplicate', existing, session

            event = self._insert_event(conn, session, student_id, now, True,
                                       None, location, scan_payload)
            conn.execute(
                """UPDATE boarding_sessions SET onboarded_count = onboarded_count + 1
                   WHERE session_id = ?""",
                (session_id,)
            )
            session.onboarded_count += 1
            return 'boarded', event, session

    @staticmethod
    def _valid_event(conn, session_id: str, student_id: str) -> Optional[BoardingEvent]:
        row = conn.execute(
            """SELECT * FROM boarding_events
               WHERE session_id = ? AND student_id = ? AND is_valid = 1""",
            (session_id, student_id)
        ).fetchone()
        return BoardingEvent.from_row(dict(row)) if row else None

    @staticmethod
    def _insert_event(conn, session: BoardingSession, student_id: str, scanned_at: datetime,
                      is_valid: bool, rejection_reason: Optional[str],
                      location: Optional[Geolocation], scan_payload: str) -> BoardingEvent:
        cursor = conn.execute(
            """INSERT INTO boarding_events
               (session_id, student_id, route_id, captain_id, scanned_at, is_valid,
                rejection_reason, latitude, longitude, scan_payload)
               VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)""",
            (session.session_id, student_id, session.route_id, session.captain_id,
             to_timestamp(scanned_at), is_valid, rejection_reason,
             location.latitude if location else None,
             location.longitude if location else None,
             scan_payload)
        )
        return BoardingEvent(
            id=cursor.lastrowid,
            session_id=session.session_id,
            student_id=student_id,
            route_id=session.route_id,
            captain_id=session.captain_id,
            scanned_at=scanned_at,
            is_valid=is_valid,
            rejection_reason=rejection_reason,
            geolocation=location
        )

    def _find_valid_event(self, session_id: str, student_id: str) -> Optional[BoardingEvent]:
        row = self.db.execute_query(
            """SELECT * FROM boarding_events
               WHERE session_id = ? AND student_id = ? AND is_valid = 1""",
            (session_id, student_id),
            fetch_all=False
        )
        return BoardingEvent.from_row(row) if row else None

    def get_session_events(self, session_id: str, include_invalid: bool = False) -> Result:
        """
        Get the boarding events of a session in scan order.

        Args:
            session_id (str): Session id
            include_invalid (bool): Include rejected scans

        Returns:
            Result: Success with a list of BoardingEvent, or not_found
        """
        lookup = self.session_tracker.get_session(session_id)
        if not lookup.success:
            return lookup

        query = "SELECT * FROM boarding_events WHERE session_id = ?"
        if not include_invalid:
            query += " AND is_valid = 1"
        query += " ORDER BY scanned_at, id"

        rows = self.db.execute_query(query, (session_id,))
        return Result.ok([BoardingEvent.from_row(row) for row in rows],
                         session=lookup.data.to_dict())

    @staticmethod
    def _date_bound(value, end: bool = False) -> Optional[str]:
        """Convert a date filter into a timestamp bound; date-only ends are inclusive."""
        if value is None or value == '':
            return None
        if isinstance(value, str):
            value = date.fromisoformat(value) if len(value) == 10 else datetime.fromisoformat(value)
        if not isinstance(value, datetime):
            value = datetime.combine(value, datetime.min.time())
            if end:
                value += timedelta(days=1)
        return to_timestamp(value)

    def _build_filters(self, filters: Dict[str, Any]):
        clauses, params = [], []

        for column in ('student_id', 'captain_id', 'route_id', 'session_id'):
            if filters.get(column) is not None:
                clauses.append(f"{column} = ?")
                params.append(str(filters[column]))

        date_from = self._date_bound(filters.get('date_from'))
        if date_from:
            clauses.append("scanned_at >= ?")
            params.append(date_from)

        date_to = self._date_bound(filters.get('date_to'), end=True)
        if date_to:
            clauses.append("scanned_at < ?")
            params.append(date_to)

        if filters.get('valid_only'):
            clauses.append("is_valid = 1")

        return clauses, params

    def get_attendance_logs(self, filters: Optional[Dict[str, Any]] = None) -> List[BoardingEvent]:
        """
        Get boarding events matching the given filters, newest first.

        Args:
            filters (Dict[str, Any]): Any of student_id, captain_id, route_id,
                session_id, date_from, date_to, valid_only, limit

        Returns:
            List[BoardingEvent]: Matching events

        Raises:
            ValueError: If a date filter cannot be parsed
        """
        filters = filters or {}
        clauses, params = self._build_filters(filters)

        query = "SELECT * FROM boarding_events"
        if clauses:
            query += " WHERE " + " AND ".join(clauses)
        query += " ORDER BY scanned_at DESC, id DESC LIMIT ?"
        params.append(int(filters.get('limit') or 100))

        rows = self.db.execute_query(query, tuple(params))
        return [BoardingEvent.from_row(row) for row in rows]

    def get_student_history(self, student_id, days: int = 30) -> List[BoardingEvent]:
        """
        Get a student's valid boardings over the last ``days`` days.

        Args:
            student_id: Student identifier
            days (int): Number of days to look back

        Returns:
            List[BoardingEvent]: Boardings, newest first
        """
        start = self.clock() - timedelta(days=days)
        rows = self.db.execute_query(
            """SELECT * FROM boarding_events
               WHERE student_id = ? AND is_valid = 1 AND scanned_at >= ?
               ORDER BY scanned_at DESC""",
            (str(student_id), to_timestamp(start))
        )
        return [BoardingEvent.from_row(row) for row in rows]

    def get_attendance_statistics(self, filters: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        """
        Get boarding statistics for the dashboard.

        Args:
            filters (Dict[str, Any]): Optional route_id, captain_id, date_from
                and date_to restrictions on the scans counted

        Returns:
            Dict[str, Any]: Totals, per-route breakdown and live session figures
        """
        filters = dict(filters or {})
        filters.pop('valid_only', None)
        clauses, params = self._build_filters(filters)
        where = " WHERE " + " AND ".join(clauses) if clauses else ""

        totals = self.db.execute_query(
            f"""SELECT COALESCE(SUM(CASE WHEN is_valid = 1 THEN 1 ELSE 0 END), 0) as total_scans,
                       COALESCE(SUM(CASE WHEN is_valid = 0 THEN 1 ELSE 0 END), 0) as rejected_scans,
                       COUNT(DISTINCT CASE WHEN is_valid = 1 THEN student_id END) as unique_students
                FROM boarding_events{where}""",
            tuple(params),
            fetch_all=False
        )

        by_route = self.db.execute_query(
            f"""SELECT route_id, COUNT(*) as scans
                FROM boarding_events{where}{' AND' if where else ' WHERE'} is_valid = 1
                GROUP BY route_id
                ORDER BY scans DESC, route_id""",
            tuple(params)
        )

        active = self.session_tracker.get_active_sessions(
            captain_id=filters.get('captain_id'), route_id=filters.get('route_id'))

        return {
            'total_scans': totals['total_scans'],
            'rejected_scans': totals['rejected_scans'],
            'unique_students': totals['unique_students'],
            'scans_by_route': by_route,
            'active_sessions': len(active),
            'students_onboard': sum(session.onboarded_count for session in active)
        }
