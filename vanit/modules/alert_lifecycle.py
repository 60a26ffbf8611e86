"""
Alert Lifecycle Module - VanIt Boarding & Emergency Service
Author: VanIt Transport Team
Date: October 2026

This module tracks emergency (SOS) alerts raised by students and captains
from the moment they are raised until an administrator resolves them.

Features:
- SOS creation with reporter, route, priority and location details
- Forward-only status walk: pending -> acknowledged -> resolved
  (direct pending -> resolved allowed)
- Write-once acknowledgment and resolution fields
- Transition log of every status change
- Live notifications to admins, the route and the reporter
- Alert listings, reporter history and statistics
"""

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, List, Optional

from vanit.modules.common import (ErrorType, Geolocation, Result,
                                  from_timestamp, to_timestamp)
from vanit.modules.entity_locks import EntityLocks
from vanit.modules.notification_fanout import (EMERGENCY_ACKNOWLEDGED, EMERGENCY_ALERT,
                                               EMERGENCY_RESOLVED)

STATUS_PENDING = 'pending'
STATUS_ACKNOWLEDGED = 'acknowledged'
STATUS_RESOLVED = 'resolved'
STATUSES = (STATUS_PENDING, STATUS_ACKNOWLEDGED, STATUS_RESOLVED)

ROLES = ('student', 'captain')
PRIORITIES = ('low', 'medium', 'high', 'critical')
DEFAULT_PRIORITY = 'high'

# Statuses each mutation may start from
ALLOWED_FROM = {
    STATUS_ACKNOWLEDGED: (STATUS_PENDING,),
    STATUS_RESOLVED: (STATUS_PENDING, STATUS_ACKNOWLEDGED)
}


@dataclass
class EmergencyAlert:
    """Data class for an emergency alert."""
    id: int
    reporter_id: str
    reporter_role: str
    route_id: str
    priority: str
    message: str
    status: str
    created_at: datetime
    reporter_name: Optional[str] = None
    phone: Optional[str] = None
    stop_name: Optional[str] = None
    emergency_type: str = 'general'
    geolocation: Optional[Geolocation] = None
    acknowledged_at: Optional[datetime] = None
    acknowledged_by: Optional[str] = None
    acknowledgment_notes: Optional[str] = None
    resolved_at: Optional[datetime] = None
    resolved_by: Optional[str] = None
    resolution_notes: Optional[str] = None

    @classmethod
    def from_row(cls, row: Dict[str, Any]) -> 'EmergencyAlert':
        geolocation = None
        if row['latitude'] is not None and row['longitude'] is not None:
            geolocation = Geolocation(row['latitude'], row['longitude'])

        return cls(
            id=row['id'],
            reporter_id=row['reporter_id'],
            reporter_role=row['reporter_role'],
            route_id=row['route_id'],
            priority=row['priority'],
            message=row['message'],
            status=row['status'],
            created_at=from_timestamp(row['created_at']),
            reporter_name=row['reporter_name'],
            phone=row['phone'],
            stop_name=row['stop_name'],
            emergency_type=row['emergency_type'],
            geolocation=geolocation,
            acknowledged_at=from_timestamp(row['acknowledged_at']),
            acknowledged_by=row['acknowledged_by'],
            acknowledgment_notes=row['acknowledgment_notes'],
            resolved_at=from_timestamp(row['resolved_at']),
            resolved_by=row['resolved_by'],
            resolution_notes=row['resolution_notes']
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            'id': self.id,
            'reporter_id': self.reporter_id,
            'reporter_role': self.reporter_role,
            'reporter_name': self.reporter_name,
            'phone': self.phone,
            'route_id': self.route_id,
            'stop_name': self.stop_name,
            'emergency_type': self.emergency_type,
            'priority': self.priority,
            'message': self.message,
            'geolocation': self.geolocation.to_dict() if self.geolocation else None,
            'status': self.status,
            'created_at': to_timestamp(self.created_at),
            'acknowledged_at': to_timestamp(self.acknowledged_at),
            'acknowledged_by': self.acknowledged_by,
            'acknowledgment_notes': self.acknowledgment_notes,
            'resolved_at': to_timestamp(self.resolved_at),
            'resolved_by': self.resolved_by,
            'resolution_notes': self.resolution_notes
        }


class AlertLifecycle:
    """
    Emergency alert state machine.
    Mutations on one alert are serialized; the loser of a race sees the
    winner's state in its invalid_transition result.
    """

    def __init__(self, database_manager, notifier=None,
                 clock: Callable[[], datetime] = datetime.now,
                 locks: Optional[EntityLocks] = None):
        """
        Initialize the alert lifecycle manager.

        Args:
            database_manager: Database manager instance
            notifier: NotificationFanout receiving alert events
            clock: Callable returning the current time
            locks (EntityLocks): Per-entity lock registry
        """
        self.db = database_manager
        self.notifier = notifier
        self.clock = clock
        self.locks = locks or EntityLocks()
        self.logger = logging.getLogger(__name__)

    def create(self, reporter_id, reporter_role: str, route_id, priority: Optional[str] = None,
               message: str = '', geolocation=None, **details) -> Result:
        """
        Raise a new emergency alert.

        Args:
            reporter_id: Student or captain identifier
            reporter_role (str): 'student' or 'captain'
            route_id: Route the reporter is on
            priority (str): low, medium, high or critical (default high)
            message (str): Free text from the reporter
            geolocation: Optional Geolocation, mapping or (lat, lon) tuple
            **details: Optional reporter_name, phone, stop_name, emergency_type

        Returns:
            Result: Success with the pending EmergencyAlert, or validation_error
        """
        reporter_id = str(reporter_id or '').strip()
        route_id = str(route_id or '').strip()
        priority = str(priority or DEFAULT_PRIORITY).lower()
        reporter_role = str(reporter_role or '').lower()

        if not reporter_id or not route_id:
            return Result.fail(ErrorType.VALIDATION_ERROR, 'Reporter and route are required')
        if reporter_role not in ROLES:
            return Result.fail(ErrorType.VALIDATION_ERROR,
                               f"Invalid reporter role '{reporter_role}'. Must be one of: {', '.join(ROLES)}")
        if priority not in PRIORITIES:
            return Result.fail(ErrorType.VALIDATION_ERROR,
                               f"Invalid priority '{priority}'. Must be one of: {', '.join(PRIORITIES)}")

        unknown = set(details) - {'reporter_name', 'phone', 'stop_name', 'emergency_type'}
        if unknown:
            return Result.fail(ErrorType.VALIDATION_ERROR,
                               f"Unknown alert fields: {', '.join(sorted(unknown))}")

        try:
            location = Geolocation.from_value(geolocation)
        except (TypeError, ValueError) as e:
            return Result.fail(ErrorType.VALIDATION_ERROR, f'Invalid geolocation: {str(e)}')

        now = self.clock()
        with self.db.transaction() as conn:
            cursor = conn.execute(
                """INSERT INTO emergency_alerts
                   (reporter_id, reporter_role, reporter_name, phone, route_id, stop_name,
                    emergency_type, priority, message, latitude, longitude, status, created_at)
                   VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, 'pending', ?)""",
                (reporter_id, reporter_role, details.get('reporter_name'), details.get('phone'),
                 route_id, details.get('stop_name'), details.get('emergency_type') or 'general',
                 priority, message or '',
                 location.latitude if location else None,
                 location.longitude if location else None,
                 to_timestamp(now))
            )
            alert_id = cursor.lastrowid
            self._log_transition(conn, alert_id, None, STATUS_PENDING, reporter_id, None, now)
            row = conn.execute("SELECT * FROM emergency_alerts WHERE id = ?", (alert_id,)).fetchone()

        alert = EmergencyAlert.from_row(dict(row))
        self.logger.info(f"SOS #{alert.id} raised by {reporter_role} {reporter_id} on route "
                            f"{route_id} (priority {priority})")

        if self.notifier is not None:
            self.notifier.notify(EMERGENCY_ALERT, {'alert': alert.to_dict()},
                                 route_id=alert.route_id,
                                 reporter=(alert.reporter_role, alert.reporter_id))

        return Result.ok(alert, 'Emergency alert sent successfully')

    @staticmethod
    def _log_transition(conn, alert_id: int, from_status: Optional[str], to_status: str,
                        actor: Optional[str], notes: Optional[str], at: datetime) -> None:
        conn.execute(
            """INSERT INTO alert_transitions
               (alert_id, from_status, to_status, actor, notes, transitioned_at)
               VALUES (?, ?, ?, ?, ?, ?)""",
            (alert_id, from_status, to_status, actor, notes, to_timestamp(at))
        )

    def acknowledge(self, alert_id: int, actor, notes: Optional[str] = None) -> Result:
        """
        Acknowledge a pending alert.

        Args:
            alert_id (int): Alert id
            actor: Administrator acknowledging the alert
            notes (str): Optional acknowledgment notes

        Returns:
            Result: Success with the updated alert, or not_found /
            invalid_transition (carrying current_status and the alert)
        """
        return self._transition(alert_id, STATUS_ACKNOWLEDGED, actor, notes)

    def resolve(self, alert_id: int, actor, notes: Optional[str] = None) -> Result:
        """
        Resolve a pending or acknowledged alert.

        Args:
            alert_id (int): Alert id
            actor: Administrator resolving the alert
            notes (str): Optional resolution notes

        Returns:
            Result: Success with the updated alert, or not_found /
            invalid_transition (carrying current_status and the alert)
        """
        return self._transition(alert_id, STATUS_RESOLVED, actor, notes)

    def _transition(self, alert_id, target: str, actor, notes: Optional[str]) -> Result:
        actor = str(actor or '').strip()
        if not actor:
            return Result.fail(ErrorType.VALIDATION_ERROR, 'Actor is required')

        try:
            alert_id = int(alert_id)
        except (TypeError, ValueError):
            return Result.fail(ErrorType.NOT_FOUND, f"Emergency alert {alert_id} not found")

        if target == STATUS_ACKNOWLEDGED:
            update = """UPDATE emergency_alerts
                        SET status = 'acknowledged', acknowledged_at = ?, acknowledged_by = ?,
                            acknowledgment_notes = ?
                        WHERE id = ? AND status = 'pending'"""
        else:
            update = """UPDATE emergency_alerts
                        SET status = 'resolved', resolved_at = ?, resolved_by = ?,
                            resolution_notes = ?
                        WHERE id = ? AND status IN ('pending', 'acknowledged')"""

        with self.locks.hold('alert', alert_id):
            now = self.clock()
            with self.db.transaction() as conn:
                row = conn.execute("SELECT * FROM emergency_alerts WHERE id = ?", (alert_id,)).fetchone()
                if row is not None and row['status'] in ALLOWED_FROM[target]:
                    conn.execute(update, (to_timestamp(now), actor, notes, alert_id))
                    self._log_transition(conn, alert_id, row['status'], target, actor, notes, now)
                    previous = row['status']
                    row = conn.execute("SELECT * FROM emergency_alerts WHERE id = ?", (alert_id,)).fetchone()
                else:
                    previous = None

        if row is None:
            self.logger.warning(f"{target.title()} requested for unknown alert {alert_id}")
            return Result.fail(ErrorType.NOT_FOUND, f"Emergency alert {alert_id} not found")

        alert = EmergencyAlert.from_row(dict(row))
        if previous is None:
            self.logger.warning(f"Rejected {alert.status} -> {target} on alert {alert_id} by {actor}")
            return Result.fail(ErrorType.INVALID_TRANSITION,
                               f"Alert is already {alert.status}",
                               data=alert, current_status=alert.status)

        self.logger.info(f"Alert {alert_id} {previous} -> {target} by {actor}")

        if self.notifier is not None:
            event_type = EMERGENCY_ACKNOWLEDGED if target == STATUS_ACKNOWLEDGED else EMERGENCY_RESOLVED
            self.notifier.notify(event_type, {'alert': alert.to_dict(), 'previous_status': previous},
                                 route_id=alert.route_id,
                                 reporter=(alert.reporter_role, alert.reporter_id))

        return Result.ok(alert, f"Alert {target} successfully")

    def get_alert(self, alert_id) -> Result:
        """Get an alert by id."""
        row = self.db.execute_query(
            "SELECT * FROM emergency_alerts WHERE id = ?",
            (alert_id,),
            fetch_all=False
        )
        if not row:
            return Result.fail(ErrorType.NOT_FOUND, f"Emergency alert {alert_id} not found")
        return Result.ok(EmergencyAlert.from_row(row))

    def get_alert_history(self, alert_id) -> List[Dict[str, Any]]:
        """
        Get the transition log of an alert, oldest first.

        Args:
            alert_id (int): Alert id

        Returns:
            List[Dict[str, Any]]: Transitions with from/to status, actor and notes
        """
        return self.db.execute_query(
            """SELECT from_status, to_status, actor, notes, transitioned_at
               FROM alert_transitions
               WHERE alert_id = ?
               ORDER BY id""",
            (alert_id,)
        )

    def list_alerts(self, status: Optional[str] = None, reporter_role: Optional[str] = None,
                    priority: Optional[str] = None, route_id=None,
                    limit: int = 50) -> List[EmergencyAlert]:
        """
        List alerts, newest first.

        Args:
            status (str): Filter by status
            reporter_role (str): Filter by reporter role
            priority (str): Filter by priority
            route_id: Filter by route
            limit (int): Maximum number of alerts

        Returns:
            List[EmergencyAlert]: Matching alerts
        """
        query = "SELECT * FROM emergency_alerts WHERE 1=1"
        params = []

        if status:
            query += " AND status = ?"
            params.append(status)

        if reporter_role:
            query += " AND reporter_role = ?"
            params.append(reporter_role)

        if priority:
            query += " AND priority = ?"
            params.append(priority)

        if route_id is not None:
            query += " AND route_id = ?"
            params.append(str(route_id))

        query += " ORDER BY created_at DESC, id DESC LIMIT ?"
        params.append(int(limit))

        rows = self.db.execute_query(query, tuple(params))
        return [EmergencyAlert.from_row(row) for row in rows]

    def get_reporter_alerts(self, reporter_role: str, reporter_id) -> List[EmergencyAlert]:
        """Get every alert raised by one student or captain, newest first."""
        rows = self.db.execute_query(
            """SELECT * FROM emergency_alerts
               WHERE reporter_role = ? AND reporter_id = ?
               ORDER BY created_at DESC, id DESC""",
            (reporter_role, str(reporter_id))
        )
        return [EmergencyAlert.from_row(row) for row in rows]

    def get_alert_statistics(self) -> Dict[str, Any]:
        """
        Get alert counts for the admin dashboard.

        Returns:
            Dict[str, Any]: Totals by status and role, open critical alerts,
            and alerts raised in the last 24 hours
        """
        totals = self.db.execute_query(
            """SELECT COUNT(*) as total,
                      COALESCE(SUM(CASE WHEN status = 'pending' THEN 1 ELSE 0 END), 0) as pending,
                      COALESCE(SUM(CASE WHEN status = 'acknowledged' THEN 1 ELSE 0 END), 0) as acknowledged,
                      COALESCE(SUM(CASE WHEN status = 'resolved' THEN 1 ELSE 0 END), 0) as resolved,
                      COALESCE(SUM(CASE WHEN reporter_role = 'student' THEN 1 ELSE 0 END), 0) as from_students,
                      COALESCE(SUM(CASE WHEN reporter_role = 'captain' THEN 1 ELSE 0 END), 0) as from_captains,
                      COALESCE(SUM(CASE WHEN priority = 'critical' AND status != 'resolved'
                                        THEN 1 ELSE 0 END), 0) as open_critical,
                      COALESCE(SUM(CASE WHEN created_at >= ? THEN 1 ELSE 0 END), 0) as last_24_hours
               FROM emergency_alerts""",
            (to_timestamp(self.clock() - timedelta(hours=24)),),
            fetch_all=False
        )

        return {
            'total': totals['total'],
            'by_status': {status: totals[status] for status in STATUSES},
            'by_role': {'student': totals['from_students'], 'captain': totals['from_captains']},
            'open_critical': totals['open_critical'],
            'last_24_hours': totals['last_24_hours']
        }
