"""
Notification Fanout Module - VanIt Boarding & Emergency Service
Author: VanIt Transport Team
Date: October 2026

This module broadcasts state changes (boarding updates, session ends and
emergency alert transitions) to the live connections interested in them.
Connections subscribe to scopes: the admin dashboard, a route monitor, a
captain panel, or the reporter of an SOS tracking their own alert.

Features:
- Typed notification events with rendered titles and messages
- Scope based subscriptions (admin, route, captain, reporter)
- One delivery per connection per publish across overlapping scopes
- Best-effort delivery: one failing connection never blocks the others
- Bounded cache of recent notifications for pull-based refresh

Fanout is not the system of record. A client that reconnects must re-fetch
current state through the REST API; nothing is replayed.
"""

import logging
import threading
import uuid
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable, Dict, Hashable, List, Optional, Set, Tuple

from jinja2 import Template

from vanit.modules.common import to_timestamp

BOARDING_UPDATE = 'boarding_update'
SESSION_ENDED = 'session_ended'
EMERGENCY_ALERT = 'emergency_alert'
EMERGENCY_ACKNOWLEDGED = 'emergency_acknowledged'
EMERGENCY_RESOLVED = 'emergency_resolved'

EVENT_TYPES = (BOARDING_UPDATE, SESSION_ENDED, EMERGENCY_ALERT,
               EMERGENCY_ACKNOWLEDGED, EMERGENCY_RESOLVED)

Scope = Tuple[str, ...]
ADMIN_SCOPE: Scope = ('admin',)


def route_scope(route_id) -> Scope:
    return ('route', str(route_id))


def captain_scope(captain_id) -> Scope:
    return ('captain', str(captain_id))


def reporter_scope(role, reporter_id) -> Scope:
    return ('reporter', str(role), str(reporter_id))


def scope_name(scope: Scope) -> str:
    """Render a scope as the room-style name used in logs, e.g. 'route:R1'."""
    return ':'.join(scope)


@dataclass
class NotificationEvent:
    """Ephemeral fanout message."""
    event_type: str
    payload: Dict[str, Any]
    scopes: Tuple[Scope, ...]
    title: str = ''
    message: str = ''
    event_id: str = field(default_factory=lambda: uuid.uuid4().hex)
    created_at: str = field(default_factory=lambda: datetime.now().isoformat())

    def to_dict(self) -> Dict[str, Any]:
        return {
            'event_id': self.event_id,
            'event_type': self.event_type,
            'title': self.title,
            'message': self.message,
            'payload': self.payload,
            'scopes': [scope_name(scope) for scope in self.scopes],
            'created_at': self.created_at
        }


class NotificationFanout:
    """
    Publish/subscribe hub between the core managers and the push transport.

    The transport is a callable ``transport(handle, event)`` that writes one
    event to one connection; with Socket.IO the handle is the client sid.
    """

    TEMPLATES = {
        BOARDING_UPDATE: (
            "Student boarded - {{ payload.session.route_id }}",
            "{{ payload.event.student_id }} boarded route {{ payload.session.route_id }} "
            "with captain {{ payload.session.captain_id }} "
            "({{ payload.session.onboarded_count }} onboard)"
        ),
        SESSION_ENDED: (
            "Boarding session closed - {{ payload.session.route_id }}",
            "Session for route {{ payload.session.route_id }} closed ({{ payload.reason }}) "
            "with {{ payload.session.onboarded_count }} students onboard"
        ),
        EMERGENCY_ALERT: (
            "SOS {{ payload.alert.priority|upper }} - {{ payload.alert.route_id }}",
            "{{ payload.alert.reporter_role|title }} {{ payload.alert.reporter_name or payload.alert.reporter_id }} "
            "raised a {{ payload.alert.emergency_type }} alert"
            "{% if payload.alert.message %}: {{ payload.alert.message }}{% endif %}"
        ),
        EMERGENCY_ACKNOWLEDGED: (
            "SOS #{{ payload.alert.id }} acknowledged",
            "Alert #{{ payload.alert.id }} acknowledged by {{ payload.alert.acknowledged_by }}"
        ),
        EMERGENCY_RESOLVED: (
            "SOS #{{ payload.alert.id }} resolved",
            "Alert #{{ payload.alert.id }} resolved by {{ payload.alert.resolved_by }}"
            "{% if payload.alert.resolution_notes %}: {{ payload.alert.resolution_notes }}{% endif %}"
        )
    }

    def __init__(self, transport: Optional[Callable[[Hashable, NotificationEvent], None]] = None,
                 history_size: int = 1000, clock: Callable[[], datetime] = datetime.now):
        """
        Initialize the fanout hub.

        Args:
            transport: Callable delivering one event to one connection handle.
                Defaults to calling the handle itself with the event.
            history_size (int): Number of recent notifications kept for pulls
            clock: Callable returning the current time, used to stamp events
        """
        self.logger = logging.getLogger(__name__)
        self._transport = transport or (lambda handle, event: handle(event))
        self.clock = clock
        self._lock = threading.Lock()
        self._members: Dict[Scope, Set[Hashable]] = {}
        self._recent = deque(maxlen=history_size)

        self._templates = {
            event_type: (Template(title), Template(message))
            for event_type, (title, message) in self.TEMPLATES.items()
        }

        self.logger.info("Notification fanout initialized")

    def set_transport(self, transport: Callable[[Hashable, NotificationEvent], None]) -> None:
        self._transport = transport

    # Subscriptions

    def _add(self, handle: Hashable, scope: Scope) -> None:
        with self._lock:
            self._members.setdefault(scope, set()).add(handle)
        self.logger.debug(f"Connection {handle} subscribed to {scope_name(scope)}")

    def _remove(self, handle: Hashable, scope: Scope) -> None:
        with self._lock:
            members = self._members.get(scope)
            if members is not None:
                members.discard(handle)
                if not members:
                    del self._members[scope]

    def subscribe_admin(self, handle: Hashable) -> None:
        self._add(handle, ADMIN_SCOPE)

    def unsubscribe_admin(self, handle: Hashable) -> None:
        self._remove(handle, ADMIN_SCOPE)

    def subscribe_route(self, handle: Hashable, route_id) -> None:
        self._add(handle, route_scope(route_id))

    def unsubscribe_route(self, handle: Hashable, route_id) -> None:
        self._remove(handle, route_scope(route_id))

    def subscribe_captain(self, handle: Hashable, captain_id) -> None:
        self._add(handle, captain_scope(captain_id))

    def unsubscribe_captain(self, handle: Hashable, captain_id) -> None:
        self._remove(handle, captain_scope(captain_id))

    def subscribe_reporter(self, handle: Hashable, role, reporter_id) -> None:
        self._add(handle, reporter_scope(role, reporter_id))

    def unsubscribe_reporter(self, handle: Hashable, role, reporter_id) -> None:
        self._remove(handle, reporter_scope(role, reporter_id))

    def unsubscribe_all(self, handle: Hashable) -> int:
        """
        Drop every subscription held by a connection (on disconnect).

        Returns:
            int: Number of scopes the connection was removed from
        """
        removed = 0
        with self._lock:
            for scope in list(self._members):
                members = self._members[scope]
                if handle in members:
                    members.discard(handle)
                    removed += 1
                    if not members:
                        del self._members[scope]
        return removed

    def get_subscriptions(self, handle: Hashable) -> List[str]:
        with self._lock:
            return sorted(scope_name(scope) for scope, members in self._members.items()
                          if handle in members)

    def subscriber_count(self, scope: Scope) -> int:
        with self._lock:
            return len(self._members.get(scope, ()))

    # Publishing

    def create_event(self, event_type: str, payload: Dict[str, Any], route_id=None,
                     captain_id=None, reporter: Optional[Tuple[str, Any]] = None,
                     admins: bool = True) -> NotificationEvent:
        """
        Build a notification event with its scopes and rendered text.

        Args:
            event_type (str): One of EVENT_TYPES
            payload (Dict[str, Any]): Entity snapshot
            route_id: Route whose monitors should receive the event
            captain_id: Captain whose panel should receive the event
            reporter (tuple): (role, reporter_id) of an alert's reporter
            admins (bool): Whether the admin dashboard receives the event

        Returns:
            NotificationEvent: Event ready to publish
        """
        if event_type not in EVENT_TYPES:
            raise ValueError(f"Unknown notification event type: {event_type}")

        scopes = []
        if admins:
            scopes.append(ADMIN_SCOPE)
        if route_id is not None:
            scopes.append(route_scope(route_id))
        if captain_id is not None:
            scopes.append(captain_scope(captain_id))
        if reporter is not None:
            scopes.append(reporter_scope(*reporter))

        title_template, message_template = self._templates[event_type]
        return NotificationEvent(
            event_type=event_type,
            payload=payload,
            scopes=tuple(scopes),
            title=title_template.render(payload=payload),
            message=message_template.render(payload=payload),
            created_at=to_timestamp(self.clock())
        )

    def publish(self, event: NotificationEvent) -> int:
        """
        Deliver an event to every connection subscribed to any of its scopes.

        A connection in several matching scopes receives the event once.

        Args:
            event (NotificationEvent): Event to deliver

        Returns:
            int: Number of connections the event was delivered to
        """
        with self._lock:
            targets = set()
            for scope in event.scopes:
                targets.update(self._members.get(scope, ()))
            self._recent.append(event)

        delivered = 0
        for handle in targets:
            try:
                self._transport(handle, event)
                delivered += 1
            except Exception as e:
                self.logger.error(f"Failed to deliver {event.event_type} {event.event_id} to {handle}: {str(e)}")

        self.logger.info(f"Published {event.event_type} to {delivered}/{len(targets)} connections: {event.title}")
        return delivered

    def notify(self, event_type: str, payload: Dict[str, Any], **scope) -> NotificationEvent:
        """Create and publish an event in one step."""
        event = self.create_event(event_type, payload, **scope)
        self.publish(event)
        return event

    def get_recent_notifications(self, limit: int = 10, route_id=None) -> List[Dict[str, Any]]:
        """
        Get recently published notifications, newest first.

        Args:
            limit (int): Number of notifications to return
            route_id: Only notifications addressed to this route

        Returns:
            List[Dict[str, Any]]: Serialized notification events
        """
        with self._lock:
            recent = list(self._recent)

        if route_id is not None:
            wanted = route_scope(route_id)
            recent = [event for event in recent if wanted in event.scopes]

        recent.reverse()
        return [event.to_dict() for event in recent[:limit]]
