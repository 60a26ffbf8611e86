"""Tests for scoped notification delivery."""
import pytest

from vanit.modules.notification_fanout import (ADMIN_SCOPE, BOARDING_UPDATE, EMERGENCY_ALERT,
                                               SESSION_ENDED, NotificationFanout, route_scope)


def alert_payload(route_id='R1', **fields):
    alert = {'id': 7, 'priority': 'critical', 'route_id': route_id, 'reporter_role': 'student',
             'reporter_name': 'Ayesha', 'reporter_id': 'S1', 'emergency_type': 'medical',
             'message': 'Student fainted'}
    alert.update(fields)
    return {'alert': alert}


def test_overlapping_scopes_deliver_once(notifier, transport):
    notifier.subscribe_admin('dashboard')
    notifier.subscribe_route('dashboard', 'R1')
    notifier.subscribe_route('route-monitor', 'R1')

    event = notifier.notify(EMERGENCY_ALERT, alert_payload(), route_id='R1')

    assert sorted(handle for handle, _ in transport.deliveries) == ['dashboard', 'route-monitor']
    assert transport.deliveries[0][1] is event


def test_route_events_skip_other_routes(notifier, transport):
    notifier.subscribe_route('r2-monitor', 'R2')

    assert notifier.publish(notifier.create_event(EMERGENCY_ALERT, alert_payload(), route_id='R1')) == 0
    assert transport.deliveries == []


def test_failed_delivery_does_not_stop_others():
    delivered = []

    def flaky(handle, event):
        if handle == 'broken':
            raise ConnectionError('socket closed')
        delivered.append(handle)

    fanout = NotificationFanout(transport=flaky)
    for handle in ('broken', 'a', 'b'):
        fanout.subscribe_admin(handle)

    count = fanout.publish(fanout.create_event(EMERGENCY_ALERT, alert_payload()))

    assert count == 2
    assert sorted(delivered) == ['a', 'b']


def test_default_transport_calls_the_handle():
    fanout = NotificationFanout()
    received = []
    fanout.subscribe_admin(received.append)

    fanout.notify(EMERGENCY_ALERT, alert_payload())

    assert [event.event_type for event in received] == [EMERGENCY_ALERT]


def test_unsubscribe_all_drops_every_scope(notifier, transport):
    notifier.subscribe_admin('conn-1')
    notifier.subscribe_route('conn-1', 'R1')
    notifier.subscribe_captain('conn-1', 'C1')
    notifier.subscribe_reporter('conn-1', 'student', 'S1')
    notifier.subscribe_route('conn-2', 'R1')

    assert notifier.get_subscriptions('conn-1') == ['admin', 'captain:C1', 'reporter:student:S1', 'route:R1']
    assert notifier.unsubscribe_all('conn-1') == 4
    assert notifier.get_subscriptions('conn-1') == []
    assert notifier.subscriber_count(ADMIN_SCOPE) == 0
    assert notifier.subscriber_count(route_scope('R1')) == 1


def test_unsubscribe_single_scope(notifier, transport):
    notifier.subscribe_route('conn-1', 'R1')
    notifier.unsubscribe_route('conn-1', 'R1')
    notifier.unsubscribe_admin('conn-1')

    notifier.notify(EMERGENCY_ALERT, alert_payload(), route_id='R1')

    assert transport.deliveries == []


def test_event_text_and_serialization(notifier):
    event = notifier.create_event(EMERGENCY_ALERT, alert_payload(), route_id='R1')

    assert event.title == 'SOS CRITICAL - R1'
    assert event.message == 'Student Ayesha raised a medical alert: Student fainted'

    data = event.to_dict()
    assert data['scopes'] == ['admin', 'route:R1']
    assert data['event_type'] == EMERGENCY_ALERT
    assert data['payload']['alert']['id'] == 7


def test_session_ended_message(notifier):
    payload = {'session': {'route_id': 'R3', 'captain_id': 'C1', 'onboarded_count': 12},
               'reason': 'expired'}

    event = notifier.create_event(SESSION_ENDED, payload, route_id='R3', captain_id='C1')

    assert event.message == 'Session for route R3 closed (expired) with 12 students onboard'


def test_unknown_event_type_is_rejected(notifier):
    with pytest.raises(ValueError):
        notifier.create_event('bus_update', {})


def test_recent_notifications_newest_first_and_bounded():
    fanout = NotificationFanout(history_size=3)
    for route_id in ('R1', 'R2', 'R1', 'R2'):
        fanout.notify(EMERGENCY_ALERT, alert_payload(route_id), route_id=route_id)

    recent = fanout.get_recent_notifications()
    assert len(recent) == 3
    assert [n['payload']['alert']['route_id'] for n in recent] == ['R2', 'R1', 'R2']
    assert len(fanout.get_recent_notifications(limit=1)) == 1
    assert [n['scopes'] for n in fanout.get_recent_notifications(route_id='R1')] == [['admin', 'route:R1']]


def test_boarding_update_targets_admin_route_and_captain(notifier):
    payload = {'session': {'route_id': 'R1', 'captain_id': 'C1', 'onboarded_count': 1},
               'event': {'student_id': 'S1'}}

    event = notifier.create_event(BOARDING_UPDATE, payload, route_id='R1', captain_id='C1')

    assert [scope for scope in event.to_dict()['scopes']] == ['admin', 'route:R1', 'captain:C1']


def test_events_are_stamped_from_the_shared_clock(notifier, sessions, clock):
    clock.advance(hours=2)
    event = notifier.notify(EMERGENCY_ALERT, alert_payload())
    assert event.to_dict()['created_at'] == '2026-10-17T09:30:00.000000'

    session = sessions.open_session('R1', 'C1').data
    clock.advance(minutes=5)
    sessions.end_session(session.session_id)

    ended = notifier.get_recent_notifications(limit=1)[0]
    assert ended['event_type'] == SESSION_ENDED
    assert ended['created_at'] == ended['payload']['session']['ended_at']
