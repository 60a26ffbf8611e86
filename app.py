"""
VanIt Boarding & Emergency Service - Main Application
Author: VanIt Transport Team
Date: October 2026

This module serves as the main entry point for the van transport boarding
and emergency service. It builds the Flask application, wires the core
managers together, exposes them over a JSON API and pushes live updates to
dashboards over Socket.IO.

Features:
- QR boarding sessions for captains (open, end, download QR)
- Student boarding scans with duplicate protection
- Emergency SOS alerts with acknowledge/resolve workflow
- Live boarding and SOS updates for admin, route, captain and reporter views
- Attendance and alert statistics for the admin dashboard
"""

from flask import Blueprint, Flask, current_app, jsonify, request, send_file
from flask_socketio import SocketIO, emit
from datetime import datetime
from functools import wraps
import json
import io
import logging
import os

from config import DatabaseConfig, init_config, session_grace, session_ttl
from vanit.modules.alert_lifecycle import AlertLifecycle
from vanit.modules.attendance_validator import AttendanceValidator
from vanit.modules.common import ErrorType, Result
from vanit.modules.database_manager import DatabaseManager
from vanit.modules.entity_locks import EntityLocks
from vanit.modules.notification_fanout import NotificationFanout
from vanit.modules.qr_generator import QRGenerator
from vanit.modules.session_tracker import SessionSweeper, SessionTracker

logger = logging.getLogger(__name__)

socketio = SocketIO()
api = Blueprint('api', __name__, url_prefix='/api')

# HTTP status for each failed result
STATUS_CODES = {
    ErrorType.NOT_FOUND: 404,
    ErrorType.UNKNOWN_TOKEN: 404,
    ErrorType.SESSION_CLOSED: 409,
    ErrorType.INVALID_TRANSITION: 409,
    ErrorType.VALIDATION_ERROR: 400
}


def create_app(config_name=None, clock=datetime.now, **overrides):
    """
    Create and configure the Flask application.

    Args:
        config_name (str): Key into config.config; FLASK_ENV when omitted
        clock: Callable returning the current time, shared by all managers
        **overrides: Configuration values applied over the config class

    Returns:
        Flask: Configured application
    """
    app = Flask(__name__)
    config_class = init_config(app, config_name)
    app.config.update(overrides)
    config_class.init_app(app)

    # Configure logging
    logging.basicConfig(
        level=app.config['LOG_LEVEL'],
        format='%(asctime)s %(levelname)s: %(message)s [in %(pathname)s:%(lineno)d]'
    )

    # Initialize system components
    db_manager = DatabaseManager(
        app.config['DATABASE_PATH'],
        timeout=DatabaseConfig.TIMEOUT,
        journal_mode=DatabaseConfig.JOURNAL_MODE,
        synchronous=DatabaseConfig.SYNCHRONOUS,
        check_same_thread=DatabaseConfig.CHECK_SAME_THREAD
    )
    qr_generator = QRGenerator(
        app.config['QR_SECRET_KEY'],
        token_length=app.config['QR_CODE_SECURITY_TOKEN_LENGTH'],
        box_size=app.config['QR_CODE_SIZE'],
        border=app.config['QR_CODE_BORDER']
    )
    notifier = NotificationFanout(history_size=app.config['NOTIFICATIONS_MAX_QUEUE_SIZE'], clock=clock)
    locks = EntityLocks()

    session_tracker = SessionTracker(
        db_manager, qr_generator, notifier=notifier,
        ttl=session_ttl(app.config),
        archive_grace=session_grace(app.config),
        clock=clock, locks=locks
    )
    attendance_validator = AttendanceValidator(
        db_manager, session_tracker, qr_generator, notifier=notifier,
        clock=clock, locks=locks
    )
    alert_lifecycle = AlertLifecycle(db_manager, notifier=notifier, clock=clock, locks=locks)

    if app.config['WEBSOCKET_ENABLED']:
        socketio.init_app(
            app,
            async_mode='threading',
            cors_allowed_origins=app.config['CORS_ORIGINS'],
            ping_timeout=app.config['WEBSOCKET_PING_TIMEOUT'],
            ping_interval=app.config['WEBSOCKET_PING_INTERVAL']
        )
        notifier.set_transport(
            lambda sid, event: socketio.emit(event.event_type, event.to_dict(), to=sid)
        )

    sweeper = None
    if app.config['SESSION_SWEEP_ENABLED']:
        sweeper = SessionSweeper(session_tracker, app.config['SESSION_SWEEP_INTERVAL_SECONDS'])
        sweeper.start()

    app.extensions['vanit'] = {
        'db': db_manager,
        'qr_generator': qr_generator,
        'notifier': notifier,
        'sessions': session_tracker,
        'attendance': attendance_validator,
        'alerts': alert_lifecycle,
        'sweeper': sweeper
    }

    @app.teardown_appcontext
    def close_db_connection(exception=None):
        db_manager.close_connection()

    app.register_blueprint(api)
    logger.info(f"VanIt service initialized (database {app.config['DATABASE_PATH']})")
    return app


def component(name):
    return current_app.extensions['vanit'][name]


def respond(result: Result, success_code=200):
    """Serialize a manager result with the matching HTTP status."""
    if result.success:
        return jsonify(result.to_dict()), success_code
    return jsonify(result.to_dict()), STATUS_CODES.get(result.error_type, 400)


def bad_request(message):
    return respond(Result.fail(ErrorType.VALIDATION_ERROR, message))


def api_errors(f):
    """Decorator turning unexpected failures into a logged HTTP 500"""
    @wraps(f)
    def decorated_function(*args, **kwargs):
        try:
            return f(*args, **kwargs)
        except Exception as e:
            logger.error(f"Error in {f.__name__}: {str(e)}")
            return jsonify({
                'success': False,
                'message': 'An internal error occurred. Please try again.'
            }), 500
    return decorated_function


def json_body():
    data = request.get_json(silent=True)
    return data if isinstance(data, dict) else {}


def query_flag(name):
    return request.args.get(name, '').lower() in ('1', 'true', 'yes')


def query_int(name, default):
    value = request.args.get(name)
    return int(value) if value not in (None, '') else default


def qr_data_from(data):
    qr_data = data.get('qr_data')
    if isinstance(qr_data, dict):
        # Scanners may post the decoded QR object
        qr_data = json.dumps(qr_data)
    return str(qr_data or '').strip()


def geolocation_from(data):
    """Collect the request's coordinates into one geolocation mapping."""
    if data.get('latitude') is None and data.get('longitude') is None:
        return None
    return {'latitude': data.get('latitude'), 'longitude': data.get('longitude')}


@api.route('/health')
def health():
    """Liveness check"""
    return jsonify({
        'status': 'healthy',
        'service': 'vanit-boarding',
        'timestamp': datetime.now().isoformat()
    })


# Boarding sessions

@api.route('/sessions', methods=['POST'])
@api_errors
def open_session():
    """Captain requests a QR code: open a fresh boarding session"""
    data = json_body()
    result = component('sessions').open_session(data.get('route_id'), data.get('captain_id'))

    if result.success and data.get('include_image'):
        session = result.data
        qr_generator = component('qr_generator')
        result.extra['qr_image'] = qr_generator.generate_qr_image(
            session.qr_payload,
            qr_generator.session_caption(session.route_id, session.captain_id, session.expires_at))

    return respond(result, 201)


@api.route('/sessions/active')
@api_errors
def active_sessions():
    sessions = component('sessions').get_active_sessions(
        captain_id=request.args.get('captain_id'),
        route_id=request.args.get('route_id')
    )
    return respond(Result.ok(sessions, count=len(sessions)))


@api.route('/routes/<route_id>/session')
@api_errors
def route_session(route_id):
    return respond(component('sessions').get_open_session(route_id))


@api.route('/sessions/<session_id>')
@api_errors
def get_session(session_id):
    return respond(component('sessions').get_session(session_id))


@api.route('/sessions/<session_id>/end', methods=['POST'])
@api_errors
def end_session(session_id):
    return respond(component('sessions').end_session(session_id))


@api.route('/captains/<captain_id>/end-session', methods=['POST'])
@api_errors
def end_captain_session(captain_id):
    """Captain ends the ride"""
    data = json_body()
    return respond(component('sessions').end_captain_session(captain_id, data.get('route_id')))


@api.route('/sessions/<session_id>/qr.png')
@api_errors
def session_qr(session_id):
    """Download the QR code of an open session as PNG"""
    result = component('sessions').get_session(session_id)
    if not result.success:
        return respond(result)

    session = result.data
    if not session.is_open:
        return respond(Result.fail(ErrorType.SESSION_CLOSED, f"Boarding session is {session.status}"))

    qr_generator = component('qr_generator')
    png = qr_generator.generate_qr_png(
        session.qr_payload,
        qr_generator.session_caption(session.route_id, session.captain_id, session.expires_at))
    return send_file(
        io.BytesIO(png),
        mimetype='image/png',
        as_attachment=True,
        download_name=f"boarding_{session.route_id}_{session.session_id[:8]}.png"
    )


@api.route('/sessions/<session_id>/events')
@api_errors
def session_events(session_id):
    return respond(component('attendance').get_session_events(
        session_id, include_invalid=query_flag('include_invalid')))


# Boarding scans and attendance

@api.route('/scans', methods=['POST'])
@api_errors
def record_scan():
    """Process a student's boarding QR scan"""
    data = json_body()
    qr_data = qr_data_from(data)
    if not qr_data:
        return bad_request('No QR code data provided')

    result = component('attendance').record_scan(
        qr_data, data.get('student_id'), geolocation=geolocation_from(data))

    if result.success and not result.extra.get('duplicate'):
        return respond(result, 201)
    return respond(result)


@api.route('/scans/validate', methods=['POST'])
@api_errors
def validate_scan():
    """Check a QR code without recording a boarding"""
    qr_data = qr_data_from(json_body())
    if not qr_data:
        return bad_request('No QR code data provided')

    return respond(component('attendance').validate_scan(qr_data))


@api.route('/attendance/logs')
@api_errors
def attendance_logs():
    filters = {key: request.args.get(key)
               for key in ('student_id', 'captain_id', 'route_id', 'session_id', 'date_from', 'date_to')}
    filters['valid_only'] = query_flag('valid_only')

    try:
        filters['limit'] = query_int('limit', 100)
        logs = component('attendance').get_attendance_logs(filters)
    except ValueError as e:
        return bad_request(f"Invalid filter: {str(e)}")

    return respond(Result.ok(logs, count=len(logs)))


@api.route('/attendance/statistics')
@api_errors
def attendance_statistics():
    filters = {key: request.args.get(key) for key in ('route_id', 'captain_id', 'date_from', 'date_to')}

    try:
        stats = component('attendance').get_attendance_statistics(filters)
    except ValueError as e:
        return bad_request(f"Invalid filter: {str(e)}")

    return respond(Result.ok(stats))


@api.route('/students/<student_id>/history')
@api_errors
def student_history(student_id):
    try:
        days = query_int('days', 30)
    except ValueError:
        return bad_request('days must be an integer')

    history = component('attendance').get_student_history(student_id, days=days)
    return respond(Result.ok(history, count=len(history)))


# Emergency alerts

@api.route('/alerts', methods=['POST'])
@api_errors
def create_alert():
    """Raise an SOS alert"""
    data = json_body()
    details = {key: data[key] for key in ('reporter_name', 'phone', 'stop_name', 'emergency_type')
               if data.get(key)}

    result = component('alerts').create(
        data.get('reporter_id'),
        data.get('reporter_role'),
        data.get('route_id'),
        priority=data.get('priority'),
        message=data.get('message') or '',
        geolocation=geolocation_from(data),
        **details
    )
    return respond(result, 201)


@api.route('/alerts')
@api_errors
def list_alerts():
    try:
        limit = query_int('limit', 50)
    except ValueError:
        return bad_request('limit must be an integer')

    alerts = component('alerts').list_alerts(
        status=request.args.get('status'),
        reporter_role=request.args.get('reporter_role'),
        priority=request.args.get('priority'),
        route_id=request.args.get('route_id'),
        limit=limit
    )
    return respond(Result.ok(alerts, count=len(alerts)))


@api.route('/alerts/statistics')
@api_errors
def alert_statistics():
    return respond(Result.ok(component('alerts').get_alert_statistics()))


@api.route('/alerts/<int:alert_id>')
@api_errors
def get_alert(alert_id):
    result = component('alerts').get_alert(alert_id)
    if result.success:
        result.extra['history'] = component('alerts').get_alert_history(alert_id)
    return respond(result)


@api.route('/alerts/<int:alert_id>/acknowledge', methods=['POST'])
@api_errors
def acknowledge_alert(alert_id):
    data = json_body()
    return respond(component('alerts').acknowledge(alert_id, data.get('actor'), data.get('notes')))


@api.route('/alerts/<int:alert_id>/resolve', methods=['POST'])
@api_errors
def resolve_alert(alert_id):
    data = json_body()
    return respond(component('alerts').resolve(alert_id, data.get('actor'), data.get('notes')))


@api.route('/reporters/<role>/<reporter_id>/alerts')
@api_errors
def reporter_alerts(role, reporter_id):
    alerts = component('alerts').get_reporter_alerts(role, reporter_id)
    return respond(Result.ok(alerts, count=len(alerts)))


@api.route('/notifications/recent')
@api_errors
def recent_notifications():
    try:
        limit = query_int('limit', 10)
    except ValueError:
        return bad_request('limit must be an integer')

    notifications = component('notifier').get_recent_notifications(
        limit=limit, route_id=request.args.get('route_id'))
    return respond(Result.ok(notifications, count=len(notifications)))


# WebSocket events

@socketio.on('connect')
def handle_connect(auth=None):
    emit('connected', {'message': 'Connected to real-time updates', 'sid': request.sid})


@socketio.on('disconnect')
def handle_disconnect(reason=None):
    removed = component('notifier').unsubscribe_all(request.sid)
    logger.info(f"Connection {request.sid} closed, dropped {removed} subscriptions")


def subscription_handler(field_names, action):
    """Build a Socket.IO handler that validates fields and updates the sid's scopes"""
    def handler(data=None):
        data = data if isinstance(data, dict) else {}
        values = [data.get(name) for name in field_names]
        if any(value in (None, '') for value in values):
            emit('subscription_error', {'message': f"Required: {', '.join(field_names)}"})
            return

        notifier = component('notifier')
        action(notifier, request.sid, *values)
        emit('subscriptions', {'scopes': notifier.get_subscriptions(request.sid)})
    return handler


SUBSCRIPTION_EVENTS = {
    'subscribe_admin': ((), NotificationFanout.subscribe_admin),
    'unsubscribe_admin': ((), NotificationFanout.unsubscribe_admin),
    'subscribe_route': (('route_id',), NotificationFanout.subscribe_route),
    'unsubscribe_route': (('route_id',), NotificationFanout.unsubscribe_route),
    'subscribe_captain': (('captain_id',), NotificationFanout.subscribe_captain),
    'unsubscribe_captain': (('captain_id',), NotificationFanout.unsubscribe_captain),
    'subscribe_reporter': (('role', 'reporter_id'), NotificationFanout.subscribe_reporter),
    'unsubscribe_reporter': (('role', 'reporter_id'), NotificationFanout.unsubscribe_reporter)
}

for event_name, (field_names, action) in SUBSCRIPTION_EVENTS.items():
    socketio.on_event(event_name, subscription_handler(field_names, action))


if __name__ == '__main__':
    application = create_app()
    socketio.run(
        application,
        host=os.environ.get('HOST', '0.0.0.0'),
        port=int(os.environ.get('PORT', 5000)),
        debug=application.config['DEBUG'],
        allow_unsafe_werkzeug=True
    )
