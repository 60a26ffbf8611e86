# VanIt Transport - Core Package
"""
Boarding and emergency core for the VanIt van transport service.
This package contains the session, attendance, alert and notification managers.
"""

__version__ = "1.0.0"
__author__ = "VanIt Transport Team"
__description__ = "QR boarding sessions and emergency alert tracking for school van transport"

# Import core components for easy access
from .modules.database_manager import DatabaseManager
from .modules.qr_generator import QRGenerator
from .modules.session_tracker import SessionTracker, SessionSweeper, BoardingSession
from .modules.attendance_validator import AttendanceValidator, BoardingEvent
from .modules.alert_lifecycle import AlertLifecycle, EmergencyAlert
from .modules.notification_fanout import NotificationFanout, NotificationEvent
from .modules.common import ErrorType, Geolocation, Result

__all__ = [
    'DatabaseManager',
    'QRGenerator',
    'SessionTracker',
    'SessionSweeper',
    'BoardingSession',
    'AttendanceValidator',
    'BoardingEvent',
    'AlertLifecycle',
    'EmergencyAlert',
    'NotificationFanout',
    'NotificationEvent',
    'ErrorType',
    'Geolocation',
    'Result'
]
