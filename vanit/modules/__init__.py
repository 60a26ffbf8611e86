# VanIt Transport - Modules Package
"""
Core business logic modules for the VanIt boarding and emergency service.
"""

__version__ = "1.0.0"
__description__ = "Core modules for boarding sessions and emergency alerts"

# Module descriptions
MODULES = {
    'database_manager': 'Database operations and schema management',
    'qr_generator': 'QR code generation and scan payload validation',
    'session_tracker': 'Boarding session lifecycle and expiry sweep',
    'attendance_validator': 'Boarding scan processing and attendance reporting',
    'alert_lifecycle': 'Emergency alert workflow and statistics',
    'notification_fanout': 'Real-time notification delivery to subscribers',
    'entity_locks': 'Per-entity locking for concurrent operations',
    'common': 'Shared result, error and geolocation types'
}


def get_module_info():
    """Get information about available modules"""
    return MODULES
