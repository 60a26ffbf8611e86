"""
Common Types Module - VanIt Boarding & Emergency Service

Shared value types used by every manager: the operation result returned to
the transport layer, the error taxonomy, geolocation and timestamp helpers.

Managers never raise for expected outcomes such as an unknown token or a
double acknowledgment. They return a Result whose error_type tells the caller
what happened; only storage failures propagate as exceptions.
"""

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, Optional, Union


class ErrorType:
    """Error codes carried by failed results."""
    NOT_FOUND = 'not_found'
    UNKNOWN_TOKEN = 'unknown_token'
    SESSION_CLOSED = 'session_closed'
    INVALID_TRANSITION = 'invalid_transition'
    VALIDATION_ERROR = 'validation_error'

    ALL = (NOT_FOUND, UNKNOWN_TOKEN, SESSION_CLOSED, INVALID_TRANSITION, VALIDATION_ERROR)


@dataclass
class Result:
    """Outcome of a core operation."""
    success: bool
    message: str
    data: Any = None
    error_type: Optional[str] = None
    extra: Dict[str, Any] = field(default_factory=dict)

    @classmethod
    def ok(cls, data: Any = None, message: str = 'OK', **extra) -> 'Result':
        return cls(success=True, message=message, data=data, extra=extra)

    @classmethod
    def fail(cls, error_type: str, message: str, data: Any = None, **extra) -> 'Result':
        return cls(success=False, message=message, data=data, error_type=error_type, extra=extra)

    def to_dict(self) -> Dict[str, Any]:
        """Serialize for JSON responses, expanding dataclass payloads."""
        payload = self.data
        if hasattr(payload, 'to_dict'):
            payload = payload.to_dict()
        elif isinstance(payload, list):
            payload = [item.to_dict() if hasattr(item, 'to_dict') else item for item in payload]

        result = {
            'success': self.success,
            'message': self.message,
            'data': payload
        }
        if self.error_type:
            result['error_type'] = self.error_type
        result.update(self.extra)
        return result


@dataclass(frozen=True)
class Geolocation:
    """Latitude/longitude pair attached to scans and alerts."""
    latitude: float
    longitude: float

    @classmethod
    def from_value(cls, value: Union['Geolocation', Dict[str, Any], tuple, None]) -> Optional['Geolocation']:
        """
        Normalize a geolocation from the forms accepted at the boundary.

        Args:
            value: Geolocation, {'latitude': .., 'longitude': ..} mapping,
                (latitude, longitude) tuple, or None

        Returns:
            Optional[Geolocation]: Parsed geolocation, None when absent

        Raises:
            ValueError: If coordinates are missing or out of range
        """
        if value is None or isinstance(value, cls):
            return value

        if isinstance(value, dict):
            latitude, longitude = value.get('latitude'), value.get('longitude')
            if latitude is None and longitude is None:
                return None
        else:
            latitude, longitude = value

        if latitude is None or longitude is None:
            raise ValueError('Both latitude and longitude are required')

        latitude, longitude = float(latitude), float(longitude)
        if not -90.0 <= latitude <= 90.0 or not -180.0 <= longitude <= 180.0:
            raise ValueError(f'Coordinates out of range: {latitude}, {longitude}')

        return cls(latitude, longitude)

    def to_dict(self) -> Dict[str, float]:
        return {'latitude': self.latitude, 'longitude': self.longitude}


def to_timestamp(value: Optional[datetime]) -> Optional[str]:
    # Fixed width so stored timestamps compare correctly as strings in SQL
    return value.isoformat(timespec='microseconds') if value else None


def from_timestamp(value: Optional[str]) -> Optional[datetime]:
    return datetime.fromisoformat(value) if value else None
