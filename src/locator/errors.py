"""Location error taxonomy."""

from enum import Enum
from typing import Any, Optional

import requests


class LocationErrorType(str, Enum):
    PERMISSION_DENIED = "PERMISSION_DENIED"
    SERVICE_DISABLED = "SERVICE_DISABLED"
    TIMEOUT = "TIMEOUT"
    NETWORK_ERROR = "NETWORK_ERROR"
    ACCESS_DENIED = "ACCESS_DENIED"
    INTEGRITY_ERROR = "INTEGRITY_ERROR"
    INVALID_COORDINATES = "INVALID_COORDINATES"
    PRIVACY_DISABLED = "PRIVACY_DISABLED"
    UNKNOWN_ERROR = "UNKNOWN_ERROR"


ERROR_MESSAGES = {
    LocationErrorType.PERMISSION_DENIED: "Location permission denied, enable it in the system settings",
    LocationErrorType.SERVICE_DISABLED: "Location service is turned off, enable it and retry",
    LocationErrorType.TIMEOUT: "Location request timed out, retry or check connectivity",
    LocationErrorType.NETWORK_ERROR: "Network connection failed, check network settings",
    LocationErrorType.ACCESS_DENIED: "Access denied: insufficient privileges",
    LocationErrorType.INTEGRITY_ERROR: "Position data failed integrity verification",
    LocationErrorType.INVALID_COORDINATES: "Invalid coordinate data",
    LocationErrorType.PRIVACY_DISABLED: "Requested privacy feature is disabled",
    LocationErrorType.UNKNOWN_ERROR: "Location request failed, please retry",
}


class LocationError(Exception):
    """
    Base class for every failure surfaced by the location pipeline.

    Attributes:
        error_type: Taxonomy member identifying the failure
        details: Optional extra context (original error text, offending values)
    """

    error_type = LocationErrorType.UNKNOWN_ERROR

    def __init__(self, message: Optional[str] = None, details: Any = None):
        self.message = message or ERROR_MESSAGES[self.error_type]
        self.details = details
        super().__init__(self.message)


class PermissionDeniedError(LocationError):
    error_type = LocationErrorType.PERMISSION_DENIED


class ServiceDisabledError(LocationError):
    error_type = LocationErrorType.SERVICE_DISABLED


class LocationTimeoutError(LocationError):
    error_type = LocationErrorType.TIMEOUT


class NetworkError(LocationError):
    error_type = LocationErrorType.NETWORK_ERROR


class AccessDeniedError(LocationError):
    error_type = LocationErrorType.ACCESS_DENIED


class IntegrityError(LocationError):
    error_type = LocationErrorType.INTEGRITY_ERROR


class InvalidPositionError(LocationError):
    error_type = LocationErrorType.INVALID_COORDINATES


class PrivacyDisabledError(LocationError):
    error_type = LocationErrorType.PRIVACY_DISABLED


class UnknownLocationError(LocationError):
    error_type = LocationErrorType.UNKNOWN_ERROR


def classify_error(error: BaseException) -> LocationError:
    """
    Map an arbitrary exception raised by a positioning primitive onto the taxonomy.

    Known exception classes are mapped first (builtin PermissionError,
    TimeoutError, ConnectionError and their requests counterparts), then the
    message is scanned for keywords the platform primitives commonly use.
    Anything else becomes UnknownLocationError.

    Args:
        error: Exception to classify

    Returns:
        A LocationError instance (the same object if already classified)
    """
    if isinstance(error, LocationError):
        return error

    details = str(error) or error.__class__.__name__

    if isinstance(error, PermissionError):
        return PermissionDeniedError(details=details)
    if isinstance(error, (TimeoutError, requests.exceptions.Timeout)):
        return LocationTimeoutError(details=details)
    if isinstance(error, (ConnectionError, requests.exceptions.ConnectionError)):
        return NetworkError(details=details)

    text = details.lower()
    if "permission" in text or "auth" in text:
        return PermissionDeniedError(details=details)
    if "disabled" in text or "service" in text:
        return ServiceDisabledError(details=details)
    if "timeout" in text or "timed out" in text:
        return LocationTimeoutError(details=details)
    if "network" in text or "connection" in text:
        return NetworkError(details=details)

    return UnknownLocationError(details=details)
