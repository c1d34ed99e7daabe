"""Position source client: platform positioning primitive plus reverse geocoder."""

import logging
from typing import Optional, Dict, Any, Callable

from .config import ACCURACY_WARNING_THRESHOLD
from .errors import classify_error, InvalidPositionError
from .models import Position, FetchProfile, PermissionStatus, validate_position, now_ms

logger = logging.getLogger(__name__)

ADDRESS_FIELDS = ("address", "city", "district", "province", "country", "poi")


class PositionProvider:
    """
    Interface of the platform positioning primitive.

    get_location() returns a dict with at least `latitude` and `longitude`
    and optionally `accuracy`, and raises on failure.
    """

    def get_location(self, profile: FetchProfile) -> Dict[str, Any]:
        raise NotImplementedError


class FixedPositionProvider(PositionProvider):
    """Provider for stationary hosts whose location is configured, not measured."""

    def __init__(self, latitude: float, longitude: float, accuracy: float = 50.0):
        self.latitude = latitude
        self.longitude = longitude
        self.accuracy = accuracy

    def get_location(self, profile: FetchProfile) -> Dict[str, Any]:
        return {
            "latitude": self.latitude,
            "longitude": self.longitude,
            "accuracy": self.accuracy,
        }


class PermissionProvider:
    """Interface of the platform permission API."""

    def check_permission(self) -> PermissionStatus:
        raise NotImplementedError

    def request_permission(self) -> PermissionStatus:
        raise NotImplementedError


class StaticPermissionProvider(PermissionProvider):
    """Permission provider with a fixed answer; request() grants if `grant_on_request`."""

    def __init__(self, status: PermissionStatus = PermissionStatus.GRANTED, grant_on_request: bool = False):
        self.status = status
        self.grant_on_request = grant_on_request

    def check_permission(self) -> PermissionStatus:
        return self.status

    def request_permission(self) -> PermissionStatus:
        if self.grant_on_request:
            self.status = PermissionStatus.GRANTED
        elif self.status != PermissionStatus.GRANTED:
            self.status = PermissionStatus.DENIED
        return self.status


class PositionSourceClient:
    """
    Resolve the current raw position.

    Wraps the injected positioning primitive and the optional reverse
    geocoder. Primitive failures are classified into the location error
    taxonomy; geocoding failures are not fatal and only leave the address
    fields empty.

    Attributes:
        provider: PositionProvider implementation
        geocoder: Object with reverse_geocode(lat, lon) or None
    """

    def __init__(
        self,
        provider: PositionProvider,
        geocoder=None,
        clock: Optional[Callable[[], int]] = None,
    ):
        self.provider = provider
        self.geocoder = geocoder
        self._clock = clock or now_ms

    def resolve_raw(self, profile: FetchProfile) -> Position:
        """
        Get a position from the primitive and enrich it with address fields.

        Raises:
            LocationError: Classified primitive failure, or InvalidPositionError
                when the primitive returns out-of-range coordinates
        """
        try:
            raw = self.provider.get_location(profile)
        except Exception as e:
            error = classify_error(e)
            logger.debug(f"Positioning primitive failed ({profile.name}): {error.error_type.value} - {e}")
            raise error from e

        try:
            latitude = float(raw["latitude"])
            longitude = float(raw["longitude"])
        except (KeyError, TypeError, ValueError) as e:
            raise InvalidPositionError(details=raw) from e

        accuracy = raw.get("accuracy")
        position = Position(
            latitude=latitude,
            longitude=longitude,
            accuracy=float(accuracy) if accuracy is not None else None,
            timestamp=self._clock(),
        )
        validate_position(position)

        if position.accuracy is not None and position.accuracy > ACCURACY_WARNING_THRESHOLD:
            logger.warning(f"Low positioning accuracy: {position.accuracy:.0f}m ({profile.name})")

        address = self.reverse_geocode(latitude, longitude)
        if address:
            position = position.replace(**{k: v for k, v in address.items() if k in ADDRESS_FIELDS})
        return position

    def reverse_geocode(self, lat: float, lon: float) -> Dict[str, str]:
        """Address fields for a coordinate; empty when no geocoder is configured or it fails."""
        if self.geocoder is None:
            return {}
        try:
            return self.geocoder.reverse_geocode(lat, lon) or {}
        except Exception as e:
            logger.warning(f"Reverse geocoding failed for ({lat}, {lon}): {e}")
            return {}
