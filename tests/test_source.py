"""Tests for the position source client and error classification."""

import pytest
from unittest.mock import Mock

import requests

from locator.errors import (
    classify_error,
    LocationErrorType,
    PermissionDeniedError,
    ServiceDisabledError,
    LocationTimeoutError,
    NetworkError,
    InvalidPositionError,
    UnknownLocationError,
)
from locator.models import PROFILES, Strategy, PermissionStatus
from locator.source import PositionSourceClient, FixedPositionProvider, StaticPermissionProvider


PROFILE = PROFILES[Strategy.BALANCED]


def clock():
    return 1_700_000_000_000


def test_resolve_fixed_position():
    """Test resolution without a geocoder."""
    client = PositionSourceClient(FixedPositionProvider(4.711, -74.0721, 25.0), clock=clock)

    position = client.resolve_raw(PROFILE)

    assert position.latitude == 4.711
    assert position.longitude == -74.0721
    assert position.accuracy == 25.0
    assert position.timestamp == 1_700_000_000_000
    assert position.address is None


def test_resolve_merges_address_fields():
    """Reverse geocoded fields are copied onto the position."""
    geocoder = Mock()
    geocoder.reverse_geocode.return_value = {
        "address": "Santa Fe, Bogotá",
        "city": "Bogotá",
        "district": "Santa Fe",
        "osm_id": 12345,
    }
    client = PositionSourceClient(FixedPositionProvider(4.6, -74.07), geocoder=geocoder, clock=clock)

    position = client.resolve_raw(PROFILE)

    assert position.city == "Bogotá"
    assert position.district == "Santa Fe"
    assert position.address == "Santa Fe, Bogotá"
    geocoder.reverse_geocode.assert_called_once_with(4.6, -74.07)


def test_geocoder_failure_is_not_fatal():
    geocoder = Mock()
    geocoder.reverse_geocode.side_effect = RuntimeError("geocoder down")
    client = PositionSourceClient(FixedPositionProvider(4.6, -74.07), geocoder=geocoder, clock=clock)

    position = client.resolve_raw(PROFILE)

    assert position.latitude == 4.6
    assert position.city is None


def test_geocoder_returning_none():
    geocoder = Mock()
    geocoder.reverse_geocode.return_value = None
    client = PositionSourceClient(FixedPositionProvider(4.6, -74.07), geocoder=geocoder)

    assert client.reverse_geocode(4.6, -74.07) == {}


def test_profile_passed_to_provider():
    provider = Mock()
    provider.get_location.return_value = {"latitude": 1.0, "longitude": 2.0}
    client = PositionSourceClient(provider, clock=clock)

    position = client.resolve_raw(PROFILES[Strategy.HIGH_ACCURACY])

    provider.get_location.assert_called_once_with(PROFILES[Strategy.HIGH_ACCURACY])
    assert position.accuracy is None


def test_provider_failure_classified():
    """Primitive exceptions surface as taxonomy errors."""
    provider = Mock()
    provider.get_location.side_effect = PermissionError("user said no")
    client = PositionSourceClient(provider)

    with pytest.raises(PermissionDeniedError) as exc_info:
        client.resolve_raw(PROFILE)
    assert isinstance(exc_info.value.__cause__, PermissionError)


def test_out_of_range_coordinates_rejected():
    provider = Mock()
    provider.get_location.return_value = {"latitude": 123.0, "longitude": 2.0}
    client = PositionSourceClient(provider)

    with pytest.raises(InvalidPositionError):
        client.resolve_raw(PROFILE)


def test_missing_coordinates_rejected():
    provider = Mock()
    provider.get_location.return_value = {"longitude": 2.0}
    client = PositionSourceClient(provider)

    with pytest.raises(InvalidPositionError):
        client.resolve_raw(PROFILE)


def test_static_permission_provider():
    """Test request semantics of the static permission provider."""
    granted = StaticPermissionProvider()
    assert granted.check_permission() == PermissionStatus.GRANTED

    undecided = StaticPermissionProvider(PermissionStatus.UNDETERMINED)
    assert undecided.request_permission() == PermissionStatus.DENIED

    grants = StaticPermissionProvider(PermissionStatus.UNDETERMINED, grant_on_request=True)
    assert grants.request_permission() == PermissionStatus.GRANTED
    assert grants.check_permission() == PermissionStatus.GRANTED


@pytest.mark.parametrize("error,expected", [
    (PermissionError("denied"), PermissionDeniedError),
    (TimeoutError(), LocationTimeoutError),
    (requests.exceptions.Timeout(), LocationTimeoutError),
    (ConnectionError("reset"), NetworkError),
    (requests.exceptions.ConnectionError(), NetworkError),
    (RuntimeError("Location permission not granted"), PermissionDeniedError),
    (RuntimeError("Location services are disabled"), ServiceDisabledError),
    (RuntimeError("request timed out"), LocationTimeoutError),
    (RuntimeError("network unreachable"), NetworkError),
    (RuntimeError("boom"), UnknownLocationError),
])
def test_classify_error(error, expected):
    """Test mapping of primitive exceptions onto the taxonomy."""
    assert isinstance(classify_error(error), expected)


def test_classify_error_keeps_location_errors():
    error = NetworkError()
    assert classify_error(error) is error


def test_error_messages_and_types():
    error = LocationTimeoutError(details="gps")
    assert error.error_type == LocationErrorType.TIMEOUT
    assert error.details == "gps"
    assert "timed out" in str(error)
