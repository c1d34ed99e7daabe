"""Tests for reverse geocoding."""

import pytest
from unittest.mock import Mock, patch

import requests

from locator.geocoding import GeocodingService


@pytest.fixture
def geocoder():
    return GeocodingService(api_url="https://nominatim.example/reverse", language="es", timeout=2)


def ok_response(payload):
    response = Mock()
    response.status_code = 200
    response.json.return_value = payload
    return response


@patch('locator.geocoding.requests.get')
def test_reverse_geocode_success(mock_get, geocoder):
    """Test address fields parsed from a Nominatim response."""
    mock_get.return_value = ok_response({
        "address": {
            "road": "Carrera 7",
            "house_number": "32-16",
            "suburb": "La Macarena",
            "city_district": "Santa Fe",
            "city": "Bogotá",
            "state": "Bogotá, Distrito Capital",
            "country": "Colombia",
        }
    })

    fields = geocoder.reverse_geocode(4.6097, -74.0817)

    assert fields["city"] == "Bogotá"
    assert fields["district"] == "Santa Fe"
    assert fields["province"] == "Bogotá, Distrito Capital"
    assert fields["country"] == "Colombia"
    assert fields["address"] == (
        "Carrera 7 32-16, La Macarena, Santa Fe, Bogotá, Bogotá, Distrito Capital, Colombia"
    )
    assert "poi" not in fields


@patch('locator.geocoding.requests.get')
def test_reverse_geocode_request_parameters(mock_get, geocoder):
    """Test query parameters and User-Agent header."""
    mock_get.return_value = ok_response({"address": {"city": "Quito"}})

    geocoder.reverse_geocode(-0.18, -78.47)

    args, kwargs = mock_get.call_args
    assert args[0] == "https://nominatim.example/reverse"
    assert kwargs["params"]["lat"] == -0.18
    assert kwargs["params"]["accept-language"] == "es"
    assert kwargs["params"]["format"] == "json"
    assert kwargs["timeout"] == 2
    assert "User-Agent" in kwargs["headers"]


@patch('locator.geocoding.requests.get')
def test_reverse_geocode_poi(mock_get, geocoder):
    """Named places are reported as POI."""
    mock_get.return_value = ok_response({
        "name": "Museo del Oro",
        "address": {"amenity": "museum", "city": "Bogotá"},
    })

    fields = geocoder.reverse_geocode(4.6018, -74.0720)

    assert fields["poi"] == "Museo del Oro"


@patch('locator.geocoding.requests.get')
def test_district_same_as_city_skipped(mock_get, geocoder):
    mock_get.return_value = ok_response({"address": {"district": "Lima", "city": "Lima"}})

    fields = geocoder.reverse_geocode(-12.04, -77.04)

    assert "district" not in fields
    assert fields["address"] == "Lima"


@patch('locator.geocoding.requests.get')
def test_reverse_geocode_empty_address(mock_get, geocoder):
    """No address components gives None."""
    mock_get.return_value = ok_response({"address": {}})
    assert geocoder.reverse_geocode(0.0, 0.0) is None


@patch('locator.geocoding.requests.get')
def test_reverse_geocode_http_error(mock_get, geocoder):
    """Test non-200 response."""
    response = Mock()
    response.status_code = 503
    response.text = "Service Unavailable"
    mock_get.return_value = response

    assert geocoder.reverse_geocode(1.0, 2.0) is None


@patch('locator.geocoding.requests.get')
def test_reverse_geocode_timeout(mock_get, geocoder):
    """Test timeout handling."""
    mock_get.side_effect = requests.exceptions.Timeout()
    assert geocoder.reverse_geocode(1.0, 2.0) is None


@patch('locator.geocoding.requests.get')
def test_reverse_geocode_connection_error(mock_get, geocoder):
    mock_get.side_effect = requests.exceptions.ConnectionError()
    assert geocoder.reverse_geocode(1.0, 2.0) is None


@patch('locator.geocoding.requests.get')
def test_reverse_geocode_bad_json(mock_get, geocoder):
    response = ok_response(None)
    response.json.side_effect = ValueError("not json")
    mock_get.return_value = response

    assert geocoder.reverse_geocode(1.0, 2.0) is None


@patch('locator.geocoding.time.sleep')
@patch('locator.geocoding.requests.get')
def test_rate_limiting(mock_get, mock_sleep, geocoder):
    """A second request within the rate limit window sleeps first."""
    mock_get.return_value = ok_response({"address": {"city": "Cali"}})

    geocoder.reverse_geocode(3.45, -76.53)
    geocoder.reverse_geocode(3.45, -76.53)

    assert mock_sleep.call_count == 1
    assert 0 < mock_sleep.call_args[0][0] <= 1
