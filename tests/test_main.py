"""Tests for the command-line entry point."""

import json
import pytest
from unittest.mock import Mock, patch

from locator.database import Database
from locator.main import build_ecosystem, main
from locator.source import FixedPositionProvider


@pytest.fixture
def ecosystem(tmp_path):
    return build_ecosystem(
        provider=FixedPositionProvider(4.711, -74.0721, 30.0),
        db_path=tmp_path / "test.db",
        geocoding=False,
    )


def test_build_ecosystem_wiring(ecosystem):
    """Test the production object graph."""
    assert isinstance(ecosystem.storage, Database)
    assert ecosystem.source.geocoder is None
    assert ecosystem.initialized
    ecosystem.destroy()


def test_build_ecosystem_with_geocoder(tmp_path):
    ecosystem = build_ecosystem(
        provider=FixedPositionProvider(4.711, -74.0721),
        db_path=tmp_path / "test.db",
        geocoding=True,
    )
    assert ecosystem.source.geocoder is not None
    ecosystem.destroy()


@patch('locator.main.DEVICE_LAT', None)
def test_build_ecosystem_requires_position(tmp_path):
    with pytest.raises(ValueError):
        build_ecosystem(db_path=tmp_path / "test.db", geocoding=False)


@patch('locator.main.build_ecosystem')
def test_main_prints_position(mock_build, ecosystem, capsys):
    mock_build.return_value = ecosystem

    assert main(["balanced"]) == 0

    output = json.loads(capsys.readouterr().out)
    assert output["position"]["latitude"] == pytest.approx(4.711, abs=0.01)
    assert output["status"]["monitoring"]["total_requests"] == 1


def test_main_unknown_strategy(capsys):
    assert main(["teleport"]) == 2


@patch('locator.main.build_ecosystem')
def test_main_without_device_position(mock_build):
    mock_build.side_effect = ValueError("DEVICE_LAT and DEVICE_LON must be set")
    assert main([]) == 2


@patch('locator.main.build_ecosystem')
def test_main_reports_location_errors(mock_build, tmp_path, capsys):
    provider = Mock()
    provider.get_location.side_effect = PermissionError("denied")
    mock_build.return_value = build_ecosystem(provider=provider, db_path=tmp_path / "test.db", geocoding=False)

    assert main(["low_power"]) == 1

    output = json.loads(capsys.readouterr().out)
    assert output["error"] == "PERMISSION_DENIED"
