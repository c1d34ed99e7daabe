"""Command-line entry point and composition root."""

import sys
import json
import logging
from typing import Optional

from .config import (
    LOG_LEVEL,
    DB_PATH,
    DEVICE_LAT,
    DEVICE_LON,
    DEVICE_ACCURACY,
    NOMINATIM_ENABLED,
)
from .database import Database
from .ecosystem import LocationEcosystem, EcosystemConfig
from .errors import LocationError
from .geocoding import GeocodingService
from .models import Strategy
from .scheduler import ThreadScheduler
from .source import PositionSourceClient, PositionProvider, FixedPositionProvider, StaticPermissionProvider

logger = logging.getLogger(__name__)


def configure_logging(level: str = LOG_LEVEL):
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )
    # requests/urllib3 are noisy at DEBUG
    logging.getLogger("urllib3").setLevel(logging.WARNING)


def build_ecosystem(
    provider: Optional[PositionProvider] = None,
    db_path=DB_PATH,
    config: Optional[EcosystemConfig] = None,
    geocoding: bool = NOMINATIM_ENABLED,
) -> LocationEcosystem:
    """
    Wire the production object graph.

    Args:
        provider: Positioning primitive; defaults to the fixed device
            position from DEVICE_LAT / DEVICE_LON
        db_path: SQLite file used for cache persistence
        config: Ecosystem configuration (defaults from the environment)
        geocoding: Enable Nominatim reverse geocoding

    Raises:
        ValueError: If no provider is given and no device position is configured
    """
    if provider is None:
        if DEVICE_LAT is None or DEVICE_LON is None:
            raise ValueError("DEVICE_LAT and DEVICE_LON must be set when no position provider is given")
        provider = FixedPositionProvider(float(DEVICE_LAT), float(DEVICE_LON), DEVICE_ACCURACY)

    geocoder = GeocodingService() if geocoding else None
    source = PositionSourceClient(provider, geocoder=geocoder)
    return LocationEcosystem(
        source,
        permissions=StaticPermissionProvider(),
        storage=Database(db_path),
        config=config,
        scheduler=ThreadScheduler(),
    )


def main(argv=None):
    """Main entry point: resolve the position once and print it as JSON."""
    configure_logging()
    argv = sys.argv[1:] if argv is None else argv

    try:
        strategy = Strategy(argv[0]) if argv else Strategy.SMART
    except ValueError:
        choices = ", ".join(s.value for s in Strategy)
        logger.error(f"Unknown strategy {argv[0]!r} (choose from: {choices})")
        return 2

    try:
        ecosystem = build_ecosystem()
    except ValueError as e:
        logger.error(str(e))
        return 2

    try:
        with ecosystem:
            try:
                position = ecosystem.get_current_location(strategy=strategy)
            except LocationError as e:
                logger.error(f"Could not resolve location: {e.message}")
                print(json.dumps({"error": e.error_type.value, "message": e.message}, indent=2))
                return 1

            print(json.dumps({
                "position": position.to_dict(),
                "status": ecosystem.get_status(),
            }, indent=2, default=str))
    finally:
        if ecosystem.scheduler is not None:
            ecosystem.scheduler.shutdown()
    return 0


if __name__ == "__main__":
    sys.exit(main())
