"""Reverse geocoding using OSM Nominatim API."""

import time
import logging
import threading
import requests
from typing import Optional, Dict

from .config import (
    NOMINATIM_API_URL,
    NOMINATIM_RATE_LIMIT_SECONDS,
    NOMINATIM_TIMEOUT,
    NOMINATIM_LANGUAGE,
    PROJECT_NAME,
)

logger = logging.getLogger(__name__)


class GeocodingService:
    """Service for reverse geocoding coordinates to structured address fields."""

    def __init__(
        self,
        api_url: str = NOMINATIM_API_URL,
        language: str = NOMINATIM_LANGUAGE,
        timeout: float = NOMINATIM_TIMEOUT,
    ):
        self.api_url = api_url
        self.language = language
        self.timeout = timeout
        self.last_request_time = 0.0
        self._lock = threading.Lock()

    def reverse_geocode(self, lat: float, lon: float) -> Optional[Dict[str, str]]:
        """
        Reverse geocode coordinates to address fields.

        Uses OSM Nominatim API. The result holds a formatted `address` built
        from the most specific to the least specific component
        (e.g. "Prado Veraniego, Suba, Bogotá, Colombia") plus the separate
        `poi`, `district`, `city`, `province` and `country` fields that
        were present in the response.

        Args:
            lat: Latitude coordinate
            lon: Longitude coordinate

        Returns:
            Dictionary of address fields or None if geocoding fails

        Note:
            Respects Nominatim rate limiting (max 1 request per second).
            Returns None on errors (does not raise exceptions).
        """
        # Rate limiting
        with self._lock:
            now = time.time()
            time_since_last = now - self.last_request_time
            if time_since_last < NOMINATIM_RATE_LIMIT_SECONDS:
                sleep_time = NOMINATIM_RATE_LIMIT_SECONDS - time_since_last
                logger.debug(f"Geocoding rate limiting: sleeping {sleep_time:.1f}s")
                time.sleep(sleep_time)
            self.last_request_time = time.time()

        try:
            params = {
                "lat": lat,
                "lon": lon,
                "format": "json",
                "addressdetails": 1,
                "accept-language": self.language,
            }

            logger.debug(f"Reverse geocoding: ({lat}, {lon})")

            response = requests.get(
                self.api_url,
                params=params,
                timeout=self.timeout,
                headers={"User-Agent": f"{PROJECT_NAME}/1.0"},  # Required by Nominatim
            )

            if response.status_code == 200:
                data = response.json()
                fields = self._parse_address(data.get("address", {}), data.get("name"))
                if fields:
                    logger.debug(f"Geocoded address: {fields.get('address')}")
                    return fields
                logger.debug("No address components found")
                return None
            else:
                logger.debug(f"Geocoding API error {response.status_code}: {response.text[:100]}")
                return None

        except requests.exceptions.Timeout:
            logger.debug("Geocoding API timeout")
            return None
        except requests.exceptions.ConnectionError:
            logger.debug("Geocoding API connection error")
            return None
        except (requests.exceptions.RequestException, ValueError) as e:
            logger.debug(f"Unexpected error in geocoding: {e}")
            return None

    def _parse_address(self, address: Dict[str, str], name: Optional[str] = None) -> Dict[str, str]:
        """Map Nominatim address components onto position fields."""
        fields: Dict[str, str] = {}
        parts = []

        poi = (
            name or
            address.get("amenity") or
            address.get("shop") or
            address.get("tourism") or
            address.get("building")
        )
        if poi:
            fields["poi"] = poi

        # Most specific: street / neighbourhood
        street = address.get("road")
        if street and address.get("house_number"):
            street = f"{street} {address['house_number']}"
        neighbourhood = (
            address.get("neighbourhood") or
            address.get("suburb") or
            address.get("quarter") or
            address.get("village") or
            address.get("residential")
        )
        for part in (street, neighbourhood):
            if part:
                parts.append(part)

        city = (
            address.get("city") or
            address.get("town") or
            address.get("municipality")
        )
        district = (
            address.get("city_district") or
            address.get("district") or
            address.get("borough") or
            address.get("locality") or
            address.get("subdistrict")
        )
        # Only keep district if it is not just the city name again
        if district and district != city and district != neighbourhood:
            fields["district"] = district
            parts.append(district)

        if city and city != neighbourhood:
            fields["city"] = city
            parts.append(city)

        province = address.get("state") or address.get("region") or address.get("province")
        if province:
            fields["province"] = province
            parts.append(province)

        country = address.get("country")
        if country:
            fields["country"] = country
            parts.append(country)

        if parts:
            fields["address"] = ", ".join(parts)
        return fields
