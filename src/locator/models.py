"""Shared position types."""

import math
import time
import dataclasses
from dataclasses import dataclass, asdict
from enum import Enum
from typing import Optional, Dict, Any

from .config import CACHE_KEY_PRECISION, STRATEGY_PROFILES
from .errors import InvalidPositionError


def now_ms() -> int:
    """Current wall-clock time in epoch milliseconds."""
    return int(time.time() * 1000)


class Strategy(str, Enum):
    HIGH_ACCURACY = "high_accuracy"
    BALANCED = "balanced"
    LOW_POWER = "low_power"
    CACHE_FIRST = "cache_first"
    SMART = "smart"


# Strategies that map to a concrete fetch profile
CONCRETE_STRATEGIES = (
    Strategy.HIGH_ACCURACY,
    Strategy.BALANCED,
    Strategy.LOW_POWER,
    Strategy.CACHE_FIRST,
)


class PermissionStatus(str, Enum):
    GRANTED = "granted"
    DENIED = "denied"
    UNDETERMINED = "undetermined"
    RESTRICTED = "restricted"


@dataclass(frozen=True)
class FetchProfile:
    """Parameters handed to the positioning primitive for one strategy."""
    name: str
    high_accuracy: bool
    timeout_ms: int
    maximum_age_ms: int


PROFILES: Dict[Strategy, FetchProfile] = {
    Strategy(name): FetchProfile(name, *values)
    for name, values in STRATEGY_PROFILES.items()
}


@dataclass
class Position:
    """Resolved geographic fix with optional descriptive fields."""
    latitude: float
    longitude: float
    accuracy: Optional[float] = None
    address: Optional[str] = None
    city: Optional[str] = None
    district: Optional[str] = None
    province: Optional[str] = None
    country: Optional[str] = None
    poi: Optional[str] = None
    timestamp: Optional[int] = None
    placeholder: bool = False

    def is_valid(self) -> bool:
        """Check coordinate ranges and accuracy sign."""
        try:
            lat = float(self.latitude)
            lon = float(self.longitude)
        except (TypeError, ValueError):
            return False
        if not (math.isfinite(lat) and math.isfinite(lon)):
            return False
        if not (-90 <= lat <= 90):
            return False
        if not (-180 <= lon <= 180):
            return False
        if self.accuracy is not None and not self.accuracy >= 0:
            return False
        return True

    def replace(self, **changes) -> "Position":
        return dataclasses.replace(self, **changes)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Position":
        known = {f.name for f in dataclasses.fields(cls)}
        return cls(**{k: v for k, v in data.items() if k in known})


@dataclass
class CacheEntry:
    """Cached position with its insertion time."""
    position: Position
    timestamp: int
    accuracy: float = 0.0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "position": self.position.to_dict(),
            "timestamp": self.timestamp,
            "accuracy": self.accuracy,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "CacheEntry":
        return cls(
            position=Position.from_dict(data["position"]),
            timestamp=int(data["timestamp"]),
            accuracy=float(data.get("accuracy") or 0.0),
        )


def validate_position(position: Position) -> Position:
    """
    Reject positions outside [-90, 90] x [-180, 180].

    Raises:
        InvalidPositionError: If the coordinate invariant is violated
    """
    if not position.is_valid():
        raise InvalidPositionError(
            details={
                "latitude": position.latitude,
                "longitude": position.longitude,
                "accuracy": position.accuracy,
            }
        )
    return position


def cache_key(latitude: float, longitude: float, precision: int = CACHE_KEY_PRECISION) -> str:
    """Quantized key so near-identical fixes share one cache cell."""
    return f"{latitude:.{precision}f},{longitude:.{precision}f}"
