"""Process-wide counters, error tracking and usage analytics."""

import logging
import threading
from datetime import datetime
from typing import Optional, Dict, Any, List, Callable

import pytz

from .config import (
    TZ,
    ERROR_TRACKER_MAX,
    ERROR_TRACKER_KEEP,
    ERROR_REPORT_WINDOW_MS,
    USAGE_REQUESTS_MAX,
    USAGE_CACHE_MAX,
    USAGE_WINDOW_MS,
)
from .errors import LocationError
from .models import now_ms

logger = logging.getLogger(__name__)

# Upper bound (exclusive, ms) and label of each response-time bucket
RESPONSE_TIME_BUCKETS = (
    (500, "<500ms"),
    (1000, "500ms-1s"),
    (2000, "1s-2s"),
    (5000, "2s-5s"),
    (None, ">5s"),
)


def bucket_for(response_time_ms: float) -> str:
    for upper, label in RESPONSE_TIME_BUCKETS:
        if upper is None or response_time_ms < upper:
            return label
    return RESPONSE_TIME_BUCKETS[-1][1]


def format_timestamp(timestamp_ms: Optional[int], timezone: Optional[str] = None) -> Optional[str]:
    """Render epoch ms as ISO 8601 in the given time zone (default: TZ)."""
    if timestamp_ms is None:
        return None
    tz = pytz.timezone(timezone or TZ)
    return datetime.fromtimestamp(timestamp_ms / 1000.0, tz=pytz.UTC).astimezone(tz).isoformat()


def local_date(timestamp_ms: int, timezone: Optional[str] = None) -> str:
    tz = pytz.timezone(timezone or TZ)
    return datetime.fromtimestamp(timestamp_ms / 1000.0, tz=pytz.UTC).astimezone(tz).strftime("%Y-%m-%d")


class PerformanceMonitor:
    """Request counters, response-time distribution and cache hit/miss tallies."""

    def __init__(self, enabled: bool = True):
        self.enabled = enabled
        self._lock = threading.Lock()
        self.reset()

    def reset(self):
        with self._lock:
            self.total_requests = 0
            self.successful_requests = 0
            self.failed_requests = 0
            self.total_response_time = 0.0
            self.min_response_time: Optional[float] = None
            self.max_response_time: Optional[float] = None
            self.response_time_buckets = {label: 0 for _, label in RESPONSE_TIME_BUCKETS}
            self.error_types: Dict[str, int] = {}
            self.cache_hits = 0
            self.cache_misses = 0

    def record_request(self, response_time_ms: float, success: bool, error_type: Optional[str] = None):
        if not self.enabled:
            return
        with self._lock:
            self.total_requests += 1
            self.total_response_time += response_time_ms
            if self.min_response_time is None or response_time_ms < self.min_response_time:
                self.min_response_time = response_time_ms
            if self.max_response_time is None or response_time_ms > self.max_response_time:
                self.max_response_time = response_time_ms
            self.response_time_buckets[bucket_for(response_time_ms)] += 1

            if success:
                self.successful_requests += 1
            else:
                self.failed_requests += 1
                key = error_type or "UNKNOWN_ERROR"
                self.error_types[key] = self.error_types.get(key, 0) + 1

    def record_cache_hit(self, *_):
        if self.enabled:
            with self._lock:
                self.cache_hits += 1

    def record_cache_miss(self, *_):
        if self.enabled:
            with self._lock:
                self.cache_misses += 1

    def metrics(self) -> Dict[str, Any]:
        with self._lock:
            total = self.total_requests
            cache_total = self.cache_hits + self.cache_misses
            return {
                "total_requests": total,
                "successful_requests": self.successful_requests,
                "failed_requests": self.failed_requests,
                "success_rate": self.successful_requests / total if total else 0.0,
                "total_response_time": self.total_response_time,
                "average_response_time": self.total_response_time / total if total else 0.0,
                "min_response_time": self.min_response_time,
                "max_response_time": self.max_response_time,
                "response_time_buckets": dict(self.response_time_buckets),
                "error_types": dict(self.error_types),
                "cache_hits": self.cache_hits,
                "cache_misses": self.cache_misses,
                "cache_hit_rate": self.cache_hits / cache_total if cache_total else 0.0,
            }


class ErrorTracker:
    """
    Bounded record of pipeline and privacy errors.

    Keeps at most ERROR_TRACKER_MAX entries; on overflow only the newest
    ERROR_TRACKER_KEEP survive.
    """

    def __init__(self, enabled: bool = True, clock: Optional[Callable[[], int]] = None):
        self.enabled = enabled
        self._clock = clock or now_ms
        self._errors: List[Dict[str, Any]] = []
        self._lock = threading.Lock()

    def track_location_error(self, error: Exception, context: Optional[str] = None):
        if not self.enabled:
            return
        if isinstance(error, LocationError):
            error_type = error.error_type.value
        else:
            error_type = error.__class__.__name__
        self._append({
            "timestamp": self._clock(),
            "type": error_type,
            "message": str(error),
            "context": context,
        })

    def track_privacy_error(self, kind: str, message: Optional[str] = None):
        if not self.enabled:
            return
        self._append({
            "timestamp": self._clock(),
            "type": "PRIVACY_ERROR",
            "message": f"Privacy error: {kind} - {message or 'unknown error'}",
            "context": "privacy",
        })

    def _append(self, record: Dict[str, Any]):
        with self._lock:
            self._errors.append(record)
            if len(self._errors) > ERROR_TRACKER_MAX:
                self._errors = self._errors[-ERROR_TRACKER_KEEP:]

    def report(self) -> Dict[str, Any]:
        now = self._clock()
        with self._lock:
            errors = list(self._errors)
        recent = [e for e in errors if now - e["timestamp"] < ERROR_REPORT_WINDOW_MS]
        by_type: Dict[str, int] = {}
        for e in errors:
            by_type[e["type"]] = by_type.get(e["type"], 0) + 1
        return {
            "total_errors": len(errors),
            "recent_errors_count": len(recent),
            "errors_by_type": by_type,
            "recent_errors": [
                dict(e, time=format_timestamp(e["timestamp"])) for e in recent
            ],
        }

    def reset(self):
        with self._lock:
            self._errors = []


class UsageAnalytics:
    """Per-request and cache-usage records over a rolling window."""

    def __init__(self, enabled: bool = True, clock: Optional[Callable[[], int]] = None):
        self.enabled = enabled
        self._clock = clock or now_ms
        self._requests: List[Dict[str, Any]] = []
        self._cache_usage: List[Dict[str, Any]] = []
        self._lock = threading.Lock()

    def record_request(self, strategy: str, response_time_ms: float, success: bool):
        if not self.enabled:
            return
        with self._lock:
            self._requests.append({
                "timestamp": self._clock(),
                "strategy": strategy,
                "response_time": response_time_ms,
                "success": success,
            })
            if len(self._requests) > USAGE_REQUESTS_MAX:
                self._requests = self._requests[-(USAGE_REQUESTS_MAX // 2):]

    def record_cache_usage(self, kind: str):
        if not self.enabled:
            return
        with self._lock:
            self._cache_usage.append({"timestamp": self._clock(), "type": kind})
            if len(self._cache_usage) > USAGE_CACHE_MAX:
                self._cache_usage = self._cache_usage[-(USAGE_CACHE_MAX // 2):]

    def analytics(self, timezone: Optional[str] = None) -> Dict[str, Any]:
        now = self._clock()
        with self._lock:
            requests = [r for r in self._requests if now - r["timestamp"] < USAGE_WINDOW_MS]
            cache_usage = [c for c in self._cache_usage if now - c["timestamp"] < USAGE_WINDOW_MS]

        today = local_date(now, timezone)
        by_strategy: Dict[str, Dict[str, Any]] = {}
        for r in requests:
            group = by_strategy.setdefault(r["strategy"], {"count": 0, "successes": 0, "total_time": 0.0})
            group["count"] += 1
            group["successes"] += 1 if r["success"] else 0
            group["total_time"] += r["response_time"]

        hits = sum(1 for c in cache_usage if c["type"] == "hit")
        return {
            "location_requests": {
                "total": len(requests),
                "today": sum(1 for r in requests if local_date(r["timestamp"], timezone) == today),
                "by_strategy": {
                    name: {
                        "count": g["count"],
                        "success_rate": g["successes"] / g["count"],
                        "average_response_time": g["total_time"] / g["count"],
                    }
                    for name, g in by_strategy.items()
                },
                "success_rate": sum(1 for r in requests if r["success"]) / max(1, len(requests)),
                "average_response_time": (
                    sum(r["response_time"] for r in requests) / len(requests) if requests else 0.0
                ),
            },
            "cache_usage": {
                "total": len(cache_usage),
                "hit_rate": hits / max(1, len(cache_usage)),
            },
            "timezone": timezone or TZ,
        }

    def reset(self):
        with self._lock:
            self._requests = []
            self._cache_usage = []
