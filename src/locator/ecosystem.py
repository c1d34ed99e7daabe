"""Location ecosystem: the single entry point composing cache, strategies and privacy."""

import logging
import threading
from dataclasses import dataclass, field, replace, asdict
from typing import Optional, Dict, Any, List, Callable, Union

from .errors import (
    UnknownLocationError,
    LocationError,
    PermissionDeniedError,
    AccessDeniedError,
    classify_error,
)
from .geo import haversine_distance
from .models import Position, PermissionStatus, Strategy, now_ms
from .monitoring import PerformanceMonitor, ErrorTracker, UsageAnalytics, format_timestamp
from .position_cache import PositionCache, CacheConfig, CacheEventType
from .privacy import PrivacyManager, PrivacyConfig, PrivacyEventType, AuditResult, Accessor
from .scheduler import BaseScheduler
from .source import PositionSourceClient, PermissionProvider
from .strategy import StrategyOptimizer, SelectionConfig, RecoveryConfig

logger = logging.getLogger(__name__)


@dataclass
class MonitoringConfig:
    enable_performance_monitoring: bool = True
    enable_error_tracking: bool = True
    enable_usage_analytics: bool = True


@dataclass
class EcosystemConfig:
    cache: CacheConfig = field(default_factory=CacheConfig)
    strategy: SelectionConfig = field(default_factory=SelectionConfig)
    recovery: RecoveryConfig = field(default_factory=RecoveryConfig)
    privacy: PrivacyConfig = field(default_factory=PrivacyConfig)
    monitoring: MonitoringConfig = field(default_factory=MonitoringConfig)


class LocationEcosystem:
    """
    Orchestrates a position request end to end.

    Request flow: permission check, optional access check, strategy
    execution (retry and fallback live in the optimizer), optional masking,
    then counters, usage analytics and error tracking.

    Background jobs (cache sweep, cache flush, audit retention) are
    registered with the injected scheduler by start() and cancelled by
    destroy().

    Attributes:
        config: Active EcosystemConfig
        cache: PositionCache
        strategy: StrategyOptimizer
        privacy: PrivacyManager
        performance: PerformanceMonitor
        errors: ErrorTracker
        usage: UsageAnalytics
    """

    def __init__(
        self,
        source: PositionSourceClient,
        permissions: Optional[PermissionProvider] = None,
        storage=None,
        config: Optional[EcosystemConfig] = None,
        scheduler: Optional[BaseScheduler] = None,
        clock: Optional[Callable[[], int]] = None,
        sleep: Optional[Callable[[float], None]] = None,
    ):
        self.config = config or EcosystemConfig()
        self.source = source
        self.permissions = permissions
        self.storage = storage
        self.scheduler = scheduler
        if clock is None:
            clock = scheduler.now_ms if scheduler is not None else now_ms
        self._clock = clock
        self._sleep = sleep
        self._permission_lock = threading.Lock()
        self._started = False
        self.initialized = False
        self.created_at = self._clock()

        self._build_components()
        self._build_monitoring()
        self.initialized = True
        logger.info("Location ecosystem initialized")

    def _build_components(self):
        self.cache = PositionCache(
            config=self.config.cache,
            storage=self.storage,
            scheduler=self.scheduler,
            clock=self._clock,
        )
        self.strategy = StrategyOptimizer(
            self.source,
            self.cache,
            selection_config=self.config.strategy,
            recovery_config=self.config.recovery,
            clock=self._clock,
            sleep=self._sleep,
        )
        self.privacy = PrivacyManager(
            config=self.config.privacy,
            scheduler=self.scheduler,
            clock=self._clock,
        )

    def _build_monitoring(self):
        monitoring = self.config.monitoring
        self.performance = PerformanceMonitor(monitoring.enable_performance_monitoring)
        self.errors = ErrorTracker(monitoring.enable_error_tracking, clock=self._clock)
        self.usage = UsageAnalytics(monitoring.enable_usage_analytics, clock=self._clock)

        self.cache.add_listener(CacheEventType.HIT, self._on_cache_hit)
        self.cache.add_listener(CacheEventType.MISS, self._on_cache_miss)
        self.privacy.add_listener(PrivacyEventType.ENCRYPTION, self._on_encryption)

    def _on_cache_hit(self, event):
        self.performance.record_cache_hit()
        self.usage.record_cache_usage("hit")

    def _on_cache_miss(self, event):
        self.performance.record_cache_miss()
        self.usage.record_cache_usage("miss")

    def _on_encryption(self, event):
        if event.result == AuditResult.FAILURE:
            self.errors.track_privacy_error("encryption_failed", event.error)

    # Lifecycle

    def start(self):
        """Register background jobs with the scheduler."""
        if self.scheduler is None:
            logger.warning("No scheduler configured, background jobs disabled")
            return
        self.cache.start()
        self.privacy.start()
        self._started = True
        logger.info("Location ecosystem background jobs started")

    def destroy(self):
        """Cancel jobs, flush the cache and release state."""
        self.cache.destroy()
        self.privacy.destroy()
        self.performance.reset()
        self.errors.reset()
        self.usage.reset()
        self._started = False
        self.initialized = False
        logger.info("Location ecosystem destroyed")

    def __enter__(self):
        self.start()
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.destroy()
        return False

    # Requests

    def get_current_location(
        self,
        strategy: Union[Strategy, str] = Strategy.SMART,
        enable_privacy: bool = True,
        accessor: Optional[Union[Accessor, Dict[str, Any]]] = None,
    ) -> Position:
        """
        Resolve the current position.

        Args:
            strategy: Strategy name or member (default smart)
            enable_privacy: Apply access control and masking
            accessor: Identity of the caller; anonymous callers skip the access check

        Returns:
            Position, masked when privacy is enabled

        Raises:
            PermissionDeniedError: If location permission is not granted
            AccessDeniedError: If the accessor fails the access check
            UnknownLocationError: If strategy is not a known strategy name
            LocationError: Any other classified failure
        """
        start = self._clock()
        name = getattr(strategy, "value", str(strategy))

        try:
            try:
                strategy = Strategy(strategy)
            except ValueError:
                raise UnknownLocationError(f"Unknown strategy: {name}", details=name) from None

            self._ensure_permission()

            if enable_privacy and accessor is not None:
                if isinstance(accessor, dict):
                    accessor = Accessor.from_dict(accessor)
                if not accessor.is_anonymous and not self.privacy.check_access(accessor):
                    raise AccessDeniedError()

            position = self.strategy.execute(strategy)

            if enable_privacy:
                position = self.privacy.mask(position)

        except Exception as e:
            error = classify_error(e)
            response_time = self._clock() - start
            logger.error(f"Location request ({name}) failed: {error.error_type.value} - {error}")
            self.errors.track_location_error(error, context=name)
            self.performance.record_request(response_time, False, error.error_type.value)
            self.usage.record_request(name, response_time, False)
            if error is e:
                raise
            raise error from e

        response_time = self._clock() - start
        self.performance.record_request(response_time, True)
        self.usage.record_request(strategy.value, response_time, True)
        logger.debug(f"Location resolved via {strategy.value} in {response_time}ms")
        return position

    def _ensure_permission(self):
        if self.permissions is None:
            return
        with self._permission_lock:
            status = PermissionStatus(self.permissions.check_permission())
            if status == PermissionStatus.UNDETERMINED:
                logger.info("Location permission undetermined, requesting")
                status = PermissionStatus(self.permissions.request_permission())
        if status != PermissionStatus.GRANTED:
            raise PermissionDeniedError(details=status.value)

    def get_location_history(
        self,
        start_ms: Optional[int] = None,
        end_ms: Optional[int] = None,
        limit: Optional[int] = None,
        enable_privacy: bool = True,
    ) -> List[Position]:
        """Cached positions within [start_ms, end_ms], newest first."""
        try:
            positions = self._history(start_ms, end_ms, limit)
            if enable_privacy:
                positions = [self.privacy.mask(position) for position in positions]
            return positions
        except LocationError as e:
            self.errors.track_location_error(e, context="history")
            raise

    def _history(self, start_ms=None, end_ms=None, limit=None) -> List[Position]:
        positions = [entry.position for entry in self.cache.snapshot()]
        if start_ms is not None:
            positions = [p for p in positions if (p.timestamp or 0) >= start_ms]
        if end_ms is not None:
            positions = [p for p in positions if (p.timestamp or 0) <= end_ms]
        positions.sort(key=lambda p: p.timestamp or 0, reverse=True)
        if limit is not None:
            positions = positions[:limit]
        return positions

    def search_nearby(
        self,
        center: Position,
        radius_meters: float,
        enable_privacy: bool = True,
    ) -> List[Position]:
        """Cached positions within radius_meters of center (great-circle distance)."""
        try:
            nearby = [
                position for position in self._history()
                if haversine_distance(
                    center.latitude, center.longitude, position.latitude, position.longitude
                ) <= radius_meters
            ]
            if enable_privacy:
                nearby = [self.privacy.mask(position) for position in nearby]
            return nearby
        except LocationError as e:
            self.errors.track_location_error(e, context="search_nearby")
            raise

    # Reporting

    def get_status(self) -> Dict[str, Any]:
        cache_stats = self.cache.stats()
        performance = self.performance.metrics()
        latest = self.cache.latest()
        has_permission = True
        if self.permissions is not None:
            has_permission = PermissionStatus(self.permissions.check_permission()) == PermissionStatus.GRANTED

        return {
            "service": {
                "initialized": self.initialized,
                "running": self._started,
                "has_location_permission": has_permission,
                "current_location": self.privacy.mask(latest.position, audit=False).to_dict() if latest else None,
                "started_at": format_timestamp(self.created_at),
            },
            "cache": {
                "enabled": True,
                "current_size": cache_stats["current_size"],
                "hit_rate": cache_stats["hit_rate"],
                "storage_size": cache_stats["storage_size"],
            },
            "strategy": {
                "current_strategy": self.strategy.select_optimal_strategy().value,
                "metrics": self.strategy.get_strategy_metrics(),
            },
            "privacy": {
                "encryption_enabled": self.privacy.config.enable_encryption,
                "masking_enabled": self.privacy.config.enable_masking,
                "access_level": self.privacy.config.access_level.value,
                "audit_log_count": len(self.privacy.get_audit_logs()),
            },
            "monitoring": {
                "total_requests": performance["total_requests"],
                "success_rate": performance["successful_requests"] / max(1, performance["total_requests"]),
                "average_response_time": performance["average_response_time"],
            },
            "generated_at": format_timestamp(self._clock()),
        }

    def get_performance_metrics(self) -> Dict[str, Any]:
        return {
            "performance": self.performance.metrics(),
            "strategy": self.strategy.get_strategy_metrics(),
            "history": self.strategy.get_performance_history(),
            "cache": self.cache.stats(),
            "usage": self.usage.analytics(),
        }

    def get_error_report(self) -> Dict[str, Any]:
        return self.errors.report()

    # Configuration

    def update_config(
        self,
        cache: Optional[Dict[str, Any]] = None,
        strategy: Optional[Dict[str, Any]] = None,
        recovery: Optional[Dict[str, Any]] = None,
        privacy: Optional[Dict[str, Any]] = None,
        monitoring: Optional[Dict[str, Any]] = None,
    ):
        """Merge partial config sections into the running components."""
        if cache:
            self.cache.update_config(**cache)
        if strategy:
            self.strategy.update_selection_config(**strategy)
        if recovery:
            self.strategy.update_recovery_config(**recovery)
        if privacy:
            self.privacy.update_config(**privacy)
        if monitoring:
            self.config.monitoring = replace(self.config.monitoring, **monitoring)
            self.performance.enabled = self.config.monitoring.enable_performance_monitoring
            self.errors.enabled = self.config.monitoring.enable_error_tracking
            self.usage.enabled = self.config.monitoring.enable_usage_analytics

        self.config = replace(
            self.config,
            cache=self.cache.config,
            strategy=self.strategy.selection_config,
            recovery=self.strategy.recovery_config,
            privacy=self.privacy.config,
        )
        sections = {"cache": cache, "strategy": strategy, "recovery": recovery,
                    "privacy": privacy, "monitoring": monitoring}
        logger.info(f"Configuration updated: {', '.join(k for k, v in sections.items() if v)}")

    def reset_config(self):
        """Restore every section to its configured defaults."""
        defaults = EcosystemConfig()
        privacy_defaults = asdict(defaults.privacy)
        # Keep the active key so existing ciphertexts stay readable
        privacy_defaults["encryption_key"] = None
        self.update_config(
            cache=asdict(defaults.cache),
            strategy=asdict(defaults.strategy),
            recovery=asdict(defaults.recovery),
            privacy=privacy_defaults,
            monitoring=asdict(defaults.monitoring),
        )

    def reset(self):
        """Zero counters and strategy metrics and clear the cache."""
        self.cache.clear()
        self.strategy.reset_metrics()
        self.performance.reset()
        self.errors.reset()
        self.usage.reset()
        logger.info("Location ecosystem state reset")
