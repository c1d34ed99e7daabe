"""Tests for the location ecosystem orchestrator."""

import pytest
from unittest.mock import Mock

from locator.database import MemoryStorage
from locator.ecosystem import LocationEcosystem, EcosystemConfig
from locator.errors import AccessDeniedError, PermissionDeniedError, LocationTimeoutError, UnknownLocationError
from locator.models import Position, PermissionStatus, Strategy
from locator.position_cache import CacheConfig
from locator.privacy import PrivacyConfig, AccessLevel
from locator.scheduler import ManualScheduler
from locator.source import PositionSourceClient, StaticPermissionProvider
from locator.strategy import RecoveryConfig, FallbackStrategy
from locator.config import CACHE_MAX_SIZE

BEIJING = {"latitude": 39.904211, "longitude": 116.407395, "accuracy": 20.0}


@pytest.fixture
def scheduler():
    return ManualScheduler()


@pytest.fixture
def provider():
    provider = Mock()
    provider.get_location.return_value = dict(BEIJING)
    return provider


@pytest.fixture
def storage():
    return MemoryStorage()


def make_ecosystem(scheduler, provider, storage=None, permissions=None, **sections):
    sections.setdefault("cache", CacheConfig(enable_persistence=storage is not None))
    sections.setdefault("privacy", PrivacyConfig(enable_location_fuzzing=False, encryption_key=None))
    sections.setdefault("recovery", RecoveryConfig(max_retries=1, retry_delay_ms=10))
    return LocationEcosystem(
        PositionSourceClient(provider, clock=scheduler.now_ms),
        permissions=permissions or StaticPermissionProvider(),
        storage=storage,
        config=EcosystemConfig(**sections),
        scheduler=scheduler,
        sleep=scheduler.sleep,
    )


@pytest.fixture
def ecosystem(scheduler, provider):
    return make_ecosystem(scheduler, provider)


def test_get_current_location_masked(ecosystem):
    """Default requests are masked before leaving the ecosystem."""
    position = ecosystem.get_current_location()

    assert position.latitude == 39.9
    assert position.longitude == 116.41

    metrics = ecosystem.performance.metrics()
    assert metrics["total_requests"] == 1
    assert metrics["successful_requests"] == 1


def test_raw_position_cached(ecosystem):
    ecosystem.get_current_location()

    entries = ecosystem.cache.snapshot()
    assert len(entries) == 1
    assert entries[0].position.latitude == 39.904211


def test_privacy_disabled_returns_raw(ecosystem):
    position = ecosystem.get_current_location(strategy="high_accuracy", enable_privacy=False)

    assert position.latitude == 39.904211
    assert position.accuracy == 20.0


def test_permission_denied(scheduler, provider):
    ecosystem = make_ecosystem(
        scheduler, provider, permissions=StaticPermissionProvider(PermissionStatus.DENIED)
    )

    with pytest.raises(PermissionDeniedError):
        ecosystem.get_current_location()

    provider.get_location.assert_not_called()
    assert ecosystem.performance.metrics()["failed_requests"] == 1
    assert ecosystem.get_error_report()["errors_by_type"] == {"PERMISSION_DENIED": 1}


def test_undetermined_permission_requested(scheduler, provider):
    permissions = StaticPermissionProvider(PermissionStatus.UNDETERMINED, grant_on_request=True)
    ecosystem = make_ecosystem(scheduler, provider, permissions=permissions)

    ecosystem.get_current_location()

    assert permissions.check_permission() == PermissionStatus.GRANTED


def test_undetermined_permission_refused(scheduler, provider):
    permissions = StaticPermissionProvider(PermissionStatus.UNDETERMINED)
    ecosystem = make_ecosystem(scheduler, provider, permissions=permissions)

    with pytest.raises(PermissionDeniedError):
        ecosystem.get_current_location()


def test_access_denied_before_positioning(scheduler, provider):
    """Denied accessors never reach the positioning primitive."""
    ecosystem = make_ecosystem(
        scheduler, provider,
        privacy=PrivacyConfig(access_level=AccessLevel.STRICT, enable_location_fuzzing=False),
    )

    with pytest.raises(AccessDeniedError):
        ecosystem.get_current_location(accessor={"user_id": "u1", "authenticated": False})

    provider.get_location.assert_not_called()
    assert ecosystem.privacy.get_audit_logs(user_id="u1")[0].error is not None


def test_authorized_accessor(scheduler, provider):
    ecosystem = make_ecosystem(
        scheduler, provider,
        privacy=PrivacyConfig(access_level=AccessLevel.STRICT, enable_location_fuzzing=False),
    )

    position = ecosystem.get_current_location(accessor={"user_id": "u1", "authenticated": True})

    assert position.latitude == 39.9


def test_anonymous_accessor_skips_check(scheduler, provider):
    ecosystem = make_ecosystem(
        scheduler, provider,
        privacy=PrivacyConfig(access_level=AccessLevel.STRICT, enable_location_fuzzing=False),
    )

    assert ecosystem.get_current_location(accessor={}) is not None


def test_failure_tracked(scheduler, provider):
    provider.get_location.side_effect = TimeoutError("no fix")
    ecosystem = make_ecosystem(scheduler, provider)

    with pytest.raises(LocationTimeoutError):
        ecosystem.get_current_location(strategy=Strategy.BALANCED)

    metrics = ecosystem.performance.metrics()
    assert metrics["failed_requests"] == 1
    assert metrics["error_types"] == {"TIMEOUT": 1}
    report = ecosystem.get_error_report()
    assert report["recent_errors"][0]["context"] == "balanced"


def test_placeholder_fallback(scheduler, provider):
    provider.get_location.side_effect = RuntimeError("boom")
    ecosystem = make_ecosystem(
        scheduler, provider,
        recovery=RecoveryConfig(max_retries=0, fallback=FallbackStrategy.PLACEHOLDER),
    )

    position = ecosystem.get_current_location(strategy="balanced", enable_privacy=False)

    assert position.placeholder is True
    assert ecosystem.get_location_history(enable_privacy=False) == []


def test_cache_counters_fed_by_listeners(ecosystem, provider):
    ecosystem.get_current_location(strategy="cache_first")
    ecosystem.get_current_location(strategy="cache_first")

    metrics = ecosystem.performance.metrics()
    assert metrics["cache_misses"] == 1
    assert metrics["cache_hits"] == 1
    assert provider.get_location.call_count == 1


def test_location_history(scheduler, provider):
    """History is newest first and filtered by time window."""
    provider.get_location.side_effect = [
        {"latitude": 1.0, "longitude": 1.0},
        {"latitude": 2.0, "longitude": 2.0},
        {"latitude": 3.0, "longitude": 3.0},
    ]
    ecosystem = make_ecosystem(scheduler, provider)
    times = []
    for _ in range(3):
        times.append(scheduler.now_ms())
        ecosystem.get_current_location(strategy="high_accuracy")
        scheduler.advance(1000)

    history = ecosystem.get_location_history(enable_privacy=False)
    assert [p.latitude for p in history] == [3.0, 2.0, 1.0]

    assert len(ecosystem.get_location_history(limit=2, enable_privacy=False)) == 2
    window = ecosystem.get_location_history(start_ms=times[1], end_ms=times[1], enable_privacy=False)
    assert [p.latitude for p in window] == [2.0]


def test_history_excludes_expired(scheduler, provider):
    ecosystem = make_ecosystem(scheduler, provider, cache=CacheConfig(ttl_ms=60_000, enable_persistence=False))
    ecosystem.get_current_location(strategy="balanced")
    scheduler.advance(61_000)

    assert ecosystem.get_location_history() == []


def test_history_does_not_count_as_cache_traffic(ecosystem):
    ecosystem.get_current_location(strategy="balanced")
    before = ecosystem.cache.stats()["total_requests"]

    ecosystem.get_location_history()

    assert ecosystem.cache.stats()["total_requests"] == before


def test_search_nearby(scheduler, provider):
    provider.get_location.side_effect = [
        {"latitude": 39.9042, "longitude": 116.4074},
        {"latitude": 39.9142, "longitude": 116.4074},
        {"latitude": 31.2304, "longitude": 121.4737},
    ]
    ecosystem = make_ecosystem(scheduler, provider)
    for _ in range(3):
        ecosystem.get_current_location(strategy="high_accuracy")

    center = Position(latitude=39.9042, longitude=116.4074)
    assert len(ecosystem.search_nearby(center, 2000, enable_privacy=False)) == 2
    assert len(ecosystem.search_nearby(center, 500, enable_privacy=False)) == 1
    assert len(ecosystem.search_nearby(center, 2_000_000)) == 3


def test_start_registers_jobs(scheduler, provider, storage):
    ecosystem = make_ecosystem(scheduler, provider, storage=storage)

    ecosystem.start()

    assert sorted(job.name for job in scheduler.jobs) == [
        "cache-cleanup", "cache-persist", "privacy-retention",
    ]


def test_destroy_flushes_and_stops(scheduler, provider, storage):
    ecosystem = make_ecosystem(scheduler, provider, storage=storage)
    ecosystem.start()
    ecosystem.get_current_location()
    storage.remove("location_cache")

    ecosystem.destroy()

    assert scheduler.jobs == []
    assert storage.read("location_cache") is not None
    assert not ecosystem.initialized


def test_context_manager(scheduler, provider, storage):
    with make_ecosystem(scheduler, provider, storage=storage) as ecosystem:
        assert len(scheduler.jobs) == 3
        ecosystem.get_current_location()
    assert scheduler.jobs == []


def test_cache_restored_across_instances(scheduler, provider, storage):
    first = make_ecosystem(scheduler, provider, storage=storage)
    first.get_current_location(strategy="balanced")
    first.destroy()

    second = make_ecosystem(ManualScheduler(start_ms=scheduler.now_ms()), provider, storage=storage)
    assert len(second.get_location_history()) == 1


def test_get_status(ecosystem):
    ecosystem.get_current_location()

    status = ecosystem.get_status()

    assert status["service"]["initialized"] is True
    assert status["service"]["has_location_permission"] is True
    assert status["service"]["current_location"]["latitude"] == 39.9
    assert status["cache"]["current_size"] == 1
    assert status["privacy"]["encryption_enabled"] is True
    assert status["monitoring"]["total_requests"] == 1
    assert status["monitoring"]["success_rate"] == 1.0
    assert set(status["strategy"]["metrics"]) == {"high_accuracy", "balanced", "low_power", "cache_first"}
    assert status["generated_at"] is not None


def test_get_performance_metrics(ecosystem):
    ecosystem.get_current_location(strategy="low_power")

    metrics = ecosystem.get_performance_metrics()

    assert set(metrics) == {"performance", "strategy", "history", "cache", "usage"}
    assert metrics["strategy"]["low_power"]["usage_count"] == 1
    assert metrics["usage"]["location_requests"]["by_strategy"]["low_power"]["count"] == 1


def test_update_and_reset_config(ecosystem):
    ecosystem.update_config(
        cache={"max_size": 5},
        strategy={"power_weight": 0.0},
        recovery={"max_retries": 0},
        privacy={"access_level": AccessLevel.RELAXED},
        monitoring={"enable_usage_analytics": False},
    )

    assert ecosystem.cache.config.max_size == 5
    assert ecosystem.config.cache.max_size == 5
    assert ecosystem.strategy.selection_config.power_weight == 0.0
    assert ecosystem.strategy.recovery_config.max_retries == 0
    assert ecosystem.privacy.access_control.level == AccessLevel.RELAXED
    assert ecosystem.usage.enabled is False

    ecosystem.reset_config()

    assert ecosystem.cache.config.max_size == CACHE_MAX_SIZE
    assert ecosystem.strategy.selection_config.power_weight == 0.3
    assert ecosystem.usage.enabled is True


def test_reset(ecosystem):
    ecosystem.get_current_location()

    ecosystem.reset()

    assert len(ecosystem.cache) == 0
    assert ecosystem.performance.metrics()["total_requests"] == 0
    assert ecosystem.strategy.get_strategy_metrics()["cache_first"]["usage_count"] == 0
    assert ecosystem.get_error_report()["total_errors"] == 0


def test_unknown_strategy_is_classified(ecosystem, provider):
    with pytest.raises(UnknownLocationError) as exc_info:
        ecosystem.get_current_location(strategy="fastest")

    assert "fastest" in exc_info.value.message
    provider.get_location.assert_not_called()
    metrics = ecosystem.performance.metrics()
    assert metrics["total_requests"] == 1
    assert metrics["failed_requests"] == 1
    assert ecosystem.get_error_report()["recent_errors"][0]["context"] == "fastest"


def test_history_limit_zero(ecosystem):
    ecosystem.get_current_location()

    assert ecosystem.get_location_history(limit=0) == []


def test_destroy_leaves_foreign_jobs(scheduler, provider):
    """Only the ecosystem's own jobs are cancelled."""
    ecosystem = make_ecosystem(scheduler, provider)
    ecosystem.start()
    other = scheduler.every(1000, Mock(), name="other")

    ecosystem.destroy()

    assert scheduler.jobs == [other]


def test_status_does_not_grow_audit_log(ecosystem):
    ecosystem.get_current_location()
    before = ecosystem.get_status()["privacy"]["audit_log_count"]

    ecosystem.get_status()
    after = ecosystem.get_status()

    assert after["privacy"]["audit_log_count"] == before
    assert after["service"]["current_location"]["latitude"] == 39.9
