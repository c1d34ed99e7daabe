"""Fetch strategy selection, retry/backoff and fallback."""

import time
import logging
import threading
from dataclasses import dataclass, replace, asdict
from enum import Enum
from typing import Optional, Dict, Any, List, Callable, Tuple

from .config import (
    STRATEGY_ADAPTIVE_SELECTION,
    STRATEGY_PERFORMANCE_WEIGHT,
    STRATEGY_ACCURACY_WEIGHT,
    STRATEGY_POWER_WEIGHT,
    STRATEGY_SUCCESS_RATE_THRESHOLD,
    STRATEGY_RESPONSE_TIME_THRESHOLD_MS,
    STRATEGY_ACCURACY_SCALE_METERS,
    STRATEGY_POWER_EFFICIENCY,
    METRIC_SMOOTHING_FACTOR,
    RECOVERY_MAX_RETRIES,
    RECOVERY_RETRY_DELAY_MS,
    RECOVERY_BACKOFF,
    RECOVERY_FALLBACK,
    RECOVERY_ERROR_THRESHOLD,
    RECOVERY_STALE_AFTER_MS,
    PERFORMANCE_HISTORY_MAX,
    PERFORMANCE_HISTORY_KEEP,
)
from .errors import LocationError, PermissionDeniedError, classify_error
from .models import (
    Position,
    Strategy,
    CONCRETE_STRATEGIES,
    PROFILES,
    validate_position,
    now_ms,
)
from .position_cache import PositionCache
from .source import PositionSourceClient

logger = logging.getLogger(__name__)

# Last-resort placeholder coordinates (Beijing city centre)
PLACEHOLDER_POSITION = {
    "latitude": 39.9042,
    "longitude": 116.4074,
    "address": "Placeholder location",
    "city": "Beijing",
    "district": "Dongcheng",
    "province": "Beijing",
    "accuracy": 100.0,
}


class BackoffStrategy(str, Enum):
    FIXED = "fixed"
    LINEAR = "linear"
    EXPONENTIAL = "exponential"


class FallbackStrategy(str, Enum):
    CACHE = "cache"
    LOW_POWER = "low_power"
    PLACEHOLDER = "placeholder"


@dataclass
class SelectionConfig:
    enable_adaptive_selection: bool = STRATEGY_ADAPTIVE_SELECTION
    performance_weight: float = STRATEGY_PERFORMANCE_WEIGHT
    accuracy_weight: float = STRATEGY_ACCURACY_WEIGHT
    power_weight: float = STRATEGY_POWER_WEIGHT
    success_rate_threshold: float = STRATEGY_SUCCESS_RATE_THRESHOLD
    response_time_threshold_ms: float = STRATEGY_RESPONSE_TIME_THRESHOLD_MS


@dataclass
class RecoveryConfig:
    max_retries: int = RECOVERY_MAX_RETRIES
    retry_delay_ms: int = RECOVERY_RETRY_DELAY_MS
    backoff: BackoffStrategy = BackoffStrategy(RECOVERY_BACKOFF)
    fallback: FallbackStrategy = FallbackStrategy(RECOVERY_FALLBACK)
    error_threshold: int = RECOVERY_ERROR_THRESHOLD
    stale_after_ms: int = RECOVERY_STALE_AFTER_MS


@dataclass
class StrategyMetric:
    """Rolling statistics for one strategy."""
    strategy: str
    power_efficiency: float
    usage_count: int = 0
    error_count: int = 0
    average_response_time: float = 0.0
    average_accuracy: float = 0.0
    success_rate: float = 1.0
    last_used: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


def blend(old: float, sample: float, factor: float = METRIC_SMOOTHING_FACTOR) -> float:
    """
    Running-average update used for strategy metrics.

    An uninitialized (zero) average takes the sample as-is. With the default
    factor of 0.5 this is (old + sample) / 2, which weights the most recent
    sample at one half regardless of how many samples came before.
    """
    if old == 0:
        return float(sample)
    return old + factor * (sample - old)


class StrategyOptimizer:
    """
    Execute position requests under a named fetch strategy.

    Every execution retries the source client with backoff, updates the
    strategy's metrics, writes successful results into the cache and, when
    all attempts fail, applies the configured fallback before raising.

    Attributes:
        source: PositionSourceClient used for real resolutions
        cache: PositionCache shared with the orchestrator
        selection_config: Weights and thresholds for smart()
        recovery_config: Retry, backoff and fallback settings
    """

    def __init__(
        self,
        source: PositionSourceClient,
        cache: PositionCache,
        selection_config: Optional[SelectionConfig] = None,
        recovery_config: Optional[RecoveryConfig] = None,
        clock: Optional[Callable[[], int]] = None,
        sleep: Optional[Callable[[float], None]] = None,
    ):
        self.source = source
        self.cache = cache
        self.selection_config = selection_config or SelectionConfig()
        self.recovery_config = recovery_config or RecoveryConfig()
        self._clock = clock or now_ms
        self._sleep = sleep or time.sleep
        self._lock = threading.RLock()
        self._metrics: Dict[Strategy, StrategyMetric] = {}
        self._history: List[Dict[str, Any]] = []
        self._init_metrics()

    def _init_metrics(self):
        with self._lock:
            self._metrics = {
                strategy: StrategyMetric(
                    strategy=strategy.value,
                    power_efficiency=STRATEGY_POWER_EFFICIENCY.get(strategy.value, 0.5),
                )
                for strategy in CONCRETE_STRATEGIES
            }

    # Named strategies

    def high_accuracy(self) -> Position:
        """GPS + WiFi + cell."""
        return self._execute_strategy(Strategy.HIGH_ACCURACY, self._resolver(Strategy.HIGH_ACCURACY))

    def balanced(self) -> Position:
        """WiFi + cell, accepts fixes up to a minute old."""
        return self._execute_strategy(Strategy.BALANCED, self._resolver(Strategy.BALANCED))

    def low_power(self) -> Position:
        """Cell only."""
        return self._execute_strategy(Strategy.LOW_POWER, self._resolver(Strategy.LOW_POWER))

    def cache_first(self) -> Position:
        """Serve a fresh cached fix, resolving only when none is available."""
        return self._execute_strategy(Strategy.CACHE_FIRST, self._cache_first_resolver)

    def smart(self) -> Position:
        """Run whichever strategy currently scores best."""
        return self.execute(self.select_optimal_strategy())

    def execute(self, strategy) -> Position:
        """Dispatch by strategy name or enum member."""
        strategy = Strategy(strategy)
        handlers = {
            Strategy.HIGH_ACCURACY: self.high_accuracy,
            Strategy.BALANCED: self.balanced,
            Strategy.LOW_POWER: self.low_power,
            Strategy.CACHE_FIRST: self.cache_first,
            Strategy.SMART: self.smart,
        }
        return handlers[strategy]()

    # Resolvers return (position, served_from_cache).

    def _resolver(self, strategy: Strategy) -> Callable[[], Tuple[Position, bool]]:
        profile = PROFILES[strategy]
        return lambda: (self.source.resolve_raw(profile), False)

    def _cache_first_resolver(self) -> Tuple[Position, bool]:
        profile = PROFILES[Strategy.CACHE_FIRST]
        entry = self.cache.lookup_latest(max_age_ms=profile.maximum_age_ms)
        if entry is not None:
            logger.debug("cache_first served from cache")
            return entry.position, True
        return self.source.resolve_raw(profile), False

    # Execution

    def _execute_strategy(self, strategy: Strategy, resolve: Callable[[], Tuple[Position, bool]]) -> Position:
        start = self._clock()
        try:
            position, cached = self._execute_with_retry(strategy, resolve)
            validate_position(position)
        except Exception as e:
            error = classify_error(e)
            response_time = self._clock() - start
            self._record(strategy, success=False, response_time=response_time, error=error)
            logger.warning(f"Strategy {strategy.value} failed after retries: {error.error_type.value}")
            fallback = self._handle_error(error, strategy)
            if fallback is not None:
                return fallback
            if error is e:
                raise
            raise error from e

        response_time = self._clock() - start
        self._record(strategy, success=True, response_time=response_time, accuracy=position.accuracy)
        if not cached:
            self.cache.put(position)
        return position

    def _execute_with_retry(
        self, strategy: Strategy, resolve: Callable[[], Tuple[Position, bool]]
    ) -> Tuple[Position, bool]:
        """Call resolve, retrying sequentially up to max_retries more times."""
        max_retries = self.recovery_config.max_retries
        retry_count = 0
        while True:
            try:
                return resolve()
            except PermissionDeniedError:
                raise
            except Exception as e:
                if retry_count >= max_retries:
                    raise
                delay_ms = self.calculate_retry_delay(retry_count)
                retry_count += 1
                logger.info(
                    f"Will retry {strategy.value} in {delay_ms}ms "
                    f"(attempt {retry_count}/{max_retries}): {e}"
                )
                self._sleep(delay_ms / 1000.0)

    def calculate_retry_delay(self, retry_count: int) -> int:
        """Delay in ms before retry number retry_count (0-based)."""
        base = self.recovery_config.retry_delay_ms
        backoff = BackoffStrategy(self.recovery_config.backoff)
        if backoff == BackoffStrategy.EXPONENTIAL:
            return base * (2 ** retry_count)
        if backoff == BackoffStrategy.LINEAR:
            return base * (retry_count + 1)
        return base

    def _handle_error(self, error: LocationError, strategy: Strategy) -> Optional[Position]:
        """Apply the configured fallback. Returns None when it yields nothing."""
        fallback = FallbackStrategy(self.recovery_config.fallback)

        if fallback == FallbackStrategy.CACHE:
            entry = self.cache.lookup_latest(max_age_ms=self.recovery_config.stale_after_ms)
            if entry is not None:
                logger.info(f"Serving cached position after {strategy.value} failure")
                return entry.position

        elif fallback == FallbackStrategy.LOW_POWER:
            if strategy != Strategy.LOW_POWER:
                logger.info(f"Degrading from {strategy.value} to low_power")
                try:
                    return self.low_power()
                except LocationError as e:
                    logger.warning(f"low_power fallback failed too: {e.error_type.value}")

        elif fallback == FallbackStrategy.PLACEHOLDER:
            logger.warning(f"Returning placeholder position after {strategy.value} failure")
            return Position(timestamp=self._clock(), placeholder=True, **PLACEHOLDER_POSITION)

        return None

    # Metrics

    def _record(
        self,
        strategy: Strategy,
        success: bool,
        response_time: float,
        accuracy: Optional[float] = None,
        error: Optional[LocationError] = None,
    ):
        now = self._clock()
        with self._lock:
            metric = self._metrics[strategy]
            metric.usage_count += 1
            metric.last_used = now

            if success:
                metric.average_response_time = blend(metric.average_response_time, response_time)
                if accuracy is not None:
                    metric.average_accuracy = blend(metric.average_accuracy, accuracy)
            else:
                metric.error_count += 1

            metric.success_rate = (metric.usage_count - metric.error_count) / metric.usage_count

            self._history.append({
                "timestamp": now,
                "strategy": strategy.value,
                "response_time": response_time,
                "success": success,
                "accuracy": accuracy,
                "error_type": error.error_type.value if error else None,
            })
            if len(self._history) > PERFORMANCE_HISTORY_MAX:
                self._history = self._history[-PERFORMANCE_HISTORY_KEEP:]

            if (
                not success
                and metric.error_count >= self.recovery_config.error_threshold
                and metric.success_rate < self.selection_config.success_rate_threshold
            ):
                logger.warning(
                    f"Strategy {strategy.value} has failed {metric.error_count} times "
                    f"(success rate {metric.success_rate:.0%})"
                )

    def score_strategy(self, metric: StrategyMetric) -> float:
        """Weighted score of performance, accuracy and power efficiency."""
        config = self.selection_config

        response_time_score = max(0.0, 1 - metric.average_response_time / config.response_time_threshold_ms)
        performance_score = response_time_score * 0.6 + metric.success_rate * 0.4

        if metric.average_accuracy <= 0:
            accuracy_score = 1.0
        else:
            accuracy_score = max(0.0, 1 - metric.average_accuracy / STRATEGY_ACCURACY_SCALE_METERS)

        return (
            performance_score * config.performance_weight
            + accuracy_score * config.accuracy_weight
            + metric.power_efficiency * config.power_weight
        )

    def select_optimal_strategy(self) -> Strategy:
        """Highest-scoring strategy; ties go to cache_first."""
        if not self.selection_config.enable_adaptive_selection:
            return Strategy.CACHE_FIRST

        with self._lock:
            scored = [(self.score_strategy(metric), strategy) for strategy, metric in self._metrics.items()]

        best_score, best = max(
            scored,
            key=lambda item: (item[0], item[1] == Strategy.CACHE_FIRST),
        )
        logger.debug(f"Selected strategy {best.value} (score {best_score:.3f})")
        return best

    def get_strategy_metrics(self) -> Dict[str, Dict[str, Any]]:
        with self._lock:
            return {strategy.value: metric.to_dict() for strategy, metric in self._metrics.items()}

    def get_performance_history(self) -> List[Dict[str, Any]]:
        with self._lock:
            return list(self._history)

    def update_selection_config(self, **changes):
        changes = {k: v for k, v in changes.items() if v is not None}
        self.selection_config = replace(self.selection_config, **changes)

    def update_recovery_config(self, **changes):
        changes = {k: v for k, v in changes.items() if v is not None}
        self.recovery_config = replace(self.recovery_config, **changes)

    def reset_metrics(self):
        """Forget all metrics and history."""
        self._init_metrics()
        with self._lock:
            self._history = []
