"""Counters, stat scopes and the stat structures used by the service."""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass
from typing import Mapping, Protocol

from rlservice.utils import sanitize_stat_name

logger = logging.getLogger(__name__)


class Counter:
    """A monotonically increasing, thread-safe counter."""

    def __init__(self, name: str) -> None:
        self.name = name
        self._lock = threading.Lock()
        self._value = 0
        self._last_sent = 0

    def inc(self) -> None:
        """Add one."""
        self.add(1)

    def add(self, amount: int) -> None:
        """Add ``amount``."""
        with self._lock:
            self._value += amount

    def value(self) -> int:
        """Return the total counted so far."""
        with self._lock:
            return self._value

    def _latch(self) -> int:
        with self._lock:
            delta = self._value - self._last_sent
            self._last_sent = self._value
            return delta


class Sink(Protocol):
    def flush_counter(self, name: str, value: int) -> None: ...


class MemorySink:
    """Sink that accumulates flushed counter values in memory."""

    def __init__(self) -> None:
        self.counters: dict[str, int] = {}

    def flush_counter(self, name: str, value: int) -> None:
        """Record ``value`` more for counter ``name``."""
        self.counters[name] = self.counters.get(name, 0) + value

    def clear(self) -> None:
        """Forget everything recorded."""
        self.counters.clear()


def _serialize_tags(tags: Mapping[str, str]) -> str:
    return "".join(
        f".__{sanitize_stat_name(key)}={sanitize_stat_name(value)}"
        for key, value in sorted(tags.items())
    )


class Store:
    """Root of the stats tree; owns every counter and flushes to a sink."""

    def __init__(self, sink: Sink | None = None) -> None:
        self.sink = sink if sink is not None else MemorySink()
        self._lock = threading.Lock()
        self._counters: dict[str, Counter] = {}

    def scope(self, name: str) -> Scope:
        """Return a scope whose stat names start with ``name``."""
        return Scope(self, name, {})

    def scope_with_tags(self, name: str, tags: Mapping[str, str] | None) -> Scope:
        """Return a scope named ``name`` whose stats carry ``tags``."""
        return Scope(self, name, dict(tags or {}))

    def new_counter(self, name: str) -> Counter:
        """Return the counter called ``name``, creating it if needed."""
        return self._register(name)

    def _register(self, full_name: str) -> Counter:
        with self._lock:
            counter = self._counters.get(full_name)
            if counter is None:
                counter = self._counters[full_name] = Counter(full_name)
            return counter

    def flush(self) -> None:
        """Send every counter's change since the last flush to the sink."""
        with self._lock:
            counters = list(self._counters.items())
        for name, counter in counters:
            delta = counter._latch()
            if delta:
                self.sink.flush_counter(name, delta)


class Scope:
    """A named branch of a :class:`Store`."""

    def __init__(self, store: Store, name: str, tags: Mapping[str, str]) -> None:
        self._store = store
        self._name = name
        self._tags = dict(tags)

    def scope(self, name: str) -> Scope:
        """Return a child scope."""
        return Scope(self._store, f"{self._name}.{name}", self._tags)

    def new_counter(self, name: str) -> Counter:
        """Return the counter ``name`` within this scope."""
        return self._store._register(f"{self._name}.{name}{_serialize_tags(self._tags)}")


@dataclass
class RateLimitStats:
    """Stats for one rate limit config entry."""

    key: str
    total_hits: Counter
    over_limit: Counter
    near_limit: Counter
    over_limit_with_local_cache: Counter
    within_limit: Counter
    shadow_mode: Counter


@dataclass
class ShouldRateLimitStats:
    """Counts of backend and service errors raised during a call."""

    redis_error: Counter
    service_error: Counter


@dataclass
class ServiceStats:
    """Config load and call outcome counters of the service."""

    config_load_success: Counter
    config_load_error: Counter
    should_rate_limit: ShouldRateLimitStats
    global_shadow_mode: Counter


class StatManager:
    """Creates the stat structures of the service under one store."""

    def __init__(self, store: Store, settings=None) -> None:
        tags = settings.extra_tags if settings is not None else {}
        service_scope = store.scope_with_tags("ratelimit", tags).scope("service")
        self.store = store
        self._rl_stats_scope = service_scope.scope("rate_limit")
        self._service_stats_scope = service_scope
        self._should_rate_limit_scope = service_scope.scope("call.should_rate_limit")

    def new_stats(self, key: str) -> RateLimitStats:
        """Return stats for a fully resolved descriptor key."""
        logger.debug("Creating stats for key: '%s'", key)
        name = sanitize_stat_name(key)
        scope = self._rl_stats_scope
        return RateLimitStats(
            key=key,
            total_hits=scope.new_counter(name + ".total_hits"),
            over_limit=scope.new_counter(name + ".over_limit"),
            near_limit=scope.new_counter(name + ".near_limit"),
            over_limit_with_local_cache=scope.new_counter(name + ".over_limit_with_local_cache"),
            within_limit=scope.new_counter(name + ".within_limit"),
            shadow_mode=scope.new_counter(name + ".shadow_mode"),
        )

    def new_should_rate_limit_stats(self) -> ShouldRateLimitStats:
        """Return the error counters of the rate limit call."""
        return ShouldRateLimitStats(
            redis_error=self._should_rate_limit_scope.new_counter("redis_error"),
            service_error=self._should_rate_limit_scope.new_counter("service_error"),
        )

    def new_service_stats(self) -> ServiceStats:
        """Return the service-level counters."""
        scope = self._service_stats_scope
        return ServiceStats(
            config_load_success=scope.new_counter("config_load_success"),
            config_load_error=scope.new_counter("config_load_error"),
            should_rate_limit=self.new_should_rate_limit_stats(),
            global_shadow_mode=scope.new_counter("global_shadow_mode"),
        )