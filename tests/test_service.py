import queue
import time
from dataclasses import dataclass, field
from types import SimpleNamespace

import pytest

from rlservice.health import HealthChecker, ServingStatus
from rlservice.service import (
    MAX_UINT32,
    BackendError,
    Code,
    ConfigError,
    Descriptor,
    DescriptorEntry,
    DescriptorStatus,
    HeaderValue,
    LimitSpec,
    RateLimitRequest,
    RateLimitService,
    ServiceError,
)
from rlservice.stats import MemorySink, StatManager, Store
from rlservice.utils import Unit, calculate_reset


@dataclass
class FakeLimit:
    limit: LimitSpec
    unlimited: bool = False
    shadow_mode: bool = False
    name: str = ""
    replaces: list = field(default_factory=list)


class FakeConfig:
    def __init__(self, limits, empty=False):
        self.limits = limits
        self.empty = empty

    def get_limit(self, domain, descriptor):
        return self.limits.get(descriptor.entries[0].key)

    def is_empty_domains(self):
        return self.empty


class FakeEvent:
    def __init__(self, config=None, error=None):
        self.config = config
        self.error = error

    def get_config(self):
        if self.error is not None:
            raise self.error
        return self.config


class FakeProvider:
    def __init__(self):
        self.updates = queue.Queue()

    def config_update_event(self):
        return self.updates


class FakeCache:
    def __init__(self, statuses=None, error=None):
        self.statuses = statuses
        self.error = error
        self.calls = []

    def do_limit(self, request, limits):
        self.calls.append(list(limits))
        if self.error is not None:
            raise self.error
        if self.statuses is not None:
            return self.statuses
        return [
            DescriptorStatus(Code.OK, None if lim is None else lim.limit, 0 if lim is None else 5)
            for lim in limits
        ]


class FixedClock:
    def __init__(self, now):
        self.now = now

    def unix_now(self):
        return self.now


def req(domain, *keys):
    return RateLimitRequest(domain, [Descriptor([DescriptorEntry(k, "v")]) for k in keys], 1)


@pytest.fixture(autouse=True)
def clean_env(monkeypatch):
    for name in ("LIMIT_RESPONSE_HEADERS_ENABLED", "SHADOW_MODE"):
        monkeypatch.delenv(name, raising=False)


@pytest.fixture
def build():
    services = []

    def factory(config=None, cache=None, *, force_start=False, healthy=False, health=None,
                clock=None, event=None):
        provider = FakeProvider()
        if not force_start:
            provider.updates.put(event if event is not None else FakeEvent(config))
        manager = StatManager(Store(MemorySink()))
        cache = cache if cache is not None else FakeCache()
        service = RateLimitService(
            cache, provider, manager, health or HealthChecker("ratelimit", healthy),
            clock or FixedClock(1234), False, force_start, healthy,
        )
        services.append(service)
        return SimpleNamespace(
            service=service, provider=provider, stats=manager.new_service_stats(), cache=cache
        )

    yield factory
    for service in services:
        service.stop()


LIMIT = LimitSpec(10, Unit.SECOND)


def test_empty_domain_is_service_error(build):
    env = build(FakeConfig({"a": FakeLimit(LIMIT)}))
    with pytest.raises(ServiceError, match="rate limit domain must not be empty"):
        env.service.should_rate_limit(req("", "a"))
    assert env.stats.should_rate_limit.service_error.value() == 1


def test_empty_descriptors_is_service_error(build):
    env = build(FakeConfig({}))
    with pytest.raises(ServiceError, match="rate limit descriptor list must not be empty"):
        env.service.should_rate_limit(RateLimitRequest("domain", [], 1))


def test_no_config_loaded(build):
    env = build(force_start=True)
    with pytest.raises(ServiceError, match="no rate limit configuration loaded"):
        env.service.should_rate_limit(req("domain", "a"))
    assert env.stats.should_rate_limit.service_error.value() == 1


def test_ok_response_passes_cache_statuses(build):
    config = FakeConfig({"a": FakeLimit(LIMIT)})
    env = build(config)
    response = env.service.should_rate_limit(req("domain", "a", "b"))
    assert response.overall_code is Code.OK
    assert response.statuses == [DescriptorStatus(Code.OK, LIMIT, 5), DescriptorStatus(Code.OK, None, 0)]
    assert env.cache.calls == [[config.limits["a"], None]]
    assert env.stats.config_load_success.value() == 1
    assert response.response_headers_to_add == []


def test_over_limit(build):
    statuses = [DescriptorStatus(Code.OK, LIMIT, 2), DescriptorStatus(Code.OVER_LIMIT, LIMIT, 0)]
    env = build(FakeConfig({"a": FakeLimit(LIMIT), "b": FakeLimit(LIMIT)}), FakeCache(statuses))
    response = env.service.should_rate_limit(req("domain", "a", "b"))
    assert response.overall_code is Code.OVER_LIMIT
    assert response.statuses == statuses


def test_global_shadow_mode_returns_ok(build, monkeypatch):
    monkeypatch.setenv("SHADOW_MODE", "true")
    statuses = [DescriptorStatus(Code.OVER_LIMIT, LIMIT, 0)]
    env = build(FakeConfig({"a": FakeLimit(LIMIT)}), FakeCache(statuses))
    response = env.service.should_rate_limit(req("domain", "a"))
    assert response.overall_code is Code.OK
    assert env.stats.global_shadow_mode.value() == 1


def test_unlimited_descriptor(build):
    env = build(FakeConfig({"a": FakeLimit(LIMIT, unlimited=True)}))
    response = env.service.should_rate_limit(req("domain", "a"))
    assert env.cache.calls == [[None]]
    assert response.statuses == [DescriptorStatus(Code.OK, None, MAX_UINT32)]


def test_replaced_limit_not_checked(build):
    replaced = FakeLimit(LIMIT, name="a")
    replacer = FakeLimit(LimitSpec(20, Unit.MINUTE), replaces=["a"])
    env = build(FakeConfig({"a": replaced, "b": replacer}))
    env.service.should_rate_limit(req("domain", "a", "b"))
    assert env.cache.calls == [[None, replacer]]


def test_backend_error(build):
    env = build(FakeConfig({"a": FakeLimit(LIMIT)}), FakeCache(error=BackendError("down")))
    with pytest.raises(BackendError, match="down"):
        env.service.should_rate_limit(req("domain", "a"))
    assert env.stats.should_rate_limit.redis_error.value() == 1


def test_config_error_counts(build):
    env = build(event=FakeEvent(error=ConfigError("bad config")))
    config, _ = env.service.get_current_config()
    assert config is None
    assert env.stats.config_load_error.value() == 1
    assert env.stats.config_load_success.value() == 0


def test_unexpected_config_error_propagates(build):
    with pytest.raises(RuntimeError, match="boom"):
        build(event=FakeEvent(error=RuntimeError("boom")))


def test_health_follows_config_domains(build):
    health = HealthChecker("ratelimit", True)
    env = build(FakeConfig({"a": FakeLimit(LIMIT)}), healthy=True, health=health)
    assert health.serving_status() is ServingStatus.SERVING
    env.service.set_config(FakeEvent(FakeConfig({}, empty=True)), True)
    assert health.serving_status() is ServingStatus.NOT_SERVING


def test_response_headers(build, monkeypatch):
    monkeypatch.setenv("LIMIT_RESPONSE_HEADERS_ENABLED", "true")
    limit_a = LimitSpec(10, Unit.SECOND)
    limit_b = LimitSpec(20, Unit.MINUTE)
    statuses = [DescriptorStatus(Code.OK, limit_a, 7), DescriptorStatus(Code.OK, limit_b, 3)]
    clock = FixedClock(1234)
    env = build(
        FakeConfig({"a": FakeLimit(limit_a), "b": FakeLimit(limit_b)}), FakeCache(statuses),
        clock=clock,
    )
    response = env.service.should_rate_limit(req("domain", "a", "b"))
    assert response.response_headers_to_add == [
        HeaderValue("RateLimit-Limit", str(limit_b.requests_per_unit)),
        HeaderValue("RateLimit-Remaining", str(statuses[1].limit_remaining)),
        HeaderValue("RateLimit-Reset", str(calculate_reset(Unit.MINUTE, clock))),
    ]


def test_headers_use_over_limit_descriptor(build, monkeypatch):
    monkeypatch.setenv("LIMIT_RESPONSE_HEADERS_ENABLED", "true")
    limit_a = LimitSpec(10, Unit.SECOND)
    limit_b = LimitSpec(20, Unit.HOUR)
    statuses = [DescriptorStatus(Code.OK, limit_a, 1), DescriptorStatus(Code.OVER_LIMIT, limit_b, 0)]
    env = build(FakeConfig({"a": FakeLimit(limit_a), "b": FakeLimit(limit_b)}), FakeCache(statuses))
    response = env.service.should_rate_limit(req("domain", "a", "b"))
    assert response.response_headers_to_add[0] == HeaderValue(
        "RateLimit-Limit", str(limit_b.requests_per_unit)
    )


def test_background_config_update(build):
    env = build(force_start=True)
    config = FakeConfig({"a": FakeLimit(LIMIT)})
    env.provider.updates.put(FakeEvent(config))
    deadline = time.monotonic() + 5
    while env.service.get_current_config()[0] is not config and time.monotonic() < deadline:
        time.sleep(0.01)
    assert env.service.get_current_config()[0] is config
    assert env.stats.config_load_success.value() == 1