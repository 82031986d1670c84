"""The rate limit decision service."""

from __future__ import annotations

import enum
import logging
import queue
import threading
from dataclasses import dataclass, field

from rlservice.health import CONFIG_HEALTH_COMPONENT_NAME, InvalidComponentError
from rlservice.settings import new_settings
from rlservice.utils import Unit, calculate_reset

logger = logging.getLogger(__name__)

MAX_UINT32 = 2**32 - 1
_POLL_INTERVAL = 0.05


class Code(enum.IntEnum):
    """Outcome of a rate limit check."""

    UNKNOWN = 0
    OK = 1
    OVER_LIMIT = 2


class ServiceError(Exception):
    """Raised for requests the service cannot handle."""


class ConfigError(Exception):
    """Raised by a config update event whose configuration is invalid."""


class BackendError(Exception):
    """Raised by a cache backend that cannot be reached."""


@dataclass(frozen=True)
class DescriptorEntry:
    key: str
    value: str = ""


@dataclass
class Descriptor:
    entries: list[DescriptorEntry] = field(default_factory=list)


@dataclass
class RateLimitRequest:
    domain: str = ""
    descriptors: list[Descriptor] = field(default_factory=list)
    hits_addend: int = 0


@dataclass
class LimitSpec:
    """A limit of ``requests_per_unit`` requests per ``unit``."""

    requests_per_unit: int
    unit: Unit
    name: str = ""


@dataclass
class DescriptorStatus:
    code: Code = Code.UNKNOWN
    current_limit: LimitSpec | None = None
    limit_remaining: int = 0
    duration_until_reset: int | None = None


@dataclass(frozen=True)
class HeaderValue:
    key: str
    value: str


@dataclass
class RateLimitResponse:
    overall_code: Code = Code.UNKNOWN
    statuses: list[DescriptorStatus] = field(default_factory=list)
    response_headers_to_add: list[HeaderValue] = field(default_factory=list)


class RateLimitService:
    """Decides whether a request is over its configured limits.

    ``config_provider.config_update_event()`` returns a queue of update events,
    each with ``get_config()``. A config offers ``get_limit(domain, descriptor)``
    and ``is_empty_domains()``; a limit it returns has ``limit`` (a
    :class:`LimitSpec`), ``unlimited``, ``shadow_mode``, ``name`` and
    ``replaces``. ``cache.do_limit(request, limits)`` returns one
    :class:`DescriptorStatus` per limit.
    """

    def __init__(
        self,
        cache,
        config_provider,
        stats_manager,
        health,
        clock,
        shadow_mode: bool = False,
        force_start: bool = False,
        healthy_with_at_least_one_config_load: bool = False,
    ) -> None:
        self._lock = threading.Lock()
        self._updates: queue.Queue = config_provider.config_update_event()
        self._config = None
        self._cache = cache
        self._stats = stats_manager.new_service_stats()
        self._health = health
        self._clock = clock
        self._global_shadow_mode = shadow_mode
        self._headers_enabled = False
        self._limit_header = ""
        self._remaining_header = ""
        self._reset_header = ""
        self._healthy_with_config = healthy_with_at_least_one_config_load
        self._stopping = threading.Event()

        if not force_start:
            logger.info("Waiting for initial ratelimit config update event")
            self.set_config(self._updates.get(), healthy_with_at_least_one_config_load)
            logger.info("Successfully loaded the initial ratelimit configs")

        self._watcher = threading.Thread(
            target=self._watch_updates, name="ratelimit-config-watcher", daemon=True
        )
        self._watcher.start()

    def _watch_updates(self) -> None:
        while not self._stopping.is_set():
            try:
                event = self._updates.get(timeout=_POLL_INTERVAL)
            except queue.Empty:
                continue
            logger.debug("Setting config retrieved from config provider")
            self.set_config(event, self._healthy_with_config)

    def stop(self) -> None:
        """Stop watching for config updates."""
        self._stopping.set()
        if self._watcher.is_alive() and self._watcher is not threading.current_thread():
            self._watcher.join()

    def set_config(self, update_event, healthy_with_at_least_one_config_load: bool) -> None:
        """Install the configuration carried by ``update_event``."""
        try:
            new_config = update_event.get_config()
        except ConfigError as exc:
            self._stats.config_load_error.inc()
            logger.error("Error loading new configuration: %s", exc)
            return

        if healthy_with_at_least_one_config_load:
            try:
                if not new_config.is_empty_domains():
                    self._health.ok(CONFIG_HEALTH_COMPONENT_NAME)
                else:
                    self._health.fail(CONFIG_HEALTH_COMPONENT_NAME)
            except InvalidComponentError as exc:
                logger.error("Unable to update health status: %s", exc)

        self._stats.config_load_success.inc()

        rl_settings = new_settings()
        with self._lock:
            self._config = new_config
            self._global_shadow_mode = rl_settings.global_shadow_mode
            if rl_settings.rate_limit_response_headers_enabled:
                self._headers_enabled = True
                self._limit_header = rl_settings.header_ratelimit_limit
                self._remaining_header = rl_settings.header_ratelimit_remaining
                self._reset_header = rl_settings.header_ratelimit_reset
        logger.info("Successfully loaded new configuration")

    def get_current_config(self):
        """Return the loaded configuration and the global shadow mode flag."""
        with self._lock:
            return self._config, self._global_shadow_mode

    def _construct_limits_to_check(self, request: RateLimitRequest, config):
        if config is None:
            raise ServiceError("no rate limit configuration loaded")

        limits = []
        unlimited = []
        replacing: set[str] = set()
        for descriptor in request.descriptors:
            if logger.isEnabledFor(logging.DEBUG):
                logger.debug(
                    "got descriptor: %s",
                    ",".join(f"({e.key}={e.value})" for e in descriptor.entries),
                )
            limit = config.get_limit(request.domain, descriptor)
            if logger.isEnabledFor(logging.DEBUG):
                if limit is None:
                    logger.debug("descriptor does not match any limit, no limits applied")
                elif limit.unlimited:
                    logger.debug("descriptor is unlimited, not passing to the cache")
                else:
                    logger.debug(
                        "applying limit: %d requests per %s, shadow_mode: %s",
                        limit.limit.requests_per_unit,
                        Unit(limit.limit.unit).name,
                        limit.shadow_mode,
                    )
            is_unlimited = False
            if limit is not None:
                replacing.update(limit.replaces or ())
                if limit.unlimited:
                    is_unlimited = True
                    limit = None
            limits.append(limit)
            unlimited.append(is_unlimited)

        def keep(limit):
            if limit is None or not limit.name or limit.name not in replacing:
                return limit
            logger.debug("replacing %s", limit.name)
            return None

        return [keep(limit) for limit in limits], unlimited

    def _should_rate_limit_worker(self, request: RateLimitRequest) -> RateLimitResponse:
        if request.domain == "":
            raise ServiceError("rate limit domain must not be empty")
        if not request.descriptors:
            raise ServiceError("rate limit descriptor list must not be empty")

        config, global_shadow_mode = self.get_current_config()
        limits, unlimited = self._construct_limits_to_check(request, config)

        descriptor_statuses = self._cache.do_limit(request, limits)
        if len(descriptor_statuses) != len(limits):
            raise AssertionError("cache returned a status count that does not match the limits")

        response = RateLimitResponse()
        final_code = Code.OK
        min_remaining = MAX_UINT32
        minimum = None

        for status, is_unlimited in zip(descriptor_statuses, unlimited):
            if (
                self._headers_enabled
                and status.current_limit is not None
                and status.limit_remaining < min_remaining
            ):
                minimum = status
                min_remaining = status.limit_remaining

            if is_unlimited:
                response.statuses.append(
                    DescriptorStatus(code=Code.OK, limit_remaining=MAX_UINT32)
                )
            else:
                response.statuses.append(status)
                if status.code is Code.OVER_LIMIT:
                    final_code = status.code
                    minimum = status
                    min_remaining = 0

        if self._headers_enabled and minimum is not None:
            response.response_headers_to_add = [
                HeaderValue(self._limit_header, str(minimum.current_limit.requests_per_unit)),
                HeaderValue(self._remaining_header, str(minimum.limit_remaining)),
                HeaderValue(
                    self._reset_header,
                    str(calculate_reset(minimum.current_limit.unit, self._clock)),
                ),
            ]

        if final_code is Code.OVER_LIMIT and global_shadow_mode:
            final_code = Code.OK
            self._stats.global_shadow_mode.inc()

        response.overall_code = final_code
        return response

    def should_rate_limit(self, request: RateLimitRequest) -> RateLimitResponse:
        """Check ``request`` against the loaded limits."""
        try:
            response = self._should_rate_limit_worker(request)
        except BackendError:
            logger.debug("caught error during call")
            self._stats.should_rate_limit.redis_error.inc()
            raise
        except ServiceError:
            logger.debug("caught error during call")
            self._stats.should_rate_limit.service_error.inc()
            raise
        logger.debug("returning normal response")
        return response