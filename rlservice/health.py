"""Aggregated health of the service's components."""

from __future__ import annotations

import enum
import logging
import signal
import threading
from typing import Callable

logger = logging.getLogger(__name__)

CONFIG_HEALTH_COMPONENT_NAME = "config"
REDIS_HEALTH_COMPONENT_NAME = "redis"
SIGTERM_COMPONENT_NAME = "sigterm"


class ServingStatus(enum.IntEnum):
    """Serving status as reported by the gRPC health protocol."""

    UNKNOWN = 0
    SERVING = 1
    NOT_SERVING = 2


class InvalidComponentError(ValueError):
    """Raised for a component name the checker does not track."""


StatusListener = Callable[[str, ServingStatus], None]


class HealthChecker:
    """Healthy only while every tracked component is healthy."""

    def __init__(
        self,
        name: str = "ratelimit",
        healthy_with_at_least_one_config_load: bool = False,
        status_listener: StatusListener | None = None,
    ) -> None:
        self.name = name
        self._lock = threading.Lock()
        self._listener = status_listener
        self._components = {REDIS_HEALTH_COMPONENT_NAME: True}
        if healthy_with_at_least_one_config_load:
            # At least one config must be loaded before the service is healthy.
            self._components[CONFIG_HEALTH_COMPONENT_NAME] = False
        self._components[SIGTERM_COMPONENT_NAME] = True
        self._status = ServingStatus.UNKNOWN
        if all(self._components.values()):
            self._set_status(ServingStatus.SERVING)
        else:
            self._set_status(ServingStatus.NOT_SERVING)

    def _set_status(self, status: ServingStatus) -> None:
        self._status = status
        if self._listener is not None:
            self._listener(self.name, status)

    def _check_component(self, component_name: str) -> None:
        if component_name not in self._components:
            message = f"Invalid component: {component_name}"
            logger.error(message)
            raise InvalidComponentError(message)

    def fail(self, component_name: str) -> None:
        """Mark a component unhealthy, which makes the whole service unhealthy."""
        with self._lock:
            self._check_component(component_name)
            self._components[component_name] = False
            self._set_status(ServingStatus.NOT_SERVING)

    def ok(self, component_name: str) -> None:
        """Mark a component healthy; serve again once all components are healthy."""
        with self._lock:
            self._check_component(component_name)
            self._components[component_name] = True
            if all(self._components.values()):
                self._set_status(ServingStatus.SERVING)

    def serving_status(self) -> ServingStatus:
        """Return the current overall status."""
        with self._lock:
            return self._status

    def http_response(self) -> tuple[int, bytes]:
        """Return the status code and body of the HTTP health check."""
        if self.serving_status() is ServingStatus.SERVING:
            return 200, b"OK"
        return 500, b""

    def install_sigterm_handler(self):
        """Mark the service unhealthy on SIGTERM; return the previous handler."""

        def handle(signum, frame) -> None:
            self.fail(SIGTERM_COMPONENT_NAME)

        return signal.signal(signal.SIGTERM, handle)