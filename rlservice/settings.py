"""Service settings read from environment variables."""

from __future__ import annotations

import os
import re
from dataclasses import dataclass, field, fields
from datetime import timedelta
from decimal import Decimal
from typing import Any, Callable, Mapping

from rlservice.tls import CAType, ClientAuth, TlsConfig, tls_config_from_files


class SettingsError(ValueError):
    """Raised when an environment variable cannot be converted."""


_TRUE = {"1", "t", "T", "TRUE", "true", "True"}
_FALSE = {"0", "f", "F", "FALSE", "false", "False"}


def _parse_bool(value: str) -> bool:
    if value in _TRUE:
        return True
    if value in _FALSE:
        return False
    raise ValueError(f"invalid boolean: {value!r}")


def _parse_int(value: str) -> int:
    return int(value, 0)


_DURATION_UNITS = {
    "ns": Decimal("1e-9"),
    "us": Decimal("1e-6"),
    "\u00b5s": Decimal("1e-6"),
    "\u03bcs": Decimal("1e-6"),
    "ms": Decimal("1e-3"),
    "s": Decimal(1),
    "m": Decimal(60),
    "h": Decimal(3600),
}
_DURATION_PART = re.compile(r"(\d+(?:\.\d*)?|\.\d+)(ns|us|\u00b5s|\u03bcs|ms|s|m|h)")


def _parse_duration(value: str) -> timedelta:
    if not value:
        raise ValueError("invalid duration: ''")
    sign = -1 if value[0] == "-" else 1
    body = value[1:] if value[0] in "+-" else value
    if body == "0":
        return timedelta(0)
    if not body:
        raise ValueError(f"invalid duration: {value!r}")
    total = Decimal(0)
    pos = 0
    while pos < len(body):
        match = _DURATION_PART.match(body, pos)
        if match is None:
            raise ValueError(f"invalid duration: {value!r}")
        total += Decimal(match.group(1)) * _DURATION_UNITS[match.group(2)]
        pos = match.end()
    return timedelta(microseconds=int(sign * total * 1_000_000))


def _parse_map(value: str) -> dict[str, str]:
    result: dict[str, str] = {}
    if not value.strip():
        return result
    for pair in value.split(","):
        key, sep, item = pair.partition(":")
        if not sep:
            raise ValueError(f"invalid map item: {pair!r}")
        result[key] = item
    return result


def _parse_list(value: str) -> list[str]:
    if not value.strip():
        return []
    return value.split(",")


def _setting(env: str, raw_default: str, parser: Callable[[str], Any]):
    metadata = {"env": env, "default": raw_default, "parser": parser}
    if parser in (_parse_map, _parse_list):
        return field(default_factory=lambda: parser(raw_default), metadata=metadata)
    return field(default=parser(raw_default), metadata=metadata)


@dataclass
class Settings:
    """All configuration knobs of the rate limit service."""

    grpc_unary_interceptor: Callable[..., Any] | None = None

    host: str = _setting("HOST", "0.0.0.0", str)
    port: int = _setting("PORT", "8080", _parse_int)
    debug_host: str = _setting("DEBUG_HOST", "0.0.0.0", str)
    debug_port: int = _setting("DEBUG_PORT", "6070", _parse_int)

    grpc_host: str = _setting("GRPC_HOST", "0.0.0.0", str)
    grpc_port: int = _setting("GRPC_PORT", "8081", _parse_int)
    grpc_server_tls_config: TlsConfig | None = None
    grpc_max_connection_age: timedelta = _setting("GRPC_MAX_CONNECTION_AGE", "24h", _parse_duration)
    grpc_max_connection_age_grace: timedelta = _setting(
        "GRPC_MAX_CONNECTION_AGE_GRACE", "1h", _parse_duration
    )
    grpc_server_use_tls: bool = _setting("GRPC_SERVER_USE_TLS", "false", _parse_bool)
    grpc_server_tls_cert: str = _setting("GRPC_SERVER_TLS_CERT", "", str)
    grpc_server_tls_key: str = _setting("GRPC_SERVER_TLS_KEY", "", str)
    grpc_client_tls_ca_cert: str = _setting("GRPC_CLIENT_TLS_CACERT", "", str)
    grpc_client_tls_san: str = _setting("GRPC_CLIENT_TLS_SAN", "", str)

    log_level: str = _setting("LOG_LEVEL", "WARN", str)
    log_format: str = _setting("LOG_FORMAT", "text", str)

    config_type: str = _setting("CONFIG_TYPE", "FILE", str)
    force_start_without_initial_config: bool = _setting(
        "FORCE_START_WITHOUT_INITIAL_CONFIG", "false", _parse_bool
    )

    config_grpc_xds_node_id: str = _setting("CONFIG_GRPC_XDS_NODE_ID", "default", str)
    config_grpc_xds_node_metadata: str = _setting("CONFIG_GRPC_XDS_NODE_METADATA", "", str)
    config_grpc_xds_server_url: str = _setting(
        "CONFIG_GRPC_XDS_SERVER_URL", "localhost:18000", str
    )
    config_grpc_xds_server_connect_retry_interval: timedelta = _setting(
        "CONFIG_GRPC_XDS_SERVER_CONNECT_RETRY_INTERVAL", "3s", _parse_duration
    )
    config_grpc_xds_client_additional_headers: dict[str, str] = _setting(
        "CONFIG_GRPC_XDS_CLIENT_ADDITIONAL_HEADERS", "", _parse_map
    )

    config_grpc_xds_tls_config: TlsConfig | None = None
    config_grpc_xds_server_use_tls: bool = _setting(
        "CONFIG_GRPC_XDS_SERVER_USE_TLS", "false", _parse_bool
    )
    config_grpc_xds_client_tls_cert: str = _setting("CONFIG_GRPC_XDS_CLIENT_TLS_CERT", "", str)
    config_grpc_xds_client_tls_key: str = _setting("CONFIG_GRPC_XDS_CLIENT_TLS_KEY", "", str)
    config_grpc_xds_server_tls_ca_cert: str = _setting(
        "CONFIG_GRPC_XDS_SERVER_TLS_CACERT", "", str
    )
    config_grpc_xds_server_tls_san: str = _setting("CONFIG_GRPC_XDS_SERVER_TLS_SAN", "", str)

    use_statsd: bool = _setting("USE_STATSD", "true", _parse_bool)
    statsd_host: str = _setting("STATSD_HOST", "localhost", str)
    statsd_port: int = _setting("STATSD_PORT", "8125", _parse_int)
    extra_tags: dict[str, str] = _setting("EXTRA_TAGS", "", _parse_map)

    runtime_path: str = _setting("RUNTIME_ROOT", "/srv/runtime_data/current", str)
    runtime_subdirectory: str = _setting("RUNTIME_SUBDIRECTORY", "", str)
    runtime_app_directory: str = _setting("RUNTIME_APPDIRECTORY", "config", str)
    runtime_ignore_dot_files: bool = _setting("RUNTIME_IGNOREDOTFILES", "false", _parse_bool)
    runtime_watch_root: bool = _setting("RUNTIME_WATCH_ROOT", "true", _parse_bool)

    expiration_jitter_max_seconds: int = _setting("EXPIRATION_JITTER_MAX_SECONDS", "300", _parse_int)
    local_cache_size_in_bytes: int = _setting("LOCAL_CACHE_SIZE_IN_BYTES", "0", _parse_int)
    near_limit_ratio: float = _setting("NEAR_LIMIT_RATIO", "0.8", float)
    cache_key_prefix: str = _setting("CACHE_KEY_PREFIX", "", str)
    backend_type: str = _setting("BACKEND_TYPE", "redis", str)
    stop_cache_key_increment_when_overlimit: bool = _setting(
        "STOP_CACHE_KEY_INCREMENT_WHEN_OVERLIMIT", "false", _parse_bool
    )

    rate_limit_response_headers_enabled: bool = _setting(
        "LIMIT_RESPONSE_HEADERS_ENABLED", "false", _parse_bool
    )
    header_ratelimit_limit: str = _setting("LIMIT_LIMIT_HEADER", "RateLimit-Limit", str)
    header_ratelimit_remaining: str = _setting(
        "LIMIT_REMAINING_HEADER", "RateLimit-Remaining", str
    )
    header_ratelimit_reset: str = _setting("LIMIT_RESET_HEADER", "RateLimit-Reset", str)

    healthy_with_at_least_one_config_loaded: bool = _setting(
        "HEALTHY_WITH_AT_LEAST_ONE_CONFIG_LOADED", "false", _parse_bool
    )

    redis_socket_type: str = _setting("REDIS_SOCKET_TYPE", "unix", str)
    redis_type: str = _setting("REDIS_TYPE", "SINGLE", str)
    redis_url: str = _setting("REDIS_URL", "/var/run/nutcracker/ratelimit.sock", str)
    redis_pool_size: int = _setting("REDIS_POOL_SIZE", "10", _parse_int)
    redis_auth: str = _setting("REDIS_AUTH", "", str)
    redis_tls: bool = _setting("REDIS_TLS", "false", _parse_bool)
    redis_tls_config: TlsConfig | None = None
    redis_tls_client_cert: str = _setting("REDIS_TLS_CLIENT_CERT", "", str)
    redis_tls_client_key: str = _setting("REDIS_TLS_CLIENT_KEY", "", str)
    redis_tls_ca_cert: str = _setting("REDIS_TLS_CACERT", "", str)
    redis_tls_skip_hostname_verification: bool = _setting(
        "REDIS_TLS_SKIP_HOSTNAME_VERIFICATION", "false", _parse_bool
    )
    redis_pipeline_window: timedelta = _setting("REDIS_PIPELINE_WINDOW", "0", _parse_duration)
    redis_pipeline_limit: int = _setting("REDIS_PIPELINE_LIMIT", "0", _parse_int)
    redis_per_second: bool = _setting("REDIS_PERSECOND", "false", _parse_bool)
    redis_per_second_socket_type: str = _setting("REDIS_PERSECOND_SOCKET_TYPE", "unix", str)
    redis_per_second_type: str = _setting("REDIS_PERSECOND_TYPE", "SINGLE", str)
    redis_per_second_url: str = _setting(
        "REDIS_PERSECOND_URL", "/var/run/nutcracker/ratelimitpersecond.sock", str
    )
    redis_per_second_pool_size: int = _setting("REDIS_PERSECOND_POOL_SIZE", "10", _parse_int)
    redis_per_second_auth: str = _setting("REDIS_PERSECOND_AUTH", "", str)
    redis_per_second_tls: bool = _setting("REDIS_PERSECOND_TLS", "false", _parse_bool)
    redis_per_second_pipeline_window: timedelta = _setting(
        "REDIS_PERSECOND_PIPELINE_WINDOW", "0", _parse_duration
    )
    redis_per_second_pipeline_limit: int = _setting("REDIS_PERSECOND_PIPELINE_LIMIT", "0", _parse_int)
    redis_health_check_active_connection: bool = _setting(
        "REDIS_HEALTH_CHECK_ACTIVE_CONNECTION", "false", _parse_bool
    )

    memcache_host_port: list[str] = _setting("MEMCACHE_HOST_PORT", "", _parse_list)
    memcache_max_idle_conns: int = _setting("MEMCACHE_MAX_IDLE_CONNS", "2", _parse_int)
    memcache_srv: str = _setting("MEMCACHE_SRV", "", str)
    memcache_srv_refresh: timedelta = _setting("MEMCACHE_SRV_REFRESH", "0", _parse_duration)

    global_shadow_mode: bool = _setting("SHADOW_MODE", "false", _parse_bool)
    merge_domain_configurations: bool = _setting("MERGE_DOMAIN_CONFIG", "false", _parse_bool)

    tracing_enabled: bool = _setting("TRACING_ENABLED", "false", _parse_bool)
    tracing_service_name: str = _setting("TRACING_SERVICE_NAME", "RateLimit", str)
    tracing_service_namespace: str = _setting("TRACING_SERVICE_NAMESPACE", "", str)
    tracing_service_instance_id: str = _setting("TRACING_SERVICE_INSTANCE_ID", "", str)
    tracing_exporter_protocol: str = _setting("TRACING_EXPORTER_PROTOCOL", "http", str)
    tracing_sampling_rate: float = _setting("TRACING_SAMPLING_RATE", "1", float)


Option = Callable[[Settings], None]


def new_settings(environ: Mapping[str, str] | None = None) -> Settings:
    """Read settings from ``environ`` (the process environment by default)."""
    env = os.environ if environ is None else environ
    values: dict[str, Any] = {}
    for settings_field in fields(Settings):
        key = settings_field.metadata.get("env")
        if key is None:
            continue
        raw = env.get(key)
        if raw is None:
            raw = settings_field.metadata["default"]
            if raw == "":
                continue
        try:
            values[settings_field.name] = settings_field.metadata["parser"](raw)
        except ValueError as exc:
            raise SettingsError(
                f"assigning {key} to {settings_field.name}: converting {raw!r}: {exc}"
            ) from exc
    settings = Settings(**values)
    redis_tls_config(settings.redis_tls or settings.redis_per_second_tls)(settings)
    grpc_server_tls_config()(settings)
    config_grpc_xds_server_tls_config()(settings)
    return settings


def redis_tls_config(redis_tls: bool) -> Option:
    """Option that sets the redis TLS configuration."""

    def apply(settings: Settings) -> None:
        settings.redis_tls_config = TlsConfig()
        if redis_tls:
            settings.redis_tls_config = tls_config_from_files(
                settings.redis_tls_client_cert,
                settings.redis_tls_client_key,
                settings.redis_tls_ca_cert,
                CAType.SERVER,
                settings.redis_tls_skip_hostname_verification,
            )

    return apply


def grpc_server_tls_config() -> Option:
    """Option that sets the gRPC server TLS configuration when TLS is enabled."""

    def apply(settings: Settings) -> None:
        if not settings.grpc_server_use_tls:
            return
        config = tls_config_from_files(
            settings.grpc_server_tls_cert,
            settings.grpc_server_tls_key,
            settings.grpc_client_tls_ca_cert,
            CAType.CLIENT,
            False,
        )
        config.client_auth = (
            ClientAuth.REQUIRE_AND_VERIFY_CLIENT_CERT
            if settings.grpc_client_tls_ca_cert
            else ClientAuth.NO_CLIENT_CERT
        )
        settings.grpc_server_tls_config = config

    return apply


def config_grpc_xds_server_tls_config() -> Option:
    """Option that sets the xDS config server TLS configuration when enabled."""

    def apply(settings: Settings) -> None:
        if not settings.config_grpc_xds_server_use_tls:
            return
        config = tls_config_from_files(
            settings.config_grpc_xds_client_tls_cert,
            settings.config_grpc_xds_client_tls_key,
            settings.config_grpc_xds_server_tls_ca_cert,
            CAType.SERVER,
            False,
        )
        config.client_auth = (
            ClientAuth.REQUIRE_AND_VERIFY_CLIENT_CERT
            if settings.config_grpc_xds_server_tls_ca_cert
            else ClientAuth.NO_CLIENT_CERT
        )
        settings.config_grpc_xds_tls_config = config

    return apply


def grpc_unary_interceptor(interceptor: Callable[..., Any]) -> Option:
    """Option that installs a unary gRPC interceptor."""

    def apply(settings: Settings) -> None:
        settings.grpc_unary_interceptor = interceptor

    return apply