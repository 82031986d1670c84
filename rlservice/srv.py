"""Parsing of DNS SRV names and resolution to ``host:port`` server strings."""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from typing import Callable, Iterable

import dns.resolver

logger = logging.getLogger(__name__)

_SRV_PATTERN = re.compile(r"^_(.+?)\._(.+?)\.(.+)$")


class SrvParseError(ValueError):
    """Raised when a string is not of the form ``_service._proto.name``."""


@dataclass(frozen=True)
class SrvRecord:
    """One SRV answer."""

    target: str
    port: int
    priority: int = 0
    weight: int = 0


AddrsLookup = Callable[[str, str, str], Iterable[SrvRecord]]


def parse_srv(srv: str) -> tuple[str, str, str]:
    """Split an SRV name into its service, protocol and domain parts."""
    match = _SRV_PATTERN.match(srv)
    if match is None:
        message = f"could not parse {srv} to SRV parts"
        logger.error(message)
        raise SrvParseError(message)
    return match.group(1), match.group(2), match.group(3)


def lookup_server_strings_from_srv(srv: str, addrs_lookup: AddrsLookup) -> list[str]:
    """Resolve ``srv`` with ``addrs_lookup`` and return sorted ``host:port`` strings."""
    service, proto, name = parse_srv(srv)
    try:
        records = list(addrs_lookup(service, proto, name))
    except Exception as exc:
        logger.error("failed to lookup SRV: %s", exc)
        raise
    logger.debug("found %d servers(s) from SRV", len(records))
    servers = [f"{record.target}:{record.port}" for record in records]
    for index, server in enumerate(servers):
        logger.debug("server from srv[%d]: %s", index, server)
    # A stable order matters: memcache clients shard by the order of hosts.
    return sorted(servers)


def _dns_lookup(service: str, proto: str, name: str) -> list[SrvRecord]:
    answer = dns.resolver.resolve(f"_{service}._{proto}.{name}", "SRV")
    return [
        SrvRecord(
            target=str(record.target),
            port=record.port,
            priority=record.priority,
            weight=record.weight,
        )
        for record in answer
    ]


class DnsSrvResolver:
    """Resolves SRV names through DNS."""

    def server_strings_from_srv(self, srv: str) -> list[str]:
        """Return the sorted ``host:port`` strings that ``srv`` points to."""
        return lookup_server_strings_from_srv(srv, _dns_lookup)