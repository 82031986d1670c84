from types import SimpleNamespace
from unittest import mock

import pytest

from rlservice.srv import (
    DnsSrvResolver,
    SrvParseError,
    SrvRecord,
    lookup_server_strings_from_srv,
    parse_srv,
)


def mock_addrs_lookup(service, proto, name):
    return [SrvRecord("z", 1), SrvRecord("z", 0), SrvRecord("a", 9001)]


def test_lookup_server_strings_from_srv_returns_servers_sorted():
    targets = lookup_server_strings_from_srv("_something._tcp.example.org.", mock_addrs_lookup)
    assert targets == ["a:9001", "z:0", "z:1"]


def test_lookup_passes_parsed_parts():
    seen = []

    def lookup(service, proto, name):
        seen.append((service, proto, name))
        return []

    assert lookup_server_strings_from_srv("_memcache._udp.example.org", lookup) == []
    assert seen == [("memcache", "udp", "example.org")]


def test_lookup_error_propagates():
    def lookup(service, proto, name):
        raise OSError("no such host")

    with pytest.raises(OSError, match="no such host"):
        lookup_server_strings_from_srv("_something._tcp.example.invalid", lookup)


@pytest.mark.parametrize(
    "srv, expected",
    [
        ("_something._tcp.example.org.", ("something", "tcp", "example.org.")),
        ("_something-else._udp.example.org", ("something-else", "udp", "example.org")),
    ],
)
def test_parse_srv(srv, expected):
    assert parse_srv(srv) == expected


def test_parse_srv_error():
    with pytest.raises(SrvParseError) as info:
        parse_srv("example.org")
    assert str(info.value) == "could not parse example.org to SRV parts"


def test_server_strings_from_srv_when_srv_is_not_well_formed():
    with pytest.raises(SrvParseError) as info:
        DnsSrvResolver().server_strings_from_srv("example.org")
    assert str(info.value) == "could not parse example.org to SRV parts"


def test_server_strings_from_dns_answer():
    answer = [
        SimpleNamespace(target="m2.example.org.", port=11211, priority=0, weight=0),
        SimpleNamespace(target="m1.example.org.", port=11211, priority=0, weight=0),
    ]
    with mock.patch("dns.resolver.resolve", return_value=answer) as resolve:
        servers = DnsSrvResolver().server_strings_from_srv("_memcache._tcp.example.org.")
    assert servers == ["m1.example.org.:11211", "m2.example.org.:11211"]
    resolve.assert_called_once_with("_memcache._tcp.example.org.", "SRV")


def test_server_strings_dns_error_propagates():
    with mock.patch("dns.resolver.resolve", side_effect=RuntimeError("lookup failed")):
        with pytest.raises(RuntimeError, match="lookup failed"):
            DnsSrvResolver().server_strings_from_srv("_something._tcp.example.invalid")