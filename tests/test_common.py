import pytest

from swaprelay.common import ConfigurationError, SocketAddress, parse_socket


@pytest.mark.parametrize(
    "raw, expected",
    [
        ("127.0.0.1:22", SocketAddress("127.0.0.1", 22)),
        (":3110", SocketAddress("", 3110)),
        ("backend.internal:8080", SocketAddress("backend.internal", 8080)),
        ("[::1]:443", SocketAddress("::1", 443)),
        ("  10.0.0.1:22\n", SocketAddress("10.0.0.1", 22)),
    ],
)
def test_parse_socket(raw, expected):
    assert parse_socket(raw) == expected


@pytest.mark.parametrize("raw", ["", "10.0.0.1", "a:b:c", "host:ssh", "host:1\u00b2", "host:\u0663", "host:-1", "host:70000", "[::1]", "[::1]80"])
def test_parse_socket_rejects(raw):
    with pytest.raises(ConfigurationError):
        parse_socket(raw)


def test_rendering():
    assert str(SocketAddress("10.0.0.1", 22)) == "10.0.0.1:22"
    assert str(SocketAddress("", 3110)) == ":3110"
    assert str(SocketAddress("fe80::1", 22)) == "[fe80::1]:22"


def test_empty_host_dials_localhost_but_binds_everywhere():
    addr = SocketAddress("", 22)
    assert addr.dial_tuple() == ("localhost", 22)
    assert addr.bind_tuple() == ("", 22)


def test_with_host_keeps_port_and_original():
    addr = SocketAddress("10.0.0.1", 22)
    moved = addr.with_host("10.0.0.2")
    assert moved == SocketAddress("10.0.0.2", 22)
    assert addr.host == "10.0.0.1"
