"""
Relay configuration: the two endpoints and the debug switch.

Addresses are given as ``host:port``, ``[v6host]:port`` or ``:port`` and are
resolved once at startup, so a bad address fails before any socket is opened.
"""
import socket
from dataclasses import dataclass
from typing import NamedTuple


class AddressError(ValueError):
    """Address could not be parsed or resolved."""


def format_address(sockaddr):
    if not isinstance(sockaddr, tuple):
        return str(sockaddr)
    host, port = sockaddr[0], sockaddr[1]
    if ":" in host:
        return f"[{host}]:{port}"
    return f"{host}:{port}"


class Address(NamedTuple):
    host: str
    port: int
    family: int = socket.AF_INET

    def __str__(self):
        return format_address((self.host, self.port))


def split_host_port(text):
    host, sep, port = text.rpartition(":")
    if not sep:
        raise AddressError(f"address {text}: missing port in address")
    if host.startswith("["):
        if not host.endswith("]"):
            raise AddressError(f"address {text}: missing ']' in address")
        host = host[1:-1]
    elif ":" in host:
        raise AddressError(f"address {text}: too many colons in address")
    if not port:
        raise AddressError(f"address {text}: missing port in address")
    return host, port


def parse_address(text):
    """Resolve ``text`` to a numeric TCP Address (first result wins)."""
    host, port = split_host_port(text)
    if port.isdigit() and int(port) > 65535:
        raise AddressError(f"address {text}: invalid port")

    # An empty host means every IPv4 interface.
    family = socket.AF_UNSPEC if host else socket.AF_INET
    try:
        infos = socket.getaddrinfo(host or None, port, family,
                                   socket.SOCK_STREAM, 0, socket.AI_PASSIVE)
    except socket.gaierror as e:
        raise AddressError(f"address {text}: {e.strerror}") from e
    if not infos:
        raise AddressError(f"address {text}: no suitable address found")

    family, _, _, _, sockaddr = infos[0]
    return Address(sockaddr[0], sockaddr[1], family)


@dataclass(frozen=True)
class RelayConfig:
    listen: Address
    upstream: Address
    debug: bool = False
