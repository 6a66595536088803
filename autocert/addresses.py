"""Parsing helpers for listen addresses and Host headers."""
from .errors import InvalidAddressError


def split_host_port(address: str) -> tuple[str, int]:
    """
    Split "host:port" into its parts.

    The host may be empty (all interfaces) or a bracketed IPv6 literal.

    Raises:
        InvalidAddressError: The address cannot be parsed.
    """
    address = address.strip()
    host, sep, port = address.rpartition(":")
    if not sep or (host.count(":") and not host.startswith("[")):
        raise InvalidAddressError(f"invalid address {address!r}: expected host:port")
    if host.startswith("[") and host.endswith("]"):
        host = host[1:-1]
    try:
        port_number = int(port)
    except ValueError:
        raise InvalidAddressError(f"invalid address {address!r}: bad port {port!r}") from None
    if not 0 <= port_number <= 65535:
        raise InvalidAddressError(f"invalid address {address!r}: port out of range")
    return host, port_number


def strip_port(host: str) -> str:
    """Drop a :port suffix from a Host value, keeping IPv6 literals intact."""
    host = host.strip()
    if host.startswith("["):
        end = host.find("]")
        return host[1:end] if end != -1 else host
    if host.count(":") == 1:
        return host.split(":", 1)[0]
    return host
