"""
Address helpers: literal validation, endpoint formatting and /24 math.
"""

from __future__ import annotations

import ipaddress
import re
from typing import Iterable, Optional

_PORT_RE = re.compile(r"^\d{1,5}$")


def valid_ip_address(address: object) -> bool:
    """Check that ``address`` is an unbracketed IPv4 or IPv6 literal."""
    if not isinstance(address, str) or not address:
        return False
    try:
        ipaddress.ip_address(address)
    except ValueError:
        return False
    return True


def valid_port(port: object) -> bool:
    """Ports are 1 to 5 decimal digits. Ints are checked by their string form."""
    if isinstance(port, bool):
        return False
    if isinstance(port, int):
        port = str(port)
    if not isinstance(port, str):
        return False
    return bool(_PORT_RE.match(port))


def strip_brackets(address: str) -> str:
    """``[::1]`` -> ``::1``. Anything else is returned unchanged."""
    if len(address) >= 2 and address.startswith("[") and address.endswith("]"):
        return address[1:-1]
    return address


def format_endpoint(address: str, port: object) -> str:
    """Join an address and port, bracketing IPv6 addresses."""
    if ":" in address:
        return f"[{address}]:{port}"
    return f"{address}:{port}"


def parse_forwarded_for(header: Optional[str]) -> list[str]:
    """
    Extract the valid address literals from a forwarded-for header.

    The whole comma separated list is honored; entries that are not
    address literals are skipped.
    """
    if not header:
        return []
    addresses = []
    for part in header.split(","):
        candidate = strip_brackets(part.strip())
        if valid_ip_address(candidate):
            addresses.append(candidate)
    return addresses


def public_addresses(
    forwarded_for: Optional[str],
    peer: Optional[str],
) -> list[str]:
    """
    Addresses a request appears to come from.

    Forwarded addresses win; the transport peer is used when the header is
    absent or holds nothing valid.
    """
    addresses = parse_forwarded_for(forwarded_for)
    if addresses:
        return addresses
    if peer and valid_ip_address(peer):
        return [peer]
    return []


def ipv4_block(address: str) -> Optional[str]:
    """First three octets of an IPv4 address (``10.0.1.7`` -> ``10.0.1``)."""
    try:
        ip = ipaddress.ip_address(address)
    except ValueError:
        return None
    if ip.version != 4:
        return None
    return address.rsplit(".", 1)[0]


def expand_block(block: str, start_host: int, end_host: int) -> list[str]:
    """All host addresses of a /24 between two host octets, inclusive."""
    return [f"{block}.{host}" for host in range(start_host, end_host + 1)]


def unique_blocks(addresses: Iterable[str]) -> list[str]:
    """The distinct /24 blocks of the IPv4 addresses given, in first-seen order."""
    blocks: list[str] = []
    for address in addresses:
        block = ipv4_block(address)
        if block and block not in blocks:
            blocks.append(block)
    return blocks
