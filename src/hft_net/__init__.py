"""
HappyFunTimes network rendezvous - find a game on the local network.

A game server reports its local addresses to the rendezvous service, which
files them under the public address the report came from. A player's
device asking from behind the same public address gets those addresses
back. When that fails, the player's device scans the likely local subnets
for a server answering the identification probe.

Architecture:
    hft-net-server - rendezvous HTTP service over an expiring in-memory cache
    hft-find       - client-side discovery (rendezvous query, then scan)
"""

__version__ = "0.1.0"

from ._types import (
    DiscoveryResult,
    DiscoveryState,
    GameServer,
    InternalEndpoint,
    ProbeOutcome,
    ProbeStatus,
    ProbeTarget,
    ScanClass,
    ScanProgress,
)
from .game_cache import GameCache
from .scanner import DiscoveryScanner

__all__ = [
    "__version__",
    "DiscoveryResult",
    "DiscoveryState",
    "GameServer",
    "InternalEndpoint",
    "ProbeOutcome",
    "ProbeStatus",
    "ProbeTarget",
    "ScanClass",
    "ScanProgress",
    "GameCache",
    "DiscoveryScanner",
]
