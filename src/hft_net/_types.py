"""
Type definitions shared by the rendezvous service and the discovery client.

These dataclasses describe registered game endpoints, scan targets, probe
outcomes and the result of a discovery session.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Optional


# Identification probe protocol
PING_COMMAND = "happyFunTimesPing"
PROTOCOL_VERSION = "0.0.0"
SERVICE_ID = "HappyFunTimes"

# Port a game server listens on when nothing else is known
DEFAULT_GAME_PORT = 8080


class ScanClass(str, Enum):
    """How a probe target was chosen."""
    FAST = "fast"  # Heuristic guess from the common-subnet table
    FULL = "full"  # Exhaustive sweep of a /24 known to be live


class ProbeStatus(str, Enum):
    """Classification of a completed identification probe."""
    MATCH = "match"        # Valid reply from the expected service
    MISMATCH = "mismatch"  # Something answered, but not us
    ERROR = "error"        # Connection refused, reset, bad HTTP, etc.
    TIMEOUT = "timeout"    # Nobody answered in time


class DiscoveryState(str, Enum):
    """States of one client discovery session."""
    INIT = "init"
    RENDEZVOUS_QUERY = "rendezvous_query"
    FOUND = "found"
    AMBIGUOUS = "ambiguous"
    NONE = "none"
    SCANNING = "scanning"
    EXHAUSTED = "exhausted"

    @property
    def is_terminal(self) -> bool:
        return self in (
            DiscoveryState.FOUND,
            DiscoveryState.AMBIGUOUS,
            DiscoveryState.EXHAUSTED,
        )


@dataclass
class InternalEndpoint:
    """An ``ip:port`` reported from behind a public address."""
    address: str
    last_seen_at: float


@dataclass(frozen=True)
class ProbeTarget:
    """
    One address:port candidate for the discovery scanner.

    ``block`` is the first three octets of the address (``"192.168.7"``),
    used to group targets belonging to the same /24.
    """
    host: str
    port: int
    scan_class: ScanClass
    block: str

    @property
    def address(self) -> str:
        return f"{self.host}:{self.port}"


@dataclass
class ProbeOutcome:
    """Result of pinging one address."""
    address: str
    status: ProbeStatus
    elapsed: float = 0.0
    data: Optional[dict[str, Any]] = None
    target: Optional[ProbeTarget] = None
    error: Optional[str] = None

    @property
    def is_match(self) -> bool:
        return self.status == ProbeStatus.MATCH

    @property
    def answered(self) -> bool:
        """True if some device gave a definitive (non-timeout) answer."""
        return self.status != ProbeStatus.TIMEOUT


@dataclass
class GameServer:
    """A game server that answered the identification probe."""
    address: str
    server_name: Optional[str] = None
    data: dict[str, Any] = field(default_factory=dict)


@dataclass
class ScanProgress:
    """Progress counters of a scan session."""
    total_to_do: int = 0
    total_done: int = 0
    in_flight: int = 0

    @property
    def fraction(self) -> float:
        if not self.total_to_do:
            return 0.0
        return min(1.0, self.total_done / self.total_to_do)


@dataclass
class DiscoveryResult:
    """Terminal outcome of a discovery session."""
    state: DiscoveryState
    servers: list[GameServer] = field(default_factory=list)
    progress: Optional[ScanProgress] = None

    @property
    def server(self) -> Optional[GameServer]:
        """The resolved server when exactly one was found."""
        if self.state == DiscoveryState.FOUND and self.servers:
            return self.servers[0]
        return None
