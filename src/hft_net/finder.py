"""
Client-side game discovery.

1. Ask the rendezvous service which games share our public address.
2. Ping each one. One answers: go there. Several answer: let the player
   choose. None answer: scan the local network.
3. The scan either finds a server or gives up, at which point the player
   has to enter an address by hand.

State machine::

    INIT -> RENDEZVOUS_QUERY -> FOUND | AMBIGUOUS | NONE
    NONE -> SCANNING -> FOUND | EXHAUSTED
"""

from __future__ import annotations

import asyncio
import ipaddress
import logging
import socket
import subprocess
import sys
from typing import Callable, Iterable, Optional
from urllib.parse import urlencode

import aiohttp

from ._types import DiscoveryResult, DiscoveryState, GameServer, ScanProgress
from .config import FinderConfig, load_finder_config
from .protocol import ProbeClient, outcome_to_server
from .scanner import DiscoveryScanner

logger = logging.getLogger(__name__)


def detect_local_addresses() -> list[str]:
    """
    Non-loopback IPv4 addresses of this machine.

    Parses ``ip -4 -o addr show`` where available, otherwise asks the OS
    which source address it would use for an outbound packet.
    """
    addresses: list[str] = []

    try:
        result = subprocess.run(
            ["ip", "-4", "-o", "addr", "show"],
            capture_output=True, text=True, timeout=5,
        )
        if result.returncode == 0:
            for line in result.stdout.splitlines():
                parts = line.split()
                # Format: "2: eth0    inet 192.168.88.241/24 brd ..."
                iface = parts[1] if len(parts) > 1 else ""
                if iface == "lo":
                    continue
                for part in parts:
                    if "/" in part:
                        try:
                            interface = ipaddress.IPv4Interface(part)
                        except ValueError:
                            continue
                        if not interface.ip.is_loopback:
                            addresses.append(str(interface.ip))
                        break
            if addresses:
                logger.info(f"Auto-detected local addresses: {addresses}")
                return addresses
    except (FileNotFoundError, subprocess.TimeoutExpired):
        pass

    # No packet is sent: connecting a UDP socket only picks a route.
    try:
        with socket.socket(socket.AF_INET, socket.SOCK_DGRAM) as sock:
            sock.connect(("10.255.255.255", 1))
            address = sock.getsockname()[0]
        if not ipaddress.ip_address(address).is_loopback:
            addresses.append(address)
    except OSError:
        pass

    if not addresses:
        logger.warning("Could not detect local addresses")
    return addresses


def make_game_url(address: str, name: str = "", **extra: Optional[str]) -> str:
    """
    URL of a game's name-entry page.

    Args:
        address: ``host:port`` of the game server
        name: Player name to prefill
        extra: Additional query values; None values are left out
    """
    query = {"fromHFTNet": "true", "name": name}
    query.update({k: v for k, v in extra.items() if v is not None})
    return f"http://{address}/enter-name.html?{urlencode(query)}"


class ProgressLogger:
    """
    Logs scan progress each time it crosses another ``step`` of the way.

    Passed as ``on_progress``; the candidate check and the scan each start
    their own count.
    """

    def __init__(self, step: float = 0.1):
        self.step = step
        self._last: Optional[int] = None

    def __call__(self, progress: ScanProgress) -> None:
        mark = int(progress.fraction / self.step)
        if mark == self._last:
            return
        self._last = mark
        logger.info(
            f"Progress: {progress.fraction:.0%} "
            f"({progress.total_done}/{progress.total_to_do})"
        )


class GameFinder:
    """
    Runs one discovery session.

    Callers that want to show progress pass ``on_state`` and ``on_progress``.
    """

    def __init__(
        self,
        config: Optional[FinderConfig] = None,
        local_addresses: Optional[Iterable[str]] = None,
        probe_client: Optional[ProbeClient] = None,
        session: Optional[aiohttp.ClientSession] = None,
        on_state: Optional[Callable[[DiscoveryState], None]] = None,
        on_progress: Optional[Callable[[ScanProgress], None]] = None,
    ):
        self.config = config or FinderConfig()
        self._local_addresses = list(local_addresses) if local_addresses is not None else None
        self._probe_client = probe_client
        self._session = session
        self._on_state = on_state
        self._on_progress = on_progress
        self.state = DiscoveryState.INIT

    def _set_state(self, state: DiscoveryState) -> None:
        if state.is_terminal:
            logger.info(f"Discovery finished: {state.value}")
        else:
            logger.debug(f"Discovery state: {self.state.value} -> {state.value}")
        self.state = state
        if self._on_state:
            self._on_state(state)

    async def query_rendezvous(self, session: aiohttp.ClientSession) -> list[str]:
        """
        Endpoints the rendezvous service has for our public address.

        Any failure is logged and treated as "no games".
        """
        url = self.config.rendezvous_url
        logger.debug(f"checking: {url}")
        try:
            async with session.post(
                url,
                json={},
                timeout=aiohttp.ClientTimeout(total=self.config.rendezvous_timeout),
            ) as response:
                if response.status != 200:
                    logger.warning(f"Rendezvous query returned HTTP {response.status}")
                    return []
                data = await response.json(content_type=None)
        except (aiohttp.ClientError, asyncio.TimeoutError, OSError, ValueError) as e:
            logger.warning(f"Rendezvous query failed: {e}")
            return []

        game_ips = data.get("gameIps") if isinstance(data, dict) else None
        if not isinstance(game_ips, list):
            logger.warning("Rendezvous reply has no gameIps list")
            return []
        return [ip for ip in game_ips if isinstance(ip, str)]

    async def check_candidates(
        self,
        probe_client: ProbeClient,
        endpoints: list[str],
    ) -> list[GameServer]:
        """
        Ping rendezvous candidates one at a time.

        Servers announcing the same name are listed once.
        """
        running: list[GameServer] = []
        names: set[str] = set()
        progress = ScanProgress(total_to_do=len(endpoints))

        for endpoint in endpoints:
            outcome = await probe_client.ping(
                endpoint, self.config.scanner.targeted_probe_timeout,
            )
            progress.total_done += 1
            if self._on_progress:
                self._on_progress(progress)

            if not outcome.is_match:
                logger.debug(f"Candidate {endpoint} did not answer: {outcome.status.value}")
                continue

            server = outcome_to_server(outcome)
            if server.server_name:
                if server.server_name in names:
                    continue
                names.add(server.server_name)
            running.append(server)

        return running

    async def scan(self, probe_client: ProbeClient) -> DiscoveryResult:
        """Fall back to probing the local network."""
        self._set_state(DiscoveryState.SCANNING)
        local_addresses = self._local_addresses
        if local_addresses is None:
            local_addresses = await asyncio.to_thread(detect_local_addresses)

        scanner = DiscoveryScanner(
            local_addresses=local_addresses,
            config=self.config.scanner,
            probe=probe_client.probe,
            on_progress=self._on_progress,
        )
        result = await scanner.run()
        self._set_state(result.state)
        return result

    async def find(self) -> DiscoveryResult:
        """Run the whole session and return its terminal outcome."""
        session = self._session or aiohttp.ClientSession()
        probe_client = self._probe_client or ProbeClient()

        try:
            self._set_state(DiscoveryState.RENDEZVOUS_QUERY)
            endpoints = await self.query_rendezvous(session)
            servers = await self.check_candidates(probe_client, endpoints)

            if len(servers) == 1:
                self._set_state(DiscoveryState.FOUND)
                return DiscoveryResult(state=DiscoveryState.FOUND, servers=servers)
            if len(servers) > 1:
                self._set_state(DiscoveryState.AMBIGUOUS)
                return DiscoveryResult(state=DiscoveryState.AMBIGUOUS, servers=servers)

            self._set_state(DiscoveryState.NONE)
            if not self.config.scan_on_failure:
                return DiscoveryResult(state=DiscoveryState.NONE)
            return await self.scan(probe_client)
        finally:
            if self._probe_client is None:
                await probe_client.close()
            if self._session is None:
                await session.close()


def main():
    """Entry point for the hft-find command."""
    import argparse

    parser = argparse.ArgumentParser(description="Find a HappyFunTimes game on this network")
    parser.add_argument("--url", type=str, help="Rendezvous getgames2 URL")
    parser.add_argument("--name", type=str, default="", help="Player name")
    parser.add_argument("--address", action="append", help="Local address to scan around (repeatable)")
    parser.add_argument("--port", type=int, help="Game port to probe")
    parser.add_argument("--no-scan", action="store_true", help="Only ask the rendezvous service")
    parser.add_argument("--log-level", type=str, help="Log level")
    args = parser.parse_args()

    config = load_finder_config(args.url)
    if args.port:
        config.scanner.port = args.port
    if args.no_scan:
        config.scan_on_failure = False
    if args.log_level:
        config.log_level = args.log_level

    logging.basicConfig(
        level=getattr(logging, config.log_level.upper()),
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    )

    finder = GameFinder(
        config,
        local_addresses=args.address,
        on_progress=ProgressLogger(),
    )
    result = asyncio.run(finder.find())

    if result.state == DiscoveryState.FOUND and result.server:
        print(make_game_url(result.server.address, args.name))
        return
    if result.state == DiscoveryState.AMBIGUOUS:
        for server in result.servers:
            print(f"{server.server_name or '*unknown*'}: {make_game_url(server.address, args.name)}")
        return

    print("Could not find a game server on this network. Enter its address manually.")
    sys.exit(1)


if __name__ == "__main__":
    main()
