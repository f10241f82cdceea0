"""
Discovery scanner: find a game server on the local network by probing.

Used when the rendezvous service knows of no game behind our public
address. Two queues feed a bounded pool of probes:

- full queue: every host of each /24 we know we are on
- fast queue: a few likely hosts (router, first DHCP leases) of the /24s
  consumer routers use by default

The full queue always drains first. When a fast probe gets any quick,
definitive answer, some device lives on that /24, so the whole block is
moved to the full queue and its remaining fast targets are dropped.

Probes run as tasks that only report back through a completion queue. The
single dispatcher coroutine owns all scan state, so queue changes and
progress counting happen one completion at a time.
"""

from __future__ import annotations

import asyncio
import logging
from collections import deque
from dataclasses import dataclass, field
from typing import Awaitable, Callable, Iterable, Optional

from ._types import (
    DiscoveryResult,
    DiscoveryState,
    GameServer,
    ProbeOutcome,
    ProbeStatus,
    ProbeTarget,
    ScanClass,
    ScanProgress,
)
from .addresses import expand_block, unique_blocks
from .config import ScannerConfig
from .protocol import ProbeClient, outcome_to_server

logger = logging.getLogger(__name__)

ProbeFn = Callable[[ProbeTarget, float], Awaitable[ProbeOutcome]]
ProgressFn = Callable[[ScanProgress], None]
FoundFn = Callable[[GameServer], None]


@dataclass
class ScanState:
    """Everything a scan session mutates."""
    full_queue: deque[ProbeTarget] = field(default_factory=deque)
    fast_queue: deque[ProbeTarget] = field(default_factory=deque)
    full_blocks: set[str] = field(default_factory=set)
    dispatched: set[str] = field(default_factory=set)
    progress: ScanProgress = field(default_factory=ScanProgress)
    found: bool = False
    server: Optional[GameServer] = None


class DiscoveryScanner:
    """
    Bounded-concurrency prober for one scan session.

    A scanner instance runs once; create a new one for another session.
    """

    def __init__(
        self,
        local_addresses: Iterable[str] = (),
        config: Optional[ScannerConfig] = None,
        probe: Optional[ProbeFn] = None,
        on_progress: Optional[ProgressFn] = None,
        on_found: Optional[FoundFn] = None,
    ):
        """
        Initialize scanner.

        Args:
            local_addresses: Addresses of this machine; their /24s get a full scan
            config: Scanner configuration
            probe: Coroutine probing one target (default: ProbeClient.probe)
            on_progress: Called after every completion with the counters
            on_found: Called once, when the first match arrives
        """
        self.config = config or ScannerConfig()
        self.local_addresses = list(local_addresses)
        self._probe = probe
        self._on_progress = on_progress
        self._on_found = on_found
        self.state = ScanState()
        self._completions: asyncio.Queue[ProbeOutcome] = asyncio.Queue()
        self._tasks: set[asyncio.Task] = set()

    @property
    def progress(self) -> ScanProgress:
        return self.state.progress

    # -------------------------------------------------------------------------
    # Queue construction
    # -------------------------------------------------------------------------

    def _target(self, block: str, host: int, scan_class: ScanClass) -> ProbeTarget:
        return ProbeTarget(
            host=f"{block}.{host}",
            port=self.config.port,
            scan_class=scan_class,
            block=block,
        )

    def _enqueue_full_block(self, block: str) -> int:
        """Queue every not-yet-probed host of ``block``. Returns how many."""
        state = self.state
        state.full_blocks.add(block)
        added = 0
        for host in expand_block(block, self.config.start_host, self.config.end_host):
            if host in state.dispatched:
                continue
            host_octet = int(host.rsplit(".", 1)[1])
            state.full_queue.append(self._target(block, host_octet, ScanClass.FULL))
            added += 1
        state.progress.total_to_do += added
        return added

    def build_queues(self) -> None:
        """Fill both queues from the local addresses and the common-subnet table."""
        for block in unique_blocks(self.local_addresses):
            self._enqueue_full_block(block)

        # Host octet outermost: every block's router gets probed before
        # anyone's DHCP leases.
        fast_queue = self.state.fast_queue
        for host in self.config.common_host_octets:
            for base in self.config.common_subnet_bases:
                for third in self.config.common_third_octets:
                    block = f"{base}.{third}"
                    if block in self.state.full_blocks:
                        continue
                    fast_queue.append(self._target(block, host, ScanClass.FAST))
        self.state.progress.total_to_do += len(fast_queue)

        logger.info(
            f"Scan queued {len(self.state.full_queue)} full and "
            f"{len(fast_queue)} fast targets"
        )

    # -------------------------------------------------------------------------
    # Dispatch
    # -------------------------------------------------------------------------

    def _next_target(self) -> Optional[ProbeTarget]:
        if self.state.full_queue:
            return self.state.full_queue.popleft()
        if self.state.fast_queue:
            return self.state.fast_queue.popleft()
        return None

    def _dispatch(self) -> None:
        """Start probes until the concurrency cap is hit or the queues are empty."""
        state = self.state
        if state.found:
            return
        while state.progress.in_flight < self.config.max_concurrent_probes:
            target = self._next_target()
            if target is None:
                return
            state.dispatched.add(target.host)
            state.progress.in_flight += 1
            task = asyncio.create_task(self._run_probe(target))
            self._tasks.add(task)
            task.add_done_callback(self._tasks.discard)

    async def _run_probe(self, target: ProbeTarget) -> None:
        timeout = self.config.probe_timeout
        try:
            outcome = await self._probe(target, timeout)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.debug(f"Probe of {target.address} failed: {e}")
            outcome = ProbeOutcome(
                address=target.address,
                status=ProbeStatus.ERROR,
                elapsed=timeout,
                error=str(e),
            )
        if outcome.target is None:
            outcome.target = target
        self._completions.put_nowait(outcome)

    # -------------------------------------------------------------------------
    # Completion handling
    # -------------------------------------------------------------------------

    def _report_progress(self) -> None:
        if self._on_progress:
            self._on_progress(self.state.progress)

    def _promote(self, block: str) -> None:
        """Switch ``block`` from guessing to a full sweep."""
        state = self.state
        if block in state.full_blocks:
            return

        added = self._enqueue_full_block(block)

        remaining = deque(t for t in state.fast_queue if t.block != block)
        pruned = len(state.fast_queue) - len(remaining)
        state.fast_queue = remaining
        state.progress.total_done += pruned

        logger.info(
            f"Live network at {block}.0/24: queued {added} hosts, "
            f"dropped {pruned} guesses"
        )

    def _on_probe_complete(self, outcome: ProbeOutcome) -> None:
        state = self.state
        state.progress.in_flight -= 1
        if state.found:
            return

        state.progress.total_done += 1
        target = outcome.target

        if outcome.is_match:
            state.found = True
            state.server = outcome_to_server(outcome)
            logger.info(
                f"Found game server at {outcome.address}"
                + (f" ({state.server.server_name})" if state.server.server_name else "")
            )
            self._report_progress()
            if self._on_found:
                self._on_found(state.server)
            return

        if (
            target is not None
            and target.scan_class == ScanClass.FAST
            and outcome.answered
            and outcome.elapsed < self.config.live_host_threshold
        ):
            self._promote(target.block)
        else:
            logger.debug(f"No game at {outcome.address}: {outcome.status.value}")

        self._report_progress()

    # -------------------------------------------------------------------------
    # Session
    # -------------------------------------------------------------------------

    async def run(self) -> DiscoveryResult:
        """
        Scan until a game server answers or every target has been probed.

        Probes still in flight when a match arrives are allowed to finish;
        their results are ignored.
        """
        probe_client: Optional[ProbeClient] = None
        if self._probe is None:
            probe_client = ProbeClient()
            self._probe = probe_client.probe

        try:
            self.build_queues()
            self._dispatch()
            while self.state.progress.in_flight:
                outcome = await self._completions.get()
                self._on_probe_complete(outcome)
                self._dispatch()
        finally:
            for task in list(self._tasks):
                task.cancel()
            if probe_client:
                await probe_client.close()

        if self.state.found and self.state.server:
            return DiscoveryResult(
                state=DiscoveryState.FOUND,
                servers=[self.state.server],
                progress=self.state.progress,
            )

        logger.info(
            f"Scan exhausted after {self.state.progress.total_done} probes, "
            f"no game server found"
        )
        return DiscoveryResult(
            state=DiscoveryState.EXHAUSTED,
            progress=self.state.progress,
        )
