"""Tests for the discovery scanner."""

import asyncio

import pytest

from hft_net._types import DiscoveryState, ProbeOutcome, ProbeStatus, ScanClass
from hft_net.config import ScannerConfig
from hft_net.scanner import DiscoveryScanner

GOOD_REPLY = {"version": "0.0.0", "id": "HappyFunTimes"}


class FakeNetwork:
    """
    Stands in for the network: answers probes from a table.

    Hosts not in the table time out. Tracks how many probes run at once.
    """

    def __init__(self, delay: float = 0.0):
        self.delay = delay
        self.answers: dict[str, tuple[ProbeStatus, float, dict]] = {}
        self.delays: dict[str, float] = {}
        self.probed: list[tuple[str, ScanClass]] = []
        self.in_flight = 0
        self.max_in_flight = 0

    def answer(self, host, status, elapsed=0.01, data=None, delay=None):
        self.answers[host] = (status, elapsed, data)
        if delay is not None:
            self.delays[host] = delay

    async def probe(self, target, timeout):
        self.probed.append((target.host, target.scan_class))
        self.in_flight += 1
        self.max_in_flight = max(self.max_in_flight, self.in_flight)
        try:
            delay = self.delays.get(target.host, self.delay)
            if delay:
                await asyncio.sleep(delay)
            else:
                await asyncio.sleep(0)
            status, elapsed, data = self.answers.get(
                target.host, (ProbeStatus.TIMEOUT, timeout, None),
            )
            return ProbeOutcome(
                address=target.address,
                status=status,
                elapsed=elapsed,
                data=data,
                target=target,
            )
        finally:
            self.in_flight -= 1

    def hosts(self, scan_class=None):
        return [h for h, c in self.probed if scan_class is None or c == scan_class]


def small_config(**overrides):
    values = dict(
        common_subnet_bases=["192.168"],
        common_third_octets=[7, 8],
        common_host_octets=[1, 2, 3, 4],
        max_concurrent_probes=1,
    )
    values.update(overrides)
    return ScannerConfig(**values)


class TestBuildQueues:
    """Tests for queue construction."""

    def test_full_queue_from_local_addresses(self):
        """Each local /24 is expanded over the host range."""
        scanner = DiscoveryScanner(
            local_addresses=["10.1.2.3", "10.1.2.99", "fe80::1"],
            config=small_config(start_host=1, end_host=254),
        )
        scanner.build_queues()

        full = scanner.state.full_queue
        assert len(full) == 254
        assert full[0].host == "10.1.2.1"
        assert full[-1].host == "10.1.2.254"
        assert all(t.scan_class == ScanClass.FULL for t in full)
        assert all(t.port == 8080 for t in full)

    def test_host_range_is_configurable(self):
        scanner = DiscoveryScanner(
            local_addresses=["10.1.2.3"],
            config=small_config(start_host=10, end_host=19),
        )
        scanner.build_queues()

        assert [t.host for t in scanner.state.full_queue] == [f"10.1.2.{h}" for h in range(10, 20)]

    def test_fast_queue_cross_product(self):
        """Fast targets cover every common block, routers first."""
        scanner = DiscoveryScanner(config=small_config())
        scanner.build_queues()

        hosts = [t.host for t in scanner.state.fast_queue]
        assert hosts == [
            "192.168.7.1", "192.168.8.1",
            "192.168.7.2", "192.168.8.2",
            "192.168.7.3", "192.168.8.3",
            "192.168.7.4", "192.168.8.4",
        ]
        assert all(t.scan_class == ScanClass.FAST for t in scanner.state.fast_queue)
        assert scanner.progress.total_to_do == 8

    def test_known_blocks_not_guessed(self):
        """A block already in the full queue gets no fast targets."""
        scanner = DiscoveryScanner(
            local_addresses=["192.168.7.50"],
            config=small_config(start_host=1, end_host=10),
        )
        scanner.build_queues()

        assert all(t.block == "192.168.8" for t in scanner.state.fast_queue)
        assert scanner.progress.total_to_do == 10 + 4

    def test_default_table(self):
        """The default table guesses 2 bases x 15 third octets x 8 hosts."""
        scanner = DiscoveryScanner()
        scanner.build_queues()

        assert len(scanner.state.fast_queue) == 240
        assert scanner.state.fast_queue[0].host == "192.168.0.1"


class TestConcurrency:
    """Tests for the concurrency cap and completion accounting."""

    @pytest.mark.asyncio
    async def test_cap_respected_and_all_counted(self):
        """40 fast targets, cap 4: never more than 4 at once, 40 done."""
        network = FakeNetwork(delay=0.005)
        config = ScannerConfig(
            common_subnet_bases=["192.168"],
            common_third_octets=[0, 1, 2, 10, 11, 20, 30, 50, 62, 100],
            common_host_octets=[2, 3, 4, 5],
            max_concurrent_probes=4,
        )
        progress = []
        scanner = DiscoveryScanner(
            config=config,
            probe=network.probe,
            on_progress=lambda p: progress.append((p.total_done, p.in_flight)),
        )

        result = await scanner.run()

        assert result.state == DiscoveryState.EXHAUSTED
        assert network.max_in_flight == 4
        assert all(in_flight <= 4 for _, in_flight in progress)
        assert scanner.progress.total_done == 40
        assert scanner.progress.total_to_do == 40
        assert scanner.progress.in_flight == 0
        assert len(network.probed) == 40
        assert scanner.progress.fraction == 1.0
        assert [done for done, _ in progress] == list(range(1, 41))

    @pytest.mark.asyncio
    async def test_full_queue_preferred(self):
        """Known networks are swept before any guess is tried."""
        network = FakeNetwork()
        scanner = DiscoveryScanner(
            local_addresses=["10.9.9.9"],
            config=small_config(start_host=1, end_host=5, max_concurrent_probes=2),
            probe=network.probe,
        )

        await scanner.run()

        classes = [c for _, c in network.probed]
        assert classes == [ScanClass.FULL] * 5 + [ScanClass.FAST] * 8

    @pytest.mark.asyncio
    async def test_probe_exception_counts_as_failure(self):
        """A probe blowing up is an ordinary unsuccessful probe."""

        async def broken_probe(target, timeout):
            raise RuntimeError("network unreachable")

        scanner = DiscoveryScanner(config=small_config(), probe=broken_probe)
        result = await scanner.run()

        assert result.state == DiscoveryState.EXHAUSTED
        assert scanner.progress.total_done == 8
        # Slow failures never promote
        assert not scanner.state.full_blocks

    @pytest.mark.asyncio
    async def test_nothing_to_scan(self):
        """Empty tables exhaust immediately."""
        scanner = DiscoveryScanner(
            config=small_config(common_host_octets=[]),
            probe=FakeNetwork().probe,
        )
        result = await scanner.run()

        assert result.state == DiscoveryState.EXHAUSTED
        assert scanner.progress.total_done == 0
        assert scanner.progress.fraction == 0.0


class TestPromotion:
    """Tests for promoting a guessed /24 to a full scan."""

    @pytest.mark.asyncio
    async def test_quick_error_promotes_block(self):
        """A quick refusal at 192.168.7.1 sweeps 192.168.7.x and drops its guesses."""
        network = FakeNetwork()
        network.answer("192.168.7.1", ProbeStatus.ERROR, elapsed=0.01)
        scanner = DiscoveryScanner(config=small_config(), probe=network.probe)

        result = await scanner.run()

        assert result.state == DiscoveryState.EXHAUSTED
        assert scanner.state.full_blocks == {"192.168.7"}

        # Only the first guess in 192.168.7 was probed as a fast target
        fast_hosts = network.hosts(ScanClass.FAST)
        assert [h for h in fast_hosts if h.startswith("192.168.7.")] == ["192.168.7.1"]
        assert sorted(h for h in fast_hosts if h.startswith("192.168.8.")) == [
            "192.168.8.1", "192.168.8.2", "192.168.8.3", "192.168.8.4",
        ]

        # Every host of the block probed exactly once overall
        block_hosts = [h for h in network.hosts() if h.startswith("192.168.7.")]
        assert sorted(block_hosts) == sorted(f"192.168.7.{i}" for i in range(1, 255))

        # 8 guesses + 253 promoted; 3 pruned guesses counted once each
        assert scanner.progress.total_to_do == 8 + 253
        assert scanner.progress.total_done == scanner.progress.total_to_do
        assert result.progress.fraction == 1.0
        assert len(network.probed) == 8 + 253 - 3

    @pytest.mark.asyncio
    async def test_promotion_drains_before_other_guesses(self):
        """The promoted sweep runs before the remaining fast targets."""
        network = FakeNetwork()
        network.answer("192.168.7.1", ProbeStatus.MISMATCH, elapsed=0.01)
        scanner = DiscoveryScanner(
            config=small_config(end_host=10),
            probe=network.probe,
        )

        await scanner.run()

        hosts = network.hosts()
        assert hosts[0] == "192.168.7.1"
        assert hosts[1:10] == [f"192.168.7.{i}" for i in range(2, 11)]
        assert all(h.startswith("192.168.8.") for h in hosts[10:])

    @pytest.mark.asyncio
    async def test_slow_answer_does_not_promote(self):
        """An answer slower than the live-host threshold proves nothing."""
        network = FakeNetwork()
        network.answer("192.168.7.1", ProbeStatus.ERROR, elapsed=0.19)
        scanner = DiscoveryScanner(config=small_config(), probe=network.probe)

        await scanner.run()

        assert not scanner.state.full_blocks
        assert len(network.probed) == 8

    @pytest.mark.asyncio
    async def test_timeout_does_not_promote(self):
        network = FakeNetwork()
        scanner = DiscoveryScanner(config=small_config(), probe=network.probe)

        await scanner.run()

        assert not scanner.state.full_blocks
        assert scanner.progress.total_done == 8

    @pytest.mark.asyncio
    async def test_full_target_answer_does_not_re_promote(self):
        """Answers from full-scan targets never enqueue more work."""
        network = FakeNetwork()
        network.answer("10.0.0.2", ProbeStatus.ERROR, elapsed=0.01)
        scanner = DiscoveryScanner(
            local_addresses=["10.0.0.5"],
            config=small_config(start_host=1, end_host=3, common_host_octets=[]),
            probe=network.probe,
        )

        await scanner.run()

        assert network.hosts() == ["10.0.0.1", "10.0.0.2", "10.0.0.3"]
        assert scanner.progress.total_done == 3


class TestMatch:
    """Tests for finishing on a match."""

    @pytest.mark.asyncio
    async def test_match_found_in_promoted_block(self):
        """Router refuses, sweep finds the game at .42."""
        network = FakeNetwork()
        network.answer("192.168.8.1", ProbeStatus.ERROR, elapsed=0.005)
        network.answer(
            "192.168.8.42", ProbeStatus.MATCH,
            data={**GOOD_REPLY, "serverName": "den"},
        )
        found = []
        scanner = DiscoveryScanner(
            config=small_config(),
            probe=network.probe,
            on_found=found.append,
        )

        result = await scanner.run()

        assert result.state == DiscoveryState.FOUND
        assert result.server.address == "192.168.8.42:8080"
        assert result.server.server_name == "den"
        assert found == [result.server]
        assert "192.168.8.43" not in network.hosts()

    @pytest.mark.asyncio
    async def test_late_completions_ignored(self):
        """Once found, in-flight completions change nothing."""
        network = FakeNetwork()
        network.answer("192.168.7.1", ProbeStatus.MATCH, data={**GOOD_REPLY, "serverName": "first"}, delay=0.01)
        network.answer("192.168.8.1", ProbeStatus.MATCH, data={**GOOD_REPLY, "serverName": "second"}, delay=0.05)
        network.answer("192.168.7.2", ProbeStatus.ERROR, elapsed=0.001, delay=0.03)
        found = []
        scanner = DiscoveryScanner(
            config=small_config(max_concurrent_probes=3),
            probe=network.probe,
            on_found=found.append,
        )

        result = await scanner.run()

        assert result.state == DiscoveryState.FOUND
        assert [s.server_name for s in found] == ["first"]
        assert result.server.server_name == "first"
        assert scanner.state.server.server_name == "first"
        # The late error would have promoted 192.168.7 had it been handled
        assert not scanner.state.full_blocks
        assert scanner.progress.total_done == 1
        assert scanner.progress.in_flight == 0
        # No new probes were started after the match
        assert len(network.probed) == 3
