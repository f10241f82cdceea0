"""
Rendezvous cache: which games were reported from behind which public address.

1. A game contacts the rendezvous service saying "I'm at 192.168.1.7:8080".
2. The service records that against the public address the request came
   from (say 6.7.8.9).
3. A player's browser on the same network asks the service for games. Its
   request also comes from 6.7.8.9, so the player is told 192.168.1.7:8080.

Several games can share one public address; the player picks among them.
Entries expire ``max_age`` seconds after their last report.

Expiry uses one FIFO of (public address, endpoint) keys ordered by last
touch. Touching moves a key to the tail, so a sweep only ever needs to look
at the head.
"""

from __future__ import annotations

import logging
import threading
import time
from collections import OrderedDict
from typing import Callable, Optional

from ._types import InternalEndpoint
from .scheduling import Cancellable, Scheduler, ThreadScheduler

logger = logging.getLogger(__name__)

DEFAULT_MAX_AGE = 60 * 60 * 2
DEFAULT_SWEEP_INTERVAL = 60

# (public address, endpoint string)
ExpiryKey = tuple[str, str]


class GameCache:
    """
    In-memory map of public address -> internal endpoints, with age-based
    eviction.

    All methods take one lock, so the periodic sweep may run on another
    thread than the request handlers.
    """

    def __init__(
        self,
        max_age: float = DEFAULT_MAX_AGE,
        sweep_interval: float = DEFAULT_SWEEP_INTERVAL,
        clock: Optional[Callable[[], float]] = None,
        scheduler: Optional[Scheduler] = None,
    ):
        """
        Initialize the cache and start the periodic sweep.

        Args:
            max_age: Seconds after its last report that an endpoint expires
            sweep_interval: Seconds between automatic sweeps
            clock: Returns the current time in seconds (default: monotonic)
            scheduler: Runs the sweep every ``sweep_interval`` seconds
        """
        self.max_age = max_age
        self.sweep_interval = sweep_interval
        self._clock = clock or time.monotonic
        self._lock = threading.RLock()
        self._games: dict[str, dict[str, InternalEndpoint]] = {}
        self._expiry: OrderedDict[ExpiryKey, None] = OrderedDict()

        scheduler = scheduler or ThreadScheduler()
        self._sweeper: Optional[Cancellable] = scheduler.call_every(
            sweep_interval, self.sweep,
        )

    def touch(self, public_address: str, endpoint: str) -> None:
        """Record or refresh ``endpoint`` as reachable behind ``public_address``."""
        key = (public_address, endpoint)
        with self._lock:
            # Read under the lock so FIFO order matches timestamp order
            now = self._clock()
            game = self._games.setdefault(public_address, {})
            internal = game.get(endpoint)
            if internal is None:
                game[endpoint] = InternalEndpoint(address=endpoint, last_seen_at=now)
                self._expiry[key] = None
            else:
                internal.last_seen_at = now
                self._expiry.move_to_end(key)

    def endpoints_for(self, public_address: str) -> list[str]:
        """Endpoints reported from behind ``public_address`` (may be empty)."""
        with self._lock:
            game = self._games.get(public_address)
            if not game:
                return []
            return list(game)

    def sweep(self, now: Optional[float] = None) -> int:
        """
        Evict every endpoint whose age has reached ``max_age``.

        Returns the number of endpoints evicted.
        """
        if now is None:
            now = self._clock()
        removed = 0
        with self._lock:
            while self._expiry:
                public_address, endpoint = next(iter(self._expiry))
                game = self._games[public_address]
                if now - game[endpoint].last_seen_at < self.max_age:
                    break

                del game[endpoint]
                self._expiry.popitem(last=False)
                if not game:
                    del self._games[public_address]
                removed += 1

        if removed:
            logger.debug(f"Expired {removed} game endpoints")
        return removed

    def clear(self) -> None:
        """Forget everything."""
        with self._lock:
            self._games = {}
            self._expiry = OrderedDict()

    def destroy(self) -> None:
        """Stop the periodic sweep and forget everything. Safe to call twice."""
        if self._sweeper is not None:
            self._sweeper.cancel()
            self._sweeper = None
        self.clear()

    def stats(self) -> int:
        """Number of tracked (public address, endpoint) pairs."""
        with self._lock:
            return len(self._expiry)

    def info(self) -> dict[str, int]:
        """Summary reported by the status endpoint."""
        return {"numGames": self.stats()}

    def check_integrity(self) -> bool:
        """
        Verify the expiry FIFO is ordered oldest touch first and matches the
        map one to one. Meant for tests, not for control flow.
        """
        with self._lock:
            last_seen = float("-inf")
            for public_address, endpoint in self._expiry:
                internal = self._games.get(public_address, {}).get(endpoint)
                if internal is None:
                    return False
                if internal.last_seen_at < last_seen:
                    return False
                last_seen = internal.last_seen_at

            tracked = sum(len(game) for game in self._games.values())
            if tracked != len(self._expiry):
                return False
            return all(self._games.values())
