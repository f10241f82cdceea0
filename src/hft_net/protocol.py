"""
Identification probe protocol.

A probe POSTs ``{"cmd": "happyFunTimesPing"}`` to ``http://host:port/``. A
game server replies ``{"version": "0.0.0", "id": "HappyFunTimes",
"serverName": "..."}``. Any other reply means "not this service".
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Optional

import aiohttp
from pydantic import BaseModel, ConfigDict, ValidationError

from ._types import (
    PING_COMMAND,
    PROTOCOL_VERSION,
    SERVICE_ID,
    GameServer,
    ProbeOutcome,
    ProbeStatus,
    ProbeTarget,
)

logger = logging.getLogger(__name__)


class PingReply(BaseModel):
    """Reply to an identification probe."""
    version: str
    id: str
    serverName: Optional[str] = None

    model_config = ConfigDict(extra="allow")


def parse_ping_reply(data: Any) -> Optional[PingReply]:
    """Return the reply if it identifies a compatible game server, else None."""
    if not isinstance(data, dict):
        return None
    try:
        reply = PingReply.model_validate(data)
    except ValidationError:
        return None
    if reply.version != PROTOCOL_VERSION:
        logger.debug(f"bad api version: {reply.version}")
        return None
    if reply.id != SERVICE_ID:
        logger.debug(f"bad id: {reply.id}")
        return None
    return reply


def ping_request() -> dict[str, str]:
    return {"cmd": PING_COMMAND}


def outcome_to_server(outcome: ProbeOutcome) -> GameServer:
    data = outcome.data or {}
    return GameServer(
        address=outcome.address,
        server_name=data.get("serverName") or None,
        data=data,
    )


class ProbeClient:
    """
    Sends identification probes.

    Never raises for network trouble: every failure is folded into the
    returned ``ProbeOutcome``.
    """

    def __init__(self, session: Optional[aiohttp.ClientSession] = None):
        """
        Args:
            session: Shared session to use (default: create and own one)
        """
        self._session = session
        self._owns_session = session is None

    async def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession(
                connector=aiohttp.TCPConnector(force_close=True),
            )
            self._owns_session = True
        return self._session

    async def close(self) -> None:
        if self._owns_session and self._session and not self._session.closed:
            await self._session.close()
        self._session = None

    async def __aenter__(self) -> "ProbeClient":
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.close()

    async def ping(self, address: str, timeout: float) -> ProbeOutcome:
        """
        Probe ``address`` (``host:port``) once.

        Args:
            address: Endpoint to probe
            timeout: Seconds to wait for the whole exchange
        """
        session = await self._get_session()
        loop = asyncio.get_running_loop()
        started = loop.time()
        url = f"http://{address}/"

        try:
            async with session.post(
                url,
                json=ping_request(),
                timeout=aiohttp.ClientTimeout(total=timeout),
            ) as response:
                data = await response.json(content_type=None)
        except asyncio.TimeoutError:
            return ProbeOutcome(
                address=address,
                status=ProbeStatus.TIMEOUT,
                elapsed=loop.time() - started,
            )
        except (aiohttp.ClientError, OSError, ValueError) as e:
            return ProbeOutcome(
                address=address,
                status=ProbeStatus.ERROR,
                elapsed=loop.time() - started,
                error=str(e) or type(e).__name__,
            )

        elapsed = loop.time() - started
        reply = parse_ping_reply(data)
        if reply is None:
            return ProbeOutcome(
                address=address,
                status=ProbeStatus.MISMATCH,
                elapsed=elapsed,
                data=data if isinstance(data, dict) else None,
            )
        return ProbeOutcome(
            address=address,
            status=ProbeStatus.MATCH,
            elapsed=elapsed,
            data=reply.model_dump(exclude_none=True),
        )

    async def probe(self, target: ProbeTarget, timeout: float) -> ProbeOutcome:
        """Probe a scan target; the outcome remembers which target it was."""
        outcome = await self.ping(target.address, timeout)
        outcome.target = target
        return outcome
