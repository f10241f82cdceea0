"""
Rendezvous service - HTTP API over the game cache.

Games report their local addresses; players on the same network get them
back because both requests arrive from the same public address.

Routes:
    POST /api/inform      ?hftip=&hftport=            register one address
    POST /api/inform2     {addresses: [...], port}    register several addresses
    POST /api/getgames                                games for first public address
    POST /api/getgames2                               games for every public address
    POST /api/status                                  cache statistics
    GET|POST /check                                   uptime monitor payload
    OPTIONS *                                         CORS preflight
"""

from __future__ import annotations

import asyncio
import logging
import signal
import time
from pathlib import Path
from typing import Optional

from aiohttp import web

from .addresses import (
    format_endpoint,
    public_addresses,
    strip_brackets,
    valid_ip_address,
    valid_port,
)
from .config import RendezvousConfig, load_config
from .errors import (
    EmptyAddresses,
    InvalidPort,
    InvalidTargetAddress,
    MissingAddresses,
    MissingPort,
    MissingPublicAddress,
    MissingTargetAddress,
    RendezvousRequestError,
)
from .game_cache import GameCache
from .scheduling import LoopScheduler

logger = logging.getLogger(__name__)

CORS_HEADERS = {
    "Access-Control-Allow-Origin": "*",
    "Access-Control-Allow-Methods": "GET,POST,OPTIONS",
    "Access-Control-Allow-Headers": (
        "Content-Type, Authorization, Content-Length, "
        "X-Requested-With, X-HTTP-Method-Override"
    ),
}


@web.middleware
async def cors_middleware(request: web.Request, handler) -> web.StreamResponse:
    """Allow any origin; answer every preflight with an empty JSON object."""
    if request.method == "OPTIONS":
        response = web.Response(text="{}", content_type="application/json")
    else:
        try:
            response = await handler(request)
        except web.HTTPException as e:
            e.headers.update(CORS_HEADERS)
            raise
    response.headers.update(CORS_HEADERS)
    return response


def check_payload(now_ms: Optional[int] = None) -> str:
    """Body of the /check response."""
    if now_ms is None:
        now_ms = int(time.time() * 1000)
    return "\n".join([
        "<pingdom_http_custom_check>",
        "<status>OK</status>",
        "<response_time>0.1</response_time>",
        f"<server_time>{now_ms}</server_time>",
        "</pingdom_http_custom_check>",
    ])


class RendezvousService:
    """
    Rendezvous HTTP service.

    Owns the game cache unless one is handed in.
    """

    def __init__(self, config: Optional[RendezvousConfig] = None, cache: Optional[GameCache] = None):
        """
        Initialize rendezvous service.

        Args:
            config: Service configuration
            cache: Game cache to serve (default: created on startup)
        """
        self.config = config or RendezvousConfig()
        self.cache = cache
        self._owns_cache = cache is None
        self._running = False
        self._shutdown_event = asyncio.Event()
        self._monitor_task: Optional[asyncio.Task] = None
        self._app: Optional[web.Application] = None
        self._runner: Optional[web.AppRunner] = None

    def build_app(self) -> web.Application:
        """Create the aiohttp application."""
        app = web.Application(middlewares=[cors_middleware])
        app.router.add_post("/api/inform", self._handle_inform)
        app.router.add_post("/api/inform2", self._handle_inform2)
        app.router.add_post("/api/getgames", self._handle_get_games)
        app.router.add_post("/api/getgames2", self._handle_get_games2)
        app.router.add_post("/api/status", self._handle_status)
        app.router.add_get("/check", self._handle_check)
        app.router.add_post("/check", self._handle_check)
        app.on_startup.append(self._on_startup)
        app.on_cleanup.append(self._on_cleanup)
        return app

    async def _on_startup(self, app: web.Application) -> None:
        if self.cache is None:
            self.cache = GameCache(
                max_age=self.config.max_age_seconds,
                sweep_interval=self.config.sweep_interval_seconds,
                scheduler=LoopScheduler(),
            )
            self._owns_cache = True
        self._shutdown_event.clear()
        self._monitor_task = asyncio.create_task(self._monitor_loop())

    async def _on_cleanup(self, app: web.Application) -> None:
        self._shutdown_event.set()
        if self._monitor_task:
            await self._monitor_task
            self._monitor_task = None
        if self._owns_cache and self.cache is not None:
            self.cache.destroy()

    async def _monitor_loop(self) -> None:
        """Log the cache state every monitor interval."""
        while True:
            try:
                await asyncio.wait_for(
                    self._shutdown_event.wait(),
                    timeout=self.config.monitor_interval_seconds,
                )
                # Shutdown requested
                break
            except asyncio.TimeoutError:
                if self.cache is not None:
                    logger.info(f"gameCache state: {self.cache.info()}")

    async def start(self) -> None:
        """Start serving and block until stop() is called."""
        logger.info("Starting rendezvous service")
        self._running = True
        self._app = self.build_app()
        self._runner = web.AppRunner(self._app)
        await self._runner.setup()
        site = web.TCPSite(self._runner, self.config.host, self.config.port)
        await site.start()
        logger.info(f"Rendezvous service listening on {self.config.host}:{self.config.port}")

        while self._running:
            await asyncio.sleep(1)

    async def stop(self) -> None:
        """Stop serving and release the cache."""
        if not self._running and self._runner is None:
            return
        logger.info("Stopping rendezvous service")
        self._running = False
        if self._runner:
            await self._runner.cleanup()
            self._runner = None

    # -------------------------------------------------------------------------
    # Helpers
    # -------------------------------------------------------------------------

    def _public_addresses(self, request: web.Request) -> list[str]:
        addresses = public_addresses(
            request.headers.get(self.config.forwarded_header),
            request.remote,
        )
        if not addresses:
            raise MissingPublicAddress()
        return addresses

    def _reject(
        self,
        request: web.Request,
        route: str,
        error: RendezvousRequestError,
    ) -> web.Response:
        logger.info(
            f"{route}: {error.message} "
            f"(user-agent: {request.headers.get('User-Agent', '')})"
        )
        return web.json_response({"msg": error.message}, status=400)

    async def _read_body(self, request: web.Request) -> dict:
        """JSON request body; anything but a JSON object reads as empty."""
        if not request.body_exists:
            return {}
        try:
            body = await request.json()
        except ValueError:
            return {}
        return body if isinstance(body, dict) else {}

    def _register(self, public: list[str], endpoints: list[str]) -> None:
        for ip in public:
            for endpoint in endpoints:
                self.cache.touch(ip, endpoint)

    # -------------------------------------------------------------------------
    # API Handlers
    # -------------------------------------------------------------------------

    async def _handle_inform(self, request: web.Request) -> web.Response:
        """Handle POST /api/inform."""
        try:
            public = self._public_addresses(request)

            hft_ip = request.query.get("hftip")
            if not hft_ip:
                raise MissingTargetAddress()
            if not valid_ip_address(hft_ip):
                raise InvalidTargetAddress("invalid hft ip address")

            hft_port = request.query.get("hftport")
            if not hft_port:
                raise MissingPort("missing hft port")
            if not valid_port(hft_port):
                raise InvalidPort("invalid hft port")

        except RendezvousRequestError as e:
            return self._reject(request, "inform", e)

        endpoint = format_endpoint(hft_ip, hft_port)
        self._register(public, [endpoint])
        logger.info(f"added game: {endpoint} behind {public}")
        return web.json_response({"ip": public[0], "ips": public})

    async def _handle_inform2(self, request: web.Request) -> web.Response:
        """Handle POST /api/inform2."""
        try:
            public = self._public_addresses(request)
            body = await self._read_body(request)

            addresses = body.get("addresses")
            if addresses is None:
                raise MissingAddresses()
            if not isinstance(addresses, list):
                raise InvalidTargetAddress()
            if not addresses:
                raise EmptyAddresses()

            stripped = []
            for address in addresses:
                if not isinstance(address, str):
                    raise InvalidTargetAddress()
                address = strip_brackets(address)
                if not valid_ip_address(address):
                    raise InvalidTargetAddress()
                stripped.append(address)

            port = body.get("port")
            if port is None or port == "":
                raise MissingPort()
            if not valid_port(port):
                raise InvalidPort()

        except RendezvousRequestError as e:
            return self._reject(request, "inform2", e)

        endpoints = [format_endpoint(address, port) for address in stripped]
        self._register(public, endpoints)
        logger.info(f"added games: {endpoints} behind {public}")
        return web.json_response({"ip": public[0], "ips": public})

    async def _handle_get_games(self, request: web.Request) -> web.Response:
        """Handle POST /api/getgames."""
        try:
            public = self._public_addresses(request)
        except RendezvousRequestError as e:
            return self._reject(request, "getgames", e)

        game_ips = self.cache.endpoints_for(public[0])
        logger.info(f"got games for: {public[0]}")
        return web.json_response(game_ips)

    async def _handle_get_games2(self, request: web.Request) -> web.Response:
        """Handle POST /api/getgames2."""
        try:
            public = self._public_addresses(request)
        except RendezvousRequestError as e:
            return self._reject(request, "getgames2", e)

        game_ips: list[str] = []
        for ip in public:
            game_ips.extend(self.cache.endpoints_for(ip))
        logger.info(f"got games for: {public}")
        return web.json_response({"gameIps": game_ips, "publicIps": public})

    async def _handle_status(self, request: web.Request) -> web.Response:
        """Handle POST /api/status."""
        return web.json_response({"gameCache": self.cache.info()})

    async def _handle_check(self, request: web.Request) -> web.Response:
        """Handle GET/POST /check."""
        return web.Response(text=check_payload(), content_type="application/xml")


def main():
    """Entry point for the rendezvous service."""
    import argparse

    parser = argparse.ArgumentParser(description="HappyFunTimes rendezvous service")
    parser.add_argument("--config", type=str, help="Path to config file")
    parser.add_argument("--host", type=str, help="Address to bind")
    parser.add_argument("--port", type=int, help="Port to bind")
    parser.add_argument("--log-level", type=str, help="Log level")
    args = parser.parse_args()

    # Load configuration
    if args.config:
        config = RendezvousConfig.from_yaml(Path(args.config))
    else:
        config = load_config()

    # Override with CLI args
    if args.host:
        config.host = args.host
    if args.port:
        config.port = args.port
    if args.log_level:
        config.log_level = args.log_level

    logging.basicConfig(
        level=getattr(logging, config.log_level.upper()),
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    )

    service = RendezvousService(config)

    loop = asyncio.new_event_loop()
    asyncio.set_event_loop(loop)

    def signal_handler():
        logger.info("Received shutdown signal")
        asyncio.ensure_future(service.stop())

    for sig in (signal.SIGTERM, signal.SIGINT):
        loop.add_signal_handler(sig, signal_handler)

    try:
        loop.run_until_complete(service.start())
    except KeyboardInterrupt:
        logger.info("Interrupted")
    finally:
        loop.run_until_complete(service.stop())
        loop.close()


if __name__ == "__main__":
    main()
