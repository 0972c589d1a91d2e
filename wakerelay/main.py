from __future__ import annotations

import asyncio
import logging
import signal

from wakerelay.adapters.tunnel.server import TunnelServer
from wakerelay.adapters.web.auth import OperatorAuth
from wakerelay.adapters.web.server import WebServer
from wakerelay.config import Config
from wakerelay.core.credentials import CredentialValidator
from wakerelay.core.events import StatusBroadcaster
from wakerelay.core.registry import TunnelRegistry
from wakerelay.core.relay import CommandRelay

logger = logging.getLogger("wakerelay")


def setup_logging(config: Config) -> None:
    logging.basicConfig(
        level=getattr(logging, config.log_level, logging.INFO),
        format="%(asctime)s [%(name)s] %(levelname)s: %(message)s",
        handlers=[
            logging.StreamHandler(),
            logging.FileHandler(config.log_file),
        ],
    )


async def main(config: Config) -> None:
    logger.info("Wake relay starting...")

    # -- Core --
    broadcaster = StatusBroadcaster()
    registry = TunnelRegistry(
        broadcaster,
        probe_interval=config.probe_interval,
        probe_grace=config.probe_grace,
    )
    relay = CommandRelay(registry, timeout=config.command_timeout)
    validator = CredentialValidator(config.hmac_secret, max_drift=config.max_clock_drift)

    # -- Listeners --
    tunnel = TunnelServer(
        registry, relay, validator,
        host=config.host,
        port=config.tunnel_port,
        auth_timeout=config.auth_timeout,
    )
    operator_auth = OperatorAuth(
        config.jwt_secret, config.login_user, config.login_pass,
        expiration_hours=config.jwt_expiration_hours,
    )
    web_server = WebServer(
        relay, registry, operator_auth,
        host=config.host,
        port=config.http_port,
    )

    # Handle shutdown signals
    stop_event = asyncio.Event()

    def handle_signal() -> None:
        logger.info("Shutdown signal received")
        stop_event.set()

    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, handle_signal)

    await tunnel.start()
    await web_server.start()
    logger.info("Wake relay is running. Press Ctrl+C to stop.")

    await stop_event.wait()

    logger.info("Shutting down...")
    await tunnel.stop()
    await web_server.stop()
    logger.info("Wake relay stopped.")


def run() -> None:
    config = Config.from_env()
    setup_logging(config)
    try:
        asyncio.run(main(config))
    except KeyboardInterrupt:
        pass


if __name__ == "__main__":
    run()
