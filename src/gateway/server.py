"""Gateway server entry point.

Main responsibilities:
1. Accepts browser WebSocket connections and hands each to the gateway
2. Provides HTTP health check and metrics endpoints
3. Owns the voice and room service clients for the process lifetime
4. Tears every live session down on shutdown
"""

import argparse
import asyncio
import logging
import signal
from pathlib import Path

from aiohttp.web import Application, AppRunner, TCPSite

from gateway.config import GatewayConfig
from gateway.coordinator import TEARDOWN_STEP_COUNT, SessionGateway
from gateway.health import setup_health_routes
from gateway.livekit_utils.room_manager import LiveKitRoomManager
from gateway.transport.base import Transport
from gateway.transport.websocket_transport import WebSocketTransport
from gateway.voice.base import VoiceServiceClient

logger = logging.getLogger(__name__)

DEFAULT_CONFIG_PATH = Path(__file__).parent.parent.parent / "configs" / "gateway.yaml"


async def accept_loop(
    transport: Transport, gateway: SessionGateway, tasks: set[asyncio.Task[None]]
) -> None:
    """Accept connections forever, one handler task per connection.

    Args:
        transport: Running transport
        gateway: Gateway that serves each connection
        tasks: Live handler tasks; finished tasks remove themselves
    """
    while True:
        connection = await transport.accept_connection()
        logger.info(
            "New connection accepted", extra={"connection_id": connection.connection_id}
        )
        task = asyncio.create_task(gateway.handle_connection(connection))
        tasks.add(task)
        task.add_done_callback(tasks.discard)


def build_voice_client(config: GatewayConfig) -> VoiceServiceClient:
    """Create the Gemini Live client.

    Raises:
        RuntimeError: If no API key is configured
    """
    from gateway.voice.gemini_live import GeminiLiveClient

    try:
        return GeminiLiveClient(config.gemini)
    except ValueError as e:
        raise RuntimeError(
            f"{e} Cause: gemini.api_key is empty and no key is set in the environment."
        ) from e


async def start_server(
    config_path: Path,
    voice: VoiceServiceClient | None = None,
    rooms: LiveKitRoomManager | None = None,
    stop_event: asyncio.Event | None = None,
) -> None:
    """Start the gateway and serve until interrupted or ``stop_event`` is set.

    Args:
        config_path: Path to YAML config file (defaults used if missing)
        voice: Optional pre-built voice client (for testing)
        rooms: Optional pre-built room manager (for testing)
        stop_event: Optional event that triggers graceful shutdown

    Raises:
        RuntimeError: If configuration is invalid
    """
    config = GatewayConfig.from_yaml_with_defaults(config_path)

    logging.basicConfig(
        level=getattr(logging, config.log_level),
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )
    logger.info(
        "Loaded configuration",
        extra={"config_path": str(config_path), "max_sessions": config.session.max_sessions},
    )

    if voice is None:
        voice = build_voice_client(config)
    if rooms is None:
        rooms = LiveKitRoomManager(config.livekit)

    gateway = SessionGateway(config, voice=voice, rooms=rooms)

    ws_config = config.websocket
    transport = WebSocketTransport(
        host=ws_config.host,
        port=ws_config.port,
        path=ws_config.path,
        max_message_bytes=ws_config.max_message_bytes,
    )
    await transport.start()

    runner: AppRunner | None = None
    if config.health.enabled:
        health_app = Application()
        setup_health_routes(health_app, gateway)
        runner = AppRunner(health_app)
        await runner.setup()
        site = TCPSite(runner, config.health.host, config.health.port)
        await site.start()
        logger.info("Health check server started", extra={"port": config.health.port})

    if stop_event is None:
        stop_event = asyncio.Event()
        loop = asyncio.get_running_loop()
        try:
            loop.add_signal_handler(signal.SIGTERM, stop_event.set)
        except NotImplementedError:
            logger.debug("Signal handlers unavailable on this platform")

    connection_tasks: set[asyncio.Task[None]] = set()
    accept_task = asyncio.create_task(accept_loop(transport, gateway, connection_tasks))
    try:
        logger.info(
            "Gateway server ready",
            extra={
                "port": transport.port,
                "path": ws_config.path,
                "model": config.gemini.model,
                "livekit_enabled": rooms.remote_enabled,
            },
        )
        await stop_event.wait()
    except asyncio.CancelledError:
        logger.info("Server loop cancelled")
    finally:
        logger.info("Shutting down gateway server")
        accept_task.cancel()

        await gateway.shutdown()
        if connection_tasks:
            logger.info(
                "Waiting for sessions to complete", extra={"count": len(connection_tasks)}
            )
            _, pending = await asyncio.wait(
                connection_tasks, timeout=config.graceful_shutdown_timeout_s
            )
            if pending:
                logger.warning(
                    "Cancelling sessions still open after grace period",
                    extra={"count": len(pending)},
                )
                for task in pending:
                    task.cancel()
                # Cancelled connections still run every teardown step
                await asyncio.wait(
                    pending,
                    timeout=TEARDOWN_STEP_COUNT * config.session.teardown_timeout_seconds + 1.0,
                )

        await transport.stop()

        if runner is not None:
            await runner.cleanup()
            logger.info("Health check server stopped")

        await rooms.close()
        logger.info("Gateway server stopped")


def main() -> None:
    """Entry point for the gateway server."""
    parser = argparse.ArgumentParser(description="Portuguese tutor realtime gateway")
    parser.add_argument(
        "--config",
        type=Path,
        default=DEFAULT_CONFIG_PATH,
        help="Path to gateway config YAML file",
    )
    args = parser.parse_args()

    try:
        asyncio.run(start_server(args.config))
    except KeyboardInterrupt:
        logger.info("Gateway server interrupted")


if __name__ == "__main__":
    main()
