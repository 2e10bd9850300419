"""CLI and serving functions for running a signaling server."""
from __future__ import annotations

import asyncio
import datetime
import logging
import logging.handlers
import os
import pprint
import signal
import ssl
import sys

import click
from websockets.asyncio.server import serve as websockets_serve

from callrelay.config import ServingConfig
from callrelay.server import SignalingServer
from callrelay.utils.tasks import spawn_guarded_background_task

logger = logging.getLogger(__name__)


def periodic_participant_logger(
    server: SignalingServer,
    interval: float = 60,
    limit: int | None = 32,
    level: int = logging.INFO,
) -> asyncio.Task[None]:
    """Create an asyncio task which logs the logged in participants.

    Args:
        server: Signaling server instance to log participants of.
        interval: Seconds between logging participants.
        limit: Only log the detailed participant list if the number of
            participants is less than this number.
        level: Logging level.

    Returns:
        Asyncio task.
    """

    async def _log() -> None:
        while True:
            await asyncio.sleep(interval)
            participants = sorted(
                server.registry.participants(),
                key=lambda participant: participant.name,
            )
            message = f'Logged in participants: {len(participants)}'
            if limit is not None and 0 < len(participants) < limit:
                details = '\n'.join(repr(p) for p in participants)
                message = f'{message}\n{details}'
            logger.log(level, message)

    return spawn_guarded_background_task(
        _log,
        name='signaling-server-participant-logger',
    )


async def serve(config: ServingConfig) -> None:
    """Run the signaling server.

    Initializes a [`SignalingServer`][callrelay.server.SignalingServer]
    and starts a websocket server listening for new connections
    and incoming messages until SIGINT or SIGTERM is received.

    Note:
        This function will not configure any logging. Configuring logging
        according to [`ServingConfig.logging`][callrelay.config.ServingConfig]
        is the responsibility of the caller.

    Args:
        config: Serving configuration.
    """
    server = SignalingServer(
        anonymous_name=config.anonymous_name,
        max_message_bytes=config.max_message_bytes,
    )

    loop = asyncio.get_running_loop()
    stop = loop.create_future()
    loop.add_signal_handler(signal.SIGINT, stop.set_result, None)
    loop.add_signal_handler(signal.SIGTERM, stop.set_result, None)

    ssl_context: ssl.SSLContext | None = None
    if config.certfile is not None:
        ssl_context = ssl.SSLContext(ssl.PROTOCOL_TLS_SERVER)
        ssl_context.load_cert_chain(config.certfile, keyfile=config.keyfile)

    logger_task: asyncio.Task[None] | None = None
    if config.logging.participant_log_interval is not None:
        level = (
            config.logging.default_level
            if isinstance(config.logging.default_level, int)
            else logging.getLevelName(config.logging.default_level)
        )
        logger_task = periodic_participant_logger(
            server,
            config.logging.participant_log_interval,
            config.logging.participant_log_limit,
            level=level,
        )

    config_repr = pprint.pformat(config, indent=2)
    logger.info(f'Signaling serving configuration:\n{config_repr}')

    async with websockets_serve(
        server.handler,
        config.host,
        config.port,
        ssl=ssl_context,
    ):
        logger.info(f'Signaling server listening on port {config.port}')
        logger.info('Use ctrl-C to stop')
        await stop

    if logger_task is not None:
        logger_task.cancel()
        try:
            await logger_task
        except asyncio.CancelledError:
            pass

    loop.remove_signal_handler(signal.SIGINT)
    loop.remove_signal_handler(signal.SIGTERM)

    logger.info('Signaling server shutdown')


@click.command()
@click.option('--config', '-c', 'config_path', help='Configuration file.')
@click.option('--host', metavar='ADDR', help='Interface to bind to.')
@click.option('--port', type=int, metavar='PORT', help='Port to bind to.')
@click.option('--log-dir', metavar='PATH', help='Logging directory.')
@click.option(
    '--log-level',
    type=click.Choice(
        ['CRITICAL', 'ERROR', 'WARNING', 'INFO', 'DEBUG'],
        case_sensitive=False,
    ),
    help='Minimum logging level.',
)
def cli(
    config_path: str | None,
    host: str | None,
    port: int | None,
    log_dir: str | None,
    log_level: str | None,
) -> None:
    """Run a signaling server instance.

    Participants connect to the signaling server to find each other by name
    and exchange the session descriptions needed to establish a
    peer-to-peer WebRTC call. If no configuration file is provided, the
    default [`ServingConfig()`][callrelay.config.ServingConfig] is used.
    The remaining CLI options override the options in the configuration.
    """
    config = (
        ServingConfig()
        if config_path is None
        else ServingConfig.from_toml(config_path)
    )

    if host is not None:
        config.host = host
    if port is not None:
        config.port = port
    if log_dir is not None:
        config.logging.log_dir = log_dir
    if log_level is not None:
        config.logging.default_level = logging.getLevelName(log_level.upper())

    handlers: list[logging.Handler] = [logging.StreamHandler(sys.stdout)]
    if config.logging.log_dir is not None:
        os.makedirs(config.logging.log_dir, exist_ok=True)
        handlers.append(
            logging.handlers.TimedRotatingFileHandler(
                os.path.join(config.logging.log_dir, 'server.log'),
                # Rotate logs Sunday at midnight
                when='W6',
                atTime=datetime.time(hour=0, minute=0, second=0),
            ),
        )

    logging.basicConfig(
        format=(
            '[%(asctime)s.%(msecs)03d] %(levelname)-5s (%(name)s) :: '
            '%(message)s'
        ),
        datefmt='%Y-%m-%d %H:%M:%S',
        level=config.logging.default_level,
        handlers=handlers,
    )

    logging.getLogger('websockets').setLevel(config.logging.websockets_level)

    asyncio.run(serve(config))
