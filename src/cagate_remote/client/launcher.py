"""
Launcher for the cagate remote machine client.

Runs a headless session (control channel plus video negotiation) until
interrupted, logging the session status periodically.
"""

import argparse
import asyncio
import logging
import os
from dataclasses import replace
from typing import Callable, Optional, Sequence

from cagate_remote.client.config import ClientConfig
from cagate_remote.client.remote_session import RemoteSession
from cagate_remote.client.webrtc.display_sink import LatestFrameSink

logger = logging.getLogger(__name__)

DEFAULT_STATUS_INTERVAL_S = 5.0


def configure_logging(debug: bool = False) -> None:
    # Setup logging - check env var too
    if os.getenv('CAGATE_DEBUG', '').lower() in ('1', 'true', 'yes'):
        debug = True
    level = logging.DEBUG if debug else logging.INFO
    logging.basicConfig(
        level=level,
        format='[%(asctime)s] %(name)s - %(levelname)s - %(message)s'
    )


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description='cagate remote machine client'
    )
    parser.add_argument(
        '--control-url',
        default=None,
        help='Control websocket URL (default: CAGATE_CONTROL_URL or built-in)'
    )
    parser.add_argument(
        '--whep-url',
        default=None,
        help='WHEP endpoint URL (default: CAGATE_WHEP_URL or built-in)'
    )
    parser.add_argument(
        '--click',
        action='store_true',
        help='Press the start button once the control channel is open'
    )
    parser.add_argument(
        '--status-interval',
        type=float,
        default=DEFAULT_STATUS_INTERVAL_S,
        help='Seconds between status log lines (0 disables)'
    )
    parser.add_argument(
        '--debug',
        action='store_true',
        help='Enable debug logging'
    )
    return parser


def config_from_args(args: argparse.Namespace) -> ClientConfig:
    config = ClientConfig.from_env()
    overrides = {}
    if args.control_url:
        overrides['control_url'] = args.control_url
    if args.whep_url:
        overrides['whep_url'] = args.whep_url
    return replace(config, **overrides) if overrides else config


async def run_session(
    config: ClientConfig,
    *,
    click: bool = False,
    status_interval_s: float = DEFAULT_STATUS_INTERVAL_S,
    stop_event: Optional[asyncio.Event] = None,
    session_factory: Callable[..., RemoteSession] = RemoteSession,
) -> None:
    """Start a session and keep it alive until ``stop_event`` is set or cancelled."""

    sink = LatestFrameSink()
    session = session_factory(config, sink=sink)
    stop = stop_event or asyncio.Event()
    try:
        connected = await session.start()
        if click and connected:
            task = session.press_start()
            if task is not None:
                await task
        while not stop.is_set():
            timeout = status_interval_s if status_interval_s > 0 else None
            try:
                await asyncio.wait_for(stop.wait(), timeout)
            except asyncio.TimeoutError:
                status = session.poll_status()
                logger.info(
                    "status: control=%s video=%s frames=%d start_enabled=%s",
                    status.connection.value,
                    status.negotiation.value,
                    status.frames_received,
                    status.start_enabled,
                )
    finally:
        await session.stop()
        logger.info("Session stopped")


def main(argv: Optional[Sequence[str]] = None) -> int:
    """Command-line entry point."""
    args = build_parser().parse_args(argv)
    configure_logging(args.debug)
    config = config_from_args(args)

    logger.info("Launching remote client for %s", config.control_url)
    try:
        asyncio.run(
            run_session(
                config,
                click=args.click,
                status_interval_s=args.status_interval,
            )
        )
    except KeyboardInterrupt:
        logger.info("Interrupted")
    return 0


if __name__ == '__main__':
    raise SystemExit(main())
