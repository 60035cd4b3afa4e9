"""
Command line entrypoint.

``livestage relay`` runs the development relay under uvicorn.  ``livestage
join`` joins a session as a headless participant, optionally recording the
local display until interrupted.
"""

from __future__ import annotations

import argparse
import asyncio
import logging
import signal
from pathlib import Path
from typing import Optional

from . import EngineConfig
from .api_client import RestClient
from .capture import CapturePipeline, rest_uploader
from .errors import LivestageError
from .relay import RelayManager, create_app
from .session import SessionEngine, open_local_media
from .utils.logging import configure_logging

LOG = logging.getLogger(__name__)


async def serve_relay(host: str = "127.0.0.1", port: int = 8765, *, ping_interval: float = 20.0) -> None:
    """
    Run the development relay inside an asyncio loop.

    Parameters
    ----------
    host, port:
        Bind address for the FastAPI/uvicorn server.
    ping_interval:
        Seconds between keepalive pings; 0 disables them.
    """

    import uvicorn

    app = create_app(manager=RelayManager(ping_interval=ping_interval))
    server_config = uvicorn.Config(
        app=app,
        host=host,
        port=port,
        log_config=None,
        log_level="info",
        reload=False,
    )
    server = uvicorn.Server(config=server_config)
    LOG.info("Relay listening on ws://%s:%s/ws/{session}", host, port)
    await server.serve()


async def join_session(config: EngineConfig, args: argparse.Namespace) -> None:
    api = RestClient(config.api_base_url, auth_token=args.token) if args.api else None
    media, degraded = open_local_media(config) if args.media else (None, False)
    engine = SessionEngine(
        config,
        user_id=args.user,
        display_name=args.name,
        role=args.role,
        media=media,
        degraded=degraded,
        api=api,
        save_downloads=True,
    )
    capture: Optional[CapturePipeline] = None

    stop_event = asyncio.Event()
    loop = asyncio.get_running_loop()

    def _handle_signal() -> None:
        LOG.info("Leaving session...")
        stop_event.set()

    for signame in ("SIGINT", "SIGTERM"):
        try:
            loop.add_signal_handler(getattr(signal, signame), _handle_signal)
        except NotImplementedError:  # pragma: no cover - windows
            pass

    try:
        await engine.join(args.session, args.token)
        if args.message:
            await engine.chat.send_message(args.message)
        for path in args.share or []:
            await engine.share_file(Path(path))
        if args.record:
            uploader = rest_uploader(api, args.session) if api is not None else None
            capture = CapturePipeline(config, uploader=uploader)
            await capture.start()

        closed = asyncio.ensure_future(engine.wait_closed())
        stopped = asyncio.ensure_future(stop_event.wait())
        await asyncio.wait({closed, stopped}, return_when=asyncio.FIRST_COMPLETED)
        stopped.cancel()
        if closed.done():
            closed.result()
        else:
            closed.cancel()
    finally:
        if capture is not None:
            result = await capture.stop()
            if result is not None:
                LOG.info("Recording finished: %s", result.url or result.path)
        await engine.leave()
        if api is not None:
            await api.aclose()


def parse_args(argv: Optional[list[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="livestage live session engine")
    parser.add_argument("--profile", default="default", help="engine profile to load")
    parser.add_argument("--verbose", action="store_true", help="enable debug logging")
    commands = parser.add_subparsers(dest="command", required=True)

    relay = commands.add_parser("relay", help="run the development relay")
    relay.add_argument("--host", default="127.0.0.1", help="bind host for the relay")
    relay.add_argument("--port", type=int, default=8765, help="bind port for the relay")
    relay.add_argument("--ping-interval", type=float, default=20.0, help="keepalive interval in seconds")

    join = commands.add_parser("join", help="join a session as a participant")
    join.add_argument("session", help="session id")
    join.add_argument("--token", required=True, help="auth token for the relay")
    join.add_argument("--user", required=True, help="user id")
    join.add_argument("--name", default=None, help="display name")
    join.add_argument("--role", default="attendee", help="host or attendee")
    join.add_argument("--relay-url", default=None, help="override the relay url")
    join.add_argument("--no-media", dest="media", action="store_false", help="join without camera or microphone")
    join.add_argument("--api", action="store_true", help="use the REST API for history and uploads")
    join.add_argument("--message", default=None, help="chat message to send after joining")
    join.add_argument("--share", action="append", help="file to share after joining (repeatable)")
    join.add_argument("--record", action="store_true", help="record the local display while joined")
    join.add_argument("--watermark", default=None, help="watermark text for recordings")
    return parser.parse_args(argv)


def main(argv: Optional[list[str]] = None) -> int:
    args = parse_args(argv)
    configure_logging(logging.DEBUG if args.verbose else logging.INFO)

    try:
        if args.command == "relay":
            asyncio.run(serve_relay(host=args.host, port=args.port, ping_interval=args.ping_interval))
            return 0

        config = EngineConfig.load(args.profile)
        if args.relay_url:
            config.relay_url = args.relay_url
        if args.watermark:
            config.watermark_text = args.watermark
        asyncio.run(join_session(config, args))
    except KeyboardInterrupt:
        LOG.info("Interrupted by user.")
    except LivestageError as exc:
        LOG.error("%s", exc)
        return 1
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
