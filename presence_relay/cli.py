#!/usr/bin/env python3
"""Presence relay CLI - headless mode.

Usage:
    presence-relay run
    presence-relay run --webhook https://example.m.pipedream.net --port 8090
    presence-relay status

Environment variables (alternative to args):
    GATHER_API_KEY          Gather API key
    SPACE_ID                Gather space ID
    RELAY_WEBHOOK_URL       Webhook sink URL (PIPEDREAM_WEBHOOK_URL also accepted)
    SHEETS_SPREADSHEET_ID   Spreadsheet for the append log sink
    SHEETS_TABLE            Sheet/table name rows are appended to
    SHEETS_TOKEN            OAuth bearer token for the spreadsheet API
    RELAY_INSPECT_TOKEN     Token for GET /queue
    HOST, PORT              HTTP server address (default: 127.0.0.1:8090)
"""

import argparse
import asyncio
import json
import logging
import signal
import sys
from dataclasses import replace
from datetime import datetime
from typing import Optional

import httpx
from rich.console import Console
from rich.table import Table

from . import __version__
from .config import RelaySettings, load_config
from .errors import ConfigError
from .http_server import RelayHTTPServer
from .relay import PresenceRelay, SinkRoute
from .sinks import AppendLogSink, WebhookSink
from .transport import GatherTransport

# Setup logging
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s [%(levelname)s] %(message)s",
    datefmt="%Y-%m-%d %H:%M:%S",
)
log = logging.getLogger("presence_relay")
console = Console()


def build_relay(settings: RelaySettings) -> PresenceRelay:
    """Assemble a relay (transport, sinks, supervisor options) from settings."""
    routes = []
    if settings.has_webhook:
        routes.append(SinkRoute(WebhookSink(settings.webhook_url), settings.webhook_flush_seconds))
    if settings.has_append_log:
        sink = AppendLogSink(
            spreadsheet_id=settings.sheets_spreadsheet_id,
            table=settings.sheets_table,
            token=settings.sheets_token,
            base_url=settings.sheets_base_url,
            include_name=settings.sheets_include_name,
        )
        routes.append(SinkRoute(sink, settings.append_flush_seconds))

    transport = GatherTransport(settings.api_key, settings.space_id, base_url=settings.gather_url)
    return PresenceRelay(
        transport,
        routes,
        identity_timeout=settings.identity_timeout,
        reconnect_delay=settings.reconnect_seconds,
        backoff=settings.backoff,
        max_reconnect_delay=settings.max_reconnect_seconds,
        keepalive_interval=settings.keepalive_seconds,
        snapshot_timeout=settings.snapshot_timeout,
    )


class RelayCLI:
    """Runs the relay and its HTTP server until interrupted."""

    def __init__(self, settings: RelaySettings):
        self.settings = settings
        self._relay: Optional[PresenceRelay] = None
        self._server: Optional[RelayHTTPServer] = None
        self._stop = asyncio.Event()
        self._start_time: Optional[datetime] = None

    async def run(self) -> int:
        """Run the relay. Returns exit code."""
        self._start_time = datetime.now()

        loop = asyncio.get_running_loop()
        for sig in (signal.SIGINT, signal.SIGTERM):
            loop.add_signal_handler(sig, self._stop.set)

        log.info("=" * 50)
        log.info("Presence relay %s - Starting", __version__)
        log.info("=" * 50)

        try:
            self._relay = build_relay(self.settings)
            for sink in self._relay.sinks:
                log.info(f"Sink enabled: {sink.name}")

            self._server = RelayHTTPServer(
                self._relay,
                host=self.settings.host,
                port=self.settings.port,
                inspect_token=self.settings.inspect_token,
            )
            await self._server.start()
            if not self.settings.inspect_token:
                log.warning("RELAY_INSPECT_TOKEN not set; /queue will reject every request")

            await self._relay.start()
            log.info("Relaying space %s. Press Ctrl+C to stop", self.settings.space_id)

            await self._stop.wait()
            return 0

        except Exception as e:
            log.error(f"Fatal error: {e}")
            return 1
        finally:
            await self._cleanup()

    async def _cleanup(self) -> None:
        log.info("Shutting down...")
        if self._relay:
            try:
                await self._relay.stop()
            except Exception:
                log.exception("Error stopping relay")
        if self._server:
            await self._server.stop()

        if self._start_time:
            uptime = datetime.now() - self._start_time
            log.info(f"Uptime {str(uptime).split('.')[0]}")
        log.info("Goodbye!")


def show_status(host: str, port: int) -> int:
    """Print the status of a running relay. Returns exit code."""
    url = f"http://{host}:{port}/status"
    try:
        response = httpx.get(url, timeout=2.0)
        response.raise_for_status()
        status = response.json()
    except httpx.HTTPError as e:
        print(json.dumps({"running": False, "error": str(e)}, indent=2))
        return 1

    if console.is_terminal:
        table = Table(title=f"Presence relay @ {host}:{port}")
        table.add_column("Field", style="cyan")
        table.add_column("Value")
        for key, value in status.items():
            table.add_row(key, json.dumps(value) if isinstance(value, dict) else str(value))
        console.print(table)
    else:
        print(json.dumps(status, indent=2))
    return 0


def main():
    """CLI entry point."""
    parser = argparse.ArgumentParser(
        description="Presence relay - forward Gather join/leave events to webhooks and sheets",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  presence-relay run
  presence-relay run --webhook https://example.m.pipedream.net
  presence-relay run --backoff exponential -v
  presence-relay status --port 8090
        """,
    )
    parser.add_argument("command", nargs="?", default="run", choices=["run", "status"])
    parser.add_argument("--webhook", help="Webhook URL (or set RELAY_WEBHOOK_URL)")
    parser.add_argument("--host", help="HTTP server host (default: 127.0.0.1)")
    parser.add_argument("--port", type=int, help="HTTP server port (default: 8090)")
    parser.add_argument(
        "--backoff",
        choices=["fixed", "exponential"],
        help="Reconnect backoff policy (default: fixed)",
    )
    parser.add_argument(
        "-v", "--verbose",
        action="store_true",
        help="Enable debug logging",
    )
    args = parser.parse_args()

    if args.verbose:
        logging.getLogger().setLevel(logging.DEBUG)

    if args.command == "status":
        try:
            config = load_config()
        except ConfigError as e:
            log.error(str(e))
            sys.exit(1)
        sys.exit(show_status(args.host or config["HOST"], args.port or config["PORT"]))

    try:
        settings = RelaySettings.from_env()
        overrides = {}
        if args.webhook:
            overrides["webhook_url"] = args.webhook
        if args.host:
            overrides["host"] = args.host
        if args.port:
            overrides["port"] = args.port
        if args.backoff:
            overrides["backoff"] = args.backoff
        settings = replace(settings, **overrides)
        settings.validate()
    except ConfigError as e:
        log.error(str(e))
        sys.exit(1)

    cli = RelayCLI(settings)
    exit_code = asyncio.run(cli.run())
    sys.exit(exit_code)


if __name__ == "__main__":
    main()
