"""
Unified CLI entrypoint for the websock channel.

Supports subcommands:
- controller: listen on the gate path; every new session echoes what it reads
- agent: handshake with a controller and send stdin lines, printing replies

Exit codes: 0 clean shutdown, 1 transport failure, 2 configuration error.
"""

import argparse
import json
import logging
import signal
import sys
import threading
import time
from pathlib import Path
from typing import Optional

from websock.config import ConfigError, load_config
from websock.logging_utils import configure_file_logger, get_logger, set_verbose
from websock.session import NotConnectedError, Session, WaitOutcome

logger = get_logger("websock")

ECHO_WAIT_S = 1.0


def signal_handler(signum, frame):
    """Handle interrupt signals gracefully."""
    raise KeyboardInterrupt


def write_json_report(json_path: Optional[str], payload: dict, *, quiet: bool = False) -> None:
    """Persist counters payload to JSON if a path is provided."""

    if not json_path:
        return

    try:
        path = Path(json_path)
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(json.dumps(payload, indent=2), encoding="utf-8")
        if not quiet:
            print(f"Wrote JSON report to {path}")
    except OSError as exc:
        print(f"Warning: Failed to write JSON output to {json_path}: {exc}")


def _load(args) -> dict:
    overrides = {}
    if getattr(args, "host", None):
        overrides["CONTROLLER_HOST"] = args.host
    if getattr(args, "port", None) is not None:
        overrides["CONTROLLER_PORT"] = args.port
    if getattr(args, "path", None):
        overrides["CONTROLLER_PATH"] = args.path
    if getattr(args, "domain", None):
        overrides["CONTROLLER_DOMAIN"] = args.domain
    if getattr(args, "compress", False):
        overrides["COMPRESSION"] = True
    if getattr(args, "verbose", False):
        overrides["VERBOSE"] = True
    return load_config(args.config, overrides)


def _echo_loop(session: Session) -> None:
    while True:
        try:
            outcome = session.wait(ECHO_WAIT_S)
            if outcome is WaitOutcome.CLOSED:
                return
            if outcome is WaitOutcome.DATA_RECEIVED:
                session.write(session.read())
        except NotConnectedError:
            return


def echo_handler(session: Session) -> None:
    """New-session handler: echo everything the agent sends."""
    threading.Thread(target=_echo_loop, args=(session,), name="websock-echo", daemon=True).start()


def controller_command(args) -> int:
    """Start a controller."""
    from websock.server import ChannelService

    cfg = _load(args)
    if cfg["VERBOSE"]:
        set_verbose(True)
    service = ChannelService(echo_handler, cfg)
    service.start()
    if not args.quiet:
        print(f"Controller listening at {service.url}")

    deadline = time.monotonic() + args.stop_seconds if args.stop_seconds else None
    try:
        while deadline is None or time.monotonic() < deadline:
            time.sleep(0.2)
    except KeyboardInterrupt:
        if not args.quiet:
            print("\nReceived interrupt signal. Shutting down...")
    finally:
        service.close()
        write_json_report(args.json_out, service.stats(), quiet=args.quiet)
    return 0


def agent_command(args) -> int:
    """Run an agent that sends each stdin line and prints the controller's replies."""
    from websock.agent import AgentChannel, TransportError
    from websock.envelope import EnvelopeError
    from websock.handshake import HandshakeFormatError, HandshakeVerifyError

    cfg = _load(args)
    if cfg["VERBOSE"]:
        set_verbose(True)
    uri = args.uri or f"http://{cfg['CONTROLLER_DOMAIN']}:{cfg['CONTROLLER_PORT']}{cfg['CONTROLLER_PATH']}"
    channel = AgentChannel(uri, cfg)
    try:
        channel.connect()
        if not args.quiet:
            print(f"Connected to {uri}")
        for line in sys.stdin:
            reply = channel.send(line.rstrip("\n").encode("utf-8"))
            if not reply:
                reply = channel.poll()
            if reply:
                print(reply.decode("utf-8", errors="replace"))
    except (TransportError, EnvelopeError, HandshakeFormatError, HandshakeVerifyError) as exc:
        print(f"Error: {exc}")
        return 1
    except KeyboardInterrupt:
        pass
    finally:
        channel.close()
    return 0


def main(argv=None) -> int:
    """Main CLI entrypoint with subcommands."""
    signal.signal(signal.SIGINT, signal_handler)
    if hasattr(signal, "SIGTERM"):
        signal.signal(signal.SIGTERM, signal_handler)

    parser = argparse.ArgumentParser(description="Encrypted duplex channel over HTTP polls")
    subparsers = parser.add_subparsers(dest="command", help="Available commands")

    def common(sub):
        sub.add_argument("--config", help="JSON file with CONFIG overrides")
        sub.add_argument("--port", type=int, help="Controller port")
        sub.add_argument("--path", help="Gate path (e.g. /websock.php)")
        sub.add_argument("--compress", action="store_true", help="Compress drained outbound data")
        sub.add_argument("--verbose", action="store_true", help="Debug-level logging")
        sub.add_argument("--log-file", help="Also write JSON logs to this file")
        sub.add_argument("--quiet", action="store_true",
                         help="Suppress informational prints (warnings/errors still shown)")

    controller_parser = subparsers.add_parser("controller", help="Start the controller")
    common(controller_parser)
    controller_parser.add_argument("--host", help="Bind address")
    controller_parser.add_argument("--stop-seconds", type=float, help="Auto-stop after N seconds (for testing)")
    controller_parser.add_argument("--json-out", help="Optional path to write counters JSON on shutdown")

    agent_parser = subparsers.add_parser("agent", help="Start an agent")
    common(agent_parser)
    agent_parser.add_argument("--domain", help="Controller host")
    agent_parser.add_argument("--uri", help="Full gate URI (overrides --domain/--port/--path)")

    args = parser.parse_args(argv)

    if not args.command:
        parser.print_help()
        return 2

    if args.log_file:
        configure_file_logger(args.log_file)
    if args.quiet:
        logger.setLevel(logging.WARNING)

    try:
        if args.command == "controller":
            return controller_command(args)
        return agent_command(args)
    except ConfigError as exc:
        print(f"Error: {exc}")
        return 2


if __name__ == "__main__":
    sys.exit(main())
