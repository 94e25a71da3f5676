"""Command that runs the discovery service."""

from __future__ import annotations

import argparse
import logging
import signal
import socket
import threading

from ifexhub.discovery_service import DiscoveryServer

log = logging.getLogger(__name__)

DEFAULT_LISTEN = "0.0.0.0:50051"

_USAGE = (
    "Usage: ifex-discovery-service [options]\n"
    "Options:\n"
    "  --listen=ADDRESS      Listen address (default: 0.0.0.0:50051)\n"
    "  --help, -h           Show this help message"
)

_WILDCARD_HOSTS = ("0.0.0.0", "::", "")


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    """Parse the command line; unrecognised arguments are ignored."""
    parser = argparse.ArgumentParser(
        prog="ifex-discovery-service", add_help=False, allow_abbrev=False
    )
    parser.add_argument("--listen", default=DEFAULT_LISTEN)
    parser.add_argument("-h", "--help", action="store_true")
    args, _unknown = parser.parse_known_args(argv)
    return args


def _local_addresses() -> list[str]:
    try:
        _name, _aliases, addresses = socket.gethostbyname_ex(socket.gethostname())
    except OSError:
        return []
    return sorted({address for address in addresses if not address.startswith("127.")})


def _log_reachable_endpoints(listen_address: str, port: int) -> None:
    host, sep, _ = listen_address.rpartition(":")
    if not sep or host not in _WILDCARD_HOSTS:
        return
    endpoints = [f"{address}:{port}" for address in _local_addresses()]
    if endpoints:
        log.info("Service accessible at:")
        for endpoint in endpoints:
            log.info("  - %s", endpoint)


def main(argv: list[str] | None = None) -> int:
    """Run the discovery service until interrupted; return the exit status."""
    args = parse_args(argv)
    if args.help:
        print(_USAGE)
        return 0

    logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s %(name)s: %(message)s")

    stop = threading.Event()

    def request_stop(signum: int, _frame: object) -> None:
        log.info("Received signal %d, shutting down...", signum)
        stop.set()

    previous = {sig: signal.signal(sig, request_stop) for sig in (signal.SIGINT, signal.SIGTERM)}
    log.info("Starting IFEX Discovery Service on %s", args.listen)
    try:
        with DiscoveryServer() as server:
            port = server.start(args.listen)
            _log_reachable_endpoints(args.listen, port)
            log.info("Discovery service is running. Press Ctrl+C to stop.")
            while not stop.wait(0.1):
                pass
            log.info("Shutdown requested, stopping server...")
    except Exception as exc:  # noqa: BLE001 - any start-up failure ends the command
        log.error("Failed to start discovery service: %s", exc)
        return 1
    finally:
        for sig, handler in previous.items():
            signal.signal(sig, handler)

    log.info("Discovery service stopped.")
    return 0