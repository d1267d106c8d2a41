#!/usr/bin/env python3
"""
netmeter — CLI entry point

Subcommands
───────────
  serve    Start the measurement server (both variants on one port)
  measure  Run a download + upload measurement against a server

Usage examples
──────────────
  # Serve on all interfaces, plain HTTP
  netmeter serve --address 0.0.0.0 --port 4443

  # Serve over TLS
  netmeter serve --cert cert.pem --key key.pem

  # Discrete-chunk measurement with responsiveness probes
  netmeter measure --address 192.168.1.50 --port 4443

  # Continuous-stream (WebSocket) measurement, JSON log records
  netmeter --format json measure --variant stream --address 192.168.1.50

  # TLS with a private CA
  netmeter measure --address server.lan --cafile cert.pem
"""

import argparse
import asyncio
import sys

from netmeter.chunked import TIME_BUDGET
from netmeter.probes import PROBE_INTERVAL
from netmeter.records import Direction, DirectionSummary
from netmeter.transport import TransferError
from netmeter_server.logs import iec, setup_logging, si
from netmeter_server.protocol import base_url
from netmeter_server.server import DEFAULT_PORT


# ---------------------------------------------------------------------------
# Subcommand: serve
# ---------------------------------------------------------------------------

def cmd_serve(args: argparse.Namespace) -> int:
    """Start the netmeter server."""
    from netmeter_server.server import NetmeterServer, server_ssl_context

    if bool(args.cert) != bool(args.key):
        print("\n  Error: --cert and --key must be given together", file=sys.stderr)
        return 1

    try:
        ssl_context = server_ssl_context(args.cert, args.key) if args.cert else None
        server = NetmeterServer(
            host=args.address,
            port=args.port,
            ssl_context=ssl_context,
            budget=args.budget,
        )
    except (OSError, ValueError) as exc:
        print(f"\n  Error: {exc}", file=sys.stderr)
        return 1

    try:
        server.serve_forever()   # blocks
    except OSError as exc:
        print(f"\n  Error: cannot serve on {args.address}:{args.port}: {exc}", file=sys.stderr)
        return 1
    return 0


# ---------------------------------------------------------------------------
# Subcommand: measure
# ---------------------------------------------------------------------------

def cmd_measure(args: argparse.Namespace) -> int:
    """Run a measurement against a netmeter server."""
    from netmeter_server.client import (
        ChunkedMeasurement,
        StreamMeasurement,
        client_ssl_context,
    )

    tls = bool(args.cafile or args.insecure or args.tls)
    base = base_url(args.address, args.port, tls=tls)

    try:
        ssl_option = client_ssl_context(args.cafile, args.insecure)
        if args.variant == "stream":
            measurement = StreamMeasurement(
                base,
                ssl_option=ssl_option,
                budget=args.budget,
                probe_interval=args.probe_interval,
                probes=not args.no_probes,
            )
        else:
            measurement = ChunkedMeasurement(
                base,
                ssl_option=ssl_option,
                budget=args.budget,
                probe_interval=args.probe_interval,
                probes=not args.no_probes,
            )
    except (OSError, ValueError) as exc:
        print(f"\n  Error: {exc}", file=sys.stderr)
        return 1

    print(f"\n  netmeter measure")
    print(f"  Server   : {base}")
    print(f"  Variant  : {args.variant}")
    print(f"  Budget   : {args.budget:.1f}s per direction")
    print(f"  Probes   : {'off' if args.no_probes else f'every {args.probe_interval * 1000:.0f} ms'}\n")

    try:
        results = asyncio.run(measurement.run())
    except TransferError as exc:
        print(f"\n  Error: {exc}", file=sys.stderr)
        return 1
    except KeyboardInterrupt:
        print("\n  Interrupted", file=sys.stderr)
        return 130

    _print_summary(results)
    return 0 if all(s.ok for s in results.values()) else 1


def _print_summary(results: dict[Direction, DirectionSummary]) -> None:
    print(f"\n  {'─'*56}")
    print(f"  Measurement Summary")
    print(f"  {'─'*56}")
    for direction, summary in results.items():
        status = "✓" if summary.ok else "✗"
        error  = f" — {summary.error}" if summary.error else ""
        print(
            f"  {status} {direction.value:<9}: {si(summary.bits_per_second, 'bit/s'):>14}"
            f"  {iec(summary.count, 'B'):>10} in {summary.elapsed:.2f}s"
            f"  ({summary.reason}){error}"
        )
    print(f"  {'─'*56}\n")


# ---------------------------------------------------------------------------
# Argument parser
# ---------------------------------------------------------------------------

def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="netmeter",
        description="netmeter — throughput and responsiveness measurement",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    parser.add_argument(
        "--verbose", "-v",
        action="store_true",
        help="Enable debug logging",
    )
    parser.add_argument(
        "--format", choices=("text", "json"), default="text",
        help="Log record format (default: text)",
    )

    sub = parser.add_subparsers(dest="command", metavar="COMMAND")
    sub.required = True

    # ── serve ──────────────────────────────────────────────────────────
    p_serve = sub.add_parser(
        "serve",
        help="Start the measurement server",
        description="Serve the discrete-chunk and continuous-stream endpoints.",
    )
    p_serve.add_argument(
        "--address", "-A", default="127.0.0.1", metavar="ADDRESS",
        help="Interface to bind (default: 127.0.0.1)",
    )
    p_serve.add_argument(
        "--port", "-p", type=int, default=DEFAULT_PORT, metavar="PORT",
        help=f"TCP port to listen on (default: {DEFAULT_PORT})",
    )
    p_serve.add_argument(
        "--cert", default=None, metavar="FILE",
        help="TLS certificate (PEM); enables HTTPS together with --key",
    )
    p_serve.add_argument(
        "--key", default=None, metavar="FILE",
        help="TLS private key (PEM)",
    )
    p_serve.add_argument(
        "--budget", type=float, default=TIME_BUDGET, metavar="SECS",
        help=f"Stream-variant time budget per direction (default: {TIME_BUDGET})",
    )

    # ── measure ────────────────────────────────────────────────────────
    p_measure = sub.add_parser(
        "measure",
        help="Measure against a running server",
        description="Run download then upload, each with concurrent responsiveness probes.",
    )
    p_measure.add_argument(
        "--variant", choices=("chunked", "stream"), default="chunked",
        help="chunked = session + doubling HTTP chunks; stream = WebSocket (default: chunked)",
    )
    p_measure.add_argument(
        "--address", "-A", default="127.0.0.1", metavar="ADDRESS",
        help="Server hostname or IP (default: 127.0.0.1)",
    )
    p_measure.add_argument(
        "--port", "-p", type=int, default=DEFAULT_PORT, metavar="PORT",
        help=f"Server port (default: {DEFAULT_PORT})",
    )
    p_measure.add_argument(
        "--tls", action="store_true",
        help="Use HTTPS / WSS with the system trust store",
    )
    p_measure.add_argument(
        "--cafile", default=None, metavar="FILE",
        help="Trust the given CA certificate (implies --tls)",
    )
    p_measure.add_argument(
        "--insecure", action="store_true",
        help="Skip certificate verification (implies --tls)",
    )
    p_measure.add_argument(
        "--budget", type=float, default=TIME_BUDGET, metavar="SECS",
        help=f"Time budget per direction (default: {TIME_BUDGET})",
    )
    p_measure.add_argument(
        "--probe-interval", type=float, default=PROBE_INTERVAL, metavar="SECS",
        help=f"Seconds between responsiveness probes (default: {PROBE_INTERVAL})",
    )
    p_measure.add_argument(
        "--no-probes", action="store_true",
        help="Disable responsiveness probes",
    )

    return parser


# ---------------------------------------------------------------------------
# Entry point
# ---------------------------------------------------------------------------

def main() -> None:
    parser = build_parser()
    args   = parser.parse_args()
    setup_logging(args.verbose, args.format)

    dispatch = {
        "serve":   cmd_serve,
        "measure": cmd_measure,
    }

    handler = dispatch.get(args.command)
    if handler is None:
        parser.print_help()
        sys.exit(1)

    sys.exit(handler(args))


if __name__ == "__main__":
    main()
