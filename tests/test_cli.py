"""Tests for the netmeter command line."""

import socket

import pytest

from netmeter.chunked import TIME_BUDGET
from netmeter.probes import PROBE_INTERVAL
from netmeter_server.cli import build_parser, cmd_measure, cmd_serve
from netmeter_server.server import DEFAULT_PORT


def _free_port() -> int:
    with socket.socket() as sock:
        sock.bind(("127.0.0.1", 0))
        return sock.getsockname()[1]


def test_measure_defaults():
    args = build_parser().parse_args(["measure"])
    assert args.command == "measure"
    assert args.variant == "chunked"
    assert args.address == "127.0.0.1"
    assert args.port == DEFAULT_PORT
    assert args.budget == TIME_BUDGET
    assert args.probe_interval == PROBE_INTERVAL
    assert not args.no_probes
    assert args.format == "text"


def test_serve_flags():
    args = build_parser().parse_args(
        ["--format", "json", "-v", "serve", "-A", "0.0.0.0", "-p", "9000"],
    )
    assert args.verbose
    assert args.format == "json"
    assert (args.address, args.port) == ("0.0.0.0", 9000)


def test_command_is_required():
    with pytest.raises(SystemExit):
        build_parser().parse_args([])


def test_unknown_variant_is_rejected():
    with pytest.raises(SystemExit):
        build_parser().parse_args(["measure", "--variant", "quic"])


def test_serve_needs_cert_and_key_together(capsys):
    args = build_parser().parse_args(["serve", "--cert", "cert.pem"])
    assert cmd_serve(args) == 1
    assert "--cert and --key" in capsys.readouterr().err


def test_serve_rejects_bad_budget():
    args = build_parser().parse_args(["serve", "--budget", "0"])
    assert cmd_serve(args) == 1


def test_measure_rejects_bad_budget():
    args = build_parser().parse_args(["measure", "--budget", "0"])
    assert cmd_measure(args) == 1


def test_measure_unreachable_server(capsys):
    args = build_parser().parse_args(
        ["measure", "--port", str(_free_port()), "--budget", "1"],
    )
    assert cmd_measure(args) == 1
    assert "Error" in capsys.readouterr().err
