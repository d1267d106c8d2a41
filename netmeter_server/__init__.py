"""
netmeter_server — application layer for the netmeter measurement engine.

Modules
───────
  protocol  — routes, chunk-body buffer, size parsing, session JSON
  channel   — WebSocketChannel: aiohttp WebSocket → netmeter MessageChannel
  server    — NetmeterServer: aiohttp.web responder for both variants
  client    — aiohttp transports + ChunkedMeasurement / StreamMeasurement
  logs      — text / JSON logging setup, SI / IEC formatting
  cli       — argparse CLI: serve / measure subcommands

The netmeter engine is fully decoupled:
  - Only this package imports aiohttp
  - The engine sees transports through netmeter.transport protocols
"""

__version__ = "1.0.0"
