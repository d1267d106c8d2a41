"""
netmeter_server/logs.py

Logging setup for the CLI and human-readable number formatting.

Two output formats (selected with --format):
  text  — one line per record, structured fields appended as key=value
  json  — one JSON object per line, structured fields merged in

Structured fields travel on the LogRecord as `record.fields`, attached by
netmeter.records.emit() through `extra={"fields": {...}}`.
"""

import json
import logging
import time

TEXT_FORMAT = "%(asctime)s  %(levelname)-8s  %(name)s — %(message)s"
DATE_FORMAT = "%H:%M:%S"


def si(value: float, unit: str) -> str:
    """Format using SI (base-1000) prefixes, e.g. si(1.5e6, 'bit/s')."""
    if value >= 1e9:
        return f"{value / 1e9:.1f} G{unit}"
    if value >= 1e6:
        return f"{value / 1e6:.1f} M{unit}"
    if value >= 1e3:
        return f"{value / 1e3:.1f} k{unit}"
    return f"{value:.0f} {unit}"


def iec(value: float, unit: str) -> str:
    """Format using IEC (base-1024) prefixes, e.g. iec(1 << 20, 'B')."""
    if value >= 1 << 30:
        return f"{value / (1 << 30):.1f} Gi{unit}"
    if value >= 1 << 20:
        return f"{value / (1 << 20):.1f} Mi{unit}"
    if value >= 1 << 10:
        return f"{value / (1 << 10):.1f} Ki{unit}"
    return f"{value:.0f} {unit}"


class TextFormatter(logging.Formatter):
    def format(self, record: logging.LogRecord) -> str:
        line = super().format(record)
        fields = getattr(record, "fields", None)
        if fields:
            line += "  " + " ".join(f"{k}={v}" for k, v in fields.items())
        return line


class JsonFormatter(logging.Formatter):
    def format(self, record: logging.LogRecord) -> str:
        payload = {
            "time":   time.strftime("%Y-%m-%dT%H:%M:%S", time.gmtime(record.created))
                      + f".{int(record.msecs):03d}Z",
            "level":  record.levelname,
            "logger": record.name,
            "msg":    record.getMessage(),
        }
        fields = getattr(record, "fields", None)
        if fields:
            payload.update(fields)
        if record.exc_info:
            payload["exc"] = self.formatException(record.exc_info)
        return json.dumps(payload)


def setup_logging(verbose: bool = False, fmt: str = "text") -> None:
    if fmt not in ("text", "json"):
        raise ValueError(f"Unknown log format '{fmt}'. Valid: text, json")

    level = logging.DEBUG if verbose else logging.INFO
    handler = logging.StreamHandler()
    if fmt == "json":
        handler.setFormatter(JsonFormatter())
    else:
        handler.setFormatter(TextFormatter(TEXT_FORMAT, datefmt=DATE_FORMAT))
    logging.basicConfig(level=level, handlers=[handler], force=True)

    # Quiet noisy loggers unless verbose
    if not verbose:
        logging.getLogger("aiohttp.access").setLevel(logging.WARNING)
        logging.getLogger("asyncio").setLevel(logging.WARNING)
