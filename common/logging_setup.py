from __future__ import annotations

import logging
import os
import sys
import json
from typing import Optional

import numpy as np


def _json_default(value):
    """numpy scalars and arrays show up in `extra` (counts, timings, poses)."""
    if isinstance(value, np.generic):
        return value.item()
    if isinstance(value, np.ndarray):
        return value.tolist()
    return str(value)


class JsonFormatter(logging.Formatter):
    """
    One JSON object per line:
      { "t": 1700000000123, "lvl": "INFO", "name": "recognition.pipeline", "msg": "text", "extra": {...} }
    `t` is the record's creation time in epoch milliseconds.
    """

    def format(self, record: logging.LogRecord) -> str:  # type: ignore[override]
        payload = {
            "t": int(record.created * 1000),
            "lvl": record.levelname,
            "name": record.name,
            "msg": record.getMessage(),
        }
        extra = getattr(record, "extra", None)
        if isinstance(extra, dict) and extra:
            payload["extra"] = extra
        if record.exc_info:
            payload["exc_info"] = self.formatException(record.exc_info)
        return json.dumps(payload, ensure_ascii=False, default=_json_default)


class TextFormatter(logging.Formatter):
    """Human-readable variant for interactive CLI use; appends `extra` as key=value."""

    def __init__(self) -> None:
        super().__init__("%(asctime)s %(levelname)-7s %(name)s: %(message)s", datefmt="%H:%M:%S")

    def format(self, record: logging.LogRecord) -> str:  # type: ignore[override]
        line = super().format(record)
        extra = getattr(record, "extra", None)
        if isinstance(extra, dict) and extra:
            line += " " + " ".join(f"{k}={v}" for k, v in extra.items())
        return line


def setup_logging(level: Optional[str] = None, fmt: Optional[str] = None, force: bool = False) -> None:
    """
    Configure the root logger once.
    Level precedence:
      - explicit `level` arg
      - env LOG_LEVEL (e.g., DEBUG/INFO/WARN/ERROR)
      - default INFO
    Format precedence: explicit `fmt` ("json" | "text"), env LOG_FORMAT, default json.
    `force=True` reconfigures an already configured root (used by the CLI after
    reading the config file).
    """
    root = logging.getLogger()
    if getattr(root, "_keypose_configured", False) and not force:
        return

    lvl_name = (level or os.environ.get("LOG_LEVEL") or "INFO").upper()
    lvl = getattr(logging, lvl_name, None)
    if not isinstance(lvl, int):
        lvl = logging.INFO

    fmt_name = (fmt or os.environ.get("LOG_FORMAT") or "json").lower()
    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(TextFormatter() if fmt_name == "text" else JsonFormatter())

    root.handlers.clear()
    root.addHandler(handler)
    root.setLevel(lvl)
    root._keypose_configured = True  # type: ignore[attr-defined]


def get_logger(name: str) -> logging.Logger:
    """Get a module logger; ensures root is configured."""
    setup_logging()
    return logging.getLogger(name)
