from __future__ import annotations

import logging
import os
import sys
from datetime import datetime, timezone
from typing import Any, Dict, Optional

_LEVELS = {
    "debug": logging.DEBUG,
    "info": logging.INFO,
    "warn": logging.WARNING,
    "warning": logging.WARNING,
    "error": logging.ERROR,
    "crit": logging.CRITICAL,
    "critical": logging.CRITICAL,
}


def parse_level(value: Any, default: int = logging.INFO) -> int:
    """Brief: Map a level name (or numeric level) to a logging constant.

    Inputs:
      - value: "debug", "info", "warn", "error", "crit", or an int.
      - default: Level returned for unknown values.

    Outputs:
      - int logging level.
    """

    if isinstance(value, int):
        return value
    return _LEVELS.get(str(value or "").strip().lower(), default)


class BracketLevelFormatter(logging.Formatter):
    """Formatter that adds bracketed lowercase level tags and UTC timestamps."""

    _TAGS = {
        logging.DEBUG: "[debug]",
        logging.INFO: "[info]",
        logging.WARNING: "[warn]",
        logging.ERROR: "[error]",
        logging.CRITICAL: "[crit]",
    }

    def formatTime(self, record, datefmt=None):
        """Format the record's creation time as UTC ISO-8601 with Z suffix."""
        ts = datetime.fromtimestamp(record.created, tz=timezone.utc)
        return ts.strftime(datefmt or "%Y-%m-%dT%H:%M:%SZ")

    def format(self, record):
        record.level_tag = self._TAGS.get(record.levelno, f"[lvl{record.levelno}]")
        return super().format(record)


def init_logging(cfg: Optional[Dict[str, Any]]) -> None:
    """
    Initialize logging for the dnssd-browse tool.

    Args:
        cfg: Logging configuration dictionary with optional keys:
            - level: debug, info, warn, error, crit (default: warn)
            - stderr: boolean to log to stderr (default: True)
            - file: string path to log file (optional)
            - loggers: mapping of logger name -> level, for example
              {"dnssd.connection": "debug"} to trace socket activity only

    Example config:
        {
            "level": "info",
            "stderr": True,
            "file": "~/.cache/dnssd-browse.log",
            "loggers": {"dnssd.browse": "debug"}
        }
    """
    cfg = cfg or {}

    # Browse output goes to stdout, so keep stderr quiet unless asked.
    level = parse_level(cfg.get("level"), default=logging.WARNING)

    fmt = "%(asctime)s %(level_tag)s %(name)s: %(message)s"
    formatter = BracketLevelFormatter(fmt=fmt)

    root = logging.getLogger()
    root.setLevel(level)

    # Remove existing handlers to avoid duplicates
    for h in list(root.handlers):
        root.removeHandler(h)

    if cfg.get("stderr", True):
        stderr_handler = logging.StreamHandler(sys.stderr)
        stderr_handler.setFormatter(formatter)
        root.addHandler(stderr_handler)

    file_path = cfg.get("file")
    if isinstance(file_path, str) and file_path.strip():
        path = os.path.abspath(os.path.expanduser(file_path.strip()))
        os.makedirs(os.path.dirname(path), exist_ok=True)
        file_handler = logging.FileHandler(path, mode="a", encoding="utf-8")
        file_handler.setFormatter(formatter)
        root.addHandler(file_handler)

    loggers = cfg.get("loggers") or {}
    if isinstance(loggers, dict):
        for name, lvl in loggers.items():
            logging.getLogger(str(name)).setLevel(parse_level(lvl, default=level))

    logging.captureWarnings(True)
