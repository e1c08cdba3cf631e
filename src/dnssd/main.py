from __future__ import annotations

import argparse
import logging
import sys
from datetime import datetime
from typing import List, Optional, TextIO

from .browse import BrowseEntry, lookup_types
from .config import BrowseConfig, load_config
from .context import Context
from .errors import ConnectionOpenError, ContextError
from .logging_config import init_logging

logger = logging.getLogger("dnssd.main")

_HEADER = "{:<12}  {:<3}  {:<10}  {:<8}  {:<20}  {}".format(
    "Timestamp", "A/R", "If", "Domain", "Service Type", "Instance Name"
)


def format_entry(action: str, entry: BrowseEntry, now: Optional[datetime] = None) -> str:
    """
    Brief: Render one add/remove transition as a table row.

    Inputs:
      - action: "Add" or "Rmv"
      - entry: BrowseEntry being reported
      - now: timestamp to print (defaults to the current local time)

    Outputs:
      - str: row matching the header printed by main()
    """
    ts = (now or datetime.now()).strftime("%H:%M:%S.%f")[:-3]
    return "{:<12}  {:<3}  {:<10}  {:<8}  {:<20}  {}".format(
        ts,
        action,
        entry.interface_name,
        entry.domain,
        entry.type,
        entry.unescaped_name(),
    )


def build_config(args: argparse.Namespace) -> BrowseConfig:
    """
    Brief: Merge the YAML config file with command line overrides.

    Inputs:
      - args: parsed argparse namespace

    Outputs:
      - BrowseConfig validated after the overrides are applied
    """
    base = load_config(args.config)
    data = base.model_dump()
    if args.services:
        data["service_types"] = list(args.services)
    if args.timeout is not None:
        data["timeout"] = args.timeout
    if args.interface:
        data["interfaces"] = list(args.interface)
    if args.ip_version:
        data["ip_version"] = args.ip_version
    if args.log_level:
        data["logging"] = {**(data.get("logging") or {}), "level": args.log_level}
    return BrowseConfig(**data)


def main(argv: List[str] | None = None, out: TextIO | None = None) -> int:
    """
    Entry point of the dnssd-browse tool.

    Browses for the given service types and prints one line per instance
    appearing (Add) or disappearing (Rmv) until the timeout elapses or the
    user presses Ctrl-C.

    Args:
        argv: Command-line arguments.
        out: Stream for browse results (defaults to stdout).

    Returns:
        0 after a timeout or interrupt, 1 on configuration or socket errors.

    Example use:
        dnssd-browse _http._tcp.local. _ipp._tcp.local. --timeout 10
    """
    out = out or sys.stdout
    parser = argparse.ArgumentParser(
        description="Browse the local network for DNS-SD service instances via mDNS"
    )
    parser.add_argument(
        "services",
        nargs="*",
        help="Service types to browse, e.g. _http._tcp.local.",
    )
    parser.add_argument("--config", default=None, help="Path to YAML config")
    parser.add_argument(
        "--timeout",
        type=float,
        default=None,
        help="Stop after this many seconds (0 = until interrupted)",
    )
    parser.add_argument(
        "--interface",
        action="append",
        default=None,
        help="Interface name to browse on (repeatable; default: all)",
    )
    parser.add_argument(
        "--ip-version",
        choices=["v4", "v6", "all"],
        default=None,
        help="Address families to use",
    )
    parser.add_argument(
        "--log-level",
        default=None,
        help="debug, info, warn, error or crit",
    )
    args = parser.parse_args(argv)

    try:
        cfg = build_config(args)
    except (OSError, ValueError) as exc:
        print(f"dnssd-browse: {exc}", file=sys.stderr)
        return 1

    init_logging(cfg.logging)
    if not cfg.service_types:
        print("dnssd-browse: no service types given", file=sys.stderr)
        return 1

    def on_add(entry: BrowseEntry) -> None:
        print(format_entry("Add", entry), file=out, flush=True)

    def on_rmv(entry: BrowseEntry) -> None:
        print(format_entry("Rmv", entry), file=out, flush=True)

    ctx = Context.background()
    if cfg.timeout > 0:
        ctx = ctx.with_timeout(cfg.timeout)

    print("Browsing for " + ", ".join(cfg.service_types), file=out)
    print(_HEADER, file=out, flush=True)
    try:
        lookup_types(ctx, cfg.service_types, on_add, on_rmv, config=cfg)
    except ContextError as exc:
        logger.info("browse stopped: %s", exc)
        return 0
    except KeyboardInterrupt:
        return 0
    except ConnectionOpenError as exc:
        logger.error("cannot open mDNS connection: %s", exc)
        print(f"dnssd-browse: {exc}", file=sys.stderr)
        return 1
    finally:
        ctx.cancel("dnssd-browse exiting")
    return 0  # pragma: no cover - lookup_types never returns


if __name__ == "__main__":
    sys.exit(main())
