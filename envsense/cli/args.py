# envsense/cli/args.py
from __future__ import annotations

import argparse
from dataclasses import replace
from typing import Optional

from envsense.app.config import EnvSenseConfig, load_config


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="envsense", description="Serial environmental sensor monitor")
    parser.add_argument("--config", default=None, help="YAML config file (default: ~/.envsense/envsense.yml if present).")
    parser.add_argument("--log-level", default=None, help="Override logging.level (DEBUG, INFO, WARNING...).")
    parser.add_argument("--log-file", default=None, help="Also write logs to this file.")

    sub = parser.add_subparsers(dest="cmd", required=True)

    sub.add_parser("ports", help="List serial ports.")
    sub.add_parser("status", help="Show the startup state (pending reconnect, platform support).")
    sub.add_parser("forget", help="Clear a pending reconnect intent.")

    pm = sub.add_parser("monitor", help="Connect and print readings until Ctrl+C.")
    pm.add_argument("--driver", choices=("uart", "replay"), default=None)
    pm.add_argument("-p", "--port", default=None, help="Serial port (auto-detect if omitted).")
    pm.add_argument("--baudrate", type=int, default=None)
    pm.add_argument("--replay", default=None, help="Capture file for the replay driver (implies --driver replay).")
    pm.add_argument("--choose", action="store_true", help="Pick the port interactively.")
    pm.add_argument("--secs", type=float, default=None, help="Disconnect after N seconds.")
    pm.add_argument("--raw", action="store_true", help="Also print the last raw frame for each update.")
    pm.add_argument("--json", action="store_true", help="Print one JSON object per update.")

    return parser


def apply_overrides(cfg: EnvSenseConfig, args: argparse.Namespace) -> EnvSenseConfig:
    """CLI flags win over config file values."""
    transport = cfg.transport
    if getattr(args, "replay", None):
        transport = replace(transport, driver="replay", replay_path=args.replay)
    if getattr(args, "driver", None):
        transport = replace(transport, driver=args.driver)
    if getattr(args, "port", None):
        transport = replace(transport, port=args.port)
    if getattr(args, "baudrate", None) is not None:
        transport = replace(transport, baudrate=int(args.baudrate))

    logging_cfg = cfg.logging
    if args.log_level:
        logging_cfg = replace(logging_cfg, level=args.log_level)
    if args.log_file:
        logging_cfg = replace(logging_cfg, file=args.log_file)

    return replace(cfg, transport=transport, logging=logging_cfg)


def parse_args(argv: Optional[list[str]] = None) -> tuple[argparse.Namespace, EnvSenseConfig]:
    args = build_parser().parse_args(argv)
    cfg = apply_overrides(load_config(args.config), args)
    return args, cfg
