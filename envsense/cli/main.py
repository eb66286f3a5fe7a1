# envsense/cli/main.py
from __future__ import annotations

import sys
from typing import Optional

from envsense.core.errors import EnvSenseError

from envsense.cli.args import parse_args
from envsense.cli.commands import (
    configure_logging,
    cmd_ports,
    cmd_status,
    cmd_forget,
    cmd_monitor,
)


def main(argv: Optional[list[str]] = None) -> int:
    try:
        args, cfg = parse_args(argv)
        configure_logging(cfg.logging.level, cfg.logging.file)

        if args.cmd == "ports":
            return cmd_ports()
        if args.cmd == "status":
            return cmd_status(cfg)
        if args.cmd == "forget":
            return cmd_forget(cfg)
        if args.cmd == "monitor":
            return cmd_monitor(args, cfg)

        return 2
    except EnvSenseError as e:
        print(f"ERROR: {e.message}")
        if e.hint:
            print(f"Hint: {e.hint}")
        return 1


if __name__ == "__main__":
    sys.exit(main())
