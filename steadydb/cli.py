"""Command line entry point running one statement against a configured profile."""

from __future__ import annotations

import argparse
import json
import logging
import sys

from .client import Client
from .connections import ConfigError
from .models import FetchMode


def parse_args(argv: list[str]) -> argparse.Namespace:
    parser = argparse.ArgumentParser(prog="steadydb", description=__doc__)
    parser.add_argument("sql", help="SQL statement to run")
    parser.add_argument("--profile", default=None, help="Profile name from the config file")
    parser.add_argument(
        "--mode",
        choices=[mode.value for mode in FetchMode],
        default=FetchMode.ASSOC.value,
        help="Row shape for query results",
    )
    parser.add_argument("--all", action="store_true", help="Print every row instead of the first")
    parser.add_argument("--write", action="store_true", help="Run as a direct statement and print the affected rows")
    parser.add_argument("--verbose", action="store_true", help="Log retries and connection events")
    return parser.parse_args(argv)


def main(argv: list[str] | None = None) -> int:
    args = parse_args(sys.argv[1:] if argv is None else argv)
    logging.basicConfig(level=logging.DEBUG if args.verbose else logging.WARNING)
    mode = FetchMode(args.mode)
    try:
        with Client.from_profile(args.profile) as client:
            if args.write:
                output: object = client.update(args.sql)
            elif args.all:
                output = client.get_rows(args.sql, mode)
            else:
                output = client.get_row(args.sql, mode)
            error = client.current_error()
    except (ConfigError, ValueError) as exc:
        print(f"error: {exc}", file=sys.stderr)
        return 2
    print(json.dumps(output, default=str))
    if not error.ok:
        print(json.dumps(list(error.as_tuple())), file=sys.stderr)
        return 1
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
