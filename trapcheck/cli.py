"""CLI argument parsing and main entry point.

* ``trapcheck brokers``     list brokers and whether they can take a check type.
* ``trapcheck submit FILE`` submit an httptrap JSON payload (``-`` reads stdin).
"""

from __future__ import annotations

import argparse
import logging
import os
import sys
from typing import List, Optional

from trapcheck.api.client import APIClient
from trapcheck.brokers.cache import BrokerCache
from trapcheck.brokers.selector import BrokerSelector
from trapcheck.config.loader import load_config
from trapcheck.config.schema import FileConfig
from trapcheck.constants import APP_NAME, APP_VERSION
from trapcheck.errors import TrapCheckError
from trapcheck.logging_config import secret_redaction_filter, setup_logging
from trapcheck.trapcheck import TrapCheck

module_logger = logging.getLogger(__name__)

_CONFIG_SEARCH_ORDER = ("trapcheck.yaml", "trapcheck.yml")


def _find_config_file() -> Optional[str]:
    """Return ``trapcheck.yaml``/``.yml`` from the working directory, if present."""
    for name in _CONFIG_SEARCH_ORDER:
        candidate = os.path.join(os.getcwd(), name)
        if os.path.isfile(candidate):
            return candidate
    return None


def _prepare(args: argparse.Namespace) -> FileConfig:
    config = load_config(args.config or _find_config_file())
    level = args.log_level or config.logging.level
    setup_logging(level, config.logging.file)
    secret_redaction_filter.register(config.api.token)
    if not config.api.token:
        raise TrapCheckError("no API token; set api.token or CIRCONUS_API_TOKEN")
    return config


def _api_client(config: FileConfig) -> APIClient:
    return APIClient(
        config.api.token,
        app_name=config.api.app_name,
        base_url=config.api.url,
        ca_file=config.api.ca_file,
        timeout=config.api.timeout,
    )


# ── commands ─────────────────────────────────────────────────────────────


def _cmd_brokers(args: argparse.Namespace) -> None:
    config = _prepare(args)
    check_type = args.check_type or config.trapcheck.check_type
    tags: List[str] = args.tags.split(",") if args.tags else config.trapcheck.broker_select_tags

    with _api_client(config) as client:
        cache = BrokerCache()
        cache.initialize(client, module_logger)
        selector = BrokerSelector(
            cache, config.trapcheck.broker_max_response_seconds, log=module_logger
        )
        brokers = cache.search(tags) if tags else cache.list()
        for broker in brokers:
            try:
                instance = selector.validate(broker, check_type)
            except TrapCheckError as exc:
                print(f"{broker.cid}\t{broker.type}\t{broker.name}\tinvalid: {exc}")
            else:
                print(f"{broker.cid}\t{broker.type}\t{broker.name}\tvalid ({instance.cn})")


def _cmd_submit(args: argparse.Namespace) -> None:
    config = _prepare(args)
    settings = config.trapcheck
    if args.trace:
        settings = settings.model_copy(update={"trace_metrics": args.trace})

    if args.file == "-":
        payload = sys.stdin.buffer.read()
    else:
        try:
            with open(args.file, "rb") as fh:
                payload = fh.read()
        except OSError as exc:
            raise TrapCheckError(f"reading metrics file: {exc}") from exc

    with _api_client(config) as client:
        tc = TrapCheck(client, settings, logger=module_logger)
        result = tc.send_metrics(payload)
    print(result.model_dump_json(indent=2))


def _build_parser() -> argparse.ArgumentParser:
    """Build the argparse parser with brokers/submit subcommands."""
    parser = argparse.ArgumentParser(
        prog="trapcheck",
        description=f"{APP_NAME} v{APP_VERSION}",
    )
    parser.add_argument(
        "--config",
        default=None,
        help="Path to a YAML config file (default: ./trapcheck.yaml if present)",
    )
    parser.add_argument(
        "--log-level",
        default=None,
        choices=["debug", "info", "warning", "error", "critical"],
        help="Override the configured log level",
    )

    subparsers = parser.add_subparsers(dest="command")

    # ── brokers ─────────────────────────────────────────────────
    sp_brokers = subparsers.add_parser("brokers", help="List brokers and their validity")
    sp_brokers.add_argument("--check-type", default=None, help="Check type (default: httptrap)")
    sp_brokers.add_argument("--tags", default=None, help="Comma separated broker tags")
    sp_brokers.set_defaults(func=_cmd_brokers)

    # ── submit ──────────────────────────────────────────────────
    sp_submit = subparsers.add_parser("submit", help="Submit a metrics JSON file")
    sp_submit.add_argument("file", help="Metrics file, or '-' for stdin")
    sp_submit.add_argument("--trace", default=None, help="Trace payloads to DIR or '-' (log)")
    sp_submit.set_defaults(func=_cmd_submit)

    return parser


def main(argv: Optional[List[str]] = None) -> None:
    """Program entry point: parse arguments and dispatch to subcommand."""
    parser = _build_parser()
    args = parser.parse_args(argv)

    if args.command is None:
        parser.print_help()
        sys.exit(1)

    try:
        args.func(args)
    except TrapCheckError as exc:
        module_logger.error("%s failed: %s", args.command, exc)
        print(f"Error: {exc}", file=sys.stderr)
        sys.exit(1)
