from __future__ import annotations

import argparse
import asyncio
import json
import sys
from typing import Any, Dict, List, Sequence

from ach_exporter.config import Config, ConfigError, get_config
from ach_exporter.json_logger import JsonLogger, get_logger, log_event

EXIT_OK = 0
EXIT_FAILED = 1
EXIT_CONFIG = 2


def _load_config() -> Config | None:
    try:
        return get_config()
    except ConfigError as exc:
        # The default logger reads its file sink from the config, so skip it here.
        logger = JsonLogger(log_file_path=None)
        log_event(logger=logger, phase="config", status="error", message=str(exc))
        logger.close()
        return None


def _print_json(payload: Dict[str, Any]) -> None:
    print(json.dumps(payload, indent=2, default=str), flush=True)


async def _run_async(args: argparse.Namespace) -> int:
    from ach_exporter.pipeline import PrerequisiteError, run_net_ach_once

    config = _load_config()
    if config is None:
        return EXIT_CONFIG
    logger = get_logger(run_id=args.run_id)

    try:
        outcome = await run_net_ach_once(config, run_id=logger.run_id, logger=logger)
    except PrerequisiteError:
        return EXIT_CONFIG
    finally:
        logger.close()

    _print_json(outcome.as_dict())
    return EXIT_OK if outcome.ok else EXIT_FAILED


def _run_server() -> int:
    from ach_exporter.server import run_server

    config = _load_config()
    if config is None:
        return EXIT_CONFIG
    run_server(config)
    return EXIT_OK


async def _mfa_check_async() -> int:
    from ach_exporter.pipeline import probe_mailboxes

    config = _load_config()
    if config is None:
        return EXIT_CONFIG
    logger = get_logger()

    missing = [
        message for message in config.prerequisite_errors() if message.startswith(("IMAP_", "At least one mailbox"))
    ]
    if missing:
        for message in missing:
            log_event(logger=logger, phase="prereq", status="error", message=message)
        return EXIT_CONFIG

    match = await probe_mailboxes(config, logger=logger)
    if match is None:
        _print_json({"found": False, "mailboxes": list(config.imap.mailboxes)})
        return EXIT_FAILED
    _print_json({"found": True, **match.describe()})
    return EXIT_OK


def _check(args: argparse.Namespace) -> int:
    from ach_exporter.mfa.mailbox import tls_preflight
    from ach_exporter.pipeline import PrerequisiteError, prepare_run

    config = _load_config()
    if config is None:
        _print_json({"ok": False, "errors": ["configuration could not be loaded"]})
        return EXIT_CONFIG
    logger = get_logger()

    report: Dict[str, Any] = {"ok": True, "errors": []}
    errors: List[str] = report["errors"]
    try:
        inputs = prepare_run(config, logger=logger)
    except PrerequisiteError as exc:
        errors.extend(exc.errors)
    else:
        report["merchants"] = len(inputs.merchants)
        report["range"] = {
            "start": inputs.report_range.start.isoformat(),
            "end": inputs.report_range.end.isoformat(),
        }
        report["selector_groups"] = sorted(inputs.selectors)
    report["mailboxes"] = list(config.imap.mailboxes)

    if args.imap_preflight:
        try:
            report["imap_tls"] = tls_preflight(config.imap)
        except OSError as exc:
            errors.append(f"IMAP TLS preflight failed: {exc}")

    report["ok"] = not errors
    _print_json(report)
    return EXIT_OK if not errors else EXIT_CONFIG


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="ach_exporter", description="Elevate Net ACH export job")
    subparsers = parser.add_subparsers(dest="command", required=True)

    run_parser = subparsers.add_parser("run", help="Run the export job once and exit")
    run_parser.add_argument("--run-id", dest="run_id", type=str, default=None, help="Override generated run id")

    subparsers.add_parser("server", help="Start the HTTP trigger server")
    subparsers.add_parser("mfa-check", help="Search the mailboxes once for a 2FA code and print it masked")

    check_parser = subparsers.add_parser("check", help="Validate configuration, selectors and merchants")
    check_parser.add_argument(
        "--imap-preflight",
        dest="imap_preflight",
        action="store_true",
        help="Also open a TLS connection to the IMAP server",
    )
    return parser


def main(argv: Sequence[str] | None = None) -> int:
    args = list(argv) if argv is not None else sys.argv[1:]
    parser = _build_parser()
    parsed = parser.parse_args(args)

    if parsed.command == "run":
        return asyncio.run(_run_async(parsed))
    if parsed.command == "server":
        return _run_server()
    if parsed.command == "mfa-check":
        return asyncio.run(_mfa_check_async())
    if parsed.command == "check":
        return _check(parsed)

    parser.error("Unknown command")
    return EXIT_FAILED
