import argparse
import logging
import sys
from dataclasses import replace
from pathlib import Path
from typing import Optional

from .config import AppConfig, default_config_path, add_user, load_config, save_config
from .manager import Manager
from .models import AuthorizedUser, ProcessResult, ProcessStatus
from .printing import accepting_printers

logger = logging.getLogger(__name__)


def _add_logging_args(parser: argparse.ArgumentParser) -> None:
    parser.add_argument("--log-level", default="INFO", help="DEBUG, INFO, WARNING, ...")
    parser.add_argument("--log-file", type=Path, help="Also log to this file (rotated)")


def _setup_logging(args: argparse.Namespace) -> None:
    from .log import configure_logging

    configure_logging(args.log_level, args.log_file)


def _load_config_or_exit() -> Optional[AppConfig]:
    try:
        return load_config()
    except ValueError as e:
        print(f"Invalid configuration: {e}", file=sys.stderr)
        return None


def _build_manager(cfg: AppConfig) -> Optional[Manager]:
    try:
        return Manager(config=cfg)
    except FileNotFoundError as e:
        print(str(e), file=sys.stderr)
        return None


def _print_result(r: ProcessResult) -> None:
    print(f"{r.message_id}: {r.status.value} ({r.reason})")
    for p in r.saved:
        print(f"  saved   {p}")
    for p in r.printed:
        print(f"  printed {p}")
    for err in r.errors:
        print(f"  error   {err}")


def run_polling(argv: list[str]) -> int:
    parser = argparse.ArgumentParser(prog="mailprint run")
    parser.add_argument("--once", action="store_true", help="Run a single cycle and exit")
    parser.add_argument("--dry-run", action="store_true", help="Classify only; no downloads, prints or label changes")
    parser.add_argument("--interval", type=int, help="Seconds between cycles (default from config)")
    parser.add_argument("--workers", type=int, help="Messages processed in parallel (default from config)")
    _add_logging_args(parser)
    args = parser.parse_args(argv)

    _setup_logging(args)
    cfg = _load_config_or_exit()
    if cfg is None:
        return 2

    if args.workers is not None:
        if args.workers < 1:
            print("--workers must be >= 1", file=sys.stderr)
            return 2
        cfg = replace(cfg, max_workers=args.workers)

    if args.interval is not None and args.interval < 1:
        print("--interval must be >= 1", file=sys.stderr)
        return 2

    if not cfg.authorized_users and not cfg.shared_token:
        logger.warning("No authorized users and no shared token configured; nothing will be processed.")

    mgr = _build_manager(cfg)
    if mgr is None:
        return 2
    mgr.check_printer()

    if args.once:
        summary = mgr.run_cycle(dry_run=args.dry_run)
        for r in summary.results:
            if r.status is not ProcessStatus.SKIPPED:
                _print_result(r)
        print(summary.describe())
        return 1 if summary.has_failures else 0

    try:
        mgr.run_forever(interval=args.interval, dry_run=args.dry_run)
    except KeyboardInterrupt:
        logger.info("Stopped.")
    return 0


def check_message(argv: list[str]) -> int:
    parser = argparse.ArgumentParser(prog="mailprint check")
    parser.add_argument("message_id", help="Gmail message id")
    parser.add_argument("--dry-run", action="store_true", help="Classify only")
    _add_logging_args(parser)
    args = parser.parse_args(argv)

    _setup_logging(args)
    cfg = _load_config_or_exit()
    if cfg is None:
        return 2

    mgr = _build_manager(cfg)
    if mgr is None:
        return 2
    result = mgr.process_message(args.message_id, dry_run=args.dry_run)
    _print_result(result)
    return 1 if result.errors else 0


def init_config(argv: list[str]) -> int:
    parser = argparse.ArgumentParser(prog="mailprint init-config")
    parser.add_argument("--force", action="store_true", help="Overwrite an existing config")
    parser.add_argument("--printer", help="CUPS printer name")
    parser.add_argument("--attachment-dir", help="Where attachments are saved")
    args = parser.parse_args(argv)

    path = default_config_path()
    if path.exists() and not args.force:
        print(f"Config already exists at {path} (use --force to overwrite).")
        return 2

    cfg = AppConfig()
    data = cfg.to_dict()
    if args.printer:
        data["printer_name"] = args.printer
    if args.attachment_dir:
        data["attachment_dir"] = args.attachment_dir
    saved = save_config(AppConfig.from_dict(data), path)
    print(f"Wrote {saved}")
    return 0


def add_user_cli(argv: list[str]) -> int:
    parser = argparse.ArgumentParser(prog="mailprint add-user")
    parser.add_argument("name", help="Display name; an existing user with this name is replaced")
    parser.add_argument("emails", nargs="+", help="Sender addresses for this user")
    args = parser.parse_args(argv)

    cfg = _load_config_or_exit()
    if cfg is None:
        return 2

    emails = tuple(e.strip() for e in args.emails if e.strip())
    if not args.name.strip() or not emails:
        print("A name and at least one email are required.", file=sys.stderr)
        return 2

    cfg = add_user(cfg, AuthorizedUser(name=args.name.strip(), emails=emails))
    path = save_config(cfg)
    print(f"Saved {len(cfg.authorized_users)} authorized users to {path}")
    return 0


def list_printers(argv: list[str]) -> int:
    printers = accepting_printers()
    if not printers:
        print("No printers found (is CUPS installed?).")
        return 1
    for p in printers:
        print(p)
    return 0


def main(argv: Optional[list[str]] = None) -> int:
    argv = argv if argv is not None else sys.argv[1:]
    if not argv or argv[0] in ("-h", "--help", "help"):
        print(
            "Usage:\n"
            "  mailprint run [--once] [--dry-run] [--interval N] [--workers N]\n"
            "  mailprint check <message_id> [--dry-run]\n"
            "  mailprint init-config [--force] [--printer NAME] [--attachment-dir DIR]\n"
            "  mailprint add-user <name> <email> [<email> ...]\n"
            "  mailprint printers\n"
        )
        return 0

    cmd = argv[0]
    rest = argv[1:]

    if cmd == "run":
        return run_polling(rest)
    if cmd == "check":
        return check_message(rest)
    if cmd == "init-config":
        return init_config(rest)
    if cmd == "add-user":
        return add_user_cli(rest)
    if cmd == "printers":
        return list_printers(rest)

    print(f"Unknown command: {cmd}")
    return 2


if __name__ == "__main__":
    raise SystemExit(main())
