# cli.py
import argparse
import sys
import traceback
from pathlib import Path
from typing import List, Optional

from loguru import logger
from rich.console import Console
from rich.table import Table

from .defaults import default_options
from .host import HostEnvironment
from .metadata import MetadataDirStore
from .migration import migrate_root
from .models import METADATA_DIR, UpdaterOptions
from .types import UpdaterError
from .updater import Updater

LOG_FORMAT = (
    "<green>{time:YYYY-MM-DD HH:mm:ss.SSS}</green> | <level>{level: <8}</level> | "
    "<cyan>{name}</cyan>:<cyan>{line}</cyan> - <level>{message}</level>"
)


def setup_logging(verbose: int = 0, log_file: Optional[Path] = None) -> None:
    """Configure loguru sinks based on the verbosity level."""
    logger.remove()
    level = "DEBUG" if verbose > 1 else "INFO" if verbose == 1 else "WARNING"
    logger.add(sink=sys.stderr, level=level, format=LOG_FORMAT)
    if log_file:
        logger.add(
            log_file,
            level="DEBUG",
            format=LOG_FORMAT,
            rotation="10 MB",
            retention="1 week",
        )


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="agent-updater",
        description="Agent Updater - Keep agent executables up to date from a TUF repository",
    )
    parser.add_argument(
        "--config", type=Path, help="Path to the configuration file (JSON)"
    )
    parser.add_argument("--root-dir", type=Path, help="Root directory of the installation")
    parser.add_argument("--server-url", type=str, help="URL of the TUF repository")
    parser.add_argument(
        "--insecure",
        action="store_true",
        default=None,
        help="Disable TLS certificate verification (metadata signatures are still checked)",
    )
    parser.add_argument("--log-file", type=Path, help="Also write debug logs to this file")
    parser.add_argument(
        "--verbose",
        "-v",
        action="count",
        default=0,
        help="Increase verbosity (can be used multiple times)",
    )

    subparsers = parser.add_subparsers(dest="command", required=True)

    subparsers.add_parser("refresh", help="Refresh the repository metadata")
    subparsers.add_parser("list", help="List the targets of the repository")

    get_parser = subparsers.add_parser("get", help="Download and install a target if outdated")
    get_parser.add_argument("target", help="Name of the target")
    get_parser.add_argument("--channel", help="Track another update channel")

    path_parser = subparsers.add_parser("path", help="Print the local executable path of a target")
    path_parser.add_argument("target", help="Name of the target")

    subparsers.add_parser("migrate", help="Migrate a legacy installation to the root directory")

    dev_parser = subparsers.add_parser("dev-copy", help="Install a local development build")
    dev_parser.add_argument("target", help="Name of the target")
    dev_parser.add_argument("path", type=Path, help="Path of the development build")
    dev_parser.add_argument("--yes", "-y", action="store_true", help="Skip the confirmation")

    return parser


def load_options(args: argparse.Namespace, host: HostEnvironment) -> UpdaterOptions:
    """Load the options from --config, or the host defaults, applying the CLI overrides."""
    overrides = {
        "root_directory": args.root_dir,
        "server_url": args.server_url,
        "insecure_transport": args.insecure,
    }
    if args.config:
        options = UpdaterOptions.from_file(args.config, **overrides)
    else:
        options = default_options(host, root_directory=args.root_dir)
        updates = {k: v for k, v in overrides.items() if v is not None and k != "root_directory"}
        if updates:
            options = UpdaterOptions.model_validate({**options.model_dump(), **updates})
    if options.local_store is None:
        options.local_store = MetadataDirStore(options.root_directory / METADATA_DIR)
    return options


def print_targets(updater: Updater, console: Console) -> None:
    table = Table(title="Repository Targets", show_header=True)
    table.add_column("Path", style="cyan")
    table.add_column("Length", justify="right")
    table.add_column("SHA256", style="green")
    for path, meta in sorted(updater.list_targets().items()):
        table.add_row(path, str(meta.length), meta.hashes.get("sha256", "-"))
    console.print(table)


def main(argv: Optional[List[str]] = None) -> int:
    """
    The main entry point for the command-line interface.

    Returns:
        int: Exit code (0 for success, non-zero for failure)
    """
    args = build_parser().parse_args(argv)
    setup_logging(args.verbose, args.log_file)

    console = Console()
    host = HostEnvironment.current()
    updater = None
    try:
        options = load_options(args, host)

        match args.command:
            case "migrate":
                migrated = migrate_root(options, host=host)
                print("Migrated installation" if migrated else "Nothing to migrate")
                return 0
            case "path":
                updater = Updater.disabled(options, host=host)
                print(updater.executable_local_path(args.target))
                return 0
            case "dev-copy":
                updater = Updater.disabled(options, host=host)
                path = updater.copy_dev_build(args.target, args.path, confirm=not args.yes)
                print(f"Installed development build to {path}")
                return 0

        updater = Updater.create(options, host=host)
        updater.refresh_metadata()

        match args.command:
            case "refresh":
                print("Metadata is up to date")
            case "list":
                print_targets(updater, console)
            case "get":
                if args.channel:
                    updater.set_target_channel(args.target, args.channel)
                local_target = updater.get(args.target)
                print(local_target.exec_path)
        return 0

    except FileNotFoundError as e:
        print(f"Error: {e}")
        return 1
    except UpdaterError as e:
        print(f"Error: {e}")
        return 1
    except ValueError as e:
        print(f"Error: invalid configuration: {e}")
        return 1
    except Exception as e:
        print(f"Unexpected error: {e}")
        traceback.print_exc()
        return 1
    finally:
        if updater is not None:
            updater.close()
