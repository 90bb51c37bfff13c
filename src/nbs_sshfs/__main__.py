"""
CLI interface for nbs-sshfs.

Usage:
    python -m nbs_sshfs my-server                   # List the config's root
    python -m nbs_sshfs user@host:2222/var/log      # Connection string with path
    python -m nbs_sshfs -c configs.json my-server   # Load configs from a JSON file
    python -m nbs_sshfs -F ./ssh_config -G alias    # Print the resolved config
    python -m nbs_sshfs --events events.jsonl my-server
    python -m nbs_sshfs --help

Exit codes: 0 on success, 1 on error, 130 when a prompt was dismissed or
the user interrupted.
"""
from __future__ import annotations

import argparse
import asyncio
import json
import logging
import sys
from pathlib import Path

from nbs_sshfs.calculator import ConnectionCalculator
from nbs_sshfs.connection import SSHFSConnector
from nbs_sshfs.errors import (
    BootstrapCancelled,
    ConfigurationRequired,
    PromptCancelled,
    SSHFSError,
)
from nbs_sshfs.events import EventEmitter
from nbs_sshfs.flags import FlagStore
from nbs_sshfs.prompts import ConsolePrompter
from nbs_sshfs.records import ConfigLayer, censor_config
from nbs_sshfs.resolver import ConfigResolver
from nbs_sshfs.session_store import SessionStore

log = logging.getLogger("nbs_sshfs.cli")

EXIT_OK = 0
EXIT_ERROR = 1
EXIT_CANCELLED = 130


def create_parser() -> argparse.ArgumentParser:
    """Create the argument parser for nbs-sshfs CLI."""
    parser = argparse.ArgumentParser(
        prog="nbs-sshfs",
        description="Resolve an SSH FS config and open an SFTP session",
        epilog="Example: python -m nbs_sshfs -c configs.json my-server",
    )

    parser.add_argument(
        "target",
        metavar="config|connection",
        help="Config name, or a connection string like user@host:22/path",
    )

    parser.add_argument(
        "-c", "--config",
        metavar="FILE",
        action="append",
        default=[],
        help="JSON file holding an array of configs, or a folder with sshfs.json(c) (repeatable)",
    )

    parser.add_argument(
        "-F", "--ssh-config",
        metavar="FILE",
        action="append",
        help="ssh_config file for the overlay (default: ~/.ssh/config and the system config)",
    )

    parser.add_argument(
        "-G",
        dest="print_config",
        action="store_true",
        help="Print the resolved config (secrets censored) and exit",
    )

    parser.add_argument(
        "--flag",
        metavar="FLAG",
        action="append",
        default=[],
        help="Global feature flag, e.g. DF-GE or OPENSSH-CONFIG=false (repeatable)",
    )

    parser.add_argument(
        "--insecure",
        action="store_true",
        help="Skip host key verification",
    )

    parser.add_argument(
        "--events",
        metavar="FILE",
        help="Append JSONL events to FILE",
    )

    parser.add_argument(
        "-v", "--verbose",
        action="count",
        default=0,
        help="Increase verbosity (-v info, -vv debug, -vvv asyncssh debug)",
    )

    parser.add_argument(
        "-q", "--quiet",
        action="store_true",
        help="Only show errors",
    )

    return parser


def setup_logging(verbose: int, quiet: bool) -> None:
    if quiet:
        level = logging.ERROR
    elif verbose >= 2:
        level = logging.DEBUG
    elif verbose == 1:
        level = logging.INFO
    else:
        level = logging.WARNING
    logging.basicConfig(
        level=level,
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        stream=sys.stderr,
    )
    if quiet:
        logging.getLogger("asyncssh").setLevel(logging.ERROR)
    elif verbose >= 3:
        logging.getLogger("asyncssh").setLevel(logging.DEBUG)
    else:
        logging.getLogger("asyncssh").setLevel(logging.WARNING)


def build_connector(args: argparse.Namespace, emitter: EventEmitter | None) -> SSHFSConnector:
    resolver = ConfigResolver()
    for path in args.config:
        if Path(path).expanduser().is_dir():
            resolver.add_config_folder(path, ConfigLayer.GLOBAL)
        else:
            resolver.add_config_file(path, ConfigLayer.GLOBAL)
    snapshot = resolver.reload()
    log.debug("Loaded %d configs with %d problems", len(snapshot.records), len(snapshot.errors))

    calculator = ConnectionCalculator(
        prompter=ConsolePrompter(),
        session_store=SessionStore(),
        flags=FlagStore(global_flags=args.flag),
        ssh_config_paths=args.ssh_config,
        emitter=emitter,
    )
    return SSHFSConnector(
        resolver=resolver,
        calculator=calculator,
        emitter=emitter,
        known_hosts=None if args.insecure else (),
    )


async def run(args: argparse.Namespace) -> int:
    """
    Resolve the target and list its remote path.

    Returns:
        Process exit code
    """
    emitter = EventEmitter(jsonl_path=args.events) if args.events else None
    connector: SSHFSConnector | None = None
    try:
        connector = build_connector(args, emitter)
        if args.print_config:
            target = connector.resolve_target(args.target)
            config = await connector.calculator.calculate(target.record)
            print(json.dumps(censor_config(config), indent=2, default=str))
            return EXIT_OK

        async with await connector.open_sftp(args.target) as session:
            path = session.path or "."
            for name in sorted(await session.sftp.listdir(path)):
                if name not in (".", ".."):
                    print(name)
        return EXIT_OK

    except (PromptCancelled, BootstrapCancelled) as e:
        print(f"Cancelled: {e}", file=sys.stderr)
        return EXIT_CANCELLED
    except ConfigurationRequired as e:
        print(f"Configuration required: {e}", file=sys.stderr)
        return EXIT_ERROR
    except SSHFSError as e:
        log.debug("Failure details: %s", e.to_dict())
        print(f"Error: {e}", file=sys.stderr)
        return EXIT_ERROR
    except OSError as e:
        print(f"Error: {e}", file=sys.stderr)
        return EXIT_ERROR
    finally:
        if connector is not None:
            await connector.close()
        if emitter is not None:
            emitter.close()


def main(argv: list[str] | None = None) -> int:
    """CLI entry point."""
    parser = create_parser()
    args = parser.parse_args(argv)
    setup_logging(args.verbose, args.quiet)

    try:
        return asyncio.run(run(args))
    except KeyboardInterrupt:
        print("Interrupted", file=sys.stderr)
        return EXIT_CANCELLED


if __name__ == "__main__":
    sys.exit(main())
