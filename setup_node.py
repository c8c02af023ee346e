import argparse
import logging
import signal
import sys
from pathlib import Path
from typing import Any, Dict, List, Optional

from node_lifecycle.config import load_settings
from node_lifecycle.errors import NodeToolError, OperationCancelled
from node_lifecycle.modes import NodeManager

logger = logging.getLogger("setup_node")


class ProgressReporter:
    """Log download progress every ``step`` percent."""

    def __init__(self, step: int = 5):
        self.step = step
        self.last_reported = -step

    def __call__(self, received: int, total: int) -> None:
        if total <= 0:
            return
        percent = received * 100 // total
        if percent - self.last_reported >= self.step or received == total:
            self.last_reported = percent
            logger.info(
                "Downloading latest snapshot... %d%% (%.1f / %.1f MiB)",
                percent,
                received / (1024 ** 2),
                total / (1024 ** 2),
            )


def _sig_handler(signum, frame):
    raise KeyboardInterrupt()


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="Manage an osmosis node for local testnets and upgrade rehearsals",
        formatter_class=argparse.ArgumentDefaultsHelpFormatter,
    )
    parser.add_argument("--home-dir", type=Path, help="osmosis home directory, defaults to ~/.osmosisd")
    parser.add_argument("--osmosisd-bin", type=str, help="osmosis binary, defaults to osmosisd")
    parser.add_argument("--config", type=Path, help="YAML settings file (node.yaml is used when present)")
    parser.add_argument("--no-lock", action="store_true", help="Do not take the advisory data directory lock")
    parser.add_argument(
        "--log-level",
        default="INFO",
        choices=["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"],
        help="Logging verbosity.",
    )

    sub = parser.add_subparsers(dest="command", required=True)

    sub.add_parser("download-state", help="Download mainnet state")

    backup = sub.add_parser("backup", help="Backup current osmosis state")
    backup.add_argument("-p", "--path", type=Path, help="Path to backup directory, defaults to ~/.osmosisd_bak")

    restore = sub.add_parser("restore", help="Restore osmosis state from a backup")
    restore.add_argument("-p", "--path", type=Path, help="Path to backup directory, defaults to ~/.osmosisd_bak")

    sync = sub.add_parser("start-sync", help="Start the node and sync to the latest block")
    sync.add_argument(
        "-s",
        "--stop-on-first-indexed-block-events",
        action="store_true",
        help="Stop the node on first indexed block events",
    )
    sync.add_argument("--on-ready", type=str, help="Command to run on first indexed block events")

    testnet = sub.add_parser("start-in-place-testnet", help="Start osmosis in place testnet")
    testnet.add_argument(
        "--upgrade-handler",
        type=str,
        help="Upgrade handler to trigger; the chain runs it when started with the right binary",
    )
    testnet.add_argument("--new-osmosisd-bin", type=str, help="New osmosisd binary to use to run the upgrade")
    testnet.add_argument("--on-ready", type=str, help="Command to run on first indexed block events")

    standalone = sub.add_parser("start-standalone", help="Start a standalone node")
    standalone.add_argument("--on-ready", type=str, help="Command to run on first indexed block events")

    magic = sub.add_parser("magic-start", help="Perform all setup at once")
    magic.add_argument(
        "--download-mainnet-state",
        action="store_true",
        help="Download a new snapshot instead of restoring from backup",
    )
    magic.add_argument("--backup-path", type=Path, help="Path to backup directory, defaults to ~/.osmosisd_bak")
    magic.add_argument(
        "--upgrade-handler",
        type=str,
        help="Upgrade handler to trigger; the chain runs it when started with the right binary",
    )
    magic.add_argument("--new-osmosisd-bin", type=str, help="New osmosisd binary to use to run the upgrade")
    magic.add_argument("--on-ready", type=str, help="Command to run on first indexed block events")

    return parser


def run_cmd(manager: NodeManager, args: argparse.Namespace) -> None:
    command = args.command
    if command == "download-state":
        manager.download_state()
    elif command == "backup":
        dest = manager.backup(args.path)
        logger.info("Backed up %s to %s", manager.settings.home, dest)
    elif command == "restore":
        source = manager.restore(args.path)
        logger.info("Restored %s from %s", manager.settings.home, source)
    elif command == "start-sync":
        manager.start_sync(args.stop_on_first_indexed_block_events, args.on_ready)
    elif command == "start-in-place-testnet":
        manager.start_testnet(args.upgrade_handler, args.new_osmosisd_bin, args.on_ready)
    elif command == "start-standalone":
        manager.start_standalone(args.on_ready)
    elif command == "magic-start":
        manager.magic_start(
            download=args.download_mainnet_state,
            backup_path=args.backup_path,
            upgrade_handler=args.upgrade_handler,
            new_binary=args.new_osmosisd_bin,
            on_ready=args.on_ready,
        )
    else:
        raise ValueError(f"Unknown command: {command}")


def main(argv: Optional[List[str]] = None) -> int:
    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s - %(levelname)s - %(message)s",
        handlers=[logging.StreamHandler(sys.stderr)],
    )

    parser = build_parser()
    args = parser.parse_args(argv)
    logging.getLogger().setLevel(args.log_level.upper())

    signal.signal(signal.SIGTERM, _sig_handler)

    overrides: Dict[str, Any] = {"home": args.home_dir, "binary": args.osmosisd_bin}
    if args.no_lock:
        overrides["use_lock"] = False

    try:
        settings = load_settings(args.config, overrides)
        manager = NodeManager(settings, progress=ProgressReporter())
        run_cmd(manager, args)
    except OperationCancelled as exc:
        logger.warning("%s cancelled: %s", exc.stage or args.command, exc)
        return 130
    except KeyboardInterrupt:
        logger.warning("%s cancelled", args.command)
        return 130
    except NodeToolError as exc:
        logger.error("%s failed: %s", exc.stage or args.command, exc)
        return 1

    return 0


if __name__ == "__main__":
    sys.exit(main())
