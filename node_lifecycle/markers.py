"""
Node command lines and per-mode marker tables.

Each run mode is described by the arguments handed to the node binary and a
table of markers evaluated, in order, against every output line.
"""

from __future__ import annotations

from pathlib import Path
from typing import List, Optional, Tuple

from .models import Marker, MarkerAction, Settings

MarkerTable = Tuple[Marker, ...]

ISOLATION_FLAGS: Tuple[str, ...] = (
    "--p2p.persistent_peers",
    "",
    "--p2p.seeds",
    "",
    "--rpc.unsafe",
    "--grpc.enable",
    "--grpc-web.enable",
)


def init_args(settings: Settings) -> List[str]:
    return ["init", settings.moniker, "--chain-id", settings.chain_id, "--home", str(settings.home)]


def start_args(home: Path) -> List[str]:
    return ["start", "--home", str(home)]


def isolated_start_args(home: Path) -> List[str]:
    return start_args(home) + list(ISOLATION_FLAGS)


def in_place_testnet_args(settings: Settings, upgrade_handler: Optional[str] = None) -> List[str]:
    args = [
        "in-place-testnet",
        settings.chain_id,
        settings.testnet_address,
        "--home",
        str(settings.home),
    ]
    if upgrade_handler:
        args += ["--trigger-testnet-upgrade", upgrade_handler]
    return args


def ready_marker(settings: Settings) -> Marker:
    return Marker("ready", settings.ready_marker, MarkerAction.READY)


def stop_on_sync_marker(settings: Settings) -> Marker:
    return Marker("stop-on-sync", settings.ready_marker, MarkerAction.STOP)


def consensus_failure_marker(settings: Settings) -> Marker:
    return Marker("consensus-failure", settings.consensus_failure_marker, MarkerAction.STOP)


def sync_markers(settings: Settings, stop_on_sync: bool, with_ready: bool) -> MarkerTable:
    table: List[Marker] = []
    if with_ready:
        table.append(ready_marker(settings))
    if stop_on_sync:
        table.append(stop_on_sync_marker(settings))
    return tuple(table)


def testnet_markers(settings: Settings, with_ready: bool) -> MarkerTable:
    table: List[Marker] = []
    if with_ready:
        table.append(ready_marker(settings))
    table.append(consensus_failure_marker(settings))
    return tuple(table)


def standalone_markers(settings: Settings, with_ready: bool) -> MarkerTable:
    return (ready_marker(settings),) if with_ready else ()
