from __future__ import annotations

import enum
from dataclasses import dataclass, field, fields
from pathlib import Path
from typing import IO, Any, Dict, Optional, Tuple

LATEST_SNAPSHOT_FETCH_URL = "https://snapshots.osmosis.zone/latest"
GENESIS_URL = "https://github.com/osmosis-labs/osmosis/raw/main/networks/osmosis-1/genesis.json"

TESTNET_CHAIN_ID = "edgenet"
TESTNET_MONIKER = "test"
TESTNET_ADDRESS = "osmo12smx2wdlyttvyzvzg54y2vnqwq2qjateuf7thj"

READY_MARKER = "indexed block events"
CONSENSUS_FAILURE_MARKER = "CONSENSUS FAILURE!!!"


class MarkerAction(enum.Enum):
    STOP = "stop"
    READY = "ready"
    NONE = "none"


class RunState(enum.Enum):
    STARTING = "starting"
    RUNNING = "running"
    STOPPED_NORMAL = "stopped-normal"
    STOPPED_KILLED = "stopped-killed"
    STOPPED_CRASHED = "stopped-crashed"
    CANCELLED = "cancelled"


@dataclass(frozen=True, slots=True)
class Marker:
    """A substring searched for in every node output line."""

    name: str
    pattern: str
    action: MarkerAction

    def matches(self, line: str) -> bool:
        return self.pattern in line


@dataclass(slots=True)
class RunOutcome:
    """Summary of one supervised node run."""

    binary: str
    args: Tuple[str, ...]
    state: RunState
    returncode: Optional[int] = None
    ready_fired: bool = False
    stopped_by: Optional[str] = None
    lines_seen: int = 0


@dataclass(slots=True)
class SnapshotTransfer:
    """An in-flight or finished snapshot download backed by a temporary file."""

    url: str
    total_bytes: int
    handle: IO[bytes]
    received_bytes: int = 0

    def advance(self, size: int) -> None:
        self.received_bytes += size

    def close(self) -> None:
        self.handle.close()

    def __enter__(self) -> "SnapshotTransfer":
        return self

    def __exit__(self, *exc_info: Any) -> None:
        self.close()


def _default_home() -> Path:
    return Path.home() / ".osmosisd"


def _default_backup() -> Path:
    return Path.home() / ".osmosisd_bak"


@dataclass(slots=True)
class Settings:
    """Every tunable of the tool; defaults mirror the public Osmosis endpoints."""

    binary: str = "osmosisd"
    home: Path = field(default_factory=_default_home)
    backup_path: Path = field(default_factory=_default_backup)
    genesis_url: str = GENESIS_URL
    snapshot_index_url: str = LATEST_SNAPSHOT_FETCH_URL
    chain_id: str = TESTNET_CHAIN_ID
    moniker: str = TESTNET_MONIKER
    testnet_address: str = TESTNET_ADDRESS
    ready_marker: str = READY_MARKER
    consensus_failure_marker: str = CONSENSUS_FAILURE_MARKER
    connect_timeout: float = 10.0
    read_timeout: float = 60.0
    chunk_size: int = 64 * 1024
    use_lock: bool = True

    _PATH_FIELDS = ("home", "backup_path")

    @property
    def http_timeout(self) -> Tuple[float, float]:
        return (self.connect_timeout, self.read_timeout)

    @staticmethod
    def field_names() -> Tuple[str, ...]:
        return tuple(f.name for f in fields(Settings))

    @staticmethod
    def from_dict(data: Dict[str, Any]) -> "Settings":
        settings = Settings()
        settings.update(data)
        return settings

    def update(self, data: Dict[str, Any]) -> None:
        for key, value in data.items():
            if value is None:
                continue
            if key in Settings._PATH_FIELDS:
                value = Path(value).expanduser()
            setattr(self, key, value)
