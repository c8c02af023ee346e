"""
Named lifecycle recipes composed from the snapshot pipeline, the directory
state manager and the process supervisor.
"""

from __future__ import annotations

import logging
import subprocess
from contextlib import contextmanager
from pathlib import Path
from typing import Iterator, List, Optional

from . import markers as node_markers
from . import snapshot, state
from .errors import NodeToolError, SpawnError
from .locking import DataDirectoryLock
from .models import RunOutcome, Settings
from .snapshot import ProgressCallback
from .supervisor import NodeSupervisor, resolve_binary

logger = logging.getLogger(__name__)


@contextmanager
def stage(name: str) -> Iterator[None]:
    """
    Attribute any ``NodeToolError`` raised inside the block to ``name``.
    The innermost stage wins.
    """
    try:
        yield
    except NodeToolError as exc:
        if exc.stage is None:
            exc.stage = name
        raise


class NodeManager:
    def __init__(
        self,
        settings: Settings,
        supervisor: Optional[NodeSupervisor] = None,
        progress: Optional[ProgressCallback] = None,
    ) -> None:
        self.settings = settings
        self.supervisor = supervisor or NodeSupervisor()
        self.progress = progress
        self._lock = DataDirectoryLock(settings.home)

    @contextmanager
    def _operation(self, name: str) -> Iterator[None]:
        acquired = False
        with stage(name):
            if self.settings.use_lock and not self._lock.held:
                self._lock.acquire()
                acquired = True
            try:
                yield
            finally:
                if acquired:
                    self._lock.release()

    def _binary(self) -> str:
        return resolve_binary(self.settings.binary)

    def init_home(self) -> None:
        binary = self._binary()
        args = node_markers.init_args(self.settings)
        logger.info("Initializing chain %s in %s", self.settings.chain_id, self.settings.home)
        try:
            result = subprocess.run([binary, *args], stderr=subprocess.DEVNULL)
        except OSError as exc:
            raise SpawnError(f"Failed to initialize chain: {exc}") from exc
        if result.returncode != 0:
            raise SpawnError(
                f"{self.settings.binary} init exited with status {result.returncode}",
                context={"returncode": result.returncode},
            )

    def download_state(self) -> None:
        """
        Wipe the data directory, initialize it and lay the latest snapshot
        over it. The genesis file is written last so the genesis endpoint
        wins over any copy carried inside the archive.
        """
        settings = self.settings
        with self._operation("download"):
            self._binary()
            state.remove_tree(settings.home)
            self.init_home()

            genesis = snapshot.fetch_genesis(settings.genesis_url, timeout=settings.http_timeout)
            snapshot_url = snapshot.resolve_snapshot_url(settings.snapshot_index_url, timeout=settings.http_timeout)
            with snapshot.download_snapshot(
                snapshot_url,
                progress=self.progress,
                chunk_size=settings.chunk_size,
                timeout=settings.http_timeout,
            ) as transfer:
                snapshot.extract_snapshot(transfer, settings.home)
            snapshot.write_genesis(genesis, settings.home)

    def backup(self, path: Optional[Path] = None) -> Path:
        dest = Path(path) if path else self.settings.backup_path
        with self._operation("backup"):
            state.backup(self.settings.home, dest)
        return dest

    def restore(self, path: Optional[Path] = None) -> Path:
        source = Path(path) if path else self.settings.backup_path
        with self._operation("restore"):
            state.restore(source, self.settings.home)
        return source

    def start_sync(self, stop_on_sync: bool = False, on_ready: Optional[str] = None) -> RunOutcome:
        with self._operation("sync"):
            binary = self._binary()
            return self.supervisor.run(
                binary,
                node_markers.start_args(self.settings.home),
                node_markers.sync_markers(self.settings, stop_on_sync, with_ready=on_ready is not None),
                on_ready=on_ready,
            )

    def start_testnet(
        self,
        upgrade_handler: Optional[str] = None,
        new_binary: Optional[str] = None,
        on_ready: Optional[str] = None,
    ) -> List[RunOutcome]:
        with self._operation("testnet"):
            self._binary()
            if new_binary and upgrade_handler:
                new_binary = resolve_binary(new_binary)
            return self.supervisor.run_testnet(
                self.settings,
                upgrade_handler=upgrade_handler,
                new_binary=new_binary,
                on_ready=on_ready,
            )

    def start_standalone(self, on_ready: Optional[str] = None) -> RunOutcome:
        with self._operation("standalone"):
            binary = self._binary()
            return self.supervisor.run(
                binary,
                node_markers.isolated_start_args(self.settings.home),
                node_markers.standalone_markers(self.settings, with_ready=on_ready is not None),
                on_ready=on_ready,
            )

    def magic_start(
        self,
        download: bool = False,
        backup_path: Optional[Path] = None,
        upgrade_handler: Optional[str] = None,
        new_binary: Optional[str] = None,
        on_ready: Optional[str] = None,
    ) -> List[RunOutcome]:
        """
        Prepare state (download or restore), sync to the first indexed block,
        then start the in-place testnet.
        """
        with self._operation("magic-start"):
            if download:
                self.download_state()
            else:
                self.restore(backup_path)

            outcomes = [self.start_sync(stop_on_sync=True)]
            outcomes += self.start_testnet(upgrade_handler, new_binary, on_ready)
        return outcomes
