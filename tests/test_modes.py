"""
End-to-end tests for the lifecycle recipes with a fake node binary and
canned HTTP responses.
"""

import pytest

from node_lifecycle.errors import DataDirectoryBusy, NotFoundError, ProtocolError, SpawnError
from node_lifecycle.locking import lock_path_for
from node_lifecycle.models import RunState
from node_lifecycle.modes import NodeManager, stage
from node_lifecycle.supervisor import NodeSupervisor

READY = "INF indexed block events height=1"
HALT = "ERR CONSENSUS FAILURE!!! upgrade needed"
SNAP_URL = "http://x/snap.tar.lz4"
GENESIS_BODY = b'{"chain_id":"osmosis-1","from":"endpoint"}'
STATE_DB = b"\x00\x01chain state\xff" * 64


@pytest.fixture
def echoed():
    return []


@pytest.fixture
def manager(settings, echoed):
    return NodeManager(settings, supervisor=NodeSupervisor(echo=echoed.append))


@pytest.fixture
def snapshot_server(fake_http, response, make_snapshot, settings):
    archive = make_snapshot(
        {
            "config/genesis.json": b'{"from":"archive"}',
            "data/state.db": STATE_DB,
        }
    )
    fake_http.routes[settings.genesis_url] = response(GENESIS_BODY)
    fake_http.routes[settings.snapshot_index_url] = response(SNAP_URL.encode() + b"\n")
    fake_http.routes[SNAP_URL] = response(archive, headers={"Content-Length": str(len(archive))})
    return fake_http


def test_download_state(manager, settings, fake_node, snapshot_server):
    settings.binary = str(fake_node("osmosisd", []))
    settings.home.mkdir(parents=True)
    (settings.home / "stale.txt").write_text("left over from a previous run")
    progress = []
    manager.progress = lambda got, total: progress.append((got, total))

    manager.download_state()

    home = settings.home
    assert not (home / "stale.txt").exists()
    assert (home / "data" / "state.db").read_bytes() == STATE_DB
    assert (home / "config" / "config.toml").is_file()
    # genesis is written after extraction, so the endpoint wins over the archive copy
    assert (home / "config" / "genesis.json").read_bytes() == GENESIS_BODY
    assert snapshot_server.requested == [settings.genesis_url, settings.snapshot_index_url, SNAP_URL]
    assert progress[-1][0] == progress[-1][1]

    (call,) = fake_node.invocations()
    assert call == ["osmosisd", "init", "test", "--chain-id", "edgenet", "--home", str(home)]


def test_download_state_reports_stage(manager, settings, fake_node, snapshot_server, response):
    settings.binary = str(fake_node("osmosisd", []))
    snapshot_server.routes[settings.snapshot_index_url] = response(b"")

    with pytest.raises(ProtocolError) as excinfo:
        manager.download_state()

    assert excinfo.value.stage == "download"


def test_download_state_failed_init(manager, settings, tmp_path, snapshot_server):
    failing = tmp_path / "failing-osmosisd"
    failing.write_text("#!/bin/sh\nexit 1\n")
    failing.chmod(0o755)
    settings.binary = str(failing)

    with pytest.raises(SpawnError, match="init exited with status 1"):
        manager.download_state()

    assert snapshot_server.requested == []


def test_magic_start_from_backup(manager, settings, fake_node, echoed, tmp_path):
    node = fake_node("osmosisd", ["booting", READY, HALT], tail="exec sleep 30")
    settings.binary = str(node)
    (settings.backup_path / "config").mkdir(parents=True)
    (settings.backup_path / "config" / "genesis.json").write_text("{}")

    outcomes = manager.magic_start(download=False)

    assert (settings.home / "config" / "genesis.json").read_text() == "{}"
    assert [o.state for o in outcomes] == [RunState.STOPPED_KILLED, RunState.STOPPED_KILLED]
    assert [o.stopped_by for o in outcomes] == ["stop-on-sync", "consensus-failure"]
    assert echoed == ["booting", READY, "booting", READY, HALT]
    assert [call[1] for call in fake_node.invocations()] == ["start", "in-place-testnet"]


def test_magic_start_with_upgrade(manager, settings, fake_node, tmp_path):
    old = fake_node("osmosisd", [READY, HALT], tail="exec sleep 30")
    new = fake_node("osmosisd-v99", [READY])
    settings.binary = str(old)
    (settings.backup_path / "config").mkdir(parents=True)
    ready_log = tmp_path / "ready.log"

    outcomes = manager.magic_start(
        upgrade_handler="v99",
        new_binary=str(new),
        on_ready=f"echo ok >> '{ready_log}'",
    )

    assert len(outcomes) == 3
    assert [o.ready_fired for o in outcomes] == [False, False, True]
    assert ready_log.read_text().splitlines() == ["ok"]
    assert [call[0] for call in fake_node.invocations()] == ["osmosisd", "osmosisd", "osmosisd-v99"]


def test_magic_start_missing_backup_stops_before_node(manager, settings, fake_node):
    settings.binary = str(fake_node("osmosisd", [READY]))

    with pytest.raises(NotFoundError) as excinfo:
        manager.magic_start(download=False)

    assert excinfo.value.stage == "restore"
    assert fake_node.invocations() == []


def test_sync_with_missing_binary(manager, settings):
    settings.binary = "definitely-not-an-osmosisd-binary"

    with pytest.raises(SpawnError) as excinfo:
        manager.start_sync(stop_on_sync=True)

    assert excinfo.value.stage == "sync"


def test_standalone_uses_isolation_flags(manager, settings, fake_node):
    settings.binary = str(fake_node("osmosisd", ["serving"]))

    outcome = manager.start_standalone()

    assert outcome.state is RunState.STOPPED_NORMAL
    (call,) = fake_node.invocations()
    assert call[1:5] == ["start", "--home", str(settings.home), "--p2p.persistent_peers"]
    assert "--rpc.unsafe" in call


def test_backup_and_restore_default_paths(manager, settings):
    (settings.home / "data").mkdir(parents=True)
    (settings.home / "data" / "blocks.db").write_bytes(b"blocks")

    assert manager.backup() == settings.backup_path
    (settings.home / "data" / "blocks.db").write_bytes(b"changed")
    assert manager.restore() == settings.backup_path

    assert (settings.home / "data" / "blocks.db").read_bytes() == b"blocks"


def test_operations_hold_the_data_directory_lock(settings, monkeypatch):
    settings.use_lock = True
    (settings.home / "config").mkdir(parents=True)
    manager = NodeManager(settings)
    seen = []

    def fake_backup(source, dest):
        seen.append(lock_path_for(settings.home).exists())

    monkeypatch.setattr("node_lifecycle.modes.state.backup", fake_backup)

    manager.backup()

    assert seen == [True]
    assert not lock_path_for(settings.home).exists()


def test_busy_data_directory(settings, monkeypatch):
    settings.use_lock = True
    lock = lock_path_for(settings.home)
    lock.parent.mkdir(parents=True, exist_ok=True)
    lock.write_text("4242")
    monkeypatch.setattr("node_lifecycle.locking.psutil.pid_exists", lambda pid: True)

    with pytest.raises(DataDirectoryBusy) as excinfo:
        NodeManager(settings).backup()

    assert excinfo.value.stage == "backup"
    assert excinfo.value.pid == 4242


def test_innermost_stage_wins():
    with pytest.raises(NotFoundError) as excinfo:
        with stage("magic-start"):
            with stage("restore"):
                raise NotFoundError("missing")

    assert excinfo.value.stage == "restore"
