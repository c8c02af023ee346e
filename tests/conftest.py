import io
import tarfile
from pathlib import Path
from typing import Dict, Iterable, List, Optional

import lz4.frame
import pytest
import requests

from node_lifecycle import snapshot
from node_lifecycle.models import Settings

FAKE_NODE = """#!/bin/sh
(IFS='|'; echo "{name}|$*") >> "{calls}"
if [ "$1" = "init" ]; then
    mkdir -p "$6/config"
    printf '%s' '{{"from":"init"}}' > "$6/config/genesis.json"
    printf '%s' 'moniker = "test"' > "$6/config/config.toml"
    exit 0
fi
cat "{lines}"
{tail}
"""


class FakeNodeFactory:
    """Writes shell scripts standing in for the node binary."""

    def __init__(self, root: Path):
        self.root = root
        self.calls = root / "calls.log"

    def __call__(self, name: str, lines: Iterable[str], tail: str = "exit 0") -> Path:
        lines_file = self.root / f"{name}.lines"
        lines_file.write_text("".join(f"{line}\n" for line in lines), encoding="utf-8")
        script = self.root / name
        script.write_text(
            FAKE_NODE.format(name=name, calls=self.calls, lines=lines_file, tail=tail),
            encoding="utf-8",
        )
        script.chmod(0o755)
        return script

    def invocations(self) -> List[List[str]]:
        if not self.calls.exists():
            return []
        return [line.split("|") for line in self.calls.read_text(encoding="utf-8").splitlines()]


@pytest.fixture
def fake_node(tmp_path):
    bin_dir = tmp_path / "bin"
    bin_dir.mkdir()
    return FakeNodeFactory(bin_dir)


@pytest.fixture
def settings(tmp_path):
    return Settings(
        binary="osmosisd",
        home=tmp_path / "home",
        backup_path=tmp_path / "backup",
        genesis_url="http://x/genesis.json",
        snapshot_index_url="http://x/latest",
        use_lock=False,
    )


class FakeResponse:
    def __init__(
        self,
        body: bytes = b"",
        status: int = 200,
        headers: Optional[Dict[str, str]] = None,
        chunks: Optional[List[bytes]] = None,
    ):
        self.content = body
        self.status_code = status
        self.headers = headers if headers is not None else {}
        self._chunks = chunks

    @property
    def text(self) -> str:
        return self.content.decode("utf-8")

    def raise_for_status(self) -> None:
        if self.status_code >= 400:
            raise requests.HTTPError(f"{self.status_code} Error")

    def iter_content(self, chunk_size: int = 1):
        if self._chunks is not None:
            yield from self._chunks
            return
        for start in range(0, len(self.content), chunk_size):
            yield self.content[start:start + chunk_size]

    def __enter__(self):
        return self

    def __exit__(self, *exc_info):
        return False


class FakeHTTP:
    """Canned responses keyed by URL; anything else is a connection error."""

    def __init__(self):
        self.routes: Dict[str, object] = {}
        self.requested: List[str] = []

    def get(self, url, timeout=None, stream=False):
        self.requested.append(url)
        route = self.routes.get(url)
        if route is None:
            raise requests.ConnectionError(f"no route to {url}")
        if isinstance(route, BaseException):
            raise route
        return route


@pytest.fixture
def fake_http(monkeypatch):
    http = FakeHTTP()
    monkeypatch.setattr(snapshot.requests, "get", http.get)
    return http


@pytest.fixture
def response():
    return FakeResponse


@pytest.fixture
def make_snapshot():
    def build(files: Dict[str, bytes]) -> bytes:
        buf = io.BytesIO()
        with tarfile.open(fileobj=buf, mode="w") as archive:
            for name, data in files.items():
                info = tarfile.TarInfo(name)
                info.size = len(data)
                archive.addfile(info, io.BytesIO(data))
        return lz4.frame.compress(buf.getvalue())

    return build
