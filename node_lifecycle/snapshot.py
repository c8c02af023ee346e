"""
Genesis and snapshot acquisition.

The snapshot is an lz4 frame wrapping a tar archive. It is streamed to an
anonymous temporary file while progress is reported, then decompressed and
unpacked on top of the layout created by the node's ``init`` command.
"""

from __future__ import annotations

import logging
import tarfile
import tempfile
from pathlib import Path
from typing import Callable, Optional, Tuple, Union
from urllib.parse import urlparse

import lz4.frame
import requests

from .errors import FilesystemError, FormatError, NetworkError, NetworkTimeoutError, ProtocolError
from .models import SnapshotTransfer

logger = logging.getLogger(__name__)

ProgressCallback = Callable[[int, int], None]
Timeout = Union[float, Tuple[float, float]]

DEFAULT_TIMEOUT: Tuple[float, float] = (10.0, 60.0)
DEFAULT_CHUNK_SIZE = 64 * 1024


def _get(url: str, timeout: Timeout, stream: bool = False) -> requests.Response:
    try:
        resp = requests.get(url, timeout=timeout, stream=stream)
        resp.raise_for_status()
    except requests.Timeout as exc:
        raise NetworkTimeoutError(f"Timed out fetching {url}", context={"url": url}) from exc
    except requests.RequestException as exc:
        raise NetworkError(f"Failed to fetch {url}: {exc}", context={"url": url}) from exc
    return resp


def fetch_genesis(url: str, timeout: Timeout = DEFAULT_TIMEOUT) -> bytes:
    resp = _get(url, timeout)
    logger.info("Fetched genesis file (%d bytes) from %s", len(resp.content), url)
    return resp.content


def write_genesis(content: bytes, home: Path) -> Path:
    target = Path(home) / "config" / "genesis.json"
    try:
        target.parent.mkdir(parents=True, exist_ok=True)
        target.write_bytes(content)
    except OSError as exc:
        raise FilesystemError(f"Failed to write genesis file {target}: {exc}") from exc
    logger.info("Wrote genesis file to %s", target)
    return target


def resolve_snapshot_url(index_url: str, timeout: Timeout = DEFAULT_TIMEOUT) -> str:
    """
    Return the snapshot artifact URL advertised by the index endpoint.

    The endpoint body is a single URL; surrounding whitespace is ignored.
    """
    resp = _get(index_url, timeout)
    url = (resp.text or "").strip()
    if not url:
        raise ProtocolError(f"Snapshot index {index_url} returned an empty body")
    parsed = urlparse(url)
    if parsed.scheme not in ("http", "https") or not parsed.netloc:
        raise ProtocolError(
            f"Snapshot index {index_url} did not return an absolute URL: {url!r}",
            context={"body": url[:200]},
        )
    logger.info("Latest snapshot: %s", url)
    return url


def _content_length(resp: requests.Response, url: str) -> int:
    raw = resp.headers.get("Content-Length")
    if raw is None:
        raise ProtocolError(f"Failed to get snapshot size from response for {url}")
    try:
        total = int(raw)
    except ValueError as exc:
        raise ProtocolError(f"Invalid Content-Length {raw!r} for {url}") from exc
    if total < 0:
        raise ProtocolError(f"Invalid Content-Length {raw!r} for {url}")
    return total


def download_snapshot(
    url: str,
    progress: Optional[ProgressCallback] = None,
    chunk_size: int = DEFAULT_CHUNK_SIZE,
    timeout: Timeout = DEFAULT_TIMEOUT,
) -> SnapshotTransfer:
    """
    Stream the snapshot at ``url`` into a temporary file.

    The caller owns the returned transfer and must close it. The transfer is
    complete when the body ends, and a body shorter than the declared length
    is rejected as truncated.
    """
    with _get(url, timeout, stream=True) as resp:
        total = _content_length(resp, url)

        try:
            handle = tempfile.TemporaryFile()
        except OSError as exc:
            raise FilesystemError(f"Failed to create temporary file: {exc}") from exc
        transfer = SnapshotTransfer(url=url, total_bytes=total, handle=handle)

        try:
            chunks = resp.iter_content(chunk_size)
            while True:
                try:
                    chunk = next(chunks)
                except StopIteration:
                    break
                except requests.Timeout as exc:
                    raise NetworkTimeoutError(f"Timed out downloading {url}") from exc
                except requests.RequestException as exc:
                    raise NetworkError(f"Failed to download chunk: {exc}") from exc
                if not chunk:
                    continue
                try:
                    handle.write(chunk)
                except OSError as exc:
                    raise FilesystemError(f"Failed to write chunk to temporary file: {exc}") from exc
                transfer.advance(len(chunk))
                if progress is not None:
                    progress(transfer.received_bytes, total)
        except BaseException:
            transfer.close()
            raise

    if transfer.received_bytes < total:
        transfer.close()
        raise ProtocolError(
            f"Snapshot stream ended after {transfer.received_bytes} of {total} bytes",
            context={"received": transfer.received_bytes, "total": total},
        )

    logger.info("Downloaded %d bytes from %s", transfer.received_bytes, url)
    return transfer


def extract_snapshot(transfer: SnapshotTransfer, dest: Path) -> None:
    """
    Decompress (lz4) and unpack (tar) the downloaded snapshot into ``dest``.

    A failure leaves ``dest`` partially populated; nothing is rolled back.
    """
    handle = transfer.handle
    try:
        handle.seek(0)
    except OSError as exc:
        raise FilesystemError(f"Failed to seek to start of temporary file: {exc}") from exc

    try:
        with lz4.frame.LZ4FrameFile(handle, mode="rb") as decoder:
            with tarfile.open(fileobj=decoder, mode="r|") as archive:
                archive.extractall(path=dest, filter="tar")
    except (tarfile.TarError, RuntimeError, EOFError) as exc:
        raise FormatError(f"Failed to extract snapshot: {exc}") from exc
    except OSError as exc:
        raise FilesystemError(f"Failed to extract snapshot into {dest}: {exc}") from exc

    logger.info("Extracted snapshot into %s", dest)
