"""libtorrent content source: catalog publishing and sequential file handles."""

from __future__ import annotations

from typing import Any

import functools
import logging
import pathlib
import threading
import time

import libtorrent as lt

import catalog
from catalog import Asset, MemberFile
from source_reader import SourceUnavailable
from util import fetch_bytes, is_http_url


log = logging.getLogger(__name__)

# Timing constants
_ALERT_WAIT_MS = 500
_PIECE_WAIT_SLICE_SEC = 0.5
_READ_PIECE_RETRY_SEC = 10.0
_PIECE_DEADLINE_MS = 1_000  # deadline step per piece ahead of the reader

_READAHEAD_PIECES = 8
_TOP_PRIORITY = 7
_MAX_TORRENT_FILE_BYTES = 10 * 1024 * 1024


class TorrentSource:
    """Owns one libtorrent session and the torrent being streamed.

    An alert pump thread publishes the catalog once metadata is known and
    hands finished piece reads to waiting TorrentFileStreams.
    """

    def __init__(
        self,
        descriptor: str,
        save_path: str | pathlib.Path,
        listen_interfaces: str = "0.0.0.0:6881,[::]:6881",
    ) -> None:
        self.descriptor = descriptor
        self.save_path = pathlib.Path(save_path)
        self.listen_interfaces = listen_interfaces
        self._session: Any = None
        self._handle: Any = None
        self._info: Any = None
        self._cond = threading.Condition()
        self._piece_data: dict[int, bytes] = {}
        self._piece_waiters: dict[int, int] = {}
        self._error: str | None = None
        self._closed = False
        self._pump: threading.Thread | None = None

    # -----------------------------------------------------------------------
    # Lifecycle
    # -----------------------------------------------------------------------

    def _load_params(self) -> Any:
        if self.descriptor.startswith("magnet:"):
            return lt.parse_magnet_uri(self.descriptor)
        params = lt.add_torrent_params()
        if is_http_url(self.descriptor):
            data = fetch_bytes(self.descriptor, _MAX_TORRENT_FILE_BYTES)
            params.ti = lt.torrent_info(lt.bdecode(data))
        else:
            params.ti = lt.torrent_info(str(pathlib.Path(self.descriptor).expanduser()))
        return params

    def start(self) -> None:
        """Add the torrent and start the alert pump. Metadata may arrive later."""
        self.save_path.mkdir(parents=True, exist_ok=True)
        category = lt.alert.category_t
        self._session = lt.session(
            {
                "listen_interfaces": self.listen_interfaces,
                "alert_mask": (
                    category.error_notification
                    | category.status_notification
                    | category.storage_notification
                    | category.piece_progress_notification
                ),
            }
        )
        params = self._load_params()
        params.save_path = str(self.save_path)
        self._handle = self._session.add_torrent(params)
        self._handle.set_flags(lt.torrent_flags.sequential_download)
        log.info("Added torrent %s (saving to %s)", self.descriptor[:80], self.save_path)

        info = self._handle.torrent_file()
        if info is not None:
            self._on_metadata(info)

        self._pump = threading.Thread(target=self._pump_alerts, name="torrent-alerts", daemon=True)
        self._pump.start()

    def close(self) -> None:
        """Stop the pump, wake all readers and pause the session. Idempotent."""
        with self._cond:
            if self._closed:
                return
            self._closed = True
            self._cond.notify_all()
        if self._pump is not None:
            self._pump.join(timeout=2 * _ALERT_WAIT_MS / 1000)
        if self._session is not None:
            self._session.pause()
        log.info("Torrent source closed")

    # -----------------------------------------------------------------------
    # Alerts
    # -----------------------------------------------------------------------

    def _pump_alerts(self) -> None:
        while not self._closed:
            self._session.wait_for_alert(_ALERT_WAIT_MS)
            for alert in self._session.pop_alerts():
                try:
                    self._handle_alert(alert)
                except Exception as e:
                    log.warning("Error handling libtorrent alert %s: %s", alert.what(), e)

    def _handle_alert(self, alert: Any) -> None:
        kind = alert.what()
        if kind == "read_piece":
            with self._cond:
                if alert.error.value():
                    log.warning("Failed to read piece %d: %s", alert.piece, alert.error.message())
                elif alert.piece in self._piece_waiters:
                    self._piece_data[alert.piece] = bytes(alert.buffer)
                self._cond.notify_all()
        elif kind == "piece_finished":
            with self._cond:
                self._cond.notify_all()
        elif kind == "metadata_received":
            self._on_metadata(alert.handle.torrent_file())
        elif kind in ("torrent_error", "file_error"):
            log.error("Torrent error: %s", alert.message())
            with self._cond:
                self._error = alert.message()
                self._cond.notify_all()
        else:
            log.debug("libtorrent: %s", alert.message())

    def _on_metadata(self, info: Any) -> None:
        files = info.files()
        pad_flag = lt.file_storage.flag_pad_file
        members = tuple(
            MemberFile(
                index=i,
                name=files.file_path(i),
                length=files.file_size(i),
                opener=functools.partial(self.open_file, i),
            )
            for i in range(files.num_files())
            if not files.file_flags(i) & pad_flag
        )
        with self._cond:
            self._info = info
        catalog.publish(Asset(name=info.name(), files=members))

    # -----------------------------------------------------------------------
    # Reading
    # -----------------------------------------------------------------------

    def _check(self, stream: TorrentFileStream | None = None) -> None:
        if self._closed:
            raise SourceUnavailable("Torrent source closed")
        if self._error:
            raise SourceUnavailable(self._error)
        if stream is not None and stream.closed:
            raise SourceUnavailable(f"Stream for file {stream.index} closed")

    def open_file(self, index: int) -> TorrentFileStream:
        """Focus downloading on one file and return a sequential handle for it."""
        with self._cond:
            self._check()
            info = self._info
        if info is None:
            raise catalog.NotReady("Torrent metadata not loaded yet")
        num_files = info.files().num_files()
        if not 0 <= index < num_files:
            raise IndexError(f"File index {index} out of range ({num_files} files)")
        priorities = [0] * num_files
        priorities[index] = _TOP_PRIORITY
        self._handle.prioritize_files(priorities)
        return TorrentFileStream(self, info, index, info.files().file_size(index))

    def _prioritize_window(self, piece: int) -> None:
        last = self._info.num_pieces()
        for i, p in enumerate(range(piece, min(piece + _READAHEAD_PIECES, last))):
            self._handle.set_piece_deadline(p, _PIECE_DEADLINE_MS * (i + 1))

    def read_piece(self, piece: int, stream: TorrentFileStream) -> bytes:
        """Block until piece is downloaded and read back. Raises SourceUnavailable."""
        self._prioritize_window(piece)
        with self._cond:
            self._piece_waiters[piece] = self._piece_waiters.get(piece, 0) + 1
            try:
                requested_at: float | None = None
                while True:
                    self._check(stream)
                    data = self._piece_data.get(piece)
                    if data is not None:
                        return data
                    now = time.monotonic()
                    if (
                        requested_at is None or now - requested_at > _READ_PIECE_RETRY_SEC
                    ) and self._handle.have_piece(piece):
                        self._handle.read_piece(piece)
                        requested_at = now
                        continue
                    self._cond.wait(timeout=_PIECE_WAIT_SLICE_SEC)
            finally:
                self._piece_waiters[piece] -= 1
                if not self._piece_waiters[piece]:
                    del self._piece_waiters[piece]
                    self._piece_data.pop(piece, None)

    def wake(self) -> None:
        with self._cond:
            self._cond.notify_all()

    def status(self) -> dict[str, Any]:
        """Download progress for the status page."""
        if self._handle is None:
            return {"state": "stopped"}
        s = self._handle.status()
        return {
            "state": str(s.state),
            "progress": round(s.progress, 4),
            "download_rate": s.download_rate,
            "upload_rate": s.upload_rate,
            "num_peers": s.num_peers,
            "error": self._error,
        }


class TorrentFileStream:
    """Blocking sequential reader over one file of the torrent."""

    def __init__(self, source: TorrentSource, info: Any, index: int, length: int) -> None:
        self._source = source
        self._info = info
        self.index = index
        self.length = length
        self.closed = False
        self._pos = 0
        self._cached_piece: int | None = None
        self._cached_data = b""

    def _piece(self, piece: int) -> bytes:
        if piece != self._cached_piece:
            self._cached_data = self._source.read_piece(piece, self)
            self._cached_piece = piece
        return self._cached_data

    def read(self, size: int) -> bytes:
        remaining = self.length - self._pos
        if self.closed or remaining <= 0 or size <= 0:
            return b""
        req = self._info.map_file(self.index, self._pos, min(size, remaining))
        data = self._piece(req.piece)
        chunk = data[req.start : req.start + min(size, remaining, len(data) - req.start)]
        self._pos += len(chunk)
        return chunk

    def close(self) -> None:
        if self.closed:
            return
        self.closed = True
        self._cached_data = b""
        self._source.wake()
