"""Tests for torrent.py with a fake libtorrent."""

from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
from typing import Any
from unittest.mock import MagicMock, patch

import threading
import time

import pytest

import catalog
from source_reader import SourceUnavailable


with patch.dict("sys.modules", {"libtorrent": MagicMock()}):
    import torrent

PIECE_LENGTH = 16
PAD_FLAG = 1


@dataclass
class FakePeerRequest:
    piece: int
    start: int
    length: int


class FakeFiles:
    def __init__(self, entries: list[tuple[str, int, int]]) -> None:
        self.entries = entries

    def num_files(self) -> int:
        return len(self.entries)

    def file_path(self, i: int) -> str:
        return self.entries[i][0]

    def file_size(self, i: int) -> int:
        return self.entries[i][1]

    def file_flags(self, i: int) -> int:
        return self.entries[i][2]

    def file_offset(self, i: int) -> int:
        return sum(size for _, size, _ in self.entries[:i])


class FakeInfo:
    """Torrent metadata laid out over PIECE_LENGTH-byte pieces."""

    def __init__(self, name: str, files: dict[str, bytes], pad: dict[str, int] | None = None):
        self._name = name
        entries = []
        payload = bytearray()
        for path, data in files.items():
            entries.append((path, len(data), 0))
            payload.extend(data)
            if pad and path in pad:
                entries.append((f".pad/{pad[path]}", pad[path], PAD_FLAG))
                payload.extend(bytes(pad[path]))
        self._files = FakeFiles(entries)
        self.payload = bytes(payload)

    def name(self) -> str:
        return self._name

    def files(self) -> FakeFiles:
        return self._files

    def num_pieces(self) -> int:
        return -(-len(self.payload) // PIECE_LENGTH)

    def piece(self, piece: int) -> bytes:
        return self.payload[piece * PIECE_LENGTH : (piece + 1) * PIECE_LENGTH]

    def map_file(self, index: int, offset: int, size: int) -> FakePeerRequest:
        absolute = self._files.file_offset(index) + offset
        return FakePeerRequest(absolute // PIECE_LENGTH, absolute % PIECE_LENGTH, size)


class FakeAlert:
    def __init__(self, kind: str, **attrs: Any) -> None:
        self.kind = kind
        self.error = MagicMock()
        self.error.value.return_value = attrs.pop("error_code", 0)
        for key, value in attrs.items():
            setattr(self, key, value)

    def what(self) -> str:
        return self.kind

    def message(self) -> str:
        return f"{self.kind}: {getattr(self, 'text', '')}"


class FakeHandle:
    """torrent_handle that answers read_piece synchronously."""

    def __init__(self, info: FakeInfo | None) -> None:
        self.info = info
        self.source: torrent.TorrentSource | None = None
        self.available = True
        self.priorities: list[int] | None = None
        self.deadlines: dict[int, int] = {}
        self.reads: list[int] = []
        self.set_flags = MagicMock()

    def torrent_file(self) -> FakeInfo | None:
        return self.info

    def prioritize_files(self, priorities: list[int]) -> None:
        self.priorities = priorities

    def set_piece_deadline(self, piece: int, deadline: int) -> None:
        self.deadlines[piece] = deadline

    def have_piece(self, piece: int) -> bool:
        return self.available

    def read_piece(self, piece: int) -> None:
        self.reads.append(piece)
        assert self.source is not None and self.info is not None
        self.source._handle_alert(
            FakeAlert("read_piece", piece=piece, buffer=self.info.piece(piece))
        )

    def status(self) -> Any:
        return MagicMock(state="downloading", progress=0.5, download_rate=10, upload_rate=1, num_peers=3)


def _fake_lt(handle: FakeHandle) -> MagicMock:
    lt = MagicMock()
    lt.file_storage.flag_pad_file = PAD_FLAG
    session = MagicMock()
    session.wait_for_alert.side_effect = lambda ms: time.sleep(0.01)
    session.pop_alerts.return_value = []
    session.add_torrent.return_value = handle
    lt.session.return_value = session
    return lt


FILES = {
    "Show/sample.mkv": b"s" * 20,
    "Show/movie.mkv": bytes(range(100)),
    "Show/info.nfo": b"nfo",
}


@pytest.fixture(autouse=True)
def clean_catalog():
    catalog.reset()
    yield
    catalog.reset()


@pytest.fixture
def make_source(tmp_path: Path):
    """Build a TorrentSource over a fake libtorrent; closes it afterwards."""
    sources: list[torrent.TorrentSource] = []
    patchers: list[Any] = []

    def _make(info: FakeInfo | None, descriptor: str = "movie.torrent"):
        handle = FakeHandle(info)
        lt = _fake_lt(handle)
        patcher = patch.object(torrent, "lt", lt)
        patcher.start()
        patchers.append(patcher)
        source = torrent.TorrentSource(descriptor, tmp_path / "downloads")
        handle.source = source
        sources.append(source)
        return source, handle, lt

    try:
        yield _make
    finally:
        for source in sources:
            source.close()
        for patcher in patchers:
            patcher.stop()


# =============================================================================
# Catalog Publishing
# =============================================================================


class TestCatalog:
    def test_publishes_when_metadata_known(self, make_source, tmp_path):
        source, handle, lt = make_source(FakeInfo("Show", FILES))
        source.start()

        asset = catalog.get_asset()
        assert asset.name == "Show"
        assert [f.name for f in asset.files] == list(FILES)
        assert catalog.resolve().name == "Show/movie.mkv"
        assert catalog.resolve().length == 100
        assert (tmp_path / "downloads").is_dir()
        handle.set_flags.assert_called_once_with(lt.torrent_flags.sequential_download)

    def test_pad_files_skipped(self, make_source):
        info = FakeInfo("Show", FILES, pad={"Show/sample.mkv": 12})
        source, _, _ = make_source(info)
        source.start()

        files = catalog.get_asset().files
        assert all(not f.name.startswith(".pad") for f in files)
        # Indices stay the torrent's own file indices
        assert [f.index for f in files] == [0, 2, 3]

    def test_magnet_waits_for_metadata(self, make_source):
        info = FakeInfo("Show", FILES)
        source, handle, lt = make_source(None, descriptor="magnet:?xt=urn:btih:abc")
        source.start()

        lt.parse_magnet_uri.assert_called_once_with("magnet:?xt=urn:btih:abc")
        assert catalog.is_ready() is False

        handle.info = info
        source._handle_alert(FakeAlert("metadata_received", handle=handle))
        assert catalog.resolve().name == "Show/movie.mkv"

    def test_url_descriptor_downloads_torrent_file(self, make_source):
        source, _, lt = make_source(FakeInfo("Show", FILES), descriptor="https://example.com/a.torrent")
        with patch.object(torrent, "fetch_bytes", return_value=b"d4:infod...ee") as fetch:
            source.start()
        fetch.assert_called_once()
        assert fetch.call_args.args[0] == "https://example.com/a.torrent"
        lt.bdecode.assert_called_once_with(b"d4:infod...ee")

    def test_status_before_start(self, make_source):
        source, _, _ = make_source(None)
        assert source.status() == {"state": "stopped"}

    def test_status_reports_progress(self, make_source):
        source, _, _ = make_source(FakeInfo("Show", FILES))
        source.start()
        status = source.status()
        assert status["progress"] == 0.5
        assert status["num_peers"] == 3
        assert status["error"] is None


# =============================================================================
# Reading
# =============================================================================


class TestRead:
    def test_reads_file_sequentially(self, make_source):
        source, handle, _ = make_source(FakeInfo("Show", FILES))
        source.start()

        stream = catalog.resolve().open()
        data = bytearray()
        while chunk := stream.read(32):
            data.extend(chunk)
        assert bytes(data) == FILES["Show/movie.mkv"]
        # Reads never spill into the next file
        assert stream.read(32) == b""

    def test_open_prioritizes_only_selected_file(self, make_source):
        source, handle, _ = make_source(FakeInfo("Show", FILES))
        source.start()
        source.open_file(1)
        assert handle.priorities == [0, torrent._TOP_PRIORITY, 0]

    def test_read_sets_deadlines_ahead(self, make_source):
        source, handle, _ = make_source(FakeInfo("Show", FILES))
        source.start()
        source.open_file(1).read(4)
        # movie.mkv starts in piece 1
        assert handle.deadlines[1] < handle.deadlines[2]

    def test_open_before_metadata(self, make_source):
        source, _, _ = make_source(None, descriptor="magnet:?xt=urn:btih:abc")
        source.start()
        with pytest.raises(catalog.NotReady):
            source.open_file(0)

    def test_open_bad_index(self, make_source):
        source, _, _ = make_source(FakeInfo("Show", FILES))
        source.start()
        with pytest.raises(IndexError):
            source.open_file(7)

    def test_torrent_error_fails_reads(self, make_source):
        source, _, _ = make_source(FakeInfo("Show", FILES))
        source.start()
        stream = source.open_file(1)
        source._handle_alert(FakeAlert("torrent_error", text="disk full"))
        with pytest.raises(SourceUnavailable, match="disk full"):
            stream.read(16)

    def test_failed_piece_read_is_logged_not_stored(self, make_source):
        source, _, _ = make_source(FakeInfo("Show", FILES))
        source.start()
        source._handle_alert(FakeAlert("read_piece", piece=1, buffer=b"junk", error_code=5))
        assert source._piece_data == {}


class TestUnblock:
    def _blocked_read(self, stream) -> tuple[threading.Thread, list[BaseException]]:
        errors: list[BaseException] = []

        def _read():
            try:
                stream.read(16)
            except BaseException as e:
                errors.append(e)

        t = threading.Thread(target=_read)
        t.start()
        return t, errors

    def test_close_source_unblocks_reader(self, make_source):
        source, handle, _ = make_source(FakeInfo("Show", FILES))
        source.start()
        handle.available = False
        stream = source.open_file(1)
        t, errors = self._blocked_read(stream)
        time.sleep(0.1)
        assert t.is_alive()

        start = time.monotonic()
        source.close()
        t.join(timeout=2)
        assert not t.is_alive()
        assert time.monotonic() - start < 1.0
        assert isinstance(errors[0], SourceUnavailable)

    def test_close_stream_unblocks_reader(self, make_source):
        source, handle, _ = make_source(FakeInfo("Show", FILES))
        source.start()
        handle.available = False
        stream = source.open_file(1)
        t, errors = self._blocked_read(stream)
        time.sleep(0.1)

        stream.close()
        t.join(timeout=2)
        assert not t.is_alive()
        assert isinstance(errors[0], SourceUnavailable)
        assert source._piece_waiters == {}

    def test_piece_finished_retries_read(self, make_source):
        source, handle, _ = make_source(FakeInfo("Show", FILES))
        source.start()
        handle.available = False
        stream = source.open_file(1)
        result: list[bytes] = []
        t = threading.Thread(target=lambda: result.append(stream.read(4)))
        t.start()
        time.sleep(0.1)

        handle.available = True
        source._handle_alert(FakeAlert("piece_finished", piece=1))
        t.join(timeout=2)
        assert result == [FILES["Show/movie.mkv"][:4]]


if __name__ == "__main__":
    from testing import run_tests

    run_tests(__file__)
