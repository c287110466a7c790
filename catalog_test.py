"""Tests for catalog.py."""

from __future__ import annotations

import pytest

import catalog
from catalog import Asset, MemberFile, NotReady


def _files(*lengths: int) -> tuple[MemberFile, ...]:
    return tuple(
        MemberFile(index=i, name=f"file{i}.mkv", length=n, opener=lambda: None)
        for i, n in enumerate(lengths)
    )


@pytest.fixture(autouse=True)
def _reset_catalog():
    catalog.reset()
    yield
    catalog.reset()


class TestSelectFile:
    """Tests for select_file."""

    @pytest.mark.parametrize(
        "lengths,expected",
        [
            ((100,), 0),
            ((10, 300, 20), 1),
            ((500, 300, 20), 0),
            ((5, 6, 7, 8), 3),
            ((0, 0, 1), 2),
        ],
    )
    def test_picks_largest(self, lengths, expected):
        assert catalog.select_file(_files(*lengths)).index == expected

    def test_tie_goes_to_first(self):
        files = _files(10, 700, 50, 700, 700)
        assert catalog.select_file(files).index == 1

    def test_tie_is_stable_across_calls(self):
        files = _files(700, 700)
        picks = {catalog.select_file(files).index for _ in range(10)}
        assert picks == {0}

    def test_all_empty_files(self):
        assert catalog.select_file(_files(0, 0)).index == 0

    def test_empty_catalog_rejected(self):
        with pytest.raises(ValueError):
            catalog.select_file(())


class TestCatalogState:
    """Tests for publish/get_asset/resolve."""

    def test_not_ready_before_publish(self):
        assert catalog.is_ready() is False
        with pytest.raises(NotReady):
            catalog.get_asset()
        with pytest.raises(NotReady):
            catalog.resolve()

    def test_resolve_after_publish(self):
        assert catalog.publish(Asset("movie", _files(1, 9, 3))) is True
        assert catalog.is_ready() is True
        assert catalog.resolve().name == "file1.mkv"

    def test_publish_only_once(self):
        first = Asset("first", _files(1))
        assert catalog.publish(first) is True
        assert catalog.publish(Asset("second", _files(2))) is False
        assert catalog.get_asset() is first

    def test_reset(self):
        catalog.publish(Asset("movie", _files(1)))
        catalog.reset()
        assert catalog.is_ready() is False


class TestMemberFile:
    def test_open_calls_opener(self):
        sentinel = object()
        f = MemberFile(index=0, name="a", length=1, opener=lambda: sentinel)
        assert f.open() is sentinel

    def test_opener_not_in_equality(self):
        a = MemberFile(index=0, name="a", length=1, opener=lambda: 1)
        b = MemberFile(index=0, name="a", length=1, opener=lambda: 2)
        assert a == b


if __name__ == "__main__":
    from testing import run_tests

    run_tests(__file__)
