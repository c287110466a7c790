"""Asset catalog: member files, file selection, and process-wide catalog state."""

from __future__ import annotations

from collections.abc import Callable, Sequence
from dataclasses import dataclass, field
from typing import Protocol

import logging
import threading


log = logging.getLogger(__name__)


class NotReady(Exception):
    """Catalog metadata has not finished loading. Retryable."""


class ByteHandle(Protocol):
    """Sequential blocking byte source for one member file."""

    def read(self, size: int) -> bytes: ...

    def close(self) -> None: ...


@dataclass(frozen=True, slots=True)
class MemberFile:
    index: int
    name: str
    length: int
    opener: Callable[[], ByteHandle] = field(repr=False, compare=False)

    def open(self) -> ByteHandle:
        return self.opener()


@dataclass(frozen=True, slots=True)
class Asset:
    name: str
    files: tuple[MemberFile, ...]


# Module state
_asset: Asset | None = None
_asset_lock = threading.Lock()


def select_file(files: Sequence[MemberFile]) -> MemberFile:
    """Pick the largest file. Ties go to the one listed first."""
    if not files:
        raise ValueError("Asset has no member files")
    best = files[0]
    for f in files[1:]:
        if f.length > best.length:
            best = f
    return best


def publish(asset: Asset) -> bool:
    """Store the catalog once. Returns False if one was already published."""
    global _asset
    with _asset_lock:
        if _asset is not None:
            return False
        _asset = asset
    log.info("Catalog ready: %s (%d files)", asset.name, len(asset.files))
    return True


def get_asset() -> Asset:
    """Get the published asset without blocking. Raises NotReady."""
    asset = _asset
    if asset is None:
        raise NotReady("Catalog not loaded yet")
    return asset


def is_ready() -> bool:
    return _asset is not None


def resolve() -> MemberFile:
    """Select the file to stream from the published asset."""
    return select_file(get_asset().files)


def reset() -> None:
    """Forget the published asset (shutdown and tests)."""
    global _asset
    with _asset_lock:
        _asset = None
