"""Cancellable async reader over a blocking member-file handle."""

from __future__ import annotations

from collections.abc import Callable
from typing import Any, TypeVar

import asyncio
import logging

from catalog import ByteHandle, MemberFile


log = logging.getLogger(__name__)

T = TypeVar("T")

DEFAULT_CHUNK_SIZE = 64 * 1024


class SourceUnavailable(Exception):
    """Content source could not deliver the file."""


class SourceCancelled(Exception):
    """Reader was cancelled; no more chunks will be produced."""


def _discard_result(fut: asyncio.Future[Any]) -> None:
    # Results of reads abandoned after cancel() are dropped, errors included.
    if not fut.cancelled():
        fut.exception()


def _close_handle(handle: ByteHandle, name: str) -> None:
    try:
        handle.close()
    except OSError as e:
        log.debug("Error closing source handle for %s: %s", name, e)


class SourceReader:
    """Pull interface over one member file.

    The handle's blocking reads run in worker threads so only the calling
    task waits. cancel() wakes a pending read, which then raises
    SourceCancelled instead of returning data.
    """

    def __init__(self, member: MemberFile, chunk_size: int = DEFAULT_CHUNK_SIZE) -> None:
        if chunk_size <= 0:
            raise ValueError("chunk_size must be positive")
        self.member = member
        self.chunk_size = chunk_size
        self.bytes_read = 0
        self._handle: ByteHandle | None = None
        self._cancelled = asyncio.Event()

    @property
    def cancelled(self) -> bool:
        return self._cancelled.is_set()

    @property
    def finished(self) -> bool:
        return self.bytes_read >= self.member.length

    async def _until_cancelled(self, func: Callable[..., T], *args: Any) -> T:
        """Run func in a thread, raising SourceCancelled if cancel() wins the race."""
        work = asyncio.ensure_future(asyncio.to_thread(func, *args))
        waiter = asyncio.ensure_future(self._cancelled.wait())
        try:
            await asyncio.wait({work, waiter}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            waiter.cancel()
            if not work.done():
                work.add_done_callback(_discard_result)
        if not work.done() or self.cancelled:
            if work.done():
                _discard_result(work)
            raise SourceCancelled(f"Read of {self.member.name} cancelled")
        return work.result()

    async def open(self) -> None:
        if self.cancelled:
            raise SourceCancelled(f"Read of {self.member.name} cancelled")
        if self._handle is not None:
            return
        try:
            handle = await self._until_cancelled(self.member.open)
        except SourceCancelled:
            raise
        except Exception as e:
            raise SourceUnavailable(f"Cannot open {self.member.name}: {e}") from e
        if self.cancelled:
            _close_handle(handle, self.member.name)
            raise SourceCancelled(f"Read of {self.member.name} cancelled")
        self._handle = handle
        log.debug("Opened source %s (%d bytes)", self.member.name, self.member.length)

    async def read_next_chunk(self) -> bytes | None:
        """Next chunk, or None once the file's full length has been delivered."""
        if self.cancelled:
            raise SourceCancelled(f"Read of {self.member.name} cancelled")
        handle = self._handle
        if handle is None:
            raise RuntimeError("SourceReader.open() must be called first")
        remaining = self.member.length - self.bytes_read
        if remaining <= 0:
            return None

        try:
            chunk = await self._until_cancelled(handle.read, min(self.chunk_size, remaining))
        except SourceCancelled:
            raise
        except Exception as e:
            raise SourceUnavailable(f"Read of {self.member.name} failed: {e}") from e

        if not chunk:
            raise SourceUnavailable(
                f"{self.member.name} ended after {self.bytes_read} of {self.member.length} bytes"
            )
        chunk = bytes(chunk[:remaining])
        self.bytes_read += len(chunk)
        return chunk

    def cancel(self) -> None:
        """Release the handle and fail pending/future reads. Idempotent."""
        if self._cancelled.is_set():
            return
        self._cancelled.set()
        handle, self._handle = self._handle, None
        if handle is not None:
            _close_handle(handle, self.member.name)
        log.debug("Cancelled source %s after %d bytes", self.member.name, self.bytes_read)
