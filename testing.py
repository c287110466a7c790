"""Test utilities: fake content handles and stand-in transcoder commands."""

from __future__ import annotations

from collections.abc import Iterable

import sys
import textwrap
import threading

from catalog import MemberFile


# Child processes standing in for ffmpeg. They speak the same stdin/stdout
# contract, so the pipeline is exercised against real pipes.
ECHO_SCRIPT = """
import os
while True:
    data = os.read(0, 65536)
    if not data:
        break
    os.write(1, data)
"""

CRASH_SCRIPT = """
import os, sys
os.write(1, os.read(0, 65536))
sys.stderr.write("fatal: invalid data found when processing input\\n")
sys.exit(3)
"""

STALL_SCRIPT = """
import time
time.sleep(30)
"""

# Writes far more than the pipe and stream buffers hold, then waits
FLOOD_SCRIPT = """
import os, time
for _ in range(64):
    os.write(1, bytes(65536))
time.sleep(30)
"""


def python_cmd(script: str) -> list[str]:
    return [sys.executable, "-c", textwrap.dedent(script)]


class FakeHandle:
    """ByteHandle serving fixed chunks.

    After the chunks run out it returns EOF, blocks until closed
    (block=True), raises `fail`, or serves zeros forever (endless=True).
    """

    def __init__(
        self,
        chunks: Iterable[bytes] = (),
        block: bool = False,
        fail: Exception | None = None,
        endless: bool = False,
    ) -> None:
        self.chunks = list(chunks)
        self.block = block
        self.fail = fail
        self.endless = endless
        self.closed = threading.Event()
        self.bytes_served = 0
        self.blocked = threading.Event()

    def read(self, size: int) -> bytes:
        if self.closed.is_set():
            return b""
        if self.chunks:
            chunk = self.chunks.pop(0)
            if len(chunk) > size:
                self.chunks.insert(0, chunk[size:])
                chunk = chunk[:size]
        elif self.endless:
            chunk = bytes(size)
        elif self.fail is not None:
            raise self.fail
        elif self.block:
            self.blocked.set()
            self.closed.wait(timeout=10)
            return b""
        else:
            return b""
        self.bytes_served += len(chunk)
        return chunk

    def close(self) -> None:
        self.closed.set()


def member_for(handle: FakeHandle, length: int, name: str = "movie.mkv", index: int = 0) -> MemberFile:
    return MemberFile(index=index, name=name, length=length, opener=lambda: handle)


def run_tests(test_file: str) -> None:
    """Run pytest on a test file with standard flags.

    Usage:
        if __name__ == "__main__":
            from testing import run_tests
            run_tests(__file__)
    """
    import pytest

    sys.exit(
        pytest.main(
            [
                test_file,
                "-v",
                "-s",
                "-W",
                "ignore::pytest.PytestAssertRewriteWarning",
                *sys.argv[1:],
            ]
        )
    )
