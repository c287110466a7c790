"""FFmpeg process lifecycle: launch, piped input/output, exit status, kill."""

from __future__ import annotations

from collections import deque
from collections.abc import Sequence
from dataclasses import dataclass
from enum import Enum

import asyncio
import contextlib
import logging


log = logging.getLogger(__name__)

_READ_SIZE = 64 * 1024
_STDERR_TAIL_LINES = 20
_STDERR_MONITOR_STOP_SEC = 1.0
_OUTPUT_DISCARD_TIMEOUT_SEC = 2.0


class LaunchFailed(Exception):
    """The transcoder executable could not be started."""


class InputClosed(Exception):
    """The transcoder no longer accepts input."""


class ExitKind(Enum):
    UNSET = "unset"
    SUCCESS = "success"
    FAILURE = "failure"
    KILLED = "killed"


@dataclass(frozen=True, slots=True)
class ExitStatus:
    kind: ExitKind
    code: int | None = None

    @property
    def ok(self) -> bool:
        return self.kind is ExitKind.SUCCESS

    def __str__(self) -> str:
        if self.kind is ExitKind.FAILURE:
            return f"failure({self.code})"
        return self.kind.value


UNSET = ExitStatus(ExitKind.UNSET)


async def _monitor_ffmpeg_stderr(
    process: asyncio.subprocess.Process,
    session_id: str,
    stderr_lines: deque[str] | None = None,
) -> None:
    assert process.stderr is not None
    while True:
        line = await process.stderr.readline()
        if not line:
            break
        text = line.decode(errors="replace").rstrip()
        if stderr_lines is not None:
            stderr_lines.append(text)
        is_fatal = "fatal" in text.lower() or "aborting" in text.lower()
        level = logging.WARNING if is_fatal else logging.DEBUG
        log.log(level, "ffmpeg:%s %s", session_id, text)


class TranscodeProcess:
    """One ffmpeg process fed through stdin and read through stdout.

    Owned by a single stream session and never reused. terminate() is
    idempotent and safe after the process has exited on its own.
    """

    def __init__(self, session_id: str = "") -> None:
        self.session_id = session_id
        self.process: asyncio.subprocess.Process | None = None
        self.exit_status = UNSET
        self.bytes_in = 0
        self.bytes_out = 0
        self.stderr_lines: deque[str] = deque(maxlen=_STDERR_TAIL_LINES)
        self._input_closed = False
        self._killed = False
        self._stderr_task: asyncio.Task[None] | None = None

    @property
    def pid(self) -> int | None:
        return self.process.pid if self.process else None

    @property
    def running(self) -> bool:
        return self.process is not None and self.process.returncode is None

    def _require(self) -> asyncio.subprocess.Process:
        if self.process is None:
            raise RuntimeError("TranscodeProcess.start() must be called first")
        return self.process

    async def start(self, argv: Sequence[str]) -> None:
        """Launch the process with all three standard streams piped."""
        if self.process is not None:
            raise RuntimeError("TranscodeProcess already started")
        if not argv:
            raise LaunchFailed("Empty transcoder command")
        try:
            self.process = await asyncio.create_subprocess_exec(
                *argv,
                stdin=asyncio.subprocess.PIPE,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except OSError as e:
            raise LaunchFailed(f"Cannot launch {argv[0]}: {e}") from e
        self._stderr_task = asyncio.create_task(
            _monitor_ffmpeg_stderr(self.process, self.session_id, self.stderr_lines)
        )
        log.info("Started ffmpeg pid=%s for session %s", self.process.pid, self.session_id)

    async def write_input(self, chunk: bytes) -> None:
        """Send a chunk to stdin, waiting while the pipe is full."""
        proc = self._require()
        stdin = proc.stdin
        if self._input_closed or stdin is None or stdin.is_closing():
            raise InputClosed("ffmpeg input already closed")
        try:
            stdin.write(chunk)
            await stdin.drain()
        except (BrokenPipeError, ConnectionResetError) as e:
            self._input_closed = True
            raise InputClosed(f"ffmpeg stopped accepting input: {e}") from e
        self.bytes_in += len(chunk)

    async def close_input(self) -> None:
        """Signal end of input. Idempotent."""
        if self._input_closed:
            return
        self._input_closed = True
        stdin = self.process.stdin if self.process else None
        if stdin is None:
            return
        with contextlib.suppress(BrokenPipeError, ConnectionResetError):
            stdin.close()
            await stdin.wait_closed()

    async def read_output(self) -> bytes | None:
        """Next chunk of stdout, or None at end of stream."""
        proc = self._require()
        assert proc.stdout is not None
        chunk = await proc.stdout.read(_READ_SIZE)
        if not chunk:
            return None
        self.bytes_out += len(chunk)
        return chunk

    async def wait(self) -> ExitStatus:
        """Wait for exit and classify the exit code."""
        proc = self._require()
        code = await proc.wait()
        if self.exit_status.kind is ExitKind.UNSET:
            if code == 0:
                self.exit_status = ExitStatus(ExitKind.SUCCESS, 0)
            elif self._killed and code < 0:
                self.exit_status = ExitStatus(ExitKind.KILLED, code)
            else:
                self.exit_status = ExitStatus(ExitKind.FAILURE, code)
            level = logging.WARNING if self.exit_status.kind is ExitKind.FAILURE else logging.INFO
            log.log(
                level,
                "ffmpeg:%s exited %s (in=%d bytes, out=%d bytes)",
                self.session_id,
                self.exit_status,
                self.bytes_in,
                self.bytes_out,
            )
        return self.exit_status

    async def terminate(self) -> None:
        """Kill the process and reap it. Idempotent.

        Nothing else may be reading stdout: unread output is discarded here,
        since the exit status is only reported once every pipe has closed.
        """
        proc = self.process
        if proc is None:
            return
        if proc.returncode is None:
            self._killed = True
            with contextlib.suppress(ProcessLookupError):
                proc.kill()
                log.info("Killed ffmpeg pid=%s for session %s", proc.pid, self.session_id)
        self._input_closed = True
        if proc.stdin is not None:
            proc.stdin.close()
        await self._discard_output(proc)
        await self.wait()
        await self._stop_stderr_monitor()

    async def _discard_output(self, proc: asyncio.subprocess.Process) -> None:
        stdout = proc.stdout
        if stdout is None or stdout.at_eof():
            return
        discarded = 0

        async def _drain() -> None:
            nonlocal discarded
            while chunk := await stdout.read(_READ_SIZE):
                discarded += len(chunk)

        try:
            await asyncio.wait_for(_drain(), _OUTPUT_DISCARD_TIMEOUT_SEC)
        except TimeoutError:
            log.warning("ffmpeg:%s stdout still open after kill", self.session_id)
        if discarded:
            log.debug("ffmpeg:%s discarded %d unread output bytes", self.session_id, discarded)

    async def _stop_stderr_monitor(self) -> None:
        task = self._stderr_task
        if task is None or task.done():
            return
        _, pending = await asyncio.wait({task}, timeout=_STDERR_MONITOR_STOP_SEC)
        if pending:
            task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await task

    def stderr_tail(self, lines: int = 10) -> str:
        return "\n".join(list(self.stderr_lines)[-lines:]) or "unknown"
