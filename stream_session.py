"""Stream session: source -> ffmpeg -> client pipeline and its teardown."""

from __future__ import annotations

from collections.abc import Sequence
from enum import Enum
from typing import Any

import asyncio
import contextlib
import logging
import time
import uuid

from starlette.responses import Response
from starlette.types import Receive, Scope, Send

from catalog import MemberFile
from ffmpeg_process import ExitStatus, InputClosed, LaunchFailed, TranscodeProcess
from response_emitter import STREAM_HEADERS, ResponseEmitter
from source_reader import DEFAULT_CHUNK_SIZE, SourceCancelled, SourceReader, SourceUnavailable


log = logging.getLogger(__name__)

# Timing constants
_EXIT_WAIT_TIMEOUT_SEC = 5.0  # ffmpeg closed stdout, wait this long for exit
_FEEDER_DRAIN_TIMEOUT_SEC = 1.0
_SHUTDOWN_TIMEOUT_SEC = 5.0


class SessionState(Enum):
    IDLE = "idle"
    SOURCE_OPENING = "source_opening"
    PIPING = "piping"
    DRAINING = "draining"
    CLOSED = "closed"
    ABORTED = "aborted"


_TERMINAL = frozenset({SessionState.CLOSED, SessionState.ABORTED})

# Module state
_sessions: dict[str, StreamSession] = {}


class StreamSession:
    """Per-request pipeline: SourceReader -> TranscodeProcess -> ResponseEmitter.

    Two copy loops run as tasks; both report back through request_abort()
    or by returning, and run() is the only place that changes state.
    Teardown always goes source cancel -> process terminate -> response end.
    """

    def __init__(
        self,
        member: MemberFile,
        argv: Sequence[str],
        chunk_size: int = DEFAULT_CHUNK_SIZE,
        session_id: str | None = None,
    ) -> None:
        self.session_id = session_id or str(uuid.uuid4())
        self.member = member
        self.argv = list(argv)
        self.state = SessionState.IDLE
        self.started = time.time()
        self.abort_reason: str | None = None
        self.reader = SourceReader(member, chunk_size)
        self.process = TranscodeProcess(self.session_id)
        self.emitter: ResponseEmitter | None = None
        self._abort_status: int | None = None
        self._aborted = asyncio.Event()
        self._closed = asyncio.Event()
        self._tasks: list[asyncio.Task[None]] = []
        self._pump: asyncio.Task[None] | None = None

    # -----------------------------------------------------------------------
    # State
    # -----------------------------------------------------------------------

    def _transition(self, state: SessionState) -> None:
        log.debug("Session %s: %s -> %s", self.session_id, self.state.value, state.value)
        self.state = state

    @property
    def is_terminal(self) -> bool:
        return self.state in _TERMINAL

    def request_abort(self, reason: str, status: int | None = None) -> None:
        """Ask the session to abort. First reason wins; later calls are no-ops.

        The source is cancelled immediately so no reader stays blocked;
        run() then terminates the process and ends the response.
        """
        if self.is_terminal or self._aborted.is_set():
            return
        self.abort_reason = reason
        self._abort_status = status
        self._aborted.set()
        self.reader.cancel()

    async def wait_closed(self) -> None:
        await self._closed.wait()

    def stats(self) -> dict[str, Any]:
        emitter = self.emitter
        return {
            "session_id": self.session_id,
            "file": self.member.name,
            "state": self.state.value,
            "abort_reason": self.abort_reason,
            "started": self.started,
            "source_bytes": self.reader.bytes_read,
            "ffmpeg_in_bytes": self.process.bytes_in,
            "ffmpeg_out_bytes": self.process.bytes_out,
            "client_bytes": emitter.bytes_sent if emitter else 0,
            "exit_status": str(self.process.exit_status),
        }

    # -----------------------------------------------------------------------
    # Copy Loops
    # -----------------------------------------------------------------------

    async def _copy_source_to_process(self) -> None:
        try:
            while (chunk := await self.reader.read_next_chunk()) is not None:
                await self.process.write_input(chunk)
            await self.process.close_input()
            log.debug(
                "Source complete for session %s (%d bytes)", self.session_id, self.reader.bytes_read
            )
        except SourceCancelled:
            pass
        except SourceUnavailable as e:
            log.warning("Source failed for session %s: %s", self.session_id, e)
            self.request_abort(f"source unavailable: {e}")
        except InputClosed as e:
            # After ffmpeg has exited on its own this is expected
            if self.state is SessionState.PIPING:
                log.info("ffmpeg input closed for session %s: %s", self.session_id, e)
                self.request_abort(f"ffmpeg input closed: {e}")
        except Exception:
            log.exception("Source copy failed for session %s", self.session_id)
            self.request_abort("source copy failed")

    async def _copy_process_to_client(self) -> None:
        assert self.emitter is not None
        try:
            while (chunk := await self.process.read_output()) is not None:
                if not await self.emitter.write(chunk):
                    self.request_abort("client disconnected")
                    return
        except Exception:
            log.exception("Output copy failed for session %s", self.session_id)
            self.request_abort("output copy failed")

    async def _watch_disconnect(self, receive: Receive) -> None:
        assert self.emitter is not None
        await self.emitter.watch_disconnect(receive)
        self.request_abort("client disconnected")

    # -----------------------------------------------------------------------
    # Lifecycle
    # -----------------------------------------------------------------------

    async def run(self, emitter: ResponseEmitter, receive: Receive | None = None) -> SessionState:
        """Drive the session to CLOSED or ABORTED. Never raises for pipeline failures."""
        self.emitter = emitter
        _sessions[self.session_id] = self
        log.info(
            "Starting stream session %s: %s (%d bytes)",
            self.session_id,
            self.member.name,
            self.member.length,
        )
        try:
            await self._run(receive)
        except Exception:
            log.exception("Stream session %s failed", self.session_id)
            self.request_abort("internal error", status=500)
        finally:
            if not self.is_terminal:
                self.request_abort("cancelled")
                await self._abort_teardown()
            await self._cancel_tasks()
            _sessions.pop(self.session_id, None)
            self._closed.set()
            self._log_summary()
        return self.state

    async def _run(self, receive: Receive | None) -> None:
        self._transition(SessionState.SOURCE_OPENING)
        try:
            await self.reader.open()
        except SourceCancelled:
            return
        except SourceUnavailable as e:
            log.warning("Cannot open source for session %s: %s", self.session_id, e)
            self.request_abort(f"source unavailable: {e}", status=500)
            return
        if self._aborted.is_set():
            return

        try:
            await self.process.start(self.argv)
        except LaunchFailed as e:
            log.error("ffmpeg launch failed for session %s: %s", self.session_id, e)
            self.request_abort(f"launch failed: {e}", status=502)
            return

        self._transition(SessionState.PIPING)
        feeder = asyncio.create_task(self._copy_source_to_process())
        pump = self._pump = asyncio.create_task(self._copy_process_to_client())
        self._tasks = [feeder, pump]
        if receive is not None:
            self._tasks.append(asyncio.create_task(self._watch_disconnect(receive)))

        if not await self._until_aborted(pump):
            return

        self._transition(SessionState.DRAINING)
        status = await self._drain(feeder)
        if self._aborted.is_set():
            return
        if status is None:
            self.request_abort("ffmpeg closed its output but did not exit")
            return
        if not status.ok:
            log.warning(
                "ffmpeg:%s failed (%s): %s",
                self.session_id,
                status,
                self.process.stderr_tail(),
            )
            self.request_abort(f"ffmpeg exited {status}")
            return
        await self._finish()

    async def _until_aborted(self, task: asyncio.Task[None]) -> bool:
        """Wait for task to finish. Returns False if an abort came first."""
        waiter = asyncio.create_task(self._aborted.wait())
        try:
            await asyncio.wait({task, waiter}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            waiter.cancel()
        return not self._aborted.is_set()

    async def _drain(self, feeder: asyncio.Task[None]) -> ExitStatus | None:
        """ffmpeg closed stdout: collect the exit status and stop the feeder."""
        try:
            status = await asyncio.wait_for(self.process.wait(), _EXIT_WAIT_TIMEOUT_SEC)
        except TimeoutError:
            return None
        if not status.ok:
            return status
        _, pending = await asyncio.wait({feeder}, timeout=_FEEDER_DRAIN_TIMEOUT_SEC)
        if pending:
            log.debug("Session %s: cancelling source after ffmpeg exit", self.session_id)
            self.reader.cancel()
        return status

    async def _finish(self) -> None:
        assert self.emitter is not None
        self.reader.cancel()
        await self.process.terminate()
        self._transition(SessionState.CLOSED)
        await self.emitter.end()

    async def _abort_teardown(self) -> None:
        assert self.emitter is not None
        self.reader.cancel()
        await self._stop_pump()
        await self.process.terminate()
        self._transition(SessionState.ABORTED)
        if self._abort_status is not None and not self.emitter.started:
            await self.emitter.fail(self._abort_status, self.abort_reason or "Stream failed")
        else:
            self.emitter.close()

    async def _stop_pump(self) -> None:
        # The pump may be parked in a send() to a client that stopped reading
        pump = self._pump
        if pump is None or pump.done():
            return
        pump.cancel()
        await asyncio.gather(pump, return_exceptions=True)

    async def _cancel_tasks(self) -> None:
        tasks = [t for t in self._tasks if not t.done()]
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)

    def _log_summary(self) -> None:
        s = self.stats()
        log.info(
            "Session %s %s%s after %.1fs: source=%d ffmpeg_in=%d ffmpeg_out=%d client=%d exit=%s",
            self.session_id,
            s["state"],
            f" ({self.abort_reason})" if self.abort_reason else "",
            time.time() - self.started,
            s["source_bytes"],
            s["ffmpeg_in_bytes"],
            s["ffmpeg_out_bytes"],
            s["client_bytes"],
            s["exit_status"],
        )


class StreamResponse(Response):
    """Starlette response that runs a StreamSession inside the ASGI call."""

    media_type = "video/mp4"

    def __init__(self, session: StreamSession) -> None:
        self.session = session
        self.status_code = 200
        self.background = None
        self.init_headers(STREAM_HEADERS)

    async def __call__(self, scope: Scope, receive: Receive, send: Send) -> None:
        emitter = ResponseEmitter(send, self.status_code, STREAM_HEADERS)
        await self.session.run(emitter, receive)


# ===========================================================================
# Registry
# ===========================================================================


def get_sessions() -> list[StreamSession]:
    """Live sessions, oldest first."""
    return sorted(_sessions.values(), key=lambda s: s.started)


async def shutdown() -> None:
    """Abort every live session and wait for teardown."""
    sessions = list(_sessions.values())
    for session in sessions:
        session.request_abort("server shutting down", status=503)
    if sessions:
        with contextlib.suppress(TimeoutError):
            await asyncio.wait_for(
                asyncio.gather(*(s.wait_closed() for s in sessions)),
                _SHUTDOWN_TIMEOUT_SEC,
            )
        log.info("Shutdown: aborted %d stream sessions", len(sessions))
