"""ASGI response emitter for live transcode output."""

from __future__ import annotations

from collections.abc import Mapping

import asyncio
import logging

from starlette.requests import ClientDisconnect
from starlette.types import Receive, Send


log = logging.getLogger(__name__)

STREAM_HEADERS: dict[str, str] = {
    "Content-Type": "video/mp4",
    "Transfer-Encoding": "chunked",
    "Cache-Control": "no-cache, no-store, must-revalidate",
    "Pragma": "no-cache",
    "Expires": "0",
}

# Errors raised by send() once the peer has gone away
_SEND_ERRORS = (OSError, ClientDisconnect)


def _encode_headers(headers: Mapping[str, str]) -> list[tuple[bytes, bytes]]:
    return [(k.lower().encode("latin-1"), v.encode("latin-1")) for k, v in headers.items()]


class ResponseEmitter:
    """Writes one HTTP response: headers once, then body chunks.

    After the client disconnects, or after end()/close(), writes are
    no-ops that return False.
    """

    def __init__(
        self,
        send: Send,
        status_code: int = 200,
        headers: Mapping[str, str] | None = None,
    ) -> None:
        self._send = send
        self.status_code = status_code
        self.headers = {**STREAM_HEADERS, **(headers or {})}
        self.started = False
        self.ended = False
        self.clean_end = False
        self.bytes_sent = 0
        self.disconnected = asyncio.Event()

    @property
    def is_disconnected(self) -> bool:
        return self.disconnected.is_set()

    @property
    def writable(self) -> bool:
        return not (self.ended or self.disconnected.is_set())

    def _mark_disconnected(self, why: str) -> None:
        if self.disconnected.is_set():
            return
        if not self.ended:
            log.info("Client disconnected (%s) after %d bytes", why, self.bytes_sent)
        self.disconnected.set()

    async def _start(self, status_code: int, headers: Mapping[str, str]) -> None:
        self.started = True
        await self._send(
            {
                "type": "http.response.start",
                "status": status_code,
                "headers": _encode_headers(headers),
            }
        )

    async def write(self, chunk: bytes) -> bool:
        """Forward a chunk. Returns False if the client can no longer receive."""
        if not self.writable:
            return False
        try:
            if not self.started:
                await self._start(self.status_code, self.headers)
            await self._send({"type": "http.response.body", "body": chunk, "more_body": True})
        except _SEND_ERRORS as e:
            self._mark_disconnected(f"send failed: {e!r}")
            return False
        self.bytes_sent += len(chunk)
        return True

    async def end(self) -> None:
        """Finish the response cleanly. Idempotent."""
        if self.ended:
            return
        self.ended = True
        if self.disconnected.is_set():
            return
        try:
            if not self.started:
                await self._start(self.status_code, self.headers)
            await self._send({"type": "http.response.body", "body": b"", "more_body": False})
            self.clean_end = True
        except _SEND_ERRORS as e:
            self._mark_disconnected(f"send failed: {e!r}")

    def close(self) -> None:
        """Abandon the response without a clean end; the server drops the connection."""
        self.ended = True

    async def fail(self, status_code: int, message: str) -> None:
        """Send an error response if nothing was sent yet, else abandon the stream."""
        if self.started or not self.writable:
            self.close()
            return
        self.ended = True
        body = message.encode()
        try:
            await self._start(
                status_code,
                {
                    "Content-Type": "text/plain; charset=utf-8",
                    "Content-Length": str(len(body)),
                    "Cache-Control": "no-store",
                },
            )
            await self._send({"type": "http.response.body", "body": body, "more_body": False})
        except _SEND_ERRORS as e:
            self._mark_disconnected(f"send failed: {e!r}")

    async def watch_disconnect(self, receive: Receive) -> None:
        """Return once the client has disconnected."""
        while not self.disconnected.is_set():
            message = await receive()
            if message["type"] == "http.disconnect":
                self._mark_disconnected("connection closed")
