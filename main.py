"""torrentcast: stream the largest file of a torrent through ffmpeg over HTTP."""

from __future__ import annotations

from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from typing import Any

import asyncio
import logging
import pathlib

from fastapi import FastAPI
from fastapi.responses import JSONResponse, PlainTextResponse, Response
from fastapi.staticfiles import StaticFiles

import catalog
import config
import ffmpeg_command
import stream_session
import torrent


log = logging.getLogger(__name__)

APP_DIR = pathlib.Path(__file__).parent
PUBLIC_DIR = APP_DIR / "public"
_NOT_READY_RETRY_SECS = 5

# Module state
_source: torrent.TorrentSource | None = None


@asynccontextmanager
async def lifespan(_app: FastAPI) -> AsyncIterator[None]:
    global _source
    settings = config.load_settings()
    ffmpeg_command.init(config.load_settings)
    _source = torrent.TorrentSource(
        settings["torrent"],
        settings["download_dir"],
        settings["listen_interfaces"],
    )
    # Loading a .torrent URL blocks on network I/O
    await asyncio.to_thread(_source.start)
    try:
        yield
    finally:
        await stream_session.shutdown()
        await asyncio.to_thread(_source.close)
        _source = None
        catalog.reset()


app = FastAPI(lifespan=lifespan)


@app.get("/stream")
async def stream() -> Response:
    try:
        member = catalog.resolve()
    except catalog.NotReady:
        return PlainTextResponse(
            "Torrent not ready yet",
            status_code=503,
            headers={"Retry-After": str(_NOT_READY_RETRY_SECS)},
        )
    except ValueError:
        log.error("Torrent has no playable files")
        return PlainTextResponse("Torrent has no playable files", status_code=500)
    settings = ffmpeg_command.get_settings()
    session = stream_session.StreamSession(
        member,
        ffmpeg_command.get_transcode_cmd(),
        chunk_size=int(settings.get("chunk_size", 64 * 1024)),
    )
    log.info("Streaming with all audio tracks: %s", member.name)
    return stream_session.StreamResponse(session)


@app.get("/status")
async def status() -> JSONResponse:
    body: dict[str, Any] = {"ready": catalog.is_ready()}
    if catalog.is_ready():
        asset = catalog.get_asset()
        body["asset"] = asset.name
        body["files"] = [{"name": f.name, "length": f.length} for f in asset.files]
        body["selected"] = catalog.select_file(asset.files).name if asset.files else None
    if _source is not None:
        body["torrent"] = _source.status()
    body["sessions"] = [s.stats() for s in stream_session.get_sessions()]
    return JSONResponse(body)


# Static player page; mounted last so it does not shadow the routes above
app.mount("/", StaticFiles(directory=PUBLIC_DIR, html=True), name="public")


def main() -> None:
    import uvicorn

    settings = config.load_settings()
    logging.basicConfig(
        level=settings["log_level"].upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    log.info("Torrent server running at http://localhost:%s", settings["port"])
    uvicorn.run(app, host=settings["host"], port=int(settings["port"]), log_level=settings["log_level"])


if __name__ == "__main__":
    main()
