"""
FastAPI application exposing the Rainloop form and job APIs.
"""

from __future__ import annotations

import asyncio
import logging
import mimetypes
import os
import queue
import shutil
import tempfile
from contextlib import asynccontextmanager
from pathlib import Path
from typing import Any, Dict, Iterator, Optional, Tuple

from dotenv import load_dotenv

BASE_DIR = Path(__file__).resolve().parent
load_dotenv(BASE_DIR.parent / ".env")

from fastapi import (
    APIRouter,
    BackgroundTasks,
    Depends,
    FastAPI,
    File,
    Form,
    Header,
    HTTPException,
    Request,
    UploadFile,
    WebSocket,
    WebSocketDisconnect,
    status,
)
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import FileResponse, JSONResponse, Response, StreamingResponse
from PIL import Image, UnidentifiedImageError
from pydantic import BaseModel

from loop_builder import DEFAULT_POSITION, LoopRequest, to_int
from media_engine import EngineError, MediaEngine
from orchestrator import EngineNotReady, LoopInputs, LoopUpload, PreconditionError, check_preconditions

from . import jobs, storage

API_PREFIX = "/api/v1"
API_KEY = os.getenv("API_KEY")
STATIC_DIR = BASE_DIR / "static"
DOWNLOAD_NAME = "output.mp4"
UPLOAD_TMP_DIR = os.getenv("UPLOAD_TMP_DIR") or None
SPOOL_CHUNK_SIZE = 1024 * 1024

LOG = logging.getLogger(__name__)

router = APIRouter(prefix=API_PREFIX)


def verify_api_key(x_api_key: Optional[str] = Header(default=None)) -> None:
    if API_KEY and x_api_key != API_KEY:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid API key")


def create_engine() -> MediaEngine:
    return MediaEngine()


class JobResponse(BaseModel):
    id: str
    status: str
    progress: int
    message: Optional[str] = None
    created_at: str
    finished_at: Optional[str] = None
    download_url: Optional[str] = None
    events_url: str


def job_response(job: jobs.Job) -> JobResponse:
    download_url = None
    if job.status == jobs.SUCCEEDED and storage.find_output(job.id) is not None:
        download_url = f"{API_PREFIX}/jobs/{job.id}/output"
    return JobResponse(**job.snapshot(), download_url=download_url, events_url=f"/ws/jobs/{job.id}")


def get_engine(request: Request) -> Optional[MediaEngine]:
    return getattr(request.app.state, "engine", None)


def _int_field(value: Optional[str], default: int) -> int:
    if value is None:
        return default
    return to_int(value.strip() or "0")


def _spool_upload(upload: Optional[UploadFile], spool_dir: Path, kind: str) -> Optional[LoopUpload]:
    """Copy an upload to disk in chunks; the request body is never held in memory whole."""
    if upload is None or not upload.filename:
        return None
    target = spool_dir / kind
    upload.file.seek(0)
    with target.open("wb") as handle:
        shutil.copyfileobj(upload.file, handle, SPOOL_CHUNK_SIZE)
    spooled = LoopUpload(filename=upload.filename, path=target)
    return None if spooled.empty else spooled


def _check_image(upload: LoopUpload) -> None:
    try:
        with Image.open(upload.path) as img:
            img.verify()
    except (UnidentifiedImageError, OSError) as exc:
        raise HTTPException(
            status_code=422,
            detail=f"Watermark image could not be read: {upload.filename}",
        ) from exc


def parse_byte_range(header: Optional[str], size: int) -> Optional[Tuple[int, int]]:
    """
    Resolve a single `bytes=first-last` Range header against a file size.

    Supports open ends (`bytes=100-`) and suffixes (`bytes=-500`). A last byte
    past the end is clamped. Returns None for anything unsatisfiable, so the
    caller falls back to sending the whole file.
    """
    if not header or size <= 0:
        return None
    unit, sep, ranges = header.partition("=")
    if not sep or unit.strip().lower() != "bytes" or "," in ranges:
        return None
    first_text, sep, last_text = ranges.strip().partition("-")
    if not sep:
        return None
    try:
        if not first_text:
            suffix = int(last_text)
            if suffix <= 0:
                return None
            return max(size - suffix, 0), size - 1
        first = int(first_text)
        last = min(int(last_text), size - 1) if last_text else size - 1
    except ValueError:
        return None
    if first < 0 or first > last:
        return None
    return first, last


def iter_file_range(path: Path, first: int, last: int, chunk_size: int = 1024 * 1024) -> Iterator[bytes]:
    """Yield bytes first..last (inclusive) of an output file in chunks."""
    left = last - first + 1
    with path.open("rb") as video:
        video.seek(first)
        while left > 0:
            block = video.read(min(chunk_size, left))
            if not block:
                return
            left -= len(block)
            yield block


@asynccontextmanager
async def lifespan(app: FastAPI):
    storage.ensure_output_dir()
    if UPLOAD_TMP_DIR:
        Path(UPLOAD_TMP_DIR).mkdir(parents=True, exist_ok=True)
    engine = create_engine()
    try:
        engine.load()
    except EngineError as exc:
        LOG.warning("Media engine unavailable: %s", exc)
    app.state.engine = engine
    try:
        yield
    finally:
        engine.terminate()


@router.get("/engine")
async def engine_status(request: Request) -> JSONResponse:
    engine = get_engine(request)
    return JSONResponse(
        {
            "loaded": bool(engine and engine.loaded),
            "busy": jobs.registry.busy,
            "active_job": jobs.registry.active_id,
        }
    )


async def _run_job_in_thread(
    engine: MediaEngine,
    job: jobs.Job,
    loop_request: LoopRequest,
    inputs: LoopInputs,
    spool_dir: Path,
) -> None:
    # run_job never raises; failures end up in the job snapshot
    try:
        await asyncio.to_thread(jobs.run_job, engine, job, loop_request, inputs)
    finally:
        shutil.rmtree(spool_dir, ignore_errors=True)


def _admit_job(loop_request: LoopRequest, inputs: LoopInputs, engine: Optional[MediaEngine]) -> jobs.Job:
    try:
        check_preconditions(loop_request, inputs, engine)
    except EngineNotReady as exc:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc
    except PreconditionError as exc:
        raise HTTPException(status_code=422, detail=str(exc)) from exc
    if inputs.image is not None:
        _check_image(inputs.image)

    try:
        return jobs.registry.start()
    except jobs.JobBusy as exc:
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail={"message": "A conversion is already running", "job": exc.active_id},
        ) from exc


@router.post(
    "/jobs",
    response_model=JobResponse,
    status_code=status.HTTP_202_ACCEPTED,
    dependencies=[Depends(verify_api_key)],
)
async def create_job(
    request: Request,
    background: BackgroundTasks,
    video: Optional[UploadFile] = File(default=None),
    audio: Optional[UploadFile] = File(default=None),
    wm_image: Optional[UploadFile] = File(default=None),
    font: Optional[UploadFile] = File(default=None),
    use_external_audio: bool = Form(default=False),
    mute_original: bool = Form(default=True),
    duration_sec: Optional[str] = Form(default=None),
    volume: Optional[str] = Form(default=None),
    fade_in: bool = Form(default=True),
    fade_out: bool = Form(default=True),
    fade_ms: Optional[str] = Form(default=None),
    wm_text: str = Form(default=""),
    wm_font_size: Optional[str] = Form(default=None),
    wm_text_opacity: Optional[str] = Form(default=None),
    wm_image_opacity: Optional[str] = Form(default=None),
    wm_image_scale: Optional[str] = Form(default=None),
    wm_position: str = Form(default=DEFAULT_POSITION),
) -> JobResponse:
    defaults = LoopRequest()
    loop_request = LoopRequest(
        use_external_audio=use_external_audio,
        mute_original=mute_original,
        duration_sec=_int_field(duration_sec, defaults.duration_sec),
        volume=_int_field(volume, defaults.volume),
        fade_in=fade_in,
        fade_out=fade_out,
        fade_ms=_int_field(fade_ms, defaults.fade_ms),
        wm_text=wm_text,
        wm_font_size=_int_field(wm_font_size, defaults.wm_font_size),
        wm_text_opacity=_int_field(wm_text_opacity, defaults.wm_text_opacity),
        wm_image_opacity=_int_field(wm_image_opacity, defaults.wm_image_opacity),
        wm_image_scale=_int_field(wm_image_scale, defaults.wm_image_scale),
        wm_position=wm_position,
    )

    engine = get_engine(request)
    spool_dir = Path(tempfile.mkdtemp(prefix="rainloop-upload-", dir=UPLOAD_TMP_DIR))
    admitted = False
    try:
        inputs = LoopInputs(
            video=await asyncio.to_thread(_spool_upload, video, spool_dir, "video"),
            audio=await asyncio.to_thread(_spool_upload, audio, spool_dir, "audio"),
            image=await asyncio.to_thread(_spool_upload, wm_image, spool_dir, "wm_image"),
            font=await asyncio.to_thread(_spool_upload, font, spool_dir, "font"),
        )
        job = _admit_job(loop_request, inputs, engine)
        admitted = True
    finally:
        if not admitted:
            shutil.rmtree(spool_dir, ignore_errors=True)

    LOG.info("Queued job %s (%ss, text=%s, image=%s)", job.id, loop_request.duration,
             loop_request.has_text, inputs.image is not None)
    background.add_task(_run_job_in_thread, engine, job, loop_request, inputs, spool_dir)
    return job_response(job)


@router.get("/jobs/{job_id}", response_model=JobResponse)
async def get_job(job_id: str) -> JobResponse:
    job = jobs.registry.get(job_id)
    if job is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Job not found")
    return job_response(job)


@router.get("/jobs/{job_id}/output")
async def get_job_output(job_id: str, request: Request) -> Response:
    target = storage.find_output(job_id)
    if target is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Output not available")
    file_size = target.stat().st_size
    byte_range = parse_byte_range(request.headers.get("range"), file_size)
    media_type, _ = mimetypes.guess_type(target.name)

    if byte_range:
        start, end = byte_range
        headers = {
            "Content-Range": f"bytes {start}-{end}/{file_size}",
            "Accept-Ranges": "bytes",
            "Content-Length": str(end - start + 1),
        }
        return StreamingResponse(
            iter_file_range(target, start, end),
            media_type=media_type or "video/mp4",
            status_code=status.HTTP_206_PARTIAL_CONTENT,
            headers=headers,
        )

    return FileResponse(
        path=str(target),
        media_type=media_type or "video/mp4",
        filename=DOWNLOAD_NAME,
    )


async def websocket_event_forwarder(ws: WebSocket, q: queue.Queue) -> None:
    try:
        while True:
            try:
                event = await asyncio.to_thread(q.get, True, 1.0)
            except queue.Empty:
                continue
            await ws.send_json(event)
    except asyncio.CancelledError:
        pass


APP = FastAPI(title="Rainloop Backend", version="1.0.0", lifespan=lifespan)

APP.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_methods=["*"],
    allow_headers=["*"],
)


@APP.get("/")
async def index() -> FileResponse:
    return FileResponse(str(STATIC_DIR / "index.html"), media_type="text/html")


@APP.websocket("/ws/jobs/{job_id}")
async def job_socket(websocket: WebSocket, job_id: str) -> None:
    provided_key = websocket.query_params.get("api_key")
    if API_KEY and provided_key != API_KEY:
        await websocket.close(code=status.WS_1008_POLICY_VIOLATION)
        return

    await websocket.accept()
    job = jobs.registry.get(job_id)
    if job is None:
        await websocket.send_json({"type": "error", "job": job_id, "detail": "Job not found"})
        await websocket.close()
        return

    q = jobs.events.subscribe(job_id)
    snapshot: Dict[str, Any] = {"type": "status", "job": job_id, **job_response(job).model_dump()}
    await websocket.send_json(snapshot)
    forwarder = asyncio.create_task(websocket_event_forwarder(websocket, q))

    try:
        while True:
            await websocket.receive_text()
    except WebSocketDisconnect:
        pass
    finally:
        forwarder.cancel()
        jobs.events.unsubscribe(job_id, q)
        await asyncio.gather(forwarder, return_exceptions=True)


APP.include_router(router)

__all__ = ["APP"]
