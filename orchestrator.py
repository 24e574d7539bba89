# orchestrator.py
"""
One build-and-run cycle: check preconditions, stage the uploads into the engine,
build the argument list, execute it and hand the output back (as bytes, or moved
to a destination path so large results never sit in memory).

Staged names are a fixed base plus the upload's extension:
    video.<ext>, audio.<ext>, wm.<ext>, font.<ext>
The engine filesystem is wiped (best-effort) before every run.
"""

from dataclasses import dataclass
import logging
from pathlib import Path
from typing import Callable, List, Optional, Tuple

from loop_builder import (
    OUTPUT_NAME,
    LoopRequest,
    build_args,
    describe_args,
    fade_out_start,
    staged_name,
)
from media_engine import EngineError, MediaEngine

logger = logging.getLogger(__name__)
if not logger.handlers:
    handler = logging.StreamHandler()
    handler.setFormatter(logging.Formatter("[orchestrator] %(levelname)s %(message)s"))
    logger.addHandler(handler)
if not logger.level or logger.level > logging.INFO:
    logger.setLevel(logging.INFO)
logger.propagate = False

FAILURE_MESSAGE = "Processing failed. Try a shorter duration or check your settings."


class PreconditionError(ValueError):
    pass


class EngineNotReady(PreconditionError):
    pass


class LoopFailed(RuntimeError):
    def __init__(self, message: str = FAILURE_MESSAGE, detail: str = ""):
        super().__init__(message)
        self.message = message
        self.detail = detail


@dataclass
class LoopUpload:
    """An uploaded file, held either in memory (data) or on disk (path)."""

    filename: str
    data: bytes = b""
    path: Optional[Path] = None

    @property
    def empty(self) -> bool:
        if self.path is not None:
            try:
                return self.path.stat().st_size == 0
            except OSError:
                return True
        return not self.data

    def stage(self, engine: MediaEngine, name: str) -> None:
        if self.path is not None:
            engine.import_file(name, self.path)
        else:
            engine.write_file(name, self.data)


@dataclass
class LoopInputs:
    video: Optional[LoopUpload] = None
    audio: Optional[LoopUpload] = None
    image: Optional[LoopUpload] = None
    font: Optional[LoopUpload] = None


def check_preconditions(request: LoopRequest, inputs: LoopInputs, engine: Optional[MediaEngine]) -> None:
    if inputs.video is None or inputs.video.empty:
        raise PreconditionError("Upload a video first.")
    if request.use_external_audio and (inputs.audio is None or inputs.audio.empty):
        raise PreconditionError("External audio is enabled but no audio file was uploaded.")
    if engine is None or not engine.loaded:
        raise EngineNotReady("The media engine is not ready yet. Try again shortly.")


def clean_engine_fs(engine: MediaEngine) -> None:
    try:
        names = engine.list_dir()
    except (OSError, EngineError) as exc:
        logger.debug("Skipping engine cleanup: %s", exc)
        return
    for name in names:
        try:
            engine.delete_file(name)
        except (OSError, ValueError) as exc:
            logger.debug("Could not delete %s: %s", name, exc)


def _staged_uploads(request: LoopRequest, inputs: LoopInputs) -> List[Tuple[str, str, LoopUpload]]:
    """(request field, staged name, upload) for every upload the run will use."""
    staged = [("video_name", staged_name("video", inputs.video.filename, "mp4"), inputs.video)]
    if request.use_external_audio and inputs.audio is not None:
        staged.append(("audio_name", staged_name("audio", inputs.audio.filename, "mp3"), inputs.audio))
    if inputs.image is not None:
        staged.append(("image_name", staged_name("wm", inputs.image.filename, "png"), inputs.image))
    if inputs.font is not None:
        staged.append(("font_name", staged_name("font", inputs.font.filename, "ttf"), inputs.font))
    return staged


def staged_request(request: LoopRequest, inputs: LoopInputs) -> LoopRequest:
    """The request pointing at the names stage_inputs would write; touches no files."""
    changes = {"video_name": None, "audio_name": None, "image_name": None, "font_name": None}
    for field_name, name, _ in _staged_uploads(request, inputs):
        changes[field_name] = name
    return request.with_changes(**changes)


def stage_inputs(engine: MediaEngine, request: LoopRequest, inputs: LoopInputs) -> LoopRequest:
    """Write the uploads into the engine and return the request pointing at them."""
    clean_engine_fs(engine)
    for _, name, upload in _staged_uploads(request, inputs):
        upload.stage(engine, name)
    return staged_request(request, inputs)


def _execute(
    engine: MediaEngine,
    request: LoopRequest,
    inputs: LoopInputs,
    on_progress: Optional[Callable[[int], None]],
) -> None:
    check_preconditions(request, inputs, engine)

    staged = stage_inputs(engine, request, inputs)
    if staged.fade_out and fade_out_start(staged.duration, staged.fade_ms) < 0:
        logger.warning(
            "Fade (%sms) is longer than the output (%ss); fade-out starts before 0",
            staged.fade_ms,
            staged.duration,
        )

    args = build_args(staged)
    logger.info("Running engine for %ss output", staged.duration)
    logger.debug("Engine args: %s", describe_args(args))

    if on_progress is not None:
        engine.on_progress(on_progress)
    try:
        result = engine.exec(args)
    except (OSError, EngineError) as exc:
        logger.error("Engine execution failed: %s", exc, exc_info=True)
        raise LoopFailed(detail=str(exc)) from exc
    finally:
        if on_progress is not None:
            engine.off_progress(on_progress)

    if not result.ok:
        raise LoopFailed(detail=result.stderr_tail())


def run_loop(
    engine: MediaEngine,
    request: LoopRequest,
    inputs: LoopInputs,
    on_progress: Optional[Callable[[int], None]] = None,
) -> bytes:
    """Run one conversion and return the bytes of output.mp4."""
    _execute(engine, request, inputs, on_progress)
    try:
        data = engine.read_file(OUTPUT_NAME)
    except OSError as exc:
        raise LoopFailed(detail=f"output missing: {exc}") from exc
    if not data:
        raise LoopFailed(detail="output is empty")

    logger.info("Loop completed (%.2f MB)", len(data) / (1024 * 1024))
    return data


def run_loop_to_file(
    engine: MediaEngine,
    request: LoopRequest,
    inputs: LoopInputs,
    dest: Path,
    on_progress: Optional[Callable[[int], None]] = None,
) -> Path:
    """Run one conversion and move output.mp4 to dest without reading it."""
    _execute(engine, request, inputs, on_progress)
    try:
        target = engine.export_file(OUTPUT_NAME, dest)
        size = target.stat().st_size
    except OSError as exc:
        raise LoopFailed(detail=f"output missing: {exc}") from exc
    if not size:
        target.unlink()
        raise LoopFailed(detail="output is empty")

    logger.info("Loop completed (%.2f MB) -> %s", size / (1024 * 1024), target)
    return target


__all__ = [
    "FAILURE_MESSAGE",
    "EngineNotReady",
    "LoopFailed",
    "LoopInputs",
    "LoopUpload",
    "PreconditionError",
    "check_preconditions",
    "clean_engine_fs",
    "run_loop",
    "run_loop_to_file",
    "stage_inputs",
    "staged_request",
]
