"""
media_engine.py - explicitly owned handle around the ffmpeg binary.

The engine owns a private scratch directory that acts as its filesystem: callers
write named blobs into it, execute an argument list that refers to those names,
and read the named output back. Progress is parsed from `-progress pipe:1`.
"""

from dataclasses import dataclass
from pathlib import Path
import logging
import os
import shlex
import shutil
import subprocess
import tempfile
import threading
from typing import Callable, List, Optional, Sequence
from dotenv import load_dotenv

BASE_DIR = Path(__file__).resolve().parent
load_dotenv(BASE_DIR / ".env")

FFMPEG_BIN = os.getenv("FFMPEG_BIN", "ffmpeg")
FFMPEG_LOGLEVEL = os.getenv("FFMPEG_LOGLEVEL", "error")
SCRATCH_BASE = os.getenv("ENGINE_SCRATCH_DIR") or None

try:
    FFMPEG_TIMEOUT_SECONDS = max(60, int(os.getenv("FFMPEG_TIMEOUT_SECONDS", "7200")))
except ValueError:
    FFMPEG_TIMEOUT_SECONDS = 7200

logger = logging.getLogger(__name__)
if not logger.handlers:
    handler = logging.StreamHandler()
    handler.setFormatter(logging.Formatter("[media_engine] %(levelname)s %(message)s"))
    logger.addHandler(handler)
if not logger.level or logger.level > logging.INFO:
    logger.setLevel(logging.INFO)
logger.propagate = False

ProgressCallback = Callable[[int], None]


class EngineError(RuntimeError):
    pass


class EngineNotLoaded(EngineError):
    pass


@dataclass
class ExecResult:
    returncode: int
    stderr: str = ""

    @property
    def ok(self) -> bool:
        return self.returncode == 0

    def stderr_tail(self, lines: int = 20) -> str:
        return "\n".join(self.stderr.strip().splitlines()[-lines:])


def expected_duration(args: Sequence[str]) -> Optional[float]:
    """Seconds requested with -t, used as the 100% mark for progress."""
    duration = None
    for flag, value in zip(args, args[1:]):
        if flag == "-t":
            try:
                duration = float(value)
            except ValueError:
                duration = None
    return duration


def parse_progress_line(line: str, duration: Optional[float]) -> Optional[int]:
    key, _, value = line.strip().partition("=")
    if key == "progress" and value == "end":
        return 100
    # out_time_ms is in microseconds as well (long-standing ffmpeg quirk)
    if key in ("out_time_us", "out_time_ms") and duration:
        try:
            micros = int(value)
        except ValueError:
            return None
        pct = round(micros / 1_000_000 / duration * 100)
        return max(0, min(100, pct))
    return None


class MediaEngine:
    def __init__(
        self,
        binary: str = FFMPEG_BIN,
        loglevel: str = FFMPEG_LOGLEVEL,
        timeout: int = FFMPEG_TIMEOUT_SECONDS,
        scratch_base: Optional[str] = SCRATCH_BASE,
    ):
        self.binary = binary
        self.loglevel = loglevel
        self.timeout = timeout
        self.scratch_base = scratch_base
        self.root: Optional[Path] = None
        self._executable: Optional[str] = None
        self._listeners: List[ProgressCallback] = []
        self._process: Optional[subprocess.Popen] = None

    # ---------- lifecycle ----------

    @property
    def loaded(self) -> bool:
        return self.root is not None

    def load(self) -> "MediaEngine":
        if self.loaded:
            return self
        executable = shutil.which(self.binary)
        if executable is None:
            raise EngineError(f"ffmpeg binary not found: {self.binary}")
        if self.scratch_base:
            Path(self.scratch_base).mkdir(parents=True, exist_ok=True)
        self._executable = executable
        self.root = Path(tempfile.mkdtemp(prefix="rainloop-", dir=self.scratch_base))
        logger.info("Engine loaded (%s, scratch=%s)", executable, self.root)
        return self

    def terminate(self) -> None:
        proc = self._process
        if proc is not None and proc.poll() is None:
            proc.kill()
        if self.root is not None:
            shutil.rmtree(self.root, ignore_errors=True)
            logger.info("Engine terminated, scratch %s removed", self.root)
        self.root = None
        self._process = None

    def __enter__(self) -> "MediaEngine":
        return self.load()

    def __exit__(self, *exc) -> None:
        self.terminate()

    def _require_loaded(self) -> Path:
        if self.root is None:
            raise EngineNotLoaded("engine is not loaded")
        return self.root

    def _path(self, name: str) -> Path:
        root = self._require_loaded()
        if not name or name in (".", "..") or Path(name).name != name:
            raise ValueError(f"invalid engine file name: {name!r}")
        return root / name

    # ---------- filesystem ----------

    def write_file(self, name: str, data: bytes) -> None:
        self._path(name).write_bytes(data)

    def import_file(self, name: str, source: Path) -> None:
        """Copy a file from disk into the engine without loading it into memory."""
        shutil.copyfile(source, self._path(name))

    def read_file(self, name: str) -> bytes:
        return self._path(name).read_bytes()

    def export_file(self, name: str, dest: Path) -> Path:
        """Move an engine file out to dest; the engine no longer holds it afterwards."""
        src = self._path(name)
        dest = Path(dest)
        dest.parent.mkdir(parents=True, exist_ok=True)
        shutil.move(str(src), str(dest))
        return dest

    def delete_file(self, name: str) -> None:
        self._path(name).unlink()

    def list_dir(self) -> List[str]:
        root = self._require_loaded()
        return sorted(p.name for p in root.iterdir())

    # ---------- progress ----------

    def on_progress(self, callback: ProgressCallback) -> None:
        self._listeners.append(callback)

    def off_progress(self, callback: ProgressCallback) -> None:
        try:
            self._listeners.remove(callback)
        except ValueError:
            pass

    def _notify(self, pct: int) -> None:
        for callback in list(self._listeners):
            try:
                callback(pct)
            except Exception as exc:  # noqa: BLE001
                logger.debug("Progress listener failed: %s", exc)

    # ---------- execution ----------

    def _kill_on_timeout(self, proc: subprocess.Popen) -> None:
        if proc.poll() is None:
            logger.warning("FFmpeg exceeded %ss, killing", self.timeout)
            proc.kill()

    def exec(self, args: Sequence[str]) -> ExecResult:
        root = self._require_loaded()
        cmd = [
            self._executable or self.binary,
            "-hide_banner", "-loglevel", self.loglevel,
            "-nostats", "-progress", "pipe:1",
        ] + list(args)
        duration = expected_duration(args)
        logger.debug("FFmpeg command:\n" + " ".join(shlex.quote(x) for x in cmd))

        last_pct = 0
        with tempfile.TemporaryFile() as err:
            proc = subprocess.Popen(
                cmd,
                cwd=str(root),
                stdout=subprocess.PIPE,
                stderr=err,
                text=True,
            )
            self._process = proc
            watchdog = threading.Timer(self.timeout, self._kill_on_timeout, args=(proc,))
            watchdog.daemon = True
            watchdog.start()
            try:
                for line in proc.stdout:
                    pct = parse_progress_line(line, duration)
                    if pct is not None and pct >= last_pct:
                        last_pct = pct
                        self._notify(pct)
                returncode = proc.wait()
            finally:
                watchdog.cancel()
                self._process = None
            err.seek(0)
            stderr = err.read().decode("utf-8", errors="ignore")

        if returncode != 0:
            logger.error("FFmpeg failed (%s):\n%s", returncode, stderr.strip()[-2000:])
        return ExecResult(returncode, stderr)


__all__ = [
    "EngineError",
    "EngineNotLoaded",
    "ExecResult",
    "MediaEngine",
    "expected_duration",
    "parse_progress_line",
]
