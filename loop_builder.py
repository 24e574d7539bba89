"""
loop_builder.py - turns a LoopRequest into the ffmpeg argument list.

- Inputs are looped (video/audio) or held (watermark image) and the output is cut with -t
- Video filter graph is a linear chain of stages ending in a stable [vout] label
- Stages are kept as descriptors and only rendered to text at the boundary
"""

from dataclasses import dataclass, replace
from pathlib import PurePath
import shlex
from typing import List, Optional, Sequence, Tuple

DEFAULT_POSITION = "bottom-right"

# Anchor templates; W/H are replaced by the caller's width/height tokens.
POSITIONS = {
    "top-left": ("20", "20"),
    "top-right": ("(W-w-20)", "20"),
    "center": ("(W-w)/2", "(H-h)/2"),
    "bottom-left": ("20", "(H-h-20)"),
    "bottom-right": ("(W-w-20)", "(H-h-20)"),
}

VIDEO_INPUT = "0:v"
VIDEO_OUTPUT = "vout"
OUTPUT_NAME = "output.mp4"
MIN_IMAGE_SCALE = 10

# Encoding settings
VIDEO_ENCODING = "-c:v libx264 -preset medium -crf 18"
AUDIO_ENCODING = "-c:a aac -b:a 192k -ar 48000"
CONTAINER_FLAGS = "-movflags +faststart"


# ---------- Helpers ----------

def format_number(value) -> str:
    """Render a number the way a browser prints it: 1 not 1.0, 0.4 not 0.40."""
    if isinstance(value, bool):
        value = int(value)
    if isinstance(value, int):
        return str(value)
    text = repr(float(value))
    if text.endswith(".0"):
        text = text[:-2]
    return text


def to_int(value, default: int = 0) -> int:
    try:
        return int(float(value))
    except (TypeError, ValueError):
        return default


def clamp_percent(value) -> float:
    try:
        number = float(value)
    except (TypeError, ValueError):
        number = 0.0
    return min(100.0, max(0.0, number))


def percent_to_factor(value) -> float:
    return clamp_percent(value) / 100


def clamp_duration(value) -> int:
    return max(1, to_int(value or 0))


def escape_drawtext(text: str) -> str:
    return text.replace(":", r"\:").replace('"', r"\"")


def quote_drawtext(text: str) -> str:
    """Single-quote escaped text; an embedded ' closes the quote, is escaped and reopens it."""
    return "'" + escape_drawtext(text).replace("'", r"'\''") + "'"


def resolve_position(name: Optional[str], base_w: str = "W", base_h: str = "H") -> Tuple[str, str]:
    x, y = POSITIONS.get(name or "", POSITIONS[DEFAULT_POSITION])
    return (
        x.replace("W", base_w).replace("H", base_h),
        y.replace("W", base_w).replace("H", base_h),
    )


def fade_out_start(duration_sec, fade_ms) -> float:
    # Not clamped: a fade longer than the output yields a negative start.
    return clamp_duration(duration_sec) - to_int(fade_ms) / 1000


def staged_name(base: str, filename: Optional[str], default_ext: str) -> str:
    """Fixed base name plus the extension of the uploaded file, e.g. audio.wav."""
    suffix = PurePath(filename or "").suffix.lstrip(".")
    return f"{base}.{suffix or default_ext}"


# ---------- Stage descriptors ----------

@dataclass(frozen=True)
class Filter:
    name: str
    # (key, value) pairs; key None renders the value positionally
    args: Tuple[Tuple[Optional[str], str], ...] = ()

    def render(self) -> str:
        if not self.args:
            return self.name
        parts = [value if key is None else f"{key}={value}" for key, value in self.args]
        return f"{self.name}=" + ":".join(parts)


@dataclass(frozen=True)
class Stage:
    inputs: Tuple[str, ...]
    filters: Tuple[Filter, ...]
    output: str

    def render(self) -> str:
        labels = "".join(f"[{label}]" for label in self.inputs)
        chain = ",".join(f.render() for f in self.filters)
        return f"{labels}{chain}[{self.output}]"


def render_filter_graph(stages: Sequence[Stage]) -> str:
    return ";".join(stage.render() for stage in stages)


def render_filter_chain(filters: Sequence[Filter]) -> str:
    return ",".join(f.render() for f in filters)


# ---------- Request ----------

@dataclass(frozen=True)
class LoopRequest:
    video_name: str = "video.mp4"
    use_external_audio: bool = False
    audio_name: Optional[str] = None
    mute_original: bool = True
    duration_sec: int = 3600
    volume: int = 80
    fade_in: bool = True
    fade_out: bool = True
    fade_ms: int = 500
    wm_text: str = ""
    wm_font_size: int = 36
    wm_text_opacity: int = 50
    font_name: Optional[str] = None
    image_name: Optional[str] = None
    wm_image_opacity: int = 40
    wm_image_scale: int = 100
    wm_position: str = DEFAULT_POSITION

    def with_changes(self, **changes) -> "LoopRequest":
        return replace(self, **changes)

    @property
    def duration(self) -> int:
        return clamp_duration(self.duration_sec)

    @property
    def has_text(self) -> bool:
        return bool(self.wm_text and self.wm_text.strip())

    @property
    def external_audio(self) -> bool:
        return bool(self.use_external_audio and self.audio_name)

    @property
    def image_input_index(self) -> int:
        return 2 if self.external_audio else 1


# ---------- Filter graph ----------

def _drawtext_stage(request: LoopRequest, source: str, x: str, y: str) -> Stage:
    opacity = format_number(percent_to_factor(request.wm_text_opacity))
    args: List[Tuple[Optional[str], str]] = [("text", quote_drawtext(request.wm_text))]
    if request.font_name:
        args.append(("fontfile", request.font_name))
    args += [
        ("fontsize", format_number(to_int(request.wm_font_size))),
        ("fontcolor", f"white@{opacity}"),
        ("x", x),
        ("y", y),
    ]
    return Stage((source,), (Filter("drawtext", tuple(args)),), "v_txt")


def _image_stages(request: LoopRequest, source: str, x: str, y: str) -> List[Stage]:
    opacity = percent_to_factor(request.wm_image_opacity)
    scale = max(MIN_IMAGE_SCALE, to_int(request.wm_image_scale)) / 100.0
    prepare = Stage(
        (f"{request.image_input_index}:v",),
        (
            Filter("format", ((None, "rgba"),)),
            Filter("scale", ((None, f"iw*{format_number(scale)}"), (None, "-1"))),
            Filter("colorchannelmixer", (("aa", format_number(opacity)),)),
        ),
        "wm",
    )
    overlay = Stage((source, "wm"), (Filter("overlay", (("x", x), ("y", y))),), "v_wm")
    return [prepare, overlay]


def build_video_stages(request: LoopRequest) -> List[Stage]:
    x, y = resolve_position(request.wm_position, "w", "h")
    stages: List[Stage] = []
    current = VIDEO_INPUT

    if request.has_text:
        stage = _drawtext_stage(request, current, x, y)
        stages.append(stage)
        current = stage.output

    if request.image_name:
        image_stages = _image_stages(request, current, x, y)
        stages.extend(image_stages)
        current = image_stages[-1].output

    stages.append(Stage((current,), (Filter("format", ((None, "yuv420p"),)),), VIDEO_OUTPUT))
    return stages


# ---------- Audio ----------

def _fade_filters(request: LoopRequest) -> List[Filter]:
    fade_sec = format_number(to_int(request.fade_ms) / 1000)
    filters = []
    if request.fade_in:
        filters.append(Filter("afade", (("t", "in"), ("st", "0"), ("d", fade_sec))))
    if request.fade_out:
        start = format_number(fade_out_start(request.duration, request.fade_ms))
        filters.append(Filter("afade", (("t", "out"), ("st", start), ("d", fade_sec))))
    return filters


def build_audio_filters(request: LoopRequest) -> Tuple[Optional[str], List[Filter]]:
    """Return (stream to map, audio filters); (None, []) means no audio at all."""
    if request.external_audio:
        volume = Filter("volume", ((None, format_number(percent_to_factor(request.volume))),))
        return "1:a", [volume] + _fade_filters(request)
    if not request.mute_original:
        return "0:a", _fade_filters(request)
    return None, []


# ---------- Arguments ----------

def build_input_args(request: LoopRequest) -> List[str]:
    args = ["-stream_loop", "-1", "-i", request.video_name]
    if request.external_audio:
        args += ["-stream_loop", "-1", "-i", request.audio_name]
    if request.image_name:
        args += ["-loop", "1", "-i", request.image_name]
    return args


def build_args(request: LoopRequest) -> List[str]:
    args = ["-y"] + build_input_args(request)

    args += ["-filter_complex", render_filter_graph(build_video_stages(request))]
    args += ["-map", f"[{VIDEO_OUTPUT}]"]

    audio_map, audio_filters = build_audio_filters(request)
    if audio_map:
        if audio_filters:
            args += ["-filter:a", render_filter_chain(audio_filters)]
        args += ["-map", audio_map]
    else:
        args.append("-an")

    args += ["-t", str(request.duration)]
    args += shlex.split(VIDEO_ENCODING)
    if audio_map:
        args += shlex.split(AUDIO_ENCODING)
    args += shlex.split(CONTAINER_FLAGS) + [OUTPUT_NAME]
    return args


def describe_args(args: Sequence[str]) -> str:
    return " ".join(shlex.quote(a) for a in args)


__all__ = [
    "Filter",
    "LoopRequest",
    "POSITIONS",
    "Stage",
    "build_args",
    "build_audio_filters",
    "build_video_stages",
    "clamp_percent",
    "describe_args",
    "escape_drawtext",
    "fade_out_start",
    "quote_drawtext",
    "render_filter_graph",
    "resolve_position",
    "staged_name",
]
