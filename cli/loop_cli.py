#!/usr/bin/env python3
"""
Command-line front end for Rainloop.

Usage:
    python -m cli.loop_cli clip.mp4 --duration 1800 --audio rain.mp3 --out long.mp4
    python -m cli.loop_cli clip.mp4 --text "ASMR Rain" --print-args

Behavior:
 - Build the same request the web form builds
 - --print-args prints the ffmpeg argument list and exits
 - Otherwise run one conversion with a private engine and write the result to --out
"""

import argparse
import sys
from pathlib import Path
from typing import List, Optional

from loop_builder import DEFAULT_POSITION, POSITIONS, LoopRequest, build_args, describe_args
from media_engine import EngineError, MediaEngine
from orchestrator import LoopFailed, LoopInputs, LoopUpload, PreconditionError, run_loop_to_file, staged_request


def parse_args(argv: Optional[List[str]] = None) -> argparse.Namespace:
    ap = argparse.ArgumentParser(description="Loop a short video to a target duration with audio and watermark.")
    ap.add_argument("video", help="Source video file")
    ap.add_argument("--out", default="output.mp4", help="Where to write the result")
    ap.add_argument("--duration", type=int, default=3600, help="Target duration in seconds")
    ap.add_argument("--audio", help="External audio file (replaces the original audio)")
    ap.add_argument("--keep-original-audio", action="store_true", help="Keep the video's own audio")
    ap.add_argument("--volume", type=int, default=80, help="External audio volume (%%)")
    ap.add_argument("--no-fade-in", action="store_true")
    ap.add_argument("--no-fade-out", action="store_true")
    ap.add_argument("--fade-ms", type=int, default=500, help="Fade length in milliseconds")
    ap.add_argument("--text", default="", help="Watermark text")
    ap.add_argument("--font-size", type=int, default=36)
    ap.add_argument("--text-opacity", type=int, default=50)
    ap.add_argument("--font", help="TTF/OTF font for the watermark text")
    ap.add_argument("--image", help="Watermark image")
    ap.add_argument("--image-opacity", type=int, default=40)
    ap.add_argument("--image-scale", type=int, default=100)
    ap.add_argument("--position", default=DEFAULT_POSITION, choices=sorted(POSITIONS))
    ap.add_argument("--print-args", action="store_true", help="Print the ffmpeg arguments and exit")
    return ap.parse_args(argv)


def request_from_args(args: argparse.Namespace) -> LoopRequest:
    return LoopRequest(
        use_external_audio=bool(args.audio),
        mute_original=not args.keep_original_audio,
        duration_sec=args.duration,
        volume=args.volume,
        fade_in=not args.no_fade_in,
        fade_out=not args.no_fade_out,
        fade_ms=args.fade_ms,
        wm_text=args.text,
        wm_font_size=args.font_size,
        wm_text_opacity=args.text_opacity,
        wm_image_opacity=args.image_opacity,
        wm_image_scale=args.image_scale,
        wm_position=args.position,
    )


def _load(path: Optional[str]) -> Optional[LoopUpload]:
    if not path:
        return None
    p = Path(path)
    if not p.is_file():
        raise FileNotFoundError(f"No such file: {p}")
    return LoopUpload(filename=p.name, path=p)


def inputs_from_args(args: argparse.Namespace) -> LoopInputs:
    return LoopInputs(
        video=_load(args.video),
        audio=_load(args.audio),
        image=_load(args.image),
        font=_load(args.font),
    )


def print_progress(pct: int) -> None:
    print(f"\rProgress: {pct:3d}%", end="", flush=True)


def main(argv: Optional[List[str]] = None) -> int:
    args = parse_args(argv)
    request = request_from_args(args)
    try:
        inputs = inputs_from_args(args)
    except OSError as exc:
        print(f"Cannot read input: {exc}", file=sys.stderr)
        return 2

    if args.print_args:
        print(describe_args(build_args(staged_request(request, inputs))))
        return 0

    out = Path(args.out)
    try:
        with MediaEngine() as engine:
            run_loop_to_file(engine, request, inputs, out, on_progress=print_progress)
    except PreconditionError as exc:
        print(str(exc), file=sys.stderr)
        return 2
    except EngineError as exc:
        print(f"Engine unavailable: {exc}", file=sys.stderr)
        return 1
    except LoopFailed as exc:
        print()
        print(exc.message, file=sys.stderr)
        if exc.detail:
            print(exc.detail, file=sys.stderr)
        return 1

    print()
    print(f"Saved: {out}")
    return 0


if __name__ == "__main__":
    sys.exit(main())
