#!/usr/bin/env python3

import argparse
import logging
import os
import shlex
import shutil
import subprocess
import sys
import time
from typing import List, NoReturn, Optional, Sequence, Tuple, TypedDict

OUT_EXT = ".mp4"
FFPROBE = "ffprobe"
FFMPEG = "ffmpeg"

QUALITY_LADDER: Tuple[Tuple[str, int], ...] = (
    ("2160", 2160),
    ("1440", 1440),
    ("1080", 1080),
    ("720", 720),
    ("480", 480),
    ("360", 360),
    ("240", 240),
    ("144", 144),
)

USAGE_LINES = (
    "Usage: vladder <video_path>",
    "Example: vladder video.mp4",
)

_SEPARATORS = "".join(sep for sep in (os.sep, os.altsep) if sep)

VERBOSE_LEVEL = 0


class PipelineError(RuntimeError):
    pass


class ProbeError(PipelineError):
    LAUNCH = "launch"
    EXIT = "exit"
    PARSE = "parse"

    def __init__(self, reason: str, message: str) -> None:
        super().__init__(message)
        self.reason = reason


class RunSummary(TypedDict):
    folder: str
    source_height: int
    original: str
    ladder: List[Tuple[str, int]]
    completed: List[str]
    failed: List[str]
    elapsed: float


def _print_command(cmd: Sequence[str]) -> None:
    if not VERBOSE_LEVEL:
        return
    cmdline = " ".join(shlex.quote(str(part)) for part in cmd)
    print(cmdline, file=sys.stderr)


def stem(path: str) -> str:
    if not path:
        raise ValueError("empty path")
    trimmed = path.rstrip(_SEPARATORS)
    cut = max(trimmed.rfind(sep) for sep in _SEPARATORS)
    segment = trimmed[cut + 1 :]
    if not segment:
        raise ValueError(f"no file name in path: {path!r}")
    dot = segment.rfind(".")
    if dot > 0:
        return segment[:dot]
    return segment


def output_path(folder: str, base: str, label: str) -> str:
    return os.path.join(folder, f"{base} {label}{OUT_EXT}")


def _parse_height(text: str) -> Optional[int]:
    for line in text.splitlines():
        line = line.strip()
        if not line:
            continue
        if not (line.isascii() and line.isdigit()):
            return None
        value = int(line)
        return value if value > 0 else None
    return None


def probe_height(path: str) -> int:
    cmd = [
        FFPROBE,
        "-v",
        "error",
        "-select_streams",
        "v:0",
        "-show_entries",
        "stream=height",
        "-of",
        "default=noprint_wrappers=1:nokey=1",
        "-i",
        path,
    ]
    _print_command(cmd)
    try:
        proc = subprocess.run(
            cmd,
            stdout=subprocess.PIPE,
            stderr=subprocess.PIPE,
        )
    except OSError as exc:
        raise ProbeError(
            ProbeError.LAUNCH, f"could not run {FFPROBE}: {exc}"
        ) from exc

    if proc.returncode != 0:
        err = (proc.stderr or b"").decode("utf-8", "replace").strip()
        message = f"{FFPROBE} exited with {proc.returncode} for {path}"
        if err:
            message += f": {err.splitlines()[-1]}"
        raise ProbeError(ProbeError.EXIT, message)

    stdout = (proc.stdout or b"").decode("utf-8", "replace")
    height = _parse_height(stdout)
    if height is None:
        logging.debug("unusable %s output for %s: %r", FFPROBE, path, stdout)
        raise ProbeError(
            ProbeError.PARSE, f"could not determine video height of {path}"
        )
    logging.debug("probed height %d for %s", height, path)
    return height


def subordinate_qualities(height: int) -> List[Tuple[str, int]]:
    # downscale only; the source height itself is covered by the original copy
    return [entry for entry in QUALITY_LADDER if entry[1] < height]


def copy_original(src: str, folder: str, base: str, height: int) -> str:
    dest = output_path(folder, base, str(height))
    shutil.copyfile(src, dest)
    logging.info("copied original: %s -> %s", src, dest)
    return dest


def transcode(src: str, dest: str, height: int) -> bool:
    cmd = [
        FFMPEG,
        "-y",
        "-i",
        src,
        "-vf",
        f"scale=-2:{height}",
        "-c:a",
        "copy",
        dest,
    ]
    _print_command(cmd)
    try:
        proc = subprocess.run(cmd)
    except OSError as exc:
        logging.error("could not run %s: %s", FFMPEG, exc)
        return False
    if proc.returncode != 0:
        logging.debug("%s exited with %s for %s", FFMPEG, proc.returncode, dest)
        return False
    return True


def _make_folder(folder: str) -> None:
    try:
        os.makedirs(folder, exist_ok=True)
    except OSError as exc:
        raise PipelineError(f"cannot create output folder {folder}: {exc}") from exc


def process_video(path: str) -> RunSummary:
    start = time.perf_counter()

    base = stem(path)
    folder = base
    _make_folder(folder)

    height = probe_height(path)
    print(f"Input video resolution: {height}p", flush=True)

    try:
        original = copy_original(path, folder, base, height)
    except OSError as exc:
        raise PipelineError(f"failed to copy original {path}: {exc}") from exc
    print(f"Original copied as: {original}", flush=True)

    summary: RunSummary = {
        "folder": folder,
        "source_height": height,
        "original": original,
        "ladder": subordinate_qualities(height),
        "completed": [],
        "failed": [],
        "elapsed": 0.0,
    }

    ladder = summary["ladder"]
    if not ladder:
        print(f"No subordinate qualities to process for {height}p video.", flush=True)
        summary["elapsed"] = time.perf_counter() - start
        return summary

    labels = "".join(f"{label}p " for label, _ in ladder)
    print(f"Processing subordinate qualities: {labels}", flush=True)

    for label, target in ladder:
        print(f"Processing {label}p...", flush=True)
        if transcode(path, output_path(folder, base, label), target):
            summary["completed"].append(label)
            print(f"✓ {label}p completed", flush=True)
        else:
            summary["failed"].append(label)
            print(f"✗ {label}p failed", flush=True)

    done = len(summary["completed"])
    if summary["failed"]:
        logging.warning("qualities encoded: %d / %d", done, len(ladder))
    else:
        logging.info("qualities encoded: %d / %d", done, len(ladder))

    summary["elapsed"] = time.perf_counter() - start
    print()
    print(f"Processing complete. Files saved in folder: {folder}")
    print(f"Total processing time: {summary['elapsed']:.2f} seconds", flush=True)
    return summary


class _ArgumentParser(argparse.ArgumentParser):
    def error(self, message: str) -> NoReturn:
        logging.debug("argument error: %s", message)
        for line in USAGE_LINES:
            print(line, file=sys.stderr)
        raise SystemExit(1)


def _parse_args(ap: argparse.ArgumentParser, argv: List[str]) -> Tuple[str, int]:
    # a lone existing file is the video even when it looks like an option
    if len(argv) == 1 and os.path.isfile(argv[0]):
        return argv[0], 0
    args, rest = ap.parse_known_args(argv)
    if rest[:1] == ["--"]:
        rest = rest[1:]
    elif any(arg.startswith("-") and not os.path.isfile(arg) for arg in rest):
        ap.error(f"unrecognized arguments: {' '.join(rest)}")
    if len(rest) != 1:
        ap.error("expected exactly one video path")
    return rest[0], args.verbose


def main(argv: Optional[Sequence[str]] = None) -> int:
    ap = _ArgumentParser(
        prog="vladder",
        description="Copy a video into <stem>/ and downscale it to every lower standard height.",
        add_help=False,
        allow_abbrev=False,
    )
    ap.add_argument(
        "-v",
        "--verbose",
        action="count",
        default=0,
        help="Increase verbosity (-v, -vv).",
    )
    try:
        video_path, verbose = _parse_args(
            ap, list(sys.argv[1:] if argv is None else argv)
        )
    except SystemExit as exc:
        return int(exc.code or 0)

    level = (
        logging.WARNING
        if verbose == 0
        else (logging.INFO if verbose == 1 else logging.DEBUG)
    )
    global VERBOSE_LEVEL
    VERBOSE_LEVEL = verbose
    logging.basicConfig(
        level=level, stream=sys.stderr, format="%(levelname)s: %(message)s"
    )

    if not os.path.isfile(video_path):
        logging.error("file does not exist: %s", video_path)
        return 1

    try:
        process_video(video_path)
    except PipelineError as exc:
        logging.error("%s", exc)
        return 1
    return 0


if __name__ == "__main__":
    sys.exit(main())
