"""
Audio normalization and duration probing using ffmpeg/ffprobe.
Target: mono, 16kHz, 16-bit PCM WAV (what whisper.cpp expects).
"""

import os
import subprocess
import logging
from pathlib import Path

from ultransc.core.security_utils import run_subprocess_capture, is_nonempty_file
from ultransc.core.error_codes import JobError
from ultransc.core.constants import (
    ErrorCode, NORM_CHANNELS, NORM_SAMPLE_RATE, NORM_CODEC,
    FFMPEG_BIN, FFPROBE_BIN, CONVERT_TIMEOUT_SEC, PROBE_TIMEOUT_SEC,
)

logger = logging.getLogger(__name__)


def build_convert_args(input_path: Path, output_path: Path, audio_filter: str = "") -> list[str]:
    args = [
        FFMPEG_BIN,
        "-y",                           # overwrite
        "-hide_banner",
        "-loglevel", "error",
        "-i", str(input_path),
        "-vn",                          # drop any video stream
    ]
    if audio_filter:
        args.extend(["-af", audio_filter])
    args.extend([
        "-ar", str(NORM_SAMPLE_RATE),   # 16kHz
        "-ac", str(NORM_CHANNELS),      # mono
        "-c:a", NORM_CODEC,             # s16le PCM
        str(output_path),
    ])
    return args


def convert_to_wav(input_path: Path, output_path: Path,
                   audio_filter: str = "",
                   timeout: float = CONVERT_TIMEOUT_SEC) -> Path:
    """
    Convert any media file to normalized WAV.
    ffmpeg writes to a sibling .part.wav which is renamed into place only
    after it is verified, so a half-written output never looks finished.
    Returns output_path.
    """
    output_path.parent.mkdir(parents=True, exist_ok=True)
    part_path = output_path.with_name(f"{output_path.stem}.part{output_path.suffix}")

    args = build_convert_args(input_path, part_path, audio_filter)

    try:
        result = run_subprocess_capture(args, timeout=timeout)
    except subprocess.TimeoutExpired:
        part_path.unlink(missing_ok=True)
        raise JobError(ErrorCode.CONVERT_TIMEOUT,
                       f"ffmpeg conversion exceeded {timeout:.0f}s")
    except OSError as e:
        raise JobError(ErrorCode.CONVERT_FAILED, f"ffmpeg conversion failed: {e}")

    if result.returncode != 0:
        part_path.unlink(missing_ok=True)
        stderr = result.stderr or ""
        raise JobError(ErrorCode.CONVERT_FAILED,
                       f"ffmpeg failed (rc={result.returncode}): {stderr[:300]}")

    if not is_nonempty_file(part_path):
        part_path.unlink(missing_ok=True)
        raise JobError(ErrorCode.CONVERT_FAILED, "Normalized audio missing or empty")

    os.replace(part_path, output_path)
    logger.info("Normalized audio: %s", output_path)
    return output_path


def get_audio_duration(media_path: Path, timeout: float = PROBE_TIMEOUT_SEC) -> float:
    """Get media duration in seconds using ffprobe; 0.0 when unknown."""
    args = [
        FFPROBE_BIN,
        "-v", "error",
        "-show_entries", "format=duration",
        "-of", "default=noprint_wrappers=1:nokey=1",
        str(media_path),
    ]

    try:
        result = run_subprocess_capture(args, timeout=timeout)
    except (subprocess.TimeoutExpired, OSError) as e:
        logger.warning("ffprobe failed for %s: %s", media_path, e)
        return 0.0

    if result.returncode != 0:
        logger.warning("ffprobe rc=%d for %s", result.returncode, media_path)
        return 0.0

    try:
        return float(result.stdout.strip())
    except ValueError:
        return 0.0


def probe_duration(media_path: Path, timeout: float = PROBE_TIMEOUT_SEC) -> int:
    """
    Duration in whole seconds.  A media file that cannot be probed is a
    stage failure, since every later decision depends on it.
    """
    seconds = get_audio_duration(media_path, timeout)
    if seconds <= 0:
        raise JobError(ErrorCode.PROBE_FAILED, f"Could not determine duration of {media_path.name}")
    return int(seconds)
