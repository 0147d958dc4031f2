"""
whisper.cpp speech-to-text integration (whisper-cli).
Produces <prefix>.txt, <prefix>.srt and <prefix>.json next to each other.
"""

import json
import subprocess
import logging
from pathlib import Path

from ultransc.core.security_utils import run_subprocess_capture, is_nonempty_file
from ultransc.core.error_codes import JobError
from ultransc.core.constants import (
    ErrorCode, WHISPER_BIN, TRANSCRIBE_TIMEOUT_SEC,
)

logger = logging.getLogger(__name__)

OUTPUT_SUFFIXES = ('.txt', '.srt', '.json')


def output_paths(prefix: Path) -> dict:
    return {suffix.lstrip('.'): prefix.with_name(prefix.name + suffix) for suffix in OUTPUT_SUFFIXES}


def chunk_output_usable(path: Path) -> bool:
    """
    True when a chunk output can be stitched: readable, not blank, and for
    .json a parseable document.  Skipping a chunk and stitching it use this
    same rule.
    """
    try:
        text = path.read_text(encoding='utf-8', errors='replace')
    except OSError:
        return False
    if not text.strip():
        return False
    if path.suffix == '.json':
        try:
            json.loads(text)
        except json.JSONDecodeError:
            return False
    return True


def build_whisper_args(audio_path: Path, model_path: Path, output_prefix: Path,
                       language: str = "auto") -> list[str]:
    return [
        WHISPER_BIN,
        str(audio_path),
        "--model", str(model_path),
        "--output-txt",
        "--output-srt",
        "--output-json",
        "--language", language,
        "--output-file", str(output_prefix),
    ]


def transcribe_audio(audio_path: Path, model_path: Path, output_prefix: Path,
                     language: str = "auto",
                     timeout: float = TRANSCRIBE_TIMEOUT_SEC,
                     require_all: bool = False) -> dict:
    """
    Run whisper-cli on a normalized WAV.
    A missing or empty .txt is a failure regardless of the exit code; with
    require_all the .srt and .json must exist too.
    Returns {'txt': Path, 'srt': Path, 'json': Path}.
    """
    output_prefix.parent.mkdir(parents=True, exist_ok=True)
    paths = output_paths(output_prefix)
    # Stale partial outputs from an interrupted attempt must not pass the check
    for path in paths.values():
        path.unlink(missing_ok=True)

    args = build_whisper_args(audio_path, model_path, output_prefix, language)

    try:
        result = run_subprocess_capture(args, timeout=timeout)
    except subprocess.TimeoutExpired:
        raise JobError(ErrorCode.TRANSCRIBE_TIMEOUT,
                       f"whisper-cli exceeded {timeout:.0f}s on {audio_path.name}")
    except OSError as e:
        raise JobError(ErrorCode.TRANSCRIBE_FAILED, f"whisper-cli could not start: {e}")

    if result.returncode != 0:
        stderr = result.stderr or ""
        raise JobError(ErrorCode.TRANSCRIBE_FAILED,
                       f"whisper-cli failed (rc={result.returncode}) on {audio_path.name}: {stderr[:300]}")

    if not is_nonempty_file(paths['txt']):
        raise JobError(ErrorCode.TRANSCRIBE_FAILED,
                       f"whisper-cli produced no text for {audio_path.name}")

    if require_all:
        unusable = [k for k, path in paths.items() if not chunk_output_usable(path)]
        if unusable:
            raise JobError(ErrorCode.CHUNK_OUTPUT_MISSING,
                           f"whisper-cli output unusable for {audio_path.name}: {', '.join(unusable)}")
        logger.info("Transcribed %s -> %s.*", audio_path.name, output_prefix)
        return paths

    missing = [k for k in ('srt', 'json') if not is_nonempty_file(paths[k])]
    if missing:
        logger.warning("whisper-cli did not produce %s for %s", ', '.join(missing), audio_path.name)

    logger.info("Transcribed %s -> %s.*", audio_path.name, output_prefix)
    return paths
