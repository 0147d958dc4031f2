"""
Time-based audio chunking using ffmpeg.
Chunks only when duration exceeds the configured threshold.

Windows are contiguous and gapless: chunk i covers
[i × C, min((i + 1) × C, D)).  Each chunk's offset in the original timeline
is the sum of the measured durations of the chunks before it.
"""

import json
import math
import os
import subprocess
import logging
from pathlib import Path

from ultransc.core.security_utils import run_subprocess_capture, is_nonempty_file
from ultransc.core.error_codes import JobError
from ultransc.core.constants import (
    ErrorCode, CHUNK_DURATION_SEC, CHUNK_MANIFEST_NAME, FFMPEG_BIN,
    CHUNK_CUT_TIMEOUT_SEC,
)
from ultransc.core.models import ChunkEntry
from ultransc.core.normalize import get_audio_duration
from ultransc.core.state_store import atomic_write_text
from ultransc.core.transcribe_whisper import chunk_output_usable

logger = logging.getLogger(__name__)


def needs_chunking(duration_sec: float, threshold_sec: float) -> bool:
    """Check if audio needs chunking based on duration."""
    return duration_sec > threshold_sec


def chunk_count(duration_sec: float, chunk_duration_sec: float) -> int:
    if duration_sec <= 0:
        return 0
    return math.ceil(duration_sec / chunk_duration_sec)


def plan_chunks(duration_sec: float,
                chunk_duration_sec: float = CHUNK_DURATION_SEC) -> list[ChunkEntry]:
    """
    Plan fixed-duration windows over [0, duration_sec).
    The final window may be shorter.  Offsets start out equal to the planned
    starts and are corrected once the cut chunks are measured.
    """
    if chunk_duration_sec <= 0:
        raise ValueError("chunk_duration_sec must be positive")

    chunks = []
    for idx in range(chunk_count(duration_sec, chunk_duration_sec)):
        start = idx * chunk_duration_sec
        length = min(chunk_duration_sec, duration_sec - start)
        chunks.append(ChunkEntry(
            idx=idx,
            start_sec=float(start),
            duration_sec=float(length),
            offset_sec=float(start),
        ))
    return chunks


def chunk_media_path(chunks_dir: Path, entry: ChunkEntry) -> Path:
    return chunks_dir / f"{entry.name}.wav"


def cut_chunk(audio_path: Path, chunks_dir: Path, entry: ChunkEntry,
              timeout: float = CHUNK_CUT_TIMEOUT_SEC,
              open_ended: bool = False) -> Path:
    """
    Cut one window out of the normalized audio (stream copy, no re-encode).
    The final window is cut open-ended so the sub-second tail that the
    whole-second plan does not cover still lands in a chunk.
    """
    chunks_dir.mkdir(parents=True, exist_ok=True)
    chunk_file = chunk_media_path(chunks_dir, entry)
    part_file = chunks_dir / f"{entry.name}.part.wav"

    args = [
        FFMPEG_BIN,
        "-y",
        "-hide_banner",
        "-loglevel", "error",
        "-ss", f"{entry.start_sec:.3f}",
    ]
    if not open_ended:
        args += ["-t", f"{entry.duration_sec:.3f}"]
    args += [
        "-i", str(audio_path),
        "-c", "copy",
        str(part_file),
    ]

    try:
        result = run_subprocess_capture(args, timeout=timeout)
    except subprocess.TimeoutExpired:
        part_file.unlink(missing_ok=True)
        raise JobError(ErrorCode.CHUNKING, f"Chunk {entry.idx} cut exceeded {timeout:.0f}s")
    except OSError as e:
        raise JobError(ErrorCode.CHUNKING, f"Chunk {entry.idx} creation failed: {e}")

    if result.returncode != 0:
        part_file.unlink(missing_ok=True)
        raise JobError(ErrorCode.CHUNKING,
                       f"ffmpeg chunk {entry.idx} failed: {result.stderr[:200] if result.stderr else 'unknown error'}")

    if not is_nonempty_file(part_file):
        part_file.unlink(missing_ok=True)
        raise JobError(ErrorCode.CHUNKING, f"Chunk file {entry.idx} not created")

    os.replace(part_file, chunk_file)
    return chunk_file


def split_audio_into_chunks(audio_path: Path, chunks_dir: Path,
                            entries: list[ChunkEntry],
                            timeout: float = CHUNK_CUT_TIMEOUT_SEC) -> list[ChunkEntry]:
    """
    Cut every planned window that is not already on disk, measure the real
    chunk durations, derive cumulative offsets and write the manifest.
    Returns the entries with media paths and offsets filled in.
    """
    if not entries:
        raise JobError(ErrorCode.NO_CHUNKS, "Chunk plan is empty")

    chunks_dir.mkdir(parents=True, exist_ok=True)
    offset = 0.0
    last_idx = len(entries) - 1
    for entry in entries:
        chunk_file = chunk_media_path(chunks_dir, entry)
        if not is_nonempty_file(chunk_file):
            cut_chunk(audio_path, chunks_dir, entry, timeout,
                      open_ended=entry.idx == last_idx)
        entry.media_path = chunk_file

        measured = get_audio_duration(chunk_file)
        if measured > 0:
            entry.duration_sec = measured
        entry.offset_sec = offset
        offset += entry.duration_sec

    write_manifest(chunks_dir, entries)
    logger.info("Created %d chunks in %s", len(entries), chunks_dir)
    return entries


# ── Manifest ──────────────────────────────────────────────────────────

def write_manifest(chunks_dir: Path, entries: list[ChunkEntry]):
    manifest = {
        'chunking_mode': 'time_based',
        'chunks': [
            {
                'idx': e.idx,
                'file': chunk_media_path(chunks_dir, e).name,
                'start_sec': e.start_sec,
                'duration_sec': e.duration_sec,
                'offset_sec': e.offset_sec,
            }
            for e in entries
        ],
    }
    atomic_write_text(chunks_dir / CHUNK_MANIFEST_NAME, json.dumps(manifest, indent=2))


def read_manifest(chunks_dir: Path) -> list[ChunkEntry]:
    """Load chunk entries; raises JobError when the manifest is unusable."""
    path = chunks_dir / CHUNK_MANIFEST_NAME
    try:
        with open(path, 'r', encoding='utf-8') as f:
            data = json.load(f)
        entries = [
            ChunkEntry(
                idx=int(c['idx']),
                start_sec=float(c['start_sec']),
                duration_sec=float(c['duration_sec']),
                offset_sec=float(c['offset_sec']),
                media_path=chunks_dir / c['file'],
            )
            for c in data['chunks']
        ]
    except (OSError, ValueError, KeyError, TypeError) as e:
        raise JobError(ErrorCode.CHUNKING, f"Chunk manifest unreadable: {e}")

    entries.sort(key=lambda e: e.idx)
    if not entries:
        raise JobError(ErrorCode.NO_CHUNKS, "Chunk manifest lists no chunks")
    if [e.idx for e in entries] != list(range(len(entries))):
        raise JobError(ErrorCode.CHUNKING, "Chunk indices are not contiguous")
    return entries


def chunk_outputs_complete(chunks_dir: Path, entry: ChunkEntry) -> bool:
    """True when all three transcription outputs of a chunk are usable for stitching."""
    return all(chunk_output_usable(p) for p in entry.output_paths(chunks_dir).values())
