"""
Stitch per-chunk transcription outputs into one job output.

Three independent reassembly paths:
  - plain text: chunk texts in index order, each followed by a blank line
  - SRT: entries renumbered with one running index; timestamps shifted by
    the chunk offset (or copied forward unchanged in legacy mode)
  - JSON: segment lists concatenated in chunk order
"""

import json
import re
import logging
from pathlib import Path

from ultransc.core.error_codes import JobError
from ultransc.core.constants import ErrorCode
from ultransc.core.models import ChunkEntry
from ultransc.core.state_store import atomic_write_text
from ultransc.core.transcribe_whisper import chunk_output_usable

logger = logging.getLogger(__name__)

SRT_TIME_RE = re.compile(
    r"^\s*(\d{1,}):(\d{2}):(\d{2})[,.](\d{3})\s*-->\s*(\d{1,}):(\d{2}):(\d{2})[,.](\d{3})(.*)$"
)

# whisper-cli names the segment list "transcription"; other builds use "segments"
SEGMENT_KEYS = ('transcription', 'segments')


# ── Time helpers ──────────────────────────────────────────────────────

def srt_time_to_ms(h: str, m: str, s: str, ms: str) -> int:
    return int(h) * 3_600_000 + int(m) * 60_000 + int(s) * 1_000 + int(ms)


def ms_to_srt_time(ms_total: int) -> str:
    """Milliseconds -> HH:MM:SS,mmm with carry into hours."""
    ms_total = max(0, int(ms_total))
    hh = ms_total // 3_600_000
    mm = (ms_total % 3_600_000) // 60_000
    ss = (ms_total % 60_000) // 1_000
    ms = ms_total % 1_000
    return f"{hh:02d}:{mm:02d}:{ss:02d},{ms:03d}"


def shift_time_line(line: str, offset_ms: int) -> str:
    """Shift both ends of an SRT timing line; lines that do not parse are returned as-is."""
    m = SRT_TIME_RE.match(line)
    if not m:
        return line
    start = srt_time_to_ms(*m.group(1, 2, 3, 4)) + offset_ms
    end = srt_time_to_ms(*m.group(5, 6, 7, 8)) + offset_ms
    return f"{ms_to_srt_time(start)} --> {ms_to_srt_time(end)}{m.group(9)}"


# ── Plain text ────────────────────────────────────────────────────────

def stitch_text(texts: list[str]) -> str:
    """
    Concatenate chunk texts in order.  Every chunk is terminated by one
    blank line, so N chunks carry N separators.
    """
    return ''.join(text.strip('\n') + '\n\n' for text in texts)


# ── SRT ───────────────────────────────────────────────────────────────

def parse_srt_blocks(raw: str) -> list[tuple[str, list[str]]]:
    """
    Split SRT text into (timing_line, text_lines) pairs.
    The numeric index line is dropped; blocks without a timing line are
    skipped.
    """
    blocks = []
    for block in re.split(r"\n\s*\n", raw.replace('\r\n', '\n').strip()):
        lines = [line for line in block.splitlines() if line.strip() != ""]
        if not lines:
            continue
        timing_idx = next((i for i, line in enumerate(lines) if '-->' in line), None)
        if timing_idx is None:
            logger.debug("Skipping SRT block without timing line: %r", lines[0][:60])
            continue
        blocks.append((lines[timing_idx].strip(), lines[timing_idx + 1:]))
    return blocks


def stitch_srt(srt_texts: list[str], offsets_sec: list[float],
               apply_offsets: bool = True) -> str:
    """
    Renumber entries across all chunks with a running index starting at 1.
    With apply_offsets each timing line is moved by its chunk's offset.
    """
    out_lines: list[str] = []
    counter = 0
    for raw, offset in zip(srt_texts, offsets_sec):
        offset_ms = int(round(offset * 1000))
        for timing, text_lines in parse_srt_blocks(raw):
            counter += 1
            out_lines.append(str(counter))
            out_lines.append(shift_time_line(timing, offset_ms) if apply_offsets else timing)
            out_lines.extend(text_lines)
            out_lines.append("")
    return "\n".join(out_lines)


# ── Structured segments ───────────────────────────────────────────────

def _segment_list(doc: dict) -> tuple[str, list]:
    for key in SEGMENT_KEYS:
        if isinstance(doc.get(key), list):
            return key, doc[key]
    return SEGMENT_KEYS[0], []


def _shift_segment(segment: dict, offset_ms: int) -> dict:
    segment = dict(segment)
    offsets = segment.get('offsets')
    if isinstance(offsets, dict):
        segment['offsets'] = {
            k: (v + offset_ms if isinstance(v, (int, float)) else v) for k, v in offsets.items()
        }
    stamps = segment.get('timestamps')
    if isinstance(stamps, dict):
        shifted = {}
        for k, v in stamps.items():
            m = re.match(r"^(\d+):(\d{2}):(\d{2})[,.](\d{3})$", str(v))
            shifted[k] = ms_to_srt_time(srt_time_to_ms(*m.groups()) + offset_ms) if m else v
        segment['timestamps'] = shifted
    # faster-whisper style floats in seconds
    for k in ('start', 'end'):
        if isinstance(segment.get(k), (int, float)):
            segment[k] = segment[k] + offset_ms / 1000
    return segment


def stitch_segments(docs: list[dict], offsets_sec: list[float],
                    apply_offsets: bool = True) -> dict:
    """
    Concatenate segment lists in chunk order.  Top-level metadata of the
    first chunk (model, params, ...) is kept; other per-chunk metadata is
    dropped.
    """
    if not docs:
        return {SEGMENT_KEYS[0]: []}

    key, _ = _segment_list(docs[0])
    combined = []
    for doc, offset in zip(docs, offsets_sec):
        _, segments = _segment_list(doc)
        offset_ms = int(round(offset * 1000))
        for segment in segments:
            if apply_offsets and isinstance(segment, dict):
                segment = _shift_segment(segment, offset_ms)
            combined.append(segment)

    result = {k: v for k, v in docs[0].items() if k not in SEGMENT_KEYS}
    result[key] = combined
    result['chunks'] = len(docs)
    return result


# ── File-level stitching ──────────────────────────────────────────────

def _read_chunk_output(path: Path, idx: int) -> str:
    if not chunk_output_usable(path):
        raise JobError(ErrorCode.CHUNK_OUTPUT_MISSING,
                       f"Chunk {idx} output missing, empty or invalid: {path.name}")
    return path.read_text(encoding='utf-8', errors='replace')


def stitch_chunk_outputs(chunks_dir: Path, entries: list[ChunkEntry],
                         output_prefix: Path, apply_offsets: bool = True) -> dict:
    """
    Read every chunk's txt/srt/json and write <prefix>.txt/.srt/.json.
    Every chunk must contribute exactly once, in index order.
    Returns the written paths.
    """
    if not entries:
        raise JobError(ErrorCode.NO_CHUNKS, "Nothing to stitch: zero chunks", retryable=False)

    entries = sorted(entries, key=lambda e: e.idx)
    if [e.idx for e in entries] != list(range(len(entries))):
        raise JobError(ErrorCode.STITCH_FAILED, "Chunk indices are not contiguous")

    texts, srts, docs, offsets = [], [], [], []
    for entry in entries:
        paths = entry.output_paths(chunks_dir)
        texts.append(_read_chunk_output(paths['txt'], entry.idx))
        srts.append(_read_chunk_output(paths['srt'], entry.idx))
        docs.append(json.loads(_read_chunk_output(paths['json'], entry.idx)))
        offsets.append(entry.offset_sec)

    out = {
        'txt': output_prefix.with_name(output_prefix.name + '.txt'),
        'srt': output_prefix.with_name(output_prefix.name + '.srt'),
        'json': output_prefix.with_name(output_prefix.name + '.json'),
    }
    # txt goes last: its presence marks the job output as finished
    atomic_write_text(out['srt'], stitch_srt(srts, offsets, apply_offsets))
    atomic_write_text(out['json'], json.dumps(stitch_segments(docs, offsets, apply_offsets), indent=2))
    atomic_write_text(out['txt'], stitch_text(texts))

    logger.info("Stitched %d chunks into %s.*", len(entries), output_prefix)
    return out
