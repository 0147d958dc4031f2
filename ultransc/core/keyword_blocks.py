"""
Keyword block extraction from finished transcripts.

Picks the first job whose folder name matches the given patterns (in order)
and collects a few lines of context around every keyword hit.  Blocks too
similar to ones already saved for that job are skipped.
Output: <root>/blocks/<job>.txt and <job>.md, appended across runs.
"""

import re
import logging
from dataclasses import dataclass, field
from difflib import SequenceMatcher
from pathlib import Path

from ultransc.core.constants import (
    TRANSCRIPT_PREFIX, BLOCK_CONTEXT_BEFORE, BLOCK_CONTEXT_AFTER,
    BLOCK_SIMILARITY_THRESHOLD,
)

logger = logging.getLogger(__name__)

_TXT_HEADER_RE = re.compile(r'^===== .* \(line \d+\) =====$')


class BlockSearchError(Exception):
    """Raised when no transcript matches the requested job patterns."""


@dataclass
class BlockResult:
    job_id: str
    txt_path: Path
    md_path: Path
    saved: int = 0
    skipped: int = 0
    missing_keywords: list = field(default_factory=list)


def find_transcript(workspace: Path, patterns: list[str]) -> tuple[str, Path]:
    """First job folder (lexical order) matching every pattern in order."""
    if not workspace.is_dir():
        raise BlockSearchError(f"workspace/ not found: {workspace}")
    regex = re.compile('.*'.join(re.escape(p) for p in patterns))
    for job_dir in sorted(p for p in workspace.iterdir() if p.is_dir()):
        if not regex.search(job_dir.name):
            continue
        transcript = job_dir / f"{TRANSCRIPT_PREFIX}.txt"
        if transcript.is_file():
            return job_dir.name, transcript
    raise BlockSearchError(f"No transcript matches job pattern: {' '.join(patterns)}")


def similarity(a: str, b: str) -> float:
    """Ratio in [0, 1] of how alike two blocks are."""
    if not a and not b:
        return 0.0
    return SequenceMatcher(None, a, b, autojunk=False).ratio()


def read_saved_blocks(txt_path: Path) -> list[str]:
    """Block bodies already present in a .txt output file."""
    if not txt_path.exists():
        return []
    blocks, current = [], None
    for line in txt_path.read_text(encoding='utf-8').splitlines():
        if _TXT_HEADER_RE.match(line):
            if current is not None:
                blocks.append('\n'.join(current).strip('\n'))
            current = []
        elif current is not None:
            current.append(line)
    if current is not None:
        blocks.append('\n'.join(current).strip('\n'))
    return blocks


def context_block(lines: list[str], idx: int, before: int, after: int) -> str:
    start = max(0, idx - before)
    return '\n'.join(lines[start:idx + after + 1])


def extract_blocks(workspace: Path, blocks_dir: Path, patterns: list[str],
                   keywords: list[str],
                   before: int = BLOCK_CONTEXT_BEFORE,
                   after: int = BLOCK_CONTEXT_AFTER,
                   threshold: float = BLOCK_SIMILARITY_THRESHOLD) -> BlockResult:
    """Append context blocks for every keyword occurrence of the matched transcript."""
    if not patterns or not keywords:
        raise ValueError("At least one pattern and one keyword are required")

    job_id, transcript = find_transcript(workspace, patterns)
    logger.info("Using transcript: %s", transcript)
    lines = transcript.read_text(encoding='utf-8', errors='replace').splitlines()

    blocks_dir.mkdir(parents=True, exist_ok=True)
    result = BlockResult(job_id=job_id,
                         txt_path=blocks_dir / f"{job_id}.txt",
                         md_path=blocks_dir / f"{job_id}.md")
    saved = read_saved_blocks(result.txt_path)

    with open(result.txt_path, 'a', encoding='utf-8') as txt, \
            open(result.md_path, 'a', encoding='utf-8') as md:
        for keyword in keywords:
            hits = [i for i, line in enumerate(lines) if keyword in line]
            if not hits:
                logger.warning("No occurrences for keyword: %s", keyword)
                result.missing_keywords.append(keyword)
                continue

            for idx in hits:
                block = context_block(lines, idx, before, after)
                score = max((similarity(prev, block) for prev in saved), default=0.0)
                if score >= threshold:
                    logger.info("Block @ line %d is %d%% similar to a saved block; skipped",
                                idx + 1, int(score * 100))
                    result.skipped += 1
                    continue

                txt.write(f"===== {job_id} (line {idx + 1}) =====\n{block}\n\n")
                md.write(f"## {job_id} – Line {idx + 1}\n\n```text\n{block}\n```\n\n")
                saved.append(block)
                result.saved += 1

    logger.info("Saved %d block(s), skipped %d -> %s", result.saved, result.skipped,
                result.txt_path)
    return result
