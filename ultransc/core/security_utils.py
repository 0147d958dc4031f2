"""
Security utilities for ULTRANSC.
- Filename sanitization for job directory names
- Path traversal protection
- Safe subprocess execution (argument arrays only, wall-clock timeout)
"""

import re
import subprocess
import pathlib
import logging

from ultransc.core.constants import (
    UNSAFE_FILENAME_CHARS,
    MAX_FOLDER_NAME_LEN,
)

logger = logging.getLogger(__name__)


# ── Filename / path safety ────────────────────────────────────────────

def sanitize_name(name: str) -> str:
    """Sanitize a source file stem for use in a job directory name."""
    if not name:
        return ""
    # Replace unsafe characters with underscore
    safe = re.sub(UNSAFE_FILENAME_CHARS, '_', name)
    # Remove path traversal sequences
    safe = safe.replace('..', '')
    # Collapse whitespace runs and underscores into a single underscore
    safe = re.sub(r'[_\s]+', '_', safe).strip('_')
    # Truncate
    if len(safe) > MAX_FOLDER_NAME_LEN:
        safe = safe[:MAX_FOLDER_NAME_LEN].rstrip('_')
    # Remove leading/trailing dots (hidden files)
    safe = safe.strip('.')
    return safe if safe else ""


def safe_child_path(parent: pathlib.Path, name: str, fallback: str) -> pathlib.Path:
    """
    Build parent/<name>.  Enforces that realpath(result) stays inside
    realpath(parent).  Falls back to parent/<fallback> on failure.
    """
    candidate = parent / (name or fallback)
    try:
        real_root = parent.resolve(strict=False)
        real_candidate = candidate.resolve(strict=False)
        if real_root not in real_candidate.parents:
            raise ValueError("Path traversal detected")
    except Exception:
        candidate = parent / fallback

    return candidate


def is_nonempty_file(path: pathlib.Path) -> bool:
    """True when path is a regular file with at least one byte."""
    try:
        return path.is_file() and path.stat().st_size > 0
    except OSError:
        return False


# ── Subprocess safety ─────────────────────────────────────────────────

def run_subprocess(args: list[str], **kwargs) -> subprocess.CompletedProcess:
    """
    Execute a subprocess using argument arrays only.
    shell=True is explicitly forbidden.
    """
    if not isinstance(args, (list, tuple)):
        raise TypeError("Subprocess args must be a list/tuple, not a string")

    # Force shell=False; any caller-supplied value is dropped
    kwargs.pop('shell', None)

    logger.debug("Running subprocess: %s", ' '.join(str(a) for a in args))
    return subprocess.run(args, shell=False, **kwargs)


def run_subprocess_capture(args: list[str], timeout: float = 300, **kwargs) -> subprocess.CompletedProcess:
    """
    Run subprocess and capture stdout/stderr.
    The child is killed when the deadline elapses; subprocess.TimeoutExpired
    is raised to the caller.
    """
    return run_subprocess(
        args,
        capture_output=True,
        text=True,
        timeout=timeout,
        **kwargs,
    )
