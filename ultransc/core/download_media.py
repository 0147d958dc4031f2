"""
Media download via yt-dlp.
A failed download is a unit failure: no job exists for the URL yet.
"""

import subprocess
import logging
from datetime import datetime
from pathlib import Path

from ultransc.core.security_utils import run_subprocess_capture
from ultransc.core.error_codes import UnitError
from ultransc.core.constants import ErrorCode, DOWNLOAD_TIMEOUT_SEC

logger = logging.getLogger(__name__)

# yt-dlp scratch files that are never the finished download
_PARTIAL_SUFFIXES = ('.part', '.ytdl', '.temp')


def parse_url_lines(text: str) -> list[str]:
    """
    Parse a URL list: one URL per line.
    - Trims whitespace
    - Ignores empty lines and # comments
    """
    urls = []
    for line in text.splitlines():
        line = line.strip()
        if not line or line.startswith('#'):
            continue
        urls.append(line)
    return urls


def _download_stem(now: datetime | None = None) -> str:
    now = now or datetime.now()
    return f"download_{now.strftime('%Y%m%d_%H%M%S_%f')}"


def download_media(url: str, output_dir: Path, ytdlp_path: Path | str,
                   timeout: float = DOWNLOAD_TIMEOUT_SEC,
                   stem: str | None = None) -> Path:
    """
    Download one media file with yt-dlp into output_dir.
    Returns path to the downloaded file.
    """
    output_dir.mkdir(parents=True, exist_ok=True)
    stem = stem or _download_stem()
    output_template = str(output_dir / f"{stem}.%(ext)s")

    args = [
        str(ytdlp_path),
        "--no-playlist",
        "-f", "bestaudio/best",
        "-o", output_template,
        url,
    ]

    try:
        result = run_subprocess_capture(args, timeout=timeout)
    except subprocess.TimeoutExpired:
        _remove_partials(output_dir, stem)
        raise UnitError(ErrorCode.DOWNLOAD_FAILED, f"yt-dlp exceeded {timeout:.0f}s for {url}")
    except OSError as e:
        raise UnitError(ErrorCode.DOWNLOAD_FAILED, f"yt-dlp could not start: {e}")

    if result.returncode != 0:
        _remove_partials(output_dir, stem)
        stderr = result.stderr or ""
        raise UnitError(ErrorCode.DOWNLOAD_FAILED,
                        f"yt-dlp download failed (rc={result.returncode}): {stderr[:300]}")

    # Find the downloaded file
    downloaded = [p for p in sorted(output_dir.glob(f"{stem}.*"))
                  if p.suffix not in _PARTIAL_SUFFIXES]
    if not downloaded:
        raise UnitError(ErrorCode.DOWNLOAD_FAILED, "No media file found after download")

    logger.info("Downloaded %s -> %s", url, downloaded[0])
    return downloaded[0]


def _remove_partials(output_dir: Path, stem: str):
    for path in output_dir.glob(f"{stem}.*"):
        try:
            path.unlink()
        except OSError as e:
            logger.warning("Failed to delete partial download %s: %s", path, e)


def is_partial_download(path: Path) -> bool:
    """True for yt-dlp scratch files that must not be picked up as sources."""
    return path.suffix in _PARTIAL_SUFFIXES
