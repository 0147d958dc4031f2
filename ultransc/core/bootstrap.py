"""
Fetch helper binaries and models over HTTP.
  - a local yt-dlp release binary under <root>/bin when none is installed
  - whisper.cpp ggml models under <root>/models
Streams to a temp file and renames on success.
"""

import os
import shutil
import stat
import logging
from pathlib import Path

import requests

from ultransc.core.constants import (
    ErrorCode, YTDLP_BIN, YTDLP_RELEASE_URL, MODEL_BASE_URL, FETCH_TIMEOUT_SEC,
)
from ultransc.core.error_codes import RunAbort

logger = logging.getLogger(__name__)

_CHUNK_BYTES = 1024 * 1024


class FetchError(Exception):
    """Raised when an HTTP download fails."""


def download_file(url: str, dest: Path, timeout: float = FETCH_TIMEOUT_SEC,
                  session: requests.Session | None = None) -> Path:
    """Stream url to dest.  Returns dest."""
    dest.parent.mkdir(parents=True, exist_ok=True)
    tmp = dest.with_name(dest.name + ".download")
    http = session or requests

    try:
        with http.get(url, stream=True, timeout=timeout, allow_redirects=True) as resp:
            if resp.status_code != 200:
                raise FetchError(f"GET {url} returned {resp.status_code}")
            with open(tmp, 'wb') as f:
                for block in resp.iter_content(chunk_size=_CHUNK_BYTES):
                    if block:
                        f.write(block)
    except requests.exceptions.Timeout:
        tmp.unlink(missing_ok=True)
        raise FetchError(f"GET {url} timed out")
    except requests.exceptions.RequestException as e:
        tmp.unlink(missing_ok=True)
        raise FetchError(f"Network error fetching {url}: {e}")
    except FetchError:
        tmp.unlink(missing_ok=True)
        raise

    if tmp.stat().st_size == 0:
        tmp.unlink(missing_ok=True)
        raise FetchError(f"GET {url} returned an empty body")

    os.replace(tmp, dest)
    logger.info("Fetched %s -> %s", url, dest)
    return dest


def resolve_ytdlp(bin_dir: Path, auto_fetch: bool = True,
                  session: requests.Session | None = None) -> Path:
    """
    Locate yt-dlp: <root>/bin first, then PATH.  When neither has it and
    auto_fetch is on, download the release binary into bin_dir.
    A missing downloader is a run-level failure.
    """
    local = bin_dir / YTDLP_BIN
    if local.is_file() and os.access(local, os.X_OK):
        return local

    found = shutil.which(YTDLP_BIN)
    if found:
        return Path(found)

    if not auto_fetch:
        raise RunAbort(ErrorCode.MISSING_TOOL,
                       f"{YTDLP_BIN} not found in {bin_dir} or on PATH")

    logger.info("%s missing — downloading local copy…", YTDLP_BIN)
    try:
        download_file(YTDLP_RELEASE_URL, local, session=session)
    except FetchError as e:
        raise RunAbort(ErrorCode.MISSING_TOOL, f"Could not fetch {YTDLP_BIN}: {e}")
    local.chmod(local.stat().st_mode | stat.S_IXUSR | stat.S_IXGRP | stat.S_IXOTH)
    return local


def fetch_model(name: str, models_dir: Path,
                session: requests.Session | None = None) -> Path:
    """Download a ggml model by file name (e.g. ggml-medium.en.bin)."""
    if '/' in name or '\\' in name or not name.endswith('.bin'):
        raise ValueError(f"Not a model file name: {name!r}")
    dest = models_dir / name
    if dest.is_file() and dest.stat().st_size > 0:
        logger.info("Model already present: %s", dest)
        return dest
    return download_file(f"{MODEL_BASE_URL}/{name}", dest, timeout=FETCH_TIMEOUT_SEC * 10,
                         session=session)
