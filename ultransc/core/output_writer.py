"""
Output writer: final transcript files and the segment alias used by the
keyword block extractor.
"""

import os
import shutil
import logging
from pathlib import Path

from ultransc.core.constants import TRANSCRIPT_PREFIX, SEGMENTS_ALIAS_NAME
from ultransc.core.security_utils import is_nonempty_file

logger = logging.getLogger(__name__)


def transcript_prefix(workspace: Path) -> Path:
    return workspace / TRANSCRIPT_PREFIX


def transcript_exists(workspace: Path) -> bool:
    """True when the final plain-text transcript is present and non-empty."""
    return is_nonempty_file(workspace / f"{TRANSCRIPT_PREFIX}.txt")


def link_segments_alias(workspace: Path) -> Path | None:
    """
    Expose transcript.json as segments.json.
    A relative symlink is preferred; filesystems without symlink support get
    a copy instead.  Returns the alias path, or None when there is no JSON.
    """
    target = workspace / f"{TRANSCRIPT_PREFIX}.json"
    alias = workspace / SEGMENTS_ALIAS_NAME
    if not is_nonempty_file(target):
        logger.warning("No %s in %s — segment alias not created", target.name, workspace)
        return None

    if alias.is_symlink() or alias.exists():
        alias.unlink()
    try:
        os.symlink(target.name, alias)
    except (OSError, NotImplementedError) as e:
        logger.debug("Symlink failed (%s); copying %s instead", e, target.name)
        shutil.copyfile(target, alias)
    return alias
