"""
Cleanup: delete temporary audio after a job or chunk succeeds.
Transcripts, the raw input copy and the state record are never touched.
"""

import logging
from pathlib import Path

from ultransc.core.constants import AUDIO_FILENAME, CHUNKS_DIRNAME

logger = logging.getLogger(__name__)


def remove_file(path: Path | None):
    if path is None:
        return
    try:
        path.unlink(missing_ok=True)
        logger.debug("Deleted: %s", path)
    except OSError as e:
        logger.warning("Failed to delete %s: %s", path, e)


def cleanup_temp_artifacts(job_workspace: Path):
    """
    Delete normalized audio and chunk media of a finished job.
    Chunk transcription outputs and the manifest stay for inspection.
    """
    if not job_workspace.exists():
        return

    remove_file(job_workspace / AUDIO_FILENAME)

    chunks_dir = job_workspace / CHUNKS_DIRNAME
    if chunks_dir.is_dir():
        for media in chunks_dir.glob("*.wav"):
            remove_file(media)

    # Leftovers of an interrupted conversion or cut
    for part in job_workspace.rglob("*.part.wav"):
        remove_file(part)
