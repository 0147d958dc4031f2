"""
Persistent job state store.

One JSON state record per job workspace (state.json).  Records carry an
explicit schema version and are replaced atomically (temp file + rename),
so a crash mid-write leaves the previous record intact.
"""

import json
import os
import tempfile
import logging
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional

from ultransc.core.constants import (
    JobStage, STATE_FILENAME, STATE_SCHEMA_VERSION,
    RAW_INPUT_STEM, AUDIO_FILENAME, CHUNKS_DIRNAME, CHUNK_MANIFEST_NAME,
    TRANSCRIPT_PREFIX,
)
from ultransc.core.models import Job
from ultransc.core.security_utils import sanitize_name, safe_child_path, is_nonempty_file

logger = logging.getLogger(__name__)


class StateError(Exception):
    """Raised when a state record cannot be read."""


def now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def atomic_write_text(path: Path, text: str):
    """Write text to path via a sibling temp file and os.replace."""
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp_name = tempfile.mkstemp(prefix=f".{path.name}.", suffix=".tmp", dir=path.parent)
    try:
        with os.fdopen(fd, 'w', encoding='utf-8') as f:
            f.write(text)
            f.flush()
            os.fsync(f.fileno())
        os.replace(tmp_name, path)
    except BaseException:
        try:
            os.unlink(tmp_name)
        except FileNotFoundError:
            pass
        raise


# ── Record I/O ────────────────────────────────────────────────────────

def save_job(job: Job, stage: Optional[str] = None, **metadata) -> Job:
    """
    Persist job to its state record.  Optional stage and metadata updates are
    applied first; updated_at is refreshed on every write.
    """
    if stage is not None:
        job.stage = stage
    if metadata:
        job.metadata.update(metadata)
    job.updated_at = now_iso()
    atomic_write_text(job.state_path, json.dumps(job.to_record(), indent=2))
    return job


def load_job(workspace: Path) -> Job:
    """Load the state record of a workspace."""
    path = workspace / STATE_FILENAME
    try:
        with open(path, 'r', encoding='utf-8') as f:
            record = json.load(f)
    except FileNotFoundError:
        raise StateError(f"No state record in {workspace}")
    except (OSError, json.JSONDecodeError) as e:
        raise StateError(f"Unreadable state record {path}: {e}")

    if not isinstance(record, dict):
        raise StateError(f"State record {path} is not an object")

    version = record.get('schema_version')
    if version != STATE_SCHEMA_VERSION:
        raise StateError(f"State record {path} has unsupported schema_version {version!r}")

    stage = record.get('stage')
    if stage not in _KNOWN_STAGES:
        raise StateError(f"State record {path} has unknown stage {stage!r}")

    try:
        return Job.from_record(record, workspace)
    except (KeyError, TypeError, ValueError) as e:
        raise StateError(f"State record {path} is malformed: {e}")


_KNOWN_STAGES = {
    value for key, value in vars(JobStage).items() if not key.startswith('_')
}


# ── Recovery without a record ─────────────────────────────────────────

def infer_stage(workspace: Path) -> str:
    """
    Derive the furthest stage whose artifacts are fully on disk.
    Used only when a workspace has no state record.
    """
    if is_nonempty_file(workspace / f"{TRANSCRIPT_PREFIX}.txt"):
        return JobStage.COMPLETE
    if (workspace / CHUNKS_DIRNAME / CHUNK_MANIFEST_NAME).is_file():
        return JobStage.CHUNKED
    if is_nonempty_file(workspace / AUDIO_FILENAME):
        # Duration still has to be probed, so re-enter conversion; the
        # existing audio is reused.
        return JobStage.CONVERTING
    if any(is_nonempty_file(p) for p in workspace.glob(f"{RAW_INPUT_STEM}*")):
        return JobStage.INPUT_COPIED
    return JobStage.DISCOVERED


def recover_job(workspace: Path) -> Job:
    """Rebuild an in-memory job for a workspace whose record is missing."""
    stage = infer_stage(workspace)
    logger.warning("Workspace %s has no state record — inferred stage %s from artifacts",
                   workspace, stage)
    return Job(
        job_id=workspace.name,
        workspace=workspace,
        source_name="",
        stage=stage,
        metadata={'recovered': True},
    )


def _job_id_stem(job_id: str) -> str:
    """Strip the _YYYYmmdd_HHMMSS[_n] suffix from a job id."""
    parts = job_id.split('_')
    for i in range(len(parts) - 1, 0, -1):
        if len(parts[i]) == 8 and parts[i].isdigit() and i + 1 < len(parts) \
                and len(parts[i + 1]) == 6 and parts[i + 1].isdigit():
            return '_'.join(parts[:i])
    return job_id


# ── Job discovery ─────────────────────────────────────────────────────

def list_jobs(workspace_root: Path, include_recovered: bool = False) -> list[Job]:
    """Return every readable job under the workspace root, oldest first."""
    jobs = []
    if not workspace_root.exists():
        return jobs
    for entry in sorted(workspace_root.iterdir()):
        if not entry.is_dir():
            continue
        if not (entry / STATE_FILENAME).exists():
            if include_recovered:
                jobs.append(recover_job(entry))
            continue
        try:
            jobs.append(load_job(entry))
        except StateError as e:
            logger.warning("Skipping workspace %s: %s", entry, e)
    jobs.sort(key=lambda j: (j.created_at or '', j.job_id))
    return jobs


def _raw_input_suffix(workspace: Path) -> Optional[str]:
    for candidate in sorted(workspace.glob(f"{RAW_INPUT_STEM}*")):
        if candidate.suffix != '.copying' and is_nonempty_file(candidate):
            return candidate.suffix.lower()
    return None


def _matches_source(job: Job, source_name: str) -> bool:
    if job.metadata.get('recovered'):
        source = Path(source_name)
        stem = sanitize_name(source.stem) or "job"
        if _job_id_stem(job.job_id) != stem:
            return False
        # talk.wav must not adopt the workspace left behind by talk.mp3
        suffix = _raw_input_suffix(job.workspace)
        return suffix is None or suffix == source.suffix.lower()
    return job.source_name == source_name


def find_active_job(workspace_root: Path, source_name: str) -> Optional[Job]:
    """
    Locate the non-terminal job for a source identity, if any.
    At most one should exist; when several do, the oldest wins and the
    others are reported.
    """
    # A record-less workspace is never final, even when its artifacts say complete
    active = [j for j in list_jobs(workspace_root, include_recovered=True)
              if _matches_source(j, source_name)
              and (not j.is_terminal or j.metadata.get('recovered'))]
    if len(active) > 1:
        logger.warning("Several active workspaces for %s: %s — resuming %s",
                       source_name, [j.job_id for j in active], active[0].job_id)
    return active[0] if active else None


def find_latest_job(workspace_root: Path, source_name: str) -> Optional[Job]:
    """Most recently created job with a record for source_name, terminal or not."""
    jobs = [j for j in list_jobs(workspace_root) if j.source_name == source_name]
    return jobs[-1] if jobs else None


def create_job(workspace_root: Path, source_name: str,
               created: Optional[datetime] = None) -> Job:
    """Create a fresh workspace and its initial state record."""
    created = created or datetime.now()
    stem = sanitize_name(Path(source_name).stem) or "job"
    base_id = f"{stem}_{created.strftime('%Y%m%d_%H%M%S')}"

    workspace_root.mkdir(parents=True, exist_ok=True)
    job_id = base_id
    workspace = safe_child_path(workspace_root, job_id, f"job_{created.strftime('%Y%m%d_%H%M%S')}")
    n = 1
    while workspace.exists():
        job_id = f"{base_id}_{n}"
        workspace = workspace_root / job_id
        n += 1
    job_id = workspace.name
    workspace.mkdir(parents=True)

    now = now_iso()
    job = Job(
        job_id=job_id,
        workspace=workspace,
        source_name=source_name,
        stage=JobStage.DISCOVERED,
        created_at=now,
    )
    save_job(job)
    logger.info("Created job %s for %s", job_id, source_name)
    return job


def open_job(workspace_root: Path, source_name: str) -> tuple[Job, bool]:
    """
    Resume the active job for source_name or create a new one.
    Returns (job, resumed).
    """
    job = find_active_job(workspace_root, source_name)
    if job is not None:
        if job.metadata.pop('recovered', False):
            # Adopted: from here on it is an ordinary recorded job
            job.source_name = source_name
            job.created_at = job.created_at or now_iso()
            save_job(job, recovered_from_artifacts=True)
        logger.info("Resuming job %s at stage %s", job.job_id, job.stage)
        return job, True
    return create_job(workspace_root, source_name), False
