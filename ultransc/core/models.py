"""
Data models (plain dataclasses) for ULTRANSC.
"""

from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional

from ultransc.core.constants import (
    JobStage, ChunkStatus, STATE_SCHEMA_VERSION, STATE_FILENAME,
)


@dataclass
class Job:
    """One unit of work and its durable state record."""
    job_id: str                      # <sanitized stem>_<YYYYmmdd_HHMMSS>
    workspace: Path
    source_name: str                 # identity of the source file
    stage: str = JobStage.DISCOVERED
    retry_count: int = 0
    created_at: Optional[str] = None
    updated_at: Optional[str] = None
    metadata: dict = field(default_factory=dict)

    @property
    def state_path(self) -> Path:
        return self.workspace / STATE_FILENAME

    @property
    def duration_sec(self) -> Optional[int]:
        return self.metadata.get('duration_sec')

    @property
    def is_terminal(self) -> bool:
        if self.stage == JobStage.COMPLETE:
            return True
        return self.stage == JobStage.FAILED and bool(self.metadata.get('terminal'))

    @property
    def resume_stage(self) -> str:
        """Stage to re-enter: a failed record resumes where it broke."""
        if self.stage == JobStage.FAILED:
            return self.metadata.get('resume_stage', JobStage.DISCOVERED)
        return self.stage

    def to_record(self) -> dict:
        return {
            'schema_version': STATE_SCHEMA_VERSION,
            'job_id': self.job_id,
            'source_name': self.source_name,
            'stage': self.stage,
            'retry_count': self.retry_count,
            'created_at': self.created_at,
            'updated_at': self.updated_at,
            'metadata': self.metadata,
        }

    @classmethod
    def from_record(cls, record: dict, workspace: Path) -> "Job":
        return cls(
            job_id=record['job_id'],
            workspace=workspace,
            source_name=record['source_name'],
            stage=record['stage'],
            retry_count=int(record.get('retry_count', 0)),
            created_at=record.get('created_at'),
            updated_at=record.get('updated_at'),
            metadata=dict(record.get('metadata') or {}),
        )


@dataclass
class ChunkEntry:
    """One bounded slice of a job's audio."""
    idx: int
    start_sec: float                 # planned cut position
    duration_sec: float
    offset_sec: float = 0.0          # cumulative duration of prior chunks
    media_path: Optional[Path] = None
    status: str = ChunkStatus.PENDING

    @property
    def name(self) -> str:
        return f"chunk_{self.idx:03d}"

    def output_prefix(self, chunks_dir: Path) -> Path:
        return chunks_dir / self.name

    def output_paths(self, chunks_dir: Path) -> dict:
        prefix = self.output_prefix(chunks_dir)
        return {
            'txt': prefix.with_suffix('.txt'),
            'srt': prefix.with_suffix('.srt'),
            'json': prefix.with_suffix('.json'),
        }


@dataclass
class RunSummary:
    completed: int = 0
    failed: int = 0
    unit_failures: int = 0
    skipped_categories: list = field(default_factory=list)
