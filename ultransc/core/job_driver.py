"""
Job stage driver: the per-job state machine.

    discovered → input_copied → converting → audio_ready →
        (chunking → chunked → transcribing_chunks → stitching) | transcribing
    → complete

failed is reachable from every non-terminal stage.  Each call to advance()
performs exactly one transition.  A stage is persisted only after its side
effect has been verified on disk, so the state record never claims more
progress than exists.  Before doing work, every stage checks for its output
artifact and skips the work when it is already there.
"""

import os
import shutil
import logging
from pathlib import Path
from typing import Optional

from ultransc.core.constants import (
    JobStage, ChunkStatus, ErrorCode,
    RAW_INPUT_STEM, AUDIO_FILENAME, CHUNKS_DIRNAME,
    CHUNK_THRESHOLD_SEC, CHUNK_DURATION_SEC, MAX_DURATION_SEC,
    CONVERT_TIMEOUT_SEC, TRANSCRIBE_TIMEOUT_SEC, MODEL_AUTO,
)
from ultransc.core.error_codes import JobError, RunAbort, unexpected
from ultransc.core.models import Job, ChunkEntry
from ultransc.core.state_store import save_job, now_iso
from ultransc.core.security_utils import is_nonempty_file
from ultransc.core.resources import ResourceGate
from ultransc.core.normalize import convert_to_wav, probe_duration
from ultransc.core.chunking import (
    needs_chunking, plan_chunks, split_audio_into_chunks, read_manifest,
    chunk_outputs_complete, cut_chunk,
)
from ultransc.core.transcribe_whisper import transcribe_audio
from ultransc.core.stitch import stitch_chunk_outputs
from ultransc.core.output_writer import (
    transcript_prefix, transcript_exists, link_segments_alias,
)
from ultransc.core.cleanup import cleanup_temp_artifacts, remove_file
from ultransc.core.model_select import resolve_model

logger = logging.getLogger(__name__)


class JobStageDriver:
    """Advances one job through its stages, one persisted transition at a time."""

    def __init__(self, job: Job, source_path: Path, config: dict,
                 models_dir: Path, gate: ResourceGate,
                 log: Optional[logging.Logger] = None,
                 total_ram_gb: float = 0.0):
        self.job = job
        self.source_path = source_path
        self.config = config
        self.models_dir = models_dir
        self.gate = gate
        self.log = log or logger
        self.total_ram_gb = total_ram_gb
        # Stage to resume at when it differs from the failing one
        self._resume_at: Optional[str] = None

        self._handlers = {
            JobStage.DISCOVERED: self._stage_discovered,
            JobStage.INPUT_COPIED: self._stage_input_copied,
            JobStage.CONVERTING: self._stage_converting,
            JobStage.AUDIO_READY: self._stage_audio_ready,
            JobStage.CHUNKING: self._stage_chunking,
            JobStage.CHUNKED: self._stage_chunked,
            JobStage.TRANSCRIBING_CHUNKS: self._stage_transcribing_chunks,
            JobStage.STITCHING: self._stage_stitching,
            JobStage.TRANSCRIBING: self._stage_transcribing,
        }

    # ── Config helpers ────────────────────────────────────────────────

    @property
    def workspace(self) -> Path:
        return self.job.workspace

    @property
    def audio_path(self) -> Path:
        return self.workspace / AUDIO_FILENAME

    @property
    def chunks_dir(self) -> Path:
        return self.workspace / CHUNKS_DIRNAME

    @property
    def chunk_threshold_sec(self) -> float:
        return self.config.get('chunk_threshold_sec', CHUNK_THRESHOLD_SEC)

    @property
    def chunk_duration_sec(self) -> float:
        return self.config.get('chunk_duration_sec', CHUNK_DURATION_SEC)

    @property
    def max_duration_sec(self) -> float:
        return self.config.get('max_duration_sec', MAX_DURATION_SEC)

    @property
    def cleanup_temp(self) -> bool:
        return self.config.get('cleanup_temp', True)

    @property
    def language(self) -> str:
        return self.config.get('language', 'auto')

    # ── Driving ───────────────────────────────────────────────────────

    def run(self) -> Job:
        """
        Advance until complete.  A stage failure is persisted as `failed`
        (remembering the stage to resume) and re-raised as JobError.
        """
        if self.job.stage == JobStage.COMPLETE:
            self.log.info("Job %s already complete — nothing to do", self.job.job_id)
            return self.job
        if self.job.is_terminal:
            self.log.info("Job %s is terminally failed — not resuming", self.job.job_id)
            return self.job

        try:
            while self.job.stage != JobStage.COMPLETE:
                self.advance()
        except JobError as e:
            self._mark_failed(e)
            raise
        except RunAbort:
            raise
        except Exception as e:
            self.log.error("Unexpected error in job %s: %s", self.job.job_id, e, exc_info=True)
            err = unexpected(e)
            self._mark_failed(err)
            raise err from e
        return self.job

    def advance(self) -> str:
        """Perform exactly one stage transition and return the new stage."""
        if self.job.stage == JobStage.FAILED:
            resume = self.job.resume_stage
            self.log.info("Job %s resuming from failed at stage %s", self.job.job_id, resume)
            self.job.stage = resume
        if self.job.stage == JobStage.COMPLETE:
            return self.job.stage

        handler = self._handlers.get(self.job.stage)
        if handler is None:
            raise JobError(ErrorCode.UNEXPECTED, f"No handler for stage {self.job.stage!r}",
                           retryable=False)
        handler()
        return self.job.stage

    def _advance_to(self, stage: str, **metadata):
        previous = self.job.stage
        save_job(self.job, stage=stage, **metadata)
        self.log.info("Job %s: %s -> %s", self.job.job_id, previous, stage)

    def _mark_failed(self, error: JobError):
        if self.job.stage != JobStage.FAILED:
            self.job.metadata['resume_stage'] = self._resume_at or self.job.stage
        self._resume_at = None
        self.log.error("Job %s failed at stage %s: %s",
                       self.job.job_id, self.job.metadata.get('resume_stage'), error)
        save_job(self.job, stage=JobStage.FAILED,
                 error_code=error.code,
                 error_message=error.message[:2000],
                 failed_at=now_iso())

    # ── Stages ────────────────────────────────────────────────────────

    def _stage_discovered(self):
        raw = self._copy_input()
        self._advance_to(JobStage.INPUT_COPIED, raw_input=raw.name)

    def _stage_input_copied(self):
        self._advance_to(JobStage.CONVERTING)

    def _stage_converting(self):
        if is_nonempty_file(self.audio_path):
            self.log.info("Reusing normalized audio %s", self.audio_path.name)
        else:
            self.gate.wait_until_ready(JobStage.CONVERTING, self.log)
            convert_to_wav(self._raw_input(), self.audio_path,
                           audio_filter=self.config.get('audio_filter', ''),
                           timeout=self.config.get('convert_timeout_sec', CONVERT_TIMEOUT_SEC))

        duration = probe_duration(self.audio_path)
        self.log.info("Audio duration: %ds", duration)
        self._advance_to(JobStage.AUDIO_READY, duration_sec=duration)

    def _stage_audio_ready(self):
        duration = self.job.metadata.get('duration_sec')
        if duration is None:
            if not is_nonempty_file(self.audio_path):
                self._resume_at = JobStage.CONVERTING
                raise JobError(ErrorCode.CONVERT_FAILED,
                               f"Normalized audio missing in {self.workspace.name}")
            duration = probe_duration(self.audio_path)
            self.log.info("Audio duration: %ds", duration)
            save_job(self.job, duration_sec=duration)

        chunked = self.job.metadata.get('chunked')
        if chunked is None:
            chunked = bool(self.config.get('enable_chunking', True)) and \
                needs_chunking(duration, self.chunk_threshold_sec)
            if not chunked and duration > self.max_duration_sec:
                raise JobError(ErrorCode.DURATION_LIMIT,
                               f"Duration {duration}s exceeds single-pass limit "
                               f"{self.max_duration_sec:.0f}s and chunking is off",
                               retryable=False)

        model = self.job.metadata.get('model') or self._select_model(duration)
        next_stage = JobStage.CHUNKING if chunked else JobStage.TRANSCRIBING
        self.log.info("Job %s: %s path with model %s",
                      self.job.job_id, "chunked" if chunked else "single-pass", model)
        self._advance_to(next_stage, chunked=chunked, model=model)

    def _stage_chunking(self):
        entries = plan_chunks(self.job.metadata['duration_sec'], self.chunk_duration_sec)
        if not entries:
            raise JobError(ErrorCode.NO_CHUNKS, "Chunk plan is empty", retryable=False)
        entries = split_audio_into_chunks(self.audio_path, self.chunks_dir, entries)
        self._advance_to(JobStage.CHUNKED, chunk_count=len(entries), chunks_done=0)

    def _stage_chunked(self):
        self._advance_to(JobStage.TRANSCRIBING_CHUNKS)

    def _stage_transcribing_chunks(self):
        entries = read_manifest(self.chunks_dir)
        model_path = self._model_path()
        done = 0

        for entry in entries:
            if chunk_outputs_complete(self.chunks_dir, entry):
                entry.status = ChunkStatus.TRANSCRIBED
                done += 1
                self.log.debug("Chunk %d already transcribed — skipping", entry.idx)
                continue

            self._transcribe_chunk(entry, model_path, last=entry.idx == len(entries) - 1)
            entry.status = ChunkStatus.TRANSCRIBED
            done += 1
            save_job(self.job, chunks_done=done)
            self.log.info("Chunk %d/%d transcribed", entry.idx + 1, len(entries))

            if self.cleanup_temp:
                remove_file(entry.media_path)

        self._advance_to(JobStage.STITCHING, chunks_done=done)

    def _stage_stitching(self):
        if transcript_exists(self.workspace):
            self.log.info("Stitched transcript already present — skipping stitch")
        else:
            entries = read_manifest(self.chunks_dir)
            unusable = [e for e in entries if not chunk_outputs_complete(self.chunks_dir, e)]
            if unusable:
                for entry in unusable:
                    for path in entry.output_paths(self.chunks_dir).values():
                        remove_file(path)
                self._resume_at = JobStage.TRANSCRIBING_CHUNKS
                raise JobError(ErrorCode.CHUNK_OUTPUT_MISSING,
                               f"Chunk output unusable for chunk(s) {[e.idx for e in unusable]}; "
                               f"discarded for re-transcription")
            stitch_chunk_outputs(self.chunks_dir, entries, transcript_prefix(self.workspace),
                                 apply_offsets=self.config.get('srt_apply_offsets', True))
        self._finish()

    def _stage_transcribing(self):
        if transcript_exists(self.workspace):
            self.log.info("Transcript already present — skipping transcription")
        else:
            model_path = self._model_path()
            self.gate.wait_until_ready(JobStage.TRANSCRIBING, self.log)
            transcribe_audio(self.audio_path, model_path, transcript_prefix(self.workspace),
                             language=self.language,
                             timeout=self.config.get('transcribe_timeout_sec', TRANSCRIBE_TIMEOUT_SEC))
        self._finish()

    # ── Helpers ───────────────────────────────────────────────────────

    def _finish(self):
        link_segments_alias(self.workspace)
        if self.cleanup_temp:
            cleanup_temp_artifacts(self.workspace)
        self._advance_to(JobStage.COMPLETE, completed_at=now_iso())

    def _transcribe_chunk(self, entry: ChunkEntry, model_path: Path, last: bool = False):
        media = entry.media_path
        if media is None or not is_nonempty_file(media):
            self.log.info("Chunk %d media missing — re-cutting", entry.idx)
            media = cut_chunk(self.audio_path, self.chunks_dir, entry, open_ended=last)
            entry.media_path = media

        self.gate.wait_until_ready(f"{JobStage.TRANSCRIBING_CHUNKS}[{entry.idx}]", self.log)
        try:
            transcribe_audio(media, model_path, entry.output_prefix(self.chunks_dir),
                             language=self.language,
                             timeout=self.config.get('transcribe_timeout_sec', TRANSCRIBE_TIMEOUT_SEC),
                             require_all=True)
        except JobError as e:
            self.log.error("Chunk %d failed: %s", entry.idx, e)
            raise

    def _copy_input(self) -> Path:
        raw = self.workspace / f"{RAW_INPUT_STEM}{self.source_path.suffix.lower()}"
        if is_nonempty_file(raw):
            return raw
        if not self.source_path.is_file():
            raise JobError(ErrorCode.SOURCE_MISSING,
                           f"Source {self.source_path} disappeared before it was copied",
                           retryable=False)

        tmp = raw.with_name(raw.name + ".copying")
        try:
            shutil.copy2(self.source_path, tmp)
            os.replace(tmp, raw)
        except OSError as e:
            tmp.unlink(missing_ok=True)
            raise JobError(ErrorCode.COPY_FAILED, f"Copying input failed: {e}")

        if not is_nonempty_file(raw):
            raise JobError(ErrorCode.COPY_FAILED, f"Input copy is empty: {self.source_path.name}")
        self.log.info("Copied input %s -> %s", self.source_path.name, raw.name)
        return raw

    def _raw_input(self) -> Path:
        name = self.job.metadata.get('raw_input')
        if name and is_nonempty_file(self.workspace / name):
            return self.workspace / name
        for candidate in sorted(self.workspace.glob(f"{RAW_INPUT_STEM}*")):
            if candidate.suffix != '.copying' and is_nonempty_file(candidate):
                return candidate
        self.log.warning("Raw input copy missing in %s — copying again", self.workspace)
        return self._copy_input()

    def _select_model(self, duration: float) -> str:
        model = resolve_model(self.config.get('model', MODEL_AUTO), duration,
                              self.total_ram_gb, self.models_dir)
        if not model:
            raise RunAbort(ErrorCode.NO_MODEL, f"No whisper model installed in {self.models_dir}")
        return model

    def _model_path(self) -> Path:
        model = self.job.metadata.get('model') or self._select_model(
            self.job.metadata.get('duration_sec', 0))
        path = self.models_dir / model
        if not path.is_file():
            raise RunAbort(ErrorCode.NO_MODEL, f"Model file not found: {path}")
        return path
