#!/usr/bin/env python3
"""
Unit tests for ULTRANSC core modules.
Tests cover: config, security utils, error codes, state store, resource
monitor, retry controller, chunking, stitching, model selection, downloads,
bootstrap fetches and keyword blocks.
"""

import sys
import json
import hashlib
import tempfile
import subprocess
from datetime import datetime
from pathlib import Path
from unittest import mock

# Add project root to path
PROJECT_ROOT = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(PROJECT_ROOT))

import unittest

from ultransc.core.constants import (
    JobStage, ErrorCode, RETRYABLE_ERRORS, MODEL_MEDIUM, MODEL_SMALL,
    CHUNK_DURATION_SEC, STATE_FILENAME,
)
from ultransc.core.config import AppConfig, default_config
from ultransc.core.security_utils import sanitize_name, safe_child_path
from ultransc.core.error_codes import JobError, RunAbort, UnitError, is_retryable, unexpected
from ultransc.core.models import Job, ChunkEntry
from ultransc.core.state_store import (
    StateError, save_job, load_job, create_job, open_job, find_active_job,
    infer_stage, list_jobs,
)
from ultransc.core.resources import (
    ResourceGate, ResourceSnapshot, parse_meminfo, parse_vm_stat, parse_swapusage,
    check_disk_space,
)
from ultransc.core.retry import RetryController
from ultransc.core.chunking import (
    needs_chunking, plan_chunks, write_manifest, read_manifest, chunk_outputs_complete,
    split_audio_into_chunks, cut_chunk,
)
from ultransc.core.stitch import (
    ms_to_srt_time, shift_time_line, stitch_text, stitch_srt, stitch_segments,
    stitch_chunk_outputs,
)
from ultransc.core.normalize import build_convert_args, convert_to_wav
from ultransc.core.transcribe_whisper import transcribe_audio
from ultransc.core.model_select import choose_model, list_installed_models, write_model_list
from ultransc.core.download_media import parse_url_lines, download_media, is_partial_download
from ultransc.core.bootstrap import download_file, resolve_ytdlp, FetchError
from ultransc.core.output_writer import transcript_exists, link_segments_alias
from ultransc.core.keyword_blocks import extract_blocks, BlockSearchError


def _completed(rc=0, stdout="", stderr=""):
    return subprocess.CompletedProcess(args=[], returncode=rc, stdout=stdout, stderr=stderr)


class TestConfig(unittest.TestCase):
    """Test configuration loading and validation."""

    def test_defaults_when_missing(self):
        with tempfile.TemporaryDirectory() as tmpdir:
            config = AppConfig(Path(tmpdir) / "config" / "default.json")
            self.assertEqual(config.get('chunk_threshold_sec'), 1800)
            self.assertEqual(config.get('chunk_duration_sec'), CHUNK_DURATION_SEC)
            self.assertEqual(config.get('source_priority'), ['local', 'urls'])
            self.assertTrue(config.get('srt_apply_offsets'))

    def test_clamps_and_ignores_unknown(self):
        with tempfile.TemporaryDirectory() as tmpdir:
            path = Path(tmpdir) / "default.json"
            path.write_text(json.dumps({
                'chunk_duration_sec': 10,
                'max_retries': 99,
                'retry_multiplier': 0.5,
                'min_free_ram_mb': -1,
                'bogus': True,
            }))
            config = AppConfig(path)
            self.assertEqual(config.get('chunk_duration_sec'), 60)
            self.assertEqual(config.get('max_retries'), 20)
            self.assertEqual(config.get('retry_multiplier'), 1.0)
            self.assertEqual(config.get('min_free_ram_mb'), default_config()['min_free_ram_mb'])
            self.assertIsNone(config.get('bogus'))

    def test_source_priority_string(self):
        with tempfile.TemporaryDirectory() as tmpdir:
            config = AppConfig(Path(tmpdir) / "default.json")
            config.set('source_priority', "urls, local")
            self.assertEqual(config.get('source_priority'), ['urls', 'local'])
            # set() persists
            reloaded = AppConfig(Path(tmpdir) / "default.json")
            self.assertEqual(reloaded.get('source_priority'), ['urls', 'local'])

    def test_corrupt_file_falls_back(self):
        with tempfile.TemporaryDirectory() as tmpdir:
            path = Path(tmpdir) / "default.json"
            path.write_text("{not json")
            config = AppConfig(path)
            self.assertEqual(config.as_dict(), default_config())


class TestSecurityUtils(unittest.TestCase):
    """Test security utilities."""

    def test_sanitize_name_basic(self):
        self.assertEqual(sanitize_name("My Lecture: Part 1"), "My_Lecture_Part_1")

    def test_sanitize_name_path_traversal(self):
        result = sanitize_name("../../etc/passwd")
        self.assertNotIn('..', result)
        self.assertNotIn('/', result)

    def test_sanitize_name_empty(self):
        self.assertEqual(sanitize_name(""), "")
        self.assertEqual(sanitize_name("..."), "")

    def test_sanitize_name_long(self):
        self.assertLessEqual(len(sanitize_name("A" * 300)), 120)

    def test_safe_child_path_traversal(self):
        root = Path("/tmp/test_workspace")
        result = safe_child_path(root, "../../etc", "job_fallback")
        self.assertTrue(str(result.resolve()).startswith(str(root.resolve())))


class TestErrorCodes(unittest.TestCase):
    """Test error code handling."""

    def test_retryable_errors(self):
        self.assertTrue(is_retryable(ErrorCode.TRANSCRIBE_FAILED))
        self.assertTrue(is_retryable(ErrorCode.SWAP_PRESSURE))
        self.assertTrue(is_retryable(ErrorCode.CONVERT_TIMEOUT))

    def test_non_retryable_errors(self):
        self.assertFalse(is_retryable(ErrorCode.DURATION_LIMIT))
        self.assertFalse(is_retryable(ErrorCode.NO_CHUNKS))
        self.assertNotIn(ErrorCode.DISK_SPACE, RETRYABLE_ERRORS)

    def test_job_error_auto_retryable(self):
        self.assertTrue(JobError(ErrorCode.CHUNKING, "test").retryable)
        self.assertFalse(JobError(ErrorCode.DURATION_LIMIT, "test").retryable)

    def test_unexpected_wraps(self):
        err = unexpected(KeyError('x'))
        self.assertEqual(err.code, ErrorCode.UNEXPECTED)
        self.assertTrue(err.retryable)
        self.assertIn("KeyError", err.message)


class TestStateStore(unittest.TestCase):
    """Test the per-job state record."""

    def setUp(self):
        self._tmp = tempfile.TemporaryDirectory()
        self.root = Path(self._tmp.name) / "workspace"

    def tearDown(self):
        self._tmp.cleanup()

    def test_create_and_load(self):
        created = datetime(2024, 1, 2, 3, 4, 5)
        job = create_job(self.root, "talk one.mp3", created=created)
        self.assertEqual(job.job_id, "talk_one_20240102_030405")
        self.assertEqual(job.stage, JobStage.DISCOVERED)

        loaded = load_job(job.workspace)
        self.assertEqual(loaded.job_id, job.job_id)
        self.assertEqual(loaded.source_name, "talk one.mp3")
        self.assertEqual(loaded.retry_count, 0)

    def test_collision_gets_suffix(self):
        created = datetime(2024, 1, 2, 3, 4, 5)
        first = create_job(self.root, "talk.mp3", created=created)
        second = create_job(self.root, "talk.mp3", created=created)
        self.assertNotEqual(first.workspace, second.workspace)
        self.assertEqual(second.job_id, "talk_20240102_030405_1")

    def test_save_updates_stage_and_metadata(self):
        job = create_job(self.root, "talk.mp3")
        save_job(job, stage=JobStage.AUDIO_READY, duration_sec=600)
        loaded = load_job(job.workspace)
        self.assertEqual(loaded.stage, JobStage.AUDIO_READY)
        self.assertEqual(loaded.duration_sec, 600)
        # No temp files left behind
        self.assertEqual([p.name for p in job.workspace.iterdir()], [STATE_FILENAME])

    def test_rejects_unknown_schema(self):
        job = create_job(self.root, "talk.mp3")
        record = json.loads(job.state_path.read_text())
        record['schema_version'] = 99
        job.state_path.write_text(json.dumps(record))
        with self.assertRaises(StateError):
            load_job(job.workspace)

    def test_rejects_unknown_stage(self):
        job = create_job(self.root, "talk.mp3")
        record = json.loads(job.state_path.read_text())
        record['stage'] = 'teleporting'
        job.state_path.write_text(json.dumps(record))
        with self.assertRaises(StateError):
            load_job(job.workspace)
        self.assertEqual(list_jobs(self.root), [])

    def test_open_job_resumes_active(self):
        job, resumed = open_job(self.root, "talk.mp3")
        self.assertFalse(resumed)
        save_job(job, stage=JobStage.CONVERTING)
        again, resumed = open_job(self.root, "talk.mp3")
        self.assertTrue(resumed)
        self.assertEqual(again.job_id, job.job_id)
        self.assertEqual(again.stage, JobStage.CONVERTING)

    def test_open_job_after_complete_creates_new(self):
        job, _ = open_job(self.root, "talk.mp3")
        save_job(job, stage=JobStage.COMPLETE)
        self.assertIsNone(find_active_job(self.root, "talk.mp3"))
        again, resumed = open_job(self.root, "talk.mp3")
        self.assertFalse(resumed)
        self.assertNotEqual(again.job_id, job.job_id)

    def test_infer_stage_from_artifacts(self):
        ws = self.root / "talk_20240102_030405"
        ws.mkdir(parents=True)
        self.assertEqual(infer_stage(ws), JobStage.DISCOVERED)
        (ws / "raw_input.mp3").write_bytes(b"x")
        self.assertEqual(infer_stage(ws), JobStage.INPUT_COPIED)
        (ws / "audio.wav").write_bytes(b"x")
        self.assertEqual(infer_stage(ws), JobStage.CONVERTING)
        (ws / "chunks").mkdir()
        (ws / "chunks" / "manifest.json").write_text("{}")
        self.assertEqual(infer_stage(ws), JobStage.CHUNKED)
        (ws / "transcript.txt").write_text("done")
        self.assertEqual(infer_stage(ws), JobStage.COMPLETE)

    def test_open_job_adopts_recordless_workspace(self):
        ws = self.root / "talk_20240102_030405"
        ws.mkdir(parents=True)
        (ws / "audio.wav").write_bytes(b"x")

        job, resumed = open_job(self.root, "talk.mp3")
        self.assertTrue(resumed)
        self.assertEqual(job.workspace, ws)
        self.assertEqual(job.stage, JobStage.CONVERTING)

        loaded = load_job(ws)
        self.assertEqual(loaded.source_name, "talk.mp3")
        self.assertNotIn('recovered', loaded.metadata)
        self.assertTrue(loaded.metadata['recovered_from_artifacts'])

    def test_recordless_workspace_needs_same_extension(self):
        ws = self.root / "talk_20240102_030405"
        ws.mkdir(parents=True)
        (ws / "raw_input.mp3").write_bytes(b"x")
        (ws / "transcript.txt").write_text("done")

        job, resumed = open_job(self.root, "talk.wav")
        self.assertFalse(resumed)
        self.assertNotEqual(job.workspace, ws)
        self.assertEqual(job.stage, JobStage.DISCOVERED)

        job, resumed = open_job(self.root, "talk.mp3")
        self.assertTrue(resumed)
        self.assertEqual(job.workspace, ws)
        self.assertEqual(job.stage, JobStage.COMPLETE)


class TestResources(unittest.TestCase):
    """Test resource probes and the backpressure gate."""

    MEMINFO = (
        "MemTotal:       16384000 kB\n"
        "MemFree:         1000000 kB\n"
        "MemAvailable:    4096000 kB\n"
        "SwapTotal:       2048000 kB\n"
        "SwapFree:        1024000 kB\n"
    )

    def test_parse_meminfo(self):
        snap = parse_meminfo(self.MEMINFO)
        self.assertAlmostEqual(snap.free_ram_mb, 4000.0)
        self.assertAlmostEqual(snap.swap_used_mb, 1000.0)
        self.assertAlmostEqual(snap.total_ram_gb, 16000 / 1024)

    def test_parse_vm_stat(self):
        text = (
            "Mach Virtual Memory Statistics: (page size of 16384 bytes)\n"
            "Pages free:                               1000.\n"
            "Pages active:                             9999.\n"
            "Pages inactive:                           2000.\n"
            "Pages speculative:                        1000.\n"
        )
        self.assertAlmostEqual(parse_vm_stat(text), 4000 * 16384 / (1024 * 1024))

    def test_parse_swapusage(self):
        self.assertAlmostEqual(
            parse_swapusage("vm.swapusage: total = 2048.00M  used = 512.25M  free = 1535.75M"),
            512.25)
        self.assertAlmostEqual(parse_swapusage("vm.swapusage: total = 2G used = 1.5G free = 0.5G"),
                               1536.0)

    def test_gate_waits_for_ram(self):
        snaps = iter([
            ResourceSnapshot(free_ram_mb=100, swap_used_mb=0),
            ResourceSnapshot(free_ram_mb=500, swap_used_mb=0),
            ResourceSnapshot(free_ram_mb=2048, swap_used_mb=0),
        ])
        sleeps = []
        gate = ResourceGate(min_free_ram_mb=1024, max_swap_used_mb=2048, poll_interval_sec=7,
                            probe=lambda: next(snaps), sleep=sleeps.append)
        snap = gate.wait_until_ready("converting")
        self.assertEqual(snap.free_ram_mb, 2048)
        self.assertEqual(sleeps, [7, 7])

    def test_gate_rejects_swap(self):
        gate = ResourceGate(min_free_ram_mb=1024, max_swap_used_mb=2048,
                            probe=lambda: ResourceSnapshot(free_ram_mb=8000, swap_used_mb=4096),
                            sleep=lambda s: None)
        with self.assertRaises(JobError) as ctx:
            gate.wait_until_ready("transcribing")
        self.assertEqual(ctx.exception.code, ErrorCode.SWAP_PRESSURE)
        self.assertTrue(ctx.exception.retryable)

    def test_gate_disabled(self):
        probe = mock.Mock()
        gate = ResourceGate(enabled=False, probe=probe)
        self.assertIsNone(gate.wait_until_ready("converting"))
        probe.assert_not_called()

    def test_disk_space_aborts(self):
        with self.assertRaises(RunAbort) as ctx:
            check_disk_space(Path("/"), 2, probe=lambda p: 0.5)
        self.assertEqual(ctx.exception.code, ErrorCode.DISK_SPACE)
        self.assertEqual(check_disk_space(Path("/"), 2, probe=lambda p: 10.0), 10.0)


class TestRetryController(unittest.TestCase):
    """Test retry bounds and backoff delays."""

    def setUp(self):
        self._tmp = tempfile.TemporaryDirectory()
        self.job = create_job(Path(self._tmp.name), "talk.mp3")
        self.sleeps = []
        self.retry = RetryController(max_retries=3, base_delay_sec=5, multiplier=2,
                                     sleep=self.sleeps.append)

    def tearDown(self):
        self._tmp.cleanup()

    def test_delays(self):
        self.assertEqual([self.retry.delay_for(i) for i in range(3)], [5, 10, 20])

    def test_bounded_retries(self):
        err = JobError(ErrorCode.TRANSCRIBE_FAILED, "boom")
        outcomes = [self.retry.handle_failure(self.job, err) for _ in range(4)]
        self.assertEqual(outcomes, [True, True, True, False])
        self.assertEqual(self.sleeps, [5, 10, 20])

        loaded = load_job(self.job.workspace)
        self.assertEqual(loaded.stage, JobStage.FAILED)
        self.assertEqual(loaded.retry_count, 3)
        self.assertTrue(loaded.is_terminal)
        self.assertEqual(loaded.metadata['error_code'], ErrorCode.TRANSCRIBE_FAILED)

    def test_non_retryable_is_terminal_at_once(self):
        err = JobError(ErrorCode.DURATION_LIMIT, "too long")
        self.assertFalse(self.retry.handle_failure(self.job, err))
        self.assertEqual(self.sleeps, [])
        self.assertTrue(load_job(self.job.workspace).is_terminal)

    def test_zero_retries(self):
        retry = RetryController(max_retries=0, sleep=self.sleeps.append)
        self.assertFalse(retry.handle_failure(self.job, JobError(ErrorCode.CHUNKING, "x")))
        self.assertEqual(load_job(self.job.workspace).retry_count, 0)


class TestChunking(unittest.TestCase):
    """Test time-based chunk planning and the manifest."""

    def test_needs_chunking(self):
        self.assertFalse(needs_chunking(1800, 1800))
        self.assertTrue(needs_chunking(1801, 1800))

    def test_plan_fifty_minutes(self):
        chunks = plan_chunks(3000, 900)
        self.assertEqual([c.duration_sec for c in chunks], [900, 900, 900, 300])
        self.assertEqual([c.start_sec for c in chunks], [0, 900, 1800, 2700])
        self.assertEqual([c.idx for c in chunks], [0, 1, 2, 3])

    def test_plan_exact_multiple(self):
        chunks = plan_chunks(2700, 900)
        self.assertEqual(len(chunks), 3)
        self.assertEqual(chunks[-1].duration_sec, 900)

    def test_plan_zero_duration(self):
        self.assertEqual(plan_chunks(0, 900), [])

    def test_manifest_round_trip(self):
        with tempfile.TemporaryDirectory() as tmpdir:
            chunks_dir = Path(tmpdir)
            entries = plan_chunks(2000, 900)
            write_manifest(chunks_dir, entries)
            loaded = read_manifest(chunks_dir)
            self.assertEqual([e.idx for e in loaded], [0, 1, 2])
            self.assertEqual(loaded[2].offset_sec, 1800)
            self.assertEqual(loaded[0].media_path, chunks_dir / "chunk_000.wav")

    def test_manifest_gap_rejected(self):
        with tempfile.TemporaryDirectory() as tmpdir:
            chunks_dir = Path(tmpdir)
            entries = plan_chunks(3000, 900)
            write_manifest(chunks_dir, [entries[0], entries[2]])
            with self.assertRaises(JobError) as ctx:
                read_manifest(chunks_dir)
            self.assertEqual(ctx.exception.code, ErrorCode.CHUNKING)

    def test_outputs_complete(self):
        with tempfile.TemporaryDirectory() as tmpdir:
            chunks_dir = Path(tmpdir)
            entry = ChunkEntry(idx=0, start_sec=0, duration_sec=900)
            (chunks_dir / "chunk_000.txt").write_text("hi")
            (chunks_dir / "chunk_000.srt").write_text("1\n")
            self.assertFalse(chunk_outputs_complete(chunks_dir, entry))
            (chunks_dir / "chunk_000.json").write_text("{}")
            self.assertTrue(chunk_outputs_complete(chunks_dir, entry))

    def test_outputs_complete_rejects_unusable(self):
        with tempfile.TemporaryDirectory() as tmpdir:
            chunks_dir = Path(tmpdir)
            entry = ChunkEntry(idx=0, start_sec=0, duration_sec=900)
            (chunks_dir / "chunk_000.txt").write_text(" \n")
            (chunks_dir / "chunk_000.srt").write_text("1\n")
            (chunks_dir / "chunk_000.json").write_text("{}")
            self.assertFalse(chunk_outputs_complete(chunks_dir, entry))
            (chunks_dir / "chunk_000.txt").write_text("hi")
            (chunks_dir / "chunk_000.json").write_text("{")
            self.assertFalse(chunk_outputs_complete(chunks_dir, entry))

    def test_split_cuts_measures_and_resumes(self):
        with tempfile.TemporaryDirectory() as tmpdir:
            chunks_dir = Path(tmpdir) / "chunks"
            chunks_dir.mkdir()
            # Left behind by an interrupted attempt
            (chunks_dir / "chunk_001.wav").write_bytes(b"RIFF")
            calls = []

            def fake_run(args, timeout):
                calls.append(args)
                Path(args[-1]).write_bytes(b"RIFF")
                return _completed()

            # 2700.6s of audio, planned from its whole seconds
            entries = plan_chunks(2700, 900)
            with mock.patch('ultransc.core.chunking.run_subprocess_capture', side_effect=fake_run), \
                    mock.patch('ultransc.core.chunking.get_audio_duration',
                               side_effect=[900.25, 899.75, 900.6]):
                entries = split_audio_into_chunks(Path(tmpdir) / "audio.wav", chunks_dir, entries)

            # chunk_001 is not cut again
            self.assertEqual(len(calls), 2)
            first, last = calls
            self.assertEqual(first[first.index("-t") + 1], "900.000")
            self.assertEqual(last[last.index("-ss") + 1], "1800.000")
            self.assertNotIn("-t", last)

            self.assertEqual([e.offset_sec for e in entries], [0.0, 900.25, 1800.0])
            self.assertAlmostEqual(entries[-1].offset_sec + entries[-1].duration_sec, 2700.6)
            self.assertEqual(sorted(p.name for p in chunks_dir.glob("*.wav")),
                             ["chunk_000.wav", "chunk_001.wav", "chunk_002.wav"])
            loaded = read_manifest(chunks_dir)
            self.assertEqual([e.offset_sec for e in loaded], [0.0, 900.25, 1800.0])

    def test_cut_failure_leaves_no_part_file(self):
        with tempfile.TemporaryDirectory() as tmpdir:
            chunks_dir = Path(tmpdir)

            def fake_run(args, timeout):
                Path(args[-1]).write_bytes(b"partial")
                return _completed(rc=1, stderr="invalid data")

            entry = plan_chunks(1800, 900)[0]
            with mock.patch('ultransc.core.chunking.run_subprocess_capture', side_effect=fake_run):
                with self.assertRaises(JobError) as ctx:
                    cut_chunk(Path("audio.wav"), chunks_dir, entry)
            self.assertEqual(ctx.exception.code, ErrorCode.CHUNKING)
            self.assertEqual(list(chunks_dir.iterdir()), [])


class TestStitch(unittest.TestCase):
    """Test reassembly of chunk outputs."""

    SRT_A = ("1\n00:00:01,000 --> 00:00:02,000\nhello\n\n"
             "2\n00:00:03,000 --> 00:00:04,500\nworld\n")
    SRT_B = "1\n00:00:00,500 --> 00:00:01,000\nagain\n"

    def test_time_carry(self):
        self.assertEqual(ms_to_srt_time(3_600_000 + 61_001), "01:01:01,001")
        self.assertEqual(ms_to_srt_time(-5), "00:00:00,000")

    def test_shift_time_line(self):
        self.assertEqual(shift_time_line("00:59:59,500 --> 01:00:00,000", 1000),
                         "01:00:00,500 --> 01:00:01,000")
        self.assertEqual(shift_time_line("not a timing line", 1000), "not a timing line")

    def test_text_separators(self):
        result = stitch_text(["one", "two\n", "three", "four"])
        self.assertEqual(result, "one\n\ntwo\n\nthree\n\nfour\n\n")
        self.assertEqual(result.count("\n\n"), 4)

    def test_srt_renumber_and_offset(self):
        result = stitch_srt([self.SRT_A, self.SRT_B], [0, 900])
        blocks = result.strip().split("\n\n")
        self.assertEqual([b.splitlines()[0] for b in blocks], ["1", "2", "3"])
        self.assertIn("00:15:00,500 --> 00:15:01,000", blocks[2])
        self.assertIn("00:00:01,000 --> 00:00:02,000", blocks[0])

    def test_srt_legacy_keeps_chunk_times(self):
        result = stitch_srt([self.SRT_A, self.SRT_B], [0, 900], apply_offsets=False)
        self.assertIn("3\n00:00:00,500 --> 00:00:01,000\nagain", result)

    def test_segments(self):
        seg = {
            "timestamps": {"from": "00:00:00,000", "to": "00:00:01,000"},
            "offsets": {"from": 0, "to": 1000},
            "text": " hi",
        }
        docs = [
            {"model": {"type": "small"}, "transcription": [seg]},
            {"model": {"type": "small"}, "transcription": [seg]},
        ]
        result = stitch_segments(docs, [0, 900])
        self.assertEqual(result["chunks"], 2)
        self.assertEqual(result["model"], {"type": "small"})
        second = result["transcription"][1]
        self.assertEqual(second["offsets"], {"from": 900000, "to": 901000})
        self.assertEqual(second["timestamps"]["from"], "00:15:00,000")
        # Input is not mutated
        self.assertEqual(seg["offsets"]["from"], 0)

    def test_stitch_chunk_outputs(self):
        with tempfile.TemporaryDirectory() as tmpdir:
            ws = Path(tmpdir)
            chunks_dir = ws / "chunks"
            chunks_dir.mkdir()
            entries = plan_chunks(1200, 900)
            for e, srt in zip(entries, (self.SRT_A, self.SRT_B)):
                (chunks_dir / f"{e.name}.txt").write_text(f"text {e.idx}\n")
                (chunks_dir / f"{e.name}.srt").write_text(srt)
                (chunks_dir / f"{e.name}.json").write_text(json.dumps({"transcription": []}))

            out = stitch_chunk_outputs(chunks_dir, entries, ws / "transcript")
            self.assertEqual(out['txt'].read_text(), "text 0\n\ntext 1\n\n")
            self.assertIn("00:15:00,500", out['srt'].read_text())
            self.assertEqual(json.loads(out['json'].read_text())["chunks"], 2)
            self.assertTrue(transcript_exists(ws))

    def test_stitch_missing_chunk_output(self):
        with tempfile.TemporaryDirectory() as tmpdir:
            ws = Path(tmpdir)
            entries = plan_chunks(900, 900)
            with self.assertRaises(JobError) as ctx:
                stitch_chunk_outputs(ws, entries, ws / "transcript")
            self.assertEqual(ctx.exception.code, ErrorCode.CHUNK_OUTPUT_MISSING)
            self.assertFalse(transcript_exists(ws))

    def test_stitch_zero_chunks(self):
        with tempfile.TemporaryDirectory() as tmpdir:
            with self.assertRaises(JobError) as ctx:
                stitch_chunk_outputs(Path(tmpdir), [], Path(tmpdir) / "transcript")
            self.assertEqual(ctx.exception.code, ErrorCode.NO_CHUNKS)
            self.assertFalse(ctx.exception.retryable)


class TestCollaborators(unittest.TestCase):
    """Test the ffmpeg / whisper-cli / yt-dlp wrappers with a fake subprocess."""

    def test_convert_args(self):
        args = build_convert_args(Path("in.mp4"), Path("out.wav"), audio_filter="highpass=f=200")
        self.assertEqual(args[0], "ffmpeg")
        self.assertIn("-vn", args)
        self.assertEqual(args[args.index("-ar") + 1], "16000")
        self.assertEqual(args[args.index("-ac") + 1], "1")
        self.assertEqual(args[args.index("-af") + 1], "highpass=f=200")

    def test_convert_renames_part_file(self):
        with tempfile.TemporaryDirectory() as tmpdir:
            out = Path(tmpdir) / "audio.wav"

            def fake_run(args, timeout):
                Path(args[-1]).write_bytes(b"RIFF")
                return _completed()

            with mock.patch('ultransc.core.normalize.run_subprocess_capture', side_effect=fake_run):
                convert_to_wav(Path("in.mp4"), out)
            self.assertTrue(out.exists())
            self.assertFalse((Path(tmpdir) / "audio.part.wav").exists())

    def test_convert_timeout(self):
        with tempfile.TemporaryDirectory() as tmpdir:
            with mock.patch('ultransc.core.normalize.run_subprocess_capture',
                            side_effect=subprocess.TimeoutExpired("ffmpeg", 5)):
                with self.assertRaises(JobError) as ctx:
                    convert_to_wav(Path("in.mp4"), Path(tmpdir) / "audio.wav", timeout=5)
            self.assertEqual(ctx.exception.code, ErrorCode.CONVERT_TIMEOUT)

    def test_transcribe_requires_text(self):
        with tempfile.TemporaryDirectory() as tmpdir:
            prefix = Path(tmpdir) / "transcript"
            with mock.patch('ultransc.core.transcribe_whisper.run_subprocess_capture',
                            return_value=_completed()):
                with self.assertRaises(JobError) as ctx:
                    transcribe_audio(Path("audio.wav"), Path("model.bin"), prefix)
            self.assertEqual(ctx.exception.code, ErrorCode.TRANSCRIBE_FAILED)

    def test_transcribe_nonzero_exit(self):
        with tempfile.TemporaryDirectory() as tmpdir:
            with mock.patch('ultransc.core.transcribe_whisper.run_subprocess_capture',
                            return_value=_completed(rc=3, stderr="bad model")):
                with self.assertRaises(JobError) as ctx:
                    transcribe_audio(Path("a.wav"), Path("m.bin"), Path(tmpdir) / "t")
            self.assertIn("bad model", ctx.exception.message)

    def test_transcribe_timeout(self):
        with tempfile.TemporaryDirectory() as tmpdir:
            with mock.patch('ultransc.core.transcribe_whisper.run_subprocess_capture',
                            side_effect=subprocess.TimeoutExpired("whisper-cli", 5)):
                with self.assertRaises(JobError) as ctx:
                    transcribe_audio(Path("a.wav"), Path("m.bin"), Path(tmpdir) / "t")
            self.assertEqual(ctx.exception.code, ErrorCode.TRANSCRIBE_TIMEOUT)

    def test_transcribe_chunk_requires_all_outputs(self):
        with tempfile.TemporaryDirectory() as tmpdir:
            prefix = Path(tmpdir) / "chunk_000"

            def fake_run(args, timeout):
                prefix.with_suffix(".txt").write_text("words")
                return _completed()

            with mock.patch('ultransc.core.transcribe_whisper.run_subprocess_capture',
                            side_effect=fake_run):
                transcribe_audio(Path("a.wav"), Path("m.bin"), prefix)
                with self.assertRaises(JobError) as ctx:
                    transcribe_audio(Path("a.wav"), Path("m.bin"), prefix, require_all=True)
            self.assertEqual(ctx.exception.code, ErrorCode.CHUNK_OUTPUT_MISSING)

    def test_transcribe_chunk_rejects_blank_output(self):
        with tempfile.TemporaryDirectory() as tmpdir:
            prefix = Path(tmpdir) / "chunk_000"

            def fake_run(args, timeout):
                prefix.with_suffix(".txt").write_text("words")
                prefix.with_suffix(".srt").write_text("  \n")
                prefix.with_suffix(".json").write_text("{}")
                return _completed()

            with mock.patch('ultransc.core.transcribe_whisper.run_subprocess_capture',
                            side_effect=fake_run):
                with self.assertRaises(JobError) as ctx:
                    transcribe_audio(Path("a.wav"), Path("m.bin"), prefix, require_all=True)
            self.assertEqual(ctx.exception.code, ErrorCode.CHUNK_OUTPUT_MISSING)
            self.assertIn("srt", ctx.exception.message)

    def test_parse_url_lines(self):
        text = """
        https://example.com/a
        # a comment

        https://example.com/b
        """
        self.assertEqual(parse_url_lines(text), ["https://example.com/a", "https://example.com/b"])
        self.assertEqual(parse_url_lines(""), [])

    def test_download_media(self):
        with tempfile.TemporaryDirectory() as tmpdir:
            out_dir = Path(tmpdir)

            def fake_run(args, timeout):
                (out_dir / "dl.webm.part").write_bytes(b"x")
                (out_dir / "dl.webm").write_bytes(b"x")
                return _completed()

            with mock.patch('ultransc.core.download_media.run_subprocess_capture',
                            side_effect=fake_run):
                path = download_media("https://example.com/v", out_dir, "yt-dlp", stem="dl")
            self.assertEqual(path.name, "dl.webm")
            self.assertTrue(is_partial_download(out_dir / "dl.webm.part"))

    def test_download_failure_is_unit_error(self):
        with tempfile.TemporaryDirectory() as tmpdir:
            with mock.patch('ultransc.core.download_media.run_subprocess_capture',
                            return_value=_completed(rc=1, stderr="404")):
                with self.assertRaises(UnitError) as ctx:
                    download_media("https://example.com/v", Path(tmpdir), "yt-dlp", stem="dl")
            self.assertEqual(ctx.exception.code, ErrorCode.DOWNLOAD_FAILED)


class TestModelSelect(unittest.TestCase):
    """Test the model decision table."""

    BOTH = [MODEL_MEDIUM, MODEL_SMALL]

    def test_big_host_gets_medium(self):
        self.assertEqual(choose_model(20000, 32, self.BOTH), MODEL_MEDIUM)

    def test_mid_host_long_input_gets_small(self):
        self.assertEqual(choose_model(3600, 12, self.BOTH), MODEL_MEDIUM)
        self.assertEqual(choose_model(10000, 12, self.BOTH), MODEL_SMALL)

    def test_small_host(self):
        self.assertEqual(choose_model(600, 4, self.BOTH), MODEL_SMALL)
        self.assertEqual(choose_model(600, 4, [MODEL_MEDIUM]), MODEL_MEDIUM)

    def test_fallbacks(self):
        self.assertEqual(choose_model(600, 32, ["ggml-base.bin"]), "ggml-base.bin")
        self.assertIsNone(choose_model(600, 32, []))

    def test_model_list(self):
        with tempfile.TemporaryDirectory() as tmpdir:
            models = Path(tmpdir)
            (models / MODEL_SMALL).write_bytes(b"x")
            (models / "notes.txt").write_text("x")
            self.assertEqual(list_installed_models(models), [MODEL_SMALL])
            data = json.loads(write_model_list(models).read_text())
            self.assertEqual(data["installed"], {MODEL_SMALL: True})


class TestBootstrap(unittest.TestCase):
    """Test HTTP fetches with a fake requests session."""

    def _session(self, status=200, body=(b"abc",)):
        resp = mock.MagicMock()
        resp.status_code = status
        resp.iter_content.return_value = list(body)
        session = mock.MagicMock()
        session.get.return_value.__enter__.return_value = resp
        return session

    def test_download_file(self):
        with tempfile.TemporaryDirectory() as tmpdir:
            dest = Path(tmpdir) / "bin" / "yt-dlp"
            download_file("https://example.com/yt-dlp", dest, session=self._session())
            self.assertEqual(dest.read_bytes(), b"abc")

    def test_download_file_http_error(self):
        with tempfile.TemporaryDirectory() as tmpdir:
            dest = Path(tmpdir) / "model.bin"
            with self.assertRaises(FetchError):
                download_file("https://example.com/x", dest, session=self._session(status=404))
            self.assertEqual(list(Path(tmpdir).iterdir()), [])

    def test_resolve_ytdlp_fetches(self):
        with tempfile.TemporaryDirectory() as tmpdir:
            bin_dir = Path(tmpdir)
            with mock.patch('ultransc.core.bootstrap.shutil.which', return_value=None):
                path = resolve_ytdlp(bin_dir, auto_fetch=True, session=self._session())
            self.assertEqual(path, bin_dir / "yt-dlp")
            self.assertTrue(path.stat().st_mode & 0o100)

    def test_resolve_ytdlp_missing_aborts(self):
        with tempfile.TemporaryDirectory() as tmpdir:
            with mock.patch('ultransc.core.bootstrap.shutil.which', return_value=None):
                with self.assertRaises(RunAbort) as ctx:
                    resolve_ytdlp(Path(tmpdir), auto_fetch=False)
            self.assertEqual(ctx.exception.code, ErrorCode.MISSING_TOOL)


class TestOutputWriter(unittest.TestCase):
    """Test output file operations."""

    def test_segments_alias(self):
        with tempfile.TemporaryDirectory() as tmpdir:
            ws = Path(tmpdir)
            self.assertIsNone(link_segments_alias(ws))
            (ws / "transcript.json").write_text('{"transcription": []}')
            alias = link_segments_alias(ws)
            self.assertEqual(json.loads(alias.read_text()), {"transcription": []})


class TestKeywordBlocks(unittest.TestCase):
    """Test keyword context extraction."""

    def setUp(self):
        self._tmp = tempfile.TemporaryDirectory()
        root = Path(self._tmp.name)
        self.workspace = root / "workspace"
        self.blocks_dir = root / "blocks"
        job = self.workspace / "lecture_03_20240101_000000"
        job.mkdir(parents=True)
        lines = [hashlib.md5(str(i).encode()).hexdigest() for i in range(30)]
        for i in (9, 10, 25):
            lines[i] += " entropy"
        (job / "transcript.txt").write_text("\n".join(lines) + "\n")

    def tearDown(self):
        self._tmp.cleanup()

    def test_extract_and_skip_similar(self):
        result = extract_blocks(self.workspace, self.blocks_dir, ["lecture", "03"], ["entropy"])
        self.assertEqual(result.job_id, "lecture_03_20240101_000000")
        self.assertEqual((result.saved, result.skipped), (2, 1))
        txt = result.txt_path.read_text()
        self.assertIn("(line 10)", txt)
        self.assertIn("(line 26)", txt)
        self.assertIn("```text", result.md_path.read_text())

        # A second run finds everything already saved
        again = extract_blocks(self.workspace, self.blocks_dir, ["lecture"], ["entropy"])
        self.assertEqual((again.saved, again.skipped), (0, 3))

    def test_missing_keyword(self):
        result = extract_blocks(self.workspace, self.blocks_dir, ["lecture"], ["nowhere"])
        self.assertEqual(result.missing_keywords, ["nowhere"])

    def test_no_matching_job(self):
        with self.assertRaises(BlockSearchError):
            extract_blocks(self.workspace, self.blocks_dir, ["03", "lecture"], ["entropy"])


if __name__ == "__main__":
    unittest.main()
