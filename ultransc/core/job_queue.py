"""
Queue orchestrator.
Drains the source categories in priority order and drives one job at a
time through the stage driver, with retries.  A failing unit never stops
the units after it; only run-level failures (RunAbort) end the pass.
"""

import shutil
import logging
from datetime import datetime
from pathlib import Path
from typing import Callable, Optional

from ultransc.core.constants import (
    JobStage, SourceCategory, DEFAULT_SOURCE_PRIORITY, FAILED_SUFFIX,
    MIN_FREE_DISK_GB, DOWNLOAD_TIMEOUT_SEC,
)
from ultransc.core.error_codes import JobError, UnitError, RunAbort
from ultransc.core.models import Job, RunSummary
from ultransc.core.paths import Layout
from ultransc.core.state_store import open_job, find_latest_job, atomic_write_text
from ultransc.core.joblog import open_job_logger, close_job_logger
from ultransc.core.job_driver import JobStageDriver
from ultransc.core.resources import (
    ResourceGate, ResourceSnapshot, read_resources, check_disk_space, disk_free_gb,
)
from ultransc.core.retry import RetryController
from ultransc.core.download_media import download_media, parse_url_lines, is_partial_download
from ultransc.core.bootstrap import resolve_ytdlp

logger = logging.getLogger(__name__)


class QueueOrchestrator:
    """
    Processes queued local files and the URL list, one job at a time.
    Emits a callback after every job for status reporting.
    """

    def __init__(self, layout: Layout, config: dict | None = None,
                 gate: ResourceGate | None = None,
                 retry: RetryController | None = None,
                 monitor: Callable[[], ResourceSnapshot] = read_resources,
                 disk_probe: Callable[[Path], float] = disk_free_gb):
        self.layout = layout
        self.config = config or {}
        self.gate = gate or ResourceGate.from_config(self.config, probe=monitor)
        self.retry = retry or RetryController.from_config(self.config)
        self._monitor = monitor
        self._disk_probe = disk_probe
        self._total_ram_gb = 0.0

        # Callbacks
        self.on_job_finished: Optional[Callable[[Job], None]] = None

    # ── Config helpers ────────────────────────────────────────────────

    @property
    def source_priority(self) -> list[str]:
        return list(self.config.get('source_priority', DEFAULT_SOURCE_PRIORITY))

    @property
    def min_free_disk_gb(self) -> float:
        return self.config.get('min_free_disk_gb', MIN_FREE_DISK_GB)

    # ── Pass ──────────────────────────────────────────────────────────

    def run_pass(self) -> RunSummary:
        """Drain every configured category once, in priority order."""
        self.layout.ensure()
        summary = RunSummary()
        self._check_disk()
        self._total_ram_gb = self._monitor().total_ram_gb

        logger.info("Processing queue (order: %s)…", ', '.join(self.source_priority))
        for category in self.source_priority:
            if category == SourceCategory.LOCAL:
                self._drain_local(summary)
            elif category == SourceCategory.URLS:
                self._drain_urls(summary)
            else:
                logger.warning("Unknown source category %r — skipping", category)
                summary.skipped_categories.append(category)

        logger.info("Queue empty. %d completed, %d failed, %d unit failure(s).",
                    summary.completed, summary.failed, summary.unit_failures)
        return summary

    def _check_disk(self):
        free = check_disk_space(self.layout.root, self.min_free_disk_gb, probe=self._disk_probe)
        logger.debug("Free disk: %.1fGB", free)

    # ── Local files ───────────────────────────────────────────────────

    def scan_local(self) -> list[Path]:
        """
        Snapshot of local work: interrupted claims in processing/ first,
        then the drop folder, each in lexical order.
        """
        units = []
        for folder in (self.layout.processing, self.layout.incoming):
            if not folder.is_dir():
                continue
            for path in sorted(folder.iterdir()):
                if not path.is_file() or path.name.startswith('.') or is_partial_download(path):
                    continue
                units.append(path)
        return units

    def _drain_local(self, summary: RunSummary):
        units = self.scan_local()
        if not units:
            logger.info("No local files queued")
            return
        for path in units:
            self._check_disk()
            try:
                if path.parent == self.layout.processing:
                    self._process_interrupted(path, summary)
                else:
                    self.process_source(self._claim(path), summary)
            except RunAbort:
                raise
            except Exception as e:
                logger.error("Unit %s failed: %s", path.name, e, exc_info=True)
                summary.unit_failures += 1

    def _claim(self, path: Path) -> Path:
        """Move a file from the drop folder into processing/."""
        dest = self._unique_dest(self.layout.processing, path.name)
        shutil.move(str(path), str(dest))
        logger.info("Claimed %s", dest.name)
        return dest

    def _process_interrupted(self, source: Path, summary: RunSummary):
        # A crash after the job finished but before the source was moved
        latest = find_latest_job(self.layout.workspace, source.name)
        if latest is not None and latest.is_terminal:
            failed = latest.stage != JobStage.COMPLETE
            logger.info("Job %s for %s already finalized — moving source", latest.job_id, source.name)
            self._finish_source(source, failed=failed)
            if failed:
                summary.failed += 1
            else:
                summary.completed += 1
            return
        self.process_source(source, summary)

    # ── URLs ──────────────────────────────────────────────────────────

    def _drain_urls(self, summary: RunSummary):
        links = self.layout.links
        if not links.exists():
            logger.info("No URL list at %s", links)
            return
        urls = parse_url_lines(links.read_text(encoding='utf-8', errors='replace'))
        if not urls:
            logger.info("No URLs queued")
            return

        ytdlp = resolve_ytdlp(self.layout.bin_dir, self.config.get('auto_fetch_ytdlp', True))
        timeout = self.config.get('download_timeout_sec', DOWNLOAD_TIMEOUT_SEC)

        for i, url in enumerate(urls):
            self._check_disk()
            logger.info("Downloading URL: %s", url)
            try:
                media = download_media(url, self.layout.processing, ytdlp, timeout=timeout)
            except UnitError as e:
                logger.error("Failed to download %s: %s", url, e)
                summary.unit_failures += 1
                self._record_failed_url(url, e)
                self._write_remaining_urls(urls[i + 1:])
                continue

            # The URL is consumed only once its media sits in processing/
            self._write_remaining_urls(urls[i + 1:])
            try:
                self.process_source(media, summary)
            except RunAbort:
                raise
            except Exception as e:
                logger.error("Unit %s (%s) failed: %s", media.name, url, e, exc_info=True)
                summary.unit_failures += 1

    def _write_remaining_urls(self, remaining: list[str]):
        text = ''.join(f"{url}\n" for url in remaining)
        atomic_write_text(self.layout.links, text)

    def _record_failed_url(self, url: str, error: UnitError):
        stamp = datetime.now().strftime('%Y-%m-%d %H:%M:%S')
        with open(self.layout.links_failed, 'a', encoding='utf-8') as f:
            f.write(f"# [{stamp}] {error.code}: {error.message[:200]}\n{url}\n")

    # ── Job processing ────────────────────────────────────────────────

    def process_source(self, source: Path, summary: RunSummary | None = None) -> Job:
        """
        Drive the job for one claimed source to completion or terminal
        failure, retrying with backoff in between.
        """
        summary = summary if summary is not None else RunSummary()
        job, resumed = open_job(self.layout.workspace, source.name)
        log = open_job_logger(job.job_id, job.workspace)
        try:
            log.info("%s job %s for file: %s", "Resuming" if resumed else "Starting",
                     job.job_id, source.name)
            while True:
                driver = JobStageDriver(job, source, self.config, self.layout.models_dir,
                                        self.gate, log=log, total_ram_gb=self._total_ram_gb)
                try:
                    driver.run()
                except JobError as e:
                    if self.retry.handle_failure(job, e, log):
                        continue
                    dest = self._finish_source(source, failed=True)
                    log.error("Job %s terminally failed; source moved to %s",
                              job.job_id, dest.name if dest else "(missing)")
                    summary.failed += 1
                    break
                self._finish_source(source, failed=False)
                log.info("Job %s completed.", job.job_id)
                summary.completed += 1
                break
        finally:
            close_job_logger(log)

        if self.on_job_finished:
            self.on_job_finished(job)
        return job

    def _finish_source(self, source: Path, failed: bool) -> Path | None:
        """Move a claimed source into done/, with the failure suffix when failed."""
        if not source.exists():
            logger.warning("Source %s already gone; nothing to move", source)
            return None
        name = source.name + FAILED_SUFFIX if failed else source.name
        dest = self._unique_dest(self.layout.done, name)
        shutil.move(str(source), str(dest))
        return dest

    @staticmethod
    def _unique_dest(folder: Path, name: str) -> Path:
        folder.mkdir(parents=True, exist_ok=True)
        dest = folder / name
        if not dest.exists():
            return dest
        stamp = datetime.now().strftime('%Y%m%d_%H%M%S')
        base, dot, ext = name.partition('.')
        n = 0
        while True:
            suffix = f"_{stamp}" if n == 0 else f"_{stamp}_{n}"
            candidate = folder / (f"{base}{suffix}{dot}{ext}")
            if not candidate.exists():
                return candidate
            n += 1
