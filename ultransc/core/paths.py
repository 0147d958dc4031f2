"""
Run root layout: queue folders, workspace, models, logs.
"""

import logging
from dataclasses import dataclass
from pathlib import Path

from ultransc.core.constants import (
    QUEUE_DIRNAME, INCOMING_DIRNAME, PROCESSING_DIRNAME, DONE_DIRNAME,
    LINKS_FILENAME, LINKS_FAILED_FILENAME, WORKSPACE_DIRNAME, MODELS_DIRNAME,
    BIN_DIRNAME, LOG_DIRNAME, BLOCKS_DIRNAME, CONFIG_DIRNAME, CONFIG_FILENAME,
)

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Layout:
    root: Path

    @property
    def queue_dir(self) -> Path:
        return self.root / QUEUE_DIRNAME

    @property
    def incoming(self) -> Path:
        return self.queue_dir / INCOMING_DIRNAME

    @property
    def processing(self) -> Path:
        return self.queue_dir / PROCESSING_DIRNAME

    @property
    def done(self) -> Path:
        return self.queue_dir / DONE_DIRNAME

    @property
    def links(self) -> Path:
        return self.queue_dir / LINKS_FILENAME

    @property
    def links_failed(self) -> Path:
        return self.queue_dir / LINKS_FAILED_FILENAME

    @property
    def workspace(self) -> Path:
        return self.root / WORKSPACE_DIRNAME

    @property
    def models_dir(self) -> Path:
        return self.root / MODELS_DIRNAME

    @property
    def bin_dir(self) -> Path:
        return self.root / BIN_DIRNAME

    @property
    def logs_dir(self) -> Path:
        return self.root / LOG_DIRNAME

    @property
    def blocks_dir(self) -> Path:
        return self.root / BLOCKS_DIRNAME

    @property
    def config_path(self) -> Path:
        return self.root / CONFIG_DIRNAME / CONFIG_FILENAME

    def ensure(self):
        """Create every folder of the layout and an empty URL list."""
        for path in (self.incoming, self.processing, self.done, self.workspace,
                     self.models_dir, self.bin_dir, self.logs_dir):
            path.mkdir(parents=True, exist_ok=True)
        self.links.touch(exist_ok=True)
