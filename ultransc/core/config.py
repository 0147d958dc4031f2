"""
Application configuration manager.
Stores settings in a JSON file under <root>/config/.
"""

import json
import logging
from pathlib import Path

from ultransc.core.constants import (
    DEFAULT_SOURCE_PRIORITY, MODEL_AUTO,
    CHUNK_THRESHOLD_SEC, CHUNK_DURATION_SEC, MAX_DURATION_SEC,
    MIN_FREE_RAM_MB, MAX_SWAP_USED_MB, RAM_POLL_INTERVAL_SEC, MIN_FREE_DISK_GB,
    MAX_RETRIES, RETRY_BASE_DELAY_SEC, RETRY_MULTIPLIER,
    CONVERT_TIMEOUT_SEC, TRANSCRIBE_TIMEOUT_SEC, DOWNLOAD_TIMEOUT_SEC,
)

# Validation bounds
_CHUNK_DURATION_MIN = 60          # 1 minute
_CHUNK_DURATION_MAX = 7200        # 2 hours
_MAX_RETRIES_MAX = 20
_POLL_INTERVAL_MIN = 1

logger = logging.getLogger(__name__)

_DEFAULTS = {
    'source_priority': list(DEFAULT_SOURCE_PRIORITY),
    'model': MODEL_AUTO,
    'language': 'auto',
    'enable_chunking': True,
    'chunk_threshold_sec': CHUNK_THRESHOLD_SEC,
    'chunk_duration_sec': CHUNK_DURATION_SEC,
    'max_duration_sec': MAX_DURATION_SEC,
    'enable_backpressure': True,
    'min_free_ram_mb': MIN_FREE_RAM_MB,
    'max_swap_used_mb': MAX_SWAP_USED_MB,
    'ram_poll_interval_sec': RAM_POLL_INTERVAL_SEC,
    'min_free_disk_gb': MIN_FREE_DISK_GB,
    'max_retries': MAX_RETRIES,
    'retry_base_delay_sec': RETRY_BASE_DELAY_SEC,
    'retry_multiplier': RETRY_MULTIPLIER,
    'convert_timeout_sec': CONVERT_TIMEOUT_SEC,
    'transcribe_timeout_sec': TRANSCRIBE_TIMEOUT_SEC,
    'download_timeout_sec': DOWNLOAD_TIMEOUT_SEC,
    'cleanup_temp': True,
    'srt_apply_offsets': True,
    'audio_filter': '',
    'auto_fetch_ytdlp': True,
}

_BOOL_KEYS = {
    'enable_chunking', 'enable_backpressure', 'cleanup_temp',
    'srt_apply_offsets', 'auto_fetch_ytdlp',
}

_POSITIVE_NUMBER_KEYS = {
    'chunk_threshold_sec', 'max_duration_sec', 'min_free_ram_mb',
    'max_swap_used_mb', 'min_free_disk_gb', 'retry_base_delay_sec',
    'convert_timeout_sec', 'transcribe_timeout_sec', 'download_timeout_sec',
}


def default_config() -> dict:
    """Return a fresh copy of the default settings."""
    return json.loads(json.dumps(_DEFAULTS))


class AppConfig:
    """Manages application configuration stored as JSON."""

    def __init__(self, config_path: Path):
        self.path = config_path
        self._data: dict = {}
        self.load()

    def load(self):
        """Load config from disk, merging with defaults."""
        self._data = default_config()
        if self.path.exists():
            try:
                with open(self.path, 'r') as f:
                    saved = json.load(f)
            except Exception as e:
                logger.warning("Failed to load config %s: %s", self.path, e)
                return
            if not isinstance(saved, dict):
                logger.warning("Ignoring config %s: top level is not an object", self.path)
                return
            for key, value in saved.items():
                if key not in _DEFAULTS:
                    logger.warning("Unknown config key %r ignored", key)
                    continue
                self._data[key] = self._validate(key, value)

    def save(self):
        """Persist config to disk."""
        self.path.parent.mkdir(parents=True, exist_ok=True)
        with open(self.path, 'w') as f:
            json.dump(self._data, f, indent=2)

    def ensure_saved(self):
        """Write the defaults out on first run so operators have a file to edit."""
        if not self.path.exists():
            self.save()
            logger.info("Wrote default config: %s", self.path)

    def get(self, key: str, default=None):
        return self._data.get(key, default)

    def set(self, key: str, value):
        value = self._validate(key, value)
        self._data[key] = value
        self.save()

    def _validate(self, key: str, value):
        """Validate and coerce config values to safe ranges."""
        if key in _BOOL_KEYS:
            return bool(value)

        if key in _POSITIVE_NUMBER_KEYS:
            try:
                value = float(value)
            except (TypeError, ValueError):
                logger.warning("Invalid %s %r — using default", key, value)
                return _DEFAULTS[key]
            if value <= 0:
                logger.warning("Non-positive %s %r — using default", key, value)
                return _DEFAULTS[key]
            return value

        if key == 'chunk_duration_sec':
            try:
                value = int(value)
            except (TypeError, ValueError):
                logger.warning("Invalid chunk_duration_sec %r — using default", value)
                return CHUNK_DURATION_SEC
            return max(_CHUNK_DURATION_MIN, min(_CHUNK_DURATION_MAX, value))

        if key == 'max_retries':
            try:
                value = int(value)
            except (TypeError, ValueError):
                logger.warning("Invalid max_retries %r — using default", value)
                return MAX_RETRIES
            return max(0, min(_MAX_RETRIES_MAX, value))

        if key == 'retry_multiplier':
            try:
                value = float(value)
            except (TypeError, ValueError):
                logger.warning("Invalid retry_multiplier %r — using default", value)
                return RETRY_MULTIPLIER
            return max(1.0, value)

        if key == 'ram_poll_interval_sec':
            try:
                value = float(value)
            except (TypeError, ValueError):
                logger.warning("Invalid ram_poll_interval_sec %r — using default", value)
                return RAM_POLL_INTERVAL_SEC
            return max(_POLL_INTERVAL_MIN, value)

        if key == 'source_priority':
            if isinstance(value, str):
                value = [part.strip() for part in value.split(',') if part.strip()]
            if not isinstance(value, list) or not value:
                logger.warning("Invalid source_priority %r — using default", value)
                return list(DEFAULT_SOURCE_PRIORITY)
            # Unknown names are kept; the orchestrator logs and skips them
            return [str(v) for v in value]

        if key in ('model', 'language', 'audio_filter'):
            return str(value) if value is not None else _DEFAULTS[key]

        return value

    def as_dict(self) -> dict:
        return dict(self._data)
