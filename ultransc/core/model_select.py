"""
Whisper model selection policy.
A pure decision table over input duration, host RAM and installed models.
"""

import json
import logging
from pathlib import Path

from ultransc.core.constants import (
    MODEL_AUTO, MODEL_MEDIUM, MODEL_SMALL, DEFAULT_MODEL, MODEL_LIST_FILENAME,
    MEDIUM_MIN_RAM_GB, LONG_INPUT_MIN_RAM_GB, LONG_INPUT_SEC,
)

logger = logging.getLogger(__name__)


def choose_model(duration_sec: float, total_ram_gb: float, installed: list[str]) -> str | None:
    """
    Pick a model file name.

    | RAM        | duration          | medium installed | result        |
    |------------|-------------------|------------------|---------------|
    | >= 16GB    | any               | yes              | medium        |
    | 8–16GB     | <= LONG_INPUT_SEC | yes              | medium        |
    | 8–16GB     | >  LONG_INPUT_SEC | yes              | small*        |
    | < 8GB      | any               | any              | small*        |

    * falls back to medium, then to the first installed model, when small
    is not installed.  Returns None when nothing is installed.
    """
    if not installed:
        return None

    has_medium = MODEL_MEDIUM in installed
    has_small = MODEL_SMALL in installed

    medium_ok = total_ram_gb >= MEDIUM_MIN_RAM_GB and (
        duration_sec <= LONG_INPUT_SEC or total_ram_gb >= LONG_INPUT_MIN_RAM_GB
    )
    if medium_ok and has_medium:
        return MODEL_MEDIUM
    if has_small:
        return MODEL_SMALL
    if has_medium:
        return MODEL_MEDIUM
    return sorted(installed)[0]


def list_installed_models(models_dir: Path) -> list[str]:
    """Model file names (*.bin) present under models_dir."""
    if not models_dir.is_dir():
        return []
    return sorted(p.name for p in models_dir.glob("*.bin") if p.is_file())


def write_model_list(models_dir: Path) -> Path:
    """Refresh models/list.json with the installed models."""
    path = models_dir / MODEL_LIST_FILENAME
    data = {
        'installed': {name: True for name in list_installed_models(models_dir)},
        'default': DEFAULT_MODEL,
    }
    models_dir.mkdir(parents=True, exist_ok=True)
    with open(path, 'w') as f:
        json.dump(data, f, indent=2)
    return path


def resolve_model(configured: str, duration_sec: float, total_ram_gb: float,
                  models_dir: Path) -> str | None:
    """Configured model name, or the policy's choice when set to 'auto'."""
    if configured and configured != MODEL_AUTO:
        return configured
    return choose_model(duration_sec, total_ram_gb, list_installed_models(models_dir))
