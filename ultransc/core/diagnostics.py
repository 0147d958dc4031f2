"""
Diagnostics: tool version detection, host checks and the run preflight.
"""

import os
import platform
import shutil
import logging
import tempfile
from pathlib import Path

from ultransc.core.constants import (
    ErrorCode, FFMPEG_BIN, FFPROBE_BIN, WHISPER_BIN, YTDLP_BIN,
    REQUIRED_TOOLS, SUPPORTED_OS, MIN_FREE_DISK_GB, LOW_TOTAL_RAM_GB,
)
from ultransc.core.error_codes import RunAbort
from ultransc.core.paths import Layout
from ultransc.core.resources import read_resources, check_disk_space, disk_free_gb
from ultransc.core.model_select import list_installed_models, write_model_list
from ultransc.core.security_utils import run_subprocess_capture

logger = logging.getLogger(__name__)

# Flag each tool answers to with its version
_VERSION_ARGS = {
    FFMPEG_BIN: ["-version"],
    FFPROBE_BIN: ["-version"],
    WHISPER_BIN: ["--help"],
    YTDLP_BIN: ["--version"],
}


def get_tool_version(tool: str, executable: str | None = None) -> str:
    """Return the first line of a tool's version output, or an error message."""
    exe = executable or shutil.which(tool)
    if not exe:
        return "Not installed"
    try:
        result = run_subprocess_capture([str(exe)] + _VERSION_ARGS.get(tool, ["--version"]),
                                        timeout=10)
    except FileNotFoundError:
        return "Not installed"
    except Exception as e:
        return f"Error: {e}"
    output = (result.stdout or result.stderr or "").strip()
    if tool == WHISPER_BIN:
        # whisper-cli has no version flag; --help proves it runs
        return "Installed" if output else f"Error (rc={result.returncode})"
    if result.returncode == 0 and output:
        return output.splitlines()[0]
    return f"Error (rc={result.returncode})"


def check_writable(path: Path) -> bool:
    """True when a file can be created under path."""
    try:
        path.mkdir(parents=True, exist_ok=True)
        with tempfile.NamedTemporaryFile(dir=path, prefix=".write_test_"):
            pass
        return True
    except OSError:
        return False


def get_diagnostics(layout: Layout) -> dict:
    """Gather all diagnostic information."""
    info = {
        "os": platform.system(),
        "os_supported": platform.system() in SUPPORTED_OS,
        "root": str(layout.root),
        "root_writable": check_writable(layout.root),
        "tools": {},
        "models": list_installed_models(layout.models_dir),
        "disk_free_gb": None,
        "resources": None,
        "errors": [],
        "warnings": [],
    }

    for tool in REQUIRED_TOOLS:
        info["tools"][tool] = get_tool_version(tool)
        if info["tools"][tool] == "Not installed":
            info["errors"].append(f"{tool} not found on PATH")

    local_ytdlp = layout.bin_dir / YTDLP_BIN
    ytdlp = str(local_ytdlp) if local_ytdlp.is_file() else None
    info["tools"][YTDLP_BIN] = get_tool_version(YTDLP_BIN, ytdlp)
    if info["tools"][YTDLP_BIN] == "Not installed":
        info["warnings"].append(f"{YTDLP_BIN} not installed (fetched on first URL run)")

    if not info["os_supported"]:
        info["errors"].append(f"Unsupported OS: {info['os']}")
    if not info["root_writable"]:
        info["errors"].append(f"Root not writable: {layout.root}")
    if not info["models"]:
        info["errors"].append(f"No models in {layout.models_dir}")

    if layout.root.exists():
        info["disk_free_gb"] = round(disk_free_gb(layout.root), 1)
        if info["disk_free_gb"] < MIN_FREE_DISK_GB:
            info["errors"].append(f"Low disk space: {info['disk_free_gb']}GB free")

    if info["os_supported"]:
        try:
            snap = read_resources()
        except (OSError, RunAbort) as e:
            info["warnings"].append(f"Could not read memory stats: {e}")
        else:
            info["resources"] = {
                "total_ram_gb": round(snap.total_ram_gb, 1),
                "free_ram_mb": round(snap.free_ram_mb),
                "swap_used_mb": round(snap.swap_used_mb),
            }
            if snap.total_ram_gb and snap.total_ram_gb < LOW_TOTAL_RAM_GB:
                info["warnings"].append(f"Low RAM: {snap.total_ram_gb:.1f}GB total")

    return info


def run_preflight(layout: Layout, config: dict) -> list[str]:
    """
    Host preconditions for a run.  Raises RunAbort on the first failure;
    returns the installed model names.
    """
    system = platform.system()
    if system not in SUPPORTED_OS:
        raise RunAbort(ErrorCode.UNSUPPORTED_HOST,
                       f"Unsupported OS: {system} (supported: {', '.join(SUPPORTED_OS)})")

    layout.ensure()
    if not check_writable(layout.root) or not os.access(layout.workspace, os.W_OK):
        raise RunAbort(ErrorCode.NOT_WRITABLE, f"Root is not writable: {layout.root}")

    check_disk_space(layout.root, config.get('min_free_disk_gb', MIN_FREE_DISK_GB))

    missing = [tool for tool in REQUIRED_TOOLS if not shutil.which(tool)]
    if missing:
        raise RunAbort(ErrorCode.MISSING_TOOL, f"Missing required tools: {', '.join(missing)}")

    models = list_installed_models(layout.models_dir)
    if not models:
        raise RunAbort(ErrorCode.NO_MODEL,
                       f"No whisper models in {layout.models_dir} "
                       f"(try: ultransc doctor --fetch-model ggml-small.en.bin)")
    write_model_list(layout.models_dir)

    snap = read_resources()
    if snap.total_ram_gb and snap.total_ram_gb < LOW_TOTAL_RAM_GB:
        logger.warning("Low RAM detected (%.1fGB). Performance may be poor.", snap.total_ram_gb)

    logger.info("Preflight ok: %s, %d model(s) installed", system, len(models))
    return models
