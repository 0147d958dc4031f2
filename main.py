#!/usr/bin/env python3
"""
ULTRANSC — entry point when running from a source checkout.

    python3 main.py [--root DIR] [run|doctor|status|blocks] ...
"""

import sys
import os
from pathlib import Path

# ── Ensure Homebrew paths are in PATH ────────────────────────────────
# ffmpeg and whisper-cli usually come from Homebrew on macOS; launchd and
# cron jobs start with a minimal PATH that lacks them.
HOMEBREW_PATHS = [
    "/opt/homebrew/bin",          # Apple Silicon default
    "/usr/local/bin",             # Intel Mac default
]

current_path = os.environ.get("PATH", "")
for p in HOMEBREW_PATHS:
    if os.path.isdir(p) and p not in current_path.split(os.pathsep):
        current_path = p + os.pathsep + current_path
os.environ["PATH"] = current_path

# ── Determine project root ────────────────────────────────────────────
PROJECT_ROOT = Path(__file__).resolve().parent
if str(PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(PROJECT_ROOT))

from ultransc.cli.commands import main  # noqa: E402

if __name__ == "__main__":
    sys.exit(main())
