"""
Host resource monitor and backpressure gate.

The monitor is stateless and polled on demand:
  - Linux: /proc/meminfo
  - macOS: vm_stat + sysctl
The gate runs before resource-heavy stages (conversion, transcription).
Low free RAM is waited out; high swap use fails the stage attempt, since
waiting does not relieve thrashing.
"""

import platform
import re
import shutil
import time
import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Optional

from ultransc.core.constants import (
    ErrorCode, MIN_FREE_RAM_MB, MAX_SWAP_USED_MB, RAM_POLL_INTERVAL_SEC,
    SUPPORTED_OS,
)
from ultransc.core.error_codes import JobError, RunAbort
from ultransc.core.security_utils import run_subprocess_capture

logger = logging.getLogger(__name__)

_MB = 1024 * 1024


@dataclass
class ResourceSnapshot:
    free_ram_mb: float
    swap_used_mb: float
    total_ram_mb: float = 0.0

    @property
    def total_ram_gb(self) -> float:
        return self.total_ram_mb / 1024


# ── Probes ────────────────────────────────────────────────────────────

def parse_meminfo(text: str) -> ResourceSnapshot:
    """Parse /proc/meminfo contents (values in kB)."""
    values = {}
    for line in text.splitlines():
        key, _, rest = line.partition(':')
        fields = rest.split()
        if fields and fields[0].isdigit():
            values[key.strip()] = int(fields[0])

    total_kb = values.get('MemTotal', 0)
    if 'MemAvailable' in values:
        free_kb = values['MemAvailable']
    else:
        # Kernels before 3.14 lack MemAvailable
        free_kb = values.get('MemFree', 0) + values.get('Buffers', 0) + values.get('Cached', 0)
    swap_used_kb = max(0, values.get('SwapTotal', 0) - values.get('SwapFree', 0))

    return ResourceSnapshot(
        free_ram_mb=free_kb / 1024,
        swap_used_mb=swap_used_kb / 1024,
        total_ram_mb=total_kb / 1024,
    )


def parse_vm_stat(text: str) -> float:
    """Free RAM in MB from `vm_stat` output (free + inactive + speculative pages)."""
    page_size = 4096
    m = re.search(r'page size of (\d+) bytes', text)
    if m:
        page_size = int(m.group(1))

    pages = {}
    for line in text.splitlines():
        key, _, rest = line.partition(':')
        rest = rest.strip().rstrip('.')
        if rest.isdigit():
            pages[key.strip()] = int(rest)

    free_pages = (pages.get('Pages free', 0)
                  + pages.get('Pages inactive', 0)
                  + pages.get('Pages speculative', 0))
    return free_pages * page_size / _MB


def parse_swapusage(text: str) -> float:
    """Swap in use in MB from `sysctl vm.swapusage` output."""
    m = re.search(r'used\s*=\s*([\d.]+)([KMG])', text)
    if not m:
        return 0.0
    value = float(m.group(1))
    unit = m.group(2)
    if unit == 'K':
        return value / 1024
    if unit == 'G':
        return value * 1024
    return value


def _read_linux() -> ResourceSnapshot:
    with open('/proc/meminfo') as f:
        return parse_meminfo(f.read())


def _read_darwin() -> ResourceSnapshot:
    vm = run_subprocess_capture(['vm_stat'], timeout=10)
    swap = run_subprocess_capture(['sysctl', 'vm.swapusage'], timeout=10)
    total = run_subprocess_capture(['sysctl', '-n', 'hw.memsize'], timeout=10)
    total_mb = int(total.stdout.strip()) / _MB if total.stdout.strip().isdigit() else 0.0
    return ResourceSnapshot(
        free_ram_mb=parse_vm_stat(vm.stdout or ''),
        swap_used_mb=parse_swapusage(swap.stdout or ''),
        total_ram_mb=total_mb,
    )


def read_resources() -> ResourceSnapshot:
    """Read free RAM and swap in use for the current host."""
    system = platform.system()
    if system == "Linux":
        return _read_linux()
    if system == "Darwin":
        return _read_darwin()
    raise RunAbort(ErrorCode.UNSUPPORTED_HOST,
                   f"Unsupported OS: {system} (supported: {', '.join(SUPPORTED_OS)})")


def disk_free_gb(path: Path) -> float:
    """Free space of the filesystem holding path, in GB."""
    return shutil.disk_usage(path).free / (1024 ** 3)


def check_disk_space(path: Path, min_free_gb: float,
                     probe: Callable[[Path], float] = disk_free_gb) -> float:
    """
    Run-level precondition: raise RunAbort when free space is below the
    threshold.  Returns the measured free space.
    """
    free = probe(path)
    if free < min_free_gb:
        raise RunAbort(ErrorCode.DISK_SPACE,
                       f"Only {free:.1f}GB free under {path} (need {min_free_gb:g}GB). Aborting.")
    return free


# ── Backpressure gate ─────────────────────────────────────────────────

class ResourceGate:
    """Blocks or rejects resource-heavy stages based on host memory pressure."""

    def __init__(self,
                 min_free_ram_mb: float = MIN_FREE_RAM_MB,
                 max_swap_used_mb: float = MAX_SWAP_USED_MB,
                 poll_interval_sec: float = RAM_POLL_INTERVAL_SEC,
                 enabled: bool = True,
                 probe: Callable[[], ResourceSnapshot] = read_resources,
                 sleep: Callable[[float], None] = time.sleep):
        self.min_free_ram_mb = min_free_ram_mb
        self.max_swap_used_mb = max_swap_used_mb
        self.poll_interval_sec = poll_interval_sec
        self.enabled = enabled
        self._probe = probe
        self._sleep = sleep

    @classmethod
    def from_config(cls, config: dict, **kwargs) -> "ResourceGate":
        return cls(
            min_free_ram_mb=config.get('min_free_ram_mb', MIN_FREE_RAM_MB),
            max_swap_used_mb=config.get('max_swap_used_mb', MAX_SWAP_USED_MB),
            poll_interval_sec=config.get('ram_poll_interval_sec', RAM_POLL_INTERVAL_SEC),
            enabled=config.get('enable_backpressure', True),
            **kwargs,
        )

    def wait_until_ready(self, stage: str,
                         log: Optional[logging.Logger] = None) -> Optional[ResourceSnapshot]:
        """
        Return once free RAM is at or above the minimum.  Raises JobError
        (SWAP_PRESSURE) as soon as swap in use exceeds the maximum.
        The wait has no upper bound.
        """
        if not self.enabled:
            return None
        log = log or logger
        waited = 0
        while True:
            snap = self._probe()
            if snap.swap_used_mb > self.max_swap_used_mb:
                log.error("Swap in use %.0fMB exceeds %.0fMB — refusing stage %s",
                          snap.swap_used_mb, self.max_swap_used_mb, stage)
                raise JobError(ErrorCode.SWAP_PRESSURE,
                               f"Swap in use {snap.swap_used_mb:.0f}MB > {self.max_swap_used_mb:.0f}MB "
                               f"before {stage}")
            if snap.free_ram_mb >= self.min_free_ram_mb:
                if waited:
                    log.info("Free RAM recovered to %.0fMB after %d poll(s); starting %s",
                             snap.free_ram_mb, waited, stage)
                return snap
            if waited == 0:
                log.warning("Free RAM %.0fMB below %.0fMB — waiting before %s",
                            snap.free_ram_mb, self.min_free_ram_mb, stage)
            waited += 1
            self._sleep(self.poll_interval_sec)
