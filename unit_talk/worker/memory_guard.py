"""
Memory Guard — Process Memory Readings for Agent Health
=======================================================

Every agent process shares one ``psutil.Process`` handle. Readings feed
``memory_usage_mb`` in metrics snapshots and the ``memory_*`` keys of
health details.

Classification against the hard limit (default 2048 MB):
    - below 75%          -> ``healthy``
    - 75% up to the limit -> ``warning``
    - at or above         -> ``critical``
"""

import logging
from typing import Optional

import psutil
from pydantic import BaseModel

logger = logging.getLogger(__name__)

DEFAULT_HARD_LIMIT_MB: int = 2048
SOFT_LIMIT_RATIO: float = 0.75

_MB = 1024 * 1024


class MemoryReading(BaseModel):
    """RSS/VMS of the agent process, classified against a hard limit."""

    rss_mb: float
    vms_mb: float
    percent: float
    status: str


_process: Optional[psutil.Process] = None


def _current_process() -> psutil.Process:
    global _process
    if _process is None:
        _process = psutil.Process()
    return _process


def classify_memory(rss_mb: float, hard_limit_mb: int = DEFAULT_HARD_LIMIT_MB) -> str:
    """Return ``"healthy"``, ``"warning"`` or ``"critical"`` for *rss_mb*."""
    if rss_mb >= hard_limit_mb:
        return "critical"
    if rss_mb >= hard_limit_mb * SOFT_LIMIT_RATIO:
        return "warning"
    return "healthy"


def read_process_memory(hard_limit_mb: int = DEFAULT_HARD_LIMIT_MB) -> MemoryReading:
    """
    Read the current process memory.

    Raises whatever ``psutil`` raises (``psutil.Error``, ``OSError``);
    callers decide whether a failed reading is fatal.
    """
    proc = _current_process()
    info = proc.memory_info()
    rss_mb = round(info.rss / _MB, 1)
    reading = MemoryReading(
        rss_mb=rss_mb,
        vms_mb=round(info.vms / _MB, 1),
        percent=round(proc.memory_percent(), 1),
        status=classify_memory(rss_mb, hard_limit_mb),
    )
    if reading.status != "healthy":
        logger.warning(
            "memory_guard: rss=%.1f MB is %s (hard limit %d MB)",
            reading.rss_mb, reading.status, hard_limit_mb,
        )
    return reading
