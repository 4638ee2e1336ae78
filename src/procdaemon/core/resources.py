"""Memory accounting for daemon processes."""

from __future__ import annotations

import psutil


def resident_memory(pid: int | None = None) -> int:
    """Resident set size in bytes of ``pid`` (default: this process)."""
    return psutil.Process(pid).memory_info().rss


def format_bytes(value: int) -> str:
    """Render a byte count as MB for log messages."""
    return f"{value / (1024 * 1024):.1f}MB"
