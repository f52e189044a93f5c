"""
utils.py — Utility functions for twitch_monitor
"""

import asyncio
import datetime as dt
import os
import re
import subprocess
import sys
from pathlib import Path
from typing import Dict, Optional

# ───── color and terminal setup ───── #
USE_COLOR = sys.stdout.isatty() and ("TERM" in os.environ)
if USE_COLOR:
    RED, YELLOW, GREEN, BLUE, RESET = (
        "\033[0;31m",
        "\033[1;33m",
        "\033[0;32m",
        "\033[0;34m",
        "\033[0m",
    )
else:
    RED = YELLOW = GREEN = BLUE = RESET = ""

FILE_STAMP_FMT = "%Y%m%d_%H%M%S"

PROGRESS_RE = re.compile(r"^\s*([A-Za-z0-9_]+)=(.*)$")


def file_stamp(now: Optional[dt.datetime] = None) -> str:
    """Return the timestamp used in capture file names (YYYYMMDD_HHMMSS)."""
    return (now or dt.datetime.now()).strftime(FILE_STAMP_FMT)


def capture_path(
    output_dir: Path, channel: str, ext: str = "mp4", now: Optional[dt.datetime] = None
) -> Path:
    """Build a fresh capture path for a channel.

    The file is named ``<channel>_<YYYYMMDD_HHMMSS>.<ext>`` inside ``output_dir``.
    If that name is already taken a ``_<n>`` counter is appended so two
    recordings never share a file.

    Args:
        output_dir: Directory receiving the capture
        channel: The channel being recorded
        ext: File extension without the dot
        now: Start time of the recording, defaults to the current time

    Returns:
        Path to a file that does not exist yet
    """
    output_dir = Path(output_dir)
    base = f"{channel}_{file_stamp(now)}"
    candidate = output_dir / f"{base}.{ext}"
    idx = 1
    while candidate.exists():
        idx += 1
        candidate = output_dir / f"{base}_{idx}.{ext}"
    return candidate


def str2bool(value: str) -> bool:
    """Parse the true/false flag values accepted on the command line."""
    lowered = str(value).strip().lower()
    if lowered in ("true", "yes", "1", "on"):
        return True
    if lowered in ("false", "no", "0", "off"):
        return False
    raise ValueError(f"expected true or false, got '{value}'")


def parse_progress_line(line: str) -> Optional[tuple]:
    """Split one line of ffmpeg ``-progress`` output into ``(key, value)``.

    Returns None for lines that are not ``key=value`` pairs.
    """
    m = PROGRESS_RE.match(line)
    if not m:
        return None
    return m.group(1), m.group(2).strip()


def progress_percent(progress: Dict[str, str], duration: Optional[float]) -> Optional[float]:
    """Percentage done from a parsed progress block, clamped to 0-100."""
    if not duration or duration <= 0:
        return None
    raw = progress.get("out_time_ms") or progress.get("out_time_us")
    if raw is None:
        return None
    try:
        current_sec = int(raw) / 1_000_000
    except ValueError:
        return None
    return max(0.0, min(100.0, current_sec / duration * 100))


async def get_video_duration(filepath) -> Optional[float]:
    """Get video duration in seconds using ffprobe.

    Returns:
        Duration in seconds as float, or None if unable to determine.
    """
    cmd = [
        "ffprobe",
        "-v", "error",
        "-show_entries", "format=duration",
        "-of", "default=noprint_wrappers=1:nokey=1",
        str(filepath),
    ]
    try:
        proc = await asyncio.create_subprocess_exec(
            *cmd,
            stdout=subprocess.PIPE,
            stderr=subprocess.PIPE,
        )
    except OSError:
        return None

    stdout, _ = await proc.communicate()

    if proc.returncode == 0:
        duration_str = stdout.decode().strip()
        try:
            return float(duration_str)
        except ValueError:
            return None
    return None
