#!/usr/bin/env python3
"""
remux.py — Remux MP4 recordings into MKV containers with ffmpeg

Each ``<dir>/<name>.mp4`` is copied stream-for-stream to ``<dir>/mkv/<name>.mkv``.
Used by twitch_monitor after a capture finishes, and runnable on its own to
convert a whole directory tree with a progress bar.
"""

import argparse
import asyncio
import logging
import subprocess
import sys
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, List, Optional

from tqdm import tqdm

from utils import (
    BLUE,
    GREEN,
    RED,
    RESET,
    YELLOW,
    get_video_duration,
    parse_progress_line,
    progress_percent,
)
from verifications import DependencyMissing, check_dependencies

logger = logging.getLogger("twitch_monitor")

MKV_SUBDIR = "mkv"


@dataclass
class RemuxResult:
    input_path: Path
    output_path: Path
    ok: bool
    reason: str = ""


def mkv_output_path(input_path) -> Path:
    """Where the remuxed copy of ``input_path`` goes: ``<dir>/mkv/<stem>.mkv``."""
    input_path = Path(input_path)
    return input_path.parent / MKV_SUBDIR / f"{input_path.stem}.mkv"


def build_remux_command(input_path: Path, output_path: Path, progress: bool = False) -> List[str]:
    cmd = ["ffmpeg", "-i", str(input_path), "-c", "copy", "-y", "-loglevel", "error"]
    if progress:
        cmd += ["-progress", "pipe:1"]
    cmd.append(str(output_path))
    return cmd


async def remux_to_mkv(
    input_path,
    on_progress: Optional[Callable[[float], None]] = None,
) -> RemuxResult:
    """Remux a capture into an MKV container.

    Always recomputes the same output path for the same input and overwrites
    whatever is there. The ``mkv`` directory is created if needed.

    Args:
        input_path: The file to remux
        on_progress: Called with a 0-100 percentage while ffmpeg runs. When
            given, ffprobe is consulted for the duration first.

    Returns:
        RemuxResult describing where the output went or why it failed
    """
    input_path = Path(input_path)
    output_path = mkv_output_path(input_path)

    if not input_path.exists():
        logger.error(f"{RED}Remux failed for: {BLUE}{input_path}{RED} (file not found){RESET}")
        return RemuxResult(input_path, output_path, False, "input file not found")

    output_path.parent.mkdir(parents=True, exist_ok=True)
    logger.info(f"{YELLOW}Remuxing {BLUE}{input_path}{YELLOW} to {BLUE}{output_path}{RESET}")

    duration = None
    if on_progress is not None:
        duration = await get_video_duration(input_path)
        if duration is None:
            logger.debug(f"Could not read duration of {input_path.name}, progress disabled")

    cmd = build_remux_command(input_path, output_path, progress=on_progress is not None)
    try:
        proc = await asyncio.create_subprocess_exec(
            *cmd,
            stdout=subprocess.PIPE if on_progress is not None else subprocess.DEVNULL,
            stderr=subprocess.PIPE,
        )
    except OSError as e:
        logger.error(f"{RED}Remux failed for: {BLUE}{input_path}{RED} ({e}){RESET}")
        return RemuxResult(input_path, output_path, False, str(e))

    try:
        if on_progress is not None:
            stderr_task = asyncio.create_task(proc.stderr.read())
            await _follow_progress(proc.stdout, duration, on_progress)
            stderr_output = await stderr_task
            await proc.wait()
        else:
            _, stderr_output = await proc.communicate()
    except asyncio.CancelledError:
        if proc.returncode is None:
            proc.kill()
        raise

    if proc.returncode == 0:
        logger.info(f"{GREEN}Remux successful: {BLUE}{input_path}{GREEN} -> {BLUE}{output_path}{RESET}")
        return RemuxResult(input_path, output_path, True)

    error_message = stderr_output.decode(errors="ignore").strip()
    logger.error(
        f"{RED}Remux failed for: {BLUE}{input_path}{RED} (ffmpeg exited with {proc.returncode}){RESET}"
    )
    if error_message:
        logger.debug(f"ffmpeg: {error_message[:500]}")
    return RemuxResult(
        input_path, output_path, False, error_message or f"ffmpeg exited with {proc.returncode}"
    )


async def _follow_progress(stream, duration, on_progress):
    """Feed ffmpeg ``-progress`` blocks to the callback until the stream closes."""
    block = {}
    async for raw in stream:
        parsed = parse_progress_line(raw.decode(errors="ignore"))
        if parsed is None:
            continue
        key, value = parsed
        block[key] = value
        if key == "progress":
            percent = 100.0 if value == "end" else progress_percent(block, duration)
            if percent is not None:
                on_progress(percent)
            block = {}


def remux_directory(source_dir) -> List[RemuxResult]:
    """Remux every MP4 under ``source_dir`` (recursively), one at a time.

    Returns:
        One RemuxResult per file found
    """
    source_dir = Path(source_dir)
    results = []
    for mp4_file in sorted(source_dir.rglob("*.mp4")):
        with tqdm(
            total=100,
            desc=mp4_file.name[:40],
            unit="%",
            bar_format="{l_bar}{bar}| {n:.2f}/100%",
            leave=True,
        ) as pbar:

            def advance(percent, pbar=pbar):
                pbar.update(percent - pbar.n)

            result = asyncio.run(remux_to_mkv(mp4_file, on_progress=advance))
        results.append(result)
    if not results:
        logger.warning(f"No MP4 files found under {source_dir}")
    return results


def main(argv=None):
    parser = argparse.ArgumentParser(
        description="Remux every MP4 file under a directory into <dir>/mkv/<name>.mkv"
    )
    parser.add_argument("directory", help="Directory containing MP4 files")
    args = parser.parse_args(argv)

    logging.basicConfig(level=logging.INFO, format="%(asctime)s [%(levelname)s] %(message)s")

    try:
        check_dependencies(["ffmpeg", "ffprobe"])
    except DependencyMissing:
        sys.exit(1)

    source_dir = Path(args.directory)
    if not source_dir.is_dir():
        logger.error(f"{RED}Directory not found: {source_dir}{RESET}")
        sys.exit(1)

    results = remux_directory(source_dir)
    failed = [r for r in results if not r.ok]
    logger.info(f"Remuxed {len(results) - len(failed)}/{len(results)} files")


if __name__ == "__main__":
    main()
