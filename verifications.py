"""
verifications.py — System verification functions for twitch_monitor
"""

import logging
import shutil
import subprocess
from pathlib import Path
from typing import Iterable

# Setup logger
logger = logging.getLogger("twitch_monitor")

INSTALL_HINT = "Install with: sudo apt install {cmd}"


class DependencyMissing(Exception):
    """A required external tool is not installed."""

    def __init__(self, cmd: str):
        super().__init__(f"{cmd} is not installed")
        self.cmd = cmd


def required_tools(remux: bool) -> list:
    """Tools needed by the monitor; ffmpeg and ffprobe only when remuxing."""
    tools = ["streamlink"]
    if remux:
        tools += ["ffmpeg", "ffprobe"]
    return tools


def check_dependencies(commands: Iterable[str]) -> None:
    """Ensure every command is on PATH.

    Raises:
        DependencyMissing: for the first command that cannot be found
    """
    for cmd in commands:
        if shutil.which(cmd) is None:
            logger.error(f"Error: {cmd} is not installed. {INSTALL_HINT.format(cmd=cmd)}")
            raise DependencyMissing(cmd)
        logger.debug(f"{cmd} found")


def verify_ffmpeg() -> bool:
    """Check if FFmpeg runs."""
    try:
        result = subprocess.run(
            ["ffmpeg", "-version"],
            stdout=subprocess.PIPE,
            stderr=subprocess.PIPE,
            text=True,
        )
    except FileNotFoundError:
        logger.error("FFmpeg not found. Use apt/yum install ffmpeg")
        return False

    if result.returncode == 0:
        logger.info("FFmpeg found")
        return True

    logger.error("FFmpeg check failed")
    return False


def verify_directories(*directories: Path) -> bool:
    """Verify that all required directories exist and are writable.

    Creates directories if they don't exist. Tests write permissions
    by creating and deleting a temporary test file in each directory.

    Returns:
        bool: True if all directories exist and are writable, False otherwise
    """
    for path in directories:
        path = Path(path)
        if not path.exists():
            try:
                path.mkdir(parents=True, exist_ok=True)
                logger.info(f"Created directory {path}")
            except OSError as e:
                logger.error(f"Cannot create directory {path}: {e}")
                return False

        test_file = path / ".write_test"
        try:
            test_file.write_text("test")
            test_file.unlink()
        except OSError as e:
            logger.error(f"No write permission for {path}: {e}")
            return False
    return True
