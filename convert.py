#!/usr/bin/env python3
"""
convert.py — Re-encode a video to H.264 or HEVC with ffmpeg, copying the audio into MKV

Uses a hardware encoder when ffmpeg lists one, software encoding otherwise.
"""

import argparse
import logging
import subprocess
import sys
from dataclasses import dataclass
from pathlib import Path
from typing import List, Optional

from utils import BLUE, GREEN, RED, RESET, YELLOW
from verifications import verify_ffmpeg

logger = logging.getLogger("twitch_monitor")

DEFAULT_BITRATE = "3M"


class ConversionError(Exception):
    """Raised when a conversion cannot run or ffmpeg fails."""
    pass


@dataclass(frozen=True)
class Encoder:
    name: str
    hwaccel: Optional[str]
    label: str


# Ordered by preference, the software encoder last
ENCODERS = {
    "h264": [
        Encoder("h264_nvenc", "cuda", "nvenc"),
        Encoder("h264_qsv", "qsv", "Intel Quick Sync Video"),
        Encoder("h264_vaapi", "vaapi", "vaapi"),
        Encoder("libx264", None, "software"),
    ],
    "hevc": [
        Encoder("hevc_nvenc", "cuda", "nvenc"),
        Encoder("hevc_qsv", "qsv", "Intel Quick Sync Video"),
        Encoder("hevc_videotoolbox", "videotoolbox", "Apple's GPU video acceleration"),
        Encoder("libx265", None, "software"),
    ],
    "rpi": [
        Encoder("h264_v4l2m2m", "v4l2m2m", "h264_v4l2m2m"),
        Encoder("libx264", None, "software"),
    ],
}


def list_encoders() -> str:
    """Raw output of ``ffmpeg -hide_banner -encoders``."""
    try:
        result = subprocess.run(
            ["ffmpeg", "-hide_banner", "-encoders"],
            stdout=subprocess.PIPE,
            stderr=subprocess.PIPE,
            text=True,
        )
    except FileNotFoundError as e:
        raise ConversionError("ffmpeg is not installed") from e
    return result.stdout


def detect_encoder(codec: str, rpi: bool = False, available: Optional[str] = None) -> Encoder:
    """Pick the best encoder ffmpeg offers for ``codec`` ("h264" or "hevc").

    Args:
        codec: Target codec
        rpi: Use the Raspberry Pi profile (h264 only)
        available: Encoder listing to search, queried from ffmpeg when omitted

    Returns:
        The first hardware encoder found, or the software fallback
    """
    profile = "rpi" if rpi else codec
    if profile not in ENCODERS:
        raise ConversionError(f"Unsupported codec '{codec}'")
    if rpi and codec != "h264":
        raise ConversionError("The Raspberry Pi profile only supports h264")

    if available is None:
        available = list_encoders()
    listed = set(available.split())
    for encoder in ENCODERS[profile]:
        if encoder.hwaccel is None or encoder.name in listed:
            return encoder
    return ENCODERS[profile][-1]


def convert_output_path(input_path, bitrate: str = DEFAULT_BITRATE) -> Path:
    input_path = Path(input_path)
    return input_path.with_name(f"{input_path.stem}_{bitrate}.mkv")


def build_convert_command(input_path, bitrate: str, encoder: Encoder) -> List[str]:
    cmd = ["ffmpeg"]
    if encoder.hwaccel:
        cmd += ["-hwaccel", encoder.hwaccel]
    cmd += [
        "-i", str(input_path),
        "-c:v", encoder.name,
        "-b:v", bitrate,
        "-c:a", "copy",
        str(convert_output_path(input_path, bitrate)),
    ]
    return cmd


def convert(input_path, codec: str = "h264", bitrate: str = DEFAULT_BITRATE, rpi: bool = False) -> Path:
    """Convert a video file and return the path of the new MKV.

    Raises:
        ConversionError: if the input is missing or ffmpeg fails
    """
    input_path = Path(input_path)
    if not input_path.is_file():
        raise ConversionError(f"File {input_path} not found.")

    encoder = detect_encoder(codec, rpi=rpi)
    if encoder.hwaccel:
        logger.info(f"{GREEN}Using hardware acceleration ({encoder.label}){RESET}")
    else:
        logger.info(f"{YELLOW}Hardware acceleration not available, using software encoding{RESET}")

    output_path = convert_output_path(input_path, bitrate)
    cmd = build_convert_command(input_path, bitrate, encoder)
    logger.debug(f"Command: {' '.join(cmd)}")

    result = subprocess.run(cmd)
    if result.returncode != 0:
        raise ConversionError(f"ffmpeg exited with {result.returncode} for {input_path}")

    logger.info(f"{GREEN}Converted {BLUE}{input_path}{GREEN} -> {BLUE}{output_path}{RESET}")
    return output_path


def main(argv=None):
    parser = argparse.ArgumentParser(
        description="Convert a video file to H264/HEVC with a specified bitrate and copy the audio into a MKV container."
    )
    parser.add_argument("video_file", help="Path to the input video file")
    parser.add_argument(
        "bitrate", nargs="?", default=DEFAULT_BITRATE,
        help=f"Output bitrate (default is {DEFAULT_BITRATE} if not specified)",
    )
    parser.add_argument("--codec", choices=("h264", "hevc"), default="h264")
    parser.add_argument("--rpi", action="store_true", help="Use Raspberry Pi hardware encoding")
    args = parser.parse_args(argv)

    logging.basicConfig(level=logging.INFO, format="%(asctime)s [%(levelname)s] %(message)s")

    if not verify_ffmpeg():
        sys.exit(1)

    try:
        convert(args.video_file, codec=args.codec, bitrate=args.bitrate, rpi=args.rpi)
    except ConversionError as e:
        logger.error(f"{RED}{e}{RESET}")
        sys.exit(1)


if __name__ == "__main__":
    main()
