import logging
import os
import stat
import sys
import textwrap
from pathlib import Path

import pytest

FAKE_FFMPEG = """\
#!{python}
import os
import sys

args = sys.argv[1:]
if "-encoders" in args:
    print(os.environ.get("FAKE_FFMPEG_ENCODERS", " V..... libx264 H.264"))
    sys.exit(0)

code = int(os.environ.get("FAKE_FFMPEG_EXIT", "0"))
if code:
    sys.stderr.write("fake ffmpeg failure\\n")
    sys.exit(code)

with open(args[-1], "w") as fh:
    fh.write("remuxed")

if "-progress" in args:
    for ms in (2500000, 5000000, 10000000):
        print("out_time_ms=%d" % ms)
        print("speed=1.0x")
        print("progress=continue")
    print("progress=end")
"""

FAKE_FFPROBE = """\
#!{python}
print("10.0")
"""


def _write_tool(bin_dir: Path, name: str, source: str) -> Path:
    path = bin_dir / name
    path.write_text(textwrap.dedent(source).format(python=sys.executable))
    path.chmod(path.stat().st_mode | stat.S_IXUSR | stat.S_IXGRP | stat.S_IXOTH)
    return path


@pytest.fixture
def fake_tools(tmp_path, monkeypatch):
    """Put fake ffmpeg/ffprobe/streamlink executables first on PATH."""
    bin_dir = tmp_path / "bin"
    bin_dir.mkdir()
    _write_tool(bin_dir, "ffmpeg", FAKE_FFMPEG)
    _write_tool(bin_dir, "ffprobe", FAKE_FFPROBE)
    _write_tool(bin_dir, "streamlink", "#!{python}\n")
    monkeypatch.setenv("PATH", f"{bin_dir}{os.pathsep}{os.environ.get('PATH', '')}")
    return bin_dir


def python_command(code: str):
    """Capture command builder running a snippet of Python instead of streamlink."""

    def build(channel, output_path):
        return [sys.executable, "-c", code, str(output_path)]

    return build


# Writes a tiny capture and exits cleanly
EXIT_OK = python_command("import sys; open(sys.argv[1], 'w').write('capture')")
EXIT_FAIL = python_command("import sys; sys.exit(3)")
SLEEPER = python_command("import time; time.sleep(60)")


def missing_binary(channel, output_path):
    return ["/nonexistent/streamlink-not-installed", str(output_path)]


class FakeProbe:
    """Liveness prober with scripted answers that remembers every call."""

    def __init__(self, answers):
        self.answers = answers
        self.calls = []

    async def __call__(self, channel):
        self.calls.append(channel)
        answer = self.answers.get(channel, False)
        if isinstance(answer, list):
            return answer.pop(0) if answer else False
        if isinstance(answer, Exception):
            raise answer
        return answer


class FakeRemuxer:
    def __init__(self, ok=True):
        self.ok = ok
        self.calls = []

    async def __call__(self, path):
        from remux import RemuxResult, mkv_output_path

        self.calls.append(Path(path))
        return RemuxResult(Path(path), mkv_output_path(path), self.ok, "" if self.ok else "boom")


@pytest.fixture(autouse=True)
def restore_logger():
    logger = logging.getLogger("twitch_monitor")
    handlers = list(logger.handlers)
    level = logger.level
    yield
    for handler in logger.handlers:
        if handler not in handlers:
            handler.close()
    logger.handlers = handlers
    logger.setLevel(level)
