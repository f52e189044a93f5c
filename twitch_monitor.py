#!/usr/bin/env python3
"""
twitch_monitor.py — Watch Twitch channels and record them with streamlink while they are live,
optionally remuxing each finished capture to MKV. Stops cleanly on Ctrl+C / SIGTERM.
"""

import argparse
import asyncio
import contextlib
import datetime as dt
import enum
import logging
import logging.handlers
import os
import signal
import subprocess
import sys
from pathlib import Path
from typing import Awaitable, Callable, Dict, List, Optional, Set

from env import CHECK_INTERVAL, DISCORD_WEBHOOK_URL, LOG_ROOT, OUTPUT_DIR, REMUX_DEFAULT
from api import is_live, send_discord_notification
from remux import RemuxResult, remux_to_mkv
from utils import BLUE, GREEN, RED, RESET, YELLOW, capture_path, str2bool
from verifications import (
    DependencyMissing,
    check_dependencies,
    required_tools,
    verify_directories,
)

CAPTURE_EXT = "mp4"

# ───── logging setup ───── #
logger = logging.getLogger("twitch_monitor")


def setup_logging(log_dir: Path, level: int = logging.INFO) -> None:
    """Attach the console and rotating file handlers to the shared logger."""
    logger.setLevel(level)

    ch = logging.StreamHandler()
    ch.setFormatter(logging.Formatter("%(asctime)s [%(levelname)s] %(message)s"))
    logger.addHandler(ch)

    log_dir.mkdir(parents=True, exist_ok=True)
    file_handler = logging.handlers.RotatingFileHandler(
        str(log_dir / "twitch_monitor.log"),
        maxBytes=5_000_000,
        backupCount=3,
    )
    file_handler.setFormatter(
        logging.Formatter("%(asctime)s [%(levelname)s] %(name)s: %(message)s")
    )
    logger.addHandler(file_handler)


def streamlink_command(channel: str, output_path: Path) -> List[str]:
    return [
        "streamlink",
        "--twitch-disable-ads",
        "--twitch-disable-hosting",
        "--retry-streams", "30",
        "--retry-max", "5",
        "--retry-open", "5",
        "--stream-segment-threads", "5",
        "--stream-timeout", "90",
        "--hls-segment-threads", "5",
        "-o", str(output_path),
        f"twitch.tv/{channel}",
        "best",
    ]


class SpawnFailure(Exception):
    """The capture subprocess could not be started."""
    pass


class TaskState(enum.Enum):
    CREATED = "created"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"


# ───── RecordingTask ───── #
class RecordingTask:
    """One capture of one channel.

    Owns the streamlink subprocess for the lifetime of the recording. The
    supervisor only ever polls it, asks it to finish once the process has
    exited, or cancels it on shutdown.
    """

    def __init__(
        self,
        channel: str,
        output_dir: Path,
        remux_enabled: bool = False,
        log_dir: Optional[Path] = None,
        command: Callable[[str, Path], List[str]] = streamlink_command,
    ):
        self.channel = channel
        self.output_dir = Path(output_dir)
        self.remux_enabled = remux_enabled
        self.log_dir = Path(log_dir) if log_dir else None
        self.command = command
        self.started_at = dt.datetime.now()
        self.output_dir.mkdir(parents=True, exist_ok=True)
        self.output_path = capture_path(self.output_dir, channel, CAPTURE_EXT, self.started_at)
        self.proc: Optional[subprocess.Popen] = None
        self.state = TaskState.CREATED
        self.returncode: Optional[int] = None
        self.remux_result: Optional[RemuxResult] = None
        self.log_file_handle = None

    @property
    def pid(self) -> Optional[int]:
        return self.proc.pid if self.proc else None

    def _open_log(self):
        if self.log_dir is None:
            return None
        log_fp = self.log_dir / self.channel / f"{self.output_path.stem}.log"
        try:
            log_fp.parent.mkdir(parents=True, exist_ok=True)
            fh = open(log_fp, "a", encoding="utf-8")
            fh.write(f"{dt.datetime.now().isoformat()} START {self.channel} -> {self.output_path}\n")
            fh.flush()
            return fh
        except OSError as e:
            logger.error(f"Failed to open capture log {log_fp}: {e}")
            return None

    def _close_log(self, message: Optional[str] = None):
        if self.log_file_handle is None:
            return
        try:
            if message:
                self.log_file_handle.write(f"\n{dt.datetime.now().isoformat()} {message}\n")
            self.log_file_handle.close()
        except OSError as e:
            logger.error(f"Error closing capture log for {self.channel}: {e}")
        self.log_file_handle = None

    def start(self) -> "RecordingTask":
        """Spawn the capture process.

        Raises:
            SpawnFailure: if the process could not be started. The task is
                left in the FAILED state.
        """
        cmd = self.command(self.channel, self.output_path)
        logger.info(
            f"{GREEN}Recording {BLUE}{self.channel}{GREEN} to {BLUE}{self.output_path}{RESET}"
        )
        self.log_file_handle = self._open_log()
        try:
            self.proc = subprocess.Popen(
                cmd,
                stdin=subprocess.DEVNULL,
                stdout=self.log_file_handle if self.log_file_handle else subprocess.DEVNULL,
                stderr=subprocess.STDOUT,
                preexec_fn=os.setsid,
            )
        except (OSError, subprocess.SubprocessError) as e:
            self.state = TaskState.FAILED
            self._close_log(f"SPAWN FAILED: {e}")
            raise SpawnFailure(f"could not start capture for {self.channel}: {e}") from e

        self.state = TaskState.RUNNING
        return self

    def poll(self) -> TaskState:
        """Non-blocking check of the capture process."""
        if self.state is not TaskState.RUNNING:
            return self.state
        returncode = self.proc.poll()
        if returncode is None:
            return self.state
        self.returncode = returncode
        self.state = TaskState.COMPLETED if returncode == 0 else TaskState.FAILED
        return self.state

    def is_running(self) -> bool:
        return self.poll() is TaskState.RUNNING

    async def finish(
        self, remuxer: Callable[[Path], Awaitable[RemuxResult]] = remux_to_mkv
    ) -> Optional[RemuxResult]:
        """Completion handling once the capture process has exited.

        Remuxes the capture when it completed and remuxing is enabled. A failed
        remux is logged but leaves the task COMPLETED.

        Returns:
            The remux result, or None when no remux was attempted
        """
        state = self.poll()
        if state is TaskState.RUNNING:
            raise RuntimeError(f"Recording for {self.channel} is still running")

        self._close_log(f"EXITED with code {self.returncode}")
        if state is TaskState.COMPLETED:
            logger.info(f"{YELLOW}Recording stopped for {BLUE}{self.channel}{RESET}")
        else:
            logger.error(
                f"{RED}Recording failed for {BLUE}{self.channel}{RED} (exit code {self.returncode}){RESET}"
            )
            return None

        if not self.remux_enabled:
            return None
        try:
            self.remux_result = await remuxer(self.output_path)
        except Exception:
            logger.exception(f"Remux of {self.output_path} raised")
            return None
        return self.remux_result

    def cancel(self) -> None:
        """Ask the capture process to stop. Does not wait for it."""
        if self.proc is None or self.proc.poll() is not None:
            return
        logger.info(f"{RED}Stopping recording of {BLUE}{self.channel}{RED} (PID: {self.proc.pid}){RESET}")
        with contextlib.suppress(ProcessLookupError):
            self.proc.terminate()
        self._close_log("STOPPING RECORDING: monitor shutting down")


# ───── Supervisor ───── #
class Supervisor:
    """Polls the watch list and keeps at most one RecordingTask per channel.

    The registry is only touched from ``tick()``, which runs one at a time from
    ``run()``. Reaping finished recordings always happens before any channel
    is probed in the same tick.
    """

    def __init__(
        self,
        channels: List[str],
        output_dir: Path = Path(OUTPUT_DIR),
        interval: float = CHECK_INTERVAL,
        remux_enabled: bool = REMUX_DEFAULT,
        log_dir: Optional[Path] = None,
        probe: Callable[[str], Awaitable[bool]] = is_live,
        remuxer: Callable[[Path], Awaitable[RemuxResult]] = remux_to_mkv,
        command: Callable[[str, Path], List[str]] = streamlink_command,
        notify: Optional[Callable[[str, str], Awaitable[None]]] = None,
    ):
        # dict.fromkeys keeps the configured order and drops duplicates
        self.channels = list(dict.fromkeys(channels))
        self.output_dir = Path(output_dir)
        self.interval = interval
        self.remux_enabled = remux_enabled
        self.log_dir = log_dir
        self.probe = probe
        self.remuxer = remuxer
        self.command = command
        self.notify = notify
        self.registry: Dict[str, RecordingTask] = {}
        self.stop_evt = asyncio.Event()
        self._tick_task: Optional[asyncio.Task] = None
        self._notify_tasks: Set[asyncio.Task] = set()

    @property
    def cancelled(self) -> bool:
        return self.stop_evt.is_set()

    async def run(self):
        """Tick every ``interval`` seconds until a stop is requested."""
        self.output_dir.mkdir(parents=True, exist_ok=True)
        while not self.stop_evt.is_set():
            self._tick_task = asyncio.create_task(self.tick())
            try:
                await self._tick_task
            except asyncio.CancelledError:
                if not self.stop_evt.is_set():
                    raise
            finally:
                self._tick_task = None
            if self.stop_evt.is_set():
                break
            with contextlib.suppress(asyncio.TimeoutError):
                await asyncio.wait_for(self.stop_evt.wait(), timeout=self.interval)

    def request_stop(self):
        """Stop the loop: wakes the inter-tick sleep and cancels a running tick."""
        if not self.stop_evt.is_set():
            logger.info(f"{RED}Stopping monitor...{RESET}")
        self.stop_evt.set()
        if self._tick_task is not None and not self._tick_task.done():
            self._tick_task.cancel()

    async def tick(self):
        await self._reap()
        await self._probe_idle()

    async def _reap(self):
        for channel in self.channels:
            task = self.registry.get(channel)
            if task is None or task.is_running():
                continue
            try:
                await task.finish(self.remuxer)
            finally:
                del self.registry[channel]

    async def _probe_idle(self):
        for channel in self.channels:
            if channel in self.registry:
                continue
            try:
                live = await self.probe(channel)
            except Exception:
                logger.exception(f"{channel} probe failure")
                live = False

            if not live:
                logger.info(f"{YELLOW}{BLUE}{channel}{YELLOW} is offline{RESET}")
                continue
            self._start_recording(channel)

    def _start_recording(self, channel: str):
        try:
            task = RecordingTask(
                channel,
                self.output_dir,
                remux_enabled=self.remux_enabled,
                log_dir=self.log_dir,
                command=self.command,
            )
        except OSError as e:
            logger.error(f"{RED}Cannot prepare recording of {BLUE}{channel}{RED}: {e}{RESET}")
            return
        try:
            task.start()
        except SpawnFailure as e:
            logger.error(f"{RED}{e}{RESET}")
            return
        self.registry[channel] = task
        logger.info(f"{GREEN}Started recording {BLUE}{channel}{GREEN} (PID: {task.pid}){RESET}")
        if self.notify is not None:
            notify_task = asyncio.create_task(self.notify(channel, str(task.output_path)))
            self._notify_tasks.add(notify_task)
            notify_task.add_done_callback(self._notify_done)

    def _notify_done(self, task: asyncio.Task):
        self._notify_tasks.discard(task)
        if not task.cancelled() and task.exception() is not None:
            logger.error(f"Notification failed: {task.exception()!r}")

    async def cancel_notifications(self):
        """Cancel notifications still in flight and wait for them to unwind."""
        pending = list(self._notify_tasks)
        for t in pending:
            t.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await asyncio.gather(*pending, return_exceptions=True)
        self._notify_tasks.clear()

    def shutdown(self):
        """Cancel every registered recording, then drop the registry."""
        self.stop_evt.set()
        if not self.registry:
            logger.info("No channels are currently recording")
        for task in list(self.registry.values()):
            try:
                task.cancel()
            except OSError as e:
                logger.warning(f"Failed to stop recording of {task.channel}: {e}")
        self.registry.clear()


def parse_args(argv=None):
    parser = argparse.ArgumentParser(
        description="Monitor Twitch channels and record them while they are live."
    )
    parser.add_argument("channels", nargs="*", metavar="channel", help="Twitch channel name")
    parser.add_argument(
        "-r", "--remux",
        type=str2bool,
        default=REMUX_DEFAULT,
        metavar="true|false",
        help="Remux finished recordings to MKV (default: %(default)s)",
    )
    parser.add_argument(
        "--interval", type=int, default=CHECK_INTERVAL,
        help="Seconds between liveness checks (default: %(default)s)",
    )
    parser.add_argument(
        "--output-dir", type=Path, default=Path(OUTPUT_DIR),
        help="Where recordings are saved (default: %(default)s)",
    )
    parser.add_argument(
        "--log-dir", type=Path, default=Path(LOG_ROOT),
        help="Where program and capture logs go (default: %(default)s)",
    )
    parser.add_argument("-v", "--verbose", action="store_true", help="Debug logging")
    return parser.parse_args(argv)


def main(argv=None):
    """Application entry point.

    Checks arguments and dependencies, then runs the supervisor until SIGINT or
    SIGTERM, cancels every active recording and exits.
    """
    args = parse_args(argv)
    setup_logging(args.log_dir, logging.DEBUG if args.verbose else logging.INFO)

    if not args.channels:
        logger.error(f"{RED}Error: Please provide at least one channel name.{RESET}")
        logger.error("Usage: twitch_monitor.py [-r true|false] channel1 [channel2 ...]")
        sys.exit(1)

    try:
        check_dependencies(required_tools(args.remux))
    except DependencyMissing:
        sys.exit(1)

    if not verify_directories(args.output_dir, args.log_dir):
        logger.error("Exiting due to file system permission/access errors.")
        sys.exit(1)

    sup = Supervisor(
        args.channels,
        output_dir=args.output_dir,
        interval=args.interval,
        remux_enabled=args.remux,
        log_dir=args.log_dir,
        probe=is_live,
        notify=send_discord_notification if DISCORD_WEBHOOK_URL else None,
    )

    logger.info(f"{YELLOW}Starting Twitch monitor{RESET}")
    logger.info(f"Watching: {BLUE}{' '.join(sup.channels)}{RESET}")
    logger.info(f"Saving to: {BLUE}{args.output_dir}{RESET}")
    logger.info(f"Checking every {args.interval} seconds")
    logger.info(f"Remux after recording: {BLUE}{str(args.remux).lower()}{RESET}")
    logger.info(f"{YELLOW}Press Ctrl+C to stop{RESET}")

    loop = asyncio.new_event_loop()
    asyncio.set_event_loop(loop)
    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, sup.request_stop)
    try:
        loop.run_until_complete(sup.run())
    except KeyboardInterrupt:
        logger.info("Keyboard interrupt received")
    finally:
        sup.shutdown()
        loop.run_until_complete(sup.cancel_notifications())
        loop.close()
        logger.info("Exited cleanly")
    sys.exit(0)


if __name__ == "__main__":
    main()
