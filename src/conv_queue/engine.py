"""FFmpeg transcoding engine with lifecycle signals.

The engine runs one ffmpeg process per request on a background thread and
reports four signals to a listener:

- ``on_start(command_line)`` once the process is spawned
- ``on_progress(progress)`` for each ``-progress`` block (throttled)
- ``on_error(message)`` if spawning fails, ffmpeg exits non-zero, or its output
  can no longer be read
- ``on_end()`` when ffmpeg exits cleanly

Exactly one of ``on_error``/``on_end`` is delivered per request.
"""

import logging
import os
import re
import subprocess
import threading
import time
from abc import ABC, abstractmethod
from collections import deque
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, Iterable, List, Optional

import psutil

from .models import ResolvedEncodeParameters

logger = logging.getLogger(__name__)

# Codecs that take a CRF value / an x26x -preset name
CRF_CODECS = {"libx264", "libx265", "libvpx-vp9", "libaom-av1", "libsvtav1"}
EFFORT_PRESET_CODECS = {"libx264", "libx265"}

# Containers that benefit from moov-at-front for progressive playback
FASTSTART_CONTAINERS = {"mp4", "mov", "m4a"}

MUXERS: Dict[str, str] = {
    "mkv": "matroska",
    "m4a": "ipod",
    "opus": "opus",
}

SIZE_RE = re.compile(r"^(\d+|\?)x(\d+|\?)$")
PERCENT_RE = re.compile(r"^(\d+(?:\.\d+)?)%$")
ASPECT_RE = re.compile(r"^(\d+(?:\.\d+)?):(\d+(?:\.\d+)?)$")


@dataclass
class EncodeRequest:
    """Everything the engine needs for one conversion."""
    input_path: Path
    output_path: Path
    params: ResolvedEncodeParameters
    size: Optional[str] = None


@dataclass
class EngineProgress:
    """One progress report from the engine."""
    timemark: str = "00:00:00.00"
    current_kbps: Optional[float] = None
    target_size: float = 0.0        # Output size so far in kB
    frame: int = 0
    fps: float = 0.0
    speed: float = 0.0


class EngineListener(ABC):
    """Receives lifecycle signals for a single request."""

    @abstractmethod
    def on_start(self, command_line: str) -> None:
        pass

    @abstractmethod
    def on_progress(self, progress: EngineProgress) -> None:
        pass

    @abstractmethod
    def on_error(self, message: str) -> None:
        pass

    @abstractmethod
    def on_end(self) -> None:
        pass


class TranscodingEngine(ABC):
    """Starts conversions without blocking the caller."""

    @abstractmethod
    def start(self, request: EncodeRequest, listener: EngineListener) -> None:
        """Begin converting ``request``; signals arrive on ``listener``.

        May raise synchronously if the request itself is unusable (e.g. an
        invalid size constraint). Runtime failures arrive as ``on_error``.
        """
        pass

    def shutdown(self) -> None:
        """Stop any running conversions (process exit only)."""


def size_arguments(size: Optional[str]) -> List[str]:
    """Translate a size/aspect constraint into ffmpeg arguments.

    Supported forms:
        ``1280x720``  exact size
        ``?x720``     fixed height, width keeps aspect
        ``1280x?``    fixed width, height keeps aspect
        ``50%``       scale both dimensions
        ``16:9``      set display aspect ratio

    Raises:
        ValueError: If the constraint doesn't match any form
    """
    if not size:
        return []

    size = size.strip()

    match = SIZE_RE.match(size)
    if match:
        w, h = match.groups()
        if w == "?" and h == "?":
            raise ValueError(f"Invalid size constraint: {size}")
        width = "-2" if w == "?" else w
        height = "-2" if h == "?" else h
        return ["-vf", f"scale={width}:{height}"]

    match = PERCENT_RE.match(size)
    if match:
        factor = float(match.group(1)) / 100
        return ["-vf", f"scale=trunc(iw*{factor}/2)*2:trunc(ih*{factor}/2)*2"]

    match = ASPECT_RE.match(size)
    if match:
        return ["-aspect", f"{match.group(1)}:{match.group(2)}"]

    raise ValueError(f"Invalid size constraint: {size}")


class FfmpegEngine(TranscodingEngine):
    """Runs ffmpeg via subprocess.Popen and parses ``-progress`` output.

    Example:
        >>> engine = FfmpegEngine(hw_accel="cuda")
        >>> engine.start(request, listener)  # returns immediately
    """

    def __init__(
        self,
        ffmpeg_path: Optional[str] = None,
        hw_accel: Optional[str] = None,
        faststart: bool = True,
        ffmpeg_loglevel: str = "info",
        kill_grace_period_s: int = 5,
        progress_interval_s: float = 1.0,
    ):
        """Initialize FFmpeg engine.

        Args:
            ffmpeg_path: ffmpeg executable (None = imageio-ffmpeg binary)
            hw_accel: Value for ``-hwaccel`` (None = software decode)
            faststart: Add ``-movflags +faststart`` for mp4-family output
            ffmpeg_loglevel: FFmpeg log level (error, warning, info, verbose)
            kill_grace_period_s: Grace period between SIGTERM and SIGKILL
            progress_interval_s: Minimum seconds between progress signals
        """
        self.ffmpeg_path = ffmpeg_path
        self.hw_accel = hw_accel
        self.faststart = faststart
        self.ffmpeg_loglevel = ffmpeg_loglevel
        self.kill_grace_period_s = kill_grace_period_s
        self.progress_interval_s = progress_interval_s

        self._processes: Dict[int, subprocess.Popen] = {}
        self._lock = threading.Lock()

    def build_command(self, request: EncodeRequest) -> List[str]:
        """Build the ffmpeg argument list for ``request``.

        Raises:
            ValueError: If the size constraint is invalid
        """
        params = request.params
        cmd = [self._get_ffmpeg_exe(), "-y"]

        if self.hw_accel:
            cmd.extend(["-hwaccel", self.hw_accel])

        cmd.extend(["-i", str(request.input_path)])

        if params.video_codec is None:
            cmd.append("-vn")
        else:
            cmd.extend(["-c:v", params.video_codec])
            if params.video_bitrate > 0:
                cmd.extend(["-b:v", f"{params.video_bitrate}k"])
            if params.video_codec in CRF_CODECS:
                cmd.extend(["-crf", str(params.quality_factor)])
            if params.video_codec in EFFORT_PRESET_CODECS:
                cmd.extend(["-preset", params.effort_preset])
            cmd.extend(size_arguments(request.size))

        cmd.extend(["-c:a", params.audio_codec])
        if params.audio_bitrate > 0:
            cmd.extend(["-b:a", f"{params.audio_bitrate}k"])

        if self.faststart and params.container in FASTSTART_CONTAINERS:
            cmd.extend(["-movflags", "+faststart"])

        cmd.extend(["-f", MUXERS.get(params.container, params.container)])

        cmd.extend([
            "-progress", "pipe:2",  # Progress to stderr
            "-nostats",
            "-loglevel", self.ffmpeg_loglevel,
            str(request.output_path),
        ])
        return cmd

    def start(self, request: EncodeRequest, listener: EngineListener) -> None:
        cmd = self.build_command(request)
        thread = threading.Thread(
            target=self._run,
            args=(cmd, listener),
            daemon=True,
            name=f"ffmpeg-{request.output_path.name}",
        )
        thread.start()

    def shutdown(self) -> None:
        with self._lock:
            processes = list(self._processes.values())
        for process in processes:
            self._kill_process_tree(process)

    def _run(self, cmd: List[str], listener: EngineListener) -> None:
        """Thread body: spawn, monitor, and report exactly one terminal signal."""
        command_line = " ".join(cmd)
        logger.debug(f"Running: {command_line}")

        try:
            process = subprocess.Popen(
                cmd,
                stdout=subprocess.DEVNULL,
                stderr=subprocess.PIPE,
                stdin=subprocess.DEVNULL,
                text=True,
                errors="replace",  # Raw tag bytes in stderr are not always UTF-8
                bufsize=1,  # Line buffered for real-time progress
                start_new_session=(os.name == "posix"),
            )
        except OSError as e:
            self._signal(listener.on_error, f"could not start ffmpeg: {e}")
            return

        with self._lock:
            self._processes[process.pid] = process

        try:
            self._signal(listener.on_start, command_line)
            tail = self._monitor_progress(process.stderr, listener)
            returncode = process.wait()
        except Exception as e:
            logger.exception(f"Lost track of ffmpeg (pid {process.pid}), killing it")
            try:
                self._kill_process_tree(process)
            except psutil.Error as kill_error:
                logger.warning(f"Could not kill ffmpeg (pid {process.pid}): {kill_error}")
            self._signal(listener.on_error, f"ffmpeg monitoring failed: {type(e).__name__}: {e}")
            return
        finally:
            with self._lock:
                self._processes.pop(process.pid, None)

        if returncode == 0:
            self._signal(listener.on_end)
        else:
            last_line = tail[-1] if tail else "no output"
            self._signal(listener.on_error, f"ffmpeg exited with code {returncode}: {last_line}")

    def _monitor_progress(self, stderr_stream: Iterable[str], listener: EngineListener) -> List[str]:
        """Parse ``-progress pipe:2`` blocks from stderr.

        FFmpeg progress format (one block per update)::

            frame=123
            fps=25.00
            bitrate=1234.5kbits/s
            total_size=524288
            out_time=00:00:05.123456
            speed=2.5x
            progress=continue

        Returns:
            The last non-progress stderr lines, for error reporting
        """
        progress = EngineProgress()
        tail: deque = deque(maxlen=20)
        last_signal = 0.0

        for raw in stderr_stream:
            line = raw.strip()
            if not line:
                continue

            key, sep, value = line.partition("=")
            if not sep or " " in key:
                tail.append(line)
                continue
            value = value.strip()

            if key == "out_time":
                progress.timemark = value
            elif key == "total_size":
                if value.isdigit():
                    progress.target_size = int(value) / 1024
            elif key == "bitrate":
                match = re.match(r"([\d.]+)kbits/s", value)
                progress.current_kbps = float(match.group(1)) if match else None
            elif key == "frame":
                if value.isdigit():
                    progress.frame = int(value)
            elif key == "fps":
                try:
                    progress.fps = float(value)
                except ValueError:
                    pass
            elif key == "speed":
                match = re.match(r"([\d.]+)x", value)
                if match:
                    progress.speed = float(match.group(1))
            elif key == "progress":
                now = time.monotonic()
                if value == "end" or now - last_signal >= self.progress_interval_s:
                    last_signal = now
                    snapshot = EngineProgress(**vars(progress))
                    self._signal(listener.on_progress, snapshot)
            else:
                # Keys we don't track, or plain log lines containing '='
                if key not in ("out_time_us", "out_time_ms", "dup_frames", "drop_frames") \
                        and not key.startswith("stream_"):
                    tail.append(line)

        return list(tail)

    @staticmethod
    def _signal(callback, *args) -> None:
        # Don't crash the engine thread on listener errors
        try:
            callback(*args)
        except Exception:
            logger.exception(f"Engine listener {getattr(callback, '__name__', callback)} raised")

    def _kill_process_tree(self, process: subprocess.Popen) -> None:
        """Kill ffmpeg and its children: SIGTERM, grace period, SIGKILL."""
        try:
            parent = psutil.Process(process.pid)
            children = parent.children(recursive=True)
        except psutil.NoSuchProcess:
            return

        for proc in children + [parent]:
            try:
                proc.terminate()
            except psutil.NoSuchProcess:
                pass

        gone, alive = psutil.wait_procs([parent] + children, timeout=self.kill_grace_period_s)

        for proc in alive:
            try:
                proc.kill()
            except psutil.NoSuchProcess:
                pass

    def _get_ffmpeg_exe(self) -> str:
        if self.ffmpeg_path:
            return self.ffmpeg_path
        import imageio_ffmpeg
        return imageio_ffmpeg.get_ffmpeg_exe()
