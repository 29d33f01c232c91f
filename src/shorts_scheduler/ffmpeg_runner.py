"""Isolated ffmpeg subprocesses for post-processing.

Every call runs one ffmpeg process under a global timeout, reads
``-progress`` output from stderr to spot stalls, and tears down the whole
process tree with psutil when it has to stop early. Failed commands leave a
log behind so they can be re-run by hand.
"""

import json
import logging
import re
import shlex
import subprocess
import tempfile
import threading
import time
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Callable, List, Optional

import imageio_ffmpeg
import psutil

logger = logging.getLogger(__name__)

PERMANENT_MARKERS = (
    "no such file or directory",
    "invalid data found",
    "invalid argument",
    "permission denied",
    "unsupported codec",
    "invalid codec",
    "moov atom not found",
    "no such filter",
    "error parsing",
    "corrupt",
)

OUT_TIME_RE = re.compile(r"(\d+):(\d+):(\d+(?:\.\d+)?)")
DURATION_RE = re.compile(r"Duration:\s*(\d+):(\d+):(\d+(?:\.\d+)?)")


class FfmpegErrorType(Enum):
    PERMANENT = "permanent"     # bad input, missing file, unknown filter
    TRANSIENT = "transient"     # I/O trouble or anything unrecognised
    TIMEOUT = "timeout"         # global timeout or stalled progress


@dataclass
class FfmpegProgress:
    """Latest values from ffmpeg's ``-progress`` stream."""
    out_time_s: float = 0.0
    frame: int = 0
    speed: float = 0.0
    last_update: float = 0.0


@dataclass
class FfmpegResult:
    success: bool
    returncode: int
    stderr: str
    duration_s: float
    error_type: Optional[FfmpegErrorType] = None
    progress: Optional[FfmpegProgress] = None
    artifacts_saved: List[Path] = field(default_factory=list)

    def error_tail(self, lines: int = 5) -> str:
        """Last few stderr lines, for error messages."""
        tail = [line for line in self.stderr.strip().splitlines() if line.strip()][-lines:]
        return " | ".join(tail)


def classify_ffmpeg_error(stderr: str) -> FfmpegErrorType:
    """PERMANENT when stderr names a problem retrying cannot fix."""
    lowered = stderr.lower()
    if any(marker in lowered for marker in PERMANENT_MARKERS):
        return FfmpegErrorType.PERMANENT
    return FfmpegErrorType.TRANSIENT


def hms_to_seconds(hours: str, minutes: str, seconds: str) -> float:
    return int(hours) * 3600 + int(minutes) * 60 + float(seconds)


def escape_drawtext(text: str) -> str:
    """Make caption text safe inside a single-quoted drawtext value."""
    return (
        text.replace("\\", "\\\\")
        .replace("'", "\\'")
        .replace('"', "")
        .replace(":", "\\:")
        .replace("%", "\\%")
        .replace("\r", " ")
        .replace("\n", " ")
    )


def get_ffmpeg_exe() -> str:
    return imageio_ffmpeg.get_ffmpeg_exe()


class FfmpegRunner:
    """Runs one ffmpeg command at a time with timeout and tree cleanup.

    Example:
        >>> runner = FfmpegRunner(global_timeout_s=600)
        >>> result = runner.overlay_caption("in.mp4", "out.mp4", "Hello", y="h-120")
        >>> if not result.success:
        ...     print(result.error_type, result.artifacts_saved)
    """

    def __init__(
        self,
        global_timeout_s: int = 600,
        stall_timeout_s: int = 120,
        kill_grace_period_s: int = 5,
        save_artifacts_on_failure: bool = True,
        loglevel: str = "error",
        artifact_dir: Optional[str] = None,
        on_progress: Optional[Callable[[FfmpegProgress], None]] = None,
    ):
        """
        Args:
            global_timeout_s: Hard limit for one ffmpeg run
            stall_timeout_s: Kill ffmpeg once no progress line has arrived
                for this long
            kill_grace_period_s: Wait between terminate and kill
            save_artifacts_on_failure: Write an error log for failed runs
            loglevel: ffmpeg ``-loglevel``
            artifact_dir: Where error logs go (system temp dir if None)
            on_progress: Called on each ``progress=`` line
        """
        self.global_timeout_s = global_timeout_s
        self.stall_timeout_s = stall_timeout_s
        self.poll_interval_s = 0.5
        self.kill_grace_period_s = kill_grace_period_s
        self.save_artifacts_on_failure = save_artifacts_on_failure
        self.loglevel = loglevel
        self.artifact_dir = artifact_dir
        self.on_progress = on_progress

        self._process: Optional[subprocess.Popen] = None
        self.progress = FfmpegProgress()

    def overlay_caption(
        self,
        input_path: str,
        output_path: str,
        text: str,
        y: str = "h-120",
        font_size: int = 80,
        font_color: str = "white",
        border_width: int = 3,
        threads: int = 1,
        preset: str = "ultrafast",
        crf: int = 28,
    ) -> FfmpegResult:
        """Burn a horizontally centered caption into the video.

        ``text`` is escaped here; ``y`` is a raw drawtext expression.
        Audio is copied untouched.
        """
        drawtext = ":".join([
            f"drawtext=text='{escape_drawtext(text)}'",
            f"fontsize={font_size}",
            f"fontcolor={font_color}",
            f"x=(w-text_w)/2:y={y}",
            f"borderw={border_width}:bordercolor=black",
            "shadowx=2:shadowy=2:shadowcolor=black@0.5",
        ])
        return self.run([
            "-i", input_path,
            "-vf", drawtext,
            "-c:a", "copy",
            "-threads", str(threads),
            "-preset", preset,
            "-crf", str(crf),
            output_path,
        ])

    def mix_background_music(
        self,
        video_path: str,
        music_path: str,
        output_path: str,
        start_s: float = 0.0,
        volume: float = 0.3,
        threads: int = 1,
    ) -> FfmpegResult:
        """Replace the video's audio with a music track.

        The video stream is copied, the music is re-encoded to AAC at the
        given volume and the output ends with the shorter input.
        """
        return self.run([
            "-i", video_path,
            "-ss", f"{start_s:.3f}",
            "-i", music_path,
            "-map", "0:v:0",
            "-map", "1:a:0",
            "-c:v", "copy",
            "-c:a", "aac",
            "-filter:a", f"volume={volume}",
            "-shortest",
            "-threads", str(threads),
            output_path,
        ])

    def probe_duration(self, media_path: str) -> Optional[float]:
        """Media duration in seconds, or None if it cannot be determined.

        Tries ffprobe next to the ffmpeg binary, then falls back to the
        ``Duration:`` line that ``ffmpeg -i`` prints.
        """
        ffmpeg_exe = get_ffmpeg_exe()
        ffprobe_exe = ffmpeg_exe.replace("ffmpeg", "ffprobe")

        try:
            result = subprocess.run(
                [ffprobe_exe, "-v", "quiet", "-print_format", "json", "-show_format", media_path],
                capture_output=True,
                check=True,
                text=True,
                timeout=30,
            )
            return float(json.loads(result.stdout)["format"]["duration"])
        except (OSError, subprocess.SubprocessError, ValueError, KeyError) as e:
            logger.debug(f"ffprobe unavailable for {media_path}: {e}")

        try:
            result = subprocess.run(
                [ffmpeg_exe, "-hide_banner", "-i", media_path],
                capture_output=True,
                text=True,
                timeout=30,
            )
        except (OSError, subprocess.SubprocessError) as e:
            logger.warning(f"Could not probe {media_path}: {e}")
            return None

        match = DURATION_RE.search(result.stderr)
        return hms_to_seconds(*match.groups()) if match else None

    def run(self, args: List[str]) -> FfmpegResult:
        """Run ffmpeg with ``args`` (everything after the binary and ``-y``)."""
        cmd = [
            get_ffmpeg_exe(), "-y", *args[:-1],
            "-max_muxing_queue_size", "512",
            "-progress", "pipe:2",
            "-loglevel", self.loglevel,
            args[-1],
        ]
        started = time.time()
        self.progress = FfmpegProgress()
        stderr_lines: List[str] = []
        timed_out = False

        self._process = subprocess.Popen(
            cmd,
            stdout=subprocess.DEVNULL,
            stderr=subprocess.PIPE,
            stdin=subprocess.DEVNULL,
            text=True,
            bufsize=1,
        )
        reader = threading.Thread(
            target=self._read_stderr, args=(self._process.stderr, stderr_lines), daemon=True
        )
        reader.start()

        try:
            returncode = self._wait(started)
            if returncode is None:
                self._terminate()
                timed_out = True
                returncode = -1
        except BaseException:
            self._terminate()
            raise
        finally:
            reader.join(timeout=2)
            self._process = None

        stderr = "".join(stderr_lines)
        result = FfmpegResult(
            success=returncode == 0,
            returncode=returncode,
            stderr=stderr,
            duration_s=time.time() - started,
            progress=self.progress,
        )
        if returncode != 0:
            if timed_out:
                result.error_type = FfmpegErrorType.TIMEOUT
            else:
                result.error_type = classify_ffmpeg_error(stderr)
            if self.save_artifacts_on_failure:
                result.artifacts_saved = self.save_failure_log(cmd, stderr)
        return result

    def _wait(self, started: float) -> Optional[int]:
        """Exit code, or None once the global or stall timeout is hit.

        Stall time counts from the last progress line, or from the start
        while none has arrived yet.
        """
        while True:
            try:
                return self._process.wait(timeout=self.poll_interval_s)
            except subprocess.TimeoutExpired:
                pass

            now = time.time()
            if now - started > self.global_timeout_s:
                logger.warning(f"ffmpeg exceeded {self.global_timeout_s}s; killing")
                return None
            last_seen = self.progress.last_update or started
            if now - last_seen > self.stall_timeout_s:
                logger.warning(f"ffmpeg made no progress for {self.stall_timeout_s}s; killing")
                return None

    def _read_stderr(self, stream, sink: List[str]) -> None:
        try:
            for line in stream:
                sink.append(line)
                self.parse_progress_line(line)
        except (OSError, ValueError) as e:
            logger.debug(f"stderr reader stopped: {e}")

    def parse_progress_line(self, line: str) -> None:
        """Fold one ``key=value`` line of ``-progress`` output into ``self.progress``."""
        key, sep, value = line.strip().partition("=")
        if not sep:
            return
        value = value.strip()

        if key == "out_time":
            match = OUT_TIME_RE.match(value)
            if match:
                self.progress.out_time_s = hms_to_seconds(*match.groups())
                self.progress.last_update = time.time()
        elif key == "frame" and value.isdigit():
            self.progress.frame = int(value)
        elif key == "speed" and value.endswith("x"):
            try:
                self.progress.speed = float(value[:-1])
            except ValueError:
                pass
        elif key == "progress" and self.on_progress:
            try:
                self.on_progress(self.progress)
            except Exception as e:
                logger.warning(f"Progress callback error: {e}")

    def _terminate(self) -> None:
        """Terminate ffmpeg and its children, killing survivors after the grace period."""
        if not self._process:
            return
        try:
            parent = psutil.Process(self._process.pid)
            procs = parent.children(recursive=True) + [parent]
        except psutil.NoSuchProcess:
            return

        for proc in procs:
            try:
                proc.terminate()
            except psutil.NoSuchProcess:
                pass
        _, alive = psutil.wait_procs(procs, timeout=self.kill_grace_period_s)
        for proc in alive:
            try:
                proc.kill()
            except psutil.NoSuchProcess:
                pass

    def save_failure_log(self, cmd: List[str], stderr: str) -> List[Path]:
        """Write ``ffmpeg_error_<ts>.log`` with a copy-pasteable command line."""
        log_dir = Path(self.artifact_dir) if self.artifact_dir else Path(tempfile.gettempdir())
        log_path = log_dir / f"ffmpeg_error_{time.time_ns()}.log"
        try:
            log_dir.mkdir(parents=True, exist_ok=True)
            log_path.write_text(
                f"# {time.ctime()}\n"
                f"{shlex.join(cmd)}\n\n"
                f"{stderr or '(no stderr)'}\n"
            )
        except OSError as e:
            logger.warning(f"Failed to save ffmpeg error log: {e}")
            return []
        logger.info(f"ffmpeg error log saved to {log_path}")
        return [log_path]


def check_ffmpeg() -> Optional[str]:
    """Return the ffmpeg version line, or None if ffmpeg cannot run."""
    try:
        result = subprocess.run([get_ffmpeg_exe(), "-version"], capture_output=True, text=True, timeout=30)
    except (OSError, RuntimeError, subprocess.SubprocessError) as e:
        logger.error(f"ffmpeg not available: {e}")
        return None
    if result.returncode != 0:
        return None
    return result.stdout.splitlines()[0] if result.stdout else "ffmpeg"
