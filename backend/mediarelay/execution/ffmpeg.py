"""
FFmpeg transform engine.

Real transcoding via subprocess.Popen.

Design rules:
- One subprocess per item
- stderr goes to a per-item log file next to the output (no pipe to drain)
- Persist full command string in the log
- Non-zero exit code = failed transform
- Termination is SIGKILL straight away (hung encoders do not honour SIGTERM)
- Integrity = full decode to the null muxer with no errors
- Duration = ffprobe format duration
"""

import logging
import os
import shutil
import subprocess
from datetime import datetime
from pathlib import Path
from typing import IO, Dict, List, Optional

from .base import TransformEngine, TransformHandle, TransformParams, TransformUnit
from .errors import ProbeError
from .results import DurationComparison, IntegrityResult, TransformResult

logger = logging.getLogger(__name__)


# Codec key -> encoder arguments. CRF and preset are appended per codec family.
FFMPEG_VIDEO_CODEC_MAP: Dict[str, List[str]] = {
    "hevc": ["libx265"],
    "h264": ["libx264"],
    "av1": ["libsvtav1"],
    "copy": ["copy"],
}

# Lines of the ffmpeg log kept in a failure message
ERROR_TAIL_LINES = 5

PROBE_TIMEOUT_SECONDS = 60.0

# A full decode of a multi-hour source
INTEGRITY_TIMEOUT_SECONDS = 4 * 60 * 60.0


def _find_binary(name: str) -> Optional[str]:
    """Find a binary in PATH or common install locations."""
    found = shutil.which(name)
    if found:
        return found

    common_paths = [
        f"/usr/local/bin/{name}",
        f"/usr/bin/{name}",
        f"/opt/homebrew/bin/{name}",
    ]
    for path in common_paths:
        if os.path.isfile(path) and os.access(path, os.X_OK):
            return path

    return None


def _tail(path: Path, lines: int = ERROR_TAIL_LINES) -> str:
    try:
        content = path.read_text(errors="replace").strip().splitlines()
    except OSError:
        return ""
    return "\n".join(content[-lines:])


class FFmpegTransformHandle(TransformHandle):
    """Pollable handle around an ffmpeg subprocess."""

    def __init__(self, process: subprocess.Popen, unit: TransformUnit, log_path: Path, log_file: IO):
        self.process = process
        self.unit = unit
        self.log_path = log_path
        self._log_file = log_file
        self._started_at = datetime.now()
        self._killed = False

    @property
    def pid(self) -> Optional[int]:
        return self.process.pid

    def done(self) -> bool:
        finished = self.process.poll() is not None
        if finished and not self._log_file.closed:
            self._log_file.close()
        return finished

    def result(self) -> TransformResult:
        exit_code = self.process.poll()
        if exit_code is None:
            raise RuntimeError(f"ffmpeg PID {self.process.pid} has not exited")

        input_size = _size_or_zero(self.unit.input_path)
        completed_at = datetime.now()

        if self._killed:
            return TransformResult(
                success=False,
                input_path=self.unit.input_path,
                input_size=input_size,
                exit_code=exit_code,
                error="ffmpeg was terminated",
                started_at=self._started_at,
                completed_at=completed_at,
            )

        if exit_code != 0:
            tail = _tail(self.log_path)
            return TransformResult(
                success=False,
                input_path=self.unit.input_path,
                input_size=input_size,
                exit_code=exit_code,
                error=tail or f"ffmpeg exited with code {exit_code}",
                started_at=self._started_at,
                completed_at=completed_at,
            )

        output = Path(self.unit.output_path)
        if not output.is_file() or output.stat().st_size == 0:
            return TransformResult(
                success=False,
                input_path=self.unit.input_path,
                input_size=input_size,
                exit_code=exit_code,
                error="Output file was not created",
                started_at=self._started_at,
                completed_at=completed_at,
            )

        return TransformResult(
            success=True,
            input_path=self.unit.input_path,
            output_path=str(output),
            input_size=input_size,
            output_size=output.stat().st_size,
            exit_code=exit_code,
            started_at=self._started_at,
            completed_at=completed_at,
        )

    def terminate(self) -> None:
        if self.process.poll() is not None:
            return

        logger.warning(f"[FFmpeg] Killing PID {self.process.pid}")
        self._killed = True
        try:
            self.process.kill()
            self.process.wait(timeout=10)
        except ProcessLookupError:
            pass  # Process already dead
        except subprocess.TimeoutExpired:
            logger.error(f"[FFmpeg] PID {self.process.pid} did not exit after SIGKILL")
        finally:
            if not self._log_file.closed:
                self._log_file.close()


def _size_or_zero(path: str) -> int:
    try:
        return os.path.getsize(path)
    except OSError:
        return 0


class FFmpegTransformEngine(TransformEngine):
    """
    FFmpeg-based transform engine.

    Uses subprocess.Popen for transcoding and ffprobe for durations.
    """

    def __init__(
        self,
        ffmpeg_path: Optional[str] = None,
        ffprobe_path: Optional[str] = None,
        probe_timeout: float = PROBE_TIMEOUT_SECONDS,
        integrity_timeout: float = INTEGRITY_TIMEOUT_SECONDS,
    ):
        self._ffmpeg_path = ffmpeg_path
        self._ffprobe_path = ffprobe_path
        self.probe_timeout = probe_timeout
        self.integrity_timeout = integrity_timeout

    @property
    def name(self) -> str:
        return "FFmpeg"

    @property
    def ffmpeg_path(self) -> Optional[str]:
        if not self._ffmpeg_path:
            self._ffmpeg_path = _find_binary("ffmpeg")
        return self._ffmpeg_path

    @property
    def ffprobe_path(self) -> Optional[str]:
        if not self._ffprobe_path:
            self._ffprobe_path = _find_binary("ffprobe")
        return self._ffprobe_path

    @property
    def available(self) -> bool:
        """Check if ffmpeg and ffprobe are installed and accessible."""
        return self.ffmpeg_path is not None and self.ffprobe_path is not None

    def validate_params(self, params: TransformParams) -> None:
        if params.video_codec not in FFMPEG_VIDEO_CODEC_MAP:
            raise ValueError(f"Codec '{params.video_codec}' is not supported by FFmpeg engine")

    def build_command(self, unit: TransformUnit) -> List[str]:
        """Build FFmpeg command line arguments."""
        params: TransformParams = unit.params
        self.validate_params(params)

        cmd = [self.ffmpeg_path or "ffmpeg", "-hide_banner", "-nostdin", "-y"]
        cmd.extend(["-i", unit.input_path])

        # Keep every stream (audio tracks, subtitles)
        cmd.extend(["-map", "0"])

        cmd.extend(["-c:v"] + FFMPEG_VIDEO_CODEC_MAP[params.video_codec])
        if params.video_codec != "copy":
            cmd.extend(["-crf", str(params.crf), "-preset", params.preset])

        cmd.extend(["-c:a", params.audio_codec])
        cmd.extend(["-c:s", "copy"])
        cmd.extend(params.extra_args)

        cmd.append(unit.output_path)
        return cmd

    def start_transform(self, unit: TransformUnit) -> FFmpegTransformHandle:
        """
        Launch ffmpeg for one unit.

        Raises:
            OSError: If the process cannot be spawned
        """
        cmd = self.build_command(unit)
        output_path = Path(unit.output_path)
        output_path.parent.mkdir(parents=True, exist_ok=True)
        log_path = output_path.with_name(output_path.name + ".ffmpeg.log")

        cmd_string = " ".join(cmd)
        logger.info(f"[FFmpeg] Executing: {cmd_string}")

        log_file = open(log_path, "w")
        log_file.write(cmd_string + "\n")
        log_file.flush()
        try:
            process = subprocess.Popen(
                cmd,
                stdin=subprocess.DEVNULL,
                stdout=subprocess.DEVNULL,
                stderr=log_file,
            )
        except OSError:
            log_file.close()
            raise

        logger.info(f"[FFmpeg] Started PID {process.pid} for {Path(unit.input_path).name}")
        return FFmpegTransformHandle(process, unit, log_path, log_file)

    def probe_duration(self, path: str) -> float:
        """
        Read the container duration in seconds.

        Raises:
            ProbeError: If ffprobe is missing, times out or reports nothing
        """
        if not self.ffprobe_path:
            raise ProbeError("ffprobe is not installed or not in PATH")

        cmd = [
            self.ffprobe_path,
            "-v", "error",
            "-show_entries", "format=duration",
            "-of", "default=noprint_wrappers=1:nokey=1",
            path,
        ]
        try:
            completed = subprocess.run(
                cmd,
                capture_output=True,
                text=True,
                timeout=self.probe_timeout,
            )
        except subprocess.TimeoutExpired as e:
            raise ProbeError(f"ffprobe timed out after {self.probe_timeout:.0f}s on {path}") from e

        if completed.returncode != 0:
            raise ProbeError(completed.stderr.strip() or f"ffprobe exited with code {completed.returncode}")

        try:
            return float(completed.stdout.strip().splitlines()[0])
        except (IndexError, ValueError) as e:
            raise ProbeError(f"No duration reported for {path}: {completed.stdout!r}") from e

    def check_integrity(self, path: str) -> IntegrityResult:
        """Decode the whole file; any decode error makes it invalid."""
        if not self.ffmpeg_path:
            return IntegrityResult(valid=False, path=path, error="FFmpeg is not installed or not in PATH")

        cmd = [self.ffmpeg_path, "-v", "error", "-nostdin", "-i", path, "-f", "null", "-"]
        try:
            completed = subprocess.run(
                cmd,
                capture_output=True,
                text=True,
                timeout=self.integrity_timeout,
            )
        except subprocess.TimeoutExpired:
            return IntegrityResult(
                valid=False,
                path=path,
                error=f"Integrity check timed out after {self.integrity_timeout:.0f}s",
            )

        stderr = completed.stderr.strip()
        if completed.returncode != 0 or stderr:
            first_line = stderr.splitlines()[0] if stderr else f"exit code {completed.returncode}"
            return IntegrityResult(valid=False, path=path, error=f"Decode errors: {first_line}")

        return IntegrityResult(valid=True, path=path)

    def compare_duration(self, path_a: str, path_b: str, tolerance: float) -> DurationComparison:
        """Compare container durations of two files."""
        try:
            duration_a = self.probe_duration(path_a)
            duration_b = self.probe_duration(path_b)
        except ProbeError as e:
            return DurationComparison(within_tolerance=False, tolerance=tolerance, error=str(e))

        delta = abs(duration_a - duration_b)
        return DurationComparison(
            within_tolerance=delta <= tolerance,
            delta=delta,
            duration_a=duration_a,
            duration_b=duration_b,
            tolerance=tolerance,
        )
