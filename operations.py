"""
Operation adapter: runs the long operation behind a job.

The adapter picks the executor registered for the job's operation kind,
gives it a private work directory and renames the finished file into
OUTPUT_DIR/<job_id><ext>. Every fault is turned into a failed
OperationResult; nothing raises past OperationAdapter.run().
"""

import json
import logging
import os
import shutil
import subprocess
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Optional

import yt_dlp

from models import OperationKind
from utils import (
    FFMPEG_BIN,
    FFPROBE_BIN,
    OUTPUT_DIR,
    UPLOAD_DIR,
    YTDLP_PROXY,
    compression_settings,
    format_timestamp,
    is_http_url,
    parse_timestamp,
    resolve_upload,
)

logger = logging.getLogger(__name__)

ProgressSink = Callable[[int], None]

MEDIA_SUFFIXES = [".mp4", ".mkv", ".webm", ".mp3", ".m4a", ".ogg", ".opus", ".wav"]


class OperationCancelled(Exception):
    pass


@dataclass
class OperationResult:
    success: bool
    output_path: Optional[str] = None
    error: Optional[str] = None
    title: Optional[str] = None

    @classmethod
    def ok(cls, output_path: str, title: Optional[str] = None) -> "OperationResult":
        return cls(success=True, output_path=output_path, title=title)

    @classmethod
    def failed(cls, error: str) -> "OperationResult":
        return cls(success=False, error=error)


def _raise_if_cancelled(cancel_event) -> None:
    if cancel_event is not None and cancel_event.is_set():
        raise OperationCancelled()


class Operation:
    """Base class for one operation kind."""

    kind: OperationKind

    def output_extension(self, options: dict) -> str:
        return ".mp4"

    def execute(self, job, work_dir: Path, on_progress: ProgressSink, cancel_event) -> tuple[Path, Optional[str]]:
        """Produce the output inside work_dir; return (file, title)."""
        raise NotImplementedError


# --- yt-dlp ---

class DownloadOperation(Operation):
    kind = OperationKind.DOWNLOAD

    _QUALITY_HEIGHT = {"medium": 720, "low": 480}

    def __init__(self, proxy: str = YTDLP_PROXY):
        self.proxy = proxy

    def output_extension(self, options: dict) -> str:
        return f".{options.get('format', 'mp4')}"

    def format_spec(self, options: dict) -> str:
        if options.get("format") == "mp3":
            return "bestaudio/best"
        height = None
        if options.get("resolution"):
            height = int(options["resolution"].rstrip("p"))
        else:
            height = self._QUALITY_HEIGHT.get(options.get("quality"))
        if height:
            return f"best[ext=mp4][height<={height}]/best[height<={height}]/best"
        if options.get("quality") == "highest":
            return "bestvideo[ext=mp4]+bestaudio[ext=m4a]/best[ext=mp4]/best"
        return "best[ext=mp4]/best"

    def build_options(self, options: dict, work_dir: Path, hook) -> dict:
        ydl_opts = {
            "format": self.format_spec(options),
            "outtmpl": str(work_dir / "download.%(ext)s"),
            "noplaylist": True,
            "quiet": True,
            "no_warnings": True,
            "progress_hooks": [hook],
        }
        if options.get("format") == "mp3":
            ydl_opts["postprocessors"] = [
                {"key": "FFmpegExtractAudio", "preferredcodec": "mp3", "preferredquality": "192"}
            ]
        else:
            ydl_opts["merge_output_format"] = "mp4"
        if self.proxy:
            ydl_opts["proxy"] = self.proxy
        return ydl_opts

    def execute(self, job, work_dir, on_progress, cancel_event):
        def hook(d):
            _raise_if_cancelled(cancel_event)
            if d.get("status") == "downloading":
                total = d.get("total_bytes") or d.get("total_bytes_estimate")
                if total:
                    on_progress(int(d.get("downloaded_bytes", 0) * 100 / total))
            elif d.get("status") == "finished":
                on_progress(100)

        ydl_opts = self.build_options(job.operation_options or {}, work_dir, hook)
        logger.info(f"Downloading with yt-dlp: {job.input_ref} (format {ydl_opts['format']})")

        with yt_dlp.YoutubeDL(ydl_opts) as ydl:
            info = ydl.extract_info(job.input_ref, download=True)

        content_files = [f for f in work_dir.iterdir() if f.suffix in MEDIA_SUFFIXES]
        if not content_files:
            raise RuntimeError("No media file found after yt-dlp download")

        # yt-dlp may leave per-format fragments next to the merged file
        content_file = max(content_files, key=lambda f: f.stat().st_size)
        title = info.get("title") if info else None
        return content_file, title


# --- ffmpeg ---

def probe_duration(path: str, ffprobe_bin: str = FFPROBE_BIN) -> Optional[float]:
    """Duration in seconds via ffprobe, or None if it cannot be read."""
    try:
        result = subprocess.run(
            [ffprobe_bin, "-v", "quiet", "-print_format", "json", "-show_format", str(path)],
            capture_output=True,
            text=True,
            check=True,
        )
        return float(json.loads(result.stdout)["format"]["duration"])
    except (OSError, subprocess.CalledProcessError, ValueError, KeyError):
        return None


def run_ffmpeg(cmd: list, duration: Optional[float], on_progress: ProgressSink, cancel_event=None) -> None:
    """
    Run ffmpeg with `-progress pipe:1` and translate out_time into percent.

    Kills the process and raises OperationCancelled when cancel_event is set.
    """
    process = subprocess.Popen(cmd, stdout=subprocess.PIPE, stderr=subprocess.PIPE, text=True)
    try:
        for line in process.stdout:
            if cancel_event is not None and cancel_event.is_set():
                process.kill()
                raise OperationCancelled()
            key, _, value = line.strip().partition("=")
            if key == "out_time_us" and duration and value.isdigit():
                on_progress(min(100, int(int(value) / 1_000_000 * 100 / duration)))
            elif key == "progress" and value == "end":
                on_progress(100)
        _, stderr = process.communicate()
    finally:
        if process.poll() is None:
            process.kill()
            process.wait()

    if process.returncode != 0:
        detail = (stderr or "").strip().splitlines()
        message = f"ffmpeg failed with code {process.returncode}"
        if detail:
            message += f": {detail[-1]}"
        raise RuntimeError(message)


class FfmpegOperation(Operation):
    def __init__(self, upload_dir: str = UPLOAD_DIR, ffmpeg_bin: str = FFMPEG_BIN, ffprobe_bin: str = FFPROBE_BIN):
        self.upload_dir = upload_dir
        self.ffmpeg_bin = ffmpeg_bin
        self.ffprobe_bin = ffprobe_bin

    def resolve_input(self, input_ref: str) -> str:
        if is_http_url(input_ref):
            return input_ref
        path = resolve_upload(input_ref, self.upload_dir)
        if path is None:
            raise FileNotFoundError(f"Uploaded file not found: {input_ref}")
        return path

    def build_args(self, input_path: str, output_path: Path, options: dict) -> list:
        raise NotImplementedError

    def expected_duration(self, input_path: str, options: dict) -> Optional[float]:
        return probe_duration(input_path, self.ffprobe_bin)

    def build_command(self, input_path: str, output_path: Path, options: dict) -> list:
        return [
            self.ffmpeg_bin,
            "-y",
            "-hide_banner",
            "-loglevel", "error",
            "-nostats",
            "-progress", "pipe:1",
            *self.build_args(input_path, output_path, options),
        ]

    def execute(self, job, work_dir, on_progress, cancel_event):
        options = job.operation_options or {}
        input_path = self.resolve_input(job.input_ref)
        output_path = work_dir / f"output{self.output_extension(options)}"
        cmd = self.build_command(input_path, output_path, options)
        logger.info(f"Running ffmpeg {self.kind.value} for job {job.job_id}")
        run_ffmpeg(cmd, self.expected_duration(input_path, options), on_progress, cancel_event)
        return output_path, None


class CompressOperation(FfmpegOperation):
    kind = OperationKind.COMPRESS

    def build_args(self, input_path, output_path, options):
        crf, preset = compression_settings(options.get("quality", "medium"))
        return [
            "-i", input_path,
            "-c:v", "libx264", "-crf", str(crf), "-preset", preset,
            "-c:a", "aac", "-b:a", "128k",
            str(output_path),
        ]


class ConvertOperation(FfmpegOperation):
    kind = OperationKind.CONVERT

    def output_extension(self, options):
        return f".{options['format']}"

    def build_args(self, input_path, output_path, options):
        fmt = options["format"]
        if fmt == "gif":
            return ["-i", input_path, "-vf", "fps=10,scale=480:-1:flags=lanczos", "-loop", "0", str(output_path)]
        if fmt == "avi":
            return ["-i", input_path, "-c:v", "mpeg4", "-q:v", "5", "-c:a", "libmp3lame", str(output_path)]
        return ["-i", input_path, "-c:v", "libx264", "-crf", "23", "-c:a", "aac", str(output_path)]


class TrimOperation(FfmpegOperation):
    kind = OperationKind.TRIM

    def expected_duration(self, input_path, options):
        return parse_timestamp(options["end_time"]) - parse_timestamp(options["start_time"])

    def build_args(self, input_path, output_path, options):
        # Hour may arrive as a single digit; ffmpeg gets HH:MM:SS
        start = format_timestamp(parse_timestamp(options["start_time"]))
        end = format_timestamp(parse_timestamp(options["end_time"]))
        return [
            "-i", input_path,
            "-ss", start,
            "-to", end,
            "-c", "copy",
            str(output_path),
        ]


class ExtractOperation(FfmpegOperation):
    kind = OperationKind.EXTRACT

    def output_extension(self, options):
        return ".wav" if options.get("format") == "wav" else ".mp3"

    def build_args(self, input_path, output_path, options):
        if options.get("format") == "wav":
            codec = ["-c:a", "pcm_s16le"]
        else:
            codec = ["-c:a", "libmp3lame", "-q:a", "2"]
        return ["-i", input_path, "-vn", *codec, str(output_path)]


class WatermarkOperation(FfmpegOperation):
    kind = OperationKind.WATERMARK

    _POSITIONS = {
        "top-left": "x=10:y=10",
        "top-right": "x=w-tw-10:y=10",
        "bottom-left": "x=10:y=h-th-10",
        "bottom-right": "x=w-tw-10:y=h-th-10",
    }

    @staticmethod
    def escape_text(text: str) -> str:
        for char in ("\\", ":", "'", "%"):
            text = text.replace(char, "\\" + char)
        return text

    def build_args(self, input_path, output_path, options):
        position = self._POSITIONS[options.get("position", "bottom-right")]
        drawtext = (
            f"drawtext=text='{self.escape_text(options['text'])}'"
            f":fontcolor=white@0.8:fontsize=24:{position}"
        )
        return ["-i", input_path, "-vf", drawtext, "-c:a", "copy", str(output_path)]


def default_operations(upload_dir: str = UPLOAD_DIR) -> list:
    return [
        DownloadOperation(),
        CompressOperation(upload_dir),
        ConvertOperation(upload_dir),
        TrimOperation(upload_dir),
        ExtractOperation(upload_dir),
        WatermarkOperation(upload_dir),
    ]


class OperationAdapter:
    def __init__(self, output_dir: str = OUTPUT_DIR, upload_dir: str = UPLOAD_DIR, operations=None):
        self.output_dir = Path(output_dir)
        if operations is None:
            operations = default_operations(upload_dir)
        self.operations = {operation.kind: operation for operation in operations}

    def output_path_for(self, job) -> Path:
        operation = self.operations[job.operation_kind]
        return self.output_dir / f"{job.job_id}{operation.output_extension(job.operation_options or {})}"

    def run(self, job, on_progress: Optional[ProgressSink] = None, cancel_event=None) -> OperationResult:
        operation = self.operations.get(job.operation_kind)
        if operation is None:
            return OperationResult.failed(f"Unsupported operation: {job.operation_kind}")

        def report(progress: int) -> None:
            if on_progress is None:
                return
            try:
                on_progress(max(0, min(100, int(progress))))
            except Exception as e:
                logger.warning(f"Progress update failed for job {job.job_id}: {e}")

        # Per-job work dir on the same filesystem, so the final rename is atomic
        work_dir = self.output_dir / ".work" / job.job_id
        try:
            shutil.rmtree(work_dir, ignore_errors=True)
            work_dir.mkdir(parents=True, exist_ok=True)
            produced, title = operation.execute(job, work_dir, report, cancel_event)
            _raise_if_cancelled(cancel_event)
            output_path = self.output_path_for(job)
            output_path.parent.mkdir(parents=True, exist_ok=True)
            os.replace(produced, output_path)
            return OperationResult.ok(str(output_path), title=title)
        except OperationCancelled:
            return OperationResult.failed("Cancelled")
        except Exception as e:
            if cancel_event is not None and cancel_event.is_set():
                return OperationResult.failed("Cancelled")
            logger.error(f"{operation.kind.value} failed for job {job.job_id}: {e}", exc_info=True)
            return OperationResult.failed(str(e) or e.__class__.__name__)
        finally:
            shutil.rmtree(work_dir, ignore_errors=True)
