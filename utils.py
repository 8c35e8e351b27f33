import hashlib
import os
import re
from datetime import datetime, timezone
from typing import Optional
from urllib.parse import urlparse

from dotenv import load_dotenv

load_dotenv()

STORAGE_PATH = os.getenv("STORAGE_PATH", "./storage")
UPLOAD_DIR = os.getenv("UPLOAD_DIR", os.path.join(STORAGE_PATH, "uploads"))
OUTPUT_DIR = os.getenv("OUTPUT_DIR", os.path.join(STORAGE_PATH, "downloads"))
REDIS_URL = os.getenv("REDIS_URL", "redis://localhost:6379/0")
USE_CELERY = os.getenv("USE_CELERY", "false").lower() == "true"

WORKER_CONCURRENCY = int(os.getenv("WORKER_CONCURRENCY", "1"))
PROGRESS_STEP = int(os.getenv("PROGRESS_STEP", "10"))
JOB_RETENTION_HOURS = int(os.getenv("JOB_RETENTION_HOURS", "24"))
REAPER_INTERVAL_SECONDS = int(os.getenv("REAPER_INTERVAL_SECONDS", "3600"))
MAX_UPLOAD_MB = int(os.getenv("MAX_UPLOAD_MB", "500"))

YTDLP_PROXY = os.getenv("YTDLP_PROXY", "")
FFMPEG_BIN = os.getenv("FFMPEG_BIN", "ffmpeg")
FFPROBE_BIN = os.getenv("FFPROBE_BIN", "ffprobe")

SUPPORTED_UPLOAD_TYPES = {
    "video/mp4",
    "video/avi",
    "video/quicktime",
    "video/x-msvideo",
}

CONTENT_TYPES = {
    ".mp4": "video/mp4",
    ".avi": "video/x-msvideo",
    ".mov": "video/quicktime",
    ".mp3": "audio/mpeg",
    ".wav": "audio/wav",
    ".gif": "image/gif",
}

_PLATFORM_HOSTS = {
    "youtube": ("youtube.com", "youtu.be"),
    "facebook": ("facebook.com", "fb.watch"),
    "instagram": ("instagram.com",),
}

_TIMESTAMP_RE = re.compile(r"^([0-1]?[0-9]|2[0-3]):([0-5][0-9]):([0-5][0-9])$")
_UPLOAD_ID_RE = re.compile(r"^[0-9a-f]{64}$")


def ensure_storage_dirs(*dirs: str) -> None:
    for path in dirs or (UPLOAD_DIR, OUTPUT_DIR):
        os.makedirs(path, exist_ok=True)


def utcnow() -> datetime:
    """Naive UTC timestamp, the form stored in the jobs table."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def calculate_checksum(data: bytes) -> str:
    return hashlib.sha256(data).hexdigest()


def is_http_url(value: str) -> bool:
    parsed = urlparse(value)
    return parsed.scheme in ("http", "https") and bool(parsed.netloc)


def detect_platform(url: str) -> Optional[str]:
    """
    Return the platform name for a supported video URL, or None.

    Matches on the host so that a YouTube link pasted into another site's
    query string is not mistaken for a YouTube URL.
    """
    host = (urlparse(url).hostname or "").lower()
    for platform, domains in _PLATFORM_HOSTS.items():
        for domain in domains:
            if host == domain or host.endswith("." + domain):
                return platform
    return None


def validate_video_url(url: str) -> str:
    """Check a download URL and return its platform; raise ValueError otherwise."""
    if not is_http_url(url):
        raise ValueError("Invalid URL format")
    platform = detect_platform(url)
    if platform is None:
        raise ValueError(
            "Unsupported platform. Only YouTube, Facebook, and Instagram URLs are supported."
        )
    return platform


def is_upload_id(value: str) -> bool:
    return bool(_UPLOAD_ID_RE.match(value))


def resolve_upload(file_id: str, upload_dir: Optional[str] = None) -> Optional[str]:
    """Find the stored file for an upload id, or None if it is gone."""
    if not is_upload_id(file_id):
        return None
    upload_dir = upload_dir or UPLOAD_DIR
    try:
        names = os.listdir(upload_dir)
    except FileNotFoundError:
        return None
    for name in names:
        if os.path.splitext(name)[0] == file_id:
            return os.path.join(upload_dir, name)
    return None


def parse_timestamp(value: str) -> int:
    """Convert HH:MM:SS into seconds."""
    match = _TIMESTAMP_RE.match(value or "")
    if not match:
        raise ValueError("Invalid time format. Use HH:MM:SS")
    hours, minutes, seconds = (int(part) for part in match.groups())
    return hours * 3600 + minutes * 60 + seconds


def format_timestamp(seconds: int) -> str:
    hours, rest = divmod(int(seconds), 3600)
    minutes, secs = divmod(rest, 60)
    return f"{hours:02d}:{minutes:02d}:{secs:02d}"


def compression_settings(quality: str) -> tuple[int, str]:
    """CRF and x264 preset for a compression quality level."""
    return {
        "high": (18, "slow"),
        "medium": (23, "medium"),
        "low": (28, "fast"),
    }.get(quality, (23, "medium"))


def content_type_for(path: str) -> str:
    return CONTENT_TYPES.get(os.path.splitext(path)[1].lower(), "application/octet-stream")


def remove_file(path: Optional[str]) -> bool:
    """Delete a file, returning False if it was already gone."""
    if not path:
        return False
    try:
        os.remove(path)
    except FileNotFoundError:
        return False
    return True
