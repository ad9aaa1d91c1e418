"""
Package uploaded videos for segment serving.

Primary path: FFmpeg re-encodes to H.264/AAC HLS (segment000.ts, ...), with an
optional per-asset AES-128 key and an optional burned-in watermark.
Fallback: when FFmpeg is missing or fails, the original is copied to
video.mp4 next to a single-entry playlist. Both paths produce
package/index.m3u8 and package/encryption.key, so the segment server resolves
files the same way whichever path ran.

Packages are built in a staging directory and swapped in whole, so a reader
never sees a half-written package, including during reprocessing.
"""
import logging
import os
import shutil
import subprocess
import threading
from concurrent.futures import Future, ThreadPoolExecutor
from dataclasses import dataclass
from pathlib import Path
from typing import Callable

from contentgate.config import get_settings
from contentgate.database import SessionLocal
from contentgate.exceptions import UpstreamToolUnavailable
from contentgate.models.video import PackageState, Video
from contentgate.services import hls, storage

logger = logging.getLogger(__name__)

SEGMENT_PATTERN = "segment%03d.ts"
KEY_URI = "key"

WATERMARK_POSITIONS = {
    "topLeft": "x=10:y=10",
    "topRight": "x=(w-text_w-10):y=10",
    "bottomLeft": "x=10:y=(h-text_h-10)",
    "bottomRight": "x=(w-text_w-10):y=(h-text_h-10)",
    "center": "x=(w-text_w)/2:y=(h-text_h)/2",
}


@dataclass
class PackageResult:
    state: PackageState
    duration: float
    encrypted: bool
    has_thumbnail: bool


def _run(tool: str, cmd: list[str], timeout: int) -> subprocess.CompletedProcess:
    try:
        return subprocess.run(cmd, check=True, capture_output=True, timeout=timeout)
    except FileNotFoundError:
        raise UpstreamToolUnavailable(tool, f"{cmd[0]} not found; install FFmpeg to enable HLS packaging")
    except subprocess.CalledProcessError as e:
        stderr = e.stderr.decode(errors="replace").strip()[-500:] if e.stderr else str(e)
        raise UpstreamToolUnavailable(tool, stderr)
    except subprocess.TimeoutExpired:
        raise UpstreamToolUnavailable(tool, f"timed out after {timeout}s")


def probe_duration(source: Path) -> float:
    """Duration in seconds via ffprobe; 0.0 when unknown."""
    settings = get_settings()
    cmd = [
        settings.ffprobe_path,
        "-v", "quiet",
        "-show_entries", "format=duration",
        "-of", "csv=p=0",
        str(source),
    ]
    try:
        out = _run("ffprobe", cmd, timeout=60).stdout.decode().strip()
        return float(out) if out else 0.0
    except UpstreamToolUnavailable as e:
        logger.warning("Duration probe failed for %s: %s", source, e.reason)
        return 0.0
    except ValueError:
        return 0.0


def extract_thumbnail(source: Path, dest: Path, at_seconds: float = 10.0) -> bool:
    """Best effort; a failure only means no thumbnail."""
    settings = get_settings()
    dest.parent.mkdir(parents=True, exist_ok=True)
    tmp = dest.with_name(f".{dest.name}.tmp.jpg")
    cmd = [
        settings.ffmpeg_path, "-y",
        "-ss", str(at_seconds),
        "-i", str(source),
        "-vframes", "1",
        "-q:v", "2",
        str(tmp),
    ]
    try:
        _run("ffmpeg", cmd, timeout=120)
    except UpstreamToolUnavailable as e:
        logger.warning("Thumbnail extraction failed for %s: %s", source, e.reason)
        tmp.unlink(missing_ok=True)
        return False
    if not tmp.is_file() or tmp.stat().st_size == 0:
        tmp.unlink(missing_ok=True)
        return False
    os.replace(tmp, dest)
    return True


def watermark_filter(text: str, position: str = "topRight") -> str:
    escaped = text.replace("\\", "\\\\").replace("'", "\\'").replace(":", "\\:")
    placement = WATERMARK_POSITIONS.get(position, WATERMARK_POSITIONS["topRight"])
    return (
        f"drawtext=text='{escaped}':fontcolor=white@0.5:fontsize=24:{placement}"
        ":box=1:boxcolor=black@0.3:boxborderw=5"
    )


def write_key_files(package_dir: Path) -> Path:
    """Random 16-byte AES-128 key plus the keyinfo file FFmpeg reads. Returns the keyinfo path."""
    key_path = package_dir / storage.KEY_FILE
    key_path.write_bytes(os.urandom(16))
    key_info = package_dir / storage.KEY_INFO_FILE
    key_info.write_text(f"{KEY_URI}\n{key_path}\n")
    return key_info


def transcode_to_hls(
    source: Path,
    package_dir: Path,
    key_info: Path | None = None,
    watermark_text: str | None = None,
    watermark_position: str = "topRight",
) -> None:
    """Raises UpstreamToolUnavailable when FFmpeg is missing or fails."""
    settings = get_settings()
    cmd = [
        settings.ffmpeg_path, "-y",
        "-i", str(source),
        "-map", "0:v:0", "-map", "0:a?",
        "-c:v", "libx264", "-preset", "fast", "-crf", "22",
        "-c:a", "aac", "-b:a", "128k",
    ]
    if watermark_text:
        cmd += ["-vf", watermark_filter(watermark_text, watermark_position)]
    cmd += [
        "-start_number", "0",
        "-hls_time", str(settings.hls_segment_seconds),
        "-hls_playlist_type", "vod",
        "-hls_list_size", "0",
        "-hls_segment_filename", str(package_dir / SEGMENT_PATTERN),
    ]
    if key_info is not None:
        cmd += ["-hls_key_info_file", str(key_info)]
    cmd += ["-f", "hls", str(package_dir / storage.HLS_MANIFEST)]
    _run("ffmpeg", cmd, timeout=settings.transcode_timeout_seconds)
    logger.info("HLS conversion completed for %s", source)


def build_passthrough(source: Path, package_dir: Path, duration: float) -> None:
    shutil.copyfile(source, package_dir / storage.PASSTHROUGH_MEDIA)
    (package_dir / storage.HLS_MANIFEST).write_text(
        hls.passthrough_manifest(storage.PASSTHROUGH_MEDIA, duration)
    )


def _clear_media(package_dir: Path) -> None:
    """Drop whatever a failed FFmpeg run left behind, keeping the key."""
    for path in package_dir.iterdir():
        if path.name not in (storage.KEY_FILE, storage.KEY_INFO_FILE):
            path.unlink(missing_ok=True)


def package_video(
    video_id: str,
    source: Path,
    encrypt: bool = True,
    watermark_text: str | None = None,
    watermark_position: str = "topRight",
    thumbnail: bool = True,
) -> PackageResult:
    """Build and publish the package. With thumbnail=False an existing thumbnail is left alone."""
    final = storage.video_package_dir(video_id)
    duration = probe_duration(source)
    staging = storage.staging_dir_for(final)
    try:
        key_info = write_key_files(staging)
        try:
            transcode_to_hls(
                source,
                staging,
                key_info=key_info if encrypt else None,
                watermark_text=watermark_text,
                watermark_position=watermark_position,
            )
            state = PackageState.SEGMENTED
        except UpstreamToolUnavailable as e:
            logger.warning("Transcoding unavailable for video %s, packaging passthrough: %s", video_id, e.reason)
            _clear_media(staging)
            build_passthrough(source, staging, duration)
            state = PackageState.PASSTHROUGH
        key_info.unlink(missing_ok=True)
        storage.publish_directory(staging, final)
    except BaseException:
        storage.discard_directory(staging)
        raise

    thumbnail_path = storage.video_thumbnail_path(video_id)
    if thumbnail:
        has_thumbnail = extract_thumbnail(source, thumbnail_path)
    else:
        has_thumbnail = thumbnail_path.is_file()
    return PackageResult(
        state=state,
        duration=duration,
        encrypted=encrypt and state == PackageState.SEGMENTED,
        has_thumbnail=has_thumbnail,
    )


class TranscodeWorkerPool:
    """
    Runs packaging jobs off the request threads. One job per video at a time;
    submitting a video that is already queued returns the existing future.
    """

    def __init__(
        self,
        session_factory: Callable = SessionLocal,
        max_workers: int | None = None,
        packager: Callable[..., PackageResult] = package_video,
    ):
        self.session_factory = session_factory
        self.packager = packager
        self._executor = ThreadPoolExecutor(
            max_workers=max_workers or get_settings().transcode_workers,
            thread_name_prefix="transcode",
        )
        self._jobs: dict[str, Future] = {}
        self._lock = threading.Lock()

    def submit(self, video_id: str) -> Future:
        with self._lock:
            job = self._jobs.get(video_id)
            if job is not None and not job.done():
                return job
            job = self._executor.submit(self._run, video_id)
            self._jobs[video_id] = job
            return job

    def is_busy(self, video_id: str) -> bool:
        with self._lock:
            job = self._jobs.get(video_id)
            return job is not None and not job.done()

    def shutdown(self, wait: bool = False) -> None:
        self._executor.shutdown(wait=wait, cancel_futures=True)

    def _run(self, video_id: str) -> PackageState:
        db = self.session_factory()
        try:
            video = db.query(Video).filter(Video.id == video_id).first()
            if video is None:
                logger.warning("Video %s disappeared before packaging", video_id)
                return PackageState.FAILED
            source = storage.find_video_original(video_id)
            if source is None:
                logger.error("Original file missing for video %s", video_id)
                video.package_state = PackageState.FAILED.value
                db.commit()
                return PackageState.FAILED
            settings = get_settings()
            try:
                result = self.packager(
                    video_id,
                    source,
                    encrypt=bool(video.encrypt_requested),
                    watermark_text=video.watermark_text,
                    watermark_position=settings.video_watermark_position,
                    thumbnail=not video.custom_thumbnail,
                )
            except Exception:
                logger.exception("Packaging failed for video %s", video_id)
                manifest = storage.video_package_dir(video_id) / storage.HLS_MANIFEST
                if video.is_ready and manifest.is_file():
                    # the previous package was never replaced and keeps serving
                    logger.warning("Video %s keeps its %s package", video_id, video.package_state)
                    return PackageState(video.package_state)
                video.package_state = PackageState.FAILED.value
                db.commit()
                return PackageState.FAILED
            video.package_state = result.state.value
            video.duration_seconds = result.duration
            video.is_encrypted = result.encrypted
            video.has_thumbnail = result.has_thumbnail
            db.commit()
            logger.info("Video %s packaged as %s (%.1fs)", video_id, result.state.value, result.duration)
            return result.state
        finally:
            db.close()
            with self._lock:
                self._jobs.pop(video_id, None)
