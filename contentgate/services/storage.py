"""
On-disk layout for documents and videos.

    resources/{id}/original.pdf
    resources/{id}/unit_{n:04d}.pdf
    resources/{id}/cache/page-{n:04d}.jpg
    resources/{id}/manifest.json          readiness marker, {"unit_count": N}
    videos/{id}/original.{ext}
    videos/{id}/thumbnail.jpg
    videos/{id}/package/index.m3u8, segment000.ts | video.mp4, encryption.key

New files are always written in the canonical form. Readers probe an ordered
list of candidates so files left by older naming schemes are still found.
"""
import json
import logging
import os
import shutil
import tempfile
import time
import uuid
from pathlib import Path

from contentgate.config import get_settings

logger = logging.getLogger(__name__)

ORIGINAL_PDF = "original.pdf"
RESOURCE_MANIFEST = "manifest.json"
CACHE_DIR = "cache"
PACKAGE_DIR = "package"
HLS_MANIFEST = "index.m3u8"
PASSTHROUGH_MEDIA = "video.mp4"
KEY_FILE = "encryption.key"
KEY_INFO_FILE = "encryption.keyinfo"
THUMBNAIL = "thumbnail.jpg"
SWAP_RETRY_SECONDS = 0.05


def storage_root() -> Path:
    return get_settings().storage_root()


# ---------- Documents ----------


def resource_dir(resource_id: str) -> Path:
    return storage_root() / "resources" / resource_id


def original_pdf_path(resource_id: str) -> Path:
    return resource_dir(resource_id) / ORIGINAL_PDF


def unit_filename(unit: int) -> str:
    return f"unit_{unit:04d}.pdf"


def unit_source_candidates(resource_id: str, unit: int) -> list[Path]:
    base = resource_dir(resource_id)
    return [base / unit_filename(unit), base / f"page_{unit}.pdf"]


def raster_cache_path(resource_id: str, unit: int) -> Path:
    return resource_dir(resource_id) / CACHE_DIR / f"page-{unit:04d}.jpg"


def raster_candidates(resource_id: str, unit: int) -> list[Path]:
    base = resource_dir(resource_id)
    return [
        raster_cache_path(resource_id, unit),
        base / "images" / f"page-{unit:04d}.jpg",
        base / "images" / f"page_{unit}.jpg",
        base / CACHE_DIR / f"page_{unit}.jpg",
    ]


def first_existing(candidates: list[Path]) -> Path | None:
    for path in candidates:
        if path.is_file():
            return path
    return None


def read_resource_manifest(resource_id: str) -> dict | None:
    path = resource_dir(resource_id) / RESOURCE_MANIFEST
    try:
        return json.loads(path.read_text())
    except (OSError, ValueError):
        return None


def is_resource_ready(resource_id: str, declared_units: int) -> bool:
    """
    A resource directory is servable only when its manifest matches the declared
    unit count and every unit source is on disk.
    """
    manifest = read_resource_manifest(resource_id)
    if not manifest or manifest.get("unit_count") != declared_units:
        return False
    for unit in range(1, declared_units + 1):
        if first_existing(unit_source_candidates(resource_id, unit)) is None:
            return False
    return True


# ---------- Video ----------


def video_dir(video_id: str) -> Path:
    return storage_root() / "videos" / video_id


def video_package_dir(video_id: str) -> Path:
    return video_dir(video_id) / PACKAGE_DIR


def video_original_path(video_id: str, ext: str) -> Path:
    return video_dir(video_id) / f"original.{ext}"


def find_video_original(video_id: str) -> Path | None:
    base = video_dir(video_id)
    if not base.is_dir():
        return None
    for path in sorted(base.glob("original.*")):
        if path.is_file():
            return path
    return None


def video_thumbnail_path(video_id: str) -> Path:
    return video_dir(video_id) / THUMBNAIL


# ---------- Writes ----------


def atomic_write_bytes(path: Path, data: bytes) -> None:
    """Write to a temp file next to path and rename it into place. Readers never see a torn file."""
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp_name = tempfile.mkstemp(dir=path.parent, prefix=f".{path.name}.", suffix=".tmp")
    try:
        with os.fdopen(fd, "wb") as f:
            f.write(data)
            f.flush()
            os.fsync(f.fileno())
        os.replace(tmp_name, path)
    except BaseException:
        try:
            os.unlink(tmp_name)
        except FileNotFoundError:
            pass
        raise


def staging_dir_for(final: Path) -> Path:
    """Sibling directory for building final's next version."""
    final.parent.mkdir(parents=True, exist_ok=True)
    staging = final.parent / f".{final.name}.staging-{uuid.uuid4().hex[:8]}"
    staging.mkdir()
    return staging


def publish_directory(staging: Path, final: Path) -> None:
    """
    Move a fully built staging directory to final. An existing final is moved
    aside first and removed after the swap.
    """
    retired = None
    if final.exists():
        retired = final.parent / f".{final.name}.retired-{uuid.uuid4().hex[:8]}"
        os.replace(final, retired)
    os.replace(staging, final)
    if retired is not None:
        shutil.rmtree(retired, ignore_errors=True)
    logger.info("Published %s", final)


def discard_directory(path: Path) -> None:
    shutil.rmtree(path, ignore_errors=True)


# ---------- Reads ----------


def published_file(path: Path, retries: int = 2) -> Path | None:
    """
    path if it is a file. publish_directory leaves final missing for the span
    of two renames, so a miss is rechecked before giving up.
    """
    for attempt in range(retries + 1):
        if path.is_file():
            return path
        if attempt < retries:
            time.sleep(SWAP_RETRY_SECONDS)
    return None


def resolve_inside(base: Path, relative_path: str) -> Path | None:
    """Resolve relative_path under base. None if it escapes base or is not a file."""
    base = base.resolve()
    if not base.is_dir():
        return None
    try:
        full = (base / relative_path).resolve()
        full.relative_to(base)  # raises ValueError if path escaped
    except (ValueError, OSError):
        return None
    if not full.is_file():
        return None
    return full
