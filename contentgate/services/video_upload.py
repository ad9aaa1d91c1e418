"""Shared helpers for video upload and stream tokens (used by the videos router)."""
import io
import logging
import os
import tempfile
import uuid
from pathlib import Path
from datetime import datetime, timedelta
from fastapi import UploadFile
from jose import JWTError, jwt
from PIL import Image
from sqlalchemy.orm import Session
from contentgate.config import get_settings
from contentgate.exceptions import MalformedSource
from contentgate.models.video import Video
from contentgate.services import storage

logger = logging.getLogger(__name__)

ALLOWED_FORMATS = {
    "mp4": "video/mp4",
    "mov": "video/quicktime",
    "avi": "video/x-msvideo",
    "mkv": "video/x-matroska",
    "webm": "video/webm",
}
CHUNK_SIZE = 1024 * 1024  # 1 MB
THUMBNAIL_TYPES = {"image/jpeg", "image/jpg", "image/png", "image/webp"}
STREAM_TOKEN_TYPE = "video_stream"


def create_video_stream_token(video_id: str, user_id: str | None, session_id: str | None) -> str:
    """
    Short-lived JWT for manifest/segment URLs (no Bearer needed in <video src>).
    It only names the caller; entitlement is re-read on every request.
    """
    settings = get_settings()
    expire = datetime.utcnow() + timedelta(minutes=settings.video_stream_token_expire_minutes)
    payload = {
        "video_id": video_id,
        "sub": user_id,
        "sid": session_id,
        "exp": expire,
        "type": STREAM_TOKEN_TYPE,
    }
    return jwt.encode(payload, settings.secret_key, algorithm=settings.algorithm)


def decode_video_stream_token(token: str, video_id: str) -> dict | None:
    """Payload if the token is valid, unexpired and issued for video_id; otherwise None."""
    settings = get_settings()
    try:
        payload = jwt.decode(token, settings.secret_key, algorithms=[settings.algorithm])
    except JWTError:
        return None
    if payload.get("type") != STREAM_TOKEN_TYPE or payload.get("video_id") != video_id:
        return None
    return payload


def _extension(filename: str | None) -> str:
    return Path(filename or "").suffix.lower().lstrip(".")


def save_video_upload(
    file: UploadFile,
    db: Session,
    *,
    title: str,
    description: str | None = None,
    is_premium: bool = False,
    preview_duration: int | None = None,
    encrypt: bool = True,
    watermark_text: str | None = None,
    uploaded_by: str | None = None,
) -> Video:
    """
    Validate and store the original, then create the Video row in PENDING state.
    Rejected uploads leave nothing on disk. Caller must db.commit().
    """
    ext = _extension(file.filename)
    if ext not in ALLOWED_FORMATS:
        raise MalformedSource(f"Invalid file format. Allowed formats: {', '.join(ALLOWED_FORMATS)}")
    max_bytes = get_settings().max_video_upload_mb * 1024 * 1024

    video_id = str(uuid.uuid4())
    target_dir = storage.video_dir(video_id)
    target_dir.mkdir(parents=True, exist_ok=True)
    fd, tmp_name = tempfile.mkstemp(dir=target_dir, prefix=".upload-")
    written = 0
    try:
        with os.fdopen(fd, "wb") as f:
            while chunk := file.file.read(CHUNK_SIZE):
                written += len(chunk)
                if written > max_bytes:
                    raise MalformedSource(f"File size exceeds {max_bytes // (1024 * 1024)}MB limit")
                f.write(chunk)
        if written == 0:
            raise MalformedSource("Uploaded video is empty.")
        os.replace(tmp_name, storage.video_original_path(video_id, ext))
    except BaseException:
        storage.discard_directory(target_dir)
        raise

    video = Video(
        id=video_id,
        title=title,
        description=(description or "").strip() or None,
        original_filename=file.filename,
        source_format=ext,
        content_type=ALLOWED_FORMATS[ext],
        is_premium=is_premium,
        preview_duration=(preview_duration or get_settings().default_preview_duration_seconds) if is_premium else None,
        encrypt_requested=encrypt,
        watermark_text=(watermark_text or "").strip() or None,
        uploaded_by=uploaded_by,
    )
    db.add(video)
    logger.info("Stored upload for video %s (%d bytes, %s)", video_id, written, ext)
    return video


def save_thumbnail_upload(file: UploadFile, video_id: str) -> Path:
    """
    Store an admin-supplied thumbnail as thumbnail.jpg. JPEG, PNG and WebP are
    accepted and re-encoded; anything Pillow cannot decode is rejected.
    """
    if (file.content_type or "").lower() not in THUMBNAIL_TYPES:
        raise MalformedSource("Invalid file type. Only JPEG, PNG, and WebP are allowed.")
    max_bytes = get_settings().max_thumbnail_upload_mb * 1024 * 1024
    data = file.file.read(max_bytes + 1)
    if not data:
        raise MalformedSource("No thumbnail file provided.")
    if len(data) > max_bytes:
        raise MalformedSource(f"File size too large. Maximum size is {max_bytes // (1024 * 1024)}MB.")
    try:
        with Image.open(io.BytesIO(data)) as img:
            img.load()
            rgb = img.convert("RGB")
    except (OSError, Image.DecompressionBombError) as e:
        raise MalformedSource(f"Thumbnail is not a readable image: {e}")
    buf = io.BytesIO()
    rgb.save(buf, format="JPEG", quality=85)
    path = storage.video_thumbnail_path(video_id)
    storage.atomic_write_bytes(path, buf.getvalue())
    logger.info("Stored custom thumbnail for video %s (%dx%d)", video_id, rgb.width, rgb.height)
    return path
