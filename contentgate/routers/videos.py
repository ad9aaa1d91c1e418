"""
Video upload (admin), access tokens and package serving.

The player gets a short-lived stream token from /access-token and loads
/package/index.m3u8?token=...; every URL in the served playlist carries the
token again, so <video src> works without headers. The token only names the
caller. Entitlement is re-read on every request, and preview callers receive
a playlist cut at the preview boundary; segments past it are refused.
"""
import logging
import re
from pathlib import Path
from fastapi import APIRouter, Depends, File, Form, HTTPException, Query, Request, UploadFile, status
from fastapi.responses import FileResponse, Response, StreamingResponse
from sqlalchemy.orm import Session
from contentgate.auth import get_current_user_admin, get_optional_user
from contentgate.config import get_settings
from contentgate.database import get_db
from contentgate.dependencies import get_transcode_pool
from contentgate.exceptions import NotFound, SessionTerminated
from contentgate.models.user import User
from contentgate.models.user_session import UserSession
from contentgate.models.video import PackageState, Video
from contentgate.schemas.video import VideoAccessTokenResponse, VideoResponse
from contentgate.services import hls, storage
from contentgate.services.policy import (
    ANONYMOUS,
    CallerContext,
    VideoAccessDecision,
    caller_from_user,
    evaluate_video,
    require_video_access,
    upgrade_for_video,
)
from contentgate.services.preview import PreviewTimeBox, allowed_segments, byte_budget
from contentgate.services.transcoder import TranscodeWorkerPool
from contentgate.services.video_upload import (
    CHUNK_SIZE,
    create_video_stream_token,
    decode_video_stream_token,
    save_thumbnail_upload,
    save_video_upload,
)

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/videos", tags=["videos"])

KEY_NAME = "key"


def _get_video(db: Session, video_id: str) -> Video:
    video = db.query(Video).filter(Video.id == video_id).first()
    if not video:
        raise NotFound("Video not found.")
    return video


def _require_package(video: Video) -> Path:
    package_dir = storage.video_package_dir(video.id)
    if not video.is_ready or storage.published_file(package_dir / storage.HLS_MANIFEST) is None:
        raise NotFound("Video is still being processed.")
    return package_dir


def _package_base_url(request: Request, video_id: str) -> str:
    return f"{str(request.base_url).rstrip('/')}/api/videos/{video_id}/package"


def _media_type_for_filename(filename: str) -> str:
    """Return media type for HLS playlist, segment and passthrough files."""
    lower = filename.lower()
    if lower.endswith(".m3u8"):
        return "application/vnd.apple.mpegurl"
    if lower.endswith(".ts"):
        return "video/MP2T"
    if lower.endswith(".mp4"):
        return "video/mp4"
    return "application/octet-stream"


def _caller_from_stream_token(token: str, video_id: str, db: Session) -> CallerContext:
    payload = decode_video_stream_token(token, video_id)
    if payload is None:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid or expired stream token")
    if not payload.get("sub"):
        return ANONYMOUS
    sid = payload.get("sid")
    if sid:
        login = db.query(UserSession).filter(UserSession.id == sid).first()
        if login is not None and login.is_revoked:
            raise SessionTerminated("Session has been terminated. Please log in again.")
    user = db.query(User).filter(User.id == payload["sub"]).first()
    # entitlement is read now, not from the token
    return caller_from_user(user) if user and user.is_active else ANONYMOUS


def _stream_file_range(path: Path, request: Request, content_type: str, limit: int | None = None):
    """
    Handle Range request for video streaming. Returns Response with 206 or 200.
    With a byte limit, nothing at or past `limit` is served: ranges starting
    there are refused and ranges crossing it are cut.
    """
    file_size = path.stat().st_size
    served_size = file_size if limit is None else min(limit, file_size)
    range_header = request.headers.get("range")
    if not range_header and served_size == file_size:
        def full_stream():
            with open(path, "rb") as f:
                while chunk := f.read(CHUNK_SIZE):
                    yield chunk

        return StreamingResponse(
            full_stream(),
            status_code=200,
            media_type=content_type or "video/mp4",
            headers={
                "Accept-Ranges": "bytes",
                "Content-Length": str(file_size),
                "Content-Disposition": "inline",
            },
        )

    if range_header:
        # Parse Range: bytes=start-end
        m = re.match(r"bytes=(\d*)-(\d*)", range_header.strip())
        if not m:
            return Response(status_code=416, headers={"Content-Range": f"bytes */{file_size}"})
        start_s, end_s = m.groups()
        if not start_s and end_s:
            # suffix range: last N bytes
            start = max(file_size - int(end_s), 0)
            end = file_size - 1
        else:
            start = int(start_s) if start_s else 0
            end = int(end_s) if end_s else file_size - 1
    else:
        start, end = 0, file_size - 1
    if start > end or start >= file_size:
        return Response(status_code=416, headers={"Content-Range": f"bytes */{file_size}"})
    if start >= served_size:
        return None
    end = min(end, served_size - 1)
    length = end - start + 1

    def range_stream():
        with open(path, "rb") as f:
            f.seek(start)
            remaining = length
            while remaining > 0:
                read_size = min(CHUNK_SIZE, remaining)
                data = f.read(read_size)
                if not data:
                    break
                remaining -= len(data)
                yield data

    return StreamingResponse(
        range_stream(),
        status_code=206,
        media_type=content_type or "video/mp4",
        headers={
            "Accept-Ranges": "bytes",
            "Content-Range": f"bytes {start}-{end}/{file_size}",
            "Content-Length": str(length),
            "Content-Disposition": "inline",
            "Cache-Control": "private, no-store",
        },
    )


def _serve_manifest(package_dir: Path, decision: VideoAccessDecision, base_url: str, token: str | None) -> Response:
    text = (package_dir / storage.HLS_MANIFEST).read_text()
    if decision.is_preview:
        text, _ = hls.truncate_manifest(text, decision.max_seconds or 0)
    return Response(
        content=hls.rewrite_manifest(text, base_url, token),
        media_type="application/vnd.apple.mpegurl",
        headers={"Cache-Control": "private, no-store", "X-Content-Type-Options": "nosniff"},
    )


# ---------- Public ----------


@router.get("", response_model=list[VideoResponse])
def list_videos(db: Session = Depends(get_db)):
    return (
        db.query(Video)
        .filter(Video.is_active == True)
        .order_by(Video.created_at.desc())
        .all()
    )


@router.get("/{video_id}/access-token", response_model=VideoAccessTokenResponse)
def get_access_token(
    video_id: str,
    request: Request,
    user: User | None = Depends(get_optional_user),
    db: Session = Depends(get_db),
):
    """
    Issue a stream token and the player configuration. Preview callers get the
    time-box the player must enforce; the server enforces the same bound.
    """
    video = _get_video(db, video_id)
    decision = evaluate_video(video, caller_from_user(user))
    require_video_access(decision)
    _require_package(video)

    session_id = getattr(request.state, "session_id", None)
    token = create_video_stream_token(video.id, user.id if user else None, session_id)
    settings = get_settings()

    player_config = {
        "disableDownload": True,
        "disableContextMenu": True,
        "disablePictureInPicture": True,
        "watermark": video.watermark_text or settings.video_watermark_text or None,
        "watermarkPosition": settings.video_watermark_position,
        "encrypted": bool(video.is_encrypted),
    }
    if decision.is_preview:
        player_config.update(PreviewTimeBox(decision.max_seconds).player_config())
    else:
        player_config.update({"previewDuration": None, "clampSeek": False, "pauseAtLimit": False})

    video.views = (video.views or 0) + 1
    db.commit()

    return VideoAccessTokenResponse(
        token=token,
        streamUrl=f"{_package_base_url(request, video.id)}/{storage.HLS_MANIFEST}?token={token}",
        isPreviewOnly=decision.is_preview,
        previewDuration=decision.max_seconds,
        duration=decision.duration,
        expiresIn=settings.video_stream_token_expire_minutes * 60,
        playerConfig=player_config,
    )


@router.get("/{video_id}/package/{name:path}")
def get_package_file(
    video_id: str,
    name: str,
    request: Request,
    token: str | None = Query(None),
    user: User | None = Depends(get_optional_user),
    db: Session = Depends(get_db),
):
    """Playlist, key, segments, or the passthrough file (Range supported)."""
    video = _get_video(db, video_id)
    caller = _caller_from_stream_token(token, video_id, db) if token else caller_from_user(user)
    decision = evaluate_video(video, caller)
    require_video_access(decision)
    package_dir = _require_package(video)

    if name == storage.HLS_MANIFEST:
        return _serve_manifest(package_dir, decision, _package_base_url(request, video.id), token)

    if name == KEY_NAME:
        key_path = package_dir / storage.KEY_FILE
        if not video.is_encrypted or not key_path.is_file():
            raise NotFound("Video is not encrypted.")
        return Response(
            content=key_path.read_bytes(),
            media_type="application/octet-stream",
            headers={"Cache-Control": "private, no-store"},
        )

    if name in (storage.KEY_FILE, storage.KEY_INFO_FILE):
        raise NotFound("Video file not found.")
    file_path = storage.resolve_inside(package_dir, name)
    if not file_path:
        raise NotFound("Video file not found.")

    if file_path.name == storage.PASSTHROUGH_MEDIA:
        limit = None
        if decision.is_preview:
            limit = byte_budget(file_path.stat().st_size, decision.duration, decision.max_seconds or 0)
        response = _stream_file_range(file_path, request, video.content_type or "video/mp4", limit)
        if response is None:
            raise upgrade_for_video(decision)
        return response

    if decision.is_preview:
        manifest = (package_dir / storage.HLS_MANIFEST).read_text()
        if file_path.name not in allowed_segments(manifest, decision.max_seconds or 0):
            raise upgrade_for_video(decision)
    return FileResponse(
        file_path,
        media_type=_media_type_for_filename(file_path.name),
        headers={"Content-Disposition": "inline", "Cache-Control": "private, max-age=3600"},
    )


@router.get("/{video_id}/thumbnail")
def get_thumbnail(video_id: str, db: Session = Depends(get_db)):
    video = _get_video(db, video_id)
    path = storage.video_thumbnail_path(video.id)
    if not video.is_active or not video.has_thumbnail or not path.is_file():
        raise NotFound("Thumbnail not found.")
    return FileResponse(path, media_type="image/jpeg", headers={"Cache-Control": "public, max-age=86400"})


# ---------- Admin ----------


@router.post("", status_code=status.HTTP_202_ACCEPTED)
def upload_video(
    file: UploadFile = File(...),
    title: str = Form(...),
    description: str | None = Form(None),
    is_premium: bool = Form(False),
    preview_duration: int | None = Form(None),
    encrypt: bool | None = Form(None),
    watermark_text: str | None = Form(None),
    admin: User = Depends(get_current_user_admin),
    db: Session = Depends(get_db),
    pool: TranscodeWorkerPool = Depends(get_transcode_pool),
):
    """
    Admin: upload a video file. Packaging runs in the worker pool; response returns immediately.
    """
    settings = get_settings()
    video = save_video_upload(
        file,
        db,
        title=title.strip(),
        description=description,
        is_premium=is_premium,
        preview_duration=preview_duration,
        encrypt=settings.video_encrypt if encrypt is None else encrypt,
        watermark_text=watermark_text if watermark_text is not None else settings.video_watermark_text,
        uploaded_by=admin.id,
    )
    db.commit()
    db.refresh(video)
    pool.submit(video.id)

    return {
        "id": video.id,
        "message": "Video packaging running in background.",
        "package_state": video.package_state,
    }


@router.post("/{video_id}/reprocess", status_code=status.HTTP_202_ACCEPTED)
def reprocess_video(
    video_id: str,
    _admin: User = Depends(get_current_user_admin),
    db: Session = Depends(get_db),
    pool: TranscodeWorkerPool = Depends(get_transcode_pool),
):
    """Admin: rebuild the package. The current package keeps serving until the new one is published."""
    video = _get_video(db, video_id)
    if storage.find_video_original(video.id) is None:
        raise NotFound("Original video file not found.")
    if video.package_state == PackageState.FAILED.value:
        video.package_state = PackageState.PENDING.value
        db.commit()
    pool.submit(video.id)
    logger.info("Reprocessing video %s", video.id)
    return {"id": video.id, "message": "Video packaging running in background."}


@router.patch("/{video_id}/toggle", response_model=VideoResponse)
def toggle_video(
    video_id: str,
    _admin: User = Depends(get_current_user_admin),
    db: Session = Depends(get_db),
):
    video = _get_video(db, video_id)
    video.is_active = not video.is_active
    db.commit()
    db.refresh(video)
    return video


@router.delete("/{video_id}")
def delete_video(
    video_id: str,
    _admin: User = Depends(get_current_user_admin),
    db: Session = Depends(get_db),
    pool: TranscodeWorkerPool = Depends(get_transcode_pool),
):
    """Admin: remove the video row and everything under storage/videos/{id}."""
    video = _get_video(db, video_id)
    if pool.is_busy(video.id):
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail="Video is being packaged; try again later")
    db.delete(video)
    db.commit()
    storage.discard_directory(storage.video_dir(video_id))
    logger.info("Deleted video %s", video_id)
    return {"message": "Video deleted"}


@router.post("/{video_id}/thumbnail", response_model=VideoResponse)
def upload_thumbnail(
    video_id: str,
    thumbnail: UploadFile = File(...),
    _admin: User = Depends(get_current_user_admin),
    db: Session = Depends(get_db),
):
    """Admin: replace the extracted thumbnail. Reprocessing keeps a custom one."""
    video = _get_video(db, video_id)
    save_thumbnail_upload(thumbnail, video.id)
    video.has_thumbnail = True
    video.custom_thumbnail = True
    db.commit()
    db.refresh(video)
    return video


@router.delete("/{video_id}/thumbnail", response_model=VideoResponse)
def delete_thumbnail(
    video_id: str,
    _admin: User = Depends(get_current_user_admin),
    db: Session = Depends(get_db),
):
    video = _get_video(db, video_id)
    storage.video_thumbnail_path(video.id).unlink(missing_ok=True)
    video.has_thumbnail = False
    video.custom_thumbnail = False
    db.commit()
    db.refresh(video)
    return video
