"""
Paginated documents: metadata, per-page PDF sources and JPEG renders, and the
admin upload. Every page request re-evaluates access; a page beyond the
caller's preview boundary is answered with 403 and an upgrade payload.
"""
import logging
import uuid
from urllib.parse import quote
from fastapi import APIRouter, Depends, File, Form, HTTPException, UploadFile, status
from fastapi.responses import FileResponse, Response
from sqlalchemy.orm import Session
from contentgate.auth import get_current_user_admin, get_optional_user
from contentgate.config import get_settings
from contentgate.database import get_db
from contentgate.dependencies import get_rasterizer
from contentgate.exceptions import MalformedSource, NotFound, UpgradeRequired
from contentgate.models.resource import Resource
from contentgate.models.user import User
from contentgate.schemas.resource import ConversionReportResponse, ResourceAccessResponse, ResourceResponse, ResourceUpdate
from contentgate.services import paginator, storage
from contentgate.services.policy import ANONYMOUS, AccessDecision, AccessLevel, authorize_unit, caller_from_user, evaluate
from contentgate.services.rasterizer import Rasterizer

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/resources", tags=["resources"])

CHUNK_SIZE = 1024 * 1024


def _get_resource(db: Session, resource_id: str) -> Resource:
    resource = db.query(Resource).filter(Resource.id == resource_id).first()
    if not resource:
        raise NotFound("Resource not found")
    return resource


def _require_ready(resource: Resource) -> None:
    if not storage.is_resource_ready(resource.id, resource.unit_count):
        logger.warning("Resource %s is not ready on disk (expected %d units)", resource.id, resource.unit_count)
        raise NotFound("Resource files are not available.")


def _page_headers(resource: Resource, unit: int) -> dict[str, str]:
    return {
        "X-Page-Number": str(unit),
        "X-Total-Pages": str(resource.unit_count),
        "X-Resource-Title": quote(resource.title or "", safe=""),
        "Cache-Control": "private, max-age=3600",
        "X-Content-Type-Options": "nosniff",
        "X-Frame-Options": "SAMEORIGIN",
        "Content-Disposition": "inline",
    }


def _access_response(resource: Resource, decision: AccessDecision) -> ResourceAccessResponse:
    return ResourceAccessResponse(
        id=resource.id,
        title=resource.title,
        description=resource.description,
        unit_count=resource.unit_count,
        file_size=resource.file_size,
        is_premium=resource.is_premium,
        preview_units=resource.preview_units,
        is_active=resource.is_active,
        created_at=resource.created_at,
        available_units=decision.available_units,
        is_preview_mode=decision.is_preview,
        access_level=decision.level.value,
    )


# ---------- Public ----------


@router.get("", response_model=list[ResourceResponse])
def list_resources(db: Session = Depends(get_db)):
    items = (
        db.query(Resource)
        .filter(Resource.is_active == True)
        .order_by(Resource.created_at.desc())
        .all()
    )
    return items


@router.get("/{resource_id}", response_model=ResourceAccessResponse)
def get_resource(
    resource_id: str,
    user: User | None = Depends(get_optional_user),
    db: Session = Depends(get_db),
):
    resource = _get_resource(db, resource_id)
    decision = evaluate(resource, caller_from_user(user))
    if decision.level == AccessLevel.DENIED:
        raise NotFound("Resource not found")
    _require_ready(resource)
    return _access_response(resource, decision)


@router.get("/{resource_id}/preview", response_model=ResourceAccessResponse)
def get_resource_preview(resource_id: str, db: Session = Depends(get_db)):
    """Anonymous view: always preview mode, capped at the anonymous unit count."""
    resource = _get_resource(db, resource_id)
    decision = evaluate(resource, ANONYMOUS)
    if decision.level == AccessLevel.DENIED:
        raise NotFound("Resource not found")
    _require_ready(resource)
    return _access_response(resource, decision)


@router.get("/{resource_id}/unit/{unit}")
def get_unit(
    resource_id: str,
    unit: int,
    user: User | None = Depends(get_optional_user),
    db: Session = Depends(get_db),
):
    """Single-page PDF source for page `unit`."""
    resource = _get_resource(db, resource_id)
    authorize_unit(evaluate(resource, caller_from_user(user)), unit)
    _require_ready(resource)
    path = paginator.unit_source_path(resource.id, unit)
    if path is None:
        raise NotFound(f"Page {unit} file not found.")
    return FileResponse(path, media_type="application/pdf", headers=_page_headers(resource, unit))


@router.get("/{resource_id}/image/{unit}")
async def get_unit_image(
    resource_id: str,
    unit: int,
    user: User | None = Depends(get_optional_user),
    db: Session = Depends(get_db),
    rasterizer: Rasterizer = Depends(get_rasterizer),
):
    """JPEG of page `unit`, rendered on first request and cached."""
    resource = _get_resource(db, resource_id)
    authorize_unit(evaluate(resource, caller_from_user(user)), unit)
    _require_ready(resource)
    result = await rasterizer.get_page_image(resource, unit)
    headers = _page_headers(resource, unit)
    headers["X-On-Demand-Converted"] = "false" if result.from_cache else "true"
    headers["X-Conversion-Method"] = result.method
    if result.placeholder:
        headers["X-Placeholder"] = "true"
        headers["Cache-Control"] = "no-store"
    return Response(content=result.data, media_type=result.media_type, headers=headers)


@router.get("/{resource_id}/preview-stream")
def get_preview_stream(
    resource_id: str,
    user: User | None = Depends(get_optional_user),
    db: Session = Depends(get_db),
):
    """One PDF of the pages this caller may see."""
    resource = _get_resource(db, resource_id)
    decision = evaluate(resource, caller_from_user(user))
    if decision.level == AccessLevel.DENIED:
        raise NotFound("Resource not found")
    if decision.available_units < 1:
        raise UpgradeRequired(
            "No preview pages are available for this resource.",
            available_units=0,
            total_units=resource.unit_count,
        )
    _require_ready(resource)
    data = paginator.build_preview_document(resource.id, decision.available_units)
    headers = {
        "X-Preview-Pages": str(decision.available_units),
        "X-Total-Pages": str(resource.unit_count),
        "Cache-Control": "private, no-store",
        "X-Content-Type-Options": "nosniff",
        "X-Frame-Options": "SAMEORIGIN",
        "Content-Disposition": "inline",
    }
    return Response(content=data, media_type="application/pdf", headers=headers)


# ---------- Admin ----------


def _read_upload(file: UploadFile) -> bytes:
    max_bytes = get_settings().max_document_upload_mb * 1024 * 1024
    chunks = []
    total = 0
    while chunk := file.file.read(CHUNK_SIZE):
        total += len(chunk)
        if total > max_bytes:
            raise MalformedSource(f"File size exceeds {max_bytes // (1024 * 1024)}MB limit")
        chunks.append(chunk)
    return b"".join(chunks)


@router.post("", response_model=ResourceResponse, status_code=status.HTTP_201_CREATED)
def upload_resource(
    file: UploadFile = File(...),
    title: str = Form(...),
    description: str | None = Form(None),
    is_premium: bool = Form(False),
    preview_units: int = Form(0),
    admin: User = Depends(get_current_user_admin),
    db: Session = Depends(get_db),
):
    """
    Admin: upload a PDF. It is split into one file per page before the row is
    created; the page count comes from the document.
    """
    if not title.strip():
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Title is required")
    if is_premium and preview_units < 1:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Premium resources need at least one preview page",
        )
    data = _read_upload(file)
    resource_id = str(uuid.uuid4())
    result = paginator.paginate(resource_id, data, title.strip())

    preview = min(preview_units, result.unit_count) if is_premium else 0
    if is_premium and preview != preview_units:
        logger.info("Clamped preview pages for %s from %d to %d", resource_id, preview_units, preview)
    resource = Resource(
        id=resource_id,
        title=title.strip(),
        description=(description or "").strip() or None,
        original_filename=file.filename,
        file_size=result.original_size,
        unit_count=result.unit_count,
        is_premium=is_premium,
        preview_units=preview,
        uploaded_by=admin.id,
    )
    db.add(resource)
    try:
        db.commit()
    except Exception:
        db.rollback()
        storage.discard_directory(storage.resource_dir(resource_id))
        raise
    db.refresh(resource)
    logger.info("Resource %s uploaded by %s (%d pages)", resource.id, admin.email, resource.unit_count)
    return resource


@router.patch("/{resource_id}/toggle", response_model=ResourceResponse)
def toggle_resource(
    resource_id: str,
    _admin: User = Depends(get_current_user_admin),
    db: Session = Depends(get_db),
):
    resource = _get_resource(db, resource_id)
    resource.is_active = not resource.is_active
    db.commit()
    db.refresh(resource)
    return resource


@router.patch("/{resource_id}", response_model=ResourceResponse)
def update_resource(
    resource_id: str,
    body: ResourceUpdate,
    _admin: User = Depends(get_current_user_admin),
    db: Session = Depends(get_db),
):
    resource = _get_resource(db, resource_id)
    if "title" in body.model_fields_set:
        title = (body.title or "").strip()
        if not title:
            raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Title is required")
        resource.title = title
    if "description" in body.model_fields_set:
        resource.description = (body.description or "").strip() or None
    db.commit()
    db.refresh(resource)
    return resource


@router.delete("/{resource_id}")
def delete_resource(
    resource_id: str,
    _admin: User = Depends(get_current_user_admin),
    db: Session = Depends(get_db),
):
    """Admin: remove the row, the split pages and the raster cache."""
    resource = _get_resource(db, resource_id)
    db.delete(resource)
    db.commit()
    storage.discard_directory(storage.resource_dir(resource_id))
    logger.info("Deleted resource %s", resource_id)
    return {"message": "Resource deleted"}


@router.post("/{resource_id}/convert-to-images", response_model=ConversionReportResponse)
async def convert_to_images(
    resource_id: str,
    _admin: User = Depends(get_current_user_admin),
    db: Session = Depends(get_db),
    rasterizer: Rasterizer = Depends(get_rasterizer),
):
    """Admin: render every page ahead of time. Pages already cached are skipped."""
    resource = _get_resource(db, resource_id)
    _require_ready(resource)
    report = await rasterizer.convert_all(resource)
    return report.as_dict()
