from datetime import datetime
from pydantic import BaseModel


class ResourceResponse(BaseModel):
    id: str
    title: str
    description: str | None = None
    unit_count: int
    file_size: int
    is_premium: bool
    preview_units: int
    is_active: bool
    created_at: datetime

    class Config:
        from_attributes = True


class ResourceAccessResponse(ResourceResponse):
    """Metadata plus what this caller may open."""
    available_units: int
    is_preview_mode: bool
    access_level: str


class ConversionReportResponse(BaseModel):
    converted: int
    skipped: int
    placeholders: int
    method: str | None = None


class ResourceUpdate(BaseModel):
    """Admin edit of the descriptive fields. The document itself is replaced by a new upload."""
    title: str | None = None
    description: str | None = None
