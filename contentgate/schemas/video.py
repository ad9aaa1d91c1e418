from datetime import datetime
from pydantic import BaseModel


class VideoResponse(BaseModel):
    id: str
    title: str
    description: str | None = None
    is_premium: bool
    preview_duration: int | None = None
    duration_seconds: float
    package_state: str
    is_encrypted: bool
    has_thumbnail: bool
    custom_thumbnail: bool = False
    views: int
    is_active: bool
    created_at: datetime

    class Config:
        from_attributes = True


class VideoAccessTokenResponse(BaseModel):
    token: str
    streamUrl: str
    isPreviewOnly: bool
    previewDuration: float | None = None
    duration: float
    expiresIn: int
    playerConfig: dict
