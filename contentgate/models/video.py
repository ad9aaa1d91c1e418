"""Uploaded video and its streaming package. Package files live under storage/videos/{id}/package/."""
import uuid
import enum
from datetime import datetime
from sqlalchemy import Column, String, Boolean, DateTime, Integer, Float, Text, ForeignKey
from contentgate.database import Base


class PackageState(str, enum.Enum):
    PENDING = "pending"
    SEGMENTED = "segmented"
    PASSTHROUGH = "passthrough"
    FAILED = "failed"


class Video(Base):
    __tablename__ = "videos"

    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    title = Column(String(255), nullable=False)
    description = Column(Text, nullable=True)
    original_filename = Column(String(255), nullable=True)
    source_format = Column(String(10), nullable=False)  # mp4, mov, ...
    content_type = Column(String(100), nullable=True)
    is_premium = Column(Boolean, nullable=False, default=False)
    preview_duration = Column(Integer, nullable=True)  # seconds, only when premium
    duration_seconds = Column(Float, nullable=False, default=0.0)
    package_state = Column(String(20), nullable=False, default=PackageState.PENDING.value)
    encrypt_requested = Column(Boolean, nullable=False, default=True)
    is_encrypted = Column(Boolean, nullable=False, default=False)  # true only for encrypted segmented packages
    watermark_text = Column(String(100), nullable=True)
    has_thumbnail = Column(Boolean, nullable=False, default=False)
    custom_thumbnail = Column(Boolean, nullable=False, default=False)  # uploaded by an admin, kept on reprocess
    views = Column(Integer, nullable=False, default=0)
    is_active = Column(Boolean, nullable=False, default=True)
    uploaded_by = Column(String(36), ForeignKey("users.id"), nullable=True)
    created_at = Column(DateTime, nullable=False, default=datetime.utcnow)
    updated_at = Column(DateTime, nullable=False, default=datetime.utcnow, onupdate=datetime.utcnow)

    @property
    def is_ready(self) -> bool:
        return self.package_state in (PackageState.SEGMENTED.value, PackageState.PASSTHROUGH.value)
