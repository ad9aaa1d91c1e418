"""Paginated document. Files live under storage/resources/{id}/ (see services.storage)."""
import uuid
from datetime import datetime
from sqlalchemy import Column, String, Boolean, DateTime, Integer, Text, ForeignKey
from contentgate.database import Base


class Resource(Base):
    __tablename__ = "resources"

    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    title = Column(String(255), nullable=False)
    description = Column(Text, nullable=True)
    original_filename = Column(String(255), nullable=True)
    file_size = Column(Integer, nullable=False, default=0)  # bytes of original.pdf
    unit_count = Column(Integer, nullable=False)  # from the document structure, never the client
    is_premium = Column(Boolean, nullable=False, default=False)
    preview_units = Column(Integer, nullable=False, default=0)  # ignored unless is_premium
    is_active = Column(Boolean, nullable=False, default=True)
    uploaded_by = Column(String(36), ForeignKey("users.id"), nullable=True)
    created_at = Column(DateTime, nullable=False, default=datetime.utcnow)
    updated_at = Column(DateTime, nullable=False, default=datetime.utcnow, onupdate=datetime.utcnow)
