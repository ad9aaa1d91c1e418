"""Login session. Access tokens carry its id; a revoked session invalidates every token issued for it."""
import uuid
from datetime import datetime
from sqlalchemy import Column, String, DateTime, ForeignKey
from contentgate.database import Base


class UserSession(Base):
    __tablename__ = "user_sessions"

    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    user_id = Column(String(36), ForeignKey("users.id"), nullable=False, index=True)
    created_at = Column(DateTime, nullable=False, default=datetime.utcnow)
    revoked_at = Column(DateTime, nullable=True)
    revoked_reason = Column(String(100), nullable=True)  # "logout" | "violation_lockout"

    @property
    def is_revoked(self) -> bool:
        return self.revoked_at is not None
