"""
Violation ledger: append-only Violation rows plus one StrikeCounter per
(user, session, resource). sequence_number is the counter value after the increment.
"""
import enum
from datetime import datetime
from sqlalchemy import Column, String, Boolean, DateTime, Integer, ForeignKey, UniqueConstraint
from contentgate.database import Base


class ViolationKind(str, enum.Enum):
    SCREENSHOT_KEY = "screenshot_key"
    DEVTOOLS_KEY = "devtools_key"
    SAVE_OR_PRINT_KEY = "save_or_print_key"
    DEVTOOLS_WINDOW = "devtools_window"
    VISIBILITY_CYCLING = "visibility_cycling"
    OTHER = "other"


class Violation(Base):
    __tablename__ = "violations"
    __table_args__ = (
        UniqueConstraint("user_id", "session_id", "resource_key", "sequence_number", name="uq_violation_sequence"),
    )

    id = Column(Integer, primary_key=True, autoincrement=True)
    user_id = Column(String(36), ForeignKey("users.id"), nullable=False, index=True)
    session_id = Column(String(36), nullable=False)
    resource_key = Column(String(64), nullable=False)  # "resource:{id}" or "video:{id}"
    kind = Column(String(32), nullable=False)
    sequence_number = Column(Integer, nullable=False)
    occurred_at = Column(DateTime, nullable=False)
    recorded_at = Column(DateTime, nullable=False, default=datetime.utcnow)
    notified = Column(Boolean, nullable=False, default=False)


class StrikeCounter(Base):
    __tablename__ = "strike_counters"

    user_id = Column(String(36), ForeignKey("users.id"), primary_key=True)
    session_id = Column(String(36), primary_key=True)
    resource_key = Column(String(64), primary_key=True)
    strikes = Column(Integer, nullable=False, default=0)
    updated_at = Column(DateTime, nullable=False, default=datetime.utcnow, onupdate=datetime.utcnow)
