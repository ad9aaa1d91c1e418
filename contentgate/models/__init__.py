from contentgate.models.user import User, UserRole, PaymentStatus
from contentgate.models.user_session import UserSession
from contentgate.models.resource import Resource
from contentgate.models.video import Video, PackageState
from contentgate.models.violation import Violation, ViolationKind, StrikeCounter

__all__ = [
    "User", "UserRole", "PaymentStatus", "UserSession", "Resource",
    "Video", "PackageState", "Violation", "ViolationKind", "StrikeCounter",
]
