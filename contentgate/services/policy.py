"""
Access decisions: evaluate(resource, caller) -> AccessDecision.

Pure functions without I/O, called on every request. Entitlement is derived
from the caller's account row at request time and never cached, since a
payment can complete between two requests.

Rules, in order:
- inactive -> denied
- anonymous -> preview of a small fixed number of units (separate from the free tier)
- not premium -> full
- premium and entitled -> full
- premium and not entitled -> preview of resource.preview_units
"""
from __future__ import annotations

import enum
import math

from pydantic import BaseModel

from contentgate.config import get_settings
from contentgate.exceptions import NotFound, UpgradeRequired
from contentgate.models.user import PaymentStatus


class AccessLevel(str, enum.Enum):
    FULL = "full"
    PREVIEW = "preview"
    DENIED = "denied"


class CallerContext(BaseModel):
    """Who is asking. Built per request by caller_from_user."""

    user_id: str | None = None
    authenticated: bool = False
    entitled: bool = False

    model_config = {"frozen": True}


ANONYMOUS = CallerContext()


class AccessDecision(BaseModel):
    level: AccessLevel
    max_unit: int | None = None  # set for PREVIEW
    total_units: int = 0

    model_config = {"frozen": True}

    @property
    def is_preview(self) -> bool:
        return self.level == AccessLevel.PREVIEW

    @property
    def available_units(self) -> int:
        if self.level == AccessLevel.FULL:
            return self.total_units
        if self.level == AccessLevel.PREVIEW:
            return self.max_unit or 0
        return 0


class VideoAccessDecision(BaseModel):
    level: AccessLevel
    max_seconds: float | None = None  # set for PREVIEW
    duration: float = 0.0

    model_config = {"frozen": True}

    @property
    def is_preview(self) -> bool:
        return self.level == AccessLevel.PREVIEW


def has_entitlement(user) -> bool:
    """Full access comes from a completed payment on an active account."""
    if user is None:
        return False
    return bool(user.is_active) and user.payment_status == PaymentStatus.COMPLETED.value


def caller_from_user(user) -> CallerContext:
    if user is None:
        return ANONYMOUS
    return CallerContext(user_id=user.id, authenticated=True, entitled=has_entitlement(user))


def _full(resource) -> AccessDecision:
    return AccessDecision(level=AccessLevel.FULL, total_units=resource.unit_count)


def _preview(resource, max_unit: int) -> AccessDecision:
    max_unit = max(0, min(max_unit, resource.unit_count))
    return AccessDecision(level=AccessLevel.PREVIEW, max_unit=max_unit, total_units=resource.unit_count)


def evaluate(resource, caller: CallerContext, anonymous_units: int | None = None) -> AccessDecision:
    if not resource.is_active:
        return AccessDecision(level=AccessLevel.DENIED, total_units=resource.unit_count)

    if not caller.authenticated:
        if anonymous_units is None:
            anonymous_units = get_settings().anonymous_preview_units
        limit = resource.preview_units if resource.is_premium else resource.unit_count
        return _preview(resource, min(anonymous_units, limit))

    if not resource.is_premium:
        return _full(resource)

    if caller.entitled:
        return _full(resource)

    return _preview(resource, resource.preview_units)


def authorize_unit(decision: AccessDecision, unit: int) -> None:
    """
    Raise for units the decision does not cover. Out-of-range and denied both
    read as NotFound; beyond the preview boundary is UpgradeRequired.
    """
    if decision.level == AccessLevel.DENIED:
        raise NotFound("Resource not found or inactive")
    if unit < 1 or unit > decision.total_units:
        raise NotFound(f"Page {unit} does not exist (total pages {decision.total_units})")
    if decision.level == AccessLevel.PREVIEW and unit > (decision.max_unit or 0):
        raise UpgradeRequired(
            f"Access denied. This is a premium resource. You can only view the first "
            f"{decision.max_unit} pages. Please upgrade to access all {decision.total_units} pages.",
            available_units=decision.max_unit,
            total_units=decision.total_units,
        )


# ---------- Video ----------


def preview_seconds_for(video) -> float:
    if video.preview_duration and video.preview_duration > 0:
        return float(video.preview_duration)
    return float(get_settings().default_preview_duration_seconds)


def evaluate_video(video, caller: CallerContext) -> VideoAccessDecision:
    duration = float(video.duration_seconds or 0.0)
    if not video.is_active:
        return VideoAccessDecision(level=AccessLevel.DENIED, duration=duration)
    if not video.is_premium:
        return VideoAccessDecision(level=AccessLevel.FULL, duration=duration)
    if caller.authenticated and caller.entitled:
        return VideoAccessDecision(level=AccessLevel.FULL, duration=duration)
    limit = preview_seconds_for(video)
    if duration and limit >= duration:
        return VideoAccessDecision(level=AccessLevel.FULL, duration=duration)
    return VideoAccessDecision(level=AccessLevel.PREVIEW, max_seconds=limit, duration=duration)


def require_video_access(decision: VideoAccessDecision) -> None:
    if decision.level == AccessLevel.DENIED:
        raise NotFound("Video not found")


def upgrade_for_video(decision: VideoAccessDecision) -> UpgradeRequired:
    return UpgradeRequired(
        f"Preview limited to the first {math.floor(decision.max_seconds or 0)} seconds. "
        "Please upgrade to watch the full video.",
        preview_duration=decision.max_seconds,
        duration=decision.duration,
    )
