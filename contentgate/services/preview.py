"""
Preview time-box for premium video watched without entitlement.

PreviewTimeBox is the contract the player follows (seek clamp, pause and
upsell at the bound); it ships to the client in the access-token response.
It is a UX control only. What the server will actually hand out is bounded
by the manifest cut in services.hls.truncate_manifest and by byte_budget for
passthrough files.
"""
import enum
import math
from dataclasses import dataclass

from contentgate.services import hls

# With no known duration, only this share of a passthrough file is served.
UNKNOWN_DURATION_SHARE = 0.1


class PlaybackAction(str, enum.Enum):
    CONTINUE = "continue"
    PAUSE_AND_UPSELL = "pause_and_upsell"


@dataclass(frozen=True)
class PreviewTimeBox:
    limit_seconds: float

    def clamp_seek(self, requested: float) -> float:
        """Seeks past the limit land on the limit."""
        if requested < 0:
            return 0.0
        return min(requested, self.limit_seconds)

    def on_time_update(self, current: float) -> PlaybackAction:
        if current >= self.limit_seconds:
            return PlaybackAction.PAUSE_AND_UPSELL
        return PlaybackAction.CONTINUE

    def player_config(self) -> dict:
        return {
            "previewDuration": self.limit_seconds,
            "clampSeek": True,
            "pauseAtLimit": True,
            "onLimit": PlaybackAction.PAUSE_AND_UPSELL.value,
        }


def byte_budget(file_size: int, duration: float, limit_seconds: float) -> int:
    """
    Bytes of a single-file video a preview caller may fetch. Assumes a roughly
    constant bitrate, rounded up so the last preview second is playable.
    """
    if file_size <= 0:
        return 0
    if duration and duration > 0:
        if limit_seconds >= duration:
            return file_size
        return min(file_size, math.ceil(file_size * limit_seconds / duration))
    return math.ceil(file_size * UNKNOWN_DURATION_SHARE)


def allowed_segments(manifest_text: str, limit_seconds: float) -> set[str]:
    """Media names a preview caller may fetch: those starting before the limit."""
    return hls.truncate_manifest(manifest_text, limit_seconds)[1]
