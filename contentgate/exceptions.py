"""
Domain errors. Routers let these propagate; main.py renders them as
{"error": message, **payload} with the status code of the class.
"""
from typing import Any


class ContentGateError(Exception):
    status_code = 500

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message

    def payload(self) -> dict[str, Any]:
        return {}


class NotFound(ContentGateError):
    """Resource, unit, video or package file missing, inactive or not ready."""
    status_code = 404


class AccessDenied(ContentGateError):
    status_code = 403


class UpgradeRequired(AccessDenied):
    """Beyond the preview boundary. Carries enough for the client to render an upsell."""

    def __init__(
        self,
        message: str,
        *,
        available_units: int | None = None,
        total_units: int | None = None,
        preview_duration: float | None = None,
        duration: float | None = None,
    ):
        super().__init__(message)
        self.available_units = available_units
        self.total_units = total_units
        self.preview_duration = preview_duration
        self.duration = duration

    def payload(self) -> dict[str, Any]:
        body: dict[str, Any] = {"upgradeRequired": True, "isPremiumContent": True}
        if self.available_units is not None:
            body["availableUnits"] = self.available_units
            body["totalUnits"] = self.total_units
            # names used by older clients
            body["availablePages"] = self.available_units
            body["totalPages"] = self.total_units
        if self.preview_duration is not None:
            body["previewDuration"] = self.preview_duration
            body["duration"] = self.duration
        return body


class ConversionFailed(ContentGateError):
    status_code = 502


class UpstreamToolUnavailable(ContentGateError):
    """A native binary is missing or failed. Callers move on to the next method."""
    status_code = 503

    def __init__(self, tool: str, reason: str):
        super().__init__(f"{tool} unavailable: {reason}")
        self.tool = tool
        self.reason = reason


class MalformedSource(ContentGateError):
    status_code = 400


class SessionTerminated(ContentGateError):
    status_code = 401

    def payload(self) -> dict[str, Any]:
        return {"sessionTerminated": True, "reauthenticate": True}
