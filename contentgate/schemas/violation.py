from datetime import datetime
from typing import Literal
from pydantic import BaseModel, Field, model_validator


class ClientSignal(BaseModel):
    """Raw telemetry from the viewer's protection monitor."""
    event: Literal["keydown", "window_size", "visibility"]
    key: str | None = None
    ctrl: bool = False
    shift: bool = False
    alt: bool = False
    meta: bool = False
    outer_width: int | None = None
    inner_width: int | None = None
    outer_height: int | None = None
    inner_height: int | None = None
    visibility_changes: int | None = None
    window_seconds: float | None = None


class ViolationReport(BaseModel):
    """Either an already classified type or a raw signal for the server to classify."""
    type: str | None = None
    signal: ClientSignal | None = None
    resource_id: str = Field(alias="resourceId")
    resource_kind: Literal["resource", "video"] = Field(default="resource", alias="resourceKind")
    timestamp: datetime | None = None

    model_config = {"populate_by_name": True}

    @model_validator(mode="after")
    def _type_or_signal(self):
        if not self.type and self.signal is None:
            raise ValueError("type or signal is required")
        return self


class ViolationOutcomeResponse(BaseModel):
    recorded: bool
    kind: str | None = None
    sequence_number: int | None = None
    state: str
    strikes: int
    locked: bool
    message: str


class ViolationResponse(BaseModel):
    id: int
    user_id: str
    user_email: str | None = None
    session_id: str
    resource_key: str
    kind: str
    sequence_number: int
    occurred_at: str
    recorded_at: str
    notified: bool
