"""
Protection violations reported by the viewer, and the admin review list.
The third strike on one resource within a login session ends that session.
"""
from datetime import timezone
from fastapi import APIRouter, Depends, HTTPException, Query, status
from sqlalchemy.orm import Session
from contentgate.auth import get_current_session_id, get_current_user, get_current_user_admin
from contentgate.database import get_db
from contentgate.dependencies import get_violation_ledger
from contentgate.exceptions import NotFound
from contentgate.models.resource import Resource
from contentgate.models.user import User
from contentgate.models.video import Video
from contentgate.models.violation import Violation
from contentgate.schemas.violation import ViolationOutcomeResponse, ViolationReport, ViolationResponse
from contentgate.services.protection import ProtectionStatus, classify_signal, parse_kind, state_for
from contentgate.services.violations import FILTERS, ViolationLedger, resource_key

router = APIRouter(prefix="/api/violations", tags=["violations"])

MESSAGES = {
    ProtectionStatus.CLEAN: "No violation recorded.",
    ProtectionStatus.WARNED: "Warning {strikes} of {threshold}: screen capture and inspection tools are not allowed.",
    ProtectionStatus.LOCKED: "Session terminated due to repeated protection violations.",
}


def _violation_response(violation: Violation, email: str | None) -> ViolationResponse:
    return ViolationResponse(
        id=violation.id,
        user_id=violation.user_id,
        user_email=email,
        session_id=violation.session_id,
        resource_key=violation.resource_key,
        kind=violation.kind,
        sequence_number=violation.sequence_number,
        occurred_at=violation.occurred_at.isoformat(),
        recorded_at=violation.recorded_at.isoformat(),
        notified=violation.notified,
    )


@router.post("", response_model=ViolationOutcomeResponse)
def report_violation(
    body: ViolationReport,
    user: User = Depends(get_current_user),
    session_id: str = Depends(get_current_session_id),
    db: Session = Depends(get_db),
    ledger: ViolationLedger = Depends(get_violation_ledger),
):
    model = Resource if body.resource_kind == "resource" else Video
    if db.query(model.id).filter(model.id == body.resource_id).first() is None:
        raise NotFound(f"{body.resource_kind.capitalize()} not found")
    key = resource_key(body.resource_kind, body.resource_id)

    kind = classify_signal(body.signal) if body.signal is not None else parse_kind(body.type)
    if kind is None:
        state = state_for(ledger.strikes(db, user.id, session_id, key), ledger.threshold)
        return ViolationOutcomeResponse(
            recorded=False,
            state=state.status.value,
            strikes=state.strikes,
            locked=state.locked,
            message=MESSAGES[ProtectionStatus.CLEAN],
        )

    occurred_at = body.timestamp
    if occurred_at is not None and occurred_at.tzinfo is not None:
        occurred_at = occurred_at.astimezone(timezone.utc).replace(tzinfo=None)
    outcome = ledger.record(
        db,
        user_id=user.id,
        session_id=session_id,
        key=key,
        kind=kind,
        occurred_at=occurred_at,
    )
    return ViolationOutcomeResponse(
        recorded=True,
        kind=kind.value,
        sequence_number=outcome.violation.sequence_number,
        state=outcome.state.status.value,
        strikes=outcome.state.strikes,
        locked=outcome.locked,
        message=MESSAGES[outcome.state.status].format(strikes=outcome.state.strikes, threshold=ledger.threshold),
    )


@router.get("", response_model=list[ViolationResponse])
def list_violations(
    filter: str = Query("all"),
    limit: int = Query(100, ge=1, le=500),
    offset: int = Query(0, ge=0),
    _admin: User = Depends(get_current_user_admin),
    db: Session = Depends(get_db),
    ledger: ViolationLedger = Depends(get_violation_ledger),
):
    """Admin: violations newest first. filter: all | unnotified | critical."""
    if filter not in FILTERS:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=f"filter must be one of: {', '.join(FILTERS)}",
        )
    rows = ledger.query(db, filter, limit=limit, offset=offset)
    return [_violation_response(v, email) for v, email in rows]


@router.patch("/{violation_id}", response_model=ViolationResponse)
def mark_violation_notified(
    violation_id: int,
    _admin: User = Depends(get_current_user_admin),
    db: Session = Depends(get_db),
    ledger: ViolationLedger = Depends(get_violation_ledger),
):
    """Admin: mark as notified. There is no way back to unnotified."""
    if not ledger.mark_notified(db, [violation_id]):
        raise NotFound("Violation not found")
    violation = db.query(Violation).filter(Violation.id == violation_id).first()
    user = db.query(User).filter(User.id == violation.user_id).first()
    return _violation_response(violation, user.email if user else None)
