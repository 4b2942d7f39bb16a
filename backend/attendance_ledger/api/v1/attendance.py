"""
Ledger write and summary read endpoints.
"""
from fastapi import APIRouter, Depends, Query
from sqlalchemy.ext.asyncio import AsyncSession
from typing import Optional, List, Dict, Any
import logging

from attendance_ledger.api.deps import get_actor
from attendance_ledger.core.database import get_db
from attendance_ledger.schemas.attendance import (
    Actor, MarkAttendanceRequest, MarkAttendanceResponse, AttendanceRecordResponse,
    BulkMarkRequest, BulkOperationResponse
)
from attendance_ledger.services.attendance_engine import AttendanceEngine
from attendance_ledger.services.summary_service import SummaryService

logger = logging.getLogger(__name__)

router = APIRouter()


@router.post("/mark", response_model=MarkAttendanceResponse)
async def mark_attendance(
    request: MarkAttendanceRequest,
    db: AsyncSession = Depends(get_db),
    actor: Actor = Depends(get_actor)
):
    """Mark one student for one session. Re-marking the same session updates it."""
    engine = AttendanceEngine(db)
    result = await engine.mark_attendance(
        class_id=request.class_id,
        subject_id=request.subject_id,
        teacher_id=request.teacher_id,
        student_id=request.student_id,
        date=request.date,
        session=request.session,
        status=request.status,
        actor=actor,
        reason=request.reason
    )
    return MarkAttendanceResponse(
        record=AttendanceRecordResponse.model_validate(result.record),
        action=result.action,
        audit_warning=result.audit_warning
    )


@router.post("/bulk", response_model=BulkOperationResponse)
async def bulk_mark_attendance(
    request: BulkMarkRequest,
    db: AsyncSession = Depends(get_db),
    actor: Actor = Depends(get_actor)
):
    engine = AttendanceEngine(db)
    result = await engine.bulk_mark_attendance(
        class_id=request.class_id,
        subject_id=request.subject_id,
        teacher_id=request.teacher_id,
        date=request.date,
        session=request.session,
        student_attendance=[s.model_dump() for s in request.students],
        actor=actor,
        reason=request.reason
    )
    return BulkOperationResponse(**result.to_dict())


@router.delete("/{record_id}")
async def delete_attendance(
    record_id: int,
    reason: Optional[str] = Query(None, max_length=500),
    db: AsyncSession = Depends(get_db),
    actor: Actor = Depends(get_actor)
):
    deleted = await AttendanceEngine(db).delete_attendance(record_id, actor, reason)
    return {"deleted": deleted, "record_id": record_id}


@router.get("/{record_id}/history")
async def get_record_history(
    record_id: int,
    limit: int = Query(50, ge=1, le=500),
    db: AsyncSession = Depends(get_db),
    actor: Actor = Depends(get_actor)
) -> List[Dict[str, Any]]:
    entries = await AttendanceEngine(db).get_record_history(record_id, limit)
    return [entry.to_dict() for entry in entries]


@router.get("/students/{student_id}/summary")
async def get_student_summary(
    student_id: int,
    subject_id: Optional[int] = None,
    class_id: Optional[int] = None,
    db: AsyncSession = Depends(get_db),
    actor: Actor = Depends(get_actor)
):
    return await SummaryService(db).get_student_summary(student_id, subject_id=subject_id, class_id=class_id)


@router.get("/classes/{class_id}/subjects/{subject_id}/summary")
async def get_class_subject_summary(
    class_id: int,
    subject_id: int,
    db: AsyncSession = Depends(get_db),
    actor: Actor = Depends(get_actor)
):
    return await SummaryService(db).get_class_subject_summary(class_id, subject_id)


@router.get("/classes/{class_id}/alerts")
async def get_low_attendance_alerts(
    class_id: int,
    subject_id: Optional[int] = None,
    threshold: Optional[float] = Query(None, ge=0, le=100),
    db: AsyncSession = Depends(get_db),
    actor: Actor = Depends(get_actor)
):
    return await SummaryService(db).get_low_attendance_alerts(class_id, subject_id=subject_id, threshold=threshold)
