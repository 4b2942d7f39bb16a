"""
Admin endpoints: bulk roster management, maintenance and migration status.
"""
from fastapi import APIRouter, Depends
from sqlalchemy.ext.asyncio import AsyncSession
from datetime import datetime
from typing import Optional
import logging

from attendance_ledger.api.deps import get_school_id, require_admin
from attendance_ledger.core.database import get_db
from attendance_ledger.migrations.orchestrator import migration_status
from attendance_ledger.schemas.attendance import (
    Actor, AssignByPatternRequest, TransferRequest, ReassignTeacherRequest, BulkOperationResponse
)
from attendance_ledger.services.audit_service import AuditService
from attendance_ledger.services.bulk_management import BulkManagementService
from attendance_ledger.services.consistency_service import ConsistencyService
from attendance_ledger.services.summary_service import SummaryService

logger = logging.getLogger(__name__)

router = APIRouter()


@router.post("/bulk/assign", response_model=BulkOperationResponse)
async def assign_by_pattern(
    request: AssignByPatternRequest,
    db: AsyncSession = Depends(get_db),
    actor: Actor = Depends(require_admin),
    school_id: int = Depends(get_school_id)
):
    """Assign every student whose university id matches the pattern to a class."""
    result = await BulkManagementService(db).assign_by_pattern(
        request.pattern, request.target_class_id, request.subject_ids, actor, school_id
    )
    return BulkOperationResponse(**result.to_dict())


@router.post("/bulk/transfer", response_model=BulkOperationResponse)
async def transfer_students(
    request: TransferRequest,
    db: AsyncSession = Depends(get_db),
    actor: Actor = Depends(require_admin)
):
    result = await BulkManagementService(db).transfer(
        request.student_ids,
        request.from_class_id,
        request.to_class_id,
        request.subject_ids,
        request.migrate_ledger,
        actor
    )
    return BulkOperationResponse(**result.to_dict())


@router.post("/bulk/reassign-teacher", response_model=BulkOperationResponse)
async def reassign_teacher(
    request: ReassignTeacherRequest,
    db: AsyncSession = Depends(get_db),
    actor: Actor = Depends(require_admin)
):
    result = await BulkManagementService(db).reassign_teacher(request.teacher_id, request.assignments, actor)
    return BulkOperationResponse(**result.to_dict())


@router.get("/bulk/stats")
async def bulk_operation_stats(
    start: Optional[datetime] = None,
    end: Optional[datetime] = None,
    db: AsyncSession = Depends(get_db),
    actor: Actor = Depends(require_admin),
    school_id: int = Depends(get_school_id)
):
    return await BulkManagementService(db).get_bulk_operation_stats(school_id, start, end)


@router.get("/analytics")
async def school_analytics(
    db: AsyncSession = Depends(get_db),
    actor: Actor = Depends(require_admin),
    school_id: int = Depends(get_school_id)
):
    return await SummaryService(db).get_school_analytics(school_id)


@router.post("/summaries/recompute")
async def recompute_summaries(
    db: AsyncSession = Depends(get_db),
    actor: Actor = Depends(require_admin),
    school_id: int = Depends(get_school_id)
):
    """Rebuild every summary of the school from the ledger."""
    report = await ConsistencyService(db).bulk_recompute(school_id)
    return report.to_dict()


@router.get("/audit/verify")
async def verify_audit_chain(
    db: AsyncSession = Depends(get_db),
    actor: Actor = Depends(require_admin)
):
    return await AuditService(db).verify_chain()


@router.get("/migration/status")
async def get_migration_status(
    db: AsyncSession = Depends(get_db),
    actor: Actor = Depends(require_admin)
):
    return await migration_status(db)
