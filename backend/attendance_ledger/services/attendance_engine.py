"""
Attendance engine: the ledger write path.

Every write is validated, applied as create-or-update on the ledger key
(student, class, subject, date, session), audited, committed, and then the
affected summary is recomputed and committed before the call returns.
"""

import logging
from dataclasses import dataclass
from datetime import date, datetime
from typing import List, Optional, Dict, Any, Tuple

from sqlalchemy import select, and_
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from attendance_ledger.core.exceptions import LedgerError, AuditWriteError, NotFoundError
from attendance_ledger.models.attendance import AttendanceRecord, AttendanceStatus, SessionLabel
from attendance_ledger.models.audit_log import AttendanceAuditLog, AuditAction
from attendance_ledger.schemas.attendance import Actor
from attendance_ledger.schemas.results import MarkResult, BulkOperationResult
from attendance_ledger.services.audit_service import AuditService
from attendance_ledger.services.consistency_service import ConsistencyService
from attendance_ledger.services.validation_service import (
    AttendanceValidator, parse_status, parse_session, validate_date, validate_static
)


logger = logging.getLogger(__name__)


@dataclass
class MarkContext:
    """Fields shared by every entry of one marking call."""
    class_id: int
    subject_id: int
    teacher_id: int
    date: date
    session: SessionLabel
    school_id: int


class AttendanceEngine:
    """Core ledger write path."""

    def __init__(self, db: AsyncSession):
        self.db = db
        self.validator = AttendanceValidator(db)
        self.audit = AuditService(db)
        self.consistency = ConsistencyService(db)

    async def mark_attendance(
        self,
        class_id: int,
        subject_id: int,
        teacher_id: int,
        student_id: int,
        date: date,
        session,
        status,
        actor: Optional[Actor] = None,
        reason: Optional[str] = None
    ) -> MarkResult:
        """Record one student's status for a session; re-marking updates in place."""
        status, session, day = validate_static(status, session, date)
        actor = actor or Actor.teacher(teacher_id)

        context = await self._build_context(actor, class_id, subject_id, teacher_id, day, session)
        await self.validator.ensure_student_enrolled(student_id, class_id, subject_id)

        try:
            record, action, audit_warning = await self._write_event(context, student_id, status, actor, reason)
            await self.db.commit()
        except Exception:
            await self.db.rollback()
            raise

        await self._recompute_and_commit([record.aggregate_key])

        logger.info(
            f"Attendance {action} for student {student_id}, class {class_id}, subject {subject_id}, "
            f"{day.isoformat()} {session.value}: {status.value}"
        )
        return MarkResult(record=record, action=action, audit_warning=audit_warning)

    async def bulk_mark_attendance(
        self,
        class_id: int,
        subject_id: int,
        teacher_id: int,
        date: date,
        session,
        student_attendance: List[Dict[str, Any]],
        actor: Optional[Actor] = None,
        reason: Optional[str] = None
    ) -> BulkOperationResult:
        """
        Mark many students for one session.

        The shared context is validated once and errors there are raised.
        Per-student errors are collected in the result; siblings still apply.
        """
        session = parse_session(session)
        day = validate_date(date)
        actor = actor or Actor.teacher(teacher_id)
        context = await self._build_context(actor, class_id, subject_id, teacher_id, day, session)

        result = BulkOperationResult()
        touched = []

        for entry in student_attendance:
            student_id = entry.get('student_id')
            raw_status = entry.get('status')
            try:
                status = parse_status(raw_status)
                async with self.db.begin_nested():
                    await self.validator.ensure_student_enrolled(student_id, class_id, subject_id)
                    record, action, audit_warning = await self._write_event(
                        context, student_id, status, actor, reason
                    )
                touched.append((student_id, subject_id, class_id))
                item = {'student_id': student_id, 'status': status.value, 'action': action, 'record_id': record.id}
                if audit_warning:
                    item['audit_warning'] = audit_warning
                result.add_success(**item)
            except (LedgerError, SQLAlchemyError) as e:
                reason_text = e.message if isinstance(e, LedgerError) else str(e)
                logger.warning(f"Bulk mark failed for student {student_id}: {reason_text}")
                result.add_failure(reason_text, student_id=student_id, status=raw_status)

        await self.db.commit()
        await self._recompute_and_commit(touched)

        logger.info(
            f"Bulk attendance for class {class_id}, subject {subject_id}, {day.isoformat()} {session.value}: "
            f"{result.success_count} succeeded, {result.failure_count} failed"
        )
        return result

    async def update_attendance(
        self,
        record_id: int,
        status,
        actor: Actor,
        reason: Optional[str] = None
    ) -> MarkResult:
        """Change the status of an existing ledger entry by id."""
        status = parse_status(status)
        record = await self._get_record(record_id)
        await self.validator.ensure_teacher_authorized(
            actor, self._acting_teacher_id(actor, record), record.class_id, record.subject_id
        )

        changed = record.status != status
        try:
            old_values = record.snapshot()
            self._apply_update(record, status, actor)
            await self.db.flush()
            audit_warning = await self._audit(
                AuditAction.UPDATE, actor, record, old_values, record.snapshot(), reason
            )
            await self.db.commit()
        except Exception:
            await self.db.rollback()
            raise

        if changed:
            await self._recompute_and_commit([record.aggregate_key])
        return MarkResult(record=record, action=AuditAction.UPDATE.value, audit_warning=audit_warning)

    async def delete_attendance(self, record_id: int, actor: Actor, reason: Optional[str] = None) -> bool:
        """Audit and remove a ledger entry, then recompute its summary."""
        record = await self._get_record(record_id)
        await self.validator.ensure_teacher_authorized(
            actor, self._acting_teacher_id(actor, record), record.class_id, record.subject_id
        )

        key = record.aggregate_key
        try:
            audit_warning = await self._audit(AuditAction.DELETE, actor, record, record.snapshot(), None, reason)
            await self.db.delete(record)
            await self.db.commit()
        except Exception:
            await self.db.rollback()
            raise

        if audit_warning:
            logger.error(f"Attendance record {record_id} deleted without audit entry: {audit_warning}")

        await self._recompute_and_commit([key])
        logger.info(f"Attendance record {record_id} deleted by {actor.kind.value} {actor.id}")
        return True

    async def get_record_history(self, record_id: int, limit: int = 50) -> List[AttendanceAuditLog]:
        return await self.audit.get_record_history(record_id, limit)

    async def get_session_attendance(self, class_id: int, subject_id: int, date: date, session) -> List[AttendanceRecord]:
        """Ledger entries for one class session."""
        session = parse_session(session)
        result = await self.db.execute(
            select(AttendanceRecord).where(
                and_(
                    AttendanceRecord.class_id == class_id,
                    AttendanceRecord.subject_id == subject_id,
                    AttendanceRecord.date == date,
                    AttendanceRecord.session == session
                )
            ).order_by(AttendanceRecord.student_id)
        )
        return list(result.scalars().all())

    # Private helper methods

    async def _build_context(
        self, actor: Actor, class_id: int, subject_id: int, teacher_id: int, day: date, session: SessionLabel
    ) -> MarkContext:
        school_class, _ = await self.validator.get_class_and_subject(class_id, subject_id)
        await self.validator.ensure_teacher_authorized(actor, teacher_id, class_id, subject_id)
        await self.validator.ensure_session_allowed(session, class_id, subject_id, day)
        return MarkContext(
            class_id=class_id,
            subject_id=subject_id,
            teacher_id=teacher_id,
            date=day,
            session=session,
            school_id=school_class.school_id
        )

    async def _write_event(
        self,
        context: MarkContext,
        student_id: int,
        status: AttendanceStatus,
        actor: Actor,
        reason: Optional[str]
    ) -> Tuple[AttendanceRecord, str, Optional[str]]:
        """Create-or-update on the ledger key plus its audit entry. Does not commit."""
        record = await self._find_event(context, student_id)

        if record is None:
            try:
                async with self.db.begin_nested():
                    record = AttendanceRecord(
                        student_id=student_id,
                        class_id=context.class_id,
                        subject_id=context.subject_id,
                        teacher_id=context.teacher_id,
                        date=context.date,
                        session=context.session,
                        status=status,
                        marked_by_id=actor.id,
                        marked_by_kind=actor.kind,
                        marked_at=datetime.utcnow(),
                        school_id=context.school_id
                    )
                    self.db.add(record)
            except IntegrityError:
                # Another writer inserted the same key first; apply ours as an update
                logger.info(f"Concurrent insert for student {student_id} on {context.date}, retrying as update")
                record = await self._find_event(context, student_id)
                if record is None:
                    raise
            else:
                audit_warning = await self._audit(AuditAction.CREATE, actor, record, None, record.snapshot(), reason)
                return record, AuditAction.CREATE.value, audit_warning

        old_values = record.snapshot()
        self._apply_update(record, status, actor)
        record.teacher_id = context.teacher_id
        await self.db.flush()
        audit_warning = await self._audit(AuditAction.UPDATE, actor, record, old_values, record.snapshot(), reason)
        return record, AuditAction.UPDATE.value, audit_warning

    async def _audit(
        self,
        action: AuditAction,
        actor: Actor,
        record: AttendanceRecord,
        old_values: Optional[Dict[str, Any]],
        new_values: Optional[Dict[str, Any]],
        reason: Optional[str]
    ) -> Optional[str]:
        """Write the audit entry; return a warning instead of failing the ledger write."""
        try:
            await self.audit.record(
                action,
                actor,
                record_id=record.id,
                old_values=old_values,
                new_values=new_values,
                reason=reason,
                school_id=record.school_id
            )
            return None
        except AuditWriteError as e:
            logger.error(f"Audit entry missing for attendance record {record.id}: {e.message}")
            return e.message

    async def _recompute_and_commit(self, keys):
        try:
            report = await self.consistency.recompute_keys(keys)
            await self.db.commit()
        except Exception:
            await self.db.rollback()
            raise
        for error in report.error_details:
            logger.error(f"Summary left stale after ledger write: {error}")

    async def _find_event(self, context: MarkContext, student_id: int) -> Optional[AttendanceRecord]:
        result = await self.db.execute(
            select(AttendanceRecord).where(
                and_(
                    AttendanceRecord.student_id == student_id,
                    AttendanceRecord.class_id == context.class_id,
                    AttendanceRecord.subject_id == context.subject_id,
                    AttendanceRecord.date == context.date,
                    AttendanceRecord.session == context.session
                )
            )
        )
        return result.scalar_one_or_none()

    async def _get_record(self, record_id: int) -> AttendanceRecord:
        record = await self.db.get(AttendanceRecord, record_id)
        if record is None:
            raise NotFoundError("Attendance record", record_id=record_id)
        return record

    @staticmethod
    def _acting_teacher_id(actor: Actor, record: AttendanceRecord) -> int:
        return record.teacher_id if actor.bypasses_assignment_check else actor.id

    @staticmethod
    def _apply_update(record: AttendanceRecord, status: AttendanceStatus, actor: Actor):
        record.status = status
        record.last_modified_by_id = actor.id
        record.last_modified_by_kind = actor.kind
        record.last_modified_at = datetime.utcnow()
