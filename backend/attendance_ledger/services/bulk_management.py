"""
Bulk roster management: pattern assignment, class transfer, teacher reassignment.

Reference checks run before any mutation and raise. Each student or
assignment is then processed in its own savepoint; per-item failures are
collected in the result and do not undo siblings.
"""

import logging
from datetime import datetime
from typing import Any, Dict, Iterable, List, Optional, Tuple

from sqlalchemy import select, delete, and_, func
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from attendance_ledger.core.exceptions import LedgerError, AuditWriteError, NotFoundError, ValidationError
from attendance_ledger.models.attendance import AttendanceRecord, AttendanceSummary
from attendance_ledger.models.audit_log import AttendanceAuditLog, AuditAction
from attendance_ledger.models.school import SchoolClass, Subject
from attendance_ledger.models.user import Student, Teacher, StudentEnrollment, TeacherAssignment
from attendance_ledger.schemas.attendance import Actor
from attendance_ledger.schemas.results import BulkOperationResult
from attendance_ledger.services.audit_service import AuditService
from attendance_ledger.services.consistency_service import ConsistencyService
from attendance_ledger.utils.patterns import compile_pattern, matches_everything


logger = logging.getLogger(__name__)

ALREADY_ASSIGNED = "Student already assigned to target class"
NOT_IN_SOURCE_CLASS = "Some students not found or not in the specified source class"
CONFLICTING_RECORD = "Conflicting attendance record in target class"

BULK_ACTIONS = (AuditAction.BULK_ASSIGN, AuditAction.STUDENT_TRANSFER, AuditAction.TEACHER_REASSIGNMENT)


class BulkManagementService:
    """Admin-side bulk operations on the roster."""

    def __init__(self, db: AsyncSession):
        self.db = db
        self.audit = AuditService(db)
        self.consistency = ConsistencyService(db)

    async def find_students_by_pattern(self, pattern: str, school_id: int) -> List[Student]:
        """Students of the school whose university id matches the wildcard pattern."""
        result = await self.db.execute(
            select(Student)
            .where(Student.school_id == school_id)
            .order_by(Student.university_id, Student.roll_num)
        )
        students = list(result.scalars().all())
        if matches_everything(pattern):
            return students

        regex = compile_pattern(pattern)
        return [s for s in students if s.university_id and regex.match(s.university_id)]

    async def assign_by_pattern(
        self,
        pattern: str,
        target_class_id: int,
        subject_ids: Optional[List[int]],
        actor: Actor,
        school_id: int
    ) -> BulkOperationResult:
        """Move every matching student into the target class, optionally replacing enrollments."""
        subject_ids = list(subject_ids or [])
        target_class = await self._get_class(target_class_id, "Target class")
        if target_class.school_id != school_id:
            raise NotFoundError("Target class", class_id=target_class_id, school_id=school_id)
        await self._ensure_subjects(subject_ids)

        students = await self.find_students_by_pattern(pattern, school_id)
        result = BulkOperationResult()
        if not students:
            logger.info(f"No students found matching pattern {pattern!r} in school {school_id}")
            return result

        for student in students:
            student_id, university_id, name = student.id, student.university_id, student.name
            old_class_id = student.class_id

            if old_class_id == target_class_id:
                result.add_failure(
                    ALREADY_ASSIGNED,
                    student_id=student_id, university_id=university_id, name=name, current_class=old_class_id
                )
                continue

            try:
                async with self.db.begin_nested():
                    old_subjects = await self._enrolled_subject_ids(student_id)
                    student.class_id = target_class_id
                    if subject_ids:
                        await self._replace_enrollments(student_id, subject_ids)
                    await self.db.flush()

                    new_subjects = subject_ids or old_subjects
                    audit_warning = await self._audit(
                        AuditAction.BULK_ASSIGN,
                        actor,
                        old_values={'class_id': old_class_id, 'enrolled_subjects': old_subjects},
                        new_values={'class_id': target_class_id, 'enrolled_subjects': new_subjects},
                        reason=f"Bulk assignment using pattern: {pattern}",
                        metadata={'student_id': student_id, 'university_id': university_id, 'pattern': pattern},
                        school_id=school_id
                    )

                    for subject_id in subject_ids:
                        await self.consistency.initialize(student_id, subject_id, target_class_id)

                item = {
                    'student_id': student_id,
                    'university_id': university_id,
                    'name': name,
                    'previous_class': old_class_id,
                    'new_class': target_class_id,
                    'enrolled_subjects': new_subjects
                }
                if audit_warning:
                    item['audit_warning'] = audit_warning
                result.add_success(**item)

            except (LedgerError, SQLAlchemyError) as e:
                logger.warning(f"Bulk assignment failed for student {student_id}: {e}")
                result.add_failure(_reason(e), student_id=student_id, university_id=university_id or "N/A", name=name)

        await self.db.commit()
        logger.info(
            f"Pattern {pattern!r} assignment to class {target_class_id}: "
            f"{result.success_count} assigned, {result.failure_count} failed"
        )
        return result

    async def transfer(
        self,
        student_ids: List[int],
        from_class_id: int,
        to_class_id: int,
        subject_ids: Optional[List[int]],
        migrate_ledger: bool,
        actor: Actor
    ) -> BulkOperationResult:
        """
        Move students between classes.

        Rejected as a whole when any student is missing or not in the source
        class. With migrate_ledger, the students' ledger rows and summaries
        follow them to the new class.
        """
        subject_ids = list(subject_ids or [])
        from_class = await self._get_class(from_class_id, "Source class")
        to_class = await self._get_class(to_class_id, "Target class")
        await self._ensure_subjects(subject_ids)

        requested = list(dict.fromkeys(student_ids))
        rows = await self.db.execute(
            select(Student).where(and_(Student.id.in_(requested), Student.class_id == from_class_id))
        )
        students = {s.id: s for s in rows.scalars().all()}
        missing = [sid for sid in requested if sid not in students]
        if missing:
            raise ValidationError(NOT_IN_SOURCE_CLASS, details={'student_ids': missing, 'from_class_id': from_class_id})

        from_name, to_name = from_class.name, to_class.name
        result = BulkOperationResult()
        touched: List[Tuple[int, int, int]] = []

        for student_id in requested:
            student = students[student_id]
            name, school_id = student.name, student.school_id

            try:
                async with self.db.begin_nested():
                    old_subjects = await self._enrolled_subject_ids(student_id)
                    student.class_id = to_class_id
                    if subject_ids:
                        await self._replace_enrollments(student_id, subject_ids)
                    await self.db.flush()

                    migrated = 0
                    keys: List[Tuple[int, int, int]] = []
                    if migrate_ledger:
                        migrated = await self._migrate_student_ledger(student_id, from_class_id, to_class_id, actor)
                        keys = await self._repoint_summaries(student_id, from_class_id, to_class_id)

                    for subject_id in subject_ids:
                        await self.consistency.initialize(student_id, subject_id, to_class_id)

                    audit_warning = await self._audit(
                        AuditAction.STUDENT_TRANSFER,
                        actor,
                        old_values={'class_id': from_class_id, 'enrolled_subjects': old_subjects},
                        new_values={'class_id': to_class_id, 'enrolled_subjects': subject_ids or old_subjects},
                        reason=f"Student transfer from {from_name} to {to_name}",
                        metadata={'student_id': student_id, 'migrated_attendance_records': migrated},
                        school_id=school_id
                    )

                touched.extend(keys)
                item = {
                    'student_id': student_id,
                    'name': name,
                    'from_class': from_class_id,
                    'to_class': to_class_id,
                    'migrated_records': migrated,
                    'new_subjects': subject_ids
                }
                if audit_warning:
                    item['audit_warning'] = audit_warning
                result.add_success(**item)

            except IntegrityError as e:
                logger.warning(f"Transfer failed for student {student_id}: {e.orig}")
                result.add_failure(CONFLICTING_RECORD, student_id=student_id, name=name)
            except (LedgerError, SQLAlchemyError) as e:
                logger.warning(f"Transfer failed for student {student_id}: {e}")
                result.add_failure(_reason(e), student_id=student_id, name=name)

        await self.db.commit()
        if touched:
            await self.consistency.recompute_keys(touched)
            await self.db.commit()

        logger.info(
            f"Transfer from class {from_class_id} to {to_class_id}: "
            f"{result.success_count} moved, {result.failure_count} failed"
        )
        return result

    async def reassign_teacher(self, teacher_id: int, new_assignments: Iterable, actor: Actor) -> BulkOperationResult:
        """Replace a teacher's subject/class assignments wholesale."""
        teacher = await self.db.get(Teacher, teacher_id)
        if teacher is None:
            raise NotFoundError("Teacher", teacher_id=teacher_id)

        requested = [_assignment_fields(a) for a in new_assignments]
        for subject_id, class_id in requested:
            if await self.db.get(Subject, subject_id) is None:
                raise NotFoundError(f"Subject {subject_id}", subject_id=subject_id)
            if await self.db.get(SchoolClass, class_id) is None:
                raise NotFoundError(f"Class {class_id}", class_id=class_id)

        old_values = {
            'teach_subject_id': teacher.teach_subject_id,
            'teach_class_id': teacher.teach_class_id,
            'assignments': await self._assignment_snapshot(teacher_id)
        }

        await self.db.execute(delete(TeacherAssignment).where(TeacherAssignment.teacher_id == teacher_id))

        result = BulkOperationResult()
        seen = set()
        for subject_id, class_id in requested:
            if (subject_id, class_id) in seen:
                result.add_failure("Duplicate assignment in request", subject_id=subject_id, class_id=class_id)
                continue
            seen.add((subject_id, class_id))
            try:
                async with self.db.begin_nested():
                    self.db.add(TeacherAssignment(teacher_id=teacher_id, subject_id=subject_id, class_id=class_id))
                result.add_success(subject_id=subject_id, class_id=class_id)
            except SQLAlchemyError as e:
                logger.warning(f"Assignment of teacher {teacher_id} to {subject_id}/{class_id} failed: {e}")
                result.add_failure(str(e), subject_id=subject_id, class_id=class_id)

        # Legacy single-assignment fields mirror the set when it has exactly one entry
        if result.success_count == 1:
            only = result.successful[0]
            teacher.teach_subject_id, teacher.teach_class_id = only['subject_id'], only['class_id']
        else:
            teacher.teach_subject_id, teacher.teach_class_id = None, None
        await self.db.flush()

        audit_warning = await self._audit(
            AuditAction.TEACHER_REASSIGNMENT,
            actor,
            old_values=old_values,
            new_values={
                'teach_subject_id': teacher.teach_subject_id,
                'teach_class_id': teacher.teach_class_id,
                'assignments': await self._assignment_snapshot(teacher_id)
            },
            reason="Teacher subject/class reassignment",
            metadata={'teacher_id': teacher_id, 'assignment_count': result.success_count},
            school_id=teacher.school_id
        )
        if audit_warning:
            for item in result.successful:
                item['audit_warning'] = audit_warning

        await self.db.commit()
        logger.info(f"Teacher {teacher_id} reassigned to {result.success_count} subject/class pairs")
        return result

    async def get_bulk_operation_stats(
        self,
        school_id: int,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None
    ) -> Dict[str, Any]:
        """Counts of bulk operations recorded in the audit trail."""
        query = (
            select(AttendanceAuditLog.action, func.count(AttendanceAuditLog.id), func.max(AttendanceAuditLog.performed_at))
            .where(
                and_(
                    AttendanceAuditLog.school_id == school_id,
                    AttendanceAuditLog.action.in_(BULK_ACTIONS)
                )
            )
            .group_by(AttendanceAuditLog.action)
        )
        if start:
            query = query.where(AttendanceAuditLog.performed_at >= start)
        if end:
            query = query.where(AttendanceAuditLog.performed_at <= end)

        stats = {
            'bulk_assignments': 0,
            'student_transfers': 0,
            'teacher_reassignments': 0,
            'total_operations': 0,
            'last_activity': None
        }
        field_names = {
            AuditAction.BULK_ASSIGN: 'bulk_assignments',
            AuditAction.STUDENT_TRANSFER: 'student_transfers',
            AuditAction.TEACHER_REASSIGNMENT: 'teacher_reassignments',
        }

        result = await self.db.execute(query)
        for action, count, last_performed in result.all():
            stats[field_names[action]] = count
            stats['total_operations'] += count
            if last_performed and (stats['last_activity'] is None or last_performed > stats['last_activity']):
                stats['last_activity'] = last_performed
        return stats

    # Private helper methods

    async def _migrate_student_ledger(self, student_id: int, from_class_id: int, to_class_id: int, actor: Actor) -> int:
        """Re-point the student's ledger rows to the new class, auditing each one."""
        result = await self.db.execute(
            select(AttendanceRecord).where(
                and_(AttendanceRecord.student_id == student_id, AttendanceRecord.class_id == from_class_id)
            )
        )
        migrated = 0
        for record in result.scalars().all():
            old_values = record.snapshot()
            record.class_id = to_class_id
            record.last_modified_by_id = actor.id
            record.last_modified_by_kind = actor.kind
            record.last_modified_at = datetime.utcnow()
            await self.db.flush()

            await self._audit(
                AuditAction.MIGRATE_ATTENDANCE,
                actor,
                record_id=record.id,
                old_values=old_values,
                new_values=record.snapshot(),
                reason="Attendance record migration due to student transfer",
                school_id=record.school_id
            )
            migrated += 1
        return migrated

    async def _repoint_summaries(self, student_id: int, from_class_id: int, to_class_id: int) -> List[Tuple[int, int, int]]:
        """Move summary rows to the new class; merge into an existing target row when present."""
        result = await self.db.execute(
            select(AttendanceSummary).where(
                and_(AttendanceSummary.student_id == student_id, AttendanceSummary.class_id == from_class_id)
            )
        )
        keys = []
        for summary in result.scalars().all():
            subject_id = summary.subject_id
            existing = await self.db.execute(
                select(AttendanceSummary.id).where(
                    and_(
                        AttendanceSummary.student_id == student_id,
                        AttendanceSummary.subject_id == subject_id,
                        AttendanceSummary.class_id == to_class_id
                    )
                )
            )
            if existing.first() is not None:
                await self.db.delete(summary)
            else:
                summary.class_id = to_class_id
            keys.append((student_id, subject_id, to_class_id))
        await self.db.flush()
        return keys

    async def _audit(self, action: AuditAction, actor: Actor, **kwargs) -> Optional[str]:
        try:
            await self.audit.record(action, actor, **kwargs)
            return None
        except AuditWriteError as e:
            logger.error(f"Audit entry {action.value} missing: {e.message}")
            return e.message

    async def _get_class(self, class_id: int, label: str) -> SchoolClass:
        school_class = await self.db.get(SchoolClass, class_id)
        if school_class is None:
            raise NotFoundError(label, class_id=class_id)
        return school_class

    async def _ensure_subjects(self, subject_ids: List[int]):
        if not subject_ids:
            return
        result = await self.db.execute(select(Subject.id).where(Subject.id.in_(subject_ids)))
        found = set(result.scalars().all())
        missing = [sid for sid in subject_ids if sid not in found]
        if missing:
            raise NotFoundError("One or more subjects", subject_ids=missing)

    async def _enrolled_subject_ids(self, student_id: int) -> List[int]:
        result = await self.db.execute(
            select(StudentEnrollment.subject_id)
            .where(StudentEnrollment.student_id == student_id)
            .order_by(StudentEnrollment.subject_id)
        )
        return list(result.scalars().all())

    async def _replace_enrollments(self, student_id: int, subject_ids: List[int]):
        await self.db.execute(delete(StudentEnrollment).where(StudentEnrollment.student_id == student_id))
        for subject_id in dict.fromkeys(subject_ids):
            self.db.add(StudentEnrollment(student_id=student_id, subject_id=subject_id))
        await self.db.flush()

    async def _assignment_snapshot(self, teacher_id: int) -> List[Dict[str, int]]:
        result = await self.db.execute(
            select(TeacherAssignment.subject_id, TeacherAssignment.class_id)
            .where(TeacherAssignment.teacher_id == teacher_id)
            .order_by(TeacherAssignment.subject_id, TeacherAssignment.class_id)
        )
        return [{'subject_id': s, 'class_id': c} for s, c in result.all()]


def _assignment_fields(assignment) -> Tuple[int, int]:
    if isinstance(assignment, dict):
        return assignment['subject_id'], assignment['class_id']
    return assignment.subject_id, assignment.class_id


def _reason(error: Exception) -> str:
    if isinstance(error, LedgerError):
        return error.message
    return f"Database error ({type(error).__name__})"
