"""
Integrity checks over the ledger, summaries and roster edges, plus repair.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional

from sqlalchemy import select, delete, exists, and_, or_, func, String, type_coerce
from sqlalchemy.ext.asyncio import AsyncSession

from attendance_ledger.core.config import settings
from attendance_ledger.models.attendance import AttendanceRecord, AttendanceSummary, AttendanceStatus, SessionLabel
from attendance_ledger.models.audit_log import AuditAction
from attendance_ledger.models.school import SchoolClass, Subject, SessionConfiguration
from attendance_ledger.models.user import Student, Teacher, StudentEnrollment, TeacherAssignment
from attendance_ledger.migrations.backup import raw_select, row_to_json
from attendance_ledger.schemas.attendance import Actor
from attendance_ledger.services.audit_service import AuditService
from attendance_ledger.services.consistency_service import ConsistencyService, calculate_percentage


logger = logging.getLogger(__name__)

ERROR = "error"
WARNING = "warning"


@dataclass
class IntegrityIssue:
    """One failed check."""
    check: str
    severity: str
    message: str
    count: int
    ids: List[int] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            'check': self.check,
            'severity': self.severity,
            'message': self.message,
            'count': self.count,
            'ids': self.ids[:50],
        }


@dataclass
class IntegrityReport:
    errors: List[IntegrityIssue] = field(default_factory=list)
    warnings: List[IntegrityIssue] = field(default_factory=list)
    totals: Dict[str, int] = field(default_factory=dict)
    checked_at: datetime = field(default_factory=datetime.utcnow)

    def add(self, issue: IntegrityIssue):
        (self.errors if issue.severity == ERROR else self.warnings).append(issue)

    @property
    def has_errors(self) -> bool:
        return bool(self.errors)

    @property
    def has_warnings(self) -> bool:
        return bool(self.warnings)

    @property
    def error_count(self) -> int:
        return sum(issue.count for issue in self.errors)

    @property
    def warning_count(self) -> int:
        return sum(issue.count for issue in self.warnings)

    def issue(self, check: str) -> Optional[IntegrityIssue]:
        for item in self.errors + self.warnings:
            if item.check == check:
                return item
        return None

    def to_dict(self) -> Dict[str, Any]:
        return {
            'checked_at': self.checked_at.isoformat(),
            'has_errors': self.has_errors,
            'has_warnings': self.has_warnings,
            'error_count': self.error_count,
            'warning_count': self.warning_count,
            'errors': [issue.to_dict() for issue in self.errors],
            'warnings': [issue.to_dict() for issue in self.warnings],
            'totals': self.totals,
        }


class IntegrityValidator:
    """Detects orphans, invalid values, duplicates and summary drift; repairs what it can."""

    def __init__(self, db: AsyncSession, sample_size: Optional[int] = None):
        self.db = db
        self.sample_size = sample_size or settings.VALIDATION_SAMPLE_SIZE
        self.consistency = ConsistencyService(db)

    async def validate(self) -> IntegrityReport:
        report = IntegrityReport()
        report.totals = await self._totals()

        await self._check_ledger_orphans(report)
        await self._check_invalid_values(report)
        await self._check_duplicate_keys(report)
        await self._check_summaries(report)
        await self._check_enrollments(report)
        await self._check_assignments(report)
        await self._check_session_configurations(report)

        logger.info(
            f"Integrity validation: {report.error_count} errors in {len(report.errors)} checks, "
            f"{report.warning_count} warnings"
        )
        return report

    async def fix_integrity_issues(self, actor: Optional[Actor] = None) -> Dict[str, Any]:
        """
        Remove orphaned rows (auditing each), drop duplicate ledger rows keeping
        the most recently marked one, then recompute every summary.
        """
        actor = actor or Actor.system()
        audit = AuditService(self.db)
        fixes = {}

        orphan_ids = await self._orphaned_record_ids()
        fixes['orphaned_records_removed'] = await self._audited_delete(
            audit, actor, AttendanceRecord, orphan_ids, "Removed orphaned attendance record during integrity repair"
        )

        duplicate_ids = await self._duplicate_ids_to_remove()
        fixes['duplicate_records_removed'] = await self._audited_delete(
            audit, actor, AttendanceRecord, duplicate_ids, "Removed duplicate attendance record during integrity repair"
        )

        fixes['orphaned_enrollments_removed'] = await self._audited_delete(
            audit, actor, StudentEnrollment, await self._orphaned_enrollment_ids(),
            "Removed enrollment with missing student or subject"
        )
        fixes['orphaned_assignments_removed'] = await self._audited_delete(
            audit, actor, TeacherAssignment, await self._orphaned_assignment_ids(),
            "Removed teacher assignment with missing teacher, subject or class"
        )

        # Summaries are derived; orphans are dropped without an audit entry
        orphan_summaries = await self._orphaned_summary_ids()
        if orphan_summaries:
            await self.db.execute(delete(AttendanceSummary).where(AttendanceSummary.id.in_(orphan_summaries)))
        fixes['orphaned_summaries_removed'] = len(orphan_summaries)

        await self.db.commit()

        recompute = await self.consistency.recompute_all()
        fixes['summaries_recomputed'] = recompute.processed
        fixes['recompute_errors'] = recompute.error_details
        fixes['fixed_issues'] = (
            fixes['orphaned_records_removed'] + fixes['duplicate_records_removed']
            + fixes['orphaned_enrollments_removed'] + fixes['orphaned_assignments_removed']
            + fixes['orphaned_summaries_removed']
        )

        logger.info(f"Integrity repair completed: {fixes['fixed_issues']} rows fixed, {recompute.processed} summaries recomputed")
        return fixes

    # Checks

    async def _check_ledger_orphans(self, report: IntegrityReport):
        for label, target, column in (
            ("student", Student, AttendanceRecord.student_id),
            ("teacher", Teacher, AttendanceRecord.teacher_id),
            ("subject", Subject, AttendanceRecord.subject_id),
            ("class", SchoolClass, AttendanceRecord.class_id),
        ):
            ids = await self._orphans(AttendanceRecord.id, column, target)
            if ids:
                report.add(IntegrityIssue(
                    f"orphaned_records_{label}", ERROR,
                    f"{len(ids)} attendance records reference a missing {label}", len(ids), ids
                ))

    async def _check_invalid_values(self, report: IntegrityReport):
        for label, column, valid in (
            ("status", AttendanceRecord.status, [s.value for s in AttendanceStatus]),
            ("session", AttendanceRecord.session, [s.value for s in SessionLabel]),
        ):
            raw = type_coerce(column, String)
            result = await self.db.execute(
                select(AttendanceRecord.id).where(or_(raw.is_(None), raw.not_in(valid)))
            )
            ids = list(result.scalars().all())
            if ids:
                report.add(IntegrityIssue(
                    f"invalid_{label}", ERROR, f"{len(ids)} attendance records have an invalid {label}", len(ids), ids
                ))

    async def _check_duplicate_keys(self, report: IntegrityReport):
        ids = await self._duplicate_ids_to_remove()
        if ids:
            report.add(IntegrityIssue(
                "duplicate_records", ERROR, f"{len(ids)} duplicate attendance records", len(ids), ids
            ))

    async def _check_summaries(self, report: IntegrityReport):
        orphans = await self._orphaned_summary_ids()
        if orphans:
            report.add(IntegrityIssue(
                "orphaned_summaries", ERROR,
                f"{len(orphans)} summaries reference a missing student, subject or class", len(orphans), orphans
            ))

        has_events = exists().where(
            and_(
                AttendanceRecord.student_id == AttendanceSummary.student_id,
                AttendanceRecord.subject_id == AttendanceSummary.subject_id,
                AttendanceRecord.class_id == AttendanceSummary.class_id
            )
        )
        result = await self.db.execute(
            select(AttendanceSummary.id).where(and_(AttendanceSummary.total_sessions > 0, ~has_events))
        )
        without_events = list(result.scalars().all())
        if without_events:
            report.add(IntegrityIssue(
                "summaries_without_records", WARNING,
                f"{len(without_events)} summaries count sessions but have no attendance records",
                len(without_events), without_events
            ))

        result = await self.db.execute(
            select(AttendanceSummary).order_by(AttendanceSummary.id).limit(self.sample_size)
        )
        mismatched = []
        for summary in result.scalars().all():
            counts = await self.consistency.derive_from_ledger(summary.student_id, summary.subject_id, summary.class_id)
            if counts.as_dict() != summary.counts() or calculate_percentage(counts) != summary.attendance_percentage:
                mismatched.append(summary.id)
        if mismatched:
            report.add(IntegrityIssue(
                "summary_calculation_errors", ERROR,
                f"{len(mismatched)} sampled summaries do not match their attendance records",
                len(mismatched), mismatched
            ))

    async def _check_enrollments(self, report: IntegrityReport):
        enrolled = exists().where(StudentEnrollment.student_id == Student.id)
        result = await self.db.execute(select(Student.id).where(~enrolled))
        ids = list(result.scalars().all())
        if ids:
            report.add(IntegrityIssue(
                "students_without_enrollments", WARNING, f"{len(ids)} students have no enrollments", len(ids), ids
            ))

        ids = await self._orphaned_enrollment_ids()
        if ids:
            report.add(IntegrityIssue(
                "invalid_enrollments", ERROR,
                f"{len(ids)} enrollments reference a missing student or subject", len(ids), ids
            ))

    async def _check_assignments(self, report: IntegrityReport):
        assigned = exists().where(TeacherAssignment.teacher_id == Teacher.id)
        result = await self.db.execute(select(Teacher.id).where(~assigned))
        ids = list(result.scalars().all())
        if ids:
            report.add(IntegrityIssue(
                "teachers_without_assignments", WARNING, f"{len(ids)} teachers have no assignments", len(ids), ids
            ))

        ids = await self._orphaned_assignment_ids()
        if ids:
            report.add(IntegrityIssue(
                "invalid_assignments", ERROR,
                f"{len(ids)} teacher assignments reference a missing teacher, subject or class", len(ids), ids
            ))

    async def _check_session_configurations(self, report: IntegrityReport):
        ids = set(await self._orphans(SessionConfiguration.id, SessionConfiguration.subject_id, Subject))
        ids.update(await self._orphans(SessionConfiguration.id, SessionConfiguration.class_id, SchoolClass))

        result = await self.db.execute(
            select(SessionConfiguration.id).where(
                or_(
                    SessionConfiguration.sessions_per_week < 1,
                    SessionConfiguration.sessions_per_week > 10,
                    SessionConfiguration.end_date < SessionConfiguration.start_date
                )
            )
        )
        ids.update(result.scalars().all())
        if ids:
            ids = sorted(ids)
            report.add(IntegrityIssue(
                "invalid_session_configurations", ERROR,
                f"{len(ids)} session configurations are invalid", len(ids), ids
            ))

    # Helpers

    async def _totals(self) -> Dict[str, int]:
        totals = {}
        for name, model in (
            ("attendance_records", AttendanceRecord),
            ("attendance_summaries", AttendanceSummary),
            ("students", Student),
            ("teachers", Teacher),
            ("student_enrollments", StudentEnrollment),
            ("teacher_assignments", TeacherAssignment),
        ):
            result = await self.db.execute(select(func.count(model.id)))
            totals[name] = result.scalar()
        return totals

    async def _orphans(self, id_column, fk_column, target) -> List[int]:
        result = await self.db.execute(
            select(id_column)
            .outerjoin(target, fk_column == target.id)
            .where(target.id.is_(None))
            .order_by(id_column)
        )
        return list(result.scalars().all())

    async def _orphaned_record_ids(self) -> List[int]:
        ids = set()
        for target, column in (
            (Student, AttendanceRecord.student_id),
            (Teacher, AttendanceRecord.teacher_id),
            (Subject, AttendanceRecord.subject_id),
            (SchoolClass, AttendanceRecord.class_id),
        ):
            ids.update(await self._orphans(AttendanceRecord.id, column, target))
        return sorted(ids)

    async def _orphaned_summary_ids(self) -> List[int]:
        ids = set()
        for target, column in (
            (Student, AttendanceSummary.student_id),
            (Subject, AttendanceSummary.subject_id),
            (SchoolClass, AttendanceSummary.class_id),
        ):
            ids.update(await self._orphans(AttendanceSummary.id, column, target))
        return sorted(ids)

    async def _orphaned_enrollment_ids(self) -> List[int]:
        ids = set(await self._orphans(StudentEnrollment.id, StudentEnrollment.student_id, Student))
        ids.update(await self._orphans(StudentEnrollment.id, StudentEnrollment.subject_id, Subject))
        return sorted(ids)

    async def _orphaned_assignment_ids(self) -> List[int]:
        ids = set()
        for target, column in (
            (Teacher, TeacherAssignment.teacher_id),
            (Subject, TeacherAssignment.subject_id),
            (SchoolClass, TeacherAssignment.class_id),
        ):
            ids.update(await self._orphans(TeacherAssignment.id, column, target))
        return sorted(ids)

    async def _duplicate_ids_to_remove(self) -> List[int]:
        """Every copy of a duplicated ledger key except the most recently marked one."""
        key = (
            AttendanceRecord.student_id, AttendanceRecord.class_id, AttendanceRecord.subject_id,
            AttendanceRecord.date, type_coerce(AttendanceRecord.session, String)
        )
        groups = await self.db.execute(
            select(*key).group_by(*key).having(func.count(AttendanceRecord.id) > 1)
        )

        to_remove = []
        for student_id, class_id, subject_id, day, session in groups.all():
            result = await self.db.execute(
                select(AttendanceRecord.id)
                .where(
                    and_(
                        AttendanceRecord.student_id == student_id,
                        AttendanceRecord.class_id == class_id,
                        AttendanceRecord.subject_id == subject_id,
                        AttendanceRecord.date == day,
                        type_coerce(AttendanceRecord.session, String) == session
                    )
                )
                .order_by(AttendanceRecord.marked_at.desc(), AttendanceRecord.id.desc())
            )
            to_remove.extend(result.scalars().all()[1:])
        return sorted(to_remove)

    async def _audited_delete(self, audit: AuditService, actor: Actor, model, ids: List[int], reason: str) -> int:
        if not ids:
            return 0

        table = model.__table__
        result = await self.db.execute(raw_select(table, table.c.id.in_(ids)))
        is_ledger = model is AttendanceRecord
        for row in result.all():
            snapshot = row_to_json(row)
            await audit.record(
                AuditAction.DELETE,
                actor,
                record_id=snapshot['id'] if is_ledger else None,
                old_values=snapshot if is_ledger else {'table': table.name, 'row': snapshot},
                new_values=None,
                reason=reason,
                school_id=snapshot.get('school_id')
            )

        await self.db.execute(delete(model).where(model.id.in_(ids)))
        logger.info(f"Removed {len(ids)} rows from {table.name}: {reason}")
        return len(ids)
