"""
Read-only views over attendance_summaries.
"""

import logging
from typing import Any, Dict, List, Optional

from sqlalchemy import select, and_, func
from sqlalchemy.ext.asyncio import AsyncSession

from attendance_ledger.core.config import settings
from attendance_ledger.core.exceptions import NotFoundError
from attendance_ledger.models.attendance import AttendanceSummary
from attendance_ledger.models.school import School, SchoolClass, Subject
from attendance_ledger.models.user import Student
from attendance_ledger.services.consistency_service import (
    AggregateCounts, AttendancePolicy, calculate_percentage, percentages_by_policy
)


logger = logging.getLogger(__name__)


class SummaryService:
    """Attendance summaries for students, classes and schools."""

    def __init__(self, db: AsyncSession):
        self.db = db

    async def get_student_summary(
        self,
        student_id: int,
        subject_id: Optional[int] = None,
        class_id: Optional[int] = None
    ) -> List[Dict[str, Any]]:
        """Per-subject summaries for one student, with all three policy percentages."""
        if await self.db.get(Student, student_id) is None:
            raise NotFoundError("Student", student_id=student_id)

        query = (
            select(AttendanceSummary, Subject.name, SchoolClass.name)
            .join(Subject, Subject.id == AttendanceSummary.subject_id)
            .join(SchoolClass, SchoolClass.id == AttendanceSummary.class_id)
            .where(AttendanceSummary.student_id == student_id)
        )
        if subject_id is not None:
            query = query.where(AttendanceSummary.subject_id == subject_id)
        if class_id is not None:
            query = query.where(AttendanceSummary.class_id == class_id)

        result = await self.db.execute(query.order_by(Subject.name))

        summaries = []
        for summary, subject_name, class_name in result.all():
            summaries.append({
                'subject_id': summary.subject_id,
                'subject_name': subject_name,
                'class_id': summary.class_id,
                'class_name': class_name,
                **summary.counts(),
                'attendance_percentage': summary.attendance_percentage,
                'calculated_percentages': percentages_by_policy(_counts_of(summary)),
                'last_updated': summary.last_updated.isoformat() if summary.last_updated else None
            })
        return summaries

    async def get_class_subject_summary(self, class_id: int, subject_id: int) -> Dict[str, Any]:
        """Per-student summaries and class statistics for one class/subject pair."""
        result = await self.db.execute(
            select(AttendanceSummary, Student.name, Student.roll_num, Student.university_id)
            .join(Student, Student.id == AttendanceSummary.student_id)
            .where(
                and_(
                    AttendanceSummary.class_id == class_id,
                    AttendanceSummary.subject_id == subject_id
                )
            )
            .order_by(Student.roll_num)
        )
        rows = result.all()

        per_student = [
            {
                'student_id': summary.student_id,
                'student_name': name,
                'roll_num': roll_num,
                'university_id': university_id,
                **summary.counts(),
                'attendance_percentage': summary.attendance_percentage
            }
            for summary, name, roll_num, university_id in rows
        ]

        return {
            'class_id': class_id,
            'subject_id': subject_id,
            'per_student': per_student,
            'class_statistics': self._class_statistics([s.attendance_percentage for s, *_ in rows]),
            'total_students': len(per_student)
        }

    async def get_low_attendance_alerts(
        self,
        class_id: int,
        subject_id: Optional[int] = None,
        threshold: Optional[float] = None
    ) -> List[Dict[str, Any]]:
        """Students below the threshold with enough sessions to judge, lowest first."""
        threshold = settings.LOW_ATTENDANCE_THRESHOLD if threshold is None else threshold

        query = (
            select(AttendanceSummary, Student.name, Student.roll_num, Subject.name)
            .join(Student, Student.id == AttendanceSummary.student_id)
            .join(Subject, Subject.id == AttendanceSummary.subject_id)
            .where(
                and_(
                    AttendanceSummary.class_id == class_id,
                    AttendanceSummary.attendance_percentage < threshold,
                    AttendanceSummary.total_sessions >= settings.LOW_ATTENDANCE_MIN_SESSIONS
                )
            )
        )
        if subject_id is not None:
            query = query.where(AttendanceSummary.subject_id == subject_id)

        result = await self.db.execute(query.order_by(AttendanceSummary.attendance_percentage.asc()))

        alerts = []
        for summary, student_name, roll_num, subject_name in result.all():
            alerts.append({
                'student_id': summary.student_id,
                'student_name': student_name,
                'roll_num': roll_num,
                'subject_id': summary.subject_id,
                'subject_name': subject_name,
                'attendance_percentage': summary.attendance_percentage,
                'total_sessions': summary.total_sessions,
                'absent_count': summary.absent_count,
                'alert_level': alert_level(summary.attendance_percentage, threshold)
            })
        return alerts

    async def get_school_analytics(self, school_id: int) -> Dict[str, Any]:
        """School-wide totals plus per-class and per-subject breakdowns."""
        if await self.db.get(School, school_id) is None:
            raise NotFoundError("School", school_id=school_id)

        overall = await self._aggregate(school_id)
        classes = await self._aggregate(school_id, AttendanceSummary.class_id, SchoolClass)
        subjects = await self._aggregate(school_id, AttendanceSummary.subject_id, Subject)

        return {
            'school_id': school_id,
            'overall_stats': overall[0] if overall else _empty_stats(),
            'class_breakdown': sorted(classes, key=lambda c: c['average_attendance'], reverse=True),
            'subject_breakdown': sorted(subjects, key=lambda s: s['average_attendance'], reverse=True)
        }

    async def _aggregate(self, school_id: int, group_column=None, name_model=None) -> List[Dict[str, Any]]:
        columns = [
            func.count(AttendanceSummary.id),
            func.coalesce(func.sum(AttendanceSummary.total_sessions), 0),
            func.coalesce(func.sum(AttendanceSummary.present_count), 0),
            func.coalesce(func.sum(AttendanceSummary.absent_count), 0),
            func.coalesce(func.sum(AttendanceSummary.late_count), 0),
            func.coalesce(func.sum(AttendanceSummary.excused_count), 0),
            func.avg(AttendanceSummary.attendance_percentage),
            func.max(AttendanceSummary.attendance_percentage),
            func.min(AttendanceSummary.attendance_percentage),
        ]
        query = select(*columns).where(AttendanceSummary.school_id == school_id)
        if group_column is not None:
            query = (
                select(group_column, name_model.name, *columns)
                .join(name_model, name_model.id == group_column)
                .where(AttendanceSummary.school_id == school_id)
                .group_by(group_column, name_model.name)
            )

        result = await self.db.execute(query)
        breakdown = []
        for row in result.all():
            if group_column is not None:
                group_id, name, *row = row
            students, total, present, absent, late, excused, average, highest, lowest = row
            if not students:
                continue
            counts = AggregateCounts(total, present, absent, late, excused)
            stats = {
                'total_students': students,
                **counts.as_dict(),
                'average_attendance': round(average or 0.0, 2),
                'highest_attendance': highest or 0.0,
                'lowest_attendance': lowest or 0.0,
                'attendance_rate': calculate_percentage(counts, AttendancePolicy.STANDARD)
            }
            if group_column is not None:
                stats = {'id': group_id, 'name': name, **stats}
            breakdown.append(stats)
        return breakdown

    @staticmethod
    def _class_statistics(percentages: List[float]) -> Dict[str, Any]:
        threshold = settings.LOW_ATTENDANCE_THRESHOLD
        if not percentages:
            return {
                'average_attendance': 0.0,
                'highest_attendance': 0.0,
                'lowest_attendance': 0.0,
                'students_above_threshold': 0,
                'students_below_threshold': 0,
                'threshold': threshold
            }

        return {
            'average_attendance': round(sum(percentages) / len(percentages), 2),
            'highest_attendance': max(percentages),
            'lowest_attendance': min(percentages),
            'students_above_threshold': len([p for p in percentages if p >= threshold]),
            'students_below_threshold': len([p for p in percentages if p < threshold]),
            'threshold': threshold
        }


def alert_level(percentage: float, threshold: float) -> str:
    if percentage < threshold * 0.6:
        return "critical"
    if percentage < threshold * 0.8:
        return "warning"
    return "attention"


def _counts_of(summary: AttendanceSummary) -> AggregateCounts:
    return AggregateCounts(**summary.counts())


def _empty_stats() -> Dict[str, Any]:
    return {
        'total_students': 0,
        **AggregateCounts().as_dict(),
        'average_attendance': 0.0,
        'highest_attendance': 0.0,
        'lowest_attendance': 0.0,
        'attendance_rate': 0.0
    }
