"""
Consistency service: the only writer of attendance_summaries.

Every aggregate is recomputed from the ledger rows for its
(student, subject, class) key; nothing is incremented in place.
"""

import enum
import logging
from collections import Counter
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal, ROUND_HALF_UP
from typing import Dict, Iterable, List, Optional, Set, Tuple

from sqlalchemy import select, and_, String, type_coerce
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from attendance_ledger.core.exceptions import ConsistencyError, NotFoundError
from attendance_ledger.models.attendance import AttendanceRecord, AttendanceSummary, AttendanceStatus
from attendance_ledger.models.user import Student
from attendance_ledger.schemas.results import RecomputeReport


logger = logging.getLogger(__name__)

AggregateKey = Tuple[int, int, int]  # (student_id, subject_id, class_id)

_TWO_PLACES = Decimal("0.01")


class AttendancePolicy(str, enum.Enum):
    STANDARD = "standard"  # present + excused + half of late
    STRICT = "strict"      # present only
    LENIENT = "lenient"    # present + late + excused


@dataclass(frozen=True)
class AggregateCounts:
    total_sessions: int = 0
    present_count: int = 0
    absent_count: int = 0
    late_count: int = 0
    excused_count: int = 0

    def as_dict(self) -> Dict[str, int]:
        return {
            'total_sessions': self.total_sessions,
            'present_count': self.present_count,
            'absent_count': self.absent_count,
            'late_count': self.late_count,
            'excused_count': self.excused_count,
        }


def derive_counts(statuses: Iterable) -> AggregateCounts:
    """Count statuses. Values outside AttendanceStatus are skipped and do not count toward the total."""
    counter = Counter()
    for raw in statuses:
        value = getattr(raw, "value", raw)
        if value in AttendanceStatus._value2member_map_:
            counter[value] += 1
        else:
            logger.warning(f"Ignoring unknown attendance status {raw!r}")

    present = counter[AttendanceStatus.PRESENT.value]
    absent = counter[AttendanceStatus.ABSENT.value]
    late = counter[AttendanceStatus.LATE.value]
    excused = counter[AttendanceStatus.EXCUSED.value]
    return AggregateCounts(
        total_sessions=present + absent + late + excused,
        present_count=present,
        absent_count=absent,
        late_count=late,
        excused_count=excused,
    )


def calculate_percentage(counts, policy: AttendancePolicy = AttendancePolicy.STANDARD) -> float:
    """Attendance percentage for a set of counts, rounded half-up to two decimals."""
    total = counts.total_sessions
    if not total:
        return 0.0

    if policy == AttendancePolicy.STRICT:
        attended = Decimal(counts.present_count)
    elif policy == AttendancePolicy.LENIENT:
        attended = Decimal(counts.present_count + counts.late_count + counts.excused_count)
    else:
        attended = Decimal(counts.present_count + counts.excused_count) + Decimal(counts.late_count) / 2

    percentage = (attended / Decimal(total) * 100).quantize(_TWO_PLACES, rounding=ROUND_HALF_UP)
    return float(min(max(percentage, Decimal(0)), Decimal(100)))


def percentages_by_policy(counts) -> Dict[str, float]:
    return {policy.value: calculate_percentage(counts, policy) for policy in AttendancePolicy}


class ConsistencyService:
    """Derives attendance_summaries rows from attendance_records."""

    def __init__(self, db: AsyncSession):
        self.db = db

    async def derive_from_ledger(self, student_id: int, subject_id: int, class_id: int) -> AggregateCounts:
        """Counts for one key straight from the ledger, without touching the summary."""
        rows = await self._ledger_rows(student_id, subject_id, class_id)
        return derive_counts(row[0] for row in rows)

    async def recompute(self, student_id: int, subject_id: int, class_id: int) -> AttendanceSummary:
        """
        Rebuild the aggregate for one key from its ledger rows.

        Creates a zeroed row when the key has no events and no aggregate yet.
        Flushes but does not commit.
        """
        rows = await self._ledger_rows(student_id, subject_id, class_id)
        counts = derive_counts(row[0] for row in rows)
        percentage = calculate_percentage(counts)

        summary = await self._get_summary(student_id, subject_id, class_id)
        if summary is None:
            school_id = rows[0][1] if rows else await self._school_for_student(student_id)
            summary = AttendanceSummary(
                student_id=student_id,
                subject_id=subject_id,
                class_id=class_id,
                school_id=school_id
            )
            self.db.add(summary)
        elif summary.counts() == counts.as_dict() and summary.attendance_percentage == percentage:
            return summary

        summary.total_sessions = counts.total_sessions
        summary.present_count = counts.present_count
        summary.absent_count = counts.absent_count
        summary.late_count = counts.late_count
        summary.excused_count = counts.excused_count
        summary.attendance_percentage = percentage
        summary.last_updated = datetime.utcnow()

        await self.db.flush()
        return summary

    async def initialize(self, student_id: int, subject_id: int, class_id: int) -> AttendanceSummary:
        """Return the existing aggregate untouched, or create a zeroed one."""
        summary = await self._get_summary(student_id, subject_id, class_id)
        if summary is not None:
            return summary

        summary = AttendanceSummary(
            student_id=student_id,
            subject_id=subject_id,
            class_id=class_id,
            school_id=await self._school_for_student(student_id),
            total_sessions=0,
            present_count=0,
            absent_count=0,
            late_count=0,
            excused_count=0,
            attendance_percentage=0.0,
            last_updated=datetime.utcnow()
        )
        self.db.add(summary)
        await self.db.flush()
        return summary

    async def recompute_keys(self, keys: Iterable[AggregateKey]) -> RecomputeReport:
        """Recompute each distinct key once. Flushes but does not commit."""
        report = RecomputeReport()
        for key in _unique(keys):
            await self._recompute_isolated(key, report)
        return report

    async def bulk_recompute(self, school_id: int) -> RecomputeReport:
        """Recompute every key with at least one event in the school, then commit."""
        keys = await self._ledger_keys(AttendanceRecord.school_id == school_id)
        report = await self.recompute_keys(keys)
        await self.db.commit()
        logger.info(
            f"Recomputed {report.processed} summaries for school {school_id} "
            f"({report.updated} changed, {report.errors} errors)"
        )
        return report

    async def recompute_for_class_subject(self, class_id: int, subject_id: int) -> RecomputeReport:
        keys = await self._ledger_keys(
            and_(AttendanceRecord.class_id == class_id, AttendanceRecord.subject_id == subject_id)
        )
        report = await self.recompute_keys(keys)
        await self.db.commit()
        logger.info(f"Recomputed {report.processed} summaries for class {class_id} / subject {subject_id}")
        return report

    async def recompute_all(self) -> RecomputeReport:
        """Recompute every key that has events or an aggregate row, then commit."""
        keys = set(await self._ledger_keys())
        result = await self.db.execute(
            select(AttendanceSummary.student_id, AttendanceSummary.subject_id, AttendanceSummary.class_id)
        )
        keys.update(tuple(row) for row in result.all())

        report = await self.recompute_keys(sorted(keys))
        await self.db.commit()
        logger.info(f"Recomputed all {report.processed} summaries ({report.errors} errors)")
        return report

    async def _recompute_isolated(self, key: AggregateKey, report: RecomputeReport):
        student_id, subject_id, class_id = key
        report.processed += 1
        try:
            async with self.db.begin_nested():
                existing = await self._get_summary(student_id, subject_id, class_id)
                before = (existing.counts(), existing.attendance_percentage) if existing else None
                summary = await self.recompute(student_id, subject_id, class_id)
                if before != (summary.counts(), summary.attendance_percentage):
                    report.updated += 1
        except (SQLAlchemyError, ConsistencyError, NotFoundError) as e:
            report.errors += 1
            report.error_details.append({
                'student_id': student_id,
                'subject_id': subject_id,
                'class_id': class_id,
                'error': str(e)
            })
            logger.error(f"Failed to recompute summary for {key}: {e}")

    async def _ledger_rows(self, student_id: int, subject_id: int, class_id: int):
        # Read raw strings so a corrupt status value cannot break the read
        try:
            result = await self.db.execute(
                select(type_coerce(AttendanceRecord.status, String), AttendanceRecord.school_id).where(
                    and_(
                        AttendanceRecord.student_id == student_id,
                        AttendanceRecord.subject_id == subject_id,
                        AttendanceRecord.class_id == class_id
                    )
                )
            )
            return result.all()
        except SQLAlchemyError as e:
            raise ConsistencyError(
                "Failed to read ledger rows for summary",
                details={'student_id': student_id, 'subject_id': subject_id, 'class_id': class_id},
                original_exception=e
            )

    async def _ledger_keys(self, *criteria) -> List[AggregateKey]:
        query = select(
            AttendanceRecord.student_id, AttendanceRecord.subject_id, AttendanceRecord.class_id
        ).distinct()
        if criteria:
            query = query.where(*criteria)
        result = await self.db.execute(query)
        return [tuple(row) for row in result.all()]

    async def _get_summary(self, student_id: int, subject_id: int, class_id: int) -> Optional[AttendanceSummary]:
        result = await self.db.execute(
            select(AttendanceSummary).where(
                and_(
                    AttendanceSummary.student_id == student_id,
                    AttendanceSummary.subject_id == subject_id,
                    AttendanceSummary.class_id == class_id
                )
            )
        )
        return result.scalar_one_or_none()

    async def _school_for_student(self, student_id: int) -> int:
        result = await self.db.execute(select(Student.school_id).where(Student.id == student_id))
        school_id = result.scalar_one_or_none()
        if school_id is None:
            raise NotFoundError("Student", student_id=student_id)
        return school_id


def _unique(keys: Iterable[AggregateKey]) -> List[AggregateKey]:
    seen: Set[AggregateKey] = set()
    ordered = []
    for key in keys:
        key = tuple(key)
        if key not in seen:
            seen.add(key)
            ordered.append(key)
    return ordered
