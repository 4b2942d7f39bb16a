"""
Legacy-to-ledger transformation.

Students carry their pre-ledger attendance as an embedded JSON list of
``{"subject_id", "present", "absent", "date"}`` entries, one per teaching day.
Each entry becomes two ledger rows ("Lecture 1" and "Lecture 2"); the first
``present`` of them are marked present, the rest absent.
"""

import logging
from datetime import date, datetime
from typing import Any, Dict, List, Optional, Set, Tuple

from sqlalchemy import select, and_
from sqlalchemy.ext.asyncio import AsyncSession

from attendance_ledger.models.attendance import AttendanceRecord, AttendanceStatus, SessionLabel
from attendance_ledger.models.audit_log import AuditAction
from attendance_ledger.models.school import Subject
from attendance_ledger.models.user import Student, Teacher, StudentEnrollment, TeacherAssignment
from attendance_ledger.schemas.attendance import Actor
from attendance_ledger.services.audit_service import AuditService
from attendance_ledger.services.consistency_service import ConsistencyService


logger = logging.getLogger(__name__)

LEGACY_SESSIONS = (SessionLabel.LECTURE_1, SessionLabel.LECTURE_2)


def legacy_statuses(present: int) -> List[Tuple[SessionLabel, AttendanceStatus]]:
    """Session/status pairs for one legacy entry with ``present`` sessions attended."""
    return [
        (session, AttendanceStatus.PRESENT if present > i else AttendanceStatus.ABSENT)
        for i, session in enumerate(LEGACY_SESSIONS)
    ]


def generated_university_id(roll_num: int) -> str:
    return f"STU{roll_num:06d}"


class LegacyTransformer:
    """Moves legacy embedded data into the ledger and roster edge tables. Does not commit."""

    def __init__(self, db: AsyncSession, warn=None):
        self.db = db
        self.actor = Actor.system()
        self.consistency = ConsistencyService(db)
        # Callback receiving each warning message; defaults to logging only
        self._warn = warn or (lambda message: None)
        self._teacher_cache: Dict[Tuple[int, int], Optional[int]] = {}

    async def run(self) -> Dict[str, Any]:
        stats = {}
        stats['assignments'] = await self.normalize_assignments()
        stats['enrollments'] = await self.normalize_enrollments()
        stats['attendance'] = await self.migrate_legacy_attendance()
        stats['summaries'] = await self.initialize_summaries()

        await AuditService(self.db).record(
            AuditAction.MIGRATION,
            self.actor,
            reason="Legacy attendance migrated to ledger",
            metadata=stats
        )
        return stats

    async def normalize_assignments(self) -> Dict[str, int]:
        """Turn legacy single teach_subject/teach_class fields into assignment rows."""
        result = await self.db.execute(
            select(Teacher).where(
                and_(Teacher.teach_subject_id.is_not(None), Teacher.teach_class_id.is_not(None))
            )
        )
        created = 0
        for teacher in result.scalars().all():
            existing = await self.db.execute(
                select(TeacherAssignment.id).where(
                    and_(
                        TeacherAssignment.teacher_id == teacher.id,
                        TeacherAssignment.subject_id == teacher.teach_subject_id,
                        TeacherAssignment.class_id == teacher.teach_class_id
                    )
                )
            )
            if existing.first() is None:
                self.db.add(TeacherAssignment(
                    teacher_id=teacher.id,
                    subject_id=teacher.teach_subject_id,
                    class_id=teacher.teach_class_id
                ))
                created += 1

        await self.db.flush()
        logger.info(f"Created {created} teacher assignments from legacy fields")
        return {'assignments_created': created}

    async def normalize_enrollments(self) -> Dict[str, int]:
        """Enroll unenrolled students in their class's subjects and fill missing university ids."""
        result = await self.db.execute(select(Student).order_by(Student.id))
        students = list(result.scalars().all())

        taken: Set[str] = {s.university_id.upper() for s in students if s.university_id}
        ids_generated = 0
        students_enrolled = 0
        enrollments_created = 0

        for student in students:
            if not student.university_id:
                candidate = generated_university_id(student.roll_num)
                if candidate.upper() in taken:
                    candidate = f"{candidate}-{student.id}"
                    self._warning(f"Generated university id for student {student.id} collided, using {candidate}")
                student.university_id = candidate
                taken.add(candidate.upper())
                ids_generated += 1

            enrolled = await self.db.execute(
                select(StudentEnrollment.id).where(StudentEnrollment.student_id == student.id).limit(1)
            )
            if enrolled.first() is not None:
                continue

            subjects = await self.db.execute(select(Subject.id).where(Subject.class_id == student.class_id))
            subject_ids = list(subjects.scalars().all())
            if not subject_ids:
                continue
            for subject_id in subject_ids:
                self.db.add(StudentEnrollment(student_id=student.id, subject_id=subject_id))
            students_enrolled += 1
            enrollments_created += len(subject_ids)

        await self.db.flush()
        logger.info(f"Enrolled {students_enrolled} students in {enrollments_created} subjects, generated {ids_generated} ids")
        return {
            'students_enrolled': students_enrolled,
            'enrollments_created': enrollments_created,
            'university_ids_generated': ids_generated
        }

    async def migrate_legacy_attendance(self) -> Dict[str, int]:
        result = await self.db.execute(
            select(Student).where(Student.legacy_attendance.is_not(None)).order_by(Student.id)
        )
        stats = {
            'students_processed': 0,
            'records_created': 0,
            'entries_skipped': 0,
            'duplicates_skipped': 0
        }
        marked_at = datetime.utcnow()

        for student in result.scalars().all():
            entries = student.legacy_attendance or []
            seen: Set[Tuple[int, date, SessionLabel]] = set()

            for entry in entries:
                subject_id = entry.get('subject_id')
                day = _parse_date(entry.get('date'))
                if subject_id is None or day is None:
                    self._warning(f"Skipping malformed legacy entry for student {student.id}: {entry}")
                    stats['entries_skipped'] += 1
                    continue
                if not entry.get('present') and not entry.get('absent'):
                    self._warning(
                        f"Skipping empty legacy entry for student {student.id}, subject {subject_id} "
                        f"on {day.isoformat()}"
                    )
                    stats['entries_skipped'] += 1
                    continue

                teacher_id = await self._find_teacher(subject_id, student.class_id)
                if teacher_id is None:
                    self._warning(
                        f"No teacher found for subject {subject_id} in class {student.class_id}, "
                        f"skipping legacy entry of student {student.id} on {day.isoformat()}"
                    )
                    stats['entries_skipped'] += 1
                    continue

                for session, status in legacy_statuses(int(entry.get('present') or 0)):
                    if (subject_id, day, session) in seen or await self._event_exists(student, subject_id, day, session):
                        self._warning(
                            f"Duplicate legacy attendance for student {student.id}, subject {subject_id}, "
                            f"{day.isoformat()} {session.value}"
                        )
                        stats['duplicates_skipped'] += 1
                        continue
                    seen.add((subject_id, day, session))

                    self.db.add(AttendanceRecord(
                        student_id=student.id,
                        class_id=student.class_id,
                        subject_id=subject_id,
                        teacher_id=teacher_id,
                        date=day,
                        session=session,
                        status=status,
                        marked_by_id=self.actor.id,
                        marked_by_kind=self.actor.kind,
                        marked_at=marked_at,
                        school_id=student.school_id
                    ))
                    stats['records_created'] += 1

            student.legacy_attendance = None
            stats['students_processed'] += 1
            await self.db.flush()

        logger.info(
            f"Migrated legacy attendance of {stats['students_processed']} students: "
            f"{stats['records_created']} records, {stats['entries_skipped']} entries skipped"
        )
        return stats

    async def initialize_summaries(self) -> Dict[str, int]:
        """Derive a summary for every ledger key and every enrollment."""
        result = await self.db.execute(
            select(AttendanceRecord.student_id, AttendanceRecord.subject_id, AttendanceRecord.class_id).distinct()
        )
        keys = [tuple(row) for row in result.all()]
        report = await self.consistency.recompute_keys(keys)

        result = await self.db.execute(
            select(StudentEnrollment.student_id, StudentEnrollment.subject_id, Student.class_id)
            .join(Student, Student.id == StudentEnrollment.student_id)
        )
        initialized = 0
        for student_id, subject_id, class_id in result.all():
            if (student_id, subject_id, class_id) not in keys:
                await self.consistency.initialize(student_id, subject_id, class_id)
                initialized += 1

        for error in report.error_details:
            self._warning(f"Summary derivation failed: {error}")

        return {
            'summaries_recomputed': report.processed,
            'summaries_initialized': initialized,
            'summary_errors': report.errors
        }

    async def _find_teacher(self, subject_id: int, class_id: int) -> Optional[int]:
        key = (subject_id, class_id)
        if key in self._teacher_cache:
            return self._teacher_cache[key]

        result = await self.db.execute(
            select(TeacherAssignment.teacher_id)
            .where(and_(TeacherAssignment.subject_id == subject_id, TeacherAssignment.class_id == class_id))
            .order_by(TeacherAssignment.id)
            .limit(1)
        )
        teacher_id = result.scalar_one_or_none()
        if teacher_id is None:
            result = await self.db.execute(
                select(Teacher.id)
                .where(and_(Teacher.teach_subject_id == subject_id, Teacher.teach_class_id == class_id))
                .order_by(Teacher.id)
                .limit(1)
            )
            teacher_id = result.scalar_one_or_none()

        self._teacher_cache[key] = teacher_id
        return teacher_id

    async def _event_exists(self, student: Student, subject_id: int, day: date, session: SessionLabel) -> bool:
        result = await self.db.execute(
            select(AttendanceRecord.id).where(
                and_(
                    AttendanceRecord.student_id == student.id,
                    AttendanceRecord.class_id == student.class_id,
                    AttendanceRecord.subject_id == subject_id,
                    AttendanceRecord.date == day,
                    AttendanceRecord.session == session
                )
            )
        )
        return result.first() is not None

    def _warning(self, message: str):
        logger.warning(message)
        self._warn(message)


def _parse_date(value) -> Optional[date]:
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    if isinstance(value, str):
        try:
            return datetime.fromisoformat(value.replace("Z", "+00:00")).date()
        except ValueError:
            return None
    return None
