"""
Input checks for ledger writes.

Static checks (status, session label, date window) need no store access and
run first. Store checks cover teacher authorization, session configuration
and student membership.
"""

import logging
from datetime import date, timedelta
from typing import List, Optional, Tuple

from sqlalchemy import select, and_
from sqlalchemy.ext.asyncio import AsyncSession

from attendance_ledger.core.config import settings
from attendance_ledger.core.exceptions import (
    ValidationError, InvalidSessionError, StudentNotEnrolledError,
    AttendanceAuthorizationError, NotFoundError
)
from attendance_ledger.models.attendance import AttendanceStatus, SessionLabel
from attendance_ledger.models.school import SchoolClass, Subject, SessionConfiguration, DEFAULT_SESSION_NAMES
from attendance_ledger.models.user import Student, Teacher, StudentEnrollment, TeacherAssignment
from attendance_ledger.schemas.attendance import Actor


logger = logging.getLogger(__name__)


def parse_status(value) -> AttendanceStatus:
    try:
        return AttendanceStatus(getattr(value, "value", value))
    except ValueError:
        valid = ", ".join(s.value for s in AttendanceStatus)
        raise ValidationError(
            f'Invalid status "{value}". Valid statuses are: {valid}',
            details={'status': value}
        )


def parse_session(value) -> SessionLabel:
    try:
        return SessionLabel(getattr(value, "value", value))
    except ValueError:
        raise InvalidSessionError(str(value), [s.value for s in SessionLabel])


def validate_date(day: date, today: Optional[date] = None) -> date:
    """Reject dates outside the term window or the allowed past/future range."""
    if not isinstance(day, date):
        raise ValidationError("Attendance date is required", details={'date': day})

    today = today or date.today()

    if settings.TERM_START_DATE and day < settings.TERM_START_DATE:
        raise ValidationError(
            f"Date {day.isoformat()} is before the term start {settings.TERM_START_DATE.isoformat()}",
            details={'date': day.isoformat()}
        )
    if settings.TERM_END_DATE and day > settings.TERM_END_DATE:
        raise ValidationError(
            f"Date {day.isoformat()} is after the term end {settings.TERM_END_DATE.isoformat()}",
            details={'date': day.isoformat()}
        )
    if day > today + timedelta(days=settings.MAX_FUTURE_DAYS):
        raise ValidationError(
            "Cannot mark attendance for future dates",
            details={'date': day.isoformat(), 'max_future_days': settings.MAX_FUTURE_DAYS}
        )
    if settings.MAX_PAST_DAYS is not None and day < today - timedelta(days=settings.MAX_PAST_DAYS):
        raise ValidationError(
            f"Cannot mark attendance more than {settings.MAX_PAST_DAYS} days in the past",
            details={'date': day.isoformat(), 'max_past_days': settings.MAX_PAST_DAYS}
        )
    return day


def validate_static(status, session, day: date) -> Tuple[AttendanceStatus, SessionLabel, date]:
    return parse_status(status), parse_session(session), validate_date(day)


class AttendanceValidator:
    """Store-backed checks for ledger writes."""

    def __init__(self, db: AsyncSession):
        self.db = db

    async def get_class_and_subject(self, class_id: int, subject_id: int) -> Tuple[SchoolClass, Subject]:
        school_class = await self.db.get(SchoolClass, class_id)
        if school_class is None:
            raise NotFoundError("Class", class_id=class_id)
        subject = await self.db.get(Subject, subject_id)
        if subject is None:
            raise NotFoundError("Subject", subject_id=subject_id)
        return school_class, subject

    async def ensure_teacher_authorized(self, actor: Actor, teacher_id: int, class_id: int, subject_id: int) -> Teacher:
        teacher = await self.db.get(Teacher, teacher_id)
        if teacher is None:
            raise NotFoundError("Teacher", teacher_id=teacher_id)

        if actor.bypasses_assignment_check:
            return teacher

        if actor.id != teacher_id:
            logger.warning(f"Teacher {actor.id} attempted to mark attendance as teacher {teacher_id}")
            raise AttendanceAuthorizationError(actor.id, class_id, subject_id)

        result = await self.db.execute(
            select(TeacherAssignment.id).where(
                and_(
                    TeacherAssignment.teacher_id == teacher_id,
                    TeacherAssignment.class_id == class_id,
                    TeacherAssignment.subject_id == subject_id
                )
            )
        )
        if result.first() is None:
            logger.warning(f"Teacher {teacher_id} is not assigned to class {class_id} / subject {subject_id}")
            raise AttendanceAuthorizationError(teacher_id, class_id, subject_id)
        return teacher

    async def get_valid_sessions(self, class_id: int, subject_id: int) -> List[str]:
        """Session labels allowed for a subject/class pair, regardless of date."""
        configs = await self._active_configurations(class_id, subject_id)
        if not configs:
            return list(DEFAULT_SESSION_NAMES)
        names: List[str] = []
        for config in configs:
            for name in config.session_names:
                if name not in names:
                    names.append(name)
        return names

    async def ensure_session_allowed(self, session: SessionLabel, class_id: int, subject_id: int, day: date):
        configs = await self._active_configurations(class_id, subject_id)

        if not configs:
            logger.warning(
                f"No session configuration for class {class_id} / subject {subject_id}, using default sessions"
            )
            if session.value not in DEFAULT_SESSION_NAMES:
                raise InvalidSessionError(session.value, DEFAULT_SESSION_NAMES)
            return

        matching = [c for c in configs if session.value in c.session_names]
        if not matching:
            raise InvalidSessionError(session.value, await self.get_valid_sessions(class_id, subject_id))

        if not any(c.covers(day) for c in matching):
            raise ValidationError(
                f"Date {day.isoformat()} is outside the configured period for {session.value}",
                details={'session': session.value, 'date': day.isoformat()}
            )

    async def ensure_student_enrolled(self, student_id: int, class_id: int, subject_id: int) -> Student:
        student = await self.db.get(Student, student_id)
        if student is None:
            raise NotFoundError("Student", student_id=student_id)
        if student.class_id != class_id:
            raise StudentNotEnrolledError(student_id, class_id, subject_id)

        result = await self.db.execute(
            select(StudentEnrollment.id).where(
                and_(
                    StudentEnrollment.student_id == student_id,
                    StudentEnrollment.subject_id == subject_id
                )
            )
        )
        if result.first() is None:
            raise StudentNotEnrolledError(student_id, class_id, subject_id)
        return student

    async def _active_configurations(self, class_id: int, subject_id: int) -> List[SessionConfiguration]:
        result = await self.db.execute(
            select(SessionConfiguration).where(
                and_(
                    SessionConfiguration.class_id == class_id,
                    SessionConfiguration.subject_id == subject_id,
                    SessionConfiguration.is_active.is_(True)
                )
            )
        )
        return list(result.scalars().all())
