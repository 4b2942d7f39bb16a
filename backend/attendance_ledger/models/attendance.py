from sqlalchemy import Column, Integer, Float, Date, DateTime, ForeignKey, Enum as SQLEnum, UniqueConstraint, Index
from sqlalchemy.sql import func
import enum

from attendance_ledger.core.database import Base, enum_values
from attendance_ledger.models.user import ActorKind


class AttendanceStatus(str, enum.Enum):
    PRESENT = "present"
    ABSENT = "absent"
    LATE = "late"
    EXCUSED = "excused"


class SessionLabel(str, enum.Enum):
    LECTURE_1 = "Lecture 1"
    LECTURE_2 = "Lecture 2"
    LECTURE_3 = "Lecture 3"
    LECTURE_4 = "Lecture 4"
    LAB = "Lab"
    TUTORIAL = "Tutorial"


class AttendanceRecord(Base):
    """One ledger entry: a student's status for one session on one date."""
    __tablename__ = "attendance_records"

    id = Column(Integer, primary_key=True, index=True)

    # Ledger key
    student_id = Column(Integer, ForeignKey("students.id"), nullable=False)
    class_id = Column(Integer, ForeignKey("school_classes.id"), nullable=False)
    subject_id = Column(Integer, ForeignKey("subjects.id"), nullable=False)
    date = Column(Date, nullable=False)
    session = Column(SQLEnum(SessionLabel, values_callable=enum_values, native_enum=False), nullable=False)

    teacher_id = Column(Integer, ForeignKey("teachers.id"), nullable=False)
    status = Column(SQLEnum(AttendanceStatus, values_callable=enum_values, native_enum=False), nullable=False)

    # Who marked / last changed the entry
    marked_by_id = Column(Integer, nullable=False)
    marked_by_kind = Column(SQLEnum(ActorKind, values_callable=enum_values, native_enum=False), nullable=False)
    marked_at = Column(DateTime(timezone=True), nullable=False)
    last_modified_by_id = Column(Integer, nullable=True)
    last_modified_by_kind = Column(SQLEnum(ActorKind, values_callable=enum_values, native_enum=False), nullable=True)
    last_modified_at = Column(DateTime(timezone=True), nullable=True)

    school_id = Column(Integer, ForeignKey("schools.id"), nullable=False, index=True)

    __table_args__ = (
        UniqueConstraint('student_id', 'class_id', 'subject_id', 'date', 'session', name='uq_attendance_ledger_key'),
        Index('idx_attendance_class_subject_date', 'class_id', 'subject_id', 'date'),
        Index('idx_attendance_student_subject_class', 'student_id', 'subject_id', 'class_id'),
    )

    @property
    def aggregate_key(self):
        return (self.student_id, self.subject_id, self.class_id)

    def snapshot(self):
        """JSON-safe copy of the entry, used for audit before/after values."""
        return {
            'id': self.id,
            'student_id': self.student_id,
            'class_id': self.class_id,
            'subject_id': self.subject_id,
            'teacher_id': self.teacher_id,
            'date': self.date.isoformat() if self.date else None,
            'session': self.session.value if self.session else None,
            'status': self.status.value if self.status else None,
            'marked_by': {
                'id': self.marked_by_id,
                'kind': self.marked_by_kind.value if self.marked_by_kind else None
            },
            'last_modified_by': {
                'id': self.last_modified_by_id,
                'kind': self.last_modified_by_kind.value if self.last_modified_by_kind else None
            } if self.last_modified_by_id is not None else None,
        }


class AttendanceSummary(Base):
    """Derived counts for one (student, subject, class). Written only by ConsistencyService."""
    __tablename__ = "attendance_summaries"

    id = Column(Integer, primary_key=True, index=True)

    student_id = Column(Integer, ForeignKey("students.id"), nullable=False)
    subject_id = Column(Integer, ForeignKey("subjects.id"), nullable=False)
    class_id = Column(Integer, ForeignKey("school_classes.id"), nullable=False)

    total_sessions = Column(Integer, nullable=False, default=0)
    present_count = Column(Integer, nullable=False, default=0)
    absent_count = Column(Integer, nullable=False, default=0)
    late_count = Column(Integer, nullable=False, default=0)
    excused_count = Column(Integer, nullable=False, default=0)
    attendance_percentage = Column(Float, nullable=False, default=0.0)

    last_updated = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())
    school_id = Column(Integer, ForeignKey("schools.id"), nullable=False, index=True)

    __table_args__ = (
        UniqueConstraint('student_id', 'subject_id', 'class_id', name='uq_attendance_summary_key'),
        Index('idx_summary_class_subject', 'class_id', 'subject_id'),
        Index('idx_summary_percentage', 'attendance_percentage'),
    )

    @property
    def key(self):
        return (self.student_id, self.subject_id, self.class_id)

    def counts(self):
        return {
            'total_sessions': self.total_sessions,
            'present_count': self.present_count,
            'absent_count': self.absent_count,
            'late_count': self.late_count,
            'excused_count': self.excused_count,
        }
