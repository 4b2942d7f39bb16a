from sqlalchemy import Column, Integer, String, Boolean, DateTime, ForeignKey, JSON, Enum as SQLEnum, Index
from sqlalchemy.sql import func
import enum

from attendance_ledger.core.database import Base, enum_values


class ActorKind(str, enum.Enum):
    TEACHER = "teacher"
    ADMIN = "admin"
    SYSTEM = "system"


class TeacherRole(str, enum.Enum):
    TEACHER = "teacher"
    ADMIN = "admin"


class Student(Base):
    __tablename__ = "students"

    id = Column(Integer, primary_key=True, index=True)
    name = Column(String(100), nullable=False)
    roll_num = Column(Integer, nullable=False, index=True)
    # Target of bulk pattern assignment, e.g. "CSE2021001"
    university_id = Column(String(50), unique=True, index=True, nullable=True)
    class_id = Column(Integer, ForeignKey("school_classes.id"), nullable=False, index=True)
    school_id = Column(Integer, ForeignKey("schools.id"), nullable=False, index=True)
    is_active = Column(Boolean, default=True)

    # Pre-ledger embedded attendance: [{"subject_id", "present", "absent", "date"}]
    legacy_attendance = Column(JSON(none_as_null=True), nullable=True)

    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), onupdate=func.now())


class Teacher(Base):
    __tablename__ = "teachers"

    id = Column(Integer, primary_key=True, index=True)
    name = Column(String(100), nullable=False)
    email = Column(String(255), unique=True, index=True, nullable=False)
    role = Column(SQLEnum(TeacherRole, values_callable=enum_values, native_enum=False), nullable=False, default=TeacherRole.TEACHER)
    school_id = Column(Integer, ForeignKey("schools.id"), nullable=False, index=True)
    is_active = Column(Boolean, default=True)

    # Legacy single assignment, mirrored from teacher_assignments when there is exactly one
    teach_subject_id = Column(Integer, ForeignKey("subjects.id"), nullable=True)
    teach_class_id = Column(Integer, ForeignKey("school_classes.id"), nullable=True)

    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), onupdate=func.now())


class StudentEnrollment(Base):
    """A student's enrollment in one subject."""
    __tablename__ = "student_enrollments"

    id = Column(Integer, primary_key=True, index=True)
    student_id = Column(Integer, ForeignKey("students.id"), nullable=False)
    subject_id = Column(Integer, ForeignKey("subjects.id"), nullable=False)
    enrolled_at = Column(DateTime(timezone=True), server_default=func.now())

    __table_args__ = (
        Index('idx_enrollment_unique_student_subject', 'student_id', 'subject_id', unique=True),
        Index('idx_enrollment_subject', 'subject_id'),
    )


class TeacherAssignment(Base):
    """A teacher's assignment to one subject in one class."""
    __tablename__ = "teacher_assignments"

    id = Column(Integer, primary_key=True, index=True)
    teacher_id = Column(Integer, ForeignKey("teachers.id"), nullable=False)
    subject_id = Column(Integer, ForeignKey("subjects.id"), nullable=False)
    class_id = Column(Integer, ForeignKey("school_classes.id"), nullable=False)
    assigned_at = Column(DateTime(timezone=True), server_default=func.now())

    __table_args__ = (
        Index('idx_assignment_unique', 'teacher_id', 'subject_id', 'class_id', unique=True),
        Index('idx_assignment_subject_class', 'subject_id', 'class_id'),
    )
