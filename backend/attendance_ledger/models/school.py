from sqlalchemy import Column, Integer, String, Boolean, Date, DateTime, ForeignKey, Enum as SQLEnum, Index
from sqlalchemy.sql import func
import enum

from attendance_ledger.core.database import Base, enum_values


DEFAULT_SESSION_NAMES = ["Lecture 1", "Lecture 2", "Lecture 3", "Lecture 4", "Lab", "Tutorial"]


class SessionType(str, enum.Enum):
    LECTURE = "lecture"
    LAB = "lab"
    TUTORIAL = "tutorial"


class School(Base):
    """Tenant. Every roster and ledger row is scoped to one school."""
    __tablename__ = "schools"

    id = Column(Integer, primary_key=True, index=True)
    name = Column(String(255), nullable=False)
    created_at = Column(DateTime(timezone=True), server_default=func.now())


class SchoolClass(Base):
    __tablename__ = "school_classes"

    id = Column(Integer, primary_key=True, index=True)
    name = Column(String(100), nullable=False)
    school_id = Column(Integer, ForeignKey("schools.id"), nullable=False, index=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now())


class Subject(Base):
    __tablename__ = "subjects"

    id = Column(Integer, primary_key=True, index=True)
    name = Column(String(255), nullable=False)
    code = Column(String(50), nullable=True)
    # Owning class; students of the class are auto-enrolled during migration
    class_id = Column(Integer, ForeignKey("school_classes.id"), nullable=True, index=True)
    school_id = Column(Integer, ForeignKey("schools.id"), nullable=False, index=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now())


class SessionConfiguration(Base):
    """Which session labels a subject/class pair may be marked for, and when."""
    __tablename__ = "session_configurations"

    id = Column(Integer, primary_key=True, index=True)
    subject_id = Column(Integer, ForeignKey("subjects.id"), nullable=False)
    class_id = Column(Integer, ForeignKey("school_classes.id"), nullable=False)
    session_type = Column(SQLEnum(SessionType, values_callable=enum_values, native_enum=False), nullable=False)
    sessions_per_week = Column(Integer, nullable=False, default=3)
    session_duration = Column(Integer, nullable=False, default=60)  # minutes
    total_sessions = Column(Integer, nullable=False, default=45)
    start_date = Column(Date, nullable=False)
    end_date = Column(Date, nullable=False)
    is_active = Column(Boolean, default=True, nullable=False)
    school_id = Column(Integer, ForeignKey("schools.id"), nullable=False, index=True)

    created_at = Column(DateTime(timezone=True), server_default=func.now())

    __table_args__ = (
        Index('idx_session_config_unique', 'subject_id', 'class_id', 'session_type', unique=True),
        Index('idx_session_config_active', 'school_id', 'is_active'),
    )

    @property
    def session_names(self):
        """Session labels this configuration allows."""
        if self.session_type == SessionType.LECTURE:
            # Only the lecture slots the ledger enumeration knows about
            return [
                f"Lecture {i}" for i in range(1, (self.sessions_per_week or 0) + 1)
                if f"Lecture {i}" in DEFAULT_SESSION_NAMES
            ]
        return [self.session_type.value.capitalize()]

    def covers(self, day) -> bool:
        return self.start_date <= day <= self.end_date
