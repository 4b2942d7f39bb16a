from .school import School, SchoolClass, Subject, SessionConfiguration, SessionType, DEFAULT_SESSION_NAMES
from .user import Student, Teacher, StudentEnrollment, TeacherAssignment, ActorKind, TeacherRole
from .attendance import AttendanceRecord, AttendanceSummary, AttendanceStatus, SessionLabel
from .audit_log import AttendanceAuditLog, AuditAction

__all__ = [
    "School",
    "SchoolClass",
    "Subject",
    "SessionConfiguration",
    "SessionType",
    "DEFAULT_SESSION_NAMES",
    "Student",
    "Teacher",
    "StudentEnrollment",
    "TeacherAssignment",
    "ActorKind",
    "TeacherRole",
    "AttendanceRecord",
    "AttendanceSummary",
    "AttendanceStatus",
    "SessionLabel",
    "AttendanceAuditLog",
    "AuditAction",
]
