from pydantic import BaseModel, Field, validator
from datetime import date, datetime
from typing import Optional, List, Dict, Any

from attendance_ledger.models.user import ActorKind


SYSTEM_ACTOR_ID = 0


class Actor(BaseModel):
    """Authenticated identity performing a mutation."""
    kind: ActorKind
    id: int

    class Config:
        frozen = True

    @classmethod
    def teacher(cls, teacher_id: int) -> "Actor":
        return cls(kind=ActorKind.TEACHER, id=teacher_id)

    @classmethod
    def admin(cls, admin_id: int) -> "Actor":
        return cls(kind=ActorKind.ADMIN, id=admin_id)

    @classmethod
    def system(cls) -> "Actor":
        return cls(kind=ActorKind.SYSTEM, id=SYSTEM_ACTOR_ID)

    @property
    def bypasses_assignment_check(self) -> bool:
        return self.kind in (ActorKind.ADMIN, ActorKind.SYSTEM)


# Ledger write schemas
class MarkAttendanceRequest(BaseModel):
    class_id: int
    subject_id: int
    teacher_id: int
    student_id: int
    date: date
    # Validated by the engine so bad labels surface as domain errors
    session: str
    status: str
    reason: Optional[str] = Field(None, max_length=500)


class StudentAttendanceInput(BaseModel):
    student_id: int
    status: str


class BulkMarkRequest(BaseModel):
    class_id: int
    subject_id: int
    teacher_id: int
    date: date
    session: str
    students: List[StudentAttendanceInput] = Field(..., min_items=1)
    reason: Optional[str] = Field(None, max_length=500)


class DeleteAttendanceRequest(BaseModel):
    reason: Optional[str] = Field(None, max_length=500)


class AttendanceRecordResponse(BaseModel):
    id: int
    student_id: int
    class_id: int
    subject_id: int
    teacher_id: int
    date: date
    session: str
    status: str
    marked_at: datetime
    last_modified_at: Optional[datetime] = None

    class Config:
        from_attributes = True

    @validator("session", "status", pre=True)
    def enum_to_value(cls, v):
        return getattr(v, "value", v)


class MarkAttendanceResponse(BaseModel):
    record: AttendanceRecordResponse
    action: str
    audit_warning: Optional[str] = None


class BulkOperationResponse(BaseModel):
    success_count: int
    failure_count: int
    successful: List[Dict[str, Any]] = []
    failed: List[Dict[str, Any]] = []


# Bulk management schemas
class TeacherAssignmentInput(BaseModel):
    subject_id: int
    class_id: int


class AssignByPatternRequest(BaseModel):
    pattern: str = Field(..., min_length=1)
    target_class_id: int
    subject_ids: List[int] = []


class TransferRequest(BaseModel):
    student_ids: List[int] = Field(..., min_items=1)
    from_class_id: int
    to_class_id: int
    subject_ids: List[int] = []
    migrate_ledger: bool = False


class ReassignTeacherRequest(BaseModel):
    teacher_id: int
    assignments: List[TeacherAssignmentInput]

    @validator("assignments")
    def assignments_not_empty(cls, v):
        if not v:
            raise ValueError("At least one assignment is required")
        return v
