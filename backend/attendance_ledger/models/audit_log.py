"""
Append-only audit trail for ledger and roster mutations.

Each entry carries a sequence number and a SHA-256 hash over its own content
plus the previous entry's hash, so edits or gaps in the chain can be detected.
"""

from sqlalchemy import Column, Integer, String, DateTime, JSON, Enum as SQLEnum, Index, event
from typing import Dict, Any
import enum
import hashlib
import json

from attendance_ledger.core.database import Base, enum_values
from attendance_ledger.core.exceptions import AuditWriteError
from attendance_ledger.models.user import ActorKind


class AuditAction(str, enum.Enum):
    CREATE = "create"
    UPDATE = "update"
    DELETE = "delete"
    BULK_ASSIGN = "bulk_assign"
    STUDENT_TRANSFER = "student_transfer"
    MIGRATE_ATTENDANCE = "migrate_attendance"
    TEACHER_REASSIGNMENT = "teacher_reassignment"
    MIGRATION = "migration"
    ROLLBACK = "rollback"


class AttendanceAuditLog(Base):
    __tablename__ = "attendance_audit_logs"

    id = Column(Integer, primary_key=True, index=True)
    sequence_number = Column(Integer, nullable=False, unique=True, index=True)

    # No FK: entries outlive deleted ledger rows
    record_id = Column(Integer, nullable=True, index=True)
    action = Column(SQLEnum(AuditAction, values_callable=enum_values, native_enum=False), nullable=False)
    old_values = Column(JSON, nullable=True)
    new_values = Column(JSON, nullable=True)

    performed_by_id = Column(Integer, nullable=False)
    performed_by_kind = Column(SQLEnum(ActorKind, values_callable=enum_values, native_enum=False), nullable=False)
    reason = Column(String(500), nullable=True)
    audit_metadata = Column(JSON, nullable=True)
    school_id = Column(Integer, nullable=True, index=True)
    performed_at = Column(DateTime(timezone=True), nullable=False)

    integrity_hash = Column(String(64), nullable=False)
    previous_hash = Column(String(64), nullable=True)

    __table_args__ = (
        Index('idx_audit_action_performed_at', 'action', 'performed_at'),
        Index('idx_audit_school_action', 'school_id', 'action'),
    )

    def calculate_integrity_hash(self) -> str:
        """Calculate SHA-256 integrity hash over every content field and the previous hash."""
        hash_data = {
            'sequence_number': self.sequence_number,
            'record_id': self.record_id,
            'action': self.action.value if self.action else None,
            'old_values': self.old_values,
            'new_values': self.new_values,
            'performed_by_id': self.performed_by_id,
            'performed_by_kind': self.performed_by_kind.value if self.performed_by_kind else None,
            'reason': self.reason,
            'audit_metadata': self.audit_metadata,
            'school_id': self.school_id,
            'performed_at': self.performed_at.replace(tzinfo=None).isoformat() if self.performed_at else None,
            'previous_hash': self.previous_hash
        }

        hash_string = json.dumps(hash_data, sort_keys=True, default=str)
        return hashlib.sha256(hash_string.encode('utf-8')).hexdigest()

    def verify_integrity(self) -> bool:
        return self.calculate_integrity_hash() == self.integrity_hash

    def to_dict(self) -> Dict[str, Any]:
        return {
            'id': self.id,
            'sequence_number': self.sequence_number,
            'record_id': self.record_id,
            'action': self.action.value if self.action else None,
            'old_values': self.old_values,
            'new_values': self.new_values,
            'performed_by': {
                'id': self.performed_by_id,
                'kind': self.performed_by_kind.value if self.performed_by_kind else None
            },
            'reason': self.reason,
            'metadata': self.audit_metadata,
            'school_id': self.school_id,
            'performed_at': self.performed_at.isoformat() if self.performed_at else None,
        }


@event.listens_for(AttendanceAuditLog, "before_update")
def _reject_audit_update(mapper, connection, target):
    raise AuditWriteError("Audit entries are immutable", details={'audit_id': target.id})


@event.listens_for(AttendanceAuditLog, "before_delete")
def _reject_audit_delete(mapper, connection, target):
    raise AuditWriteError("Audit entries cannot be deleted", details={'audit_id': target.id})
