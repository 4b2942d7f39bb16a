from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from attendance_ledger.models.attendance import AttendanceRecord


@dataclass
class MarkResult:
    """Outcome of a single ledger write."""
    record: AttendanceRecord
    action: str  # "create" or "update"
    audit_warning: Optional[str] = None


@dataclass
class BulkOperationResult:
    """Per-item outcome of a bulk operation. Never raised, always returned."""
    success_count: int = 0
    failure_count: int = 0
    successful: List[Dict[str, Any]] = field(default_factory=list)
    failed: List[Dict[str, Any]] = field(default_factory=list)

    def add_success(self, **item):
        self.successful.append(item)
        self.success_count += 1

    def add_failure(self, reason: str, **item):
        item['reason'] = reason
        self.failed.append(item)
        self.failure_count += 1

    @property
    def is_full_success(self) -> bool:
        return self.failure_count == 0

    @property
    def is_partial_success(self) -> bool:
        return self.success_count > 0 and self.failure_count > 0

    @property
    def is_total_failure(self) -> bool:
        return self.success_count == 0 and self.failure_count > 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            'success_count': self.success_count,
            'failure_count': self.failure_count,
            'successful': self.successful,
            'failed': self.failed,
        }


@dataclass
class RecomputeReport:
    processed: int = 0
    updated: int = 0
    errors: int = 0
    error_details: List[Dict[str, Any]] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            'processed': self.processed,
            'updated': self.updated,
            'errors': self.errors,
            'error_details': self.error_details,
        }
