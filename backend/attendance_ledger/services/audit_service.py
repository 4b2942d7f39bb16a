"""
Audit trail service.

Appends hash-chained entries to attendance_audit_logs and verifies the chain.
Entries are added to the caller's transaction; callers commit.
"""

import asyncio
import logging
from datetime import datetime
from typing import Any, Dict, List, Optional

from sqlalchemy import select, func, desc, asc
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from attendance_ledger.core.config import settings
from attendance_ledger.core.exceptions import AuditWriteError
from attendance_ledger.models.audit_log import AttendanceAuditLog, AuditAction
from attendance_ledger.schemas.attendance import Actor


logger = logging.getLogger(__name__)

# Serializes sequence allocation across sessions in this process
_sequence_lock = asyncio.Lock()


class AuditService:
    """Immutable, hash-chained audit trail."""

    def __init__(self, db: AsyncSession):
        self.db = db

    async def record(
        self,
        action: AuditAction,
        actor: Actor,
        record_id: Optional[int] = None,
        old_values: Optional[Dict[str, Any]] = None,
        new_values: Optional[Dict[str, Any]] = None,
        reason: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None,
        school_id: Optional[int] = None
    ) -> AttendanceAuditLog:
        """
        Append one audit entry inside a savepoint of the current transaction.

        Retried AUDIT_WRITE_RETRIES times; raises AuditWriteError when every
        attempt fails. The caller decides whether that aborts its operation.
        """
        attempts = settings.AUDIT_WRITE_RETRIES + 1
        last_error: Optional[Exception] = None

        for attempt in range(1, attempts + 1):
            try:
                async with _sequence_lock:
                    async with self.db.begin_nested():
                        sequence_number = await self._get_next_sequence_number()
                        previous_hash = await self._get_last_hash()

                        entry = AttendanceAuditLog(
                            sequence_number=sequence_number,
                            record_id=record_id,
                            action=action,
                            old_values=old_values,
                            new_values=new_values,
                            performed_by_id=actor.id,
                            performed_by_kind=actor.kind,
                            reason=reason,
                            audit_metadata=metadata,
                            school_id=school_id,
                            performed_at=datetime.utcnow(),
                            previous_hash=previous_hash
                        )
                        entry.integrity_hash = entry.calculate_integrity_hash()
                        self.db.add(entry)

                logger.debug(f"Audit entry {action.value} written (sequence {sequence_number})")
                return entry

            except SQLAlchemyError as e:
                last_error = e
                logger.warning(f"Audit write attempt {attempt}/{attempts} for {action.value} failed: {e}")

        logger.error(f"Giving up on audit entry {action.value} for record {record_id}: {last_error}")
        raise AuditWriteError(
            f"Failed to write audit entry after {attempts} attempts",
            details={'action': action.value, 'record_id': record_id},
            original_exception=last_error
        )

    async def verify_chain(self) -> Dict[str, Any]:
        """Walk the log in sequence order and report altered entries and broken links."""
        result = await self.db.execute(
            select(AttendanceAuditLog).order_by(asc(AttendanceAuditLog.sequence_number))
        )
        entries = result.scalars().all()

        verification = {
            "verified": True,
            "total_entries": len(entries),
            "chain_breaks": [],
            "hash_mismatches": []
        }

        previous_hash = None
        for entry in entries:
            if not entry.verify_integrity():
                verification["verified"] = False
                verification["hash_mismatches"].append({
                    "sequence": entry.sequence_number,
                    "id": entry.id,
                    "expected_hash": entry.calculate_integrity_hash(),
                    "stored_hash": entry.integrity_hash
                })

            if entry.previous_hash != previous_hash:
                verification["verified"] = False
                verification["chain_breaks"].append({
                    "sequence": entry.sequence_number,
                    "expected_previous_hash": previous_hash,
                    "stored_previous_hash": entry.previous_hash
                })

            previous_hash = entry.integrity_hash

        if not verification["verified"]:
            logger.warning(
                f"Audit chain verification failed: {len(verification['hash_mismatches'])} altered, "
                f"{len(verification['chain_breaks'])} broken links"
            )
        return verification

    async def get_record_history(self, record_id: int, limit: int = 50) -> List[AttendanceAuditLog]:
        """Audit entries for one ledger row, newest first."""
        result = await self.db.execute(
            select(AttendanceAuditLog)
            .where(AttendanceAuditLog.record_id == record_id)
            .order_by(desc(AttendanceAuditLog.sequence_number))
            .limit(limit)
        )
        return list(result.scalars().all())

    async def get_entries(
        self,
        actions: Optional[List[AuditAction]] = None,
        school_id: Optional[int] = None,
        start_time: Optional[datetime] = None,
        end_time: Optional[datetime] = None,
        limit: int = 100
    ) -> List[AttendanceAuditLog]:
        """Query audit entries with filtering, newest first."""
        query = select(AttendanceAuditLog)

        if actions:
            query = query.where(AttendanceAuditLog.action.in_(actions))
        if school_id is not None:
            query = query.where(AttendanceAuditLog.school_id == school_id)
        if start_time:
            query = query.where(AttendanceAuditLog.performed_at >= start_time)
        if end_time:
            query = query.where(AttendanceAuditLog.performed_at <= end_time)

        query = query.order_by(desc(AttendanceAuditLog.sequence_number)).limit(limit)
        result = await self.db.execute(query)
        return list(result.scalars().all())

    async def _get_next_sequence_number(self) -> int:
        result = await self.db.execute(
            select(func.coalesce(func.max(AttendanceAuditLog.sequence_number), 0))
        )
        return result.scalar() + 1

    async def _get_last_hash(self) -> Optional[str]:
        result = await self.db.execute(
            select(AttendanceAuditLog.integrity_hash)
            .order_by(desc(AttendanceAuditLog.sequence_number))
            .limit(1)
        )
        return result.scalar_one_or_none()
