"""
Restore the store from a BackupSnapshot.

Every snapshot table is emptied and refilled from the snapshot. The audit log
is append-only, so instead of being rewritten it is cut back to the snapshot's
last sequence number; the rollback itself is then audited on top.
"""

import logging
from typing import Any, Dict, Optional

from sqlalchemy import select, func, delete
from sqlalchemy.ext.asyncio import AsyncSession

from attendance_ledger.core.exceptions import PipelineError
from attendance_ledger.models.audit_log import AttendanceAuditLog, AuditAction
from attendance_ledger.migrations.backup import AUDIT_TABLE, BackupSnapshot, backup_tables
from attendance_ledger.schemas.attendance import Actor
from attendance_ledger.services.audit_service import AuditService


logger = logging.getLogger(__name__)


class RollbackManager:

    def __init__(self, db: AsyncSession):
        self.db = db

    async def restore(self, snapshot: BackupSnapshot, reason: Optional[str] = None) -> Dict[str, Any]:
        """Restore every table to the snapshot, verify counts, and audit the rollback. Commits."""
        tables = [t for t in backup_tables() if t.name in snapshot.tables and t.name != AUDIT_TABLE]

        try:
            for table in reversed(tables):
                await self.db.execute(table.delete())

            purged = await self.db.execute(
                delete(AttendanceAuditLog)
                .where(AttendanceAuditLog.sequence_number > snapshot.audit_high_water)
                .execution_options(synchronize_session=False)
            )

            for table in tables:
                rows = snapshot.rows_for_insert(table)
                if rows:
                    await self.db.execute(table.insert(), rows)

            await self.db.flush()
            self.db.expunge_all()

            counts = await self.count_rows(list(snapshot.tables))
            mismatches = {
                name: {'expected': expected, 'actual': counts.get(name)}
                for name, expected in snapshot.counts.items()
                if counts.get(name) != expected
            }
            if mismatches:
                raise PipelineError("rollback", f"Restored row counts differ from backup: {mismatches}")

            await AuditService(self.db).record(
                AuditAction.ROLLBACK,
                Actor.system(),
                reason=reason or "Restored database from migration backup",
                metadata={
                    'backup_created_at': snapshot.created_at.isoformat(),
                    'backup_file': snapshot.file_path,
                    'restored_counts': counts,
                    'audit_entries_purged': purged.rowcount
                }
            )
            await self.db.commit()

        except Exception:
            await self.db.rollback()
            raise

        logger.info(f"Rollback restored {sum(counts.values())} rows from backup taken {snapshot.created_at.isoformat()}")
        return {'restored_counts': counts, 'audit_entries_purged': purged.rowcount}

    async def count_rows(self, table_names) -> Dict[str, int]:
        counts = {}
        by_name = {t.name: t for t in backup_tables()}
        for name in table_names:
            result = await self.db.execute(select(func.count()).select_from(by_name[name]))
            counts[name] = result.scalar()
        return counts
