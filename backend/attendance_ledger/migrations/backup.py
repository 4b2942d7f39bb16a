"""
Table snapshots for the migration pipeline.

A snapshot holds every row of every mapped table as JSON-safe dicts. It lives
in memory for the duration of a run and can be written once to a JSON file
that later rollbacks may load.
"""

import enum
import json
import logging
import os
from dataclasses import dataclass, field
from datetime import date, datetime
from typing import Any, Dict, List, Optional

from sqlalchemy import Date, DateTime, Enum as SQLEnum, String, Table, select, type_coerce
from sqlalchemy.ext.asyncio import AsyncSession

from attendance_ledger.core.database import Base


logger = logging.getLogger(__name__)

AUDIT_TABLE = "attendance_audit_logs"
BACKUP_FORMAT_VERSION = 1


def backup_tables() -> List[Table]:
    """Every mapped table, parents before children."""
    import attendance_ledger.models  # noqa: F401
    return list(Base.metadata.sorted_tables)


def raw_select(table: Table, *criteria):
    """Select every column, reading enum columns as plain strings so corrupt values load."""
    columns = [
        type_coerce(column, String).label(column.name) if isinstance(column.type, SQLEnum) else column
        for column in table.c
    ]
    query = select(*columns)
    if criteria:
        query = query.where(*criteria)
    return query.order_by(*table.primary_key.columns)


def to_json_value(value: Any) -> Any:
    if isinstance(value, enum.Enum):
        return value.value
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    return value


def row_to_json(row) -> Dict[str, Any]:
    return {key: to_json_value(value) for key, value in row._mapping.items()}


def row_from_json(table: Table, data: Dict[str, Any]) -> Dict[str, Any]:
    """Convert a JSON row back into values the table's column types accept."""
    values = {}
    for column in table.c:
        if column.name not in data:
            continue
        value = data[column.name]
        if value is not None:
            if isinstance(column.type, DateTime):
                value = datetime.fromisoformat(value)
            elif isinstance(column.type, Date):
                value = date.fromisoformat(value)
        values[column.name] = value
    return values


@dataclass
class BackupSnapshot:
    """In-memory copy of every table taken before a migration."""
    created_at: datetime
    tables: Dict[str, List[Dict[str, Any]]] = field(default_factory=dict)
    file_path: Optional[str] = None

    @property
    def counts(self) -> Dict[str, int]:
        return {name: len(rows) for name, rows in self.tables.items()}

    @property
    def audit_high_water(self) -> int:
        """Highest audit sequence number present when the snapshot was taken."""
        rows = self.tables.get(AUDIT_TABLE, [])
        return max((row['sequence_number'] for row in rows), default=0)

    def rows_for_insert(self, table: Table) -> List[Dict[str, Any]]:
        return [row_from_json(table, row) for row in self.tables.get(table.name, [])]

    def to_dict(self) -> Dict[str, Any]:
        return {
            'format_version': BACKUP_FORMAT_VERSION,
            'created_at': self.created_at.isoformat(),
            'counts': self.counts,
            'tables': self.tables,
        }

    def write(self, backup_dir: str) -> str:
        """Write the snapshot to a new timestamped file; never overwrites."""
        os.makedirs(backup_dir, exist_ok=True)
        timestamp = self.created_at.strftime("%Y%m%dT%H%M%S%fZ")
        path = os.path.join(backup_dir, f"attendance_backup_{timestamp}.json")

        with open(path, "x", encoding="utf-8") as f:
            json.dump(self.to_dict(), f, indent=2)

        self.file_path = path
        logger.info(f"Backup written to {path}")
        return path

    @classmethod
    def load(cls, path: str) -> "BackupSnapshot":
        with open(path, "r", encoding="utf-8") as f:
            data = json.load(f)

        if data.get('format_version') != BACKUP_FORMAT_VERSION:
            raise ValueError(f"Unsupported backup format in {path}: {data.get('format_version')!r}")

        snapshot = cls(
            created_at=datetime.fromisoformat(data['created_at']),
            tables=data['tables'],
            file_path=path
        )
        logger.info(f"Loaded backup {path} ({sum(snapshot.counts.values())} rows)")
        return snapshot


async def create_snapshot(db: AsyncSession) -> BackupSnapshot:
    snapshot = BackupSnapshot(created_at=datetime.utcnow())
    for table in backup_tables():
        result = await db.execute(raw_select(table))
        snapshot.tables[table.name] = [row_to_json(row) for row in result.all()]
    logger.info(f"Snapshot taken: {snapshot.counts}")
    return snapshot


def latest_backup_file(backup_dir: str) -> Optional[str]:
    if not os.path.isdir(backup_dir):
        return None
    candidates = sorted(
        name for name in os.listdir(backup_dir)
        if name.startswith("attendance_backup_") and name.endswith(".json")
    )
    return os.path.join(backup_dir, candidates[-1]) if candidates else None
