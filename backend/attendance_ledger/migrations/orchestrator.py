"""
Migration orchestrator.

Runs prerequisite check -> backup -> transform -> validate, each stage gated on
the previous one. Any failure after the backup rolls the store back to the
snapshot. All run state lives in a MigrationContext that is returned to the
caller; the orchestrator itself keeps none between runs.
"""

import enum
import json
import logging
import os
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional

from sqlalchemy import text, inspect
from sqlalchemy.ext.asyncio import AsyncSession

from attendance_ledger.core.config import settings
from attendance_ledger.core.database import AsyncSessionLocal
from attendance_ledger.core.exceptions import LedgerError, PipelineError, RollbackFailedError
from attendance_ledger.migrations.backup import BackupSnapshot, create_snapshot, latest_backup_file, to_json_value
from attendance_ledger.migrations.integrity import IntegrityReport, IntegrityValidator
from attendance_ledger.migrations.rollback import RollbackManager
from attendance_ledger.migrations.transform import LegacyTransformer


logger = logging.getLogger(__name__)

BASE_TABLES = ("schools", "school_classes", "subjects", "students", "teachers")
LEDGER_TABLES = (
    "attendance_records", "attendance_summaries", "attendance_audit_logs",
    "student_enrollments", "teacher_assignments",
)

EXIT_SUCCESS = 0
EXIT_PARTIAL = 1
EXIT_FAILURE = 2


class MigrationState(str, enum.Enum):
    PENDING = "pending"
    BACKED_UP = "backed_up"
    TRANSFORMED = "transformed"
    VALIDATED = "validated"
    DONE = "done"
    ROLLED_BACK = "rolled_back"
    FAILED_UNRECOVERABLE = "failed_unrecoverable"


_ROLLBACK_OUTCOMES = {MigrationState.ROLLED_BACK, MigrationState.FAILED_UNRECOVERABLE}

ALLOWED_TRANSITIONS = {
    # Operator rollbacks start from a fresh context
    MigrationState.PENDING: {MigrationState.BACKED_UP} | _ROLLBACK_OUTCOMES,
    MigrationState.BACKED_UP: {MigrationState.TRANSFORMED} | _ROLLBACK_OUTCOMES,
    MigrationState.TRANSFORMED: {MigrationState.VALIDATED} | _ROLLBACK_OUTCOMES,
    MigrationState.VALIDATED: {MigrationState.DONE} | _ROLLBACK_OUTCOMES,
    MigrationState.DONE: set(),
    MigrationState.ROLLED_BACK: set(),
    MigrationState.FAILED_UNRECOVERABLE: set(),
}


@dataclass
class MigrationContext:
    """Everything one migration run produces: state, per-stage logs, stats, errors."""
    state: MigrationState = MigrationState.PENDING
    started_at: datetime = field(default_factory=datetime.utcnow)
    finished_at: Optional[datetime] = None
    stage_logs: Dict[str, List[str]] = field(default_factory=dict)
    stats: Dict[str, Any] = field(default_factory=dict)
    errors: List[Dict[str, Any]] = field(default_factory=list)
    warnings: List[Dict[str, Any]] = field(default_factory=list)
    snapshot: Optional[BackupSnapshot] = None
    backup_file: Optional[str] = None
    report_file: Optional[str] = None
    validation: Optional[IntegrityReport] = None
    revalidation: Optional[IntegrityReport] = None
    fixes: Optional[Dict[str, Any]] = None
    failure: Optional[Exception] = None

    def transition(self, new_state: MigrationState):
        if new_state not in ALLOWED_TRANSITIONS[self.state]:
            raise PipelineError("state", f"Illegal transition {self.state.value} -> {new_state.value}")
        logger.info(f"Migration state {self.state.value} -> {new_state.value}")
        self.state = new_state

    def log(self, stage: str, message: str):
        timestamp = datetime.utcnow().isoformat()
        self.stage_logs.setdefault(stage, []).append(f"[{timestamp}] {message}")
        logger.info(f"[{stage}] {message}")

    def warn(self, stage: str, message: str):
        self.warnings.append({'timestamp': datetime.utcnow().isoformat(), 'stage': stage, 'warning': message})
        self.log(stage, f"WARNING: {message}")

    def error(self, stage: str, error: Exception):
        entry = error.to_dict() if isinstance(error, LedgerError) else {'message': str(error)}
        entry.update({'timestamp': datetime.utcnow().isoformat(), 'stage': stage})
        self.errors.append(entry)
        self.log(stage, f"ERROR: {error}")

    @property
    def unfixed_issues(self) -> bool:
        final = self.revalidation or self.validation
        return bool(final and final.has_errors)

    @property
    def exit_code(self) -> int:
        if self.state != MigrationState.DONE:
            return EXIT_FAILURE
        if self.warnings or self.unfixed_issues:
            return EXIT_PARTIAL
        return EXIT_SUCCESS

    @property
    def duration_seconds(self) -> Optional[float]:
        if self.finished_at is None:
            return None
        return (self.finished_at - self.started_at).total_seconds()

    def to_report(self) -> Dict[str, Any]:
        return {
            'state': self.state.value,
            'started_at': self.started_at.isoformat(),
            'finished_at': self.finished_at.isoformat() if self.finished_at else None,
            'duration_seconds': self.duration_seconds,
            'summary': {
                'success': self.state == MigrationState.DONE,
                'exit_code': self.exit_code,
                'errors_count': len(self.errors),
                'warnings_count': len(self.warnings),
            },
            'backup_file': self.backup_file,
            'stats': self.stats,
            'validation': self.validation.to_dict() if self.validation else None,
            'fixes': self.fixes,
            'revalidation': self.revalidation.to_dict() if self.revalidation else None,
            'stage_logs': self.stage_logs,
            'errors': self.errors,
            'warnings': self.warnings,
        }


class MigrationOrchestrator:
    """Runs the migration pipeline against sessions from session_factory."""

    def __init__(
        self,
        session_factory: Callable[[], AsyncSession] = AsyncSessionLocal,
        persist_backup: bool = True,
        auto_fix: bool = True,
        backup_dir: Optional[str] = None,
        report_dir: Optional[str] = None,
        sample_size: Optional[int] = None
    ):
        self.session_factory = session_factory
        self.persist_backup = persist_backup
        self.auto_fix = auto_fix
        self.backup_dir = backup_dir or settings.BACKUP_DIR
        self.report_dir = report_dir
        self.sample_size = sample_size

    async def run_complete_migration(self) -> MigrationContext:
        """Run the full pipeline. Never raises for stage failures; inspect the returned context."""
        context = MigrationContext()
        context.log("orchestrator", "Starting attendance ledger migration")

        async with self.session_factory() as db:
            try:
                await self.check_prerequisites(db, context)
                await self.backup(db, context)
            except Exception as e:
                # Nothing has been changed yet, so there is nothing to roll back
                context.error("backup" if context.stats.get('prerequisites') else "prerequisites", e)
                context.failure = e
                await db.rollback()
                return self._finish(context)

            try:
                await self.transform(db, context)
                await self.validate(db, context)
                context.transition(MigrationState.DONE)
                context.log("orchestrator", "Migration completed")
            except Exception as e:
                context.error(context.state.value, e)
                context.failure = e
                await db.rollback()
                await self._rollback_after_failure(db, context, e)

        return self._finish(context)

    async def check_prerequisites(self, db: AsyncSession, context: MigrationContext):
        stage = "prerequisites"
        context.log(stage, "Checking migration prerequisites")

        await db.execute(text("SELECT 1"))

        connection = await db.connection()
        table_names = set(await connection.run_sync(lambda conn: inspect(conn).get_table_names()))
        missing = [name for name in BASE_TABLES if name not in table_names]
        if missing:
            raise PipelineError(stage, f"Missing required tables: {', '.join(missing)}")

        populated = []
        for name in LEDGER_TABLES:
            if name in table_names:
                result = await db.execute(text(f"SELECT COUNT(*) FROM {name}"))
                if result.scalar():
                    populated.append(name)
        if populated:
            context.warn(stage, f"Target tables already contain rows: {', '.join(populated)}")

        counts = {}
        for name in ("students", "teachers"):
            result = await db.execute(text(f"SELECT COUNT(*) FROM {name}"))
            counts[name] = result.scalar()
        if not counts['students'] or not counts['teachers']:
            context.warn(stage, "No students or teachers found in database")

        context.stats['prerequisites'] = {'populated_target_tables': populated, **counts}
        context.log(stage, f"Prerequisites check completed. Students: {counts['students']}, Teachers: {counts['teachers']}")

    async def backup(self, db: AsyncSession, context: MigrationContext):
        stage = "backup"
        context.log(stage, "Creating backup snapshot")

        snapshot = await create_snapshot(db)
        if self.persist_backup:
            context.backup_file = snapshot.write(self.backup_dir)
            context.log(stage, f"Backup written to {context.backup_file}")

        context.snapshot = snapshot
        context.stats['backup'] = {'row_counts': snapshot.counts, 'file': context.backup_file}
        context.transition(MigrationState.BACKED_UP)

    async def transform(self, db: AsyncSession, context: MigrationContext):
        stage = "transform"
        context.log(stage, "Transforming legacy attendance into ledger rows")

        transformer = LegacyTransformer(db, warn=lambda message: context.warn(stage, message))
        stats = await transformer.run()
        await db.commit()

        context.stats['transform'] = stats
        context.log(stage, f"Transform completed: {stats['attendance']['records_created']} records created")
        context.transition(MigrationState.TRANSFORMED)

    async def validate(self, db: AsyncSession, context: MigrationContext):
        stage = "validate"
        validator = IntegrityValidator(db, self.sample_size)

        context.log(stage, "Running integrity validation")
        context.validation = await validator.validate()
        context.log(
            stage, f"Validation found {context.validation.error_count} errors, {context.validation.warning_count} warnings"
        )

        if context.validation.has_errors and self.auto_fix:
            context.log(stage, "Fixing data integrity issues")
            context.fixes = await validator.fix_integrity_issues()
            context.log(stage, f"Fixed {context.fixes['fixed_issues']} issues, re-running validation")

            context.revalidation = await validator.validate()
            if context.revalidation.has_errors:
                context.warn(stage, "Some data integrity issues could not be automatically fixed")

        context.transition(MigrationState.VALIDATED)

    async def run_validation(self) -> IntegrityReport:
        async with self.session_factory() as db:
            return await IntegrityValidator(db, self.sample_size).validate()

    async def get_migration_status(self) -> Dict[str, Any]:
        async with self.session_factory() as db:
            return await migration_status(db, self.sample_size)

    async def run_safe_rollback(self, backup_file: Optional[str] = None) -> MigrationContext:
        """Restore from the given backup file, or the newest one in the backup directory."""
        context = MigrationContext()
        stage = "rollback"

        path = backup_file or latest_backup_file(self.backup_dir)
        if path is None:
            context.error(stage, PipelineError(stage, f"No backup file found in {self.backup_dir}"))
            return self._finish(context)

        async with self.session_factory() as db:
            try:
                context.snapshot = BackupSnapshot.load(path)
                context.backup_file = path
                context.log(stage, f"Restoring from {path}")
                context.stats['rollback'] = await RollbackManager(db).restore(
                    context.snapshot, reason="Operator-requested rollback"
                )
                context.transition(MigrationState.ROLLED_BACK)
                context.log(stage, "Rollback completed")
            except Exception as e:
                context.error(stage, e)
                context.failure = e
                context.transition(MigrationState.FAILED_UNRECOVERABLE)

        return self._finish(context)

    async def _rollback_after_failure(self, db: AsyncSession, context: MigrationContext, error: Exception):
        stage = "rollback"
        context.log(stage, f"Migration failed ({error}), rolling back")
        try:
            context.stats['rollback'] = await RollbackManager(db).restore(
                context.snapshot, reason=f"Automatic rollback after failed migration: {error}"
            )
            context.transition(MigrationState.ROLLED_BACK)
            context.log(stage, "Automatic rollback completed")
        except Exception as rollback_error:
            failure = RollbackFailedError(error, rollback_error)
            logger.critical(failure.message)
            context.error(stage, failure)
            context.failure = failure
            context.transition(MigrationState.FAILED_UNRECOVERABLE)

    def _finish(self, context: MigrationContext) -> MigrationContext:
        context.finished_at = datetime.utcnow()
        if self.report_dir:
            try:
                context.report_file = write_report(context, self.report_dir)
            except OSError as e:
                logger.error(f"Failed to write migration report: {e}")
        return context


def write_report(context: MigrationContext, report_dir: str) -> str:
    """Write the run's report to a new timestamped JSON file."""
    os.makedirs(report_dir, exist_ok=True)
    timestamp = (context.finished_at or datetime.utcnow()).strftime("%Y%m%dT%H%M%S%fZ")
    path = os.path.join(report_dir, f"migration_report_{timestamp}.json")

    with open(path, "x", encoding="utf-8") as f:
        json.dump(context.to_report(), f, indent=2, default=_report_default)

    logger.info(f"Migration report saved to {path}")
    return path


def _report_default(value):
    converted = to_json_value(value)
    return str(converted) if converted is value else converted


async def migration_status(db: AsyncSession, sample_size: Optional[int] = None) -> Dict[str, Any]:
    """Current integrity state plus row counts of the ledger tables."""
    report = await IntegrityValidator(db, sample_size).validate()

    result = await db.execute(text("SELECT COUNT(*) FROM students WHERE legacy_attendance IS NOT NULL"))
    pending_legacy = result.scalar()

    counts = await RollbackManager(db).count_rows(LEDGER_TABLES)

    status = {
        'migration_completed': not report.has_errors and pending_legacy == 0,
        'has_data_integrity_issues': report.has_errors,
        'has_warnings': report.has_warnings,
        'students_with_legacy_attendance': pending_legacy,
        'row_counts': counts,
        'validation': report.to_dict(),
    }
    logger.info(f"Migration status: {'COMPLETED' if status['migration_completed'] else 'INCOMPLETE'}")
    return status
