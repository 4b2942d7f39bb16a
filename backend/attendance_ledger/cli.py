"""
Operator CLI for the attendance ledger migration.

    attendance-ledger-migrate                 run the full migration
    attendance-ledger-migrate --validate      run integrity validation only
    attendance-ledger-migrate --status        show migration status
    attendance-ledger-migrate --rollback [--backup FILE]

Exit status: 0 success, 1 partial success (warnings or unfixed integrity
issues), 2 failure.
"""

import argparse
import asyncio
import json
import logging
from typing import List, Optional

from attendance_ledger.core.config import settings, configure_logging
from attendance_ledger.core.database import engine, init_db
from attendance_ledger.migrations.orchestrator import (
    EXIT_FAILURE, EXIT_PARTIAL, EXIT_SUCCESS, MigrationOrchestrator, MigrationState
)


logger = logging.getLogger(__name__)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="attendance-ledger-migrate",
        description="Migrate legacy attendance into the ledger, validate it, or roll it back."
    )
    mode = parser.add_mutually_exclusive_group()
    mode.add_argument("--validate", action="store_true", help="run data validation only")
    mode.add_argument("--status", action="store_true", help="check current migration status")
    mode.add_argument("--rollback", action="store_true", help="restore the database from a backup")
    parser.add_argument("--backup", metavar="FILE", help="backup file to restore (default: newest in BACKUP_DIR)")
    parser.add_argument("--no-fix", action="store_true", help="do not repair integrity issues after migrating")
    parser.add_argument("--no-backup-file", action="store_true", help="keep the pre-migration backup in memory only")
    parser.add_argument("--log-level", default=None, help="override LOG_LEVEL")
    return parser


async def _run(args) -> int:
    orchestrator = MigrationOrchestrator(
        persist_backup=not args.no_backup_file,
        auto_fix=not args.no_fix,
        report_dir=settings.REPORT_DIR
    )
    try:
        await init_db()

        if args.status:
            status = await orchestrator.get_migration_status()
            print(json.dumps(status, indent=2, default=str))
            if status['has_data_integrity_issues'] or status['has_warnings']:
                return EXIT_PARTIAL
            return EXIT_SUCCESS

        if args.validate:
            report = await orchestrator.run_validation()
            print(json.dumps(report.to_dict(), indent=2))
            if report.has_errors or report.has_warnings:
                return EXIT_PARTIAL
            return EXIT_SUCCESS

        if args.rollback:
            context = await orchestrator.run_safe_rollback(args.backup)
            _print_outcome(context)
            return EXIT_SUCCESS if context.state == MigrationState.ROLLED_BACK else EXIT_FAILURE

        context = await orchestrator.run_complete_migration()
        _print_outcome(context)
        return context.exit_code

    except Exception as e:
        logger.exception(f"Migration command failed: {e}")
        return EXIT_FAILURE
    finally:
        await engine.dispose()


def _print_outcome(context):
    print(f"State: {context.state.value}")
    if context.backup_file:
        print(f"Backup: {context.backup_file}")
    if context.report_file:
        print(f"Report: {context.report_file}")
    print(f"Errors: {len(context.errors)}  Warnings: {len(context.warnings)}")
    for error in context.errors:
        print(f"  [{error['stage']}] {error['message']}")


def main(argv: Optional[List[str]] = None) -> int:
    args = build_parser().parse_args(argv)
    configure_logging(args.log_level.upper() if args.log_level else None)
    return asyncio.run(_run(args))


if __name__ == "__main__":
    raise SystemExit(main())
