"""Tests for the migration CLI."""

import pytest
from types import SimpleNamespace

from attendance_ledger import cli
from attendance_ledger.migrations.integrity import IntegrityReport, IntegrityIssue
from attendance_ledger.migrations.orchestrator import MigrationContext, MigrationState


class FakeOrchestrator:
    """Stands in for MigrationOrchestrator; records which mode ran."""

    calls = []
    context = None
    report = None
    status = None

    def __init__(self, **kwargs):
        self.kwargs = kwargs

    async def run_complete_migration(self):
        FakeOrchestrator.calls.append(("migrate", self.kwargs))
        return FakeOrchestrator.context

    async def run_validation(self):
        FakeOrchestrator.calls.append(("validate", self.kwargs))
        return FakeOrchestrator.report

    async def get_migration_status(self):
        FakeOrchestrator.calls.append(("status", self.kwargs))
        return FakeOrchestrator.status

    async def run_safe_rollback(self, backup_file=None):
        FakeOrchestrator.calls.append(("rollback", backup_file))
        return FakeOrchestrator.context


@pytest.fixture
def fake_orchestrator(monkeypatch):
    async def noop():
        return None

    FakeOrchestrator.calls = []
    monkeypatch.setattr(cli, "MigrationOrchestrator", FakeOrchestrator)
    monkeypatch.setattr(cli, "init_db", noop)
    monkeypatch.setattr(cli, "engine", SimpleNamespace(dispose=noop))
    return FakeOrchestrator


class TestParser:

    def test_modes_are_exclusive(self):
        parser = cli.build_parser()
        with pytest.raises(SystemExit):
            parser.parse_args(["--validate", "--rollback"])

    def test_defaults(self):
        args = cli.build_parser().parse_args([])
        assert not (args.validate or args.status or args.rollback)
        assert args.backup is None
        assert args.no_fix is False


class TestMain:

    def test_successful_migration(self, fake_orchestrator, capsys):
        context = MigrationContext()
        context.state = MigrationState.DONE
        fake_orchestrator.context = context

        assert cli.main([]) == 0
        mode, kwargs = fake_orchestrator.calls[0]
        assert mode == "migrate"
        assert kwargs['auto_fix'] is True
        assert "State: done" in capsys.readouterr().out

    def test_no_fix_flag(self, fake_orchestrator):
        context = MigrationContext()
        context.state = MigrationState.DONE
        fake_orchestrator.context = context

        cli.main(["--no-fix", "--no-backup-file"])

        _, kwargs = fake_orchestrator.calls[0]
        assert kwargs['auto_fix'] is False
        assert kwargs['persist_backup'] is False

    def test_failed_migration(self, fake_orchestrator):
        fake_orchestrator.context = MigrationContext(state=MigrationState.ROLLED_BACK)
        assert cli.main([]) == 2

    def test_validate_with_errors_is_partial(self, fake_orchestrator):
        report = IntegrityReport()
        report.add(IntegrityIssue("invalid_status", "error", "1 attendance records have an invalid status", 1, [7]))
        fake_orchestrator.report = report

        assert cli.main(["--validate"]) == 1

    def test_clean_status(self, fake_orchestrator, capsys):
        fake_orchestrator.status = {'migration_completed': True, 'has_data_integrity_issues': False, 'has_warnings': False}

        assert cli.main(["--status"]) == 0
        assert '"migration_completed": true' in capsys.readouterr().out

    def test_rollback_uses_given_backup(self, fake_orchestrator):
        fake_orchestrator.context = MigrationContext(state=MigrationState.ROLLED_BACK)

        assert cli.main(["--rollback", "--backup", "backups/attendance_backup_1.json"]) == 0
        assert fake_orchestrator.calls[0] == ("rollback", "backups/attendance_backup_1.json")

    def test_unexpected_error_exits_with_failure(self, fake_orchestrator, monkeypatch):
        async def broken():
            raise RuntimeError("no database")

        monkeypatch.setattr(cli, "init_db", broken)
        assert cli.main(["--status"]) == 2
