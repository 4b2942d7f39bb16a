"""Tests for the legacy-to-ledger transformation."""

import pytest
from datetime import date
from sqlalchemy import select

from attendance_ledger.models import (
    AttendanceAuditLog, AttendanceRecord, AttendanceStatus, AttendanceSummary, AuditAction,
    SessionLabel, Student, StudentEnrollment, TeacherAssignment
)
from attendance_ledger.migrations.transform import LegacyTransformer, generated_university_id, legacy_statuses


class TestLegacyHelpers:

    def test_legacy_statuses(self):
        assert legacy_statuses(1) == [
            (SessionLabel.LECTURE_1, AttendanceStatus.PRESENT),
            (SessionLabel.LECTURE_2, AttendanceStatus.ABSENT),
        ]
        assert [status for _, status in legacy_statuses(0)] == [AttendanceStatus.ABSENT] * 2
        assert [status for _, status in legacy_statuses(2)] == [AttendanceStatus.PRESENT] * 2

    def test_generated_university_id(self):
        assert generated_university_id(42) == "STU000042"


class TestLegacyTransformer:

    @pytest.mark.asyncio
    async def test_run(self, db, legacy_seed):
        warnings = []
        stats = await LegacyTransformer(db, warn=warnings.append).run()
        await db.commit()

        assert stats['assignments'] == {'assignments_created': 2}
        assert stats['enrollments'] == {
            'students_enrolled': 2, 'enrollments_created': 4, 'university_ids_generated': 1
        }
        assert stats['attendance']['records_created'] == 8
        assert stats['summaries']['summaries_initialized'] == 1
        assert warnings == []

        bob = await db.get(Student, 2)
        assert bob.university_id == "STU000002"
        assert bob.legacy_attendance is None

        result = await db.execute(
            select(AttendanceRecord).where(
                AttendanceRecord.student_id == 1,
                AttendanceRecord.subject_id == 1,
                AttendanceRecord.date == date(2024, 9, 2)
            ).order_by(AttendanceRecord.session)
        )
        records = result.scalars().all()
        assert [(r.session, r.status) for r in records] == [
            (SessionLabel.LECTURE_1, AttendanceStatus.PRESENT),
            (SessionLabel.LECTURE_2, AttendanceStatus.ABSENT),
        ]
        assert records[0].teacher_id == 1
        assert records[0].marked_by_kind.value == "system"

        result = await db.execute(
            select(AttendanceSummary).order_by(AttendanceSummary.student_id, AttendanceSummary.subject_id)
        )
        assert [(s.student_id, s.subject_id, s.attendance_percentage) for s in result.scalars().all()] == [
            (1, 1, 75.0), (1, 2, 100.0), (2, 1, 0.0), (2, 2, 0.0)
        ]

        result = await db.execute(select(AttendanceAuditLog))
        assert [e.action for e in result.scalars().all()] == [AuditAction.MIGRATION]

    @pytest.mark.asyncio
    async def test_missing_teacher_is_skipped_with_warning(self, db, legacy_seed):
        carol = await db.get(Student, 3)
        carol.legacy_attendance = [{"subject_id": 1, "present": 1, "absent": 0, "date": "2024-09-02"}]
        await db.commit()

        warnings = []
        stats = await LegacyTransformer(db, warn=warnings.append).migrate_legacy_attendance()

        assert stats['entries_skipped'] == 1
        assert any("No teacher found" in w for w in warnings)

    @pytest.mark.asyncio
    async def test_empty_entry_is_skipped_with_warning(self, db, legacy_seed):
        alice = await db.get(Student, 1)
        alice.legacy_attendance = [{"subject_id": 1, "present": 0, "absent": 0, "date": "2024-09-09"}]
        await db.commit()

        warnings = []
        stats = await LegacyTransformer(db, warn=warnings.append).migrate_legacy_attendance()

        assert stats['entries_skipped'] == 1
        assert any("Skipping empty legacy entry for student 1" in w for w in warnings)

        result = await db.execute(
            select(AttendanceRecord).where(AttendanceRecord.student_id == 1, AttendanceRecord.date == date(2024, 9, 9))
        )
        assert result.scalars().all() == []

    @pytest.mark.asyncio
    async def test_duplicate_entries_skipped(self, db, legacy_seed):
        alice = await db.get(Student, 1)
        alice.legacy_attendance = [
            {"subject_id": 1, "present": 1, "absent": 1, "date": "2024-09-02"},
            {"subject_id": 1, "present": 2, "absent": 0, "date": "2024-09-02T00:00:00Z"},
        ]
        await db.commit()

        warnings = []
        stats = await LegacyTransformer(db, warn=warnings.append).migrate_legacy_attendance()

        # Alice's first entry plus Bob's untouched entry
        assert stats['records_created'] == 4
        assert stats['duplicates_skipped'] == 2

    @pytest.mark.asyncio
    async def test_rerun_is_idempotent_for_edges(self, db, legacy_seed):
        transformer = LegacyTransformer(db)
        await transformer.normalize_assignments()
        await transformer.normalize_enrollments()
        await db.commit()

        again = LegacyTransformer(db)
        assert await again.normalize_assignments() == {'assignments_created': 0}
        assert (await again.normalize_enrollments())['enrollments_created'] == 0

        assignments = (await db.execute(select(TeacherAssignment))).scalars().all()
        enrollments = (await db.execute(select(StudentEnrollment))).scalars().all()
        assert len(assignments) == 2
        assert len(enrollments) == 4
