"""Tests for bulk roster management."""

import pytest
from datetime import datetime
from sqlalchemy import select

from attendance_ledger.core.exceptions import NotFoundError, ValidationError
from attendance_ledger.models import (
    ActorKind, AttendanceAuditLog, AttendanceRecord, AttendanceStatus, AttendanceSummary, AuditAction, School,
    SchoolClass, SessionLabel, Student, StudentEnrollment, Teacher, TeacherAssignment
)
from attendance_ledger.schemas.attendance import TeacherAssignmentInput
from attendance_ledger.services.attendance_engine import AttendanceEngine
from attendance_ledger.services.bulk_management import (
    ALREADY_ASSIGNED, CONFLICTING_RECORD, NOT_IN_SOURCE_CLASS, BulkManagementService
)


@pytest.fixture
def bulk_service(db):
    return BulkManagementService(db)


async def enrolled_subjects(db, student_id):
    result = await db.execute(
        select(StudentEnrollment.subject_id)
        .where(StudentEnrollment.student_id == student_id)
        .order_by(StudentEnrollment.subject_id)
    )
    return list(result.scalars().all())


async def audit_entries(db, action):
    result = await db.execute(
        select(AttendanceAuditLog).where(AttendanceAuditLog.action == action).order_by(AttendanceAuditLog.sequence_number)
    )
    return list(result.scalars().all())


class TestPatternAssignment:

    @pytest.mark.asyncio
    async def test_student_already_in_target_class(self, db, seed, bulk_service, admin_actor):
        result = await bulk_service.assign_by_pattern("CSE2021001", 1, [], admin_actor, 1)

        assert result.success_count == 0
        assert result.failure_count == 1
        assert result.failed[0]['reason'] == ALREADY_ASSIGNED
        assert result.is_total_failure

    @pytest.mark.asyncio
    async def test_wildcard_assignment(self, db, seed, bulk_service, admin_actor):
        result = await bulk_service.assign_by_pattern("CSE2021*", 2, [1], admin_actor, 1)

        assert result.success_count == 2
        assert {item['university_id'] for item in result.successful} == {"CSE2021001", "CSE2021002"}

        student = await db.get(Student, 1)
        assert student.class_id == 2
        assert await enrolled_subjects(db, 1) == [1]

        entries = await audit_entries(db, AuditAction.BULK_ASSIGN)
        assert len(entries) == 2
        assert entries[0].old_values == {'class_id': 1, 'enrolled_subjects': [1, 2]}
        assert entries[0].new_values == {'class_id': 2, 'enrolled_subjects': [1]}
        assert entries[0].reason == "Bulk assignment using pattern: CSE2021*"

        result = await db.execute(select(AttendanceSummary).where(AttendanceSummary.class_id == 2))
        assert {s.student_id for s in result.scalars().all()} == {1, 2}

    @pytest.mark.asyncio
    async def test_star_matches_all_students(self, db, seed, bulk_service):
        students = await bulk_service.find_students_by_pattern("*", 1)
        assert {s.id for s in students} == {1, 2, 3}

    @pytest.mark.asyncio
    async def test_dot_is_literal(self, db, seed, bulk_service):
        assert await bulk_service.find_students_by_pattern("CSE.2021*", 1) == []

    @pytest.mark.asyncio
    async def test_other_school_not_matched(self, db, seed, bulk_service, admin_actor):
        db.add_all([School(id=2, name="Shelbyville High"), SchoolClass(id=3, name="ME-A", school_id=2)])
        await db.commit()

        result = await bulk_service.assign_by_pattern("*", 3, [], admin_actor, 2)
        assert result.success_count == 0
        assert result.failure_count == 0
        assert (await db.get(Student, 1)).class_id == 1

    @pytest.mark.asyncio
    async def test_target_class_of_other_school_rejected(self, db, seed, bulk_service, admin_actor):
        db.add_all([School(id=2, name="Shelbyville High"), SchoolClass(id=3, name="ME-A", school_id=2)])
        await db.commit()

        with pytest.raises(NotFoundError) as exc_info:
            await bulk_service.assign_by_pattern("CSE2021*", 3, [], admin_actor, 1)

        assert exc_info.value.details == {"class_id": 3, "school_id": 1}
        assert (await db.get(Student, 1)).class_id == 1
        assert await audit_entries(db, AuditAction.BULK_ASSIGN) == []

    @pytest.mark.asyncio
    async def test_missing_subject_rejected_before_mutation(self, db, seed, bulk_service, admin_actor):
        with pytest.raises(NotFoundError):
            await bulk_service.assign_by_pattern("CSE2021*", 2, [1, 77], admin_actor, 1)

        student = await db.get(Student, 1)
        assert student.class_id == 1

    @pytest.mark.asyncio
    async def test_missing_target_class(self, db, seed, bulk_service, admin_actor):
        with pytest.raises(NotFoundError):
            await bulk_service.assign_by_pattern("*", 99, [], admin_actor, 1)


class TestTransfer:

    @pytest.mark.asyncio
    async def test_rejected_when_any_student_not_in_source(self, db, seed, bulk_service, admin_actor):
        with pytest.raises(ValidationError) as exc_info:
            await bulk_service.transfer([1, 3], 1, 2, [], False, admin_actor)

        assert exc_info.value.message == NOT_IN_SOURCE_CLASS
        assert exc_info.value.details['student_ids'] == [3]
        assert (await db.get(Student, 1)).class_id == 1
        assert await audit_entries(db, AuditAction.STUDENT_TRANSFER) == []

    @pytest.mark.asyncio
    async def test_transfer_without_ledger_migration(self, db, seed, bulk_service, admin_actor, school_day):
        await AttendanceEngine(db).mark_attendance(1, 1, 1, 1, school_day, "Lecture 1", "present")

        result = await bulk_service.transfer([1], 1, 2, [], False, admin_actor)

        assert result.success_count == 1
        assert result.successful[0]['migrated_records'] == 0
        assert (await db.get(Student, 1)).class_id == 2
        # Enrollments are kept when no subjects are given
        assert await enrolled_subjects(db, 1) == [1, 2]

        record = (await db.execute(select(AttendanceRecord))).scalar_one()
        assert record.class_id == 1

        entry = (await audit_entries(db, AuditAction.STUDENT_TRANSFER))[0]
        assert entry.reason == "Student transfer from CSE-A to CSE-B"

    @pytest.mark.asyncio
    async def test_transfer_with_ledger_migration(self, db, seed, bulk_service, admin_actor, school_day):
        engine = AttendanceEngine(db)
        await engine.mark_attendance(1, 1, 1, 1, school_day, "Lecture 1", "present")
        await engine.mark_attendance(1, 1, 1, 1, school_day, "Lecture 2", "absent")

        result = await bulk_service.transfer([1], 1, 2, [1], True, admin_actor)

        assert result.successful[0]['migrated_records'] == 2
        records = (await db.execute(select(AttendanceRecord))).scalars().all()
        assert {r.class_id for r in records} == {2}
        assert len(await audit_entries(db, AuditAction.MIGRATE_ATTENDANCE)) == 2

        summaries = (await db.execute(
            select(AttendanceSummary).where(AttendanceSummary.student_id == 1)
        )).scalars().all()
        assert [(s.subject_id, s.class_id) for s in summaries] == [(1, 2)]
        assert summaries[0].total_sessions == 2
        assert summaries[0].attendance_percentage == 50.0

    @pytest.mark.asyncio
    async def test_failed_student_does_not_undo_siblings(self, db, seed, bulk_service, admin_actor, school_day):
        engine = AttendanceEngine(db)
        await engine.mark_attendance(1, 1, 1, 1, school_day, "Lecture 1", "present")
        await engine.mark_attendance(1, 1, 1, 2, school_day, "Lecture 1", "present")
        # Bob already has a row on the same key in the target class
        db.add(AttendanceRecord(
            student_id=2, class_id=2, subject_id=1, teacher_id=1, date=school_day,
            session=SessionLabel.LECTURE_1, status=AttendanceStatus.ABSENT,
            marked_by_id=99, marked_by_kind=ActorKind.ADMIN, marked_at=datetime.utcnow(), school_id=1
        ))
        await db.commit()

        result = await bulk_service.transfer([1, 2], 1, 2, [], True, admin_actor)

        assert result.success_count == 1
        assert result.failure_count == 1
        assert result.successful[0]['student_id'] == 1
        assert result.failed[0]['student_id'] == 2
        assert result.failed[0]['reason'] == CONFLICTING_RECORD
        assert result.is_partial_success

        rows = await db.execute(select(Student.id, Student.class_id).order_by(Student.id))
        assert rows.all()[:2] == [(1, 2), (2, 1)]
        assert len(await audit_entries(db, AuditAction.STUDENT_TRANSFER)) == 1

    @pytest.mark.asyncio
    async def test_transfer_unknown_class(self, db, seed, bulk_service, admin_actor):
        with pytest.raises(NotFoundError):
            await bulk_service.transfer([1], 1, 99, [], False, admin_actor)


class TestTeacherReassignment:

    @pytest.mark.asyncio
    async def test_single_assignment_sets_legacy_fields(self, db, seed, bulk_service, admin_actor):
        result = await bulk_service.reassign_teacher(2, [{'subject_id': 2, 'class_id': 1}], admin_actor)

        assert result.success_count == 1
        teacher = await db.get(Teacher, 2)
        assert (teacher.teach_subject_id, teacher.teach_class_id) == (2, 1)

        entry = (await audit_entries(db, AuditAction.TEACHER_REASSIGNMENT))[0]
        assert entry.old_values['assignments'] == []
        assert entry.new_values['assignments'] == [{'subject_id': 2, 'class_id': 1}]

    @pytest.mark.asyncio
    async def test_replaces_existing_assignments(self, db, seed, bulk_service, admin_actor):
        result = await bulk_service.reassign_teacher(
            1,
            [TeacherAssignmentInput(subject_id=2, class_id=1), TeacherAssignmentInput(subject_id=1, class_id=2)],
            admin_actor
        )

        assert result.success_count == 2
        rows = (await db.execute(
            select(TeacherAssignment.subject_id, TeacherAssignment.class_id)
            .where(TeacherAssignment.teacher_id == 1)
            .order_by(TeacherAssignment.subject_id)
        )).all()
        assert [tuple(r) for r in rows] == [(1, 2), (2, 1)]

        teacher = await db.get(Teacher, 1)
        assert teacher.teach_subject_id is None
        assert teacher.teach_class_id is None

    @pytest.mark.asyncio
    async def test_duplicate_pair_reported(self, db, seed, bulk_service, admin_actor):
        result = await bulk_service.reassign_teacher(
            2, [{'subject_id': 1, 'class_id': 1}, {'subject_id': 1, 'class_id': 1}], admin_actor
        )
        assert result.success_count == 1
        assert result.failure_count == 1

    @pytest.mark.asyncio
    async def test_unknown_subject(self, db, seed, bulk_service, admin_actor):
        with pytest.raises(NotFoundError):
            await bulk_service.reassign_teacher(1, [{'subject_id': 50, 'class_id': 1}], admin_actor)

        # Existing assignment untouched
        rows = (await db.execute(select(TeacherAssignment).where(TeacherAssignment.teacher_id == 1))).scalars().all()
        assert len(rows) == 1

    @pytest.mark.asyncio
    async def test_unknown_teacher(self, db, seed, bulk_service, admin_actor):
        with pytest.raises(NotFoundError):
            await bulk_service.reassign_teacher(77, [{'subject_id': 1, 'class_id': 1}], admin_actor)


class TestBulkStats:

    @pytest.mark.asyncio
    async def test_stats_count_bulk_audit_entries(self, db, seed, bulk_service, admin_actor):
        await bulk_service.assign_by_pattern("CSE2021*", 2, [], admin_actor, 1)
        await bulk_service.reassign_teacher(2, [{'subject_id': 1, 'class_id': 2}], admin_actor)

        stats = await bulk_service.get_bulk_operation_stats(1)

        assert stats['bulk_assignments'] == 2
        assert stats['teacher_reassignments'] == 1
        assert stats['student_transfers'] == 0
        assert stats['total_operations'] == 3
        assert isinstance(stats['last_activity'], datetime)
