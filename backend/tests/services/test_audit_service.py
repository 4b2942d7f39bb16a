"""Tests for the hash-chained audit trail."""

import pytest
from sqlalchemy import update

from attendance_ledger.core.exceptions import AuditWriteError
from attendance_ledger.models import AttendanceAuditLog, AuditAction
from attendance_ledger.schemas.attendance import Actor
from attendance_ledger.services.audit_service import AuditService


@pytest.fixture
def audit_service(db):
    return AuditService(db)


class TestAuditService:

    @pytest.mark.asyncio
    async def test_entries_are_chained(self, db, audit_service, teacher_actor):
        first = await audit_service.record(AuditAction.CREATE, teacher_actor, record_id=1, new_values={'status': 'present'})
        second = await audit_service.record(
            AuditAction.UPDATE, teacher_actor, record_id=1,
            old_values={'status': 'present'}, new_values={'status': 'absent'}, reason="Correction"
        )
        await db.commit()

        assert (first.sequence_number, second.sequence_number) == (1, 2)
        assert first.previous_hash is None
        assert second.previous_hash == first.integrity_hash
        assert len(second.integrity_hash) == 64

        verification = await audit_service.verify_chain()
        assert verification["verified"] is True
        assert verification["total_entries"] == 2

    @pytest.mark.asyncio
    async def test_hash_covers_content(self, audit_service, teacher_actor):
        entry = await audit_service.record(AuditAction.CREATE, teacher_actor, record_id=7, new_values={'status': 'late'})
        original = entry.integrity_hash

        entry.new_values = {'status': 'present'}
        assert entry.calculate_integrity_hash() != original
        assert not entry.verify_integrity()

    @pytest.mark.asyncio
    async def test_tampering_is_detected(self, db, audit_service, teacher_actor):
        for status in ("present", "absent", "late"):
            await audit_service.record(AuditAction.UPDATE, teacher_actor, record_id=1, new_values={'status': status})
        await db.commit()

        # Bypass the ORM guard the way a direct database edit would
        await db.execute(
            update(AttendanceAuditLog.__table__)
            .where(AttendanceAuditLog.__table__.c.sequence_number == 2)
            .values(reason="edited")
        )
        await db.commit()
        db.expire_all()

        verification = await audit_service.verify_chain()
        assert verification["verified"] is False
        assert [m["sequence"] for m in verification["hash_mismatches"]] == [2]

    @pytest.mark.asyncio
    async def test_orm_update_rejected(self, db, audit_service, teacher_actor):
        entry = await audit_service.record(AuditAction.CREATE, teacher_actor, record_id=1)
        await db.commit()

        entry.reason = "rewritten"
        with pytest.raises(AuditWriteError):
            await db.flush()
        await db.rollback()

    @pytest.mark.asyncio
    async def test_orm_delete_rejected(self, db, audit_service, teacher_actor):
        entry = await audit_service.record(AuditAction.CREATE, teacher_actor, record_id=1)
        await db.commit()

        await db.delete(entry)
        with pytest.raises(AuditWriteError):
            await db.flush()
        await db.rollback()

    @pytest.mark.asyncio
    async def test_history_and_filters(self, db, audit_service, teacher_actor):
        await audit_service.record(AuditAction.CREATE, teacher_actor, record_id=1, school_id=1)
        await audit_service.record(AuditAction.CREATE, teacher_actor, record_id=2, school_id=1)
        await audit_service.record(AuditAction.DELETE, teacher_actor, record_id=1, school_id=1)
        await audit_service.record(AuditAction.MIGRATION, Actor.system())
        await db.commit()

        history = await audit_service.get_record_history(1)
        assert [e.action for e in history] == [AuditAction.DELETE, AuditAction.CREATE]

        creates = await audit_service.get_entries(actions=[AuditAction.CREATE], school_id=1)
        assert [e.record_id for e in creates] == [2, 1]

        entry = history[0].to_dict()
        assert entry['performed_by'] == {'id': 1, 'kind': 'teacher'}
        assert entry['action'] == "delete"
