"""Shared fixtures: a fresh SQLite database per test, seeded with one school."""

import pytest
import pytest_asyncio
from datetime import date, timedelta
from types import SimpleNamespace

from sqlalchemy.ext.asyncio import create_async_engine, async_sessionmaker, AsyncSession

from attendance_ledger.core.database import Base, enable_sqlite_savepoints
from attendance_ledger.models import (
    School, SchoolClass, Subject, Student, Teacher, StudentEnrollment, TeacherAssignment
)
from attendance_ledger.schemas.attendance import Actor


@pytest_asyncio.fixture
async def engine(tmp_path):
    """Create test database engine"""
    test_engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'ledger.db'}")
    enable_sqlite_savepoints(test_engine)

    async with test_engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield test_engine

    await test_engine.dispose()


@pytest.fixture
def session_factory(engine):
    return async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)


@pytest_asyncio.fixture
async def db(session_factory):
    """Create test database session"""
    async with session_factory() as session:
        yield session


@pytest_asyncio.fixture
async def seed(db):
    """
    One school with two classes.

    Class A teaches Mathematics and Physics; teacher 1 teaches Mathematics in
    class A, teacher 2 has no assignment. Students 1 and 2 are in class A and
    enrolled in both subjects; student 3 is in class B with no enrollments.
    """
    school = School(id=1, name="Springfield High")
    class_a = SchoolClass(id=1, name="CSE-A", school_id=1)
    class_b = SchoolClass(id=2, name="CSE-B", school_id=1)
    math = Subject(id=1, name="Mathematics", code="MATH101", class_id=1, school_id=1)
    physics = Subject(id=2, name="Physics", code="PHY101", class_id=1, school_id=1)

    teacher = Teacher(id=1, name="Ada Lovelace", email="ada@springfield.edu", school_id=1)
    other_teacher = Teacher(id=2, name="Alan Turing", email="alan@springfield.edu", school_id=1)

    alice = Student(id=1, name="Alice", roll_num=1, university_id="CSE2021001", class_id=1, school_id=1)
    bob = Student(id=2, name="Bob", roll_num=2, university_id="CSE2021002", class_id=1, school_id=1)
    carol = Student(id=3, name="Carol", roll_num=3, university_id="ECE2021001", class_id=2, school_id=1)

    db.add_all([school, class_a, class_b, math, physics, teacher, other_teacher, alice, bob, carol])
    await db.flush()

    db.add_all([
        TeacherAssignment(teacher_id=1, subject_id=1, class_id=1),
        StudentEnrollment(student_id=1, subject_id=1),
        StudentEnrollment(student_id=1, subject_id=2),
        StudentEnrollment(student_id=2, subject_id=1),
        StudentEnrollment(student_id=2, subject_id=2),
    ])
    await db.commit()

    return SimpleNamespace(
        school=school,
        class_a=class_a,
        class_b=class_b,
        math=math,
        physics=physics,
        teacher=teacher,
        other_teacher=other_teacher,
        alice=alice,
        bob=bob,
        carol=carol,
    )


@pytest.fixture
def teacher_actor():
    return Actor.teacher(1)


@pytest.fixture
def admin_actor():
    return Actor.admin(99)


@pytest.fixture
def school_day():
    """A recent past date inside any default write window."""
    return date.today() - timedelta(days=3)


ALICE_LEGACY = [
    {"subject_id": 1, "present": 1, "absent": 1, "date": "2024-09-02"},
    {"subject_id": 2, "present": 2, "absent": 0, "date": "2024-09-02"},
    {"subject_id": 1, "present": 2, "absent": 0, "date": "2024-09-03"},
]
BOB_LEGACY = [
    {"subject_id": 1, "present": 0, "absent": 2, "date": "2024-09-02"},
]


@pytest_asyncio.fixture
async def legacy_seed(session_factory):
    """
    Pre-ledger data: teachers carry a single teach_subject/teach_class, students
    carry embedded attendance, and no ledger or edge table has rows yet.
    """
    async with session_factory() as session:
        session.add_all([
            School(id=1, name="Springfield High"),
            SchoolClass(id=1, name="CSE-A", school_id=1),
            SchoolClass(id=2, name="CSE-B", school_id=1),
            Subject(id=1, name="Mathematics", class_id=1, school_id=1),
            Subject(id=2, name="Physics", class_id=1, school_id=1),
        ])
        await session.flush()
        session.add_all([
            Teacher(id=1, name="Ada Lovelace", email="ada@springfield.edu", school_id=1,
                    teach_subject_id=1, teach_class_id=1),
            Teacher(id=2, name="Alan Turing", email="alan@springfield.edu", school_id=1,
                    teach_subject_id=2, teach_class_id=1),
            Student(id=1, name="Alice", roll_num=1, university_id="CSE2021001", class_id=1, school_id=1,
                    legacy_attendance=ALICE_LEGACY),
            Student(id=2, name="Bob", roll_num=2, university_id=None, class_id=1, school_id=1,
                    legacy_attendance=BOB_LEGACY),
            Student(id=3, name="Carol", roll_num=3, university_id="ECE2021001", class_id=2, school_id=1),
        ])
        await session.commit()

    return SimpleNamespace(students=3, teachers=2)
