import pytest

from classtrack import ledger
from classtrack.errors import DuplicateRecord
from classtrack.models import AttendanceRecord

from conftest import ALICE, BOB


def test_append_returns_new_snapshot(seed):
    record = AttendanceRecord(student_id=ALICE, class_id="c1", confidence=0.9)

    updated, stored = ledger.append(seed, record)

    assert stored == record
    assert updated.attendance == [record]
    assert seed.attendance == []


def test_duplicate_pair_keeps_first_record(seed):
    first = AttendanceRecord(student_id=ALICE, class_id="c1", confidence=0.91)
    snapshot, _ = ledger.append(seed, first)

    for confidence in (0.7, 0.99, 0.65):
        with pytest.raises(DuplicateRecord):
            ledger.append(snapshot, AttendanceRecord(student_id=ALICE, class_id="c1", confidence=confidence))

    records = ledger.list_by_class(snapshot, "c1")
    assert len(records) == 1
    assert records[0].confidence == 0.91


def test_same_student_in_other_class_is_allowed(seed):
    snapshot, _ = ledger.append(seed, AttendanceRecord(student_id=ALICE, class_id="c1", confidence=0.9))
    snapshot, _ = ledger.append(snapshot, AttendanceRecord(student_id=ALICE, class_id="c2", confidence=0.8))

    assert [r.class_id for r in ledger.list_by_student(snapshot, ALICE)] == ["c1", "c2"]


def test_queries_preserve_insertion_order(seed):
    snapshot = seed
    for student_id, class_id in ((BOB, "c1"), (ALICE, "c2"), (ALICE, "c1")):
        snapshot, _ = ledger.append(snapshot, AttendanceRecord(student_id=student_id, class_id=class_id))

    assert [r.student_id for r in ledger.list_by_class(snapshot, "c1")] == [BOB, ALICE]
    assert [r.class_id for r in ledger.list_by_student(snapshot, ALICE)] == ["c2", "c1"]
    assert ledger.present_student_ids(snapshot, "c1") == {ALICE, BOB}
    assert ledger.list_by_class(snapshot, "unknown") == []
