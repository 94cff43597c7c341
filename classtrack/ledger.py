import logging
from typing import List, Set, Tuple

from classtrack.errors import DuplicateRecord
from classtrack.models import AttendanceRecord, Snapshot

logger = logging.getLogger(__name__)


def find_record(snapshot: Snapshot, class_id: str, student_id: str):
    return next(
        (r for r in snapshot.attendance if r.class_id == class_id and r.student_id == student_id),
        None,
    )


def append(snapshot: Snapshot, record: AttendanceRecord) -> Tuple[Snapshot, AttendanceRecord]:
    """
    Append a record to the ledger.

    At most one record may exist per (class, student) pair; a second one raises
    DuplicateRecord and leaves the snapshot untouched, so the first record
    submitted is the one that is kept.
    """
    if find_record(snapshot, record.class_id, record.student_id) is not None:
        raise DuplicateRecord(record.class_id, record.student_id)

    updated = snapshot.model_copy(update={"attendance": [*snapshot.attendance, record]})
    logger.info(
        f"Recorded {record.status.value} for student {record.student_id} "
        f"in class {record.class_id} (confidence {record.confidence:.2f})"
    )
    return updated, record


def list_by_class(snapshot: Snapshot, class_id: str) -> List[AttendanceRecord]:
    return [r for r in snapshot.attendance if r.class_id == class_id]


def list_by_student(snapshot: Snapshot, student_id: str) -> List[AttendanceRecord]:
    return [r for r in snapshot.attendance if r.student_id == student_id]


def present_student_ids(snapshot: Snapshot, class_id: str) -> Set[str]:
    return {r.student_id for r in list_by_class(snapshot, class_id)}
