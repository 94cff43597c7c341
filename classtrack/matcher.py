"""
Session matcher.

Turns one capture into at most one attendance decision for a class:

1. Select the first roster member without a record for the class.
2. Compare the capture against that student's front-view reference.
3. Record PRESENT when the oracle reports a match above PRESENCE_THRESHOLD.

The capture never chooses *which* student is evaluated; students are scanned
one at a time in roster order and the comparison only confirms the guess.
"""
import logging
import random
from typing import Callable, Optional, Tuple

from classtrack import ledger
from classtrack.errors import InvalidCapture, NoEligibleSubject, OracleUnavailable, UnknownEntity
from classtrack.models import (
    AttendanceRecord,
    AttendanceStatus,
    ScanOutcome,
    ScanResult,
    Snapshot,
    User,
    VerdictSource,
    utc_now,
)
from classtrack.oracle import VerificationOracle, fallback_verdict

logger = logging.getLogger(__name__)

PRESENCE_THRESHOLD = 0.6


def passes_threshold(match: bool, confidence: float) -> bool:
    return match and confidence > PRESENCE_THRESHOLD


def select_pending_student(snapshot: Snapshot, class_id: str) -> User:
    """
    Return the first roster member with no record for ``class_id``.

    Raises NoEligibleSubject when everyone is present or when the selected
    student has no enrolled references.
    """
    session = snapshot.get_class(class_id)
    if session is None:
        raise UnknownEntity(f"No class with id {class_id}")

    present = ledger.present_student_ids(snapshot, class_id)
    # Roster entries of deleted accounts are skipped
    pending = (snapshot.get_user(sid) for sid in session.roster if sid not in present)
    student = next((user for user in pending if user is not None), None)
    if student is None:
        raise NoEligibleSubject("Every student on the roster is already marked present")

    if not student.enrolled_references:
        raise NoEligibleSubject(f"Biometric data missing for pending student {student.id}")
    return student


def process_capture(
    snapshot: Snapshot,
    class_id: str,
    capture: str,
    oracle: VerificationOracle,
    rng: Optional[random.Random] = None,
    clock: Callable[[], str] = utc_now,
) -> Tuple[Snapshot, ScanResult]:
    """Run one capture through the matcher and return the new snapshot and the result."""
    if not capture or not capture.strip():
        raise InvalidCapture("Capture is empty")

    try:
        student = select_pending_student(snapshot, class_id)
    except NoEligibleSubject as e:
        logger.info(f"Class {class_id}: {e}")
        return snapshot, ScanResult(
            outcome=ScanOutcome.NO_ELIGIBLE_SUBJECT,
            success=False,
            class_id=class_id,
            message="No student detected or biometric data missing for pending group.",
        )

    logger.info(f"Class {class_id}: verifying capture against {student.name} ({student.id})")
    baseline = student.enrolled_references[0]

    try:
        verdict = oracle.compare(capture, baseline)
    except OracleUnavailable as e:
        verdict = fallback_verdict(rng)
        logger.warning(
            f"[fallback] Oracle unavailable for {student.id} in class {class_id} ({e}); "
            f"degraded decision match={verdict.match} confidence={verdict.confidence:.2f}"
        )

    degraded = verdict.source == VerdictSource.FALLBACK
    result_fields = dict(
        class_id=class_id,
        student_id=student.id,
        student_name=student.name,
        confidence=verdict.confidence,
        degraded=degraded,
        source=verdict.source,
        observations=verdict.observations,
    )

    if not passes_threshold(verdict.match, verdict.confidence):
        logger.info(
            f"✗ {student.name} not verified (match={verdict.match}, confidence={verdict.confidence:.2f})"
        )
        return snapshot, ScanResult(
            outcome=ScanOutcome.NOT_MATCHED,
            success=False,
            message="Face mismatch or low confidence score: did not pass threshold.",
            **result_fields,
        )

    record = AttendanceRecord(
        student_id=student.id,
        class_id=class_id,
        timestamp=clock(),
        status=AttendanceStatus.PRESENT,
        confidence=verdict.confidence,
        degraded=degraded,
    )
    snapshot, record = ledger.append(snapshot, record)
    message = f"{student.name} identified ({verdict.confidence:.0%} accuracy)"

    if degraded:
        message += " [fallback decision]"

    return snapshot, ScanResult(
        outcome=ScanOutcome.PRESENT,
        success=True,
        record_id=record.id,
        message=message,
        **result_fields,
    )
